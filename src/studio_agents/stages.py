"""Per-stage behaviour plugged into the generic run orchestrator.

Each stage declares its snapshot and output schemas, how many input rows
qualify it to run, the allowlists and reference fields the validator checks,
and how a validated output becomes persisted artifacts plus links.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, cast

from pydantic import BaseModel

from .models import (
    STAGE_ARTIFACT_KINDS,
    ArtifactKind,
    EntityKind,
    ImplementationItem,
    ImplementationWave,
    SequencingOutput,
    SequencingSnapshot,
    SolutionCard,
    SolutionInput,
    SolutionsOutput,
    SolutionsSnapshot,
    SolutionStatus,
    Stage,
    StudioArtifact,
    SynthesisOutput,
    SynthesisSnapshot,
    Theme,
    ThemeInput,
    ThemeStatus,
)
from .prompts import SYSTEM_PROMPTS, build_sequencing_prompt, build_solutions_prompt, build_synthesis_prompt
from .state_store import StudioStateStore
from .validator import ReferenceSpec

logger = logging.getLogger(__name__)

# Link relation names.
OBSERVATIONS = "observations"
STEPS = "steps"
WASTE_TYPES = "waste_types"
THEMES = "themes"
DEPENDS_ON = "depends_on"


@dataclass(frozen=True)
class PlannedArtifact:
    """One artifact row to insert, with its outgoing links.

    ``parent_id`` names an artifact in the same commit that must have been
    inserted for this one to be attempted.
    """

    label: str
    record: StudioArtifact
    links: dict[str, list[str]] = field(default_factory=dict)
    parent_id: str | None = None


@dataclass(frozen=True)
class StageStrategy:
    stage: Stage
    snapshot_type: type[BaseModel]
    output_schema: type[BaseModel]
    build_prompt: Callable[[BaseModel], str]
    qualifying_rows: Callable[[BaseModel], int]
    precondition_message: str
    build_allowlists: Callable[[BaseModel], dict[EntityKind, frozenset[str]]]
    references: list[ReferenceSpec]
    plan_artifacts: Callable[[str, str | None, BaseModel], list[PlannedArtifact]]

    @property
    def system_prompt(self) -> str:
        return SYSTEM_PROMPTS[self.stage.value]

    @property
    def artifact_kinds(self) -> tuple[ArtifactKind, ...]:
        return STAGE_ARTIFACT_KINDS[self.stage]


# ---------------------------------------------------------------------------
# Synthesis
# ---------------------------------------------------------------------------

def _synthesis_allowlists(snapshot: SynthesisSnapshot) -> dict[EntityKind, frozenset[str]]:
    step_ids = {step.id for step in snapshot.steps}
    step_ids.update(obs.step_id for obs in snapshot.observations if obs.step_id)
    return {
        EntityKind.OBSERVATION: frozenset(obs.id for obs in snapshot.observations),
        EntityKind.STEP: frozenset(step_ids),
        EntityKind.WASTE_TYPE: frozenset(waste.id for waste in snapshot.waste_types),
    }


def _plan_themes(session_id: str, user_id: str | None, output: SynthesisOutput) -> list[PlannedArtifact]:
    planned: list[PlannedArtifact] = []
    for proposed in output.themes:
        theme = Theme(
            session_id=session_id,
            name=proposed.name,
            summary=proposed.summary,
            confidence=proposed.confidence,
            root_cause_hypotheses=list(proposed.root_cause_hypotheses),
            status=ThemeStatus.DRAFT,
            created_by=user_id,
            updated_by=user_id,
        )
        planned.append(
            PlannedArtifact(
                label=f"theme {proposed.name!r}",
                record=theme,
                links={
                    OBSERVATIONS: list(proposed.observation_ids),
                    STEPS: list(proposed.step_ids),
                    WASTE_TYPES: list(proposed.waste_type_ids),
                },
            )
        )
    return planned


SYNTHESIS = StageStrategy(
    stage=Stage.SYNTHESIS,
    snapshot_type=SynthesisSnapshot,
    output_schema=SynthesisOutput,
    build_prompt=build_synthesis_prompt,
    qualifying_rows=lambda snapshot: len(snapshot.observations),
    precondition_message="No observations found for this session. Complete a waste walk first.",
    build_allowlists=_synthesis_allowlists,
    references=[
        ReferenceSpec(
            collection="themes",
            id_lists={
                "observation_ids": EntityKind.OBSERVATION,
                "step_ids": EntityKind.STEP,
                "waste_type_ids": EntityKind.WASTE_TYPE,
            },
        )
    ],
    plan_artifacts=_plan_themes,
)


# ---------------------------------------------------------------------------
# Solutions
# ---------------------------------------------------------------------------

def _solutions_allowlists(snapshot: SolutionsSnapshot) -> dict[EntityKind, frozenset[str]]:
    step_ids = {step.id for step in snapshot.steps}
    step_ids.update(obs.step_id for obs in snapshot.observations if obs.step_id)
    for theme in snapshot.themes:
        step_ids.update(theme.step_ids)
    observation_ids = {obs.id for obs in snapshot.observations}
    for theme in snapshot.themes:
        observation_ids.update(theme.observation_ids)
    return {
        EntityKind.THEME: frozenset(theme.id for theme in snapshot.themes),
        EntityKind.STEP: frozenset(step_ids),
        EntityKind.OBSERVATION: frozenset(observation_ids),
    }


def _plan_solutions(session_id: str, user_id: str | None, output: SolutionsOutput) -> list[PlannedArtifact]:
    planned: list[PlannedArtifact] = []
    for proposed in output.solutions:
        card = SolutionCard(
            session_id=session_id,
            bucket=proposed.bucket,
            title=proposed.title,
            description=proposed.description,
            expected_impact=proposed.expected_impact,
            effort_level=proposed.effort_level,
            risks=list(proposed.risks),
            dependencies=list(proposed.dependencies),
            recommended_wave=proposed.recommended_wave,
            status=SolutionStatus.DRAFT,
            created_by=user_id,
            updated_by=user_id,
        )
        planned.append(
            PlannedArtifact(
                label=f"solution {proposed.title!r}",
                record=card,
                links={
                    THEMES: list(proposed.theme_ids),
                    STEPS: list(proposed.step_ids),
                    OBSERVATIONS: list(proposed.observation_ids),
                },
            )
        )
    return planned


SOLUTIONS = StageStrategy(
    stage=Stage.SOLUTIONS,
    snapshot_type=SolutionsSnapshot,
    output_schema=SolutionsOutput,
    build_prompt=build_solutions_prompt,
    qualifying_rows=lambda snapshot: len(snapshot.themes),
    precondition_message="No themes found. Complete synthesis first.",
    build_allowlists=_solutions_allowlists,
    references=[
        ReferenceSpec(
            collection="solutions",
            id_lists={
                "theme_ids": EntityKind.THEME,
                "step_ids": EntityKind.STEP,
                "observation_ids": EntityKind.OBSERVATION,
            },
            label_field="title",
        )
    ],
    plan_artifacts=_plan_solutions,
)


# ---------------------------------------------------------------------------
# Sequencing
# ---------------------------------------------------------------------------

def _sequencing_allowlists(snapshot: SequencingSnapshot) -> dict[EntityKind, frozenset[str]]:
    return {EntityKind.SOLUTION: frozenset(solution.id for solution in snapshot.solutions)}


def _plan_sequence(session_id: str, user_id: str | None, output: SequencingOutput) -> list[PlannedArtifact]:
    prerequisites: dict[str, list[str]] = {}
    for edge in output.dependencies:
        targets = prerequisites.setdefault(edge.solution_id, [])
        if edge.depends_on_solution_id not in targets:
            targets.append(edge.depends_on_solution_id)

    planned: list[PlannedArtifact] = []
    placed: set[str] = set()
    for proposed in sorted(output.waves, key=lambda wave: wave.order_index):
        wave = ImplementationWave(
            session_id=session_id,
            name=proposed.name,
            order_index=proposed.order_index,
            start_estimate=proposed.start_estimate,
            end_estimate=proposed.end_estimate,
            created_by=user_id,
            updated_by=user_id,
        )
        planned.append(PlannedArtifact(label=f"wave {proposed.name!r}", record=wave))
        position = 0
        for solution_id in proposed.solution_ids:
            if solution_id in placed:
                logger.warning("Solution %s placed in more than one wave; keeping the earliest", solution_id)
                continue
            placed.add(solution_id)
            item = ImplementationItem(
                session_id=session_id,
                wave_id=wave.id,
                solution_id=solution_id,
                order_index=position,
                created_by=user_id,
                updated_by=user_id,
            )
            position += 1
            planned.append(
                PlannedArtifact(
                    label=f"item {solution_id} in wave {proposed.name!r}",
                    record=item,
                    links={DEPENDS_ON: list(prerequisites.get(solution_id, []))},
                    parent_id=wave.id,
                )
            )

    unplaced = sorted(set(prerequisites) - placed)
    if unplaced:
        logger.warning("Dependency edges for unplaced solutions ignored: %s", unplaced)
    return planned


SEQUENCING = StageStrategy(
    stage=Stage.SEQUENCING,
    snapshot_type=SequencingSnapshot,
    output_schema=SequencingOutput,
    build_prompt=build_sequencing_prompt,
    qualifying_rows=lambda snapshot: len(snapshot.solutions),
    precondition_message="No accepted solutions found. Accept solutions first.",
    build_allowlists=_sequencing_allowlists,
    references=[
        ReferenceSpec(collection="waves", id_lists={"solution_ids": EntityKind.SOLUTION}),
        ReferenceSpec(
            collection="dependencies",
            edges={"solution_id": EntityKind.SOLUTION, "depends_on_solution_id": EntityKind.SOLUTION},
            reject_self_loops=True,
            label_field="solution_id",
        ),
    ],
    plan_artifacts=_plan_sequence,
)


STAGE_STRATEGIES: dict[Stage, StageStrategy] = {
    Stage.SYNTHESIS: SYNTHESIS,
    Stage.SOLUTIONS: SOLUTIONS,
    Stage.SEQUENCING: SEQUENCING,
}


def get_strategy(stage: Stage | str) -> StageStrategy:
    try:
        return STAGE_STRATEGIES[Stage(stage)]
    except ValueError as exc:
        raise ValueError(f"Unknown stage: {stage!r}") from exc


# ---------------------------------------------------------------------------
# Snapshot collectors: feed the next stage from committed artifacts
# ---------------------------------------------------------------------------

def collect_theme_inputs(store: StudioStateStore, session_id: str) -> list[ThemeInput]:
    """Draft and confirmed themes with their evidence links; rejected themes are excluded."""
    inputs: list[ThemeInput] = []
    for theme in cast(list[Theme], store.list_artifacts(session_id, ArtifactKind.THEME)):
        if theme.status == ThemeStatus.REJECTED:
            continue
        links = store.read_links(session_id, theme.id)
        inputs.append(
            ThemeInput(
                id=theme.id,
                name=theme.name,
                summary=theme.summary,
                root_cause_hypotheses=list(theme.root_cause_hypotheses),
                observation_ids=links.get(OBSERVATIONS, []),
                step_ids=links.get(STEPS, []),
                waste_type_ids=links.get(WASTE_TYPES, []),
            )
        )
    return inputs


def collect_accepted_solution_inputs(store: StudioStateStore, session_id: str) -> list[SolutionInput]:
    inputs: list[SolutionInput] = []
    for card in cast(list[SolutionCard], store.list_artifacts(session_id, ArtifactKind.SOLUTION)):
        if card.status != SolutionStatus.ACCEPTED:
            continue
        links = store.read_links(session_id, card.id)
        inputs.append(
            SolutionInput(
                id=card.id,
                bucket=card.bucket,
                title=card.title,
                description=card.description,
                effort_level=card.effort_level,
                recommended_wave=card.recommended_wave,
                dependencies=list(card.dependencies),
                step_ids=links.get(STEPS, []),
            )
        )
    return inputs
