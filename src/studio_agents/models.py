from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    return datetime.now(UTC)


def new_record_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class Stage(str, Enum):
    SYNTHESIS = "synthesis"
    SOLUTIONS = "solutions"
    SEQUENCING = "sequencing"


class RunStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class ArtifactKind(str, Enum):
    THEME = "theme"
    SOLUTION = "solution"
    WAVE = "wave"
    ITEM = "item"


class EntityKind(str, Enum):
    """Kinds of input entity a provider output may reference by ID."""

    OBSERVATION = "observation"
    STEP = "step"
    WASTE_TYPE = "waste_type"
    THEME = "theme"
    SOLUTION = "solution"


class ThemeStatus(str, Enum):
    DRAFT = "draft"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"


class SolutionStatus(str, Enum):
    DRAFT = "draft"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class EffortLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class SolutionBucket(str, Enum):
    ELIMINATE = "eliminate"
    MODIFY = "modify"
    CREATE = "create"


# ---------------------------------------------------------------------------
# Provider output schemas (structured output contracts)
# ---------------------------------------------------------------------------

class ProposedTheme(BaseModel):
    name: str = Field(min_length=1)
    summary: str = Field(min_length=1)
    confidence: Confidence
    root_cause_hypotheses: list[str] = Field(default_factory=list)
    observation_ids: list[str] = Field(min_length=1)
    step_ids: list[str] = Field(default_factory=list)
    waste_type_ids: list[str] = Field(default_factory=list)


class SynthesisOutput(BaseModel):
    """Themes clustered from waste-walk observations."""

    themes: list[ProposedTheme] = Field(min_length=1)


class ProposedSolution(BaseModel):
    bucket: SolutionBucket
    title: str = Field(min_length=1)
    description: str = Field(min_length=1)
    expected_impact: str = Field(min_length=1)
    effort_level: EffortLevel
    risks: list[str] = Field(default_factory=list)
    dependencies: list[str] = Field(default_factory=list)
    recommended_wave: str | None = None
    theme_ids: list[str] = Field(default_factory=list)
    step_ids: list[str] = Field(default_factory=list)
    observation_ids: list[str] = Field(default_factory=list)


class SolutionsOutput(BaseModel):
    """Solution cards bucketed as eliminate / modify / create."""

    solutions: list[ProposedSolution] = Field(min_length=1)


class ProposedWave(BaseModel):
    name: str = Field(min_length=1)
    order_index: int = Field(ge=0)
    start_estimate: str | None = None
    end_estimate: str | None = None
    solution_ids: list[str] = Field(default_factory=list)


class ProposedDependency(BaseModel):
    solution_id: str
    depends_on_solution_id: str


class SequencingOutput(BaseModel):
    """Implementation waves over accepted solutions plus dependency edges."""

    waves: list[ProposedWave] = Field(min_length=1)
    dependencies: list[ProposedDependency] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Input snapshots (ephemeral, never persisted directly)
# ---------------------------------------------------------------------------

class ObservationInput(BaseModel):
    id: str
    notes: str | None = None
    step_id: str | None = None
    step_name: str = "Unknown"
    lane: str = "Unknown"
    waste_type_ids: list[str] = Field(default_factory=list)
    priority_score: float | None = None


class ProcessStepInput(BaseModel):
    id: str
    step_name: str
    lane: str | None = None


class WasteTypeInput(BaseModel):
    id: str
    code: str
    name: str


class ThemeInput(BaseModel):
    id: str
    name: str
    summary: str = ""
    root_cause_hypotheses: list[str] = Field(default_factory=list)
    observation_ids: list[str] = Field(default_factory=list)
    step_ids: list[str] = Field(default_factory=list)
    waste_type_ids: list[str] = Field(default_factory=list)


class SolutionInput(BaseModel):
    id: str
    bucket: SolutionBucket
    title: str
    description: str = ""
    effort_level: EffortLevel = EffortLevel.MEDIUM
    recommended_wave: str | None = None
    dependencies: list[str] = Field(default_factory=list)
    step_ids: list[str] = Field(default_factory=list)


class SynthesisSnapshot(BaseModel):
    workflow_context: str | None = None
    observations: list[ObservationInput] = Field(default_factory=list)
    steps: list[ProcessStepInput] = Field(default_factory=list)
    waste_types: list[WasteTypeInput] = Field(default_factory=list)


class SolutionsSnapshot(BaseModel):
    workflow_context: str | None = None
    themes: list[ThemeInput] = Field(default_factory=list)
    observations: list[ObservationInput] = Field(default_factory=list)
    steps: list[ProcessStepInput] = Field(default_factory=list)


class SequencingSnapshot(BaseModel):
    solutions: list[SolutionInput] = Field(default_factory=list)


InputSnapshot = SynthesisSnapshot | SolutionsSnapshot | SequencingSnapshot


# ---------------------------------------------------------------------------
# Run ledger
# ---------------------------------------------------------------------------

class RunRecord(BaseModel):
    """One reasoning-provider invocation attempt for a (session, stage)."""

    run_id: str = Field(default_factory=new_record_id)
    session_id: str
    stage: Stage
    status: RunStatus = RunStatus.PENDING
    fingerprint: str
    model: str | None = None
    provider: str | None = None
    created_by: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = None
    error: str | None = None
    output: dict[str, Any] | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status != RunStatus.PENDING

    def summary(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "model": self.model,
            "provider": self.provider,
        }


# ---------------------------------------------------------------------------
# Persisted artifacts
# ---------------------------------------------------------------------------

class StudioArtifact(BaseModel):
    """Common columns of every agent-produced, user-curated artifact."""

    model_config = ConfigDict(validate_assignment=True)

    kind: ClassVar[ArtifactKind]
    immutable_fields: ClassVar[frozenset[str]] = frozenset(
        {"id", "session_id", "revision", "created_by", "created_at"}
    )

    id: str = Field(default_factory=new_record_id)
    session_id: str
    created_by: str | None = None
    updated_by: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    revision: int = Field(default=1, ge=1)


class Theme(StudioArtifact):
    kind: ClassVar[ArtifactKind] = ArtifactKind.THEME

    name: str
    summary: str = ""
    confidence: Confidence = Confidence.MEDIUM
    root_cause_hypotheses: list[str] = Field(default_factory=list)
    status: ThemeStatus = ThemeStatus.DRAFT


class SolutionCard(StudioArtifact):
    kind: ClassVar[ArtifactKind] = ArtifactKind.SOLUTION

    bucket: SolutionBucket
    title: str
    description: str = ""
    expected_impact: str = ""
    effort_level: EffortLevel = EffortLevel.MEDIUM
    risks: list[str] = Field(default_factory=list)
    dependencies: list[str] = Field(default_factory=list)
    recommended_wave: str | None = None
    status: SolutionStatus = SolutionStatus.DRAFT


class ImplementationWave(StudioArtifact):
    kind: ClassVar[ArtifactKind] = ArtifactKind.WAVE

    name: str
    order_index: int = Field(default=0, ge=0)
    start_estimate: str | None = None
    end_estimate: str | None = None


class ImplementationItem(StudioArtifact):
    """One accepted solution placed in a wave."""

    kind: ClassVar[ArtifactKind] = ArtifactKind.ITEM

    wave_id: str
    solution_id: str
    order_index: int = Field(default=0, ge=0)


class LinkRecord(BaseModel):
    owner_id: str
    relation: str
    target_id: str
    created_at: datetime = Field(default_factory=utc_now)


ARTIFACT_MODELS: dict[ArtifactKind, type[StudioArtifact]] = {
    ArtifactKind.THEME: Theme,
    ArtifactKind.SOLUTION: SolutionCard,
    ArtifactKind.WAVE: ImplementationWave,
    ArtifactKind.ITEM: ImplementationItem,
}

# Children before parents so deletion never leaves dangling items.
STAGE_ARTIFACT_KINDS: dict[Stage, tuple[ArtifactKind, ...]] = {
    Stage.SYNTHESIS: (ArtifactKind.THEME,),
    Stage.SOLUTIONS: (ArtifactKind.SOLUTION,),
    Stage.SEQUENCING: (ArtifactKind.ITEM, ArtifactKind.WAVE),
}
