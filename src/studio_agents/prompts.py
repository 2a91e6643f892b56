"""Prompt text for the three analysis stages.

Every prompt lists entities together with their IDs; the provider must cite
those IDs verbatim, and anything it cites that is not listed is dropped later.
"""

from __future__ import annotations

from .models import SequencingSnapshot, SolutionsSnapshot, SynthesisSnapshot

SAMPLE_OBSERVATION_LIMIT = 10

SYSTEM_PROMPTS: dict[str, str] = {
    "synthesis": (
        "You are a Lean process improvement analyst. Cluster waste-walk observations into "
        "coherent themes of waste or inefficiency. Anchor every theme to the observation IDs "
        "that support it. Describe problems only; do not propose solutions. Reply with JSON "
        "that matches the requested schema."
    ),
    "solutions": (
        "You are a Lean process improvement designer. Propose actionable solutions for the "
        "given themes and place each in one bucket: eliminate, modify or create. Link every "
        "solution to the theme, step and observation IDs it addresses. Reply with JSON that "
        "matches the requested schema."
    ),
    "sequencing": (
        "You are an implementation planner. Group the accepted solutions into ordered waves, "
        "starting with quick wins and respecting dependencies between solutions. Reference "
        "solutions only by the IDs given. Reply with JSON that matches the requested schema."
    ),
}


def _context_block(workflow_context: str | None) -> str:
    text = (workflow_context or "").strip()
    return text if text else "No workflow context provided."


def build_synthesis_prompt(snapshot: SynthesisSnapshot) -> str:
    steps = "\n".join(f"- {step.id}: {step.step_name} (lane: {step.lane or 'n/a'})" for step in snapshot.steps)
    waste_names = {waste.id: waste.code for waste in snapshot.waste_types}
    waste_types = "\n".join(f"- {waste.id}: {waste.code} - {waste.name}" for waste in snapshot.waste_types)
    observations = "\n".join(
        f"### Observation {obs.id}\n"
        f"- Step: {obs.step_name} (lane: {obs.lane})\n"
        f"- Priority score: {obs.priority_score if obs.priority_score is not None else 'n/a'}\n"
        f"- Waste types: {', '.join(waste_names.get(wid, wid) for wid in obs.waste_type_ids) or 'none'}\n"
        f"- Notes: {obs.notes or 'no notes'}"
        for obs in snapshot.observations
    )
    return (
        "Group the observations below into themes.\n\n"
        f"## Workflow context\n{_context_block(snapshot.workflow_context)}\n\n"
        f"## Process steps\n{steps or '- none'}\n\n"
        f"## Waste types\n{waste_types or '- none'}\n\n"
        f"## Observations ({len(snapshot.observations)})\n{observations}\n\n"
        "For each theme give a name, a summary, a confidence (high, medium or low), root cause "
        "hypotheses, and the observation_ids, step_ids and waste_type_ids it draws on. "
        "Every theme must cite at least one observation."
    )


def build_solutions_prompt(snapshot: SolutionsSnapshot) -> str:
    themes = "\n".join(
        f"### Theme {theme.id}: {theme.name}\n"
        f"- Summary: {theme.summary or 'n/a'}\n"
        f"- Root causes: {', '.join(theme.root_cause_hypotheses) or 'not identified'}\n"
        f"- Evidence: {len(theme.observation_ids)} observations across {len(theme.step_ids)} steps"
        for theme in snapshot.themes
    )
    steps = "\n".join(f"- {step.id}: {step.step_name} (lane: {step.lane or 'n/a'})" for step in snapshot.steps)
    samples = "\n".join(
        f"- [{obs.id}] {obs.step_name}: {obs.notes or 'no notes'}"
        for obs in snapshot.observations[:SAMPLE_OBSERVATION_LIMIT]
    )
    return (
        "Propose solutions for the themes below.\n\n"
        f"## Workflow context\n{_context_block(snapshot.workflow_context)}\n\n"
        f"## Themes\n{themes}\n\n"
        f"## Process steps\n{steps or '- none'}\n\n"
        f"## Sample observations\n{samples or '- none'}\n\n"
        "For each solution give a bucket, title, description, expected impact, effort level "
        "(low, medium or high), risks, dependencies, a recommended wave, and the theme_ids, "
        "step_ids and observation_ids it addresses."
    )


def build_sequencing_prompt(snapshot: SequencingSnapshot) -> str:
    solutions = "\n".join(
        f"- {solution.id}: [{solution.bucket.value}] {solution.title} "
        f"(effort: {solution.effort_level.value}, suggested wave: {solution.recommended_wave or 'n/a'}, "
        f"dependencies: {', '.join(solution.dependencies) or 'none'})"
        for solution in snapshot.solutions
    )
    return (
        "Sequence the accepted solutions below into implementation waves.\n\n"
        f"## Accepted solutions ({len(snapshot.solutions)})\n{solutions}\n\n"
        "Return waves with a name, an order_index starting at 0, optional start and end "
        "estimates, and the solution_ids placed in each wave. List dependency edges as "
        "solution_id / depends_on_solution_id pairs."
    )
