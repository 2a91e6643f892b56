from pathlib import Path

import pytest

from studio_agents.models import (
    ObservationInput,
    ProcessStepInput,
    SynthesisSnapshot,
    WasteTypeInput,
)
from studio_agents.state_store import StudioStateStore


@pytest.fixture
def store(tmp_path: Path) -> StudioStateStore:
    return StudioStateStore(tmp_path / "state_store")


@pytest.fixture
def synthesis_snapshot() -> SynthesisSnapshot:
    return SynthesisSnapshot(
        workflow_context="Order intake to dispatch",
        observations=[
            ObservationInput(
                id="obs-1", notes="Orders re-keyed twice", step_id="step-1", step_name="Intake", waste_type_ids=["w-over"]
            ),
            ObservationInput(
                id="obs-2", notes="Waiting on credit check", step_id="step-2", step_name="Credit", waste_type_ids=["w-wait"]
            ),
            ObservationInput(
                id="obs-3", notes="Approvals queue for days", step_id="step-2", step_name="Credit", waste_type_ids=["w-wait"]
            ),
        ],
        steps=[
            ProcessStepInput(id="step-1", step_name="Intake", lane="Sales"),
            ProcessStepInput(id="step-2", step_name="Credit", lane="Finance"),
        ],
        waste_types=[
            WasteTypeInput(id="w-over", code="OP", name="Over-processing"),
            WasteTypeInput(id="w-wait", code="W", name="Waiting"),
        ],
    )
