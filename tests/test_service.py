from studio_agents.errors import ProviderError
from studio_agents.models import ArtifactKind, ObservationInput, ProcessStepInput, Stage, SynthesisSnapshot
from studio_agents.rate_limit import RateLimiter, RateLimitPolicy
from studio_agents.service import Outcome, StudioAgentService
from studio_agents.state_store import StudioStateStore

from support import FakeInvoker, solution_payload, theme_payload


def _service(store: StudioStateStore, invoker: FakeInvoker, limit: int = 20) -> StudioAgentService:
    return StudioAgentService(
        store=store,
        invoker=invoker,
        rate_limiter=RateLimiter(),
        policy=RateLimitPolicy(identifier="insights", limit=limit, window_seconds=3600),
    )


def test_synthesis_cache_and_forced_rerun_scenario(store: StudioStateStore) -> None:
    snapshot = SynthesisSnapshot(
        observations=[
            ObservationInput(id="obs-1", notes="Re-keyed orders", step_id="step-1"),
            ObservationInput(id="obs-2", notes="Credit queue", step_id="step-2"),
            ObservationInput(id="obs-3", notes="Approval queue", step_id="step-2"),
        ],
        steps=[ProcessStepInput(id="step-1", step_name="Intake"), ProcessStepInput(id="step-2", step_name="Credit")],
    )
    invoker = FakeInvoker(
        {
            Stage.SYNTHESIS: {
                "themes": [
                    theme_payload("Re-keying", ["obs-1"], step_ids=["step-1"]),
                    theme_payload("Queues", ["obs-2", "obs-from-session-2"], step_ids=["step-2"]),
                ]
            }
        }
    )
    service = _service(store, invoker)

    first = service.run_stage(Stage.SYNTHESIS, "s1", snapshot, user_id="u1")
    assert first.outcome == Outcome.OK
    assert first.message == ""
    themes = store.list_artifacts("s1", ArtifactKind.THEME)
    queues = next(theme for theme in themes if theme.name == "Queues")
    assert store.read_links("s1", queues.id)["observations"] == ["obs-2"]

    second = service.run_stage(Stage.SYNTHESIS, "s1", snapshot, user_id="u1")
    assert second.outcome == Outcome.CACHED
    assert second.data == first.data
    assert second.run_id == first.run_id

    old_ids = {theme.id for theme in themes}
    invoker.responses[Stage.SYNTHESIS] = {"themes": [theme_payload("Credit waits", ["obs-2"])]}
    smaller = snapshot.model_copy(update={"observations": snapshot.observations[1:]})
    third = service.run_stage(Stage.SYNTHESIS, "s1", smaller, user_id="u1", force_rerun=True)
    assert third.outcome == Outcome.OK

    remaining = store.list_artifacts("s1", ArtifactKind.THEME)
    assert [theme.name for theme in remaining] == ["Credit waits"]
    assert all(store.read_links("s1", theme_id) == {} for theme_id in old_ids)
    assert remaining[0].id not in old_ids


def test_full_pipeline_feeds_each_stage_from_curated_artifacts(
    store: StudioStateStore, synthesis_snapshot: SynthesisSnapshot
) -> None:
    invoker = FakeInvoker(
        {
            Stage.SYNTHESIS: {
                "themes": [
                    theme_payload("Re-keying", ["obs-1"], step_ids=["step-1"]),
                    theme_payload("Noise", ["obs-2"]),
                ]
            }
        }
    )
    service = _service(store, invoker)
    assert service.run_stage(Stage.SYNTHESIS, "s1", synthesis_snapshot, user_id="u1").ok

    themes = {theme.name: theme for theme in store.list_artifacts("s1", ArtifactKind.THEME)}
    assert service.update_artifact_status("theme", themes["Re-keying"].id, 1, "confirmed", user_id="u1").ok
    assert service.update_artifact_status("theme", themes["Noise"].id, 1, "rejected", user_id="u1").ok

    solutions_snapshot = service.build_solutions_snapshot("s1", steps=synthesis_snapshot.steps)
    assert [theme.name for theme in solutions_snapshot.themes] == ["Re-keying"]
    assert solutions_snapshot.themes[0].observation_ids == ["obs-1"]

    rekey_id = themes["Re-keying"].id
    invoker.responses[Stage.SOLUTIONS] = {
        "solutions": [
            solution_payload("Single entry", [rekey_id, themes["Noise"].id], step_ids=["step-1"]),
            solution_payload("Shared inbox", [rekey_id]),
        ]
    }
    assert service.run_stage(Stage.SOLUTIONS, "s1", solutions_snapshot, user_id="u1").ok
    cards = {card.title: card for card in store.list_artifacts("s1", ArtifactKind.SOLUTION)}
    assert store.read_links("s1", cards["Single entry"].id) == {"themes": [rekey_id], "steps": ["step-1"]}

    precondition = service.run_stage(Stage.SEQUENCING, "s1", service.build_sequencing_snapshot("s1"), user_id="u1")
    assert precondition.outcome == Outcome.PRECONDITION_FAILED
    assert precondition.message == "No accepted solutions found. Accept solutions first."

    assert service.update_artifact_status("solution", cards["Single entry"].id, 1, "accepted", user_id="u2").ok
    sequencing_snapshot = service.build_sequencing_snapshot("s1")
    assert [solution.step_ids for solution in sequencing_snapshot.solutions] == [["step-1"]]

    single_id = cards["Single entry"].id
    invoker.responses[Stage.SEQUENCING] = {
        "waves": [{"name": "Quick wins", "order_index": 0, "solution_ids": [single_id, cards["Shared inbox"].id]}]
    }
    assert service.run_stage(Stage.SEQUENCING, "s1", sequencing_snapshot, user_id="u1").ok

    artifacts = service.get_artifacts("s1", Stage.SEQUENCING)
    assert [wave["name"] for wave in artifacts.data["artifacts"]["wave"]] == ["Quick wins"]
    assert [item["solution_id"] for item in artifacts.data["artifacts"]["item"]] == [single_id]
    assert artifacts.data["latest_run"]["status"] == "succeeded"
    assert artifacts.model == "fake-model"


def test_rate_limit_denies_and_reports_metadata(store: StudioStateStore, synthesis_snapshot: SynthesisSnapshot) -> None:
    invoker = FakeInvoker({Stage.SYNTHESIS: {"themes": [theme_payload("T", ["obs-1"])]}})
    service = _service(store, invoker, limit=2)

    responses = [service.run_stage(Stage.SYNTHESIS, "s1", synthesis_snapshot, user_id="u1") for _ in range(3)]

    assert [response.outcome for response in responses] == [Outcome.OK, Outcome.CACHED, Outcome.RATE_LIMITED]
    assert responses[0].remaining == 1
    denied = responses[2]
    assert denied.status_code == 429
    assert (denied.limit, denied.remaining) == (2, 0)
    assert denied.reset_seconds is not None and denied.reset_seconds > 0
    assert service.run_stage(Stage.SYNTHESIS, "s1", synthesis_snapshot, user_id="u2").ok


def test_provider_failure_is_generic_and_carries_run_id(
    store: StudioStateStore, synthesis_snapshot: SynthesisSnapshot
) -> None:
    service = _service(store, FakeInvoker({Stage.SYNTHESIS: ProviderError("HTTP 502 from upstream")}))
    response = service.run_stage(Stage.SYNTHESIS, "s1", synthesis_snapshot, user_id="u1")
    assert response.outcome == Outcome.PROVIDER_FAILED
    assert response.status_code == 500
    assert "502" not in response.message
    assert response.run_id is not None
    assert service.get_artifacts("s1", "synthesis").data["latest_run"]["status"] == "failed"


def test_status_update_conflict_and_transition_signals(
    store: StudioStateStore, synthesis_snapshot: SynthesisSnapshot
) -> None:
    service = _service(store, FakeInvoker({Stage.SYNTHESIS: {"themes": [theme_payload("T", ["obs-1"])]}}))
    service.run_stage(Stage.SYNTHESIS, "s1", synthesis_snapshot, user_id="u1")
    theme_id = store.list_artifacts("s1", ArtifactKind.THEME)[0].id

    confirmed = service.update_artifact_status("theme", theme_id, 1, "confirmed", user_id="u1")
    assert confirmed.ok and confirmed.data["revision"] == 2

    stale = service.update_artifact_status("theme", theme_id, 1, "rejected", user_id="u2")
    assert stale.outcome == Outcome.CONFLICT
    assert stale.status_code == 409
    assert stale.message == "Conflict: theme was modified by another user"

    rejected = service.update_artifact_status("theme", theme_id, 2, "rejected", user_id="u2")
    assert rejected.ok
    back = service.update_artifact_status("theme", theme_id, 3, "draft", user_id="u2")
    assert back.outcome == Outcome.INVALID_TRANSITION

    missing = service.update_artifact_status("solution", "nope", 1, "accepted", user_id="u1")
    assert missing.outcome == Outcome.NOT_FOUND
    assert service.update_artifact_status("gadget", theme_id, 1, "x", user_id="u1").outcome == Outcome.INVALID_REQUEST


def test_update_artifact_edits_fields_under_revision(
    store: StudioStateStore, synthesis_snapshot: SynthesisSnapshot
) -> None:
    service = _service(store, FakeInvoker({Stage.SYNTHESIS: {"themes": [theme_payload("T", ["obs-1"])]}}))
    service.run_stage(Stage.SYNTHESIS, "s1", synthesis_snapshot, user_id="u1")
    theme_id = store.list_artifacts("s1", ArtifactKind.THEME)[0].id

    renamed = service.update_artifact("theme", theme_id, 1, {"name": "Renamed"}, user_id="u2")
    assert renamed.ok and renamed.data["name"] == "Renamed" and renamed.data["updated_by"] == "u2"
    assert service.update_artifact("theme", theme_id, 1, {"name": "Again"}, user_id="u3").outcome == Outcome.CONFLICT
    assert service.update_artifact("theme", theme_id, 2, {"id": "x"}, user_id="u3").outcome == Outcome.INVALID_REQUEST


def test_get_artifacts_orders_newest_first_and_includes_links(
    store: StudioStateStore, synthesis_snapshot: SynthesisSnapshot
) -> None:
    service = _service(store, FakeInvoker({Stage.SYNTHESIS: {"themes": [theme_payload("T", ["obs-1"])]}}))
    empty = service.get_artifacts("s1", Stage.SYNTHESIS)
    assert empty.data == {"artifacts": {"theme": []}, "latest_run": None}

    service.run_stage(Stage.SYNTHESIS, "s1", synthesis_snapshot, user_id="u1")
    response = service.get_artifacts("s1", "synthesis")
    (theme,) = response.data["artifacts"]["theme"]
    assert theme["links"] == {"observations": ["obs-1"]}
    assert response.to_dict()["outcome"] == "ok"
    assert service.get_artifacts("s1", "bogus").outcome == Outcome.INVALID_REQUEST
