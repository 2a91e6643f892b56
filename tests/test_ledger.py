import pytest

from studio_agents.errors import ArtifactNotFoundError
from studio_agents.ledger import RunLedger
from studio_agents.models import RunStatus, Stage
from studio_agents.state_store import StudioStateStore


def test_start_creates_pending_record(store: StudioStateStore) -> None:
    ledger = RunLedger(store)
    run = ledger.start(session_id="s1", stage=Stage.SYNTHESIS, fingerprint="f" * 32, created_by="u1")
    assert run.status == RunStatus.PENDING
    assert ledger.get("s1", run.run_id) == run


def test_mark_succeeded_records_model_and_output(store: StudioStateStore) -> None:
    ledger = RunLedger(store)
    run = ledger.start(session_id="s1", stage=Stage.SYNTHESIS, fingerprint="abc", created_by=None)
    done = ledger.mark_succeeded("s1", run.run_id, model="gpt-x", provider="openai", output={"themes": []})
    assert done.status == RunStatus.SUCCEEDED
    assert done.model == "gpt-x"
    assert done.provider == "openai"
    assert done.output == {"themes": []}
    assert done.completed_at is not None


def test_finalized_run_cannot_be_finalized_again(store: StudioStateStore) -> None:
    ledger = RunLedger(store)
    run = ledger.start(session_id="s1", stage=Stage.SYNTHESIS, fingerprint="abc", created_by=None)
    ledger.mark_failed("s1", run.run_id, error="boom")
    with pytest.raises(ValueError, match="already finalized"):
        ledger.mark_succeeded("s1", run.run_id, model="m", provider="p", output={})
    assert ledger.get("s1", run.run_id).status == RunStatus.FAILED


def test_find_cached_returns_latest_succeeded_match(store: StudioStateStore) -> None:
    ledger = RunLedger(store)
    first = ledger.start(session_id="s1", stage=Stage.SYNTHESIS, fingerprint="abc", created_by=None)
    ledger.mark_succeeded("s1", first.run_id, model="m1", provider="p", output={"n": 1})
    second = ledger.start(session_id="s1", stage=Stage.SYNTHESIS, fingerprint="abc", created_by=None)
    ledger.mark_succeeded("s1", second.run_id, model="m2", provider="p", output={"n": 2})
    failed = ledger.start(session_id="s1", stage=Stage.SYNTHESIS, fingerprint="abc", created_by=None)
    ledger.mark_failed("s1", failed.run_id, error="timeout")
    other = ledger.start(session_id="s1", stage=Stage.SOLUTIONS, fingerprint="abc", created_by=None)
    ledger.mark_succeeded("s1", other.run_id, model="m3", provider="p", output={"n": 3})

    cached = ledger.find_cached("s1", Stage.SYNTHESIS, "abc")
    assert cached is not None
    assert cached.run_id == second.run_id
    assert ledger.find_cached("s1", Stage.SYNTHESIS, "zzz") is None
    assert ledger.find_cached("s2", Stage.SYNTHESIS, "abc") is None
    assert ledger.latest("s1", Stage.SYNTHESIS).run_id == failed.run_id


def test_lifecycle_events_are_appended(store: StudioStateStore) -> None:
    ledger = RunLedger(store)
    run = ledger.start(session_id="s1", stage=Stage.SEQUENCING, fingerprint="abc", created_by=None)
    ledger.mark_failed("s1", run.run_id, error="bad json")
    events = store.read_run_events("s1")
    assert [event["event"] for event in events] == ["run_started", "run_failed"]
    assert events[-1]["error"] == "bad json"


def test_get_missing_run_raises(store: StudioStateStore) -> None:
    with pytest.raises(ArtifactNotFoundError):
        RunLedger(store).get("s1", "missing")
