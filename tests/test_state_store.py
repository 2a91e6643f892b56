import threading

import pytest

from studio_agents.errors import ArtifactNotFoundError
from studio_agents.models import ArtifactKind, SolutionBucket, SolutionCard, Stage, Theme
from studio_agents.state_store import StudioStateStore, sanitize_key


def _theme(session_id: str = "session-1", name: str = "Rework") -> Theme:
    return Theme(session_id=session_id, name=name, summary="Orders are re-keyed")


def test_insert_and_read_artifact_roundtrip(store: StudioStateStore) -> None:
    theme = _theme()
    store.insert_artifact(theme)
    loaded = store.read_artifact("session-1", ArtifactKind.THEME, theme.id)
    assert isinstance(loaded, Theme)
    assert loaded == theme


def test_insert_artifact_rejects_duplicate_id(store: StudioStateStore) -> None:
    theme = _theme()
    store.insert_artifact(theme)
    with pytest.raises(ValueError, match="already exists"):
        store.insert_artifact(theme)


def test_list_artifacts_is_scoped_by_session_and_kind(store: StudioStateStore) -> None:
    store.insert_artifact(_theme("session-1", "A"))
    store.insert_artifact(_theme("session-2", "B"))
    store.insert_artifact(SolutionCard(session_id="session-1", bucket=SolutionBucket.MODIFY, title="Fix"))
    themes = store.list_artifacts("session-1", ArtifactKind.THEME)
    assert [theme.name for theme in themes] == ["A"]
    assert len(store.list_artifacts("session-1", ArtifactKind.SOLUTION)) == 1
    assert store.list_artifacts("session-3", ArtifactKind.THEME) == []


def test_write_links_skips_empty_and_duplicates(store: StudioStateStore) -> None:
    theme = _theme()
    store.insert_artifact(theme)
    assert store.write_links("session-1", theme.id, "observations", []) == 0
    assert store.write_links("session-1", theme.id, "observations", ["obs-1", "obs-2", "obs-1"]) == 2
    assert store.write_links("session-1", theme.id, "observations", ["obs-2"]) == 0
    assert store.read_links("session-1", theme.id) == {"observations": ["obs-1", "obs-2"]}


def test_delete_artifacts_cascades_to_links(store: StudioStateStore) -> None:
    theme = _theme()
    store.insert_artifact(theme)
    store.write_links("session-1", theme.id, "steps", ["step-1"])
    assert store.delete_artifacts("session-1", ArtifactKind.THEME) == 1
    assert store.list_artifacts("session-1", ArtifactKind.THEME) == []
    assert store.read_links("session-1", theme.id) == {}


def test_locate_and_modify_artifact(store: StudioStateStore) -> None:
    theme = _theme("session-9")
    store.insert_artifact(theme)
    assert store.locate_artifact(ArtifactKind.THEME, theme.id) == "session-9"
    updated = store.modify_artifact(ArtifactKind.THEME, theme.id, lambda current: current.model_copy(update={"name": "Renamed"}))
    assert updated.name == "Renamed"
    assert store.read_artifact("session-9", ArtifactKind.THEME, theme.id).name == "Renamed"


def test_locate_missing_artifact_raises(store: StudioStateStore) -> None:
    with pytest.raises(ArtifactNotFoundError):
        store.locate_artifact(ArtifactKind.SOLUTION, "missing")


def test_corrupt_artifact_file_raises_value_error(store: StudioStateStore) -> None:
    theme = _theme()
    path = store.insert_artifact(theme)
    path.write_text('{"session_id": "session-1"}', encoding="utf-8")
    with pytest.raises(ValueError, match="failed validation"):
        store.read_artifact("session-1", ArtifactKind.THEME, theme.id)


def test_stage_locks_are_independent_per_session(store: StudioStateStore) -> None:
    with store.stage_lock("session-1", Stage.SYNTHESIS):
        with store.stage_lock("session-2", Stage.SYNTHESIS):
            pass
    assert (store.session_dir("session-1") / "locks").is_dir()


def test_sanitize_key_is_one_to_one() -> None:
    assert sanitize_key("session-1") == "session-1"
    keys = {sanitize_key(value) for value in ["acme-1", "acme/1", "acme 1", "acme-1 ", "../acme-1"]}
    assert len(keys) == 5
    assert all("/" not in key and key not in {".", ".."} for key in keys)
    assert sanitize_key("acme/1") == sanitize_key("acme/1")
    assert sanitize_key("///").startswith("~")
    assert len(sanitize_key("x" * 500)) < 128
    with pytest.raises(ValueError, match="non-empty"):
        sanitize_key("   ")


def test_similar_session_ids_do_not_share_storage(store: StudioStateStore) -> None:
    store.insert_artifact(_theme("acme/1", "A"))
    store.insert_artifact(_theme("acme 1", "B"))
    store.insert_artifact(_theme("acme-1", "C"))

    assert store.delete_artifacts("acme 1", ArtifactKind.THEME) == 1
    assert [theme.name for theme in store.list_artifacts("acme/1", ArtifactKind.THEME)] == ["A"]
    assert [theme.name for theme in store.list_artifacts("acme-1", ArtifactKind.THEME)] == ["C"]
    assert store.list_artifacts("acme 1", ArtifactKind.THEME) == []


def test_list_artifacts_ignores_records_owned_by_another_session(store: StudioStateStore) -> None:
    stray = _theme("session-2", "Stray")
    directory = store.artifacts_dir("session-1", ArtifactKind.THEME)
    directory.mkdir(parents=True)
    (directory / f"{stray.id}.json").write_text(stray.model_dump_json(), encoding="utf-8")
    assert store.list_artifacts("session-1", ArtifactKind.THEME) == []


def test_delete_waits_for_in_flight_modify_and_wins(store: StudioStateStore) -> None:
    theme = _theme()
    store.insert_artifact(theme)
    deleter = threading.Thread(target=store.delete_artifacts, args=("session-1", ArtifactKind.THEME))

    def rename_while_delete_is_pending(current: Theme) -> Theme:
        deleter.start()
        deleter.join(timeout=0.2)
        assert deleter.is_alive()
        return current.model_copy(update={"name": "renamed"})

    store.modify_artifact(ArtifactKind.THEME, theme.id, rename_while_delete_is_pending)
    deleter.join(timeout=5)

    assert not deleter.is_alive()
    assert store.list_artifacts("session-1", ArtifactKind.THEME) == []


def test_modify_after_delete_reports_not_found(store: StudioStateStore) -> None:
    theme = _theme()
    store.insert_artifact(theme)
    store.delete_artifacts("session-1", ArtifactKind.THEME)
    with pytest.raises(ArtifactNotFoundError):
        store.modify_artifact(ArtifactKind.THEME, theme.id, lambda current: current)
