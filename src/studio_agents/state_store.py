from __future__ import annotations

import fcntl
import hashlib
import json
import logging
import os
import re
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator, TypeVar

from pydantic import BaseModel, ValidationError

from .errors import ArtifactNotFoundError
from .models import (
    ARTIFACT_MODELS,
    ArtifactKind,
    LinkRecord,
    RunRecord,
    Stage,
    StudioArtifact,
)

logger = logging.getLogger(__name__)

ArtifactT = TypeVar("ArtifactT", bound=StudioArtifact)

# ---------------------------------------------------------------------------
# File locking helpers
# ---------------------------------------------------------------------------

_LOCK_SUFFIX = ".lock"


@contextmanager
def _locked_file(path: Path) -> Iterator[None]:
    """Acquire an exclusive file lock for the duration of the context.

    Uses a separate .lock sidecar file so the actual data file can be
    atomically replaced via ``os.replace`` without disturbing the lock
    handle.  The lock file is created in the same directory as *path*
    so ``os.replace`` stays on the same filesystem.
    """
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def _atomic_write_text(path: Path, content: str) -> None:
    """Write *content* to *path* atomically.

    Writes to a temporary file in the same directory, then renames
    (``os.replace``) into place.  This prevents partial/corrupt reads
    if the process crashes mid-write.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        # Clean up the temp file on any failure.
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _safe_read_json(path: Path, model_name: str) -> str:
    """Read a JSON file and raise a clear error if missing or unreadable.

    Raises:
        ArtifactNotFoundError: If the file does not exist.
        ValueError: If the file is empty or contains non-UTF-8 data.
    """
    if not path.is_file():
        raise ArtifactNotFoundError(f"{model_name} not found: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ValueError(f"{model_name} at {path} contains invalid UTF-8 data") from exc
    if not text.strip():
        raise ValueError(f"{model_name} at {path} is empty")
    return text


def _parse_model(model: type[BaseModel], text: str, label: str, path: Path) -> Any:
    try:
        return model.model_validate_json(text)
    except ValidationError as exc:
        raise ValueError(f"{label} at {path} failed validation: {exc}") from exc


# ---------------------------------------------------------------------------
# StudioStateStore
# ---------------------------------------------------------------------------

class StudioStateStore:
    """Filesystem store for run records, artifacts and their relationship links.

    Layout, per session::

        sessions/<session>/runs/<run_id>.json
        sessions/<session>/runs/events.jsonl
        sessions/<session>/artifacts/<kind>/<artifact_id>.json
        sessions/<session>/links/<owner_id>.json
        sessions/<session>/locks/<stage>.lock

    All writes use atomic temp-file-then-rename.  Read-modify-write paths
    (run finalization, artifact updates, link writes) hold an ``fcntl``
    exclusive lock so independent request handlers sharing the directory
    do not race.  Deleting an artifact deletes its link file with it.
    """

    def __init__(self, root: Path) -> None:
        self.root = root
        self.sessions_dir = self.root / "sessions"
        self.sessions_dir.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def session_dir(self, session_id: str) -> Path:
        return self.sessions_dir / sanitize_key(session_id, label="session_id")

    def runs_dir(self, session_id: str) -> Path:
        return self.session_dir(session_id) / "runs"

    def artifacts_dir(self, session_id: str, kind: ArtifactKind) -> Path:
        return self.session_dir(session_id) / "artifacts" / kind.value

    def links_dir(self, session_id: str) -> Path:
        return self.session_dir(session_id) / "links"

    def _run_path(self, session_id: str, run_id: str) -> Path:
        return self.runs_dir(session_id) / f"{sanitize_key(run_id, label='run_id')}.json"

    def _artifact_path(self, session_id: str, kind: ArtifactKind, artifact_id: str) -> Path:
        return self.artifacts_dir(session_id, kind) / f"{sanitize_key(artifact_id, label='artifact_id')}.json"

    def _links_path(self, session_id: str, owner_id: str) -> Path:
        return self.links_dir(session_id) / f"{sanitize_key(owner_id, label='owner_id')}.json"

    @contextmanager
    def stage_lock(self, session_id: str, stage: Stage) -> Iterator[None]:
        """Serialize replace-and-persist commits for one (session, stage)."""
        with _locked_file(self.session_dir(session_id) / "locks" / stage.value):
            yield

    # ------------------------------------------------------------------
    # Run records
    # ------------------------------------------------------------------

    def write_run(self, record: RunRecord) -> Path:
        """Persist a new run record.

        Raises:
            ValueError: If a run with this ID already exists.
        """
        path = self._run_path(record.session_id, record.run_id)
        with _locked_file(path):
            if path.exists():
                raise ValueError(f"Run record already exists: {record.run_id}")
            _atomic_write_text(path, record.model_dump_json(indent=2))
        return path

    def read_run(self, session_id: str, run_id: str) -> RunRecord:
        path = self._run_path(session_id, run_id)
        text = _safe_read_json(path, f"run {run_id}")
        return _parse_model(RunRecord, text, f"run {run_id}", path)

    def modify_run(
        self,
        session_id: str,
        run_id: str,
        modifier: Callable[[RunRecord], RunRecord],
    ) -> RunRecord:
        """Apply *modifier* to a stored run record under an exclusive lock."""
        path = self._run_path(session_id, run_id)
        with _locked_file(path):
            text = _safe_read_json(path, f"run {run_id}")
            record = _parse_model(RunRecord, text, f"run {run_id}", path)
            updated = modifier(record)
            _atomic_write_text(path, updated.model_dump_json(indent=2))
        return updated

    def list_runs(self, session_id: str, stage: Stage | None = None) -> list[RunRecord]:
        """Return the session's run records, oldest first."""
        runs_dir = self.runs_dir(session_id)
        if not runs_dir.is_dir():
            return []
        records = [
            _parse_model(RunRecord, _safe_read_json(path, "run"), "run", path)
            for path in runs_dir.glob("*.json")
        ]
        records = [record for record in records if record.session_id == session_id]
        if stage is not None:
            records = [record for record in records if record.stage == stage]
        return sorted(records, key=lambda record: (record.created_at, record.run_id))

    def append_run_event(self, session_id: str, event: dict[str, object]) -> None:
        events_path = self.runs_dir(session_id) / "events.jsonl"
        events_path.parent.mkdir(parents=True, exist_ok=True)
        with _locked_file(events_path):
            with events_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(event, sort_keys=True, default=str) + "\n")

    def read_run_events(self, session_id: str) -> list[dict[str, Any]]:
        events_path = self.runs_dir(session_id) / "events.jsonl"
        if not events_path.is_file():
            return []
        return [
            json.loads(line)
            for line in events_path.read_text(encoding="utf-8").splitlines()
            if line.strip()
        ]

    # ------------------------------------------------------------------
    # Artifacts
    # ------------------------------------------------------------------

    def insert_artifact(self, artifact: StudioArtifact) -> Path:
        """Persist a new artifact.

        Raises:
            ValueError: If an artifact with this ID already exists.
        """
        path = self._artifact_path(artifact.session_id, artifact.kind, artifact.id)
        with _locked_file(path):
            if path.exists():
                raise ValueError(f"Artifact already exists: {artifact.kind.value} {artifact.id}")
            _atomic_write_text(path, artifact.model_dump_json(indent=2))
        return path

    def read_artifact(self, session_id: str, kind: ArtifactKind, artifact_id: str) -> StudioArtifact:
        path = self._artifact_path(session_id, kind, artifact_id)
        text = _safe_read_json(path, f"{kind.value} {artifact_id}")
        return _parse_model(ARTIFACT_MODELS[kind], text, f"{kind.value} {artifact_id}", path)

    def locate_artifact(self, kind: ArtifactKind, artifact_id: str) -> str:
        """Return the session ID that owns *artifact_id*.

        Raises:
            ArtifactNotFoundError: If no session holds the artifact.
        """
        filename = f"{sanitize_key(artifact_id, label='artifact_id')}.json"
        for path in sorted(self.sessions_dir.glob(f"*/artifacts/{kind.value}/{filename}")):
            text = _safe_read_json(path, f"{kind.value} {artifact_id}")
            artifact = _parse_model(ARTIFACT_MODELS[kind], text, f"{kind.value} {artifact_id}", path)
            return artifact.session_id
        raise ArtifactNotFoundError(f"{kind.value} {artifact_id} not found")

    def list_artifacts(self, session_id: str, kind: ArtifactKind) -> list[StudioArtifact]:
        """Return all artifacts of *kind* for the session, oldest first."""
        directory = self.artifacts_dir(session_id, kind)
        if not directory.is_dir():
            return []
        model = ARTIFACT_MODELS[kind]
        artifacts = [
            _parse_model(model, _safe_read_json(path, kind.value), kind.value, path)
            for path in directory.glob("*.json")
        ]
        artifacts = [artifact for artifact in artifacts if artifact.session_id == session_id]
        return sorted(artifacts, key=lambda artifact: (artifact.created_at, artifact.id))

    def modify_artifact(
        self,
        kind: ArtifactKind,
        artifact_id: str,
        modifier: Callable[[ArtifactT], ArtifactT],
    ) -> ArtifactT:
        """Apply *modifier* to a stored artifact under an exclusive lock.

        The read-modify-write is atomic with respect to other writers of the
        same artifact, including ``delete_artifacts``; *modifier* may raise to
        abort without writing.

        Raises:
            ArtifactNotFoundError: If the artifact is missing, or was deleted
                while this call waited for the lock.
        """
        session_id = self.locate_artifact(kind, artifact_id)
        path = self._artifact_path(session_id, kind, artifact_id)
        with _locked_file(path):
            text = _safe_read_json(path, f"{kind.value} {artifact_id}")
            current = _parse_model(ARTIFACT_MODELS[kind], text, f"{kind.value} {artifact_id}", path)
            updated = modifier(current)
            _atomic_write_text(path, updated.model_dump_json(indent=2))
        return updated

    def delete_artifacts(self, session_id: str, kind: ArtifactKind) -> int:
        """Delete every artifact of *kind* for the session, cascading to its links.

        Returns:
            Number of artifacts deleted.

        Raises:
            OSError: On the first file that cannot be removed.
        """
        directory = self.artifacts_dir(session_id, kind)
        if not directory.is_dir():
            return 0
        deleted = 0
        for path in sorted(directory.glob("*.json")):
            with _locked_file(path):
                if not path.exists():
                    continue
                (self.links_dir(session_id) / f"{path.stem}.json").unlink(missing_ok=True)
                path.unlink()
            deleted += 1
        logger.debug("Deleted %d %s artifacts for session %s", deleted, kind.value, session_id)
        return deleted

    # ------------------------------------------------------------------
    # Relationship links
    # ------------------------------------------------------------------

    def write_links(self, session_id: str, owner_id: str, relation: str, target_ids: list[str]) -> int:
        """Record links from *owner_id* to each target under *relation*.

        Duplicate (owner, relation, target) rows are collapsed.  Nothing is
        written when *target_ids* is empty.

        Returns:
            Number of new link rows written.
        """
        if not target_ids:
            return 0
        path = self._links_path(session_id, owner_id)
        with _locked_file(path):
            links = self._read_link_records(path)
            existing = {(link.relation, link.target_id) for link in links}
            added = 0
            for target_id in target_ids:
                if (relation, target_id) in existing:
                    continue
                links.append(LinkRecord(owner_id=owner_id, relation=relation, target_id=target_id))
                existing.add((relation, target_id))
                added += 1
            if added:
                payload = [link.model_dump(mode="json") for link in links]
                _atomic_write_text(path, json.dumps(payload, indent=2))
        return added

    def read_links(self, session_id: str, owner_id: str) -> dict[str, list[str]]:
        """Return ``relation -> [target_id, ...]`` for one owner, in insertion order."""
        grouped: dict[str, list[str]] = {}
        for link in self._read_link_records(self._links_path(session_id, owner_id)):
            grouped.setdefault(link.relation, []).append(link.target_id)
        return grouped

    def _read_link_records(self, path: Path) -> list[LinkRecord]:
        if not path.is_file():
            return []
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            return [LinkRecord.model_validate(item) for item in raw]
        except (json.JSONDecodeError, ValidationError) as exc:
            raise ValueError(f"link records at {path} are corrupt: {exc}") from exc


# ---------------------------------------------------------------------------
# Utility functions
# ---------------------------------------------------------------------------

_SAFE_KEY_RE = re.compile(r"[A-Za-z0-9._-]{1,128}")
_UNSAFE_CHARS_RE = re.compile(r"[^A-Za-z0-9._-]+")


def sanitize_key(value: str, *, label: str = "key") -> str:
    """Map an identifier to a filesystem path component, one-to-one.

    Identifiers that are already safe are used verbatim.  Anything else keeps a
    readable prefix and gains a ``~`` plus a SHA-256 digest of the raw value, so
    ``"acme/1"`` and ``"acme 1"`` never share a directory with ``"acme-1"`` or
    with each other.

    Raises:
        ValueError: If the identifier is empty.
    """
    if not value.strip():
        raise ValueError(f"{label} must be non-empty")
    if _SAFE_KEY_RE.fullmatch(value) and value not in {".", ".."}:
        return value
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()[:32]
    prefix = _UNSAFE_CHARS_RE.sub("-", value).strip("-.")[:64]
    return f"{prefix}~{digest}" if prefix else f"~{digest}"
