from __future__ import annotations

import logging
from typing import Any

from .errors import ArtifactNotFoundError
from .models import RunRecord, RunStatus, Stage, utc_now
from .state_store import StudioStateStore

logger = logging.getLogger(__name__)


class RunLedger:
    """Append-only record of every reasoning-provider invocation attempt.

    A record is created ``pending`` and finalized exactly once, to either
    ``succeeded`` or ``failed``.  Every lifecycle change is also appended to the
    session's ``runs/events.jsonl`` log.
    """

    def __init__(self, store: StudioStateStore) -> None:
        self.store = store

    def start(self, *, session_id: str, stage: Stage, fingerprint: str, created_by: str | None) -> RunRecord:
        record = RunRecord(
            session_id=session_id,
            stage=stage,
            fingerprint=fingerprint,
            created_by=created_by,
        )
        self.store.write_run(record)
        self._log_event(record, "run_started")
        logger.info("Started %s run %s for session %s", stage.value, record.run_id, session_id)
        return record

    def mark_succeeded(
        self,
        session_id: str,
        run_id: str,
        *,
        model: str,
        provider: str,
        output: dict[str, Any],
    ) -> RunRecord:
        def _finalize(record: RunRecord) -> RunRecord:
            _ensure_pending(record)
            return record.model_copy(
                update={
                    "status": RunStatus.SUCCEEDED,
                    "model": model,
                    "provider": provider,
                    "output": output,
                    "completed_at": utc_now(),
                }
            )

        record = self.store.modify_run(session_id, run_id, _finalize)
        self._log_event(record, "run_succeeded")
        logger.info("Run %s succeeded (%s/%s)", run_id, provider, model)
        return record

    def mark_failed(
        self,
        session_id: str,
        run_id: str,
        *,
        error: str,
        model: str | None = None,
        provider: str | None = None,
    ) -> RunRecord:
        def _finalize(record: RunRecord) -> RunRecord:
            _ensure_pending(record)
            return record.model_copy(
                update={
                    "status": RunStatus.FAILED,
                    "error": error,
                    "model": model if model is not None else record.model,
                    "provider": provider if provider is not None else record.provider,
                    "completed_at": utc_now(),
                }
            )

        record = self.store.modify_run(session_id, run_id, _finalize)
        self._log_event(record, "run_failed", error=error)
        logger.warning("Run %s failed: %s", run_id, error)
        return record

    def find_cached(self, session_id: str, stage: Stage, fingerprint: str) -> RunRecord | None:
        """Return the most recent succeeded run with this fingerprint, if any."""
        for record in reversed(self.store.list_runs(session_id, stage)):
            if record.status == RunStatus.SUCCEEDED and record.fingerprint == fingerprint:
                return record
        return None

    def latest(self, session_id: str, stage: Stage) -> RunRecord | None:
        runs = self.store.list_runs(session_id, stage)
        return runs[-1] if runs else None

    def list_runs(self, session_id: str, stage: Stage | None = None) -> list[RunRecord]:
        return self.store.list_runs(session_id, stage)

    def get(self, session_id: str, run_id: str) -> RunRecord:
        """Return one run record.

        Raises:
            ArtifactNotFoundError: If the run does not exist.
        """
        try:
            return self.store.read_run(session_id, run_id)
        except ArtifactNotFoundError:
            raise ArtifactNotFoundError(f"run {run_id} not found in session {session_id}") from None

    def _log_event(self, record: RunRecord, event: str, **extra: Any) -> None:
        payload: dict[str, Any] = {
            "event": event,
            "run_id": record.run_id,
            "stage": record.stage.value,
            "status": record.status.value,
            "fingerprint": record.fingerprint,
            "timestamp": utc_now().isoformat(),
        }
        payload.update(extra)
        self.store.append_run_event(record.session_id, payload)


def _ensure_pending(record: RunRecord) -> None:
    if record.is_terminal:
        raise ValueError(f"Run {record.run_id} is already finalized as {record.status.value}")
