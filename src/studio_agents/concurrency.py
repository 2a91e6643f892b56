from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Mapping

from pydantic import ValidationError

from .errors import RevisionConflictError
from .models import ARTIFACT_MODELS, ArtifactKind, StudioArtifact, utc_now
from .state_machine import STATUS_TYPES, ensure_transition
from .state_store import StudioStateStore

logger = logging.getLogger(__name__)


class ConcurrencyGuard:
    """Compare-and-swap updates keyed on an artifact's ``revision``.

    The revision check and the write happen under the artifact's file lock, so
    of two writers holding the same revision exactly one succeeds and the other
    gets ``RevisionConflictError``.
    """

    def __init__(self, store: StudioStateStore) -> None:
        self.store = store

    def update_with_revision(
        self,
        kind: ArtifactKind,
        artifact_id: str,
        expected_revision: int,
        changes: Mapping[str, Any],
        *,
        updated_by: str | None,
    ) -> StudioArtifact:
        """Apply *changes* if the stored revision still equals *expected_revision*.

        Status fields cannot be changed here; use :meth:`update_status`.

        Raises:
            ValueError: If *changes* touches identity, status or unknown fields.
            RevisionConflictError: If the artifact was modified since it was read.
            ArtifactNotFoundError: If the artifact does not exist.
        """
        if "status" in changes and kind in STATUS_TYPES:
            raise ValueError("status changes must go through update_status")
        return self._apply(kind, artifact_id, expected_revision, dict(changes), updated_by=updated_by)

    def update_status(
        self,
        kind: ArtifactKind,
        artifact_id: str,
        expected_revision: int,
        new_status: str | Enum,
        *,
        updated_by: str | None,
    ) -> StudioArtifact:
        """Move an artifact to *new_status* through its state machine.

        Raises:
            IllegalTransitionError: If the transition is not allowed.
            RevisionConflictError: If the artifact was modified since it was read.
        """
        return self._apply(
            kind,
            artifact_id,
            expected_revision,
            {},
            updated_by=updated_by,
            new_status=new_status,
        )

    def _apply(
        self,
        kind: ArtifactKind,
        artifact_id: str,
        expected_revision: int,
        changes: dict[str, Any],
        *,
        updated_by: str | None,
        new_status: str | Enum | None = None,
    ) -> StudioArtifact:
        model = ARTIFACT_MODELS[kind]
        forbidden = sorted(set(changes) & model.immutable_fields)
        if forbidden:
            raise ValueError(f"Cannot modify identity fields: {', '.join(forbidden)}")
        unknown = sorted(set(changes) - set(model.model_fields))
        if unknown:
            raise ValueError(f"Unknown {kind.value} fields: {', '.join(unknown)}")

        def _swap(current: StudioArtifact) -> StudioArtifact:
            if current.revision != expected_revision:
                raise RevisionConflictError(artifact_id, expected_revision, current.revision)
            payload = current.model_dump()
            payload.update(changes)
            if new_status is not None:
                payload["status"] = ensure_transition(kind, getattr(current, "status"), new_status)
            payload["revision"] = current.revision + 1
            payload["updated_by"] = updated_by
            payload["updated_at"] = utc_now()
            try:
                return type(current).model_validate(payload)
            except ValidationError as exc:
                raise ValueError(f"Invalid {kind.value} update: {exc}") from exc

        updated = self.store.modify_artifact(kind, artifact_id, _swap)
        logger.info("Updated %s %s to revision %d", kind.value, artifact_id, updated.revision)
        return updated
