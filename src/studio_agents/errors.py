from __future__ import annotations


class StudioError(Exception):
    """Base class for errors raised by the agent orchestration core."""


class PreconditionError(StudioError):
    """A stage was asked to run without the input rows it needs.

    Raised before any run record is created.
    """

    def __init__(self, stage: str, message: str) -> None:
        super().__init__(message)
        self.stage = stage


class ProviderError(StudioError):
    """The reasoning provider failed (network, timeout or malformed output)."""

    def __init__(self, message: str, *, run_id: str | None = None) -> None:
        super().__init__(message)
        self.run_id = run_id


class StageRunError(StudioError):
    """A run failed outside the provider, e.g. while committing artifacts or recording the run."""

    def __init__(self, message: str, *, run_id: str | None = None) -> None:
        super().__init__(message)
        self.run_id = run_id


class RevisionConflictError(StudioError):
    """The artifact was modified by someone else since the caller read it."""

    def __init__(self, artifact_id: str, expected_revision: int, current_revision: int) -> None:
        super().__init__(
            f"artifact {artifact_id} was modified by someone else "
            f"(expected revision {expected_revision}, found {current_revision}); please reload"
        )
        self.artifact_id = artifact_id
        self.expected_revision = expected_revision
        self.current_revision = current_revision


class IllegalTransitionError(StudioError, ValueError):
    """A status change is not allowed by the artifact's state machine."""


class ArtifactNotFoundError(StudioError, FileNotFoundError):
    """A referenced artifact or run record does not exist."""
