from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Mapping

from pydantic import BaseModel

from .concurrency import ConcurrencyGuard
from .errors import (
    ArtifactNotFoundError,
    IllegalTransitionError,
    PreconditionError,
    ProviderError,
    RevisionConflictError,
    StageRunError,
)
from .invoker import LangChainReasoningInvoker, ReasoningInvoker
from .ledger import RunLedger
from .models import (
    STAGE_ARTIFACT_KINDS,
    ArtifactKind,
    ObservationInput,
    ProcessStepInput,
    SequencingSnapshot,
    SolutionsSnapshot,
    Stage,
    StudioArtifact,
)
from .orchestrator import AgentRunOrchestrator
from .rate_limit import RateLimitDecision, RateLimiter, RateLimitPolicy, default_policy
from .settings import RuntimeSettings
from .stages import collect_accepted_solution_inputs, collect_theme_inputs
from .state_store import StudioStateStore

logger = logging.getLogger(__name__)

RATE_LIMITED_MESSAGE = "Rate limit exceeded. Please try again later."
PROVIDER_FAILED_MESSAGE = "Analysis failed. Please try again."


class Outcome(str, Enum):
    OK = "ok"
    CACHED = "cached"
    RATE_LIMITED = "rate_limited"
    PRECONDITION_FAILED = "precondition_failed"
    PROVIDER_FAILED = "provider_failed"
    CONFLICT = "conflict"
    INVALID_TRANSITION = "invalid_transition"
    INVALID_REQUEST = "invalid_request"
    NOT_FOUND = "not_found"


STATUS_CODES: dict[Outcome, int] = {
    Outcome.OK: 200,
    Outcome.CACHED: 200,
    Outcome.RATE_LIMITED: 429,
    Outcome.PRECONDITION_FAILED: 400,
    Outcome.PROVIDER_FAILED: 500,
    Outcome.CONFLICT: 409,
    Outcome.INVALID_TRANSITION: 400,
    Outcome.INVALID_REQUEST: 400,
    Outcome.NOT_FOUND: 404,
}


@dataclass
class ServiceResponse:
    """What a request handler returns to its caller.

    Validation discrepancies are logged, never surfaced here.
    """

    outcome: Outcome
    message: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    run_id: str | None = None
    model: str | None = None
    provider: str | None = None
    limit: int | None = None
    remaining: int | None = None
    reset_seconds: int | None = None

    @property
    def ok(self) -> bool:
        return self.outcome in (Outcome.OK, Outcome.CACHED)

    @property
    def cached(self) -> bool:
        return self.outcome == Outcome.CACHED

    @property
    def status_code(self) -> int:
        return STATUS_CODES[self.outcome]

    def with_rate_limit(self, decision: RateLimitDecision | None) -> "ServiceResponse":
        if decision is not None:
            self.limit = decision.limit
            self.remaining = decision.remaining
            self.reset_seconds = decision.reset_seconds
        return self

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "ok": self.ok,
            "cached": self.cached,
            "message": self.message,
            "data": self.data,
            "run_id": self.run_id,
            "model": self.model,
            "provider": self.provider,
            "limit": self.limit,
            "remaining": self.remaining,
            "reset_seconds": self.reset_seconds,
        }


class StudioAgentService:
    """Caller-facing surface: run a stage, read current artifacts, curate them."""

    def __init__(
        self,
        *,
        store: StudioStateStore,
        invoker: ReasoningInvoker,
        rate_limiter: RateLimiter | None = None,
        policy: RateLimitPolicy | None = None,
    ) -> None:
        self.store = store
        self.ledger = RunLedger(store)
        self.orchestrator = AgentRunOrchestrator(store=store, invoker=invoker, ledger=self.ledger)
        self.guard = ConcurrencyGuard(store)
        self.rate_limiter = rate_limiter if rate_limiter is not None else RateLimiter()
        self.policy = policy if policy is not None else default_policy()

    @classmethod
    def from_settings(cls, settings: RuntimeSettings, *, repo_root: Path | None = None) -> "StudioAgentService":
        root = repo_root if repo_root is not None else Path.cwd()
        return cls(
            store=StudioStateStore(settings.state_store_path(root)),
            invoker=LangChainReasoningInvoker(settings=settings, repo_root=root),
            rate_limiter=RateLimiter(),
            policy=default_policy(settings),
        )

    # ------------------------------------------------------------------
    # Agent runs
    # ------------------------------------------------------------------

    def run_stage(
        self,
        stage: Stage | str,
        session_id: str,
        snapshot: BaseModel | Mapping[str, Any],
        *,
        user_id: str,
        force_rerun: bool = False,
    ) -> ServiceResponse:
        decision = self.rate_limiter.allow(user_id, self.policy)
        if not decision.allowed:
            return ServiceResponse(Outcome.RATE_LIMITED, RATE_LIMITED_MESSAGE).with_rate_limit(decision)

        try:
            result = self.orchestrator.run_stage(
                stage, session_id, snapshot, user_id=user_id, force_rerun=force_rerun
            )
        except PreconditionError as exc:
            return ServiceResponse(Outcome.PRECONDITION_FAILED, str(exc)).with_rate_limit(decision)
        except (ProviderError, StageRunError) as exc:
            logger.error("Stage %s failed for session %s: %s", stage, session_id, exc)
            return ServiceResponse(
                Outcome.PROVIDER_FAILED,
                PROVIDER_FAILED_MESSAGE,
                run_id=exc.run_id,
            ).with_rate_limit(decision)
        except ValueError as exc:
            return ServiceResponse(Outcome.INVALID_REQUEST, str(exc)).with_rate_limit(decision)

        if result.discrepancies:
            logger.info(
                "Run %s kept output after dropping %d invalid references",
                result.run_id,
                sum(len(item.dropped_ids) for item in result.discrepancies),
            )
        return ServiceResponse(
            Outcome.CACHED if result.cached else Outcome.OK,
            data=result.output,
            run_id=result.run_id,
            model=result.model,
            provider=result.provider,
        ).with_rate_limit(decision)

    def build_solutions_snapshot(
        self,
        session_id: str,
        *,
        observations: list[ObservationInput] | None = None,
        steps: list[ProcessStepInput] | None = None,
        workflow_context: str | None = None,
    ) -> SolutionsSnapshot:
        """Solutions input from the session's draft and confirmed themes."""
        return SolutionsSnapshot(
            workflow_context=workflow_context,
            themes=collect_theme_inputs(self.store, session_id),
            observations=list(observations or []),
            steps=list(steps or []),
        )

    def build_sequencing_snapshot(self, session_id: str) -> SequencingSnapshot:
        """Sequencing input from the session's accepted solution cards."""
        return SequencingSnapshot(solutions=collect_accepted_solution_inputs(self.store, session_id))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_artifacts(self, session_id: str, stage: Stage | str) -> ServiceResponse:
        """Current artifacts for (session, stage) plus the latest run summary."""
        try:
            stage = Stage(stage)
        except ValueError:
            return ServiceResponse(Outcome.INVALID_REQUEST, f"Unknown stage: {stage!r}")

        artifacts: dict[str, list[dict[str, Any]]] = {}
        for kind in STAGE_ARTIFACT_KINDS[stage]:
            rows = self.store.list_artifacts(session_id, kind)
            if kind in (ArtifactKind.WAVE, ArtifactKind.ITEM):
                rows = sorted(rows, key=lambda row: getattr(row, "order_index"))
            else:
                rows = list(reversed(rows))
            artifacts[kind.value] = [self._artifact_payload(session_id, row) for row in rows]

        latest = self.ledger.latest(session_id, stage)
        return ServiceResponse(
            Outcome.OK,
            data={"artifacts": artifacts, "latest_run": latest.summary() if latest is not None else None},
            run_id=latest.run_id if latest is not None else None,
            model=latest.model if latest is not None else None,
            provider=latest.provider if latest is not None else None,
        )

    def _artifact_payload(self, session_id: str, artifact: StudioArtifact) -> dict[str, Any]:
        payload = artifact.model_dump(mode="json")
        payload["links"] = self.store.read_links(session_id, artifact.id)
        return payload

    # ------------------------------------------------------------------
    # Curation
    # ------------------------------------------------------------------

    def update_artifact_status(
        self,
        kind: ArtifactKind | str,
        artifact_id: str,
        expected_revision: int,
        new_status: str,
        *,
        user_id: str,
    ) -> ServiceResponse:
        try:
            kind = ArtifactKind(kind)
        except ValueError:
            return ServiceResponse(Outcome.INVALID_REQUEST, f"Unknown artifact kind: {kind!r}")
        try:
            updated = self.guard.update_status(
                kind, artifact_id, expected_revision, new_status, updated_by=user_id
            )
        except RevisionConflictError:
            return ServiceResponse(Outcome.CONFLICT, f"Conflict: {kind.value} was modified by another user")
        except IllegalTransitionError as exc:
            return ServiceResponse(Outcome.INVALID_TRANSITION, str(exc))
        except ArtifactNotFoundError:
            return ServiceResponse(Outcome.NOT_FOUND, f"{kind.value} {artifact_id} not found")
        return ServiceResponse(Outcome.OK, data=updated.model_dump(mode="json"))

    def update_artifact(
        self,
        kind: ArtifactKind | str,
        artifact_id: str,
        expected_revision: int,
        changes: Mapping[str, Any],
        *,
        user_id: str,
    ) -> ServiceResponse:
        """Edit non-status fields of an artifact under the revision guard."""
        try:
            kind = ArtifactKind(kind)
        except ValueError:
            return ServiceResponse(Outcome.INVALID_REQUEST, f"Unknown artifact kind: {kind!r}")
        try:
            updated = self.guard.update_with_revision(
                kind, artifact_id, expected_revision, changes, updated_by=user_id
            )
        except RevisionConflictError:
            return ServiceResponse(Outcome.CONFLICT, f"Conflict: {kind.value} was modified by another user")
        except ArtifactNotFoundError:
            return ServiceResponse(Outcome.NOT_FOUND, f"{kind.value} {artifact_id} not found")
        except ValueError as exc:
            return ServiceResponse(Outcome.INVALID_REQUEST, str(exc))
        return ServiceResponse(Outcome.OK, data=updated.model_dump(mode="json"))
