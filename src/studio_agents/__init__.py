from importlib.metadata import PackageNotFoundError, version

from .canonical import compute_fingerprint, to_canonical_json
from .concurrency import ConcurrencyGuard
from .errors import (
    ArtifactNotFoundError,
    IllegalTransitionError,
    PreconditionError,
    ProviderError,
    RevisionConflictError,
    StageRunError,
    StudioError,
)
from .invoker import Invocation, LangChainReasoningInvoker, ReasoningInvoker
from .ledger import RunLedger
from .model_selection import DEFAULT_MODELS_BY_TIER, RuntimeModelSelection
from .models import (
    ArtifactKind,
    EntityKind,
    ImplementationItem,
    ImplementationWave,
    LinkRecord,
    ObservationInput,
    ProcessStepInput,
    RunRecord,
    RunStatus,
    SequencingOutput,
    SequencingSnapshot,
    SolutionCard,
    SolutionInput,
    SolutionsOutput,
    SolutionsSnapshot,
    SolutionStatus,
    Stage,
    SynthesisOutput,
    SynthesisSnapshot,
    Theme,
    ThemeInput,
    ThemeStatus,
    WasteTypeInput,
)
from .orchestrator import AgentRunOrchestrator, StageRunResult
from .rate_limit import RateLimitDecision, RateLimiter, RateLimitPolicy, default_policy
from .service import Outcome, ServiceResponse, StudioAgentService
from .settings import RuntimeSettings
from .state_machine import SOLUTION_TRANSITIONS, THEME_TRANSITIONS, ensure_transition
from .state_store import StudioStateStore
from .validator import Discrepancy, OutputValidator, ValidationResult
from .writer import CommitReport, ReplaceAndPersistWriter


def get_version() -> str:
    try:
        return version("studio-agents")
    except PackageNotFoundError:
        return "0.0.0"


__all__ = [
    "AgentRunOrchestrator",
    "ArtifactKind",
    "ArtifactNotFoundError",
    "CommitReport",
    "ConcurrencyGuard",
    "DEFAULT_MODELS_BY_TIER",
    "Discrepancy",
    "EntityKind",
    "IllegalTransitionError",
    "ImplementationItem",
    "ImplementationWave",
    "Invocation",
    "LangChainReasoningInvoker",
    "LinkRecord",
    "ObservationInput",
    "Outcome",
    "OutputValidator",
    "PreconditionError",
    "ProcessStepInput",
    "ProviderError",
    "RateLimitDecision",
    "RateLimitPolicy",
    "RateLimiter",
    "ReasoningInvoker",
    "ReplaceAndPersistWriter",
    "RevisionConflictError",
    "RunLedger",
    "RunRecord",
    "RunStatus",
    "RuntimeModelSelection",
    "RuntimeSettings",
    "SOLUTION_TRANSITIONS",
    "SequencingOutput",
    "SequencingSnapshot",
    "ServiceResponse",
    "SolutionCard",
    "SolutionInput",
    "SolutionStatus",
    "SolutionsOutput",
    "SolutionsSnapshot",
    "Stage",
    "StageRunError",
    "StageRunResult",
    "StudioAgentService",
    "StudioError",
    "StudioStateStore",
    "SynthesisOutput",
    "SynthesisSnapshot",
    "THEME_TRANSITIONS",
    "Theme",
    "ThemeInput",
    "ThemeStatus",
    "ValidationResult",
    "WasteTypeInput",
    "compute_fingerprint",
    "default_policy",
    "ensure_transition",
    "get_version",
    "to_canonical_json",
]
