from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, TypedDict

from langgraph.graph import END, START, StateGraph
from langgraph.types import Command
from pydantic import BaseModel, ValidationError

from .canonical import compute_fingerprint
from .errors import PreconditionError, ProviderError, StageRunError
from .invoker import Invocation, ReasoningInvoker
from .ledger import RunLedger
from .models import RunRecord, Stage
from .stages import StageStrategy, get_strategy
from .state_store import StudioStateStore
from .validator import Discrepancy, OutputValidator, ValidationResult
from .writer import CommitReport, ReplaceAndPersistWriter

logger = logging.getLogger(__name__)


class RunState(TypedDict, total=False):
    stage: Stage
    session_id: str
    user_id: str | None
    force_rerun: bool
    snapshot: BaseModel
    fingerprint: str
    cached_run: RunRecord
    run: RunRecord
    invocation: Invocation
    validation: ValidationResult
    commit: CommitReport
    final_run: RunRecord
    error: Exception


@dataclass
class StageRunResult:
    output: dict[str, Any]
    cached: bool
    run_id: str
    model: str | None
    provider: str | None
    discrepancies: list[Discrepancy] = field(default_factory=list)
    commit: CommitReport | None = None


class AgentRunOrchestrator:
    """Runs one analysis stage end to end.

    fingerprint -> lookup_cache -> check_preconditions -> start_run -> invoke
    -> validate -> commit -> finalize, with every post-start failure routed to
    ``fail`` so the run record is always finalized.
    """

    def __init__(
        self,
        *,
        store: StudioStateStore,
        invoker: ReasoningInvoker,
        ledger: RunLedger | None = None,
        writer: ReplaceAndPersistWriter | None = None,
        strategies: Mapping[Stage, StageStrategy] | None = None,
    ) -> None:
        self.store = store
        self.invoker = invoker
        self.ledger = ledger if ledger is not None else RunLedger(store)
        self.writer = writer if writer is not None else ReplaceAndPersistWriter(store)
        self._strategies = dict(strategies) if strategies is not None else None
        self.graph = self._build_graph().compile()

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(RunState)
        graph.add_node("fingerprint", self._fingerprint)
        graph.add_node("lookup_cache", self._lookup_cache)
        graph.add_node("check_preconditions", self._check_preconditions)
        graph.add_node("start_run", self._start_run)
        graph.add_node("invoke", self._invoke)
        graph.add_node("validate", self._validate)
        graph.add_node("commit", self._commit)
        graph.add_node("finalize", self._finalize)
        graph.add_node("fail", self._fail)

        graph.add_edge(START, "fingerprint")
        graph.add_edge("fingerprint", "lookup_cache")
        graph.add_edge("check_preconditions", "start_run")
        graph.add_edge("fail", END)
        return graph

    def strategy(self, stage: Stage) -> StageStrategy:
        if self._strategies is not None:
            return self._strategies[stage]
        return get_strategy(stage)

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    def _fingerprint(self, state: RunState) -> dict[str, Any]:
        snapshot = state["snapshot"]
        fingerprint = compute_fingerprint(state["stage"], state["session_id"], snapshot.model_dump(mode="json"))
        return {"fingerprint": fingerprint}

    def _lookup_cache(self, state: RunState) -> Command[str]:
        if state.get("force_rerun"):
            return Command(goto="check_preconditions")
        cached = self.ledger.find_cached(state["session_id"], state["stage"], state["fingerprint"])
        if cached is None:
            return Command(goto="check_preconditions")
        logger.info("Cache hit for %s on session %s: run %s", state["stage"].value, state["session_id"], cached.run_id)
        return Command(update={"cached_run": cached}, goto=END)

    def _check_preconditions(self, state: RunState) -> dict[str, Any]:
        strategy = self.strategy(state["stage"])
        if strategy.qualifying_rows(state["snapshot"]) == 0:
            raise PreconditionError(strategy.stage.value, strategy.precondition_message)
        return {}

    def _start_run(self, state: RunState) -> Command[str]:
        try:
            run = self.ledger.start(
                session_id=state["session_id"],
                stage=state["stage"],
                fingerprint=state["fingerprint"],
                created_by=state.get("user_id"),
            )
        except (OSError, ValueError) as exc:
            logger.error("Could not record %s run for session %s: %s", state["stage"].value, state["session_id"], exc)
            return Command(update={"error": exc}, goto=END)
        return Command(update={"run": run}, goto="invoke")

    def _invoke(self, state: RunState) -> Command[str]:
        strategy = self.strategy(state["stage"])
        try:
            invocation = self.invoker.invoke(
                stage=strategy.stage,
                system_prompt=strategy.system_prompt,
                prompt=strategy.build_prompt(state["snapshot"]),
                schema=strategy.output_schema,
            )
        except ProviderError as exc:
            return Command(update={"error": exc}, goto="fail")
        except Exception as exc:  # noqa: BLE001 - injected invokers may raise anything; the run must still be finalized.
            return Command(update={"error": ProviderError(str(exc))}, goto="fail")
        if not isinstance(invocation.output, strategy.output_schema):
            error = ProviderError(
                f"provider returned {type(invocation.output).__name__}, expected {strategy.output_schema.__name__}"
            )
            return Command(update={"invocation": invocation, "error": error}, goto="fail")
        return Command(update={"invocation": invocation}, goto="validate")

    def _validate(self, state: RunState) -> Command[str]:
        strategy = self.strategy(state["stage"])
        try:
            allowlists = strategy.build_allowlists(state["snapshot"])
            result = OutputValidator(strategy.references).validate(state["invocation"].output, allowlists)
        except (ValueError, AttributeError) as exc:
            return Command(update={"error": exc}, goto="fail")
        return Command(update={"validation": result}, goto="commit")

    def _commit(self, state: RunState) -> Command[str]:
        strategy = self.strategy(state["stage"])
        try:
            planned = strategy.plan_artifacts(state["session_id"], state.get("user_id"), state["validation"].output)
            report = self.writer.commit(
                session_id=state["session_id"],
                stage=strategy.stage,
                kinds=strategy.artifact_kinds,
                planned=planned,
            )
        except (OSError, ValueError, ValidationError) as exc:
            return Command(update={"error": exc}, goto="fail")
        return Command(update={"commit": report}, goto="finalize")

    def _finalize(self, state: RunState) -> Command[str]:
        invocation = state["invocation"]
        try:
            final_run = self.ledger.mark_succeeded(
                state["session_id"],
                state["run"].run_id,
                model=invocation.model,
                provider=invocation.provider,
                output=state["validation"].output.model_dump(mode="json"),
            )
        except (OSError, ValueError) as exc:
            return Command(update={"error": exc}, goto="fail")
        return Command(update={"final_run": final_run}, goto=END)

    def _fail(self, state: RunState) -> dict[str, Any]:
        invocation = state.get("invocation")
        try:
            final_run = self.ledger.mark_failed(
                state["session_id"],
                state["run"].run_id,
                error=str(state["error"]),
                model=invocation.model if invocation is not None else None,
                provider=invocation.provider if invocation is not None else None,
            )
        except (OSError, ValueError) as exc:
            logger.error("Run %s could not be marked failed: %s", state["run"].run_id, exc)
            return {}
        return {"final_run": final_run}

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def run_stage(
        self,
        stage: Stage | str,
        session_id: str,
        snapshot: BaseModel | Mapping[str, Any],
        *,
        user_id: str | None = None,
        force_rerun: bool = False,
    ) -> StageRunResult:
        """Run *stage* for *session_id* over *snapshot*, reusing a cached run when possible.

        Raises:
            PreconditionError: If the snapshot has no qualifying rows. No run is recorded.
            ProviderError: If the reasoning provider failed. The run is recorded as failed.
            StageRunError: If validation, the commit or the run ledger failed. The run is
                recorded as failed whenever the store still accepts writes.
        """
        strategy = self.strategy(Stage(stage))
        if not isinstance(snapshot, strategy.snapshot_type):
            snapshot = strategy.snapshot_type.model_validate(
                snapshot.model_dump() if isinstance(snapshot, BaseModel) else snapshot
            )

        try:
            final: RunState = self.graph.invoke(
                {
                    "stage": strategy.stage,
                    "session_id": session_id,
                    "user_id": user_id,
                    "force_rerun": force_rerun,
                    "snapshot": snapshot,
                }
            )
        except OSError as exc:
            raise StageRunError(f"{strategy.stage.value} run failed: {exc}") from exc

        cached = final.get("cached_run")
        if cached is not None:
            return StageRunResult(
                output=dict(cached.output or {}),
                cached=True,
                run_id=cached.run_id,
                model=cached.model,
                provider=cached.provider,
            )

        started = final.get("run")
        run_id = started.run_id if started is not None else None
        error = final.get("error")
        if error is not None:
            if isinstance(error, ProviderError):
                error.run_id = run_id
                raise error
            raise StageRunError(f"{strategy.stage.value} run failed: {error}", run_id=run_id) from error

        run = final["final_run"]
        return StageRunResult(
            output=dict(run.output or {}),
            cached=False,
            run_id=run.run_id,
            model=run.model,
            provider=run.provider,
            discrepancies=list(final["validation"].discrepancies),
            commit=final.get("commit"),
        )
