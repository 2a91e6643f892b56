from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Protocol

from langchain_core.messages import HumanMessage, SystemMessage
from pydantic import BaseModel

from .errors import ProviderError
from .llm import StructuredOutputAdapter, get_structured_chat_model, resolve_provider
from .model_selection import RuntimeModelSelection
from .models import Stage
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Invocation:
    """Validated provider output plus the identity of whoever produced it."""

    output: BaseModel
    model: str
    provider: str


class ReasoningInvoker(Protocol):
    """Anything that turns a stage prompt into schema-valid structured output."""

    def invoke(
        self,
        *,
        stage: Stage,
        system_prompt: str,
        prompt: str,
        schema: type[BaseModel],
    ) -> Invocation:
        ...


AdapterFactory = Callable[..., StructuredOutputAdapter[Any]]


class LangChainReasoningInvoker:
    """Reasoning invoker backed by LangChain ``with_structured_output`` chat models.

    The provider comes from ``settings.provider``; ``auto`` is resolved on first
    use from whichever API key is present, OpenAI first.  One structured
    adapter is built lazily per (stage, schema) and reused.  Any failure on the
    provider path (missing key, transport, timeout, unparseable or
    schema-invalid reply) surfaces as ``ProviderError``.
    """

    def __init__(
        self,
        *,
        settings: RuntimeSettings,
        model_selection: RuntimeModelSelection | None = None,
        repo_root: Path | None = None,
        adapter_factory: AdapterFactory = get_structured_chat_model,
    ) -> None:
        self.settings = settings
        self.repo_root = repo_root
        self._model_selection = model_selection
        self._provider: str | None = None
        self._adapter_factory = adapter_factory
        self._adapters: dict[tuple[Stage, str], StructuredOutputAdapter[Any]] = {}

    @property
    def provider(self) -> str:
        if self._provider is None:
            self._provider = resolve_provider(self.settings.provider, repo_root=self.repo_root)
            logger.info("Using %s reasoning provider", self._provider)
        return self._provider

    @property
    def model_selection(self) -> RuntimeModelSelection:
        if self._model_selection is None:
            self._model_selection = RuntimeModelSelection.from_settings(self.settings, provider=self.provider)
        return self._model_selection

    def _adapter(self, stage: Stage, schema: type[BaseModel]) -> StructuredOutputAdapter[Any]:
        key = (stage, schema.__name__)
        adapter = self._adapters.get(key)
        if adapter is None:
            adapter = self._adapter_factory(
                model_name=self.model_selection.resolve(stage),
                schema=schema,
                provider=self.provider,
                temperature=self.settings.temperature,
                timeout=self.settings.llm_timeout_seconds,
                max_retries=self.settings.llm_max_retries,
                max_completion_tokens=self.settings.max_completion_tokens,
                repo_root=self.repo_root,
            )
            self._adapters[key] = adapter
        return adapter

    def invoke(
        self,
        *,
        stage: Stage,
        system_prompt: str,
        prompt: str,
        schema: type[BaseModel],
    ) -> Invocation:
        messages = [SystemMessage(content=system_prompt), HumanMessage(content=prompt)]
        try:
            provider = self.provider
            model_name = self.model_selection.resolve(stage)
            logger.info("Invoking %s/%s for stage %s (%d prompt chars)", provider, model_name, stage.value, len(prompt))
            output = self._adapter(stage, schema).invoke(messages)
        except Exception as exc:  # noqa: BLE001 - any provider-side failure is a ProviderError.
            raise ProviderError(f"{self._provider or self.settings.provider} provider failed for {stage.value}: {exc}") from exc
        return Invocation(output=output, model=model_name, provider=provider)
