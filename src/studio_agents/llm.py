from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Generic, Literal, Protocol, TypeVar

from dotenv import load_dotenv
from langchain_anthropic import ChatAnthropic
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import BaseMessage
from langchain_openai import ChatOpenAI
from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)
StructuredOutputMethod = Literal["function_calling", "json_mode", "json_schema"]

_DEFAULT_TIMEOUT: int = 120
_DEFAULT_MAX_RETRIES: int = 3

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)
_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)


class SupportsInvoke(Protocol):
    """Protocol for any LangChain-compatible runnable that supports invoke."""

    def invoke(self, input: Any) -> Any:  # noqa: ANN401 - external runnable protocol.
        ...


@dataclass(slots=True)
class StructuredOutputAdapter(Generic[ModelT]):
    """Adapter that wraps a structured-output runnable and validates the response.

    Calls the underlying LLM runnable and normalizes the raw output into the
    declared Pydantic schema, handling direct schema instances, plain dicts,
    raw JSON text and ``include_raw=True`` envelope shapes.
    """

    schema: type[ModelT]
    runnable: SupportsInvoke

    def invoke(self, prompt: Any) -> ModelT:
        """Invoke the LLM and return a validated Pydantic model instance.

        Args:
            prompt: A prompt string or a list of chat messages.

        Raises:
            RuntimeError: If the LLM returns unparseable or invalid output.
        """
        raw_output = self.runnable.invoke(prompt)
        return normalize_structured_output(raw_output=raw_output, schema=self.schema)


PROVIDER_API_KEYS: dict[str, str] = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
}


def _load_env_file(repo_root: Path | None) -> None:
    repo = repo_root if repo_root is not None else Path.cwd()
    env_path = repo / ".env"
    if env_path.is_file():
        load_dotenv(env_path)


def _ensure_api_key(env_name: str, repo_root: Path | None) -> str:
    _load_env_file(repo_root)
    key = os.getenv(env_name, "").strip()
    if not key:
        raise RuntimeError(f"{env_name} is required for reasoning provider calls")
    return key


def ensure_openai_api_key(repo_root: Path | None = None) -> str:
    """Load OPENAI_API_KEY from environment or .env and return it.

    Raises:
        RuntimeError: If OPENAI_API_KEY is unavailable after all sources are checked.
    """
    return _ensure_api_key("OPENAI_API_KEY", repo_root)


def ensure_anthropic_api_key(repo_root: Path | None = None) -> str:
    """Load ANTHROPIC_API_KEY from environment or .env and return it.

    Raises:
        RuntimeError: If ANTHROPIC_API_KEY is unavailable after all sources are checked.
    """
    return _ensure_api_key("ANTHROPIC_API_KEY", repo_root)


def resolve_provider(configured: str, repo_root: Path | None = None) -> str:
    """Turn a configured provider (``auto``, ``openai`` or ``anthropic``) into a concrete one.

    ``auto`` prefers OpenAI and falls back to Anthropic when only its key is set.

    Raises:
        ValueError: If *configured* names an unknown provider.
        RuntimeError: If ``auto`` finds no API key at all.
    """
    if configured in PROVIDER_API_KEYS:
        return configured
    if configured != "auto":
        raise ValueError(f"Unknown reasoning provider: {configured!r}")
    _load_env_file(repo_root)
    for provider, env_name in PROVIDER_API_KEYS.items():
        if os.getenv(env_name, "").strip():
            return provider
    raise RuntimeError("No LLM API key configured (OPENAI_API_KEY or ANTHROPIC_API_KEY)")


def get_chat_model(
    *,
    model_name: str,
    provider: str = "openai",
    temperature: float = 0.0,
    timeout: int = _DEFAULT_TIMEOUT,
    max_retries: int = _DEFAULT_MAX_RETRIES,
    max_completion_tokens: int | None = None,
    repo_root: Path | None = None,
) -> BaseChatModel:
    """Construct a ChatOpenAI or ChatAnthropic instance with validated API key and production defaults.

    Raises:
        ValueError: If model_name is empty or the provider is unknown.
        RuntimeError: If the provider's API key is not available.
    """
    if not model_name or not model_name.strip():
        raise ValueError("model_name must be a non-empty string")
    kwargs: dict[str, Any] = {
        "model": model_name,
        "temperature": temperature,
        "timeout": timeout,
        "max_retries": max_retries,
    }
    if provider == "anthropic":
        ensure_anthropic_api_key(repo_root=repo_root)
        if max_completion_tokens is not None:
            kwargs["max_tokens"] = max_completion_tokens
        return ChatAnthropic(**kwargs)
    if provider != "openai":
        raise ValueError(f"Unknown reasoning provider: {provider!r}")
    ensure_openai_api_key(repo_root=repo_root)
    if max_completion_tokens is not None:
        kwargs["max_completion_tokens"] = max_completion_tokens
    return ChatOpenAI(**kwargs)


def extract_json_object(text: str) -> Any:
    """Parse JSON text from a model reply, tolerating code fences and surrounding prose.

    Raises:
        RuntimeError: If no JSON document can be recovered.
    """
    cleaned = _FENCE_RE.sub("", text.strip()).strip()
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass
    match = _OBJECT_RE.search(cleaned)
    if match is None:
        raise RuntimeError("Model reply does not contain a JSON object")
    try:
        return json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        raise RuntimeError(f"Model reply contains malformed JSON: {exc}") from exc


def normalize_structured_output(*, raw_output: Any, schema: type[ModelT]) -> ModelT:
    """Normalize raw LLM structured output into a validated Pydantic model instance.

    Handles four input shapes:
    1. ``include_raw=True`` envelope: ``{"parsed": ..., "parsing_error": ..., "raw": ...}``
    2. Direct Pydantic BaseModel instance (same or different schema)
    3. Plain dict
    4. JSON text (optionally fenced), or a message object carrying it in ``content``

    Raises:
        RuntimeError: If the output cannot be parsed or validated against the schema.
    """
    payload = raw_output
    if isinstance(payload, dict) and "parsed" in payload and "parsing_error" in payload:
        parsing_error = payload.get("parsing_error")
        if parsing_error is not None:
            raise RuntimeError(
                f"Structured output parsing failed for {schema.__name__}: {parsing_error!r}"
            ) from parsing_error
        payload = payload.get("parsed")
        if payload is None:
            raise RuntimeError(
                f"Structured output returned no parsed payload for {schema.__name__}"
            )

    if isinstance(payload, schema):
        return payload

    if isinstance(payload, BaseMessage) and isinstance(payload.content, str):
        payload = payload.content

    if isinstance(payload, str):
        payload = extract_json_object(payload)

    if isinstance(payload, BaseModel):
        candidate = payload.model_dump(mode="json")
    elif isinstance(payload, dict):
        candidate = payload
    else:
        raise RuntimeError(
            f"Structured output for {schema.__name__} returned unsupported payload type "
            f"{type(payload).__name__}"
        )

    try:
        return schema.model_validate(candidate)
    except ValidationError as exc:
        raise RuntimeError(
            f"Structured output validation failed for {schema.__name__}: {exc}"
        ) from exc


def get_structured_chat_model(
    *,
    model_name: str,
    schema: type[ModelT],
    provider: str = "openai",
    temperature: float = 0.0,
    timeout: int = _DEFAULT_TIMEOUT,
    max_retries: int = _DEFAULT_MAX_RETRIES,
    max_completion_tokens: int | None = None,
    method: StructuredOutputMethod = "function_calling",
    strict: bool = False,
    include_raw: bool = False,
    repo_root: Path | None = None,
) -> StructuredOutputAdapter[ModelT]:
    """Build a StructuredOutputAdapter that invokes the LLM with schema-constrained output.

    Uses ``ChatOpenAI.with_structured_output`` or ``ChatAnthropic.with_structured_output``
    to bind the schema to the model.  Strict mode is off by default because the
    output schemas carry optional fields with defaults, which strict function
    calling rejects.  Anthropic always binds the schema as a forced tool call, so
    *method* and *strict* apply to OpenAI only.

    Raises:
        ValueError: If strict=True with method='json_mode'.
        RuntimeError: If the provider's API key is not available.
    """
    if method == "json_mode" and strict:
        raise ValueError("strict=True is not valid for method='json_mode'")

    model = get_chat_model(
        model_name=model_name,
        provider=provider,
        temperature=temperature,
        timeout=timeout,
        max_retries=max_retries,
        max_completion_tokens=max_completion_tokens,
        repo_root=repo_root,
    )
    if provider == "anthropic":
        runnable = model.with_structured_output(schema, include_raw=include_raw)
    else:
        runnable = model.with_structured_output(
            schema,
            method=method,
            include_raw=include_raw,
            strict=strict if method != "json_mode" else None,
        )
    return StructuredOutputAdapter(schema=schema, runnable=runnable)
