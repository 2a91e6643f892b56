from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


# "auto" picks OpenAI when OPENAI_API_KEY is set, else Anthropic when ANTHROPIC_API_KEY is.
VALID_PROVIDERS: frozenset[str] = frozenset({"auto", "openai", "anthropic"})


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    state_store_root: str = "state_store"
    provider: str = "auto"
    model_frontier: str = "gpt-4o"
    model_efficient: str = "gpt-4o-mini"
    anthropic_model_frontier: str = "claude-3-5-sonnet-latest"
    anthropic_model_efficient: str = "claude-3-haiku-20240307"
    temperature: float = 0.2
    llm_timeout_seconds: int = 120
    llm_max_retries: int = 3
    max_completion_tokens: int = 4_000
    rate_limit_requests: int = 20
    rate_limit_window_seconds: int = 3_600

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            state_store_root=os.getenv("STUDIO_STATE_STORE_ROOT", "state_store"),
            provider=os.getenv("STUDIO_PROVIDER", "auto"),
            model_frontier=os.getenv("STUDIO_MODEL_FRONTIER", "gpt-4o"),
            model_efficient=os.getenv("STUDIO_MODEL_EFFICIENT", "gpt-4o-mini"),
            anthropic_model_frontier=os.getenv("STUDIO_ANTHROPIC_MODEL_FRONTIER", "claude-3-5-sonnet-latest"),
            anthropic_model_efficient=os.getenv("STUDIO_ANTHROPIC_MODEL_EFFICIENT", "claude-3-haiku-20240307"),
            temperature=_get_env_float("STUDIO_TEMPERATURE", default=0.2, minimum=0.0, maximum=2.0),
            llm_timeout_seconds=_get_env_int("STUDIO_LLM_TIMEOUT", default=120, minimum=1, maximum=3_600),
            llm_max_retries=_get_env_int("STUDIO_LLM_MAX_RETRIES", default=3, minimum=0, maximum=10),
            max_completion_tokens=_get_env_int("STUDIO_MAX_COMPLETION_TOKENS", default=4_000, minimum=256),
            rate_limit_requests=_get_env_int("STUDIO_RATE_LIMIT_REQUESTS", default=20, minimum=1),
            rate_limit_window_seconds=_get_env_int("STUDIO_RATE_LIMIT_WINDOW_SECONDS", default=3_600, minimum=1),
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        model_frontier = self.model_frontier.strip()
        if not model_frontier:
            raise ValueError("STUDIO_MODEL_FRONTIER must be non-empty")
        model_efficient = self.model_efficient.strip()
        if not model_efficient:
            raise ValueError("STUDIO_MODEL_EFFICIENT must be non-empty")
        anthropic_frontier = self.anthropic_model_frontier.strip()
        if not anthropic_frontier:
            raise ValueError("STUDIO_ANTHROPIC_MODEL_FRONTIER must be non-empty")
        anthropic_efficient = self.anthropic_model_efficient.strip()
        if not anthropic_efficient:
            raise ValueError("STUDIO_ANTHROPIC_MODEL_EFFICIENT must be non-empty")

        provider = self.provider.strip().lower()
        if provider not in VALID_PROVIDERS:
            raise ValueError(f"STUDIO_PROVIDER must be one of: {', '.join(sorted(VALID_PROVIDERS))}")

        if not self.state_store_root.strip():
            raise ValueError("STUDIO_STATE_STORE_ROOT must be non-empty")

        return RuntimeSettings(
            state_store_root=self.state_store_root,
            provider=provider,
            model_frontier=model_frontier,
            model_efficient=model_efficient,
            anthropic_model_frontier=anthropic_frontier,
            anthropic_model_efficient=anthropic_efficient,
            temperature=self.temperature,
            llm_timeout_seconds=self.llm_timeout_seconds,
            llm_max_retries=self.llm_max_retries,
            max_completion_tokens=self.max_completion_tokens,
            rate_limit_requests=self.rate_limit_requests,
            rate_limit_window_seconds=self.rate_limit_window_seconds,
        )

    def models_for(self, provider: str) -> dict[str, str]:
        """Return the tier -> model name map for a concrete provider."""
        if provider == "anthropic":
            return {"frontier": self.anthropic_model_frontier, "efficient": self.anthropic_model_efficient}
        return {"frontier": self.model_frontier, "efficient": self.model_efficient}

    def state_store_path(self, repo_root: Path) -> Path:
        path = Path(self.state_store_root)
        return path if path.is_absolute() else repo_root / path


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound (default 10M, prevents absurd values).

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _get_env_float(name: str, default: float, minimum: float, maximum: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got: {raw!r}") from exc
    if not minimum <= parsed <= maximum:
        raise ValueError(f"{name} must be within [{minimum}, {maximum}], got: {parsed}")
    return parsed
