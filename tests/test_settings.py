from pathlib import Path

import pytest

from studio_agents import DEFAULT_MODELS_BY_TIER, RuntimeModelSelection
from studio_agents.models import Stage
from studio_agents.settings import RuntimeSettings


def test_runtime_settings_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("STUDIO_STATE_STORE_ROOT", "/tmp/studio")
    monkeypatch.setenv("STUDIO_PROVIDER", " OpenAI ")
    monkeypatch.setenv("STUDIO_RATE_LIMIT_REQUESTS", "5")
    monkeypatch.setenv("STUDIO_TEMPERATURE", "0.7")
    settings = RuntimeSettings.from_env()
    assert settings.provider == "openai"
    assert settings.rate_limit_requests == 5
    assert settings.temperature == 0.7
    assert settings.state_store_path(Path("/repo")) == Path("/tmp/studio")


def test_relative_state_store_root_resolves_against_repo() -> None:
    assert RuntimeSettings().state_store_path(Path("/repo")) == Path("/repo/state_store")


@pytest.mark.parametrize(
    ("name", "value", "message"),
    [
        ("STUDIO_LLM_TIMEOUT", "abc", "must be an integer"),
        ("STUDIO_RATE_LIMIT_REQUESTS", "0", "must be >= 1"),
        ("STUDIO_TEMPERATURE", "3.5", "must be within"),
        ("STUDIO_PROVIDER", "bedrock", "STUDIO_PROVIDER must be one of"),
        ("STUDIO_MODEL_FRONTIER", "  ", "STUDIO_MODEL_FRONTIER must be non-empty"),
    ],
)
def test_runtime_settings_invalid_env_raises(monkeypatch: pytest.MonkeyPatch, name: str, value: str, message: str) -> None:
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError, match=message):
        RuntimeSettings.from_env()


def test_model_selection_routes_stages_to_tiers(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("STUDIO_TIER_SOLUTIONS", "frontier")
    selection = RuntimeModelSelection.from_settings(RuntimeSettings(model_frontier="big", model_efficient="small"))
    assert selection.resolve(Stage.SYNTHESIS) == "big"
    assert selection.resolve(Stage.SOLUTIONS) == "big"
    assert selection.resolve(Stage.SEQUENCING) == "small"
    assert set(DEFAULT_MODELS_BY_TIER) == {"frontier", "efficient"}


def test_model_selection_rejects_unknown_tier(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("STUDIO_TIER_SYNTHESIS", "gigantic")
    with pytest.raises(ValueError, match="unknown tier"):
        RuntimeModelSelection.from_settings(RuntimeSettings())


def test_provider_defaults_to_auto_with_per_provider_models(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("STUDIO_ANTHROPIC_MODEL_EFFICIENT", " claude-small ")
    settings = RuntimeSettings.from_env()
    assert settings.provider == "auto"
    assert settings.models_for("anthropic")["efficient"] == "claude-small"
    assert settings.models_for("openai") == {"frontier": "gpt-4o", "efficient": "gpt-4o-mini"}
    selection = RuntimeModelSelection.from_settings(settings, provider="anthropic")
    assert selection.resolve(Stage.SEQUENCING) == "claude-small"
