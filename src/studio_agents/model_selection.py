from __future__ import annotations

import os
from dataclasses import dataclass, field

from .models import Stage
from .settings import RuntimeSettings


VALID_TIERS: frozenset[str] = frozenset({"frontier", "efficient"})

DEFAULT_MODELS_BY_TIER: dict[str, str] = {
    "frontier": "gpt-4o",
    "efficient": "gpt-4o-mini",
}

# Synthesis and sequencing reason over many rows; solutions mostly restates themes.
DEFAULT_STAGE_TIERS: dict[Stage, str] = {
    Stage.SYNTHESIS: "frontier",
    Stage.SOLUTIONS: "efficient",
    Stage.SEQUENCING: "efficient",
}


@dataclass(frozen=True)
class RuntimeModelSelection:
    """Maps each stage to a tier and each tier to a concrete model identifier.

    Model names are only ever recorded on run records; no logic branches on them,
    so the provider stays replaceable.  Each provider has its own tier map.
    """

    by_tier: dict[str, str]
    stage_tiers: dict[Stage, str] = field(default_factory=lambda: dict(DEFAULT_STAGE_TIERS))

    def __post_init__(self) -> None:
        """Validate that all required tiers are present and every stage maps to a known tier."""
        missing = VALID_TIERS - set(self.by_tier)
        if missing:
            raise ValueError(
                f"RuntimeModelSelection missing required tiers: {', '.join(sorted(missing))}. "
                f"All of {sorted(VALID_TIERS)} must be configured."
            )
        for tier, model_name in self.by_tier.items():
            if not model_name or not model_name.strip():
                raise ValueError(f"RuntimeModelSelection tier '{tier}' has empty model name")
        for stage, tier in self.stage_tiers.items():
            if tier not in self.by_tier:
                raise ValueError(f"Stage '{stage.value}' maps to unknown tier '{tier}'")

    @classmethod
    def from_settings(cls, settings: RuntimeSettings, provider: str = "openai") -> "RuntimeModelSelection":
        """Build model selection for *provider* from settings, applying per-stage tier overrides from env.

        Environment variables:
            STUDIO_TIER_SYNTHESIS / STUDIO_TIER_SOLUTIONS / STUDIO_TIER_SEQUENCING:
                Tier name for the given stage.
        """
        stage_tiers = dict(DEFAULT_STAGE_TIERS)
        for stage in Stage:
            configured = os.getenv(f"STUDIO_TIER_{stage.value.upper()}")
            if configured and configured.strip():
                stage_tiers[stage] = configured.strip().lower()
        return cls(
            by_tier=settings.models_for(provider),
            stage_tiers=stage_tiers,
        )

    def resolve(self, stage: Stage) -> str:
        """Resolve a stage to a concrete model name.

        Raises:
            ValueError: If the stage has no tier mapping.
        """
        tier = self.stage_tiers.get(stage)
        if tier is None:
            raise ValueError(f"No model tier configured for stage '{stage.value}'")
        return self.by_tier[tier]
