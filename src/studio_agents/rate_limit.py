from __future__ import annotations

import logging
import math
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable

from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

DEFAULT_PRUNE_INTERVAL_SECONDS = 3_600.0


@dataclass(frozen=True)
class RateLimitPolicy:
    identifier: str
    limit: int
    window_seconds: float

    def __post_init__(self) -> None:
        if not self.identifier.strip():
            raise ValueError("RateLimitPolicy identifier must be non-empty")
        if self.limit < 1:
            raise ValueError(f"RateLimitPolicy limit must be >= 1, got: {self.limit}")
        if self.window_seconds <= 0:
            raise ValueError(f"RateLimitPolicy window_seconds must be > 0, got: {self.window_seconds}")


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_seconds: int
    limit: int


def default_policy(settings: RuntimeSettings | None = None) -> RateLimitPolicy:
    """Agent runs per user: 20 per hour unless configured otherwise."""
    settings = settings if settings is not None else RuntimeSettings()
    return RateLimitPolicy(
        identifier="insights",
        limit=settings.rate_limit_requests,
        window_seconds=float(settings.rate_limit_window_seconds),
    )


class RateLimiter:
    """Sliding-window log limiter keyed by ``identifier:user_id``.

    Keys whose log is empty after the window are pruned at most once per
    ``prune_interval_seconds`` to bound memory.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.monotonic,
        prune_interval_seconds: float = DEFAULT_PRUNE_INTERVAL_SECONDS,
    ) -> None:
        self._clock = clock
        self._prune_interval = prune_interval_seconds
        self._lock = threading.Lock()
        self._hits: dict[str, deque[float]] = {}
        self._windows: dict[str, float] = {}
        self._last_prune = clock()

    def allow(self, user_id: str, policy: RateLimitPolicy) -> RateLimitDecision:
        """Record one request for *user_id* if the policy still admits it."""
        key = f"{policy.identifier}:{user_id}"
        with self._lock:
            now = self._clock()
            self._maybe_prune(now)
            hits = self._hits.setdefault(key, deque())
            self._windows[key] = policy.window_seconds
            cutoff = now - policy.window_seconds
            while hits and hits[0] <= cutoff:
                hits.popleft()

            if len(hits) >= policy.limit:
                reset = max(1, math.ceil(hits[0] + policy.window_seconds - now))
                logger.info("Rate limit hit for %s (%d/%d)", key, len(hits), policy.limit)
                return RateLimitDecision(allowed=False, remaining=0, reset_seconds=reset, limit=policy.limit)

            hits.append(now)
            reset = max(1, math.ceil(hits[0] + policy.window_seconds - now))
            return RateLimitDecision(
                allowed=True,
                remaining=policy.limit - len(hits),
                reset_seconds=reset,
                limit=policy.limit,
            )

    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._hits)

    def _maybe_prune(self, now: float) -> None:
        if now - self._last_prune < self._prune_interval:
            return
        self._last_prune = now
        stale = [
            key
            for key, hits in self._hits.items()
            if not hits or hits[-1] <= now - self._windows.get(key, 0.0)
        ]
        for key in stale:
            del self._hits[key]
            self._windows.pop(key, None)
        if stale:
            logger.debug("Pruned %d idle rate-limit keys", len(stale))
