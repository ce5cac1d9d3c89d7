"""
Provider cooldowns — shared by the LLM gateway's failover path.

A provider that returns a failover-eligible error (rate limit, 5xx,
overloaded, timeout) is benched for a fixed window; failover skips it
until the window expires.

Usage:
    cooldowns = ProviderCooldowns(seconds=60.0)
    cooldowns.trip("anthropic")
    cooldowns.is_cooling_down("anthropic")   # True for the next 60s
"""
import logging
import time
from typing import Callable

from cos_engine.metrics import METRICS

logger = logging.getLogger("cos.engine.cooldown")


class ProviderCooldowns:
    """Per-provider cooldown expiries; bounded to one entry per provider."""

    __slots__ = ("seconds", "_expiries", "_clock")

    def __init__(self, seconds: float = 60.0, clock: Callable[[], float] = time.monotonic):
        self.seconds = seconds
        self._expiries: dict[str, float] = {}
        self._clock = clock

    # ── State queries ────────────────────────────────────────────

    def is_cooling_down(self, provider: str) -> bool:
        expiry = self._expiries.get(provider)
        if expiry is None:
            return False
        if self._clock() >= expiry:
            del self._expiries[provider]
            return False
        return True

    def remaining(self, provider: str) -> float:
        expiry = self._expiries.get(provider)
        if expiry is None:
            return 0.0
        return max(0.0, expiry - self._clock())

    def snapshot(self) -> dict[str, float]:
        """Remaining seconds per provider still cooling down."""
        return {p: round(self.remaining(p), 1) for p in list(self._expiries) if self.is_cooling_down(p)}

    # ── Outcome recording ────────────────────────────────────────

    def trip(self, provider: str) -> None:
        """Start (or restart) the cooldown window for ``provider``."""
        now = self._clock()
        self._expiries[provider] = now + self.seconds
        for key in [k for k, v in self._expiries.items() if now >= v]:
            del self._expiries[key]
        METRICS.provider_cooldowns_total.labels(provider=provider).inc()
        logger.warning("Provider %s cooling down for %.0fs", provider, self.seconds)

    # ── Reset ────────────────────────────────────────────────────

    def reset(self, provider: str | None = None) -> None:
        if provider is None:
            self._expiries.clear()
        else:
            self._expiries.pop(provider, None)

    def __contains__(self, provider: str) -> bool:
        return self.is_cooling_down(provider)

    def __repr__(self) -> str:
        return f"ProviderCooldowns(seconds={self.seconds}, active={sorted(self.snapshot())})"
