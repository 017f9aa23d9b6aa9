from __future__ import annotations

from typing import Callable, Optional

import structlog

from flowscan.data.ttl_cache import TTLCache
from flowscan.utils.time import utc_now_ms

log = structlog.get_logger("cooldown")

SWEEP_BUCKET_MS = 10_000
PATTERN_COOLDOWN_S = 1800


def detector_key(detector: str, ticker: str) -> str:
    """Scope key for a per-ticker detector, e.g. 'momentum-AAPL'."""
    return f"{detector}-{ticker}"


def sweep_key(contract_id: str, now_ms: int) -> str:
    """Per-contract key bucketed to 10s windows."""
    return f"sweep-{contract_id}-{int(now_ms) // SWEEP_BUCKET_MS}"


def pattern_key(ticker: str, pattern: str) -> str:
    return f"pattern-{ticker}-{pattern}"


def alert_key(ticker: str) -> str:
    return f"alert-{ticker}"


class CooldownManager:
    """
    Shared TTL-keyed suppression map: key -> last fired (epoch ms).

    should_suppress() is a pure read. Callers mark the key with mark_fired()
    once they actually emit, or use try_fire() to do both in one step.
    """
    def __init__(self, clock: Optional[Callable[[], int]] = None, max_size: int = 50_000):
        self._clock = clock or utc_now_ms
        self._last: TTLCache[None] = TTLCache(max_size=max_size)
        self._max_window_ms = PATTERN_COOLDOWN_S * 1000

    def __len__(self) -> int:
        return len(self._last)

    def _now(self, now_ms: Optional[int]) -> int:
        return int(now_ms) if now_ms is not None else self._clock()

    def should_suppress(self, key: str, window_s: float, now_ms: Optional[int] = None) -> bool:
        window_ms = int(window_s * 1000)
        if window_ms > self._max_window_ms:
            self._max_window_ms = window_ms
        age = self._last.age_ms(key, self._now(now_ms))
        return age is not None and age < window_ms

    def mark_fired(self, key: str, now_ms: Optional[int] = None) -> None:
        self._last.put(key, None, self._now(now_ms))

    def try_fire(self, key: str, window_s: float, now_ms: Optional[int] = None) -> bool:
        """Check-and-mark. True if the caller may fire now."""
        now = self._now(now_ms)
        if self.should_suppress(key, window_s, now):
            return False
        self.mark_fired(key, now)
        return True

    def last_fired(self, key: str) -> Optional[int]:
        return self._last.stamp(key)

    def forget(self, key: str) -> None:
        self._last.pop(key)

    def keys(self) -> list[str]:
        return list(self._last.keys())

    def sweep(self, now_ms: Optional[int] = None, max_age_ms: Optional[int] = None) -> int:
        """
        Drop keys older than max_age_ms (default: the largest window seen).
        An evicted key can no longer suppress, so the default never shortens
        a live cooldown.
        """
        age = self._max_window_ms if max_age_ms is None else max_age_ms
        removed = self._last.evict_older_than(age, self._now(now_ms))
        if removed:
            log.debug("cooldown_swept", removed=removed, remaining=len(self._last))
        return removed

    def clear(self) -> None:
        self._last.clear()

