from __future__ import annotations

import time
from datetime import datetime, timezone

# --- fast, allocation-free time helpers ---

def utc_now_ms() -> int:
    """Unix epoch milliseconds (int)."""
    return time.time_ns() // 1_000_000

def utc_now_ns() -> int:
    """Unix epoch nanoseconds (int)."""
    return time.time_ns()

def ns_to_ms(ts_ns: int) -> int:
    return int(ts_ns) // 1_000_000

def ms_to_ns(ts_ms: int) -> int:
    return int(ts_ms) * 1_000_000

def normalize_epoch_ns(ts: float | int) -> int:
    """
    Best-effort epoch normalization to nanoseconds.
    Accepts seconds, milliseconds, microseconds or nanoseconds.
    """
    v = float(ts)
    if v > 1e17:     # ns
        return int(v)
    if v > 1e14:     # us
        return int(v * 1e3)
    if v > 1e11:     # ms
        return int(v * 1e6)
    return int(v * 1e9)

def utc_dt_ms(ts_ms: int) -> datetime:
    """Epoch milliseconds -> timezone-aware UTC datetime."""
    return datetime.fromtimestamp(ts_ms / 1000.0, tz=timezone.utc)


class StreamClock:
    """
    Event-time clock. `now_ms()` is the latest event timestamp observed,
    falling back to wall clock until the first event arrives.

    Timestamps never move backwards: a late event does not rewind the clock.
    """
    __slots__ = ("_last_ms", "_wall")

    def __init__(self, wall=utc_now_ms):
        self._last_ms: int | None = None
        self._wall = wall

    def observe_ns(self, ts_ns: int) -> int:
        return self.observe_ms(ns_to_ms(ts_ns))

    def observe_ms(self, ts_ms: int) -> int:
        ts_ms = int(ts_ms)
        if self._last_ms is None or ts_ms > self._last_ms:
            self._last_ms = ts_ms
        return self._last_ms

    def now_ms(self) -> int:
        if self._last_ms is None:
            return self._wall()
        return self._last_ms

    def reset(self) -> None:
        self._last_ms = None
