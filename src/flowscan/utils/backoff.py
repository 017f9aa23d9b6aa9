from __future__ import annotations

import asyncio
import random


def jitter(v: float, *, ratio: float = 0.2) -> float:
    """
    Add ±ratio jitter. ratio=0.2 -> multiply by [0.8, 1.2].
    """
    lo = 1.0 - ratio
    hi = 1.0 + ratio
    return v * (lo + (hi - lo) * random.random())


class Backoff:
    """
    Exponential retry delay for background pollers.
    next_delay() yields initial, 2x, 4x ... capped; reset() after a success.
    """
    __slots__ = ("initial", "cap", "_cur", "failures")

    def __init__(self, initial: float = 0.5, cap: float = 30.0):
        if initial <= 0 or cap < initial:
            raise ValueError("need 0 < initial <= cap")
        self.initial = float(initial)
        self.cap = float(cap)
        self._cur = self.initial
        self.failures = 0

    def next_delay(self) -> float:
        v = self._cur
        self._cur = min(self._cur * 2.0, self.cap)
        self.failures += 1
        return v

    def reset(self) -> None:
        self._cur = self.initial
        self.failures = 0

    async def sleep(self, *, ratio: float = 0.2) -> float:
        """Sleep for the next delay (jittered); returns the nominal delay."""
        d = self.next_delay()
        await asyncio.sleep(jitter(d, ratio=ratio))
        return d
