from __future__ import annotations

from typing import Generic, Iterator, Optional, TypeVar

V = TypeVar("V")


class TTLCache(Generic[V]):
    """
    Key -> (stamp_ms, value) map with age-based eviction and a max size.

    Times are passed in by the caller (epoch ms), so the cache works the same
    against wall clock and replayed event time. Insertion order is refreshed
    on every put(), so the dict iterates oldest-stamp-first as long as stamps
    are non-decreasing.
    """
    __slots__ = ("max_size", "_store")

    def __init__(self, max_size: int = 10_000):
        self.max_size = max_size
        self._store: dict[str, tuple[int, V]] = {}

    def __len__(self) -> int:
        return len(self._store)

    def __contains__(self, key: str) -> bool:
        return key in self._store

    def keys(self) -> Iterator[str]:
        return iter(self._store)

    def put(self, key: str, value: V, now_ms: int) -> None:
        # re-insert so the dict stays ordered by last write
        self._store.pop(key, None)
        self._store[key] = (int(now_ms), value)
        if len(self._store) > self.max_size:
            # drop ~25% oldest entries
            for k in list(self._store)[: max(1, self.max_size // 4)]:
                self._store.pop(k, None)

    def get(self, key: str) -> Optional[V]:
        hit = self._store.get(key)
        return None if hit is None else hit[1]

    def stamp(self, key: str) -> Optional[int]:
        hit = self._store.get(key)
        return None if hit is None else hit[0]

    def age_ms(self, key: str, now_ms: int) -> Optional[int]:
        ts = self.stamp(key)
        return None if ts is None else int(now_ms) - ts

    def get_fresh(self, key: str, max_age_ms: int, now_ms: int) -> Optional[V]:
        """Value if written within max_age_ms of now_ms, else None."""
        hit = self._store.get(key)
        if hit is None:
            return None
        ts, value = hit
        if int(now_ms) - ts > max_age_ms:
            return None
        return value

    def pop(self, key: str) -> Optional[V]:
        hit = self._store.pop(key, None)
        return None if hit is None else hit[1]

    def evict_older_than(self, max_age_ms: int, now_ms: int) -> int:
        """Remove entries whose stamp is more than max_age_ms before now_ms."""
        cutoff = int(now_ms) - max_age_ms
        stale = [k for k, (ts, _) in self._store.items() if ts < cutoff]
        for k in stale:
            del self._store[k]
        return len(stale)

    def clear(self) -> None:
        self._store.clear()
