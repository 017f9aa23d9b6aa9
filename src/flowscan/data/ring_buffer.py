from __future__ import annotations

import numpy as np


class RingView:
    """
    Zero-copy view of the last N rows.
    - If the buffer hasn't wrapped, slices is [tuple of column slices].
    - If it has wrapped, slices is [segment1, segment2] in time order.
    """
    __slots__ = ("slices", "length")
    def __init__(self, slices: list[tuple[np.ndarray, ...]] | None, length: int):
        self.slices = slices or []
        self.length = length


class _ColumnRing:
    """
    Fixed-size circular buffer over parallel numpy columns.
    Oldest row is overwritten once capacity is reached (FIFO eviction).
    """
    COLUMNS: tuple[tuple[str, type], ...] = ()

    def __init__(self, capacity: int):
        self.capacity = int(capacity)
        if self.capacity <= 0:
            raise ValueError("capacity must be >= 1")
        self.size = 0
        self.head = 0  # next write index
        self._cols: dict[str, np.ndarray] = {
            name: np.empty(self.capacity, dtype=dt) for name, dt in self.COLUMNS
        }

    def __len__(self) -> int:
        return self.size

    def _push(self, *values) -> None:
        i = self.head
        for (name, _), v in zip(self.COLUMNS, values):
            self._cols[name][i] = v
        self.head = (i + 1) % self.capacity
        if self.size < self.capacity:
            self.size += 1

    def clear(self) -> None:
        self.size = 0
        self.head = 0

    def view_last(self, n: int) -> RingView:
        """
        Return up to last n rows as zero-copy slices in time order.
        Each entry of RingView.slices is a tuple of column slices in COLUMNS order.
        """
        if self.size == 0:
            return RingView([], 0)
        n = int(n)
        if n <= 0:
            return RingView([], 0)
        n = min(n, self.size)

        end = self.head  # exclusive
        start = (end - n) % self.capacity
        cols = [self._cols[name] for name, _ in self.COLUMNS]

        if start < end:
            sl = slice(start, end)
            return RingView([tuple(c[sl] for c in cols)], n)
        # wrapped: [start..cap) + [0..end)
        sl1 = slice(start, self.capacity)
        sl2 = slice(0, end)
        return RingView(
            [tuple(c[sl1] for c in cols), tuple(c[sl2] for c in cols)],
            n,
        )

    def last(self, column: str, n: int) -> np.ndarray:
        """
        Last n values of one column as a contiguous array (oldest first).
        Copies only when the requested range wraps.
        """
        idx = [name for name, _ in self.COLUMNS].index(column)
        view = self.view_last(n)
        if not view.slices:
            return np.empty(0, dtype=self._cols[column].dtype)
        if len(view.slices) == 1:
            return view.slices[0][idx]
        return np.concatenate([seg[idx] for seg in view.slices])

    def at(self, column: str, back: int) -> float | None:
        """
        Value `back` rows from the newest (back=1 -> newest, 2 -> previous).
        None when fewer rows are stored.
        """
        if back <= 0 or back > self.size:
            return None
        i = (self.head - back) % self.capacity
        return self._cols[column][i].item()


class RingBufferOHLCV(_ColumnRing):
    """
    Per-ticker bar history.
    Arrays:
      epoch_ms[int64], o,h,l,c,v,vwap[float64]
    """
    COLUMNS = (
        ("epoch_ms", np.int64),
        ("o", np.float64),
        ("h", np.float64),
        ("l", np.float64),
        ("c", np.float64),
        ("v", np.float64),
        ("vwap", np.float64),
    )

    def append(self, epoch_ms: int, o: float, h: float, l: float, c: float, v: float, vwap: float) -> None:
        self._push(epoch_ms, o, h, l, c, v, vwap)

    def last_epoch(self) -> int | None:
        if self.size == 0:
            return None
        return int(self.at("epoch_ms", 1))


class RingBufferTrades(_ColumnRing):
    """
    Per-ticker trade tape.
    Arrays:
      ts_ns[int64], px[float64], size[float64]
    """
    COLUMNS = (
        ("ts_ns", np.int64),
        ("px", np.float64),
        ("size", np.float64),
    )

    def append(self, ts_ns: int, px: float, size: float) -> None:
        self._push(ts_ns, px, size)
