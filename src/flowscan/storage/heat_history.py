from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, Optional, Protocol

import structlog

log = structlog.get_logger("heat_history")

RETENTION_MINUTES = 120


@dataclass(slots=True)
class HeatRecord:
    ticker: str
    signal_type: str
    magnitude: float
    timestamp_ms: int
    details: dict = field(default_factory=dict)


class HeatSink(Protocol):
    def write(self, rec: HeatRecord) -> None: ...


class HeatHistory:
    """
    Rolling per-ticker record of fired signals, used for repeat-activity and
    multiple-sweep lookups at scoring time.

    Reads are served from memory. An optional sink (e.g. RedisHeatMirror)
    receives every record; sink failures are logged and never surface.
    """
    def __init__(self, retention_minutes: int = RETENTION_MINUTES, sink: Optional[HeatSink] = None):
        self.retention_ms = retention_minutes * 60_000
        self.sink = sink
        self._by_ticker: Dict[str, Deque[HeatRecord]] = {}

    def __len__(self) -> int:
        return sum(len(d) for d in self._by_ticker.values())

    def record(self, ticker: str, signal_type: str, magnitude: float, details: dict, now_ms: int) -> HeatRecord:
        rec = HeatRecord(
            ticker=ticker,
            signal_type=signal_type,
            magnitude=float(magnitude),
            timestamp_ms=int(now_ms),
            details=dict(details),
        )
        self._by_ticker.setdefault(ticker, deque()).append(rec)
        if self.sink is not None:
            try:
                self.sink.write(rec)
            except Exception as e:
                log.warning("heat_record_failed", ticker=ticker, type=signal_type, err=str(e))
        return rec

    def load(self, records: list[HeatRecord]) -> int:
        """Seed from persisted records (oldest first). Does not echo to the sink."""
        n = 0
        for rec in sorted(records, key=lambda r: r.timestamp_ms):
            self._by_ticker.setdefault(rec.ticker, deque()).append(rec)
            n += 1
        return n

    def _window(self, ticker: str, minutes: int, now_ms: int) -> list[HeatRecord]:
        d = self._by_ticker.get(ticker)
        if not d:
            return []
        cutoff = now_ms - minutes * 60_000
        return [r for r in d if cutoff <= r.timestamp_ms <= now_ms]

    def count_signals(self, ticker: str, minutes: int, now_ms: int) -> int:
        return len(self._window(ticker, minutes, now_ms))

    def count_sweeps(self, ticker: str, minutes: int, now_ms: int) -> int:
        return sum(1 for r in self._window(ticker, minutes, now_ms) if r.signal_type == "sweep")

    def recent(self, now_ms: int, minutes: int = 60, limit: int = 50) -> list[HeatRecord]:
        """Newest first, across all tickers."""
        cutoff = now_ms - minutes * 60_000
        out = [r for d in self._by_ticker.values() for r in d if cutoff <= r.timestamp_ms <= now_ms]
        out.sort(key=lambda r: r.timestamp_ms, reverse=True)
        return out[:limit]

    def hot_tickers(self, now_ms: int, minutes: int = 60, limit: int = 10) -> list[tuple[str, int, float]]:
        """(ticker, signal_count, total_magnitude), busiest first."""
        rows = []
        for ticker in self._by_ticker:
            w = self._window(ticker, minutes, now_ms)
            if w:
                rows.append((ticker, len(w), sum(r.magnitude for r in w)))
        rows.sort(key=lambda r: (r[1], r[2]), reverse=True)
        return rows[:limit]

    def prune(self, now_ms: int) -> int:
        cutoff = now_ms - self.retention_ms
        dropped = 0
        for ticker in list(self._by_ticker):
            d = self._by_ticker[ticker]
            while d and d[0].timestamp_ms < cutoff:
                d.popleft()
                dropped += 1
            if not d:
                del self._by_ticker[ticker]
        return dropped
