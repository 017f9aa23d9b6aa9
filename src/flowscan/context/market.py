from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Literal, Optional

Trend = Literal["bullish", "bearish", "neutral"]

# Sector ETF -> top holdings
SECTORS: Dict[str, tuple[str, tuple[str, ...]]] = {
    "XLK": ("Technology", ("AAPL", "MSFT", "NVDA", "AVGO", "AMD", "CRM", "ADBE", "ORCL", "CSCO", "INTC")),
    "XLF": ("Financials", ("JPM", "BAC", "WFC", "GS", "MS", "C", "BLK", "SCHW", "AXP", "USB")),
    "XLE": ("Energy", ("XOM", "CVX", "COP", "SLB", "EOG", "MPC", "PSX", "VLO", "PXD", "OXY")),
    "XLV": ("Healthcare", ("UNH", "JNJ", "LLY", "PFE", "ABBV", "MRK", "TMO", "ABT", "DHR", "BMY")),
    "XLY": ("Consumer Disc", ("AMZN", "TSLA", "HD", "MCD", "NKE", "LOW", "SBUX", "TJX", "BKNG", "CMG")),
    "XLP": ("Consumer Staples", ("PG", "KO", "PEP", "COST", "WMT", "PM", "MDLZ", "MO", "CL", "KHC")),
    "XLI": ("Industrials", ("RTX", "HON", "UPS", "CAT", "BA", "GE", "DE", "LMT", "MMM", "UNP")),
    "XLU": ("Utilities", ("NEE", "DUK", "SO", "D", "AEP", "SRE", "EXC", "XEL", "PEG", "WEC")),
    "XLRE": ("Real Estate", ("PLD", "AMT", "EQIX", "CCI", "SPG", "PSA", "O", "WELL", "DLR", "AVB")),
    "XLB": ("Materials", ("LIN", "APD", "SHW", "FCX", "ECL", "NEM", "NUE", "DOW", "CTVA", "DD")),
    "XLC": ("Communications", ("META", "GOOGL", "GOOG", "NFLX", "DIS", "CMCSA", "VZ", "T", "TMUS", "CHTR")),
}

_TICKER_TO_ETF: Dict[str, str] = {t: etf for etf, (_, tickers) in SECTORS.items() for t in tickers}

TREND_THRESHOLD = 0.003         # +-0.3% day change
RELATIVE_STRENGTH_EDGE = 0.02   # counter-trend move must beat the benchmark by 2 points
BENCHMARK_MAX_AGE_MS = 120_000
SECTOR_MAX_AGE_MS = 300_000
LEADER_RANK = 3


def trend_of(change: float, threshold: float = TREND_THRESHOLD) -> Trend:
    if change > threshold:
        return "bullish"
    if change < -threshold:
        return "bearish"
    return "neutral"


@dataclass(frozen=True)
class MarketSnapshot:
    """
    Immutable view of benchmark and sector performance. Changes are day
    changes as fractions. Replaced wholesale by the refresher.
    """
    benchmark: str = "SPY"
    benchmark_change: Optional[float] = None
    benchmark_updated_ms: Optional[int] = None
    sector_changes: Dict[str, float] = field(default_factory=dict)
    sectors_updated_ms: Optional[int] = None

    @property
    def benchmark_trend(self) -> Trend:
        if self.benchmark_change is None:
            return "neutral"
        return trend_of(self.benchmark_change)

    def sector_ranking(self) -> list[tuple[str, float]]:
        return sorted(self.sector_changes.items(), key=lambda kv: kv[1], reverse=True)


@dataclass(frozen=True)
class Alignment:
    aligned: bool
    kind: Literal["stale", "neutral", "aligned", "relative_strength", "against_trend"]
    confidence: Optional[Literal["high", "low"]] = None
    benchmark_change: Optional[float] = None
    reason: str = ""

    @property
    def points(self) -> int:
        """Heat adjustment implied by this alignment."""
        if self.kind == "against_trend":
            return -10
        if self.kind == "relative_strength":
            return 10
        return 0


@dataclass(frozen=True)
class SectorContext:
    etf: str
    name: str
    change: float
    rank: int
    total: int

    @property
    def is_leader(self) -> bool:
        return self.rank <= LEADER_RANK

    @property
    def is_laggard(self) -> bool:
        return self.rank >= self.total - 2


class MarketContextStore:
    """Holds the current MarketSnapshot; readers never see a half-built one."""
    def __init__(self, snapshot: Optional[MarketSnapshot] = None):
        self._snap = snapshot or MarketSnapshot()

    @property
    def snapshot(self) -> MarketSnapshot:
        return self._snap

    def replace(self, snapshot: MarketSnapshot) -> None:
        self._snap = snapshot

    def check_alignment(self, move: float, now_ms: int) -> Alignment:
        snap = self._snap
        if (
            snap.benchmark_change is None
            or snap.benchmark_updated_ms is None
            or now_ms - snap.benchmark_updated_ms >= BENCHMARK_MAX_AGE_MS
        ):
            return Alignment(True, "stale", reason=f"{snap.benchmark} data stale")

        bench = snap.benchmark_trend
        if bench == "neutral":
            return Alignment(True, "neutral", benchmark_change=snap.benchmark_change,
                             reason=f"{snap.benchmark} neutral")

        mine = trend_of(move)
        if mine == bench:
            return Alignment(True, "aligned", "high", snap.benchmark_change,
                             reason=f"aligned with {snap.benchmark} ({bench})")
        if mine == "neutral":
            return Alignment(True, "neutral", benchmark_change=snap.benchmark_change,
                             reason="no directional move")

        edge = abs(move) - abs(snap.benchmark_change)
        if edge > RELATIVE_STRENGTH_EDGE:
            return Alignment(True, "relative_strength", "high", snap.benchmark_change,
                             reason=f"relative strength vs {snap.benchmark} (+{edge * 100:.1f}%)")
        return Alignment(False, "against_trend", "low", snap.benchmark_change,
                         reason=f"against {snap.benchmark} trend ({bench})")

    def sector_for(self, ticker: str) -> Optional[tuple[str, str]]:
        """(etf, sector name) for a tracked ticker, else None."""
        etf = _TICKER_TO_ETF.get(ticker.upper())
        if etf is None:
            return None
        return etf, SECTORS[etf][0]

    def sector_context(self, ticker: str, now_ms: int) -> Optional[SectorContext]:
        found = self.sector_for(ticker)
        snap = self._snap
        if found is None or snap.sectors_updated_ms is None:
            return None
        if now_ms - snap.sectors_updated_ms >= SECTOR_MAX_AGE_MS:
            return None
        etf, name = found
        ranking = snap.sector_ranking()
        for i, (e, change) in enumerate(ranking, start=1):
            if e == etf:
                return SectorContext(etf, name, change, i, len(ranking))
        return None

    def is_sector_leader(self, ticker: str, now_ms: int) -> bool:
        ctx = self.sector_context(ticker, now_ms)
        return ctx is not None and ctx.is_leader
