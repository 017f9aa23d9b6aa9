from __future__ import annotations

from dataclasses import dataclass, fields
from typing import ClassVar, Literal, Optional

from flowscan.signals.patterns import Bias, PatternType
from flowscan.utils.types import Direction, OptionType

Severity = Literal["medium", "high", "extreme"]
SignalType = Literal[
    "volume_spike", "momentum_surge", "breakout", "consolidation_breakout",
    "gap", "vwap_cross", "new_high", "new_low", "relative_strength",
    "block_trade", "sweep", "chart_pattern",
]
DetectorStatus = Literal["fired", "suppressed", "not_met", "insufficient_history"]

_COMMON = ("ticker", "price", "timestamp_ms", "severity")


@dataclass(frozen=True, slots=True)
class Signal:
    """
    Base of every detector output. Percent payloads are fractions (0.02 == 2%).
    """
    kind: ClassVar[SignalType]

    ticker: str
    price: float
    timestamp_ms: int
    severity: Severity

    @property
    def type(self) -> SignalType:
        return self.kind

    def details(self) -> dict:
        """Variant payload as a plain dict (common fields excluded)."""
        out = {}
        for f in fields(self):
            if f.name in _COMMON:
                continue
            v = getattr(self, f.name)
            out[f.name] = list(v) if isinstance(v, tuple) else v
        return out

    def magnitude(self) -> float:
        """Value recorded alongside the signal in heat history."""
        return 0.0

    def move_pct(self) -> float:
        """Signed price move carried by the signal (0 when it has none)."""
        return 0.0


@dataclass(frozen=True, slots=True)
class VolumeSpike(Signal):
    kind: ClassVar[SignalType] = "volume_spike"
    rvol: float
    volume: float
    avg_volume: float

    def magnitude(self) -> float:
        return self.volume


@dataclass(frozen=True, slots=True)
class BlockTrade(Signal):
    kind: ClassVar[SignalType] = "block_trade"
    size: float
    trade_value: float
    is_large: bool

    def magnitude(self) -> float:
        return self.trade_value


@dataclass(frozen=True, slots=True)
class MomentumSurge(Signal):
    kind: ClassVar[SignalType] = "momentum_surge"
    change_pct: float      # largest absolute move of the two lookbacks
    change_1bar: float
    change_5bar: float
    direction: Direction

    def move_pct(self) -> float:
        return self.change_pct if self.direction == "up" else -self.change_pct


@dataclass(frozen=True, slots=True)
class Breakout(Signal):
    kind: ClassVar[SignalType] = "breakout"
    resistance: float
    breakout_pct: float

    def move_pct(self) -> float:
        return self.breakout_pct


@dataclass(frozen=True, slots=True)
class ConsolidationBreakout(Signal):
    kind: ClassVar[SignalType] = "consolidation_breakout"
    range_high: float
    range_low: float
    range_pct: float
    direction: Direction


@dataclass(frozen=True, slots=True)
class Gap(Signal):
    kind: ClassVar[SignalType] = "gap"
    prev_close: float
    gap_pct: float         # signed
    direction: Direction

    def move_pct(self) -> float:
        return self.gap_pct


@dataclass(frozen=True, slots=True)
class VwapCross(Signal):
    kind: ClassVar[SignalType] = "vwap_cross"
    vwap: float
    direction: Literal["above", "below"]


@dataclass(frozen=True, slots=True)
class NewHigh(Signal):
    kind: ClassVar[SignalType] = "new_high"
    session_bars: int


@dataclass(frozen=True, slots=True)
class NewLow(Signal):
    kind: ClassVar[SignalType] = "new_low"
    session_bars: int


@dataclass(frozen=True, slots=True)
class RelativeStrength(Signal):
    kind: ClassVar[SignalType] = "relative_strength"
    benchmark: str
    ticker_change: float
    benchmark_change: float
    relative_strength: float   # ticker_change - benchmark_change
    outperforming: bool

    def move_pct(self) -> float:
        return self.ticker_change


@dataclass(frozen=True, slots=True)
class Sweep(Signal):
    """ticker is the underlying; price is the average fill price."""
    kind: ClassVar[SignalType] = "sweep"
    contract_id: str
    option_type: OptionType
    strike: float
    expiration: str
    exchange_count: int
    exchanges: tuple[int, ...]
    total_premium: float
    total_contracts: float
    trade_count: int
    dominant_side: Literal["ask", "bid", "unknown"]
    bullish: bool
    window_start_ms: int
    window_end_ms: int

    def magnitude(self) -> float:
        return self.total_premium


@dataclass(frozen=True, slots=True)
class ChartPattern(Signal):
    """Bar-structure pattern; level is the price the pattern formed around."""
    kind: ClassVar[SignalType] = "chart_pattern"
    pattern: PatternType
    bias: Bias
    level: float
    confidence: float
    volume_multiple: float = 0.0
    swing_pct: float = 0.0
    legs: int = 0

    def move_pct(self) -> float:
        if self.level <= 0:
            return 0.0
        return (self.price - self.level) / self.level


@dataclass(frozen=True, slots=True)
class DetectorResult:
    detector: str
    status: DetectorStatus
    signal: Optional[Signal] = None

    @property
    def fired(self) -> bool:
        return self.status == "fired"


def not_met(detector: str) -> DetectorResult:
    return DetectorResult(detector, "not_met")


def insufficient(detector: str) -> DetectorResult:
    return DetectorResult(detector, "insufficient_history")


def suppressed(detector: str) -> DetectorResult:
    return DetectorResult(detector, "suppressed")


def fired(detector: str, signal: Signal) -> DetectorResult:
    return DetectorResult(detector, "fired", signal)
