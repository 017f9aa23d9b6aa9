from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, Optional

import structlog

from flowscan.context.market import Alignment, MarketContextStore, SectorContext
from flowscan.signals.types import (
    BlockTrade, ChartPattern, Gap, MomentumSurge, RelativeStrength, Signal, Sweep, VolumeSpike,
)
from flowscan.storage.heat_history import HeatHistory
from flowscan.utils.market_calendar import PhaseBonuses, SessionPhase, days_to_expiration, phase_at

log = structlog.get_logger("heat")

Channel = Literal["watchlist", "flow-alerts", "high-conviction"]


@dataclass(slots=True)
class HeatPoints:
    volume_3x: int = 20
    volume_5x: int = 30
    block: int = 20
    block_large: int = 30
    momentum_2pct: int = 15
    momentum_5pct: int = 25
    breakout: int = 20
    consolidation_breakout: int = 20
    gap: int = 15
    gap_large: int = 25
    vwap_cross: int = 15
    new_high: int = 15
    new_low: int = 10
    relative_strength: int = 20
    chart_pattern: int = 10
    chart_pattern_strong: int = 20

    sweep_at_ask: int = 20
    premium_500k: int = 15
    premium_1m: int = 25
    dte_0_3: int = 10
    dte_4_7: int = 5
    multiple_sweeps: int = 20

    confirm_3x: int = 15
    confirm_5x: int = 20
    confirm_10x: int = 30

    iv_spike_flat_price: int = 15

    repeat_2: int = 15
    repeat_3: int = 25

    sector_leader: int = 5


@dataclass(slots=True)
class HeatConfig:
    """
    Scoring weights and routing thresholds. Percentages are fractions.
    """
    points: HeatPoints = field(default_factory=HeatPoints)
    high_conviction: int = 75
    alert: int = 35
    watchlist: int = 25
    repeat_window_min: int = 60
    sweep_window_min: int = 30
    short_dte_max: int = 3
    medium_dte_max: int = 7
    large_premium: float = 500_000.0
    huge_premium: float = 1_000_000.0
    iv_spike: float = 0.15
    flat_price: float = 0.005
    phase_bonuses: PhaseBonuses = field(default_factory=PhaseBonuses)


@dataclass(slots=True)
class ScoringContext:
    """
    Per-call inputs not carried by the signal itself.

    volume_multiple: latest bar volume over its recent average (confirmation)
    price_change:    signed move used for benchmark alignment; defaults to the
                     signal's own move
    iv_change:       implied-volatility change as a fraction, when known
    spot_price:      underlying price, for sweep OTM distance
    """
    volume_multiple: float = 0.0
    price_change: Optional[float] = None
    iv_change: Optional[float] = None
    spot_price: Optional[float] = None
    watched: bool = False


@dataclass(slots=True)
class HeatResult:
    ticker: str
    signal_type: str
    raw_score: int
    score: int
    breakdown: list[tuple[str, int]]
    meets_threshold: bool
    channel: Optional[Channel]
    phase: SessionPhase
    alignment: Alignment
    sector: Optional[SectorContext] = None
    dte: Optional[int] = None
    otm_pct: Optional[float] = None

    @property
    def is_high_conviction(self) -> bool:
        return self.channel == "high-conviction"


def _fmt_money(v: float) -> str:
    if v >= 1_000_000:
        return f"${v / 1_000_000:.2f}M"
    if v >= 1_000:
        return f"${v / 1_000:.0f}k"
    return f"${v:.0f}"


def otm_percent(strike: float, spot: float, option_type: str) -> float:
    """Distance out of the money as a fraction (negative when in the money)."""
    if option_type == "call":
        return (strike - spot) / spot
    return (spot - strike) / spot


class HeatScoreCalculator:
    """
    Turns a Signal plus context into a capped 0-100 heat score and a routing
    decision. Each factor appends one (label, points) entry in evaluation order.

    History lookups (repeat activity, multiple sweeps) are windowed on the
    signal's own timestamp, so scores are reproducible for a pinned history.
    """
    def __init__(
        self,
        cfg: Optional[HeatConfig] = None,
        history: Optional[HeatHistory] = None,
        market: Optional[MarketContextStore] = None,
    ):
        self.cfg = cfg if cfg is not None else HeatConfig()
        self.history = history if history is not None else HeatHistory()
        self.market = market if market is not None else MarketContextStore()

    def calculate(self, signal: Signal, context: Optional[ScoringContext] = None) -> HeatResult:
        ctx = context or ScoringContext()
        cfg = self.cfg
        pts = cfg.points
        now = signal.timestamp_ms
        breakdown: list[tuple[str, int]] = []

        def add(label: str, n: int) -> None:
            if n:
                breakdown.append((label, n))

        self._base_points(signal, add)

        dte = otm = None
        if isinstance(signal, Sweep):
            if signal.dominant_side == "ask":
                add(f"{'Bullish' if signal.bullish else 'Bearish'} sweep bought at ask", pts.sweep_at_ask)
            if signal.total_premium >= cfg.huge_premium:
                add(f"{_fmt_money(signal.total_premium)} premium (>= $1M)", pts.premium_1m)
            elif signal.total_premium >= cfg.large_premium:
                add(f"{_fmt_money(signal.total_premium)} premium (>= $500k)", pts.premium_500k)
            try:
                dte = days_to_expiration(signal.expiration, now)
            except ValueError:
                log.warning("bad_expiration", contract=signal.contract_id, expiration=signal.expiration)
            if dte is not None:
                if 0 <= dte <= cfg.short_dte_max:
                    add(f"{dte} DTE (0-{cfg.short_dte_max} days)", pts.dte_0_3)
                elif cfg.short_dte_max < dte <= cfg.medium_dte_max:
                    add(f"{dte} DTE ({cfg.short_dte_max + 1}-{cfg.medium_dte_max} days)", pts.dte_4_7)
            sweeps = self.history.count_sweeps(signal.ticker, cfg.sweep_window_min, now)
            if sweeps >= 2:
                add(f"{sweeps} sweeps in last {cfg.sweep_window_min} min", pts.multiple_sweeps)
            if ctx.spot_price:
                otm = otm_percent(signal.strike, ctx.spot_price, signal.option_type)

        if not isinstance(signal, VolumeSpike):
            vm = ctx.volume_multiple
            if vm >= 10:
                add(f"Confirmed by {vm:.1f}x volume", pts.confirm_10x)
            elif vm >= 5:
                add(f"Confirmed by {vm:.1f}x volume", pts.confirm_5x)
            elif vm >= 3:
                add(f"Confirmed by {vm:.1f}x volume", pts.confirm_3x)

        if ctx.iv_change is not None and ctx.iv_change >= cfg.iv_spike:
            move = ctx.price_change if ctx.price_change is not None else signal.move_pct()
            if abs(move) <= cfg.flat_price:
                add(f"IV up {ctx.iv_change * 100:.1f}% with flat price", pts.iv_spike_flat_price)

        count = self.history.count_signals(signal.ticker, cfg.repeat_window_min, now)
        if count >= 3:
            add(f"{count} signals in last {cfg.repeat_window_min} min", pts.repeat_3)
        elif count >= 2:
            add(f"{count} signals in last {cfg.repeat_window_min} min", pts.repeat_2)

        move = ctx.price_change if ctx.price_change is not None else signal.move_pct()
        alignment = self.market.check_alignment(move, now)
        add(alignment.reason, alignment.points)

        sector = self.market.sector_context(signal.ticker, now)
        if sector is not None and sector.is_leader:
            add(f"{sector.name} sector leader (#{sector.rank})", pts.sector_leader)

        phase = phase_at(now, cfg.phase_bonuses)
        add(phase.label, phase.heat_bonus)

        raw = sum(n for _, n in breakdown)
        score = max(0, min(100, raw))
        channel = self._route(score, ctx.watched)
        return HeatResult(
            ticker=signal.ticker,
            signal_type=signal.type,
            raw_score=raw,
            score=score,
            breakdown=breakdown,
            meets_threshold=channel is not None,
            channel=channel,
            phase=phase,
            alignment=alignment,
            sector=sector,
            dte=dte,
            otm_pct=otm,
        )

    def _base_points(self, signal: Signal, add) -> None:
        pts = self.cfg.points
        kind = signal.type
        if isinstance(signal, VolumeSpike):
            if signal.rvol >= 5:
                add(f"{signal.rvol:.1f}x RVOL (extreme)", pts.volume_5x)
            elif signal.rvol >= 3:
                add(f"{signal.rvol:.1f}x RVOL spike", pts.volume_3x)
        elif isinstance(signal, BlockTrade):
            if signal.is_large:
                add(f"{_fmt_money(signal.trade_value)} block (large)", pts.block_large)
            else:
                add(f"{_fmt_money(signal.trade_value)} block trade", pts.block)
        elif isinstance(signal, MomentumSurge):
            if signal.change_pct >= 0.05:
                add(f"{signal.change_pct * 100:.1f}% momentum (strong)", pts.momentum_5pct)
            elif signal.change_pct >= 0.02:
                add(f"{signal.change_pct * 100:.1f}% momentum", pts.momentum_2pct)
        elif kind == "breakout":
            add(f"Breakout above ${signal.resistance:.2f}", pts.breakout)
        elif kind == "consolidation_breakout":
            add(f"Consolidation breakout {signal.direction}", pts.consolidation_breakout)
        elif isinstance(signal, Gap):
            if abs(signal.gap_pct) >= 0.05:
                add(f"{signal.gap_pct * 100:+.1f}% gap (large)", pts.gap_large)
            else:
                add(f"{signal.gap_pct * 100:+.1f}% gap", pts.gap)
        elif kind == "vwap_cross":
            add(f"VWAP cross {signal.direction}", pts.vwap_cross)
        elif kind == "new_high":
            add("New intraday high", pts.new_high)
        elif kind == "new_low":
            add("New intraday low", pts.new_low)
        elif isinstance(signal, RelativeStrength):
            if signal.outperforming:
                add(f"Outperforming {signal.benchmark} by {signal.relative_strength * 100:.1f}%", pts.relative_strength)
        elif isinstance(signal, ChartPattern):
            label = f"{signal.pattern.replace('_', ' ').capitalize()} ({signal.confidence:.0f}% confidence)"
            add(label, pts.chart_pattern_strong if signal.severity == "high" else pts.chart_pattern)

    def _route(self, score: int, watched: bool) -> Optional[Channel]:
        cfg = self.cfg
        if score >= cfg.high_conviction:
            return "high-conviction"
        if score >= cfg.alert:
            return "flow-alerts"
        if watched and score >= cfg.watchlist:
            return "watchlist"
        return None
