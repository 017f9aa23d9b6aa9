from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional, Union

import numpy as np

from flowscan.alerts.cooldown import PATTERN_COOLDOWN_S, CooldownManager, detector_key, pattern_key
from flowscan.data.aggregation import AggregationEngine, TickerState
from flowscan.signals.patterns import PATTERN_CHECKS, BarWindow, PatternMatch
from flowscan.signals.types import (
    BlockTrade, Breakout, ChartPattern, ConsolidationBreakout, DetectorResult, Gap,
    MomentumSurge, NewHigh, NewLow, RelativeStrength, VolumeSpike, VwapCross,
    fired, insufficient, not_met, suppressed,
)
from flowscan.utils.types import Bar, Trade


@dataclass(slots=True)
class DetectorConfig:
    """
    Thresholds and cooldowns for the per-ticker detectors.
    Percentages are fractions; cooldowns are seconds.
    """
    min_block_value: float = 500_000.0
    large_block_value: float = 1_000_000.0
    block_cooldown_s: int = 10

    momentum_1bar: float = 0.01
    momentum_5bar: float = 0.025
    momentum_high: float = 0.03
    momentum_min_bars: int = 5
    momentum_cooldown_s: int = 60

    volume_spike_multiple: float = 3.0
    volume_extreme_multiple: float = 5.0
    volume_min_bars: int = 20
    volume_cooldown_s: int = 60

    vwap_cooldown_s: int = 300

    highlow_min_session_bars: int = 60
    highlow_cooldown_s: int = 300

    breakout_min_bars: int = 20
    breakout_lookback: int = 20
    breakout_skip: int = 2
    breakout_min_window: int = 10
    breakout_buffer: float = 0.002
    breakout_cooldown_s: int = 300

    gap_min_pct: float = 0.02
    gap_high_pct: float = 0.05
    gap_max_session_bars: int = 5
    gap_cooldown_s: int = 3600

    rs_bars: int = 30
    rs_min_pct: float = 0.02
    rs_high_pct: float = 0.03
    rs_cooldown_s: int = 600

    consol_bars: int = 10
    consol_max_range: float = 0.015
    consol_break: float = 0.002
    consol_cooldown_s: int = 600

    pattern_bars: int = 30
    pattern_min_bars: int = 10
    pattern_min_confidence: float = 70.0
    pattern_strong_confidence: float = 80.0
    pattern_cooldown_s: int = PATTERN_COOLDOWN_S

    benchmark: str = "SPY"


@dataclass(slots=True)
class DetectContext:
    """Everything a detector may read for one ingestion event."""
    state: TickerState
    event: Union[Trade, Bar]
    now_ms: int
    cfg: DetectorConfig
    cooldown: CooldownManager
    aggregation: AggregationEngine


Detector = Callable[[DetectContext], DetectorResult]


def _gate(ctx: DetectContext, scope: str, window_s: float) -> bool:
    """True if the cooldown allows firing; marks the key when it does."""
    return ctx.cooldown.try_fire(detector_key(scope, ctx.state.ticker), window_s, ctx.now_ms)


# ---------------------------------------------------------------------------
# trade-path detectors
# ---------------------------------------------------------------------------

def detect_block_trade(ctx: DetectContext) -> DetectorResult:
    name = "block_trade"
    t: Trade = ctx.event
    value = t.price * t.size
    if value < ctx.cfg.min_block_value:
        return not_met(name)
    if not _gate(ctx, "block", ctx.cfg.block_cooldown_s):
        return suppressed(name)
    large = value >= ctx.cfg.large_block_value
    return fired(name, BlockTrade(
        ticker=ctx.state.ticker,
        price=t.price,
        timestamp_ms=ctx.now_ms,
        severity="high" if large else "medium",
        size=t.size,
        trade_value=value,
        is_large=large,
    ))


def detect_momentum(ctx: DetectContext) -> DetectorResult:
    name = "momentum_surge"
    st = ctx.state
    if len(st.bars) < ctx.cfg.momentum_min_bars:
        return insufficient(name)

    price = ctx.event.price
    ref1 = st.close_back(2) or price
    ref5 = st.close_back(6) or price
    ch1 = (price - ref1) / ref1
    ch5 = (price - ref5) / ref5
    if abs(ch1) < ctx.cfg.momentum_1bar and abs(ch5) < ctx.cfg.momentum_5bar:
        return not_met(name)
    if not _gate(ctx, "momentum", ctx.cfg.momentum_cooldown_s):
        return suppressed(name)

    move = max(abs(ch1), abs(ch5))
    return fired(name, MomentumSurge(
        ticker=st.ticker,
        price=price,
        timestamp_ms=ctx.now_ms,
        severity="high" if move > ctx.cfg.momentum_high else "medium",
        change_pct=move,
        change_1bar=ch1,
        change_5bar=ch5,
        direction="up" if ch1 > 0 else "down",
    ))


def detect_vwap_cross(ctx: DetectContext) -> DetectorResult:
    name = "vwap_cross"
    st = ctx.state
    vwap = st.vwap
    prev = st.prev_trade_price()
    if vwap is None or prev is None:
        return insufficient(name)

    price = ctx.event.price
    above = prev < vwap < price
    below = prev > vwap > price
    if not (above or below):
        return not_met(name)
    if not _gate(ctx, "vwap", ctx.cfg.vwap_cooldown_s):
        return suppressed(name)
    return fired(name, VwapCross(
        ticker=st.ticker,
        price=price,
        timestamp_ms=ctx.now_ms,
        severity="medium",
        vwap=vwap,
        direction="above" if above else "below",
    ))


def detect_new_high_low(ctx: DetectContext) -> DetectorResult:
    name = "new_high_low"
    st = ctx.state
    if st.session_bars < ctx.cfg.highlow_min_session_bars:
        return insufficient(name)

    price = ctx.event.price
    # extrema already include this trade, so equality means it set the mark
    is_high = price >= st.day_high
    is_low = price <= st.day_low
    if not (is_high or is_low):
        return not_met(name)
    if not _gate(ctx, "highlow", ctx.cfg.highlow_cooldown_s):
        return suppressed(name)
    cls = NewHigh if is_high else NewLow
    return fired(name, cls(
        ticker=st.ticker,
        price=price,
        timestamp_ms=ctx.now_ms,
        severity="medium",
        session_bars=st.session_bars,
    ))


# ---------------------------------------------------------------------------
# bar-path detectors
# ---------------------------------------------------------------------------

def detect_volume_spike(ctx: DetectContext) -> DetectorResult:
    name = "volume_spike"
    st = ctx.state
    n = ctx.cfg.volume_min_bars
    if len(st.bars) < n:
        return insufficient(name)

    vols = st.volumes(n)
    prior = vols[:-1]
    avg = float(np.mean(prior))
    if avg <= 0:
        return not_met(name)
    current = float(vols[-1])
    rvol = current / avg
    if rvol < ctx.cfg.volume_spike_multiple:
        return not_met(name)
    if not _gate(ctx, "volume", ctx.cfg.volume_cooldown_s):
        return suppressed(name)
    return fired(name, VolumeSpike(
        ticker=st.ticker,
        price=ctx.event.close,
        timestamp_ms=ctx.now_ms,
        severity="extreme" if rvol >= ctx.cfg.volume_extreme_multiple else "high",
        rvol=rvol,
        volume=current,
        avg_volume=avg,
    ))


def detect_breakout(ctx: DetectContext) -> DetectorResult:
    name = "breakout"
    st = ctx.state
    cfg = ctx.cfg
    if len(st.bars) < cfg.breakout_min_bars:
        return insufficient(name)

    highs = st.highs(cfg.breakout_lookback + cfg.breakout_skip)
    window = highs[: len(highs) - cfg.breakout_skip]
    if len(window) < cfg.breakout_min_window:
        return insufficient(name)

    resistance = float(np.max(window))
    close = ctx.event.close
    if close <= resistance * (1.0 + cfg.breakout_buffer):
        return not_met(name)
    if not _gate(ctx, "breakout", cfg.breakout_cooldown_s):
        return suppressed(name)
    return fired(name, Breakout(
        ticker=st.ticker,
        price=close,
        timestamp_ms=ctx.now_ms,
        severity="high",
        resistance=resistance,
        breakout_pct=(close - resistance) / resistance,
    ))


def detect_gap(ctx: DetectContext) -> DetectorResult:
    name = "gap"
    st = ctx.state
    if st.prev_close <= 0:
        return insufficient(name)
    if st.session_bars > ctx.cfg.gap_max_session_bars:
        return not_met(name)

    open_px = ctx.event.open
    gap = (open_px - st.prev_close) / st.prev_close
    if abs(gap) < ctx.cfg.gap_min_pct:
        return not_met(name)
    if not _gate(ctx, "gap", ctx.cfg.gap_cooldown_s):
        return suppressed(name)
    return fired(name, Gap(
        ticker=st.ticker,
        price=open_px,
        timestamp_ms=ctx.now_ms,
        severity="high" if abs(gap) > ctx.cfg.gap_high_pct else "medium",
        prev_close=st.prev_close,
        gap_pct=gap,
        direction="up" if gap > 0 else "down",
    ))


def _change_over(st: TickerState, price: float, n: int) -> Optional[float]:
    closes = st.closes(n)
    if len(closes) < n:
        return None
    ref = float(closes[0])
    return (price - ref) / ref


def detect_relative_strength(ctx: DetectContext) -> DetectorResult:
    name = "relative_strength"
    st = ctx.state
    cfg = ctx.cfg
    if st.ticker == cfg.benchmark:
        return not_met(name)
    bench = ctx.aggregation.get(cfg.benchmark)
    if bench is None or bench.last_price <= 0:
        return insufficient(name)

    mine = _change_over(st, ctx.event.close, cfg.rs_bars)
    theirs = _change_over(bench, bench.last_price, cfg.rs_bars)
    if mine is None or theirs is None:
        return insufficient(name)

    rs = mine - theirs
    if abs(rs) < cfg.rs_min_pct:
        return not_met(name)
    if not _gate(ctx, "rs", cfg.rs_cooldown_s):
        return suppressed(name)
    return fired(name, RelativeStrength(
        ticker=st.ticker,
        price=ctx.event.close,
        timestamp_ms=ctx.now_ms,
        severity="high" if abs(rs) > cfg.rs_high_pct else "medium",
        benchmark=cfg.benchmark,
        ticker_change=mine,
        benchmark_change=theirs,
        relative_strength=rs,
        outperforming=rs > 0,
    ))


def detect_consolidation_breakout(ctx: DetectContext) -> DetectorResult:
    name = "consolidation_breakout"
    st = ctx.state
    cfg = ctx.cfg
    n = cfg.consol_bars
    # the range is built from the bars before the current one
    if len(st.bars) < n + 1:
        return insufficient(name)

    range_high = float(np.max(st.highs(n + 1)[:-1]))
    range_low = float(np.min(st.lows(n + 1)[:-1]))
    range_pct = (range_high - range_low) / range_low
    if range_pct > cfg.consol_max_range:
        return not_met(name)

    close = ctx.event.close
    up = close > range_high * (1.0 + cfg.consol_break)
    down = close < range_low * (1.0 - cfg.consol_break)
    if not (up or down):
        return not_met(name)
    if not _gate(ctx, "consol", cfg.consol_cooldown_s):
        return suppressed(name)
    return fired(name, ConsolidationBreakout(
        ticker=st.ticker,
        price=close,
        timestamp_ms=ctx.now_ms,
        severity="high",
        range_high=range_high,
        range_low=range_low,
        range_pct=range_pct,
        direction="up" if up else "down",
    ))


def detect_chart_pattern(ctx: DetectContext) -> DetectorResult:
    """
    Runs the bar-structure checks over the recent bar window and surfaces the
    most confident match. Each pattern scope has its own cooldown; only the
    surfaced pattern's scope is marked.
    """
    name = "chart_pattern"
    st = ctx.state
    cfg = ctx.cfg
    if len(st.bars) < cfg.pattern_min_bars:
        return insufficient(name)

    n = cfg.pattern_bars
    window = BarWindow(
        highs=st.highs(n),
        lows=st.lows(n),
        closes=st.closes(n),
        volumes=st.volumes(n),
        vwaps=st.bars.last("vwap", n),
    )
    best: Optional[tuple[str, PatternMatch]] = None
    cooling = False
    for scope, check in PATTERN_CHECKS:
        m = check(window)
        if m is None or m.confidence < cfg.pattern_min_confidence:
            continue
        if ctx.cooldown.should_suppress(pattern_key(st.ticker, scope), cfg.pattern_cooldown_s, ctx.now_ms):
            cooling = True
            continue
        if best is None or m.confidence > best[1].confidence:
            best = (scope, m)

    if best is None:
        return suppressed(name) if cooling else not_met(name)
    scope, m = best
    ctx.cooldown.mark_fired(pattern_key(st.ticker, scope), ctx.now_ms)
    return fired(name, ChartPattern(
        ticker=st.ticker,
        price=window.price,
        timestamp_ms=ctx.now_ms,
        severity="high" if m.confidence >= cfg.pattern_strong_confidence else "medium",
        pattern=m.pattern,
        bias=m.bias,
        level=m.level,
        confidence=m.confidence,
        volume_multiple=m.volume_multiple,
        swing_pct=m.swing_pct,
        legs=m.legs,
    ))


# priority order; first fired wins in "first" surface mode
TRADE_DETECTORS: list[tuple[str, Detector]] = [
    ("block_trade", detect_block_trade),
    ("momentum_surge", detect_momentum),
    ("vwap_cross", detect_vwap_cross),
    ("new_high_low", detect_new_high_low),
]

BAR_DETECTORS: list[tuple[str, Detector]] = [
    ("volume_spike", detect_volume_spike),
    ("breakout", detect_breakout),
    ("gap", detect_gap),
    ("relative_strength", detect_relative_strength),
    ("consolidation_breakout", detect_consolidation_breakout),
    ("chart_pattern", detect_chart_pattern),
]
