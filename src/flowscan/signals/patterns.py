# src/flowscan/signals/patterns.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Literal, Optional

import numpy as np

PatternType = Literal[
    "breakout", "breakdown", "double_bottom", "double_top",
    "uptrend", "downtrend", "vwap_reclaim", "vwap_rejection",
]
Bias = Literal["bullish", "bearish"]

# ----------------------------
# Parameters (minute bars)
# ----------------------------
LEVEL_BARS      = 15       # window for support / resistance
LEVEL_SKIP      = 3        # newest bars left out of the level
LEVEL_BREAK     = 0.002    # close beyond the level by 0.2%
LEVEL_VOLUME    = 1.5      # current volume vs window average
DOUBLE_MIN_BARS = 15
DOUBLE_TOLERANCE = 0.01    # second touch within 1% of the first
DOUBLE_MIN_GAP  = 3        # bars between the two touches (exclusive)
DOUBLE_SWING    = 0.015    # bounce / drop between touches
DOUBLE_CONFIRM  = 0.005    # price away from the second touch
TREND_MIN_BARS  = 12
TREND_BARS      = 8
VWAP_BARS       = 5
VWAP_BAND       = 0.002


@dataclass(frozen=True, slots=True)
class PatternMatch:
    pattern: PatternType
    bias: Bias
    level: float
    confidence: float
    volume_multiple: float = 0.0
    swing_pct: float = 0.0
    legs: int = 0


@dataclass(slots=True)
class BarWindow:
    """Oldest-first bar columns; the last row is the bar being processed."""
    highs: np.ndarray
    lows: np.ndarray
    closes: np.ndarray
    volumes: np.ndarray
    vwaps: np.ndarray

    def __len__(self) -> int:
        return int(self.closes.size)

    @property
    def price(self) -> float:
        return float(self.closes[-1])

    @property
    def volume(self) -> float:
        return float(self.volumes[-1])


def level_confidence(level1: float, level2: float, volume: float, avg_volume: float) -> float:
    conf = 60.0
    vm = volume / avg_volume
    if vm > 2:
        conf += 15
    elif vm > 1.5:
        conf += 10
    brk = abs(level1 - level2) / level2
    if brk > 0.005:
        conf += 10
    if brk > 0.01:
        conf += 5
    return min(95.0, conf)


def _level_window(w: BarWindow) -> Optional[tuple[np.ndarray, np.ndarray, float]]:
    n = min(LEVEL_BARS, len(w))
    if n <= LEVEL_SKIP:
        return None
    avg = float(np.mean(w.volumes[-n:]))
    if avg <= 0:
        return None
    return w.highs[-n:-LEVEL_SKIP], w.lows[-n:-LEVEL_SKIP], avg


def check_breakout(w: BarWindow) -> Optional[PatternMatch]:
    lw = _level_window(w)
    if lw is None:
        return None
    highs, _, avg = lw
    resistance = float(np.max(highs))
    if w.price > resistance * (1 + LEVEL_BREAK) and w.volume > avg * LEVEL_VOLUME:
        return PatternMatch(
            "breakout", "bullish", resistance,
            level_confidence(w.price, resistance, w.volume, avg),
            volume_multiple=w.volume / avg,
        )
    return None


def check_breakdown(w: BarWindow) -> Optional[PatternMatch]:
    lw = _level_window(w)
    if lw is None:
        return None
    _, lows, avg = lw
    support = float(np.min(lows))
    if w.price < support * (1 - LEVEL_BREAK) and w.volume > avg * LEVEL_VOLUME:
        return PatternMatch(
            "breakdown", "bearish", support,
            level_confidence(support, w.price, w.volume, avg),
            volume_multiple=w.volume / avg,
        )
    return None


def _double(extremes: np.ndarray, w: BarWindow, bottom: bool) -> Optional[PatternMatch]:
    n = len(w)
    if n < DOUBLE_MIN_BARS:
        return None
    half = n // 2
    first_idx = int(np.argmin(extremes[:half]) if bottom else np.argmax(extremes[:half]))
    first = float(extremes[first_idx])
    if first <= 0:
        return None

    second_idx = -1
    for i in range(half, n - 2):
        if abs(extremes[i] - first) / first < DOUBLE_TOLERANCE:
            second_idx = i
            break
    if second_idx <= first_idx + DOUBLE_MIN_GAP:
        return None

    between = w.closes[first_idx + 1:second_idx]
    second = float(extremes[second_idx])
    if bottom:
        swing = (float(np.max(between)) - first) / first
        confirmed = w.price > second * (1 + DOUBLE_CONFIRM)
    else:
        swing = (first - float(np.min(between))) / first
        confirmed = w.price < second * (1 - DOUBLE_CONFIRM)
    if swing <= DOUBLE_SWING or not confirmed:
        return None
    return PatternMatch(
        "double_bottom" if bottom else "double_top",
        "bullish" if bottom else "bearish",
        first,
        min(85.0, 60 + swing * 100 * 3),
        swing_pct=swing,
    )


def check_double_bottom(w: BarWindow) -> Optional[PatternMatch]:
    return _double(w.lows, w, bottom=True)


def check_double_top(w: BarWindow) -> Optional[PatternMatch]:
    return _double(w.highs, w, bottom=False)


def check_trend(w: BarWindow) -> Optional[PatternMatch]:
    """Higher highs and higher lows (or the reverse) every other bar."""
    if len(w) < TREND_MIN_BARS:
        return None
    h = w.highs[-TREND_BARS:]
    l = w.lows[-TREND_BARS:]
    hh = int(np.sum(h[2::2] > h[:-2:2]))
    hl = int(np.sum(l[2::2] > l[:-2:2]))
    lh = int(np.sum(h[2::2] < h[:-2:2]))
    ll = int(np.sum(l[2::2] < l[:-2:2]))
    if hh >= 2 and hl >= 2:
        return PatternMatch("uptrend", "bullish", w.price, 65.0 + (hh + hl) * 5, legs=hh + hl)
    if lh >= 2 and ll >= 2:
        return PatternMatch("downtrend", "bearish", w.price, 65.0 + (lh + ll) * 5, legs=lh + ll)
    return None


def check_vwap(w: BarWindow) -> Optional[PatternMatch]:
    """Reclaim: a recent close under VWAP, now above. Rejection is the mirror."""
    vw = w.vwaps[-VWAP_BARS:]
    vw = vw[np.isfinite(vw) & (vw > 0)]
    if vw.size < 3:
        return None
    vwap = float(vw[-1])
    earlier = w.closes[-VWAP_BARS:][:-2]
    price = w.price

    if np.any(earlier < vwap * (1 - VWAP_BAND)) and price > vwap * (1 + VWAP_BAND):
        return PatternMatch("vwap_reclaim", "bullish", vwap, 70.0)
    if np.any(earlier > vwap * (1 + VWAP_BAND)) and price < vwap * (1 - VWAP_BAND):
        return PatternMatch("vwap_rejection", "bearish", vwap, 70.0)
    return None


# (cooldown scope, check) in evaluation order; up/down variants share a scope
PATTERN_CHECKS: list[tuple[str, Callable[[BarWindow], Optional[PatternMatch]]]] = [
    ("breakout", check_breakout),
    ("breakdown", check_breakdown),
    ("double_bottom", check_double_bottom),
    ("double_top", check_double_top),
    ("trend", check_trend),
    ("vwap", check_vwap),
]
