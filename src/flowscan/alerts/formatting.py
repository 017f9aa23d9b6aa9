from __future__ import annotations
from datetime import datetime
from zoneinfo import ZoneInfo

from flowscan.signals.types import Signal, Sweep

_ARROWS = {"up": "↑", "down": "↓", "above": "↑", "below": "↓"}


def _fmt_ts(ts_ms: int, tz_name: str) -> str:
    tz = ZoneInfo(tz_name)
    return datetime.fromtimestamp(ts_ms / 1000.0, tz).strftime("%-I:%M:%S %Z")  # e.g., 10:02:30 EDT


def describe_signal(sig: Signal) -> str:
    """One-line human description of a signal's payload."""
    d = sig.details()
    kind = sig.type
    if kind == "volume_spike":
        return f"{d['rvol']:.1f}x relative volume ({d['volume']:,.0f} vs avg {d['avg_volume']:,.0f})"
    if kind == "block_trade":
        return f"${d['trade_value']:,.0f} block ({d['size']:,.0f} sh)"
    if kind == "momentum_surge":
        return f"{_ARROWS[d['direction']]} {d['change_pct'] * 100:.1f}% momentum surge"
    if kind == "breakout":
        return f"breakout above ${d['resistance']:.2f} (+{d['breakout_pct'] * 100:.2f}%)"
    if kind == "consolidation_breakout":
        return f"{_ARROWS[d['direction']]} out of ${d['range_low']:.2f}-${d['range_high']:.2f} range"
    if kind == "gap":
        return f"{_ARROWS[d['direction']]} {abs(d['gap_pct']) * 100:.1f}% gap from ${d['prev_close']:.2f}"
    if kind == "vwap_cross":
        return f"{_ARROWS[d['direction']]} VWAP cross {d['direction']} ${d['vwap']:.2f}"
    if kind == "new_high":
        return "new intraday high"
    if kind == "new_low":
        return "new intraday low"
    if kind == "relative_strength":
        verb = "outperforming" if d["outperforming"] else "underperforming"
        return f"{verb} {d['benchmark']} by {abs(d['relative_strength']) * 100:.1f}%"
    if kind == "chart_pattern":
        label = d["pattern"].replace("_", " ")
        return f"{label} at ${d['level']:.2f} ({d['bias']}, {d['confidence']:.0f}% confidence)"
    if isinstance(sig, Sweep):
        side = "BULLISH" if sig.bullish else "BEARISH"
        return (
            f"{side} {sig.option_type.upper()} sweep ${sig.strike:g} {sig.expiration} "
            f"${sig.total_premium:,.0f} across {sig.exchange_count} exchanges ({sig.dominant_side})"
        )
    return kind


def format_result_pretty(scored, tz_name: str = "America/New_York") -> str:
    sig = scored.signal
    heat = scored.heat
    channel = (heat.channel or "none").upper()
    head = (
        f"[{sig.ticker} {sig.type.upper()}] {_fmt_ts(sig.timestamp_ms, tz_name)} "
        f"${sig.price:.2f}  |  {describe_signal(sig)}"
    )
    tail = f"heat={heat.score}/100 ({channel}, {sig.severity})"
    reasons = "; ".join(f"{label} {pts:+d}" for label, pts in heat.breakdown)
    return f"{head}  |  {tail}" + (f"\n    {reasons}" if reasons else "")
