import pytest

from flowscan.context.market import MarketContextStore, MarketSnapshot
from flowscan.scoring.heat import HeatConfig, HeatScoreCalculator, ScoringContext, otm_percent
from flowscan.signals.types import (
    BlockTrade, Breakout, ChartPattern, Gap, MomentumSurge, NewLow, Sweep, VolumeSpike, VwapCross,
)
from flowscan.storage.heat_history import HeatHistory
from tests.helpers.market import T0, ny_ms

MIDDAY = ny_ms(2024, 3, 12, 12, 30)
OPENING = ny_ms(2024, 3, 12, 9, 45)


def _calc(market=None, history=None, cfg=None):
    return HeatScoreCalculator(
        cfg if cfg is not None else HeatConfig(),
        history if history is not None else HeatHistory(),
        market if market is not None else MarketContextStore(),
    )


def _sweep(premium=120_000.0, side="ask", bullish=True, expiration="2024-12-20", ts=T0, strike=200.0):
    return Sweep(
        ticker="AAPL", price=4.0, timestamp_ms=ts, severity="medium",
        contract_id="O:AAPL241220C00200000", option_type="call", strike=strike,
        expiration=expiration, exchange_count=2, exchanges=(1, 2), total_premium=premium,
        total_contracts=300, trade_count=3, dominant_side=side, bullish=bullish,
        window_start_ms=ts - 200, window_end_ms=ts,
    )


def _labels(res):
    return [label for label, _ in res.breakdown]


def test_volume_spike_base_points_without_self_confirmation():
    sig = VolumeSpike("AAPL", 100.0, T0, "high", rvol=3.5, volume=350_000, avg_volume=100_000)
    res = _calc().calculate(sig, ScoringContext(volume_multiple=3.5))
    assert res.breakdown == [("3.5x RVOL spike", 20)]
    assert res.score == 20
    assert res.channel is None and not res.meets_threshold
    assert res.phase.name == "morning"


def test_breakout_with_volume_confirmation_routes_to_flow_alerts():
    sig = Breakout("AAPL", 100.3, T0, "high", resistance=100.0, breakout_pct=0.003)
    res = _calc().calculate(sig, ScoringContext(volume_multiple=3.5))
    assert res.score == 35
    assert res.channel == "flow-alerts"
    assert res.meets_threshold


@pytest.mark.parametrize("vm,pts", [(2.9, 0), (3.0, 15), (5.0, 20), (10.0, 30)])
def test_volume_confirmation_tiers(vm, pts):
    sig = BlockTrade("AAPL", 100.0, T0, "medium", size=6_000, trade_value=600_000, is_large=False)
    res = _calc().calculate(sig, ScoringContext(volume_multiple=vm))
    assert res.score == 20 + pts


def test_watchlist_route_only_for_watched():
    sig = VwapCross("AAPL", 101.0, T0, "medium", vwap=100.5, direction="above")
    ctx = ScoringContext(volume_multiple=3.0, watched=True)
    assert _calc().calculate(sig, ctx).channel == "watchlist"
    ctx.watched = False
    assert _calc().calculate(sig, ctx).channel is None


def test_momentum_and_gap_tiers():
    calc = _calc()
    m = MomentumSurge("AAPL", 153.0, T0, "medium", change_pct=0.015, change_1bar=0.015,
                      change_5bar=0.0, direction="up")
    assert calc.calculate(m).score == 0
    m2 = MomentumSurge("AAPL", 160.0, T0, "high", change_pct=0.06, change_1bar=0.06,
                       change_5bar=0.0, direction="up")
    assert calc.calculate(m2).score == 25
    g = Gap("AAPL", 47.0, T0, "high", prev_close=50.0, gap_pct=-0.06, direction="down")
    assert calc.calculate(g).breakdown == [("-6.0% gap (large)", 25)]


def test_sweep_factors():
    res = _calc().calculate(_sweep(premium=1_500_000.0, expiration="2024-03-14"))
    assert res.breakdown[0] == ("Bullish sweep bought at ask", 20)
    assert ("$1.50M premium (>= $1M)", 25) in res.breakdown
    assert ("2 DTE (0-3 days)", 10) in res.breakdown
    assert res.dte == 2
    assert res.score == 55


def test_sweep_medium_dte_and_bid_side():
    res = _calc().calculate(_sweep(premium=600_000.0, side="bid", bullish=False, expiration="2024-03-18"))
    assert _labels(res)[0] == "$600k premium (>= $500k)"
    assert ("6 DTE (4-7 days)", 5) in res.breakdown
    assert res.score == 20


def test_sweep_otm_distance():
    res = _calc().calculate(_sweep(strike=210.0), ScoringContext(spot_price=200.0))
    assert res.otm_pct == pytest.approx(0.05)
    assert otm_percent(190.0, 200.0, "put") == pytest.approx(0.05)
    assert otm_percent(190.0, 200.0, "call") == pytest.approx(-0.05)


def test_score_clamped_to_100():
    history = HeatHistory()
    for i in range(3):
        history.record("AAPL", "sweep", 100_000, {}, T0 - (i + 1) * 60_000)
    res = _calc(history=history).calculate(
        _sweep(premium=1_500_000.0, expiration="2024-03-14"),
        ScoringContext(volume_multiple=12.0),
    )
    # 20 ask + 25 premium + 10 dte + 20 multi-sweep + 30 volume + 25 repeat
    assert res.raw_score == 130
    assert res.score == 100
    assert res.channel == "high-conviction"
    assert res.is_high_conviction


def test_score_clamped_to_zero():
    market = MarketContextStore(MarketSnapshot(benchmark_change=0.01, benchmark_updated_ms=MIDDAY))
    sig = NewLow("AAPL", 99.0, MIDDAY, "medium", session_bars=120)
    res = _calc(market=market).calculate(sig, ScoringContext(price_change=-0.01))
    # 10 new low - 10 against trend - 5 midday
    assert res.raw_score == -5
    assert res.score == 0
    assert res.alignment.kind == "against_trend"


def test_repeat_activity_tiers():
    history = HeatHistory()
    history.record("AAPL", "gap", 0.0, {}, T0 - 60_000)
    history.record("AAPL", "gap", 0.0, {}, T0)
    sig = BlockTrade("AAPL", 100.0, T0, "medium", size=6_000, trade_value=600_000, is_large=False)
    res = _calc(history=history).calculate(sig)
    assert ("2 signals in last 60 min", 15) in res.breakdown
    history.record("AAPL", "gap", 0.0, {}, T0)
    res = _calc(history=history).calculate(sig)
    assert ("3 signals in last 60 min", 25) in res.breakdown


def test_relative_strength_alignment_and_sector_leader():
    market = MarketContextStore(MarketSnapshot(
        benchmark_change=0.005,
        benchmark_updated_ms=T0 - 1_000,
        sector_changes={"XLK": 0.02, "XLF": 0.0, "XLE": -0.01, "XLU": -0.02},
        sectors_updated_ms=T0 - 1_000,
    ))
    sig = Gap("AAPL", 48.5, T0, "medium", prev_close=50.0, gap_pct=-0.03, direction="down")
    res = _calc(market=market).calculate(sig)
    assert res.alignment.kind == "relative_strength"
    assert ("Technology sector leader (#1)", 5) in res.breakdown
    # 15 gap + 10 relative strength + 5 sector
    assert res.score == 30
    assert res.sector.rank == 1


def test_iv_spike_with_flat_price():
    sig = BlockTrade("AAPL", 100.0, T0, "medium", size=6_000, trade_value=600_000, is_large=False)
    res = _calc().calculate(sig, ScoringContext(iv_change=0.2, price_change=0.001))
    assert ("IV up 20.0% with flat price", 15) in res.breakdown
    res = _calc().calculate(sig, ScoringContext(iv_change=0.2, price_change=0.02))
    assert res.score == 20


def test_phase_bonus_applied():
    sig = BlockTrade("AAPL", 100.0, OPENING, "medium", size=6_000, trade_value=600_000, is_large=False)
    res = _calc().calculate(sig)
    assert res.phase.name == "opening_drive"
    assert res.breakdown[-1] == ("Opening drive", 5)
    assert res.score == 25


def test_breakdown_sums_to_raw_score():
    history = HeatHistory()
    history.record("AAPL", "sweep", 1.0, {}, T0 - 60_000)
    res = _calc(history=history).calculate(_sweep(premium=700_000.0), ScoringContext(volume_multiple=6.0))
    assert sum(n for _, n in res.breakdown) == res.raw_score
    assert all(n != 0 for _, n in res.breakdown)


def test_chart_pattern_points_follow_confidence():
    strong = ChartPattern("AAPL", 100.8, MIDDAY, "high", pattern="breakout", bias="bullish",
                          level=100.0, confidence=85.0, volume_multiple=2.6)
    res = _calc().calculate(strong)
    assert ("Breakout (85% confidence)", 20) in res.breakdown

    weak = ChartPattern("AAPL", 96.8, MIDDAY, "medium", pattern="double_bottom", bias="bullish",
                        level=95.0, confidence=71.0, swing_pct=0.037)
    res = _calc().calculate(weak)
    assert ("Double bottom (71% confidence)", 10) in res.breakdown
