import asyncio
import math

import pytest

import flowscan.engine as engine_mod
from flowscan.alerts.cooldown import CooldownManager
from flowscan.config import EngineConfig, TickerLists
from flowscan.data.aggregation import AggregationEngine
from flowscan.engine import SignalEngine, volume_multiple
from flowscan.signals.detectors import detect_block_trade
from flowscan.storage.heat_history import HeatHistory
from flowscan.utils.time import StreamClock
from tests.helpers.market import T0, bar, option_trade, quote, trade


def _engine(cfg=None, lists=None, sink=None):
    return SignalEngine(cfg or EngineConfig(), lists=lists, clock=StreamClock(wall=lambda: T0), on_result=sink)


def _types(results):
    return [r.signal.type for r in results]


def _breakout_bars(eng):
    out = []
    for i in range(20):
        out += eng.on_bar(bar("AAPL", 99.5, i=i, high=100.0, low=99.0))
    out += eng.on_bar(bar("AAPL", 99.8, i=20, high=99.9, low=99.5))
    assert out == []
    return eng.on_bar(bar("AAPL", 100.30, i=21, open=99.9, high=100.35, low=99.9))


def test_volume_spike_scenario():
    eng = _engine()
    for i in range(20):
        assert eng.on_bar(bar("AAPL", 100.0, i=i, high=100.1, low=99.9)) == []
    out = eng.on_bar(bar("AAPL", 100.0, i=20, high=100.1, low=99.9, volume=350_000))
    assert _types(out) == ["volume_spike"]
    assert out[0].signal.severity == "high"
    assert out[0].heat.score == 20
    assert not out[0].routed


def test_first_mode_surfaces_one_but_records_all():
    eng = _engine()
    out = _breakout_bars(eng)
    assert _types(out) == ["breakout"]
    assert out[0].signal.resistance == pytest.approx(100.0)
    fired = [r.detector for r in eng.last_results if r.fired]
    assert fired == ["breakout", "consolidation_breakout"]
    assert eng.history.count_signals("AAPL", 60, out[0].signal.timestamp_ms) == 2


def test_all_mode_surfaces_every_fired_signal():
    cfg = EngineConfig()
    cfg.surface_mode = "all"
    out = _breakout_bars(_engine(cfg))
    assert _types(out) == ["breakout", "consolidation_breakout"]


def test_momentum_twice_within_window_gives_one_signal():
    eng = _engine()
    for i in range(5):
        eng.on_bar(bar("AAPL", 150.0, i=i, high=150.2, low=149.8))
    t = T0 + 5 * 60_000
    first = eng.on_trade(trade("AAPL", 153.0, t_ms=t))
    assert _types(first) == ["momentum_surge"]
    assert first[0].signal.direction == "up"
    second = eng.on_trade(trade("AAPL", 154.0, t_ms=t + 30_000))
    assert "momentum_surge" not in _types(second)
    status = {r.detector: r.status for r in eng.last_results}
    assert status["momentum_surge"] == "suppressed"


def test_gap_fires_once():
    eng = _engine()
    eng.set_prev_close("AAPL", 50.0)
    out = eng.on_bar(bar("AAPL", 51.5, i=0, open=51.5, high=51.8, low=51.3))
    assert _types(out) == ["gap"]
    later = []
    for i in range(1, 5):
        later += eng.on_bar(bar("AAPL", 51.6, i=i, open=51.6))
    assert "gap" not in _types(later)


def test_sweep_scenario_through_engine():
    eng = _engine()
    eng.on_quote(quote(3.9, 4.0, t_ms=T0))
    assert eng.on_option_trade(option_trade(t_ms=T0 + 100, exchange=1)) == []
    assert eng.on_option_trade(option_trade(t_ms=T0 + 200, exchange=1)) == []
    out = eng.on_option_trade(option_trade(t_ms=T0 + 300, exchange=2))
    assert _types(out) == ["sweep"]
    assert out[0].heat.score == 20
    assert eng.on_option_trade(option_trade(t_ms=T0 + 400, exchange=2)) == []
    assert eng.history.count_sweeps("AAPL", 30, T0 + 400) == 1


def test_dispatch_routes_by_event_type():
    eng = _engine()
    assert eng.dispatch(quote(3.9, 4.0)) == []
    assert eng.dispatch(trade("AAPL", 100.0)) == []
    assert eng.aggregation.get("AAPL").last_price == 100.0
    assert eng.dispatch(object()) == []


def test_malformed_trade_dropped_without_side_effects():
    eng = _engine()
    eng.on_trade(trade("AAPL", 100.0, t_ms=T0))
    assert eng.on_trade(trade("AAPL", math.nan, t_ms=T0 + 86_400_000)) == []
    st = eng.aggregation.get("AAPL")
    assert st.last_price == 100.0
    # a bad event does not move event time or roll the session
    assert eng.clock.now_ms() == T0
    assert eng.session.resets == 0


def test_detector_fault_is_isolated(monkeypatch):
    def boom(ctx):
        raise ZeroDivisionError("bad detector")

    monkeypatch.setattr(engine_mod, "TRADE_DETECTORS", [("boom", boom), ("block_trade", detect_block_trade)])
    eng = _engine()
    out = eng.on_trade(trade("AAPL", 100.0, 6_000))
    assert _types(out) == ["block_trade"]
    assert [r.detector for r in eng.last_results] == ["block_trade"]


def test_ignored_ticker_never_aggregated():
    lists = TickerLists(ignore=["aapl"])
    eng = _engine(lists=lists)
    assert eng.on_trade(trade("AAPL", 100.0, 10_000)) == []
    assert eng.on_option_trade(option_trade()) == []
    assert eng.aggregation.get("AAPL") is None


def test_alert_cooldown_per_ticker():
    routed = []
    cfg = EngineConfig()
    cfg.heat.alert = 25
    eng = _engine(cfg, sink=routed.append)
    first = eng.on_trade(trade("AAPL", 100.0, 20_000, t_ms=T0))
    assert first[0].routed and not first[0].alert_suppressed
    # block cooldown (10s) has passed, alert cooldown (60s) has not
    second = eng.on_trade(trade("AAPL", 100.0, 20_000, t_ms=T0 + 15_000))
    assert second[0].heat.meets_threshold
    assert not second[0].routed and second[0].alert_suppressed
    assert routed == first


def test_session_roll_resets_daily_state():
    eng = _engine()
    eng.on_trade(trade("AAPL", 120.0, t_ms=T0))
    eng.on_trade(trade("AAPL", 100.0, 6_000, t_ms=T0 + 1_000))
    eng.cooldown.mark_fired("gap-AAPL", T0)
    next_day = T0 + 86_400_000
    out = eng.on_trade(trade("AAPL", 101.0, 6_000, t_ms=next_day))
    st = eng.aggregation.get("AAPL")
    assert eng.session.resets == 1
    assert st.day_high == 101.0 and st.day_low == 101.0
    assert st.vwap == pytest.approx(101.0)
    assert eng.cooldown.last_fired("gap-AAPL") is None
    assert _types(out) == ["block_trade"]


def test_volume_multiple_fallbacks():
    eng = _engine()
    eng.on_bar(bar("AAPL", 100.0, volume=39_000))
    st = eng.aggregation.get("AAPL")
    assert volume_multiple(st) == 0.0
    eng.set_avg_volume("AAPL", 3_900_000)
    # 3.9M / 390 minutes = 10k per bar
    assert volume_multiple(st) == pytest.approx(3.9)


def test_baseline_rejected_is_logged_not_raised():
    eng = _engine()
    eng.set_prev_close("AAPL", -1.0)
    eng.set_avg_volume("AAPL", math.nan)
    assert eng.aggregation.get("AAPL") is None


def test_cleanup_reports_stats():
    eng = _engine()
    eng.on_trade(trade("AAPL", 100.0, 6_000, t_ms=T0))
    stats = eng.cleanup(T0 + 3 * 3_600_000)
    assert stats["heat_records"] == 1
    assert stats["cooldown_keys"] >= 1
    assert set(stats) >= {"fills", "quotes", "sweep_keys"}


@pytest.mark.asyncio
async def test_run_cleanup_stops():
    eng = _engine()
    task = asyncio.create_task(eng.run_cleanup(interval_s=0.01))
    await asyncio.sleep(0.05)
    await eng.stop()
    await asyncio.wait_for(task, timeout=1.0)
    assert task.done()


def test_injected_components_are_shared_even_when_empty():
    cd = CooldownManager()
    hist = HeatHistory()
    agg = AggregationEngine()
    eng = SignalEngine(EngineConfig(), aggregation=agg, cooldown=cd, history=hist)
    assert eng.aggregation is agg
    assert eng.cooldown is cd
    assert eng.history is hist
    assert eng.correlator.cooldown is cd
    assert eng.calculator.history is hist


def test_default_components_are_wired_together():
    eng = _engine()
    assert eng.correlator.cooldown is eng.cooldown
    assert eng.calculator.history is eng.history
    assert eng.calculator.market is eng.market


def test_repeat_activity_scored_through_engine():
    eng = _engine()
    outs = [eng.on_trade(trade("AAPL", 100.0, 10_000, t_ms=T0 + k * 11_000)) for k in range(3)]
    assert [_types(o) for o in outs] == [["block_trade"]] * 3
    first, second, third = (o[0].heat.breakdown for o in outs)
    assert not [b for b in first if "signals in last" in b[0]]
    assert ("2 signals in last 60 min", 15) in second
    assert ("3 signals in last 60 min", 25) in third


def test_second_sweep_within_window_gets_bonus():
    eng = _engine()
    eng.on_option_trade(option_trade(size=200, t_ms=T0, exchange=1))
    first = eng.on_option_trade(option_trade(size=200, t_ms=T0 + 100, exchange=2))
    assert _types(first) == ["sweep"]
    assert not [b for b in first[0].heat.breakdown if "sweeps in last" in b[0]]

    t = T0 + 60_000
    eng.on_option_trade(option_trade(size=200, t_ms=t, exchange=1))
    second = eng.on_option_trade(option_trade(size=200, t_ms=t + 100, exchange=2))
    assert _types(second) == ["sweep"]
    assert ("2 sweeps in last 30 min", 20) in second[0].heat.breakdown


def test_injected_history_sink_receives_records():
    class Sink:
        def __init__(self):
            self.records = []

        def write(self, rec):
            self.records.append(rec)

    sink = Sink()
    eng = SignalEngine(EngineConfig(), clock=StreamClock(wall=lambda: T0), history=HeatHistory(sink=sink))
    for i in range(20):
        eng.on_bar(bar("AAPL", 100.0, i=i, high=100.1, low=99.9))
    out = eng.on_bar(bar("AAPL", 100.0, i=20, high=100.1, low=99.9, volume=350_000))
    assert _types(out) == ["volume_spike"]
    assert [(r.ticker, r.signal_type) for r in sink.records] == [("AAPL", "volume_spike")]


def test_session_roll_clears_sweep_dedup_keys():
    eng = _engine()
    eng.on_option_trade(option_trade(size=200, t_ms=T0, exchange=1))
    assert _types(eng.on_option_trade(option_trade(size=200, t_ms=T0 + 100, exchange=2))) == ["sweep"]
    assert any(k.startswith("sweep-") for k in eng.cooldown.keys())
    eng.on_trade(trade("AAPL", 100.0, t_ms=T0 + 86_400_000))
    assert eng.session.resets == 1
    assert not any(k.startswith("sweep-") for k in eng.cooldown.keys())


def test_chart_pattern_scored_through_engine():
    cfg = EngineConfig()
    cfg.surface_mode = "all"
    eng = _engine(cfg)
    for i in range(19):
        assert eng.on_bar(bar("AAPL", 99.5, i=i, high=100.0, low=99.0)) == []
    out = eng.on_bar(bar("AAPL", 100.8, i=19, high=100.9, low=99.5, volume=300_000))
    assert _types(out) == ["volume_spike", "breakout", "consolidation_breakout", "chart_pattern"]
    pattern = out[-1]
    assert pattern.signal.pattern == "breakout"
    assert ("Breakout (85% confidence)", 20) in pattern.heat.breakdown
    assert eng.cooldown.last_fired("pattern-AAPL-breakout") == pattern.signal.timestamp_ms
