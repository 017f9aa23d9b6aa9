from flowscan.context.market import MarketContextStore, MarketSnapshot, trend_of
from tests.helpers.market import T0


def _store(change, updated=T0, sectors=None, sectors_updated=T0):
    return MarketContextStore(MarketSnapshot(
        benchmark="SPY",
        benchmark_change=change,
        benchmark_updated_ms=updated,
        sector_changes=sectors or {},
        sectors_updated_ms=sectors_updated,
    ))


def test_trend_of():
    assert trend_of(0.004) == "bullish"
    assert trend_of(-0.004) == "bearish"
    assert trend_of(0.002) == "neutral"


def test_alignment_stale_or_missing():
    assert MarketContextStore().check_alignment(0.02, T0).kind == "stale"
    a = _store(0.01, updated=T0 - 120_000).check_alignment(0.02, T0)
    assert a.kind == "stale" and a.aligned and a.points == 0


def test_alignment_cases():
    s = _store(0.01)
    assert s.check_alignment(0.02, T0).kind == "aligned"
    assert s.check_alignment(0.001, T0).kind == "neutral"

    against = s.check_alignment(-0.015, T0)
    assert against.kind == "against_trend"
    assert not against.aligned
    assert against.points == -10

    rs = s.check_alignment(-0.035, T0)
    assert rs.kind == "relative_strength"
    assert rs.aligned
    assert rs.points == 10


def test_neutral_benchmark():
    a = _store(0.001).check_alignment(-0.05, T0)
    assert a.kind == "neutral" and a.points == 0


def test_sector_context_ranks():
    sectors = {"XLK": 0.02, "XLF": 0.01, "XLE": -0.01, "XLV": 0.0, "XLU": -0.02}
    s = _store(0.01, sectors=sectors)
    tech = s.sector_context("aapl", T0)
    assert tech.etf == "XLK" and tech.name == "Technology"
    assert tech.rank == 1 and tech.total == 5
    assert tech.is_leader
    assert s.is_sector_leader("JPM", T0)
    util = s.sector_context("NEE", T0)
    assert util.rank == 5 and util.is_laggard and not util.is_leader
    assert s.sector_context("ZZZZ", T0) is None
    # sector data older than 5 minutes is ignored
    assert s.sector_context("AAPL", T0 + 300_000) is None


def test_replace_swaps_snapshot():
    s = MarketContextStore()
    snap = MarketSnapshot(benchmark_change=-0.01, benchmark_updated_ms=T0)
    s.replace(snap)
    assert s.snapshot is snap
    assert s.snapshot.benchmark_trend == "bearish"
