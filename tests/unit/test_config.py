import pytest

from flowscan.config import EngineConfig, TickerLists

_VARS = [
    "SURFACE_MODE", "WATCHLIST", "IGNORE_TICKERS", "BENCHMARK", "HEAT_ALERT",
    "SWEEP_MIN_PREMIUM", "DISABLE_PHASE_BONUS", "REDIS_MIRROR", "REPLAY_FILE",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for v in _VARS:
        monkeypatch.delenv(v, raising=False)


def test_defaults():
    cfg = EngineConfig.from_env(dotenv=False)
    assert cfg.surface_mode == "first"
    assert cfg.watchlist == []
    assert cfg.heat.alert == 35
    assert cfg.detectors.benchmark == "SPY"
    assert not cfg.redis_enabled
    assert cfg.replay_file is None


def test_from_env_overrides(monkeypatch):
    monkeypatch.setenv("SURFACE_MODE", "ALL")
    monkeypatch.setenv("WATCHLIST", "aapl, nvda,")
    monkeypatch.setenv("IGNORE_TICKERS", "tsla")
    monkeypatch.setenv("BENCHMARK", "qqq")
    monkeypatch.setenv("HEAT_ALERT", "40")
    monkeypatch.setenv("SWEEP_MIN_PREMIUM", "250000")
    monkeypatch.setenv("DISABLE_PHASE_BONUS", "true")
    monkeypatch.setenv("REDIS_MIRROR", "1")
    monkeypatch.setenv("REPLAY_FILE", "/tmp/day.jsonl")
    cfg = EngineConfig.from_env(dotenv=False)
    assert cfg.surface_mode == "all"
    assert cfg.watchlist == ["AAPL", "NVDA"]
    assert cfg.ignore == ["TSLA"]
    assert cfg.detectors.benchmark == "QQQ"
    assert cfg.refresh.benchmark == "QQQ"
    assert cfg.heat.alert == 40
    assert cfg.sweeps.min_premium == 250_000.0
    assert cfg.heat.phase_bonuses.opening_drive == 0
    assert cfg.redis_enabled
    assert cfg.replay_file == "/tmp/day.jsonl"
    assert cfg.refresh.baseline_tickers == ("AAPL", "NVDA")

    lists = cfg.ticker_lists()
    assert lists.is_watched("aapl")
    assert lists.is_ignored("TSLA")


def test_bad_surface_mode(monkeypatch):
    monkeypatch.setenv("SURFACE_MODE", "some")
    with pytest.raises(ValueError):
        EngineConfig.from_env(dotenv=False)


def test_ticker_lists_mutation():
    lists = TickerLists(watch=["aapl"])
    assert not lists.watch("AAPL")
    assert lists.watch("msft")
    assert lists.watched == frozenset({"AAPL", "MSFT"})
    assert lists.unwatch("aapl")
    assert not lists.unwatch("aapl")
    assert lists.ignore("spy")
    assert lists.unignore("SPY")
    assert lists.ignored == frozenset()
