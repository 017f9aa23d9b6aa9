import asyncio

import pytest

import flowscan.storage.redis_history as rh
from flowscan.storage.heat_history import HeatHistory, HeatRecord
from tests.helpers.fake_redis import FakeRedisModule
from tests.helpers.market import T0


def _rec(ticker="AAPL", ts=T0, kind="sweep"):
    return HeatRecord(ticker, kind, 120_000.0, ts, {"exchanges": [1, 2]})


def test_encode_decode():
    rec = _rec()
    back = rh.decode_record("AAPL", rh.encode_record(rec))
    assert back == rec


@pytest.mark.asyncio
async def test_mirror_enabled_writes_commands(monkeypatch):
    fake_mod = FakeRedisModule()
    # Patch the module attribute used inside redis_history
    monkeypatch.setattr(rh, "redis", fake_mod)

    m = rh.RedisHeatMirror(url="redis://localhost:6379/0", retention_minutes=120, enabled=True)
    await m.start()
    m.write(_rec(ts=T0))
    m.write(_rec(ts=T0 + 1_000, kind="gap"))

    # give writer loop time to flush
    await asyncio.sleep(0.05)
    await m.stop()

    assert fake_mod.last_url == "redis://localhost:6379/0"
    flat = [cmd for batch in fake_mod.instance.batches for cmd in batch]
    assert ("sadd", "heat:tickers", "AAPL") in flat
    assert ("expire", "heat:AAPL", 7_200) in flat
    assert ("zremrangebyscore", "heat:AAPL", "-inf", T0 - 7_200_000) in flat
    zadds = [c for c in flat if c[0] == "zadd"]
    assert [list(c[2].values())[0] for c in zadds] == [T0, T0 + 1_000]
    assert fake_mod.instance.closed


@pytest.mark.asyncio
async def test_mirror_disabled_is_noop(monkeypatch):
    fake_mod = FakeRedisModule()
    monkeypatch.setattr(rh, "redis", fake_mod)

    m = rh.RedisHeatMirror(url="redis://x", enabled=False)
    await m.start()
    m.write(_rec())
    await m.stop()

    assert fake_mod.last_url is None
    assert fake_mod.instance.batches == []
    assert await m.load_recent(T0) == []


@pytest.mark.asyncio
async def test_mirror_queue_drop(monkeypatch):
    fake_mod = FakeRedisModule()
    monkeypatch.setattr(rh, "redis", fake_mod)

    m = rh.RedisHeatMirror(url="redis://x", enabled=True, maxsize=1)
    m.write(_rec(ts=T0))
    m.write(_rec(ts=T0 + 1))
    assert m.dropped == 1
    await m.start()
    await asyncio.sleep(0.05)
    await m.stop()

    zadds = [c for batch in fake_mod.instance.batches for c in batch if c[0] == "zadd"]
    assert len(zadds) == 1


@pytest.mark.asyncio
async def test_write_failures_do_not_kill_the_writer(monkeypatch):
    fake_mod = FakeRedisModule()
    monkeypatch.setattr(rh, "redis", fake_mod)

    m = rh.RedisHeatMirror(url="redis://x", enabled=True)
    await m.start()
    fake_mod.instance.fail_writes = True
    m.write(_rec(ts=T0))
    await asyncio.sleep(0.02)
    fake_mod.instance.fail_writes = False
    m.write(_rec(ts=T0 + 1))
    await asyncio.sleep(0.05)
    await m.stop()
    assert len(fake_mod.instance.batches) == 1


@pytest.mark.asyncio
async def test_load_recent_hydrates_history(monkeypatch):
    fake_mod = FakeRedisModule()
    monkeypatch.setattr(rh, "redis", fake_mod)

    m = rh.RedisHeatMirror(url="redis://x", retention_minutes=120, enabled=True)
    await m.start()
    m.write(_rec("AAPL", T0 - 60_000))
    m.write(_rec("MSFT", T0 - 30_000, kind="gap"))
    await asyncio.sleep(0.05)

    # corrupt member is skipped
    fake_mod.instance.zsets["heat:AAPL"]["not json"] = T0 - 10_000

    loaded = await m.load_recent(T0)
    await m.stop()
    assert sorted((r.ticker, r.signal_type) for r in loaded) == [("AAPL", "sweep"), ("MSFT", "gap")]

    h = HeatHistory()
    assert h.load(loaded) == 2
    assert h.count_sweeps("AAPL", 30, T0) == 1
