from __future__ import annotations

import asyncio
import json
from typing import Optional

import redis.asyncio as redis
import structlog

from flowscan.storage.heat_history import HeatRecord, RETENTION_MINUTES

log = structlog.get_logger("redis_history")

TICKER_INDEX = "heat:tickers"


def heat_key(ticker: str) -> str:
    return f"heat:{ticker}"


def encode_record(rec: HeatRecord) -> str:
    return json.dumps(
        {
            "type": rec.signal_type,
            "magnitude": rec.magnitude,
            "ts": rec.timestamp_ms,
            "details": rec.details,
        },
        separators=(",", ":"),
        sort_keys=True,
        default=str,
    )


def decode_record(ticker: str, raw: str) -> HeatRecord:
    d = json.loads(raw)
    return HeatRecord(
        ticker=ticker,
        signal_type=d["type"],
        magnitude=float(d.get("magnitude", 0.0)),
        timestamp_ms=int(d["ts"]),
        details=d.get("details") or {},
    )


class RedisHeatMirror:
    """
    Optional Redis mirror of heat history: one sorted set per ticker
    (score = epoch ms, member = JSON record). Non-blocking best-effort writes.
    """
    def __init__(self, url: str, retention_minutes: int = RETENTION_MINUTES, enabled: bool = False, maxsize: int = 5000):
        self.enabled = enabled
        self.url = url
        self.retention_ms = retention_minutes * 60_000
        self._r: Optional[redis.Redis] = None
        self._q: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._task: Optional[asyncio.Task] = None
        self.dropped = 0

    async def start(self):
        if not self.enabled:
            return
        self._r = redis.from_url(self.url, decode_responses=True)
        self._task = asyncio.create_task(self._writer_loop(), name="redis-heat-mirror")

    async def stop(self):
        if not self.enabled:
            return
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        if self._r:
            await self._r.close()
            self._r = None

    def write(self, rec: HeatRecord) -> None:
        """Enqueue a record; dropped (and counted) when the queue is full."""
        if not self.enabled:
            return
        try:
            self._q.put_nowait(rec)
        except asyncio.QueueFull:
            self.dropped += 1
            log.warning("heat_mirror_queue_full", ticker=rec.ticker, dropped=self.dropped)

    async def _writer_loop(self):
        assert self._r is not None
        r = self._r
        try:
            while True:
                rec = await self._q.get()
                key = heat_key(rec.ticker)
                p = r.pipeline()
                p.zadd(key, {encode_record(rec): rec.timestamp_ms})
                p.zremrangebyscore(key, "-inf", rec.timestamp_ms - self.retention_ms)
                p.expire(key, self.retention_ms // 1000)
                p.sadd(TICKER_INDEX, rec.ticker)
                try:
                    await p.execute()
                except Exception as e:
                    log.warning("heat_mirror_write_failed", ticker=rec.ticker, err=str(e))
        except asyncio.CancelledError:
            return

    async def load_recent(self, now_ms: int) -> list[HeatRecord]:
        """Records inside the retention window, for hydrating HeatHistory at startup."""
        if not self.enabled or self._r is None:
            return []
        lo = now_ms - self.retention_ms
        out: list[HeatRecord] = []
        try:
            tickers = await self._r.smembers(TICKER_INDEX)
            for ticker in sorted(tickers):
                for raw in await self._r.zrangebyscore(heat_key(ticker), lo, now_ms):
                    try:
                        out.append(decode_record(ticker, raw))
                    except (ValueError, KeyError, TypeError) as e:
                        log.warning("heat_mirror_bad_record", ticker=ticker, err=str(e))
        except Exception as e:
            log.warning("heat_mirror_load_failed", err=str(e))
            return []
        return out
