from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional

import aiohttp
import structlog

from flowscan.context.market import SECTORS, MarketContextStore, MarketSnapshot
from flowscan.errors import ContextRefreshError
from flowscan.utils.backoff import Backoff
from flowscan.utils.time import utc_now_ms

log = structlog.get_logger("context_refresh")

SNAPSHOT_PATH = "/v2/snapshot/locale/us/markets/stocks/tickers/{ticker}"


@dataclass(slots=True)
class RefreshConfig:
    rest_url: str = "https://api.polygon.io"
    api_key: Optional[str] = None
    benchmark: str = "SPY"
    interval_s: float = 60.0
    timeout_s: float = 8.0
    sector_etfs: tuple[str, ...] = field(default_factory=lambda: tuple(SECTORS))
    # tickers whose previous close is pushed into the aggregation baselines
    baseline_tickers: tuple[str, ...] = ()


@dataclass(slots=True)
class TickerSnapshot:
    ticker: str
    price: Optional[float]
    change_pct: Optional[float]   # fraction
    prev_close: Optional[float]
    day_volume: float


def parse_snapshot(data: dict) -> Optional[TickerSnapshot]:
    """Vendor ticker snapshot -> TickerSnapshot (None if the payload has no ticker)."""
    t = data.get("ticker")
    if not isinstance(t, dict):
        return None
    day = t.get("day") or {}
    prev = t.get("prevDay") or {}
    perc = t.get("todaysChangePerc")
    return TickerSnapshot(
        ticker=str(t.get("ticker", "")),
        price=day.get("c") or prev.get("c"),
        change_pct=None if perc is None else float(perc) / 100.0,
        prev_close=prev.get("c"),
        day_volume=float(day.get("v") or 0.0),
    )


class ContextRefresher:
    """
    Background poller that rebuilds the MarketSnapshot (benchmark + sector
    ETFs) and swaps it into the store. Failures back off and keep the last
    good snapshot in place.
    """
    def __init__(
        self,
        cfg: RefreshConfig,
        store: MarketContextStore,
        on_prev_close: Optional[Callable[[str, float], None]] = None,
        clock: Callable[[], int] = utc_now_ms,
    ):
        self.cfg = cfg
        self.store = store
        self.on_prev_close = on_prev_close
        self._clock = clock
        self._session: Optional[aiohttp.ClientSession] = None
        self._task: Optional[asyncio.Task] = None
        self._stop = asyncio.Event()
        self._backoff = Backoff(initial=2.0, cap=cfg.interval_s * 5)

    async def start(self):
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self.cfg.timeout_s)
            self._session = aiohttp.ClientSession(timeout=timeout)
        self._stop.clear()
        self._task = asyncio.create_task(self._loop(), name="context-refresh")

    async def stop(self):
        self._stop.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        if self._session:
            await self._session.close()
            self._session = None

    async def _get_json(self, path: str) -> dict:
        assert self._session is not None
        params = {"apiKey": self.cfg.api_key} if self.cfg.api_key else None
        url = self.cfg.rest_url.rstrip("/") + path
        try:
            async with self._session.get(url, params=params) as resp:
                if resp.status != 200:
                    raise ContextRefreshError(f"GET {path} -> {resp.status}")
                return await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ContextRefreshError(f"GET {path}: {e}") from e

    async def fetch(self, ticker: str) -> Optional[TickerSnapshot]:
        return parse_snapshot(await self._get_json(SNAPSHOT_PATH.format(ticker=ticker)))

    async def refresh_once(self) -> MarketSnapshot:
        """Fetch everything once and publish. Raises if the benchmark is unavailable."""
        bench = await self.fetch(self.cfg.benchmark)
        if bench is None or bench.change_pct is None:
            raise ContextRefreshError(f"no snapshot for {self.cfg.benchmark}")
        now = self._clock()

        sectors: dict[str, float] = {}
        for etf in self.cfg.sector_etfs:
            try:
                s = await self.fetch(etf)
            except ContextRefreshError as e:
                log.debug("sector_fetch_failed", etf=etf, err=str(e))
                continue
            if s is not None and s.change_pct is not None:
                sectors[etf] = s.change_pct

        prev = self.store.snapshot
        snap = MarketSnapshot(
            benchmark=self.cfg.benchmark,
            benchmark_change=bench.change_pct,
            benchmark_updated_ms=now,
            sector_changes=sectors or prev.sector_changes,
            sectors_updated_ms=now if sectors else prev.sectors_updated_ms,
        )
        self.store.replace(snap)
        log.info("market_context_refreshed", benchmark_change=round(bench.change_pct, 5), sectors=len(sectors))

        if self.on_prev_close is not None:
            await self._push_baselines(self.cfg.baseline_tickers)
        return snap

    async def _push_baselines(self, tickers: Iterable[str]) -> None:
        for ticker in tickers:
            try:
                s = await self.fetch(ticker)
            except ContextRefreshError as e:
                log.debug("baseline_fetch_failed", ticker=ticker, err=str(e))
                continue
            if s is not None and s.prev_close:
                self.on_prev_close(ticker, float(s.prev_close))

    async def _loop(self):
        try:
            while not self._stop.is_set():
                try:
                    await self.refresh_once()
                    self._backoff.reset()
                except ContextRefreshError as e:
                    log.warning("market_context_refresh_failed", err=str(e), failures=self._backoff.failures + 1)
                    await self._backoff.sleep()
                    continue
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=self.cfg.interval_s)
                except asyncio.TimeoutError:
                    pass
        except asyncio.CancelledError:
            return
