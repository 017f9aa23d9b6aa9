from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass
from typing import Callable, Optional

import numpy as np
import structlog

from flowscan.alerts.cooldown import CooldownManager, alert_key
from flowscan.config import EngineConfig, TickerLists
from flowscan.context.market import MarketContextStore
from flowscan.data.aggregation import AggregationEngine, TickerState, check_bar, check_trade
from flowscan.errors import DetectorFault, MalformedInputError
from flowscan.scoring.heat import HeatResult, HeatScoreCalculator, ScoringContext
from flowscan.signals.detectors import BAR_DETECTORS, TRADE_DETECTORS, DetectContext, Detector
from flowscan.signals.types import DetectorResult, Signal
from flowscan.storage.heat_history import HeatHistory
from flowscan.sweeps.correlator import SweepCorrelator
from flowscan.utils.market_calendar import SessionTracker
from flowscan.utils.time import StreamClock, ns_to_ms
from flowscan.utils.types import Bar, MarketEvent, OptionTrade, Quote, Trade

log = structlog.get_logger("engine")

SESSION_MINUTES = 390


@dataclass(slots=True)
class ScoredSignal:
    signal: Signal
    heat: HeatResult
    routed: bool = False
    alert_suppressed: bool = False


def volume_multiple(st: TickerState, lookback: int = 20) -> float:
    """
    Latest bar volume over the mean of the bars before it; falls back to the
    daily baseline spread over a regular session when history is short.
    """
    n = len(st.bars)
    if n == 0:
        return 0.0
    vols = st.volumes(lookback)
    current = float(vols[-1])
    if n >= lookback:
        avg = float(np.mean(vols[:-1]))
        return current / avg if avg > 0 else 0.0
    if st.avg_volume_baseline > 0:
        return current / (st.avg_volume_baseline / SESSION_MINUTES)
    return 0.0


class SignalEngine:
    """
    Per-event pipeline: aggregation -> detectors (or sweep correlator) ->
    heat history -> heat scoring -> routing.

    Every component is constructor-injected; defaults are built from cfg.
    Events are processed to completion one at a time. Malformed events and
    detector faults are logged and skipped; nothing here raises to the feed.
    """
    def __init__(
        self,
        cfg: Optional[EngineConfig] = None,
        lists: Optional[TickerLists] = None,
        clock: Optional[StreamClock] = None,
        aggregation: Optional[AggregationEngine] = None,
        cooldown: Optional[CooldownManager] = None,
        history: Optional[HeatHistory] = None,
        market: Optional[MarketContextStore] = None,
        correlator: Optional[SweepCorrelator] = None,
        calculator: Optional[HeatScoreCalculator] = None,
        on_result: Optional[Callable[[ScoredSignal], None]] = None,
    ):
        self.cfg = cfg if cfg is not None else EngineConfig()
        self.lists = lists if lists is not None else self.cfg.ticker_lists()
        self.clock = clock if clock is not None else StreamClock()
        if aggregation is None:
            aggregation = AggregationEngine(self.cfg.trade_buffer_cap, self.cfg.bar_buffer_cap)
        self.aggregation = aggregation
        self.cooldown = cooldown if cooldown is not None else CooldownManager(clock=self.clock.now_ms)
        self.history = history if history is not None else HeatHistory(self.cfg.history_retention_min)
        self.market = market if market is not None else MarketContextStore()
        self.correlator = correlator if correlator is not None else SweepCorrelator(self.cfg.sweeps, self.cooldown)
        if calculator is None:
            calculator = HeatScoreCalculator(self.cfg.heat, self.history, self.market)
        self.calculator = calculator
        self.on_result = on_result
        self.session = SessionTracker()
        self.last_results: list[DetectorResult] = []
        self._stop = asyncio.Event()

    # -------------------------------------------------------------------------
    # ingestion
    # -------------------------------------------------------------------------

    def dispatch(self, event: MarketEvent) -> list[ScoredSignal]:
        if isinstance(event, Trade):
            return self.on_trade(event)
        if isinstance(event, Bar):
            return self.on_bar(event)
        if isinstance(event, OptionTrade):
            return self.on_option_trade(event)
        if isinstance(event, Quote):
            self.on_quote(event)
            return []
        log.warning("event_dropped_unknown", kind=type(event).__name__)
        return []

    def _advance(self, ts_ms: int) -> int:
        now = self.clock.observe_ms(ts_ms)
        if self.session.roll(now):
            self.reset_daily()
        return now

    def on_trade(self, trade: Trade) -> list[ScoredSignal]:
        if self.lists.is_ignored(trade.ticker):
            return []
        try:
            check_trade(trade.ticker, trade.price, trade.size)
        except MalformedInputError as e:
            log.warning("event_dropped_malformed", kind="trade", reason=e.reason)
            return []
        now = self._advance(ns_to_ms(trade.timestamp_ns))
        st = self.aggregation.ingest_trade(trade.ticker, trade.price, trade.size, trade.timestamp_ns)
        return self._run(TRADE_DETECTORS, st, trade, now)

    def on_bar(self, bar: Bar) -> list[ScoredSignal]:
        if self.lists.is_ignored(bar.ticker):
            return []
        try:
            check_bar(bar.ticker, bar.open, bar.high, bar.low, bar.close, bar.volume)
        except MalformedInputError as e:
            log.warning("event_dropped_malformed", kind="bar", reason=e.reason)
            return []
        now = self._advance(bar.end_ms)
        st = self.aggregation.ingest_bar(
            bar.ticker, bar.open, bar.high, bar.low, bar.close,
            bar.volume, bar.vwap, bar.start_ms, bar.end_ms,
        )
        return self._run(BAR_DETECTORS, st, bar, now)

    def on_quote(self, quote: Quote) -> None:
        self.clock.observe_ns(quote.timestamp_ns)
        self.correlator.update_quote(quote)

    def on_option_trade(self, trade: OptionTrade) -> list[ScoredSignal]:
        if self.lists.is_ignored(trade.underlying):
            return []
        if not (math.isfinite(trade.price) and trade.price > 0 and math.isfinite(trade.size) and trade.size > 0):
            log.warning("event_dropped_malformed", kind="option_trade", contract=trade.contract_id)
            return []
        self._advance(ns_to_ms(trade.timestamp_ns))
        sweep = self.correlator.process_trade(trade)
        if sweep is None:
            return []
        self._record(sweep)
        under = self.aggregation.get(trade.underlying)
        ctx = ScoringContext(
            volume_multiple=volume_multiple(under) if under is not None else 0.0,
            spot_price=(under.last_price or None) if under is not None else None,
            watched=self.lists.is_watched(trade.underlying),
        )
        return [self._score(sweep, ctx)]

    # -------------------------------------------------------------------------
    # detection & scoring
    # -------------------------------------------------------------------------

    def _run(self, detectors: list[tuple[str, Detector]], st: TickerState, event, now: int) -> list[ScoredSignal]:
        ctx = DetectContext(
            state=st,
            event=event,
            now_ms=now,
            cfg=self.cfg.detectors,
            cooldown=self.cooldown,
            aggregation=self.aggregation,
        )
        results: list[DetectorResult] = []
        for name, fn in detectors:
            try:
                results.append(fn(ctx))
            except Exception as e:
                fault = DetectorFault(name, st.ticker, e)
                log.exception("detector_fault", detector=name, ticker=st.ticker, err=str(fault))
        self.last_results = results

        fired = [r.signal for r in results if r.fired and r.signal is not None]
        if not fired:
            return []
        for sig in fired:
            self._record(sig)
        surfaced = fired if self.cfg.surface_mode == "all" else fired[:1]

        sctx = ScoringContext(
            volume_multiple=volume_multiple(st),
            watched=self.lists.is_watched(st.ticker),
        )
        return [self._score(sig, sctx) for sig in surfaced]

    def _record(self, sig: Signal) -> None:
        try:
            self.history.record(sig.ticker, sig.type, sig.magnitude(), sig.details(), sig.timestamp_ms)
        except Exception as e:
            log.warning("heat_record_failed", ticker=sig.ticker, type=sig.type, err=str(e))

    def _score(self, sig: Signal, ctx: ScoringContext) -> ScoredSignal:
        heat = self.calculator.calculate(sig, ctx)
        out = ScoredSignal(signal=sig, heat=heat)
        if heat.meets_threshold:
            key = alert_key(sig.ticker)
            if self.cooldown.try_fire(key, self.cfg.alert_cooldown_s, sig.timestamp_ms):
                out.routed = True
            else:
                out.alert_suppressed = True
        log.info(
            "signal_scored",
            ticker=sig.ticker,
            type=sig.type,
            severity=sig.severity,
            score=heat.score,
            channel=heat.channel,
            routed=out.routed,
        )
        if out.routed and self.on_result is not None:
            try:
                self.on_result(out)
            except Exception as e:
                log.warning("result_sink_failed", ticker=sig.ticker, err=str(e))
        return out

    # -------------------------------------------------------------------------
    # session & maintenance
    # -------------------------------------------------------------------------

    def set_prev_close(self, ticker: str, prev_close: float) -> None:
        try:
            self.aggregation.set_prev_close(ticker, prev_close)
        except MalformedInputError as e:
            log.warning("baseline_rejected", ticker=ticker, reason=e.reason)

    def set_avg_volume(self, ticker: str, avg_volume: float) -> None:
        try:
            self.aggregation.set_avg_volume(ticker, avg_volume)
        except MalformedInputError as e:
            log.warning("baseline_rejected", ticker=ticker, reason=e.reason)

    def reset_daily(self) -> None:
        self.aggregation.reset_daily()
        self.cooldown.clear()
        log.info("session_reset", date=str(self.session.current))

    def cleanup(self, now_ms: Optional[int] = None) -> dict:
        now = self.clock.now_ms() if now_ms is None else now_ms
        stats = {
            "cooldown_keys": self.cooldown.sweep(now),
            "heat_records": self.history.prune(now),
        }
        stats.update(self.correlator.cleanup(now))
        return stats

    async def run_cleanup(self, interval_s: Optional[float] = None) -> None:
        """Periodic cleanup until stop()."""
        interval = self.cfg.cleanup_interval_s if interval_s is None else interval_s
        self._stop.clear()
        try:
            while not self._stop.is_set():
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=interval)
                except asyncio.TimeoutError:
                    stats = self.cleanup()
                    log.debug("cleanup_done", **stats)
        except asyncio.CancelledError:
            return

    async def stop(self) -> None:
        self._stop.set()
