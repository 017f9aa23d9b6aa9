from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Dict, Iterator, Optional

import numpy as np
import structlog

from flowscan.data.ring_buffer import RingBufferOHLCV, RingBufferTrades
from flowscan.errors import MalformedInputError
from flowscan.utils.time import ns_to_ms

log = structlog.get_logger("aggregation")

TRADE_BUFFER_CAP = 1000
BAR_BUFFER_CAP = 390   # one regular session of minute bars


@dataclass(slots=True)
class TickerState:
    """
    Rolling per-ticker state. Created on first observation, never destroyed,
    reset once per trading session (bar history survives the reset so that
    multi-day lookbacks keep working at the open).
    """
    ticker: str
    trades: RingBufferTrades
    bars: RingBufferOHLCV
    last_price: float = 0.0
    last_update_ms: int = 0
    vwap_numerator: float = 0.0
    vwap_denominator: float = 0.0
    day_high: float = 0.0
    day_low: float = math.inf
    prev_close: float = 0.0
    avg_volume_baseline: float = 0.0
    session_bars: int = 0

    @property
    def vwap(self) -> Optional[float]:
        if self.vwap_denominator <= 0:
            return None
        return self.vwap_numerator / self.vwap_denominator

    def closes(self, n: int) -> np.ndarray:
        return self.bars.last("c", n)

    def highs(self, n: int) -> np.ndarray:
        return self.bars.last("h", n)

    def lows(self, n: int) -> np.ndarray:
        return self.bars.last("l", n)

    def volumes(self, n: int) -> np.ndarray:
        return self.bars.last("v", n)

    def close_back(self, back: int) -> Optional[float]:
        """Close `back` bars from the newest (1 = latest bar)."""
        return self.bars.at("c", back)

    def prev_trade_price(self) -> Optional[float]:
        """Price of the trade before the latest one in this session."""
        return self.trades.at("px", 2)

    def _extend_range(self, high: float, low: float) -> None:
        if high > self.day_high:
            self.day_high = high
        if low < self.day_low:
            self.day_low = low

    def reset_session(self) -> None:
        self.vwap_numerator = 0.0
        self.vwap_denominator = 0.0
        self.day_high = 0.0
        self.day_low = math.inf
        self.session_bars = 0
        self.trades.clear()


def _check_price(ticker: str, **prices: float) -> None:
    if not ticker:
        raise MalformedInputError("missing ticker")
    for name, px in prices.items():
        if px is None or not math.isfinite(px) or px <= 0:
            raise MalformedInputError(f"{ticker}: bad {name}={px!r}")


def _check_amount(ticker: str, name: str, v: float) -> None:
    if v is None or not math.isfinite(v) or v < 0:
        raise MalformedInputError(f"{ticker}: bad {name}={v!r}")


def check_trade(ticker: str, price: float, size: float) -> None:
    """Raise MalformedInputError if a trade cannot be applied."""
    _check_price(ticker, price=price)
    _check_amount(ticker, "size", size)


def check_bar(ticker: str, open: float, high: float, low: float, close: float, volume: float) -> None:
    """Raise MalformedInputError if a bar cannot be applied."""
    _check_price(ticker, open=open, high=high, low=low, close=close)
    _check_amount(ticker, "volume", volume)
    if high < low:
        raise MalformedInputError(f"{ticker}: high {high} < low {low}")


class AggregationEngine:
    """
    Owns every TickerState and applies trades and bars to them.

    Validation happens before any mutation, so a malformed event leaves the
    state of its ticker (and every other ticker) untouched.
    """
    def __init__(self, trade_capacity: int = TRADE_BUFFER_CAP, bar_capacity: int = BAR_BUFFER_CAP):
        self.trade_capacity = trade_capacity
        self.bar_capacity = bar_capacity
        self._states: Dict[str, TickerState] = {}

    def __len__(self) -> int:
        return len(self._states)

    def __iter__(self) -> Iterator[TickerState]:
        return iter(self._states.values())

    def state(self, ticker: str) -> TickerState:
        st = self._states.get(ticker)
        if st is None:
            st = TickerState(
                ticker=ticker,
                trades=RingBufferTrades(self.trade_capacity),
                bars=RingBufferOHLCV(self.bar_capacity),
            )
            self._states[ticker] = st
        return st

    def get(self, ticker: str) -> Optional[TickerState]:
        return self._states.get(ticker)

    # -------------------------------------------------------------------------
    # ingestion
    # -------------------------------------------------------------------------

    def ingest_trade(self, ticker: str, price: float, size: float, timestamp_ns: int) -> TickerState:
        check_trade(ticker, price, size)

        st = self.state(ticker)
        st.last_price = price
        st.last_update_ms = ns_to_ms(timestamp_ns)
        st._extend_range(price, price)
        st.vwap_numerator += price * size
        st.vwap_denominator += size
        st.trades.append(timestamp_ns, price, size)
        return st

    def ingest_bar(
        self,
        ticker: str,
        open: float,
        high: float,
        low: float,
        close: float,
        volume: float,
        vwap: float,
        start_ms: int,
        end_ms: int,
    ) -> TickerState:
        check_bar(ticker, open, high, low, close, volume)

        st = self.state(ticker)
        st.bars.append(start_ms, open, high, low, close, volume, vwap if vwap is not None else math.nan)
        st._extend_range(high, low)
        st.last_price = close
        st.last_update_ms = int(end_ms)
        st.session_bars += 1
        return st

    # -------------------------------------------------------------------------
    # baselines & session
    # -------------------------------------------------------------------------

    def set_prev_close(self, ticker: str, prev_close: float) -> None:
        _check_price(ticker, prev_close=prev_close)
        self.state(ticker).prev_close = float(prev_close)

    def set_avg_volume(self, ticker: str, avg_volume: float) -> None:
        _check_amount(ticker, "avg_volume", avg_volume)
        self.state(ticker).avg_volume_baseline = float(avg_volume)

    def reset_daily(self) -> None:
        for st in self._states.values():
            st.reset_session()
        log.info("aggregation_daily_reset", tickers=len(self._states))
