from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Union

# ---- ingest-level primitives ----

OptionType = Literal["call", "put"]
TradeSide = Literal["ask", "bid", "above_mid", "below_mid", "unknown"]
Direction = Literal["up", "down"]


@dataclass(slots=True)
class Trade:
    ticker: str
    price: float
    size: float
    timestamp_ns: int
    exchange_id: int = 0


@dataclass(slots=True)
class Bar:
    """
    Minute OHLCV bar as delivered by the feed.
    start_ms / end_ms are the bar window bounds (epoch milliseconds).
    """
    ticker: str
    open: float
    high: float
    low: float
    close: float
    volume: float
    vwap: float
    start_ms: int
    end_ms: int


@dataclass(slots=True)
class Quote:
    contract_id: str
    bid_price: float
    ask_price: float
    timestamp_ns: int


@dataclass(slots=True)
class OptionTrade:
    underlying: str
    contract_id: str
    strike: float
    expiration: str        # YYYY-MM-DD
    option_type: OptionType
    price: float
    size: float
    exchange_id: int
    timestamp_ns: int

    @property
    def premium(self) -> float:
        # one contract covers 100 shares
        return self.price * self.size * 100.0


MarketEvent = Union[Trade, Bar, Quote, OptionTrade]
