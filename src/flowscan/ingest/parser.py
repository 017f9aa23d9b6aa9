from __future__ import annotations

import math
import re
from typing import Any, Optional

from flowscan.errors import MalformedInputError
from flowscan.utils.time import normalize_epoch_ns
from flowscan.utils.types import Bar, MarketEvent, OptionTrade, Quote, Trade

_OCC_RE = re.compile(r"^(?:O:)?([A-Z]+)(\d{6})([CP])(\d{8})$")

_TRADE_TYPES = ("T", "t", "trade")
_QUOTE_TYPES = ("Q", "q", "quote")
_BAR_TYPES = ("AM", "A", "bar", "agg")


def parse_option_ticker(contract_id: str) -> tuple[str, str, str, float]:
    """
    'O:AAPL241220C00200000' -> ('AAPL', '2024-12-20', 'call', 200.0)

    OCC layout: root, YYMMDD expiration, C/P, strike x 1000 (8 digits).
    """
    m = _OCC_RE.match(contract_id or "")
    if m is None:
        raise MalformedInputError(f"not an option symbol: {contract_id!r}")
    root, ymd, cp, strike = m.groups()
    expiration = f"20{ymd[0:2]}-{ymd[2:4]}-{ymd[4:6]}"
    return root, expiration, "call" if cp == "C" else "put", int(strike) / 1000.0


def _pick(m: dict, *names: str) -> Any:
    for n in names:
        v = m.get(n)
        if v is not None:
            return v
    return None


def _require(m: dict, what: str, *names: str) -> Any:
    v = _pick(m, *names)
    if v is None:
        raise MalformedInputError(f"{what} missing ({'/'.join(names)})", m)
    return v


def _as_float(m: dict, what: str, v: Any) -> float:
    try:
        return float(v)
    except (TypeError, ValueError):
        raise MalformedInputError(f"{what} not numeric: {v!r}", m) from None


def _num(m: dict, what: str, *names: str) -> float:
    return _as_float(m, what, _require(m, what, *names))


def _epoch_ns(m: dict, what: str, v: Any) -> int:
    ts = _as_float(m, what, v)
    if not math.isfinite(ts) or ts <= 0:
        raise MalformedInputError(f"{what} out of range: {v!r}", m)
    return normalize_epoch_ns(ts)


def _exchange(m: dict) -> int:
    v = _pick(m, "x", "exchange")
    if v is None:
        return 0
    x = _as_float(m, "exchange", v)
    if not math.isfinite(x) or x != int(x):
        raise MalformedInputError(f"exchange not an integer code: {v!r}", m)
    return int(x)


def parse_event(m: Any) -> Optional[MarketEvent]:
    """
    Return a typed event for a normalized feed message, None for non-data
    messages (status, subscription acks).

    Accepts vendor short keys or long keys:
      trade: {"ev":"T","sym":"AAPL","p":189.2,"s":100,"t":1700000000123,"x":4}
             {"type":"trade","ticker":"AAPL","price":189.2,"size":100,"timestamp":...}
      bar:   {"ev":"AM","sym":"AAPL","o":..,"h":..,"l":..,"c":..,"v":..,"vw":..,"s":start_ms,"e":end_ms}
      quote: {"ev":"Q","sym":"O:AAPL241220C00200000","bp":1.2,"ap":1.3,"t":...}

    Trades on an option symbol ('O:' prefix) become OptionTrade.
    Raises MalformedInputError for messages that are not JSON objects and for
    data messages with missing or unusable fields.
    """
    if not isinstance(m, dict):
        raise MalformedInputError(f"message is not an object: {type(m).__name__}", m)
    kind = _pick(m, "ev", "type", "T")
    if kind in _TRADE_TYPES:
        return _parse_trade(m)
    if kind in _BAR_TYPES:
        return _parse_bar(m)
    if kind in _QUOTE_TYPES:
        return _parse_quote(m)
    return None


def _parse_trade(m: dict) -> Trade | OptionTrade:
    sym = str(_require(m, "symbol", "sym", "ticker", "S", "symbol"))
    price = _num(m, "price", "p", "price")
    size = _num(m, "size", "s", "size")
    ts_ns = _epoch_ns(m, "timestamp", _require(m, "timestamp", "t", "timestamp"))
    exch = _exchange(m)

    if sym.startswith("O:"):
        underlying, expiration, option_type, strike = parse_option_ticker(sym)
        return OptionTrade(
            underlying=underlying,
            contract_id=sym,
            strike=strike,
            expiration=expiration,
            option_type=option_type,
            price=price,
            size=size,
            exchange_id=exch,
            timestamp_ns=ts_ns,
        )
    return Trade(ticker=sym, price=price, size=size, timestamp_ns=ts_ns, exchange_id=exch)


def _parse_bar(m: dict) -> Bar:
    sym = str(_require(m, "symbol", "sym", "ticker", "S"))
    start = _pick(m, "s", "start", "start_ms")
    end = _pick(m, "e", "end", "end_ms")
    if start is None:
        raise MalformedInputError("bar start missing", m)
    start_ms = _epoch_ns(m, "bar start", start) // 1_000_000
    end_ms = _epoch_ns(m, "bar end", end) // 1_000_000 if end is not None else start_ms + 60_000
    vwap = _pick(m, "vw", "vwap")
    return Bar(
        ticker=sym,
        open=_num(m, "open", "o", "open"),
        high=_num(m, "high", "h", "high"),
        low=_num(m, "low", "l", "low"),
        close=_num(m, "close", "c", "close"),
        volume=_num(m, "volume", "v", "volume"),
        vwap=_as_float(m, "vwap", vwap) if vwap is not None else float("nan"),
        start_ms=start_ms,
        end_ms=end_ms,
    )


def _parse_quote(m: dict) -> Quote:
    sym = str(_require(m, "symbol", "sym", "ticker", "contract_id"))
    return Quote(
        contract_id=sym,
        bid_price=_num(m, "bid", "bp", "bid_price"),
        ask_price=_num(m, "ask", "ap", "ask_price"),
        timestamp_ns=_epoch_ns(m, "timestamp", _require(m, "timestamp", "t", "timestamp")),
    )
