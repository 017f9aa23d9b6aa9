from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, Iterable, Optional

import structlog

from flowscan.alerts.cooldown import CooldownManager, sweep_key
from flowscan.data.ttl_cache import TTLCache
from flowscan.signals.types import Severity, Sweep
from flowscan.utils.time import ns_to_ms
from flowscan.utils.types import OptionTrade, OptionType, Quote, TradeSide

log = structlog.get_logger("sweeps")

_ASK_LIKE = ("ask", "above_mid")
_BID_LIKE = ("bid", "below_mid")


@dataclass(slots=True)
class SweepConfig:
    """
    buffer_time_ms: max gap between adjacent fills of one sweep
    min_premium:    total premium a cluster needs to count
    dedup_window_s: how long a contract's 10s bucket key stays live
    """
    buffer_time_ms: int = 500
    min_premium: float = 100_000.0
    min_trades: int = 2
    min_exchanges: int = 2
    dedup_window_s: int = 30
    trade_max_age_ms: int = 60_000
    quote_max_age_ms: int = 300_000
    max_buffer_per_underlying: int = 2_000
    large_premium: float = 500_000.0
    huge_premium: float = 1_000_000.0


@dataclass(slots=True)
class SweepTradeEntry:
    underlying: str
    contract_id: str
    option_type: OptionType
    strike: float
    expiration: str
    price: float
    size: float
    premium: float
    exchange_id: int
    side: TradeSide
    timestamp_ns: int

    @property
    def ts_ms(self) -> int:
        return ns_to_ms(self.timestamp_ns)


def classify_side(price: float, bid: Optional[float], ask: Optional[float]) -> TradeSide:
    """
    Aggressor side of a fill relative to the prevailing quote.
    Unusable quotes (missing, non-positive or crossed) give 'unknown'.
    """
    if not bid or not ask or bid <= 0 or ask <= 0 or ask < bid:
        return "unknown"
    if price >= ask:
        return "ask"
    if price <= bid:
        return "bid"
    mid = (bid + ask) / 2.0
    if price > mid:
        return "above_mid"
    if price < mid:
        return "below_mid"
    return "unknown"


def dominant_side(entries: Iterable[SweepTradeEntry]) -> str:
    ask = bid = 0
    for e in entries:
        if e.side in _ASK_LIKE:
            ask += 1
        elif e.side in _BID_LIKE:
            bid += 1
    if ask > bid:
        return "ask"
    if bid > ask:
        return "bid"
    return "unknown"


def split_bursts(entries: list[SweepTradeEntry], max_gap_ms: int) -> list[list[SweepTradeEntry]]:
    """
    Sort by time and cut wherever two adjacent fills are more than
    max_gap_ms apart.
    """
    if not entries:
        return []
    ordered = sorted(entries, key=lambda e: e.timestamp_ns)
    groups = [[ordered[0]]]
    for prev, cur in zip(ordered, ordered[1:]):
        if cur.ts_ms - prev.ts_ms <= max_gap_ms:
            groups[-1].append(cur)
        else:
            groups.append([cur])
    return groups


def _severity(premium: float, cfg: SweepConfig) -> Severity:
    if premium >= cfg.huge_premium:
        return "extreme"
    if premium >= cfg.large_premium:
        return "high"
    return "medium"


class SweepCorrelator:
    """
    Clusters option fills on one contract hitting several exchanges within a
    short window into a single sweep signal.

    Quotes and fills are keyed by contract; fills are buffered per underlying.
    "Now" is the timestamp of the fill being processed.
    """
    def __init__(self, cfg: Optional[SweepConfig] = None, cooldown: Optional[CooldownManager] = None):
        self.cfg = cfg if cfg is not None else SweepConfig()
        self.cooldown = cooldown if cooldown is not None else CooldownManager()
        self.quotes: TTLCache[Quote] = TTLCache(max_size=100_000)
        self.buffers: Dict[str, Deque[SweepTradeEntry]] = {}

    def update_quote(self, quote: Quote) -> None:
        self.quotes.put(quote.contract_id, quote, ns_to_ms(quote.timestamp_ns))

    def _side_for(self, trade: OptionTrade, now_ms: int) -> TradeSide:
        q = self.quotes.get_fresh(trade.contract_id, self.cfg.quote_max_age_ms, now_ms)
        if q is None:
            return "unknown"
        return classify_side(trade.price, q.bid_price, q.ask_price)

    def process_trade(self, trade: OptionTrade) -> Optional[Sweep]:
        now_ms = ns_to_ms(trade.timestamp_ns)
        entry = SweepTradeEntry(
            underlying=trade.underlying,
            contract_id=trade.contract_id,
            option_type=trade.option_type,
            strike=trade.strike,
            expiration=trade.expiration,
            price=trade.price,
            size=trade.size,
            premium=trade.premium,
            exchange_id=trade.exchange_id,
            side=self._side_for(trade, now_ms),
            timestamp_ns=trade.timestamp_ns,
        )
        buf = self.buffers.get(trade.underlying)
        if buf is None:
            buf = deque(maxlen=self.cfg.max_buffer_per_underlying)
            self.buffers[trade.underlying] = buf
        buf.append(entry)

        horizon = 2 * self.cfg.buffer_time_ms
        recent = [e for e in buf if now_ms - e.ts_ms < horizon]
        if len(recent) < self.cfg.min_trades:
            return None

        by_contract: Dict[str, list[SweepTradeEntry]] = {}
        for e in recent:
            by_contract.setdefault(e.contract_id, []).append(e)

        for contract_id, fills in by_contract.items():
            for burst in split_bursts(fills, self.cfg.buffer_time_ms):
                sweep = self._evaluate(burst, now_ms)
                if sweep is None:
                    continue
                key = sweep_key(contract_id, now_ms)
                if not self.cooldown.try_fire(key, self.cfg.dedup_window_s, now_ms):
                    continue
                log.info(
                    "sweep_detected",
                    underlying=sweep.ticker,
                    contract=contract_id,
                    premium=round(sweep.total_premium, 2),
                    exchanges=sweep.exchange_count,
                    side=sweep.dominant_side,
                )
                return sweep
        return None

    def _evaluate(self, fills: list[SweepTradeEntry], now_ms: int) -> Optional[Sweep]:
        cfg = self.cfg
        if len(fills) < cfg.min_trades:
            return None
        exchanges = sorted({e.exchange_id for e in fills})
        if len(exchanges) < cfg.min_exchanges:
            return None
        premium = sum(e.premium for e in fills)
        if premium < cfg.min_premium:
            return None

        first = fills[0]
        side = dominant_side(fills)
        bullish = (first.option_type == "call" and side == "ask") or (
            first.option_type == "put" and side == "bid"
        )
        return Sweep(
            ticker=first.underlying,
            price=sum(e.price for e in fills) / len(fills),
            timestamp_ms=now_ms,
            severity=_severity(premium, cfg),
            contract_id=first.contract_id,
            option_type=first.option_type,
            strike=first.strike,
            expiration=first.expiration,
            exchange_count=len(exchanges),
            exchanges=tuple(exchanges),
            total_premium=premium,
            total_contracts=sum(e.size for e in fills),
            trade_count=len(fills),
            dominant_side=side,
            bullish=bullish,
            window_start_ms=first.ts_ms,
            window_end_ms=fills[-1].ts_ms,
        )

    def cleanup(self, now_ms: int) -> dict:
        """Evict old fills, quotes and sweep dedup keys."""
        dropped = 0
        for underlying in list(self.buffers):
            buf = self.buffers[underlying]
            while buf and now_ms - buf[0].ts_ms > self.cfg.trade_max_age_ms:
                buf.popleft()
                dropped += 1
            if not buf:
                del self.buffers[underlying]
        quotes = self.quotes.evict_older_than(self.cfg.quote_max_age_ms, now_ms)
        keys = self._sweep_dedup_keys()
        stale = 0
        for k in keys:
            age = now_ms - (self.cooldown.last_fired(k) or now_ms)
            if age > self.cfg.dedup_window_s * 1000:
                self.cooldown.forget(k)
                stale += 1
        stats = {"fills": dropped, "quotes": quotes, "sweep_keys": stale}
        log.debug("sweep_cleanup", **stats)
        return stats

    def _sweep_dedup_keys(self) -> list[str]:
        return [k for k in self.cooldown.keys() if k.startswith("sweep-")]

