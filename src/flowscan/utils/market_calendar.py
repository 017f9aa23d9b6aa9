from __future__ import annotations

import functools
from dataclasses import dataclass, field
from datetime import date, datetime, time as dtime, timedelta, timezone
from typing import Callable, Literal, Optional
from zoneinfo import ZoneInfo

import pandas_market_calendars as mcal

NY = ZoneInfo("America/New_York")
UTC = timezone.utc

# Regular trading hours (RTH)
RTH_OPEN = dtime(9, 30)
RTH_CLOSE = dtime(16, 0)

# Extended hours (premarket / after-hours)
PRE_OPEN = dtime(4, 0)
AFT_CLOSE = dtime(20, 0)

Phase = Literal[
    "closed", "premarket", "opening_drive", "morning",
    "midday", "afternoon", "power_hour", "afterhours",
]


@dataclass(frozen=True)
class SessionPhase:
    name: Phase
    label: str
    heat_bonus: int


@dataclass(slots=True)
class PhaseBonuses:
    """Heat points added (or removed) per session phase."""
    opening_drive: int = 5
    morning: int = 0
    midday: int = -5
    afternoon: int = 0
    power_hour: int = 5
    extended: int = -5


# (start, end, name, label) in NY wall-clock time; end exclusive
_PHASE_TABLE: list[tuple[dtime, dtime, Phase, str]] = [
    (PRE_OPEN, RTH_OPEN, "premarket", "Pre-market"),
    (RTH_OPEN, dtime(10, 0), "opening_drive", "Opening drive"),
    (dtime(10, 0), dtime(11, 30), "morning", "Morning session"),
    (dtime(11, 30), dtime(14, 0), "midday", "Midday chop"),
    (dtime(14, 0), dtime(15, 0), "afternoon", "Afternoon session"),
    (dtime(15, 0), RTH_CLOSE, "power_hour", "Power hour"),
    (RTH_CLOSE, AFT_CLOSE, "afterhours", "After hours"),
]


@functools.lru_cache(maxsize=1)
def _nyse_calendar():
    return mcal.get_calendar("XNYS")


@functools.lru_cache(maxsize=8)
def _trading_days(year: int) -> frozenset[str]:
    days = _nyse_calendar().valid_days(start_date=f"{year}-01-01", end_date=f"{year}-12-31")
    return frozenset(d.strftime("%Y-%m-%d") for d in days)


def is_trading_day(d: date) -> bool:
    """True if NYSE holds a session on `d` (weekends and exchange holidays excluded)."""
    return d.isoformat() in _trading_days(d.year)


def ny_dt(ts_ms: int) -> datetime:
    return datetime.fromtimestamp(ts_ms / 1000.0, tz=NY)


def _bonus_for(name: Phase, bonuses: PhaseBonuses) -> int:
    if name in ("premarket", "afterhours"):
        return bonuses.extended
    if name == "closed":
        return 0
    return getattr(bonuses, name)


def phase_at(
    ts_ms: int,
    bonuses: Optional[PhaseBonuses] = None,
    trading_day: Callable[[date], bool] = is_trading_day,
) -> SessionPhase:
    """
    Session phase for an epoch-ms timestamp, evaluated in America/New_York.

    Phases (NY time, trading days only):
      04:00-09:30 premarket, 09:30-10:00 opening drive, 10:00-11:30 morning,
      11:30-14:00 midday, 14:00-15:00 afternoon, 15:00-16:00 power hour,
      16:00-20:00 after hours. Everything else is closed.
    """
    bonuses = bonuses or PhaseBonuses()
    now = ny_dt(ts_ms)
    if not trading_day(now.date()):
        return SessionPhase("closed", "Market closed", 0)
    t = now.time()
    for start, end, name, label in _PHASE_TABLE:
        if start <= t < end:
            return SessionPhase(name, label, _bonus_for(name, bonuses))
    return SessionPhase("closed", "Market closed", 0)


def session_date(ts_ms: int) -> date:
    """Trading date (NY) that a timestamp belongs to."""
    return ny_dt(ts_ms).date()


def next_session_open_ms(
    after_ms: int,
    trading_day: Callable[[date], bool] = is_trading_day,
    open_time: dtime = PRE_OPEN,
) -> int:
    """
    Epoch ms of the next session start strictly after `after_ms`.
    `open_time` is the NY wall-clock boundary used for the daily reset
    (default: the 04:00 premarket open, so extended-hours bars start clean).
    """
    d = ny_dt(after_ms).date()
    for _ in range(15):
        if trading_day(d):
            start = datetime.combine(d, open_time, tzinfo=NY)
            start_ms = int(start.timestamp() * 1000)
            if start_ms > after_ms:
                return start_ms
        d = d + timedelta(days=1)
    raise RuntimeError("no trading day found within 15 days")


def days_to_expiration(expiration: str, ts_ms: int) -> int:
    """
    Calendar days from the NY date of `ts_ms` to `expiration` (YYYY-MM-DD).
    Negative once the contract has expired.
    """
    exp = date.fromisoformat(expiration)
    return (exp - session_date(ts_ms)).days


@dataclass(slots=True)
class SessionTracker:
    """
    Remembers the trading date of the last event seen and reports when a new
    session starts. Used to trigger the daily aggregation reset from the
    event stream itself (replays included).
    """
    current: Optional[date] = None
    resets: int = field(default=0)

    def roll(self, ts_ms: int) -> bool:
        d = session_date(ts_ms)
        if self.current is None:
            self.current = d
            return False
        if d > self.current:
            self.current = d
            self.resets += 1
            return True
        return False
