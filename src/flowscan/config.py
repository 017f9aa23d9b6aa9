from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Iterable, Literal, Optional

from dotenv import load_dotenv

from flowscan.context.refresh import RefreshConfig
from flowscan.data.aggregation import BAR_BUFFER_CAP, TRADE_BUFFER_CAP
from flowscan.scoring.heat import HeatConfig
from flowscan.signals.detectors import DetectorConfig
from flowscan.sweeps.correlator import SweepConfig
from flowscan.utils.market_calendar import PhaseBonuses

SurfaceMode = Literal["first", "all"]


def _split(v: Optional[str]) -> list[str]:
    if not v:
        return []
    return [s.strip().upper() for s in v.split(",") if s.strip()]


def _flag(v: Optional[str], default: bool = False) -> bool:
    if v is None:
        return default
    return v.strip().lower() in ("1", "true", "yes", "on")


class TickerLists:
    """
    Watch and ignore lists. Watched tickers get the lower watchlist routing
    threshold; ignored tickers are dropped before aggregation.
    """
    def __init__(self, watch: Iterable[str] = (), ignore: Iterable[str] = ()):
        self._watch: set[str] = {t.upper() for t in watch}
        self._ignore: set[str] = {t.upper() for t in ignore}

    def watch(self, ticker: str) -> bool:
        t = ticker.upper()
        added = t not in self._watch
        self._watch.add(t)
        return added

    def unwatch(self, ticker: str) -> bool:
        t = ticker.upper()
        if t in self._watch:
            self._watch.discard(t)
            return True
        return False

    def ignore(self, ticker: str) -> bool:
        t = ticker.upper()
        added = t not in self._ignore
        self._ignore.add(t)
        return added

    def unignore(self, ticker: str) -> bool:
        t = ticker.upper()
        if t in self._ignore:
            self._ignore.discard(t)
            return True
        return False

    def is_watched(self, ticker: str) -> bool:
        return ticker.upper() in self._watch

    def is_ignored(self, ticker: str) -> bool:
        return ticker.upper() in self._ignore

    @property
    def watched(self) -> frozenset[str]:
        return frozenset(self._watch)

    @property
    def ignored(self) -> frozenset[str]:
        return frozenset(self._ignore)


@dataclass(slots=True)
class EngineConfig:
    detectors: DetectorConfig = field(default_factory=DetectorConfig)
    sweeps: SweepConfig = field(default_factory=SweepConfig)
    heat: HeatConfig = field(default_factory=HeatConfig)
    refresh: RefreshConfig = field(default_factory=RefreshConfig)

    surface_mode: SurfaceMode = "first"
    trade_buffer_cap: int = TRADE_BUFFER_CAP
    bar_buffer_cap: int = BAR_BUFFER_CAP
    alert_cooldown_s: int = 60
    cleanup_interval_s: float = 60.0
    history_retention_min: int = 120

    watchlist: list[str] = field(default_factory=list)
    ignore: list[str] = field(default_factory=list)

    redis_url: str = "redis://localhost:6379/0"
    redis_enabled: bool = False
    refresh_enabled: bool = False
    replay_file: Optional[str] = None
    log_level: str = "INFO"
    display_tz: str = "America/New_York"

    @classmethod
    def from_env(cls, dotenv: bool = True) -> "EngineConfig":
        """
        Build from environment variables (optionally seeded from a .env file).
        Unset variables keep their dataclass defaults.
        """
        if dotenv:
            load_dotenv()
        cfg = cls()
        env = os.getenv

        mode = (env("SURFACE_MODE") or cfg.surface_mode).lower()
        if mode not in ("first", "all"):
            raise ValueError(f"SURFACE_MODE must be 'first' or 'all', got {mode!r}")
        cfg.surface_mode = mode  # type: ignore[assignment]

        cfg.watchlist = _split(env("WATCHLIST"))
        cfg.ignore = _split(env("IGNORE_TICKERS"))
        cfg.redis_url = env("REDIS_URL", cfg.redis_url)
        cfg.redis_enabled = _flag(env("REDIS_MIRROR"), cfg.redis_enabled)
        cfg.replay_file = env("REPLAY_FILE") or None
        cfg.log_level = env("LOG_LEVEL", cfg.log_level).upper()
        cfg.display_tz = env("DISPLAY_TZ", cfg.display_tz)
        cfg.alert_cooldown_s = int(env("ALERT_COOLDOWN_S", cfg.alert_cooldown_s))

        bench = env("BENCHMARK")
        if bench:
            cfg.detectors.benchmark = bench.upper()
            cfg.refresh.benchmark = bench.upper()

        cfg.detectors.min_block_value = float(env("MIN_BLOCK_VALUE", cfg.detectors.min_block_value))
        cfg.detectors.large_block_value = float(env("LARGE_BLOCK_VALUE", cfg.detectors.large_block_value))
        cfg.detectors.volume_spike_multiple = float(env("VOLUME_SPIKE_MULTIPLE", cfg.detectors.volume_spike_multiple))

        cfg.sweeps.buffer_time_ms = int(env("SWEEP_BUFFER_MS", cfg.sweeps.buffer_time_ms))
        cfg.sweeps.min_premium = float(env("SWEEP_MIN_PREMIUM", cfg.sweeps.min_premium))

        cfg.heat.high_conviction = int(env("HEAT_HIGH_CONVICTION", cfg.heat.high_conviction))
        cfg.heat.alert = int(env("HEAT_ALERT", cfg.heat.alert))
        cfg.heat.watchlist = int(env("HEAT_WATCHLIST", cfg.heat.watchlist))
        if _flag(env("DISABLE_PHASE_BONUS")):
            cfg.heat.phase_bonuses = PhaseBonuses(0, 0, 0, 0, 0, 0)

        cfg.refresh_enabled = _flag(env("CONTEXT_REFRESH"), cfg.refresh_enabled)
        cfg.refresh.rest_url = env("POLYGON_REST_URL", cfg.refresh.rest_url)
        cfg.refresh.api_key = env("POLYGON_API_KEY") or None
        cfg.refresh.interval_s = float(env("CONTEXT_REFRESH_S", cfg.refresh.interval_s))
        cfg.refresh.baseline_tickers = tuple(cfg.watchlist)
        return cfg

    def ticker_lists(self) -> TickerLists:
        return TickerLists(self.watchlist, self.ignore)
