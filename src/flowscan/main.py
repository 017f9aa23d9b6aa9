# src/flowscan/main.py
import asyncio
import json
import logging
import sys
from typing import Optional

import structlog

from flowscan.alerts.formatting import format_result_pretty
from flowscan.alerts.notifiers import ConsoleNotifier, ResultQueue, notifier_loop
from flowscan.config import EngineConfig
from flowscan.context.refresh import ContextRefresher
from flowscan.engine import SignalEngine
from flowscan.errors import MalformedInputError
from flowscan.ingest.parser import parse_event
from flowscan.storage.heat_history import HeatHistory
from flowscan.storage.redis_history import RedisHeatMirror
from flowscan.utils.market_calendar import next_session_open_ms
from flowscan.utils.time import utc_now_ms

log = structlog.get_logger()


def configure_logging(level: str) -> None:
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level, logging.INFO)),
    )


# ---------------------------
# Sources
# ---------------------------

def _decode_line(line: str) -> Optional[object]:
    line = line.strip()
    if not line:
        return None
    try:
        msg = json.loads(line)
    except json.JSONDecodeError as e:
        log.warning("event_dropped_bad_json", err=str(e))
        return None
    try:
        return parse_event(msg)
    except MalformedInputError as e:
        log.warning("event_dropped_malformed", reason=e.reason)
        return None


async def replay_source(path: str, q_events: asyncio.Queue):
    """Feed a JSONL file of normalized feed messages, in file order."""
    n = 0
    with open(path, "r", encoding="utf-8") as fh:
        for line in fh:
            evt = _decode_line(line)
            if evt is None:
                continue
            await q_events.put(evt)
            n += 1
    log.info("replay_finished", path=path, events=n)
    await q_events.put(None)


async def stdin_source(q_events: asyncio.Queue):
    """Read JSONL messages from stdin (e.g. piped from a transport process)."""
    while True:
        line = await asyncio.to_thread(sys.stdin.readline)
        if not line:
            break
        evt = _decode_line(line)
        if evt is None:
            continue
        try:
            q_events.put_nowait(evt)
        except asyncio.QueueFull:
            # hot path must not block on a slow engine
            log.warning("event_dropped_backpressure")
    await q_events.put(None)


# ---------------------------
# Engine loops
# ---------------------------

async def engine_loop(engine: SignalEngine, q_events: asyncio.Queue):
    while True:
        evt = await q_events.get()
        if evt is None:
            return
        engine.dispatch(evt)


async def session_reset_loop(engine: SignalEngine):
    """Wall-clock reset at each session start (live mode)."""
    while True:
        now = utc_now_ms()
        nxt = next_session_open_ms(now)
        await asyncio.sleep(max(0.0, (nxt - now) / 1000.0))
        engine.reset_daily()


# ---------------------------
# Main
# ---------------------------

async def main():
    cfg = EngineConfig.from_env()
    configure_logging(cfg.log_level)

    q_events: asyncio.Queue = asyncio.Queue(maxsize=10_000)
    q_results = ResultQueue(maxsize=2_000)

    mirror = RedisHeatMirror(url=cfg.redis_url, retention_minutes=cfg.history_retention_min, enabled=cfg.redis_enabled)
    history = HeatHistory(cfg.history_retention_min, sink=mirror if cfg.redis_enabled else None)

    engine = SignalEngine(cfg, history=history, on_result=q_results.try_put)

    await mirror.start()
    if cfg.redis_enabled:
        loaded = history.load(await mirror.load_recent(utc_now_ms()))
        log.info("heat_history_hydrated", records=loaded)

    refresher = None
    if cfg.refresh_enabled:
        refresher = ContextRefresher(cfg.refresh, engine.market, on_prev_close=engine.set_prev_close)
        await refresher.start()

    console = ConsoleNotifier(format_fn=lambda s: format_result_pretty(s, cfg.display_tz))

    if cfg.replay_file:
        source = replay_source(cfg.replay_file, q_events)
    else:
        source = stdin_source(q_events)

    background = [
        asyncio.create_task(engine.run_cleanup(), name="engine-cleanup"),
        asyncio.create_task(notifier_loop(q_results, console), name="console-notifier"),
    ]
    if not cfg.replay_file:
        background.append(asyncio.create_task(session_reset_loop(engine), name="session-reset"))

    log.info(
        "flowscan_started",
        mode="replay" if cfg.replay_file else "stdin",
        surface_mode=cfg.surface_mode,
        watchlist=len(cfg.watchlist),
        redis=cfg.redis_enabled,
        refresh=cfg.refresh_enabled,
    )
    try:
        await asyncio.gather(source, engine_loop(engine, q_events))
        # let the notifier finish what the engine produced
        await q_results.join()
    finally:
        await engine.stop()
        for task in background:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if refresher is not None:
            await refresher.stop()
        await mirror.stop()
        log.info("flowscan_stopped", tickers=len(engine.aggregation), heat_records=len(history))


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
