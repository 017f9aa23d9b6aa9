from __future__ import annotations
import asyncio
import structlog
from typing import Callable, Optional

log = structlog.get_logger("notifier")


class ConsoleNotifier:
    def __init__(self, format_fn: Optional[Callable[[object], str]] = None):
        self._format_fn = format_fn

    async def send(self, scored):
        if self._format_fn:
            try:
                text = self._format_fn(scored)
                print(text, flush=True)
                return
            except Exception as e:
                log.warning("console_format_failed", err=str(e))
        # fallback (raw)
        sig = scored.signal
        print(f"[ALERT] {sig.ticker} {sig.type} severity={sig.severity} "
              f"heat={scored.heat.score} channel={scored.heat.channel}", flush=True)


class ResultQueue:
    """
    Bounded, non-blocking hand-off from the engine to notifiers.
    try_put() drops on full and counts the drop.
    """
    def __init__(self, maxsize: int = 2000):
        self._q: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.enq_ok = 0
        self.enq_drop = 0

    def try_put(self, item) -> bool:
        try:
            self._q.put_nowait(item)
            self.enq_ok += 1
            return True
        except asyncio.QueueFull:
            self.enq_drop += 1
            log.warning("result_queue_full", dropped=self.enq_drop)
            return False

    async def get(self):
        return await self._q.get()

    def task_done(self) -> None:
        self._q.task_done()

    async def join(self) -> None:
        """Wait until every queued result has been handed to a notifier."""
        await self._q.join()

    def qsize(self) -> int:
        return self._q.qsize()


async def notifier_loop(q: ResultQueue, notifier: ConsoleNotifier) -> None:
    """Drain routed results into the notifier until cancelled."""
    try:
        while True:
            scored = await q.get()
            try:
                await notifier.send(scored)
            finally:
                q.task_done()
    except asyncio.CancelledError:
        return
