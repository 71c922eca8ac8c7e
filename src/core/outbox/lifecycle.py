"""
Outbox Worker Lifecycle

Owns the periodic delivery loop. One WorkerLifecycle is built per
process and handed to whoever starts and stops it.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from .dlq import DLQManager
from .processor import DeliveryWorker, TickResult

logger = logging.getLogger(__name__)


class WorkerLifecycle:
    """
    Runs DeliveryWorker.tick() every `interval` seconds on one asyncio task.

    - start() is idempotent: a second call never creates a second loop.
    - stop() lets an in-flight tick finish so no event is abandoned in
      processing; the loop then exits between ticks.
    - With a DLQManager, rows left in processing past their lease (a
      crashed peer, a cancelled tick) are swept back into the retry loop
      after every tick, and once at start when reclaim_on_start is set.
    - The task is a plain background task: it never keeps the event loop
      or the process alive on its own.
    """

    def __init__(
        self,
        worker: DeliveryWorker,
        interval: Optional[float] = None,
        dlq: Optional[DLQManager] = None
    ):
        self.worker = worker
        self.interval = interval if interval is not None else worker.config.interval_seconds
        self._dlq = dlq
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._wake_event: Optional[asyncio.Event] = None
        self.last_result: Optional[TickResult] = None
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self):
        """Start the delivery loop if it is not running yet."""
        if self.running:
            return

        self._stop_event = asyncio.Event()
        self._wake_event = asyncio.Event()

        if self.worker.config.reclaim_on_start:
            await self._reclaim()

        self._task = asyncio.create_task(self._run(), name="outbox-delivery-worker")
        logger.info("Outbox delivery worker started (interval=%ss)", self.interval)

    async def stop(self, timeout: Optional[float] = None):
        """
        Stop the delivery loop after the current tick.

        Args:
            timeout: Seconds to wait for the in-flight tick before
                     cancelling it. None waits for as long as it takes.
        """
        if self._task is None:
            return

        self._stop_event.set()
        task = self._task
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout)
        except asyncio.TimeoutError:
            logger.warning("Outbox tick still running after %ss, cancelling", timeout)
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        finally:
            self._task = None

        logger.info("Outbox delivery worker stopped")

    def trigger(self):
        """Run the next tick now instead of waiting for the interval."""
        if self._wake_event is not None:
            self._wake_event.set()

    async def _run(self):
        """Main processing loop."""
        while not self._stop_event.is_set():
            try:
                self.last_result = await self.worker.tick()
            except Exception:
                # tick() already contains its errors; this guards the loop itself
                logger.exception("Outbox delivery tick crashed")
            self.ticks += 1

            await self._reclaim()
            await self._sleep()

    async def _reclaim(self):
        """Return rows stuck in processing past their lease to the retry loop."""
        if self._dlq is None:
            return
        try:
            await self._dlq.reclaim_stale(self.worker.config.processing_lease_seconds)
        except Exception:
            logger.exception("Stale processing sweep failed")

    async def _sleep(self):
        stop = asyncio.ensure_future(self._stop_event.wait())
        wake = asyncio.ensure_future(self._wake_event.wait())
        try:
            await asyncio.wait({stop, wake}, timeout=self.interval, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in (stop, wake):
                waiter.cancel()
            self._wake_event.clear()


@asynccontextmanager
async def outbox_lifespan(lifecycle: WorkerLifecycle, enabled: bool = True):
    """
    Lifespan context manager for the delivery worker.

    Usage in an ASGI app:
        @asynccontextmanager
        async def lifespan(app):
            async with outbox_lifespan(lifecycle):
                yield
    """
    if not enabled:
        logger.info("Outbox delivery worker disabled: SYNC_ENABLED=false")
        yield None
        return

    await lifecycle.start()
    try:
        yield lifecycle
    finally:
        await lifecycle.stop()
