"""
Tests for the delivery worker lifecycle.
"""

import asyncio
from dataclasses import replace
from datetime import timedelta

import pytest

from src.core.outbox.dlq import DLQManager
from src.core.outbox.lifecycle import WorkerLifecycle, outbox_lifespan
from src.core.outbox.models import EventStatus, QueuedEvent
from src.core.outbox.processor import TickResult


class StubWorker:
    """Stands in for DeliveryWorker; optionally blocks inside tick()."""

    def __init__(self, config, gate=None, error=None):
        self.config = config
        self.gate = gate
        self.error = error
        self.entered = asyncio.Event()
        self.calls = 0
        self.finished = 0

    async def tick(self):
        self.calls += 1
        self.entered.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        self.finished += 1
        return TickResult(fetched=1, delivered=1)


async def _wait_for(predicate, timeout=2.0):
    async def poll():
        while not predicate():
            await asyncio.sleep(0.01)
    await asyncio.wait_for(poll(), timeout)


class TestStartStop:
    """Test start() and stop()."""

    async def test_start_runs_first_tick_immediately(self, config):
        worker = StubWorker(config)
        lifecycle = WorkerLifecycle(worker, interval=3600)

        await lifecycle.start()
        await _wait_for(lambda: worker.finished == 1)

        assert lifecycle.running
        assert lifecycle.last_result.delivered == 1
        await lifecycle.stop()
        assert not lifecycle.running

    async def test_double_start_keeps_one_loop(self, config):
        worker = StubWorker(config)
        lifecycle = WorkerLifecycle(worker, interval=3600)

        await lifecycle.start()
        task = lifecycle._task
        await lifecycle.start()

        assert lifecycle._task is task
        await _wait_for(lambda: worker.calls >= 1)
        await asyncio.sleep(0.05)
        assert worker.calls == 1
        await lifecycle.stop()

    async def test_stop_without_start_is_noop(self, config):
        lifecycle = WorkerLifecycle(StubWorker(config), interval=3600)
        await lifecycle.stop()
        assert not lifecycle.running

    async def test_stop_is_idempotent(self, config):
        lifecycle = WorkerLifecycle(StubWorker(config), interval=3600)
        await lifecycle.start()
        await lifecycle.stop()
        await lifecycle.stop()
        assert not lifecycle.running

    async def test_stop_waits_for_in_flight_tick(self, config):
        """An event mid-delivery is never abandoned by stop()."""
        gate = asyncio.Event()
        worker = StubWorker(config, gate=gate)
        lifecycle = WorkerLifecycle(worker, interval=3600)

        await lifecycle.start()
        await asyncio.wait_for(worker.entered.wait(), 1.0)

        stopping = asyncio.create_task(lifecycle.stop())
        await asyncio.sleep(0.05)
        assert not stopping.done()
        assert worker.finished == 0

        gate.set()
        await asyncio.wait_for(stopping, 1.0)

        assert worker.finished == 1
        assert worker.calls == 1
        assert not lifecycle.running

    async def test_stop_timeout_cancels_tick(self, config):
        worker = StubWorker(config, gate=asyncio.Event())
        lifecycle = WorkerLifecycle(worker, interval=3600)

        await lifecycle.start()
        await asyncio.wait_for(worker.entered.wait(), 1.0)
        await lifecycle.stop(timeout=0.05)

        assert worker.finished == 0
        assert not lifecycle.running

    async def test_restart_after_stop(self, config):
        worker = StubWorker(config)
        lifecycle = WorkerLifecycle(worker, interval=3600)

        await lifecycle.start()
        await _wait_for(lambda: worker.calls == 1)
        await lifecycle.stop()

        await lifecycle.start()
        await _wait_for(lambda: worker.calls == 2)
        assert lifecycle.running
        await lifecycle.stop()

    async def test_interval_defaults_to_config(self, config):
        lifecycle = WorkerLifecycle(StubWorker(config))
        assert lifecycle.interval == 30


class TestScheduling:
    """Test the tick loop."""

    async def test_ticks_repeat_on_interval(self, config):
        worker = StubWorker(config)
        lifecycle = WorkerLifecycle(worker, interval=0.01)

        await lifecycle.start()
        await _wait_for(lambda: worker.calls >= 3)
        await lifecycle.stop()

        assert lifecycle.ticks >= 3

    async def test_trigger_runs_next_tick_now(self, config):
        worker = StubWorker(config)
        lifecycle = WorkerLifecycle(worker, interval=3600)

        await lifecycle.start()
        await _wait_for(lambda: worker.finished == 1)
        lifecycle.trigger()
        await _wait_for(lambda: worker.finished == 2)

        await lifecycle.stop()

    async def test_crashing_tick_does_not_kill_loop(self, config):
        worker = StubWorker(config, error=RuntimeError("boom"))
        lifecycle = WorkerLifecycle(worker, interval=0.01)

        await lifecycle.start()
        await _wait_for(lambda: worker.calls >= 2)

        assert lifecycle.running
        await lifecycle.stop()


class TestReclaimOnStart:
    """Test the stale-processing sweep run by start()."""

    async def test_stale_processing_event_is_rescheduled(self, config, store, clock):
        event = QueuedEvent(
            id="evt-1", tenant_id="venue-1", location_id="loc-1", event_type="order.closed",
            created_at=clock.now(), next_retry_at=clock.now(),
        )
        await store.create(event)
        await store.claim("evt-1", "nuc-01", clock.now() - timedelta(minutes=10))

        lifecycle = WorkerLifecycle(
            StubWorker(config), interval=3600, dlq=DLQManager(store, config, clock)
        )
        await lifecycle.start()
        await lifecycle.stop()

        reclaimed = await store.get("evt-1")
        assert reclaimed.status == EventStatus.FAILED
        assert reclaimed.attempts == 1
        assert reclaimed.claimed_by is None


class TestLifespan:
    """Test outbox_lifespan()."""

    async def test_starts_and_stops(self, config):
        worker = StubWorker(config)
        lifecycle = WorkerLifecycle(worker, interval=3600)

        async with outbox_lifespan(lifecycle) as running:
            assert running is lifecycle
            assert lifecycle.running

        assert not lifecycle.running

    async def test_disabled_never_starts(self, config):
        worker = StubWorker(config)
        lifecycle = WorkerLifecycle(worker, interval=3600)

        async with outbox_lifespan(lifecycle, enabled=False) as running:
            assert running is None
            await asyncio.sleep(0.02)

        assert worker.calls == 0

    async def test_stops_on_error(self, config):
        lifecycle = WorkerLifecycle(StubWorker(config), interval=3600)

        with pytest.raises(RuntimeError):
            async with outbox_lifespan(lifecycle):
                raise RuntimeError("app crashed")

        assert not lifecycle.running


class TestPeriodicReclaim:
    """Test the stale-processing sweep between ticks."""

    async def test_row_stranded_while_running_is_reclaimed(self, config, store, clock):
        """A peer that dies mid-delivery does not strand the row until restart."""
        lifecycle = WorkerLifecycle(
            StubWorker(config), interval=0.01, dlq=DLQManager(store, config, clock)
        )
        await lifecycle.start()

        await store.create(QueuedEvent(
            id="evt-1", tenant_id="venue-1", location_id="loc-1", event_type="order.closed",
            created_at=clock.now(), next_retry_at=clock.now(),
        ))
        await store.claim("evt-1", "crashed-node", clock.now())
        clock.advance(seconds=3600)

        async def status():
            return (await store.get("evt-1")).status

        try:
            for _ in range(200):
                if await status() != EventStatus.PROCESSING:
                    break
                await asyncio.sleep(0.01)
        finally:
            await lifecycle.stop()

        reclaimed = await store.get("evt-1")
        assert reclaimed.status == EventStatus.FAILED
        assert reclaimed.attempts == 1
        assert reclaimed.claimed_by is None

    async def test_periodic_sweep_runs_without_reclaim_on_start(self, config, store, clock):
        config = replace(config, reclaim_on_start=False)
        await store.create(QueuedEvent(
            id="evt-1", tenant_id="venue-1", location_id="loc-1", event_type="order.closed",
            created_at=clock.now(), next_retry_at=clock.now(),
        ))
        await store.claim("evt-1", "nuc-01", clock.now() - timedelta(hours=1))
        worker = StubWorker(config)
        lifecycle = WorkerLifecycle(worker, interval=3600, dlq=DLQManager(store, config, clock))

        await lifecycle.start()
        await _wait_for(lambda: lifecycle.ticks == 1)
        await asyncio.sleep(0.05)
        await lifecycle.stop()

        assert (await store.get("evt-1")).status == EventStatus.FAILED
