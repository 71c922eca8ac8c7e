"""
Tests for the enqueue path and the per-location queue cap.
"""

import logging
from dataclasses import replace

from src.core.outbox.models import EnqueueRequest, EventStatus
from src.core.outbox.store.memory import MemoryEventStore
from src.core.outbox.writer import OutboxWriter


async def _enqueue(writer, event_id, location_id="loc-1", tenant_id="venue-1", body=None):
    return await writer.enqueue(
        id=event_id,
        tenant_id=tenant_id,
        location_id=location_id,
        event_type="order.closed",
        body=body if body is not None else {"order_id": event_id},
    )


class TestEnqueue:
    """Test OutboxWriter.enqueue()."""

    async def test_persists_pending_event(self, writer, store, clock):
        """A new event is pending, untried and due immediately."""
        assert await _enqueue(writer, "evt-1") is True

        event = await store.get("evt-1")
        assert event.status == EventStatus.PENDING
        assert event.attempts == 0
        assert event.max_attempts == 5
        assert event.next_retry_at == clock.now()
        assert event.created_at == clock.now()
        assert event.tenant_id == "venue-1"
        assert event.body == {"order_id": "evt-1"}

    async def test_max_attempts_from_config(self, store, config, clock):
        writer = OutboxWriter(store, replace(config, max_attempts=3), clock)
        await _enqueue(writer, "evt-1")
        assert (await store.get("evt-1")).max_attempts == 3

    async def test_duplicate_id_is_not_updated(self, writer, store):
        """Enqueue is append-only: a second call with the same id changes nothing."""
        await _enqueue(writer, "evt-1", body={"v": 1})
        assert await _enqueue(writer, "evt-1", body={"v": 2}) is False

        assert (await store.get("evt-1")).body == {"v": 1}
        assert await store.count("loc-1") == 1

    async def test_missing_location_is_swallowed(self, writer, store, caplog):
        """Invalid input is logged, never raised."""
        with caplog.at_level(logging.ERROR):
            assert await _enqueue(writer, "evt-1", location_id="") is False
        assert await store.get("evt-1") is None
        assert "Rejected outbox event" in caplog.text

    async def test_unserializable_body_is_swallowed(self, writer, store):
        assert await _enqueue(writer, "evt-1", body={"at": object()}) is False
        assert await store.get("evt-1") is None

    async def test_store_failure_is_swallowed(self, config, clock, caplog):
        """A broken store never fails the business transaction."""

        class BrokenStore(MemoryEventStore):
            async def create_capped(self, event, cap):
                raise RuntimeError("disk full")

        writer = OutboxWriter(BrokenStore(), config, clock)
        with caplog.at_level(logging.ERROR):
            assert await _enqueue(writer, "evt-1") is False
        assert "Failed to queue outbox event evt-1" in caplog.text

    async def test_enqueue_batch_counts_accepted(self, writer, store):
        requests = [
            EnqueueRequest(id=f"evt-{i}", tenant_id="v", location_id="loc-1", event_type="payment.captured")
            for i in range(3)
        ]
        requests.append(requests[0])

        assert await writer.enqueue_batch(requests) == 3
        assert await store.count("loc-1") == 3

    async def test_array_body_is_accepted(self, writer, store):
        lines = [{"sku": "A1", "qty": 2}, {"sku": "B7", "qty": 1}]
        assert await _enqueue(writer, "evt-1", body=lines) is True
        assert (await store.get("evt-1")).body == lines

    async def test_scalar_body_is_accepted(self, writer, store):
        assert await _enqueue(writer, "evt-1", body="drawer-opened") is True
        assert (await store.get("evt-1")).body == "drawer-opened"

    async def test_clock_failure_is_swallowed(self, store, config, caplog):
        """Building the queued row happens inside the never-raise boundary."""

        class BrokenClock:
            def now(self):
                raise RuntimeError("clock unavailable")

        writer = OutboxWriter(store, config, BrokenClock())
        with caplog.at_level(logging.ERROR):
            assert await _enqueue(writer, "evt-1") is False
        assert await store.get("evt-1") is None
        assert "Failed to queue outbox event evt-1" in caplog.text


class TestQueueCap:
    """Test eviction when a location exceeds its cap."""

    async def test_1005_events_keep_newest_1000(self, writer, store, clock):
        """After 1005 enqueues exactly the 1000 most recent remain."""
        ids = [f"evt-{i:04d}" for i in range(1005)]
        for event_id in ids:
            assert await _enqueue(writer, event_id)
            clock.advance(milliseconds=1)

        assert await store.count("loc-1") == 1000
        remaining = await store.find_oldest("loc-1", 2000)
        assert [e.id for e in remaining] == ids[5:]

    async def test_count_never_exceeds_cap(self, store, config, clock):
        writer = OutboxWriter(store, replace(config, max_queue_size=3), clock)
        for i in range(10):
            await _enqueue(writer, f"evt-{i}")
            assert await store.count("loc-1") <= 3

    async def test_eviction_never_crosses_locations(self, store, config, clock):
        """Filling one location leaves every other location untouched."""
        writer = OutboxWriter(store, replace(config, max_queue_size=5), clock)

        # Older events elsewhere
        for i in range(4):
            await _enqueue(writer, f"other-{i}", location_id="loc-2", tenant_id="venue-2")
            clock.advance(seconds=1)

        for i in range(12):
            await _enqueue(writer, f"evt-{i}", location_id="loc-1")
            clock.advance(seconds=1)

        assert await store.count("loc-1") == 5
        assert await store.count("loc-2") == 4
        for i in range(4):
            assert await store.get(f"other-{i}") is not None

    async def test_eviction_ignores_status(self, store, config, clock):
        """The cap is hard: undelivered and in-flight events can be dropped."""
        writer = OutboxWriter(store, replace(config, max_queue_size=2), clock)
        await _enqueue(writer, "evt-0")
        await store.update("evt-0", {"status": EventStatus.PROCESSING})
        clock.advance(seconds=1)
        await _enqueue(writer, "evt-1")
        clock.advance(seconds=1)
        await _enqueue(writer, "evt-2")

        assert await store.get("evt-0") is None
        assert await store.get("evt-2") is not None

    async def test_soft_deleted_events_do_not_count(self, store, config, clock):
        """Completed (soft-deleted) rows are outside the cap."""
        writer = OutboxWriter(store, replace(config, max_queue_size=2), clock)
        await _enqueue(writer, "evt-0")
        await store.update("evt-0", {"status": EventStatus.COMPLETED, "deleted_at": clock.now()})
        clock.advance(seconds=1)
        await _enqueue(writer, "evt-1")
        clock.advance(seconds=1)
        await _enqueue(writer, "evt-2")

        assert await store.count("loc-1") == 2
        assert await store.get("evt-0") is not None
        assert await store.get("evt-1") is not None
