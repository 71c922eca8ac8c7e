"""
Outbox Writer

Accepts "please deliver this event" calls from the POS and persists them
for the delivery worker. Enqueue never raises: a sync-storage hiccup must
not fail the order, payment or void that produced the event.
"""

import logging
from typing import Any, Iterable, Optional

from pydantic import ValidationError

from ..config import SyncConfig
from ..observability import record_counter
from .clock import Clock, SystemClock
from .exceptions import DuplicateEventError
from .models import EnqueueRequest, EventStatus, QueuedEvent
from .store.base import EventStore

logger = logging.getLogger(__name__)


class OutboxWriter:
    """
    Writes events to the outbox for reliable delivery.

    Queue cap:
        Each location keeps at most `config.max_queue_size` non-deleted
        events. When an insert pushes a location over the cap, its oldest
        events are deleted regardless of status, including events that were
        never delivered. This bounds storage during a long cloud outage at
        the cost of dropping the oldest backlog. Other locations are never
        touched.

    Usage:
        writer = OutboxWriter(store, config)
        await writer.enqueue(
            id=payment_id,
            tenant_id=venue_id,
            location_id=location_id,
            event_type="payment.captured",
            body={"amount": 1250, "currency": "USD"},
        )
    """

    def __init__(
        self,
        store: EventStore,
        config: Optional[SyncConfig] = None,
        clock: Optional[Clock] = None
    ):
        self._store = store
        self._config = config or SyncConfig.from_env()
        self._clock = clock or SystemClock()

    async def enqueue(
        self,
        id: str,
        tenant_id: str,
        location_id: str,
        event_type: str,
        body: Any
    ) -> bool:
        """
        Queue an event for delivery.

        Args:
            id: Unique event id, also the idempotency key for the cloud
            tenant_id: Venue owning the event
            location_id: Partition key for the queue cap
            event_type: Business event kind (e.g., "order.closed")
            body: Any JSON-serialisable value (object, array, scalar), opaque
                  to the outbox

        Returns:
            True if the event was persisted. Failures are logged and return
            False; callers should not build logic on detecting them.
        """
        try:
            request = EnqueueRequest(
                id=id,
                tenant_id=tenant_id,
                location_id=location_id,
                event_type=event_type,
                body=body,
            )
        except ValidationError as e:
            logger.error(
                "Rejected outbox event %s for location %s: %s",
                id, location_id, e.errors(include_url=False),
            )
            return False

        return await self.enqueue_event(request)

    async def enqueue_event(self, request: EnqueueRequest) -> bool:
        """Queue an already validated request. Never raises."""
        try:
            now = self._clock.now()
            event = QueuedEvent(
                id=request.id,
                tenant_id=request.tenant_id,
                location_id=request.location_id,
                event_type=request.event_type,
                body=request.body,
                status=EventStatus.PENDING,
                attempts=0,
                max_attempts=self._config.max_attempts,
                next_retry_at=now,
                created_at=now,
            )
            evicted = await self._store.create_capped(event, self._config.max_queue_size)
        except DuplicateEventError:
            logger.warning(
                "Outbox event %s already queued, ignoring duplicate", request.id,
                extra={"event_id": request.id, "location_id": request.location_id},
            )
            return False
        except Exception:
            logger.exception(
                "Failed to queue outbox event %s (type=%s)", request.id, request.event_type,
                extra={"event_id": request.id, "location_id": request.location_id},
            )
            return False

        record_counter("outbox_enqueued_total", 1, {"location_id": event.location_id})
        logger.debug(
            "Queued outbox event: id=%s type=%s location=%s",
            event.id, event.event_type, event.location_id
        )

        if evicted:
            record_counter("outbox_evicted_total", len(evicted), {"location_id": event.location_id})
            logger.warning(
                "Outbox for location %s over cap %d, evicted %d oldest events",
                event.location_id, self._config.max_queue_size, len(evicted),
                extra={"location_id": event.location_id, "evicted_ids": evicted},
            )

        return True

    async def enqueue_batch(self, requests: Iterable[EnqueueRequest]) -> int:
        """
        Queue several events one by one.

        Returns:
            Number of events accepted
        """
        accepted = 0
        for request in requests:
            if await self.enqueue_event(request):
                accepted += 1
        return accepted
