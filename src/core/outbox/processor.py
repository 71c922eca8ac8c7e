"""
Outbox Delivery Worker

Drains due events to the cloud: one batch per tick, one event at a time,
with exponential backoff and dead-lettering. Nothing raised inside a tick
escapes it; failures end up as persisted status and last_error.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from ..config import SyncConfig
from ..observability import delivery_span, mark_span_failed, record_counter
from .backoff import next_retry_time
from .clock import Clock, SystemClock
from .models import EventStatus, QueuedEvent
from .store.base import EventStore
from .transport import IngestTransport

logger = logging.getLogger(__name__)

MAX_ATTEMPTS_EXCEEDED = "max attempts exceeded"

# last_error is diagnostic only
_ERROR_LIMIT = 500


@dataclass
class TickResult:
    """Counts for one worker tick."""
    fetched: int = 0
    delivered: int = 0
    failed: int = 0
    dead_lettered: int = 0
    skipped: int = 0
    errors: int = 0
    error: Optional[str] = None


class DeliveryWorker:
    """
    Delivers queued events to the cloud ingestion endpoint.

    Per due event, in created_at order:
    1. attempts >= max_attempts: dead_letter, no network call
    2. claim it (status=processing); a lost claim skips it
    3. sign and POST the body
    4. 2xx: completed, synced_at and deleted_at set
    5. otherwise: attempts+1, failed, next_retry_at pushed out by backoff
    """

    def __init__(
        self,
        store: EventStore,
        transport: IngestTransport,
        config: Optional[SyncConfig] = None,
        clock: Optional[Clock] = None
    ):
        self.store = store
        self.transport = transport
        self.config = config or SyncConfig.from_env()
        self.clock = clock or SystemClock()

    async def tick(self) -> TickResult:
        """Process one batch of due events."""
        result = TickResult()

        try:
            events = await self.store.find_due(self.config.batch_size, self.clock.now())
        except Exception as e:
            logger.exception("Outbox due-batch read failed")
            result.error = str(e)
            return result

        result.fetched = len(events)
        if not events:
            return result

        for event in events:
            try:
                outcome = await self._process(event)
            except Exception:
                # A store write failed; the row keeps its last persisted state
                logger.exception(
                    "Outbox event %s could not be updated", event.id,
                    extra={"event_id": event.id, "location_id": event.location_id},
                )
                result.errors += 1
                continue
            setattr(result, outcome, getattr(result, outcome) + 1)

        logger.info(
            "Outbox tick: fetched=%d delivered=%d failed=%d dead_lettered=%d skipped=%d errors=%d",
            result.fetched, result.delivered, result.failed, result.dead_lettered, result.skipped,
            result.errors
        )
        return result

    async def _process(self, event: QueuedEvent) -> str:
        if event.exhausted:
            await self._dead_letter(event)
            return "dead_lettered"

        if not await self.store.claim(event.id, self.config.node_id, self.clock.now()):
            logger.debug("Outbox event %s claimed elsewhere, skipping", event.id)
            return "skipped"

        # Once claimed, every path below must leave the row completed or failed
        try:
            with delivery_span(
                event.id, event.event_type, event.tenant_id, event.location_id, event.attempts + 1
            ) as span:
                delivery = await self.transport.deliver(event)
                if delivery.status_code is not None:
                    span.set_attribute("http.status_code", delivery.status_code)
                if not delivery.ok:
                    mark_span_failed(delivery.error or "delivery failed", span)
        except Exception as e:
            logger.exception("Unexpected error delivering outbox event %s", event.id)
            await self._fail(event, f"Unexpected delivery error: {e!r}")
            return "failed"

        if delivery.ok:
            await self._complete(event)
            return "delivered"

        await self._fail(event, delivery.error or "delivery failed")
        return "failed"

    async def _complete(self, event: QueuedEvent):
        now = self.clock.now()
        await self.store.update(event.id, {
            "status": EventStatus.COMPLETED,
            "synced_at": now,
            "deleted_at": now,
            "last_error": None,
            "claimed_by": None,
            "claimed_at": None,
        })
        record_counter("outbox_delivered_total", 1, {"location_id": event.location_id})
        logger.debug("Delivered outbox event %s", event.id)

    async def _fail(self, event: QueuedEvent, error: str):
        now = self.clock.now()
        attempts = min(event.attempts + 1, event.max_attempts)
        retry_at = next_retry_time(
            now,
            attempts,
            base_ms=self.config.base_backoff_ms,
            max_ms=self.config.max_backoff_ms,
        )
        await self.store.update(event.id, {
            "status": EventStatus.FAILED,
            "attempts": attempts,
            "last_error": error[:_ERROR_LIMIT],
            "next_retry_at": retry_at,
            "claimed_by": None,
            "claimed_at": None,
        })
        record_counter("outbox_failed_total", 1, {"location_id": event.location_id})
        logger.warning(
            "Outbox event %s failed (attempt %d/%d), retry at %s: %s",
            event.id, attempts, event.max_attempts, retry_at.isoformat(), error,
            extra={"event_id": event.id, "location_id": event.location_id},
        )

    async def _dead_letter(self, event: QueuedEvent):
        await self.store.update(event.id, {
            "status": EventStatus.DEAD_LETTER,
            "last_error": event.last_error or MAX_ATTEMPTS_EXCEEDED,
            "claimed_by": None,
            "claimed_at": None,
        })
        record_counter("outbox_dead_lettered_total", 1, {"location_id": event.location_id})
        logger.error(
            "Outbox event %s moved to dead letter after %d attempts: %s",
            event.id, event.attempts, event.last_error or MAX_ATTEMPTS_EXCEEDED,
            extra={"event_id": event.id, "location_id": event.location_id},
        )
