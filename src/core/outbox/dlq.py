"""
Dead Letter Queue (DLQ) Management

Dead-lettered events stay in the store for operator inspection; this
subsystem never purges or retries them on its own. Also holds the sweep
that rescues events left in processing by a crashed worker.
"""

import logging
from datetime import timedelta
from enum import Enum
from typing import List, Optional, Dict, Any

from ..config import SyncConfig
from ..observability import create_span
from .backoff import next_retry_time
from .clock import Clock, SystemClock
from .exceptions import EventNotFoundError
from .models import EventStatus, QueuedEvent
from .store.base import EventStore

logger = logging.getLogger(__name__)

DELIVERY_INTERRUPTED = "delivery interrupted"


class DLQAction(str, Enum):
    """Actions that can be taken on DLQ entries."""
    REQUEUE = "requeue"
    RECLAIM = "reclaim"


class DLQManager:
    """
    Manages dead-lettered and stuck events.

    Responsibilities:
    - Query DLQ entries
    - Requeue entries after operator review
    - Report queue statistics
    - Reclaim events stuck in processing past their lease
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

    async def get_entries(
        self,
        limit: int = 100,
        offset: int = 0,
        location_id: Optional[str] = None
    ) -> List[QueuedEvent]:
        """Get DLQ entries, oldest first."""
        return await self._store.find_by_status(
            EventStatus.DEAD_LETTER, limit=limit, offset=offset, location_id=location_id
        )

    async def get_count(self, location_id: Optional[str] = None) -> int:
        """Get total DLQ entry count."""
        counts = await self._store.count_by_status(location_id)
        return counts[EventStatus.DEAD_LETTER]

    async def requeue(self, event_id: str, operator_id: Optional[str] = None) -> bool:
        """
        Give a dead-lettered event a fresh set of attempts.

        Args:
            event_id: The queued event id
            operator_id: ID of operator performing the action

        Returns:
            True if the event was reset to pending
        """
        event = await self._store.get(event_id)
        if event is None:
            raise EventNotFoundError(event_id)
        if event.status != EventStatus.DEAD_LETTER:
            logger.warning("Refusing to requeue event %s in status %s", event_id, event.status.value)
            return False

        await self._store.update(event_id, {
            "status": EventStatus.PENDING,
            "attempts": 0,
            "last_error": None,
            "next_retry_at": self._clock.now(),
        })
        self._log_action(event_id, DLQAction.REQUEUE, operator_id)
        return True

    async def requeue_all(
        self,
        location_id: Optional[str] = None,
        operator_id: Optional[str] = None,
        batch_size: int = 100
    ) -> int:
        """Requeue every DLQ entry (optionally for one location)."""
        count = 0
        while True:
            entries = await self.get_entries(limit=batch_size, location_id=location_id)
            if not entries:
                break
            before = count
            for entry in entries:
                if await self.requeue(entry.id, operator_id):
                    count += 1
            if count == before:
                break

        logger.info("DLQ requeue all: reset %d entries by %s", count, operator_id)
        return count

    async def reclaim_stale(self, lease_seconds: Optional[int] = None, limit: int = 100) -> int:
        """
        Rescue events stuck in processing longer than the lease.

        The interrupted attempt counts as a failure: attempts goes up by
        one and the event is rescheduled by the backoff policy, or
        dead-lettered if that was its last attempt.

        Returns:
            Number of events reclaimed
        """
        lease = lease_seconds if lease_seconds is not None else self._config.processing_lease_seconds
        with create_span("outbox.reclaim", {"lease.seconds": lease}) as span:
            reclaimed = await self._reclaim(lease, limit)
            span.set_attribute("reclaimed.count", reclaimed)
        return reclaimed

    async def _reclaim(self, lease: int, limit: int) -> int:
        now = self._clock.now()
        stale = await self._store.find_stale_processing(now - timedelta(seconds=lease), limit)

        for event in stale:
            attempts = min(event.attempts + 1, event.max_attempts)
            patch: Dict[str, Any] = {
                "attempts": attempts,
                "last_error": DELIVERY_INTERRUPTED,
                "claimed_by": None,
                "claimed_at": None,
            }
            if attempts >= event.max_attempts:
                patch["status"] = EventStatus.DEAD_LETTER
            else:
                patch["status"] = EventStatus.FAILED
                patch["next_retry_at"] = next_retry_time(
                    now,
                    attempts,
                    base_ms=self._config.base_backoff_ms,
                    max_ms=self._config.max_backoff_ms,
                )
            await self._store.update(event.id, patch)
            self._log_action(event.id, DLQAction.RECLAIM, event.claimed_by)

        if stale:
            logger.warning("Reclaimed %d events stuck in processing for over %ss", len(stale), lease)
        return len(stale)

    async def get_stats(self, location_id: Optional[str] = None) -> Dict[str, Any]:
        """Get queue and DLQ statistics."""
        counts = await self._store.count_by_status(location_id)
        oldest = await self._store.find_by_status(
            EventStatus.DEAD_LETTER, limit=1, location_id=location_id
        )

        return {
            "by_status": {status.value: count for status, count in counts.items()},
            "dead_letter_count": counts[EventStatus.DEAD_LETTER],
            "oldest_dead_letter": oldest[0].created_at.isoformat() if oldest else None,
        }

    def _log_action(self, event_id: str, action: DLQAction, operator_id: Optional[str]):
        """Log DLQ action for audit."""
        logger.info(
            "DLQ action: %s on %s by %s", action.value, event_id, operator_id,
            extra={"event_id": event_id, "dlq_action": action.value},
        )
