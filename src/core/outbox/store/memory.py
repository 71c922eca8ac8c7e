"""
In-memory EventStore

Keeps queued events in a dict for tests and single-process development.
Nothing survives a restart.
"""

from __future__ import annotations

import asyncio
import itertools
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..exceptions import DuplicateEventError, EventNotFoundError
from ..models import DUE_STATUSES, EventStatus, QueuedEvent
from .base import EventStore, StoreBackend, check_patch


class MemoryEventStore(EventStore):
    """Dict-backed event store guarded by an asyncio lock."""

    def __init__(self):
        self._events: Dict[str, QueuedEvent] = {}
        # Insertion order breaks created_at ties
        self._seq: Dict[str, int] = {}
        self._counter = itertools.count()
        self._lock = asyncio.Lock()

    @property
    def backend(self) -> StoreBackend:
        return StoreBackend.MEMORY

    def _order_key(self, event: QueuedEvent) -> Tuple[datetime, int]:
        return (event.created_at, self._seq[event.id])

    def _sorted(self, events) -> List[QueuedEvent]:
        return sorted(events, key=self._order_key)

    def _live(self, location_id: str) -> List[QueuedEvent]:
        return [
            e for e in self._events.values()
            if e.location_id == location_id and e.deleted_at is None
        ]

    def _insert(self, event: QueuedEvent) -> QueuedEvent:
        if event.id in self._events:
            raise DuplicateEventError(event.id)
        stored = event.model_copy(deep=True)
        self._events[event.id] = stored
        self._seq[event.id] = next(self._counter)
        return stored.model_copy(deep=True)

    def _delete(self, ids: Sequence[str], location_id: str) -> int:
        deleted = 0
        for event_id in ids:
            event = self._events.get(event_id)
            if event is not None and event.location_id == location_id:
                del self._events[event_id]
                del self._seq[event_id]
                deleted += 1
        return deleted

    async def create(self, event: QueuedEvent) -> QueuedEvent:
        async with self._lock:
            return self._insert(event)

    async def create_capped(self, event: QueuedEvent, cap: int) -> List[str]:
        if cap < 1:
            raise ValueError(f"Queue cap must be at least 1: {cap}")

        async with self._lock:
            self._insert(event)
            live = self._sorted(self._live(event.location_id))
            overflow = len(live) - cap
            if overflow <= 0:
                return []
            victims = [e.id for e in live[:overflow] if e.id != event.id]
            self._delete(victims, event.location_id)
            return victims

    async def get(self, event_id: str) -> Optional[QueuedEvent]:
        event = self._events.get(event_id)
        return event.model_copy(deep=True) if event else None

    async def count(self, location_id: str) -> int:
        return len(self._live(location_id))

    async def find_oldest(self, location_id: str, n: int) -> List[QueuedEvent]:
        if n <= 0:
            return []
        return [e.model_copy(deep=True) for e in self._sorted(self._live(location_id))[:n]]

    async def delete_many(self, ids: Sequence[str], location_id: str) -> int:
        async with self._lock:
            return self._delete(ids, location_id)

    async def find_due(self, limit: int, now: datetime) -> List[QueuedEvent]:
        due = [e for e in self._events.values() if e.is_due(now)]
        return [e.model_copy(deep=True) for e in self._sorted(due)[:limit]]

    async def update(self, event_id: str, patch: Dict[str, Any]) -> QueuedEvent:
        patch = check_patch(patch)
        async with self._lock:
            event = self._events.get(event_id)
            if event is None:
                raise EventNotFoundError(event_id)
            updated = event.model_copy(update=patch)
            self._events[event_id] = updated
            return updated.model_copy(deep=True)

    async def claim(self, event_id: str, node_id: str, now: datetime) -> bool:
        async with self._lock:
            event = self._events.get(event_id)
            if event is None or event.status not in DUE_STATUSES or event.deleted_at is not None:
                return False
            self._events[event_id] = event.model_copy(update={
                "status": EventStatus.PROCESSING,
                "claimed_by": node_id,
                "claimed_at": now,
            })
            return True

    async def find_by_status(
        self,
        status: EventStatus,
        limit: int = 100,
        offset: int = 0,
        location_id: Optional[str] = None
    ) -> List[QueuedEvent]:
        matches = [
            e for e in self._events.values()
            if e.status == status and (location_id is None or e.location_id == location_id)
        ]
        return [e.model_copy(deep=True) for e in self._sorted(matches)[offset:offset + limit]]

    async def count_by_status(self, location_id: Optional[str] = None) -> Dict[EventStatus, int]:
        counts = {status: 0 for status in EventStatus}
        for event in self._events.values():
            if location_id is None or event.location_id == location_id:
                counts[event.status] += 1
        return counts

    async def find_stale_processing(self, before: datetime, limit: int = 100) -> List[QueuedEvent]:
        stale = [
            e for e in self._events.values()
            if e.status == EventStatus.PROCESSING
            and (e.claimed_at is None or e.claimed_at < before)
        ]
        return [e.model_copy(deep=True) for e in self._sorted(stale)[:limit]]
