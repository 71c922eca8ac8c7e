"""
EventStore Abstract Base Class

Durable CRUD over queued events. Every query that counts, evicts or
lists per site is scoped to a location_id; only the delivery worker's
due-batch read spans all locations visible to this node.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from ..models import EventStatus, QueuedEvent

# Fields the worker and the DLQ manager may patch
UPDATABLE_FIELDS = frozenset({
    "status",
    "attempts",
    "max_attempts",
    "last_error",
    "next_retry_at",
    "claimed_by",
    "claimed_at",
    "synced_at",
    "deleted_at",
})


class StoreBackend(str, Enum):
    """Supported event store backends."""

    MEMORY = "memory"
    SQL = "sql"


def check_patch(patch: Dict[str, Any]) -> Dict[str, Any]:
    unknown = set(patch) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Fields cannot be updated: {sorted(unknown)}")
    if "status" in patch:
        patch = {**patch, "status": EventStatus(patch["status"])}
    return patch


class EventStore(ABC):
    """
    Abstract base class for queued-event persistence.

    Implementations:
    - MemoryEventStore: in-process dict, for tests and development
    - SqlEventStore: SQLite or PostgreSQL through the DatabaseAdapter
    """

    @property
    @abstractmethod
    def backend(self) -> StoreBackend:
        """Return the storage backend type."""
        pass

    @abstractmethod
    async def create(self, event: QueuedEvent) -> QueuedEvent:
        """
        Insert a new event.

        Raises:
            DuplicateEventError: If an event with the same id exists
        """
        pass

    @abstractmethod
    async def get(self, event_id: str) -> Optional[QueuedEvent]:
        """Fetch one event by id, deleted or not."""
        pass

    @abstractmethod
    async def count(self, location_id: str) -> int:
        """Count non-deleted events of a location."""
        pass

    @abstractmethod
    async def find_oldest(self, location_id: str, n: int) -> List[QueuedEvent]:
        """The n oldest non-deleted events of a location, oldest first."""
        pass

    @abstractmethod
    async def delete_many(self, ids: Sequence[str], location_id: str) -> int:
        """
        Hard-delete events of one location.

        Ids that belong to another location are left alone.

        Returns:
            Number of rows deleted
        """
        pass

    @abstractmethod
    async def find_due(self, limit: int, now: datetime) -> List[QueuedEvent]:
        """
        Events ready for delivery across all locations.

        status in (pending, failed), next_retry_at <= now, not deleted,
        ordered by created_at ascending.
        """
        pass

    @abstractmethod
    async def update(self, event_id: str, patch: Dict[str, Any]) -> QueuedEvent:
        """
        Patch a single event.

        Raises:
            EventNotFoundError: If no event has that id
            ValueError: If the patch names a field outside UPDATABLE_FIELDS
        """
        pass

    @abstractmethod
    async def claim(self, event_id: str, node_id: str, now: datetime) -> bool:
        """
        Move a due event to processing for this node.

        Conditional on the event still being pending or failed, so a
        second worker racing on the same row loses.

        Returns:
            True if this node now owns the delivery attempt
        """
        pass

    @abstractmethod
    async def find_by_status(
        self,
        status: EventStatus,
        limit: int = 100,
        offset: int = 0,
        location_id: Optional[str] = None
    ) -> List[QueuedEvent]:
        """Events in a status, oldest first."""
        pass

    @abstractmethod
    async def count_by_status(self, location_id: Optional[str] = None) -> Dict[EventStatus, int]:
        """Row counts per status (deleted rows included)."""
        pass

    @abstractmethod
    async def find_stale_processing(self, before: datetime, limit: int = 100) -> List[QueuedEvent]:
        """Events stuck in processing with a claim older than `before`."""
        pass

    async def create_capped(self, event: QueuedEvent, cap: int) -> List[str]:
        """
        Insert an event, then evict the oldest rows of its location above `cap`.

        The new event is never one of the evicted rows. Backends that can
        run both steps in one transaction override this.

        Returns:
            Ids of the evicted events
        """
        if cap < 1:
            raise ValueError(f"Queue cap must be at least 1: {cap}")

        await self.create(event)
        return await self._evict_overflow(event, cap)

    async def _evict_overflow(self, event: QueuedEvent, cap: int) -> List[str]:
        total = await self.count(event.location_id)
        overflow = total - cap
        if overflow <= 0:
            return []

        oldest = await self.find_oldest(event.location_id, overflow)
        victims = [e.id for e in oldest if e.id != event.id]
        if victims:
            await self.delete_many(victims, event.location_id)
        return victims
