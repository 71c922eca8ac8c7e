"""
Event Store Abstraction

Usage:
    from src.core.outbox.store import get_event_store

    store = await get_event_store()
    due = await store.find_due(limit=10, now=clock.now())
"""

from .base import EventStore, StoreBackend, UPDATABLE_FIELDS
from .memory import MemoryEventStore
from .sql import SqlEventStore
from .factory import get_event_store

__all__ = [
    "EventStore",
    "StoreBackend",
    "UPDATABLE_FIELDS",
    "MemoryEventStore",
    "SqlEventStore",
    "get_event_store",
]
