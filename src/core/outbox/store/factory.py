"""
EventStore Factory

Creates EventStore instances based on configuration.

SQL (SQLite on the POS server) is the DEFAULT backend; the in-memory
store loses every queued event on restart and is only for tests and
local development.
"""

from __future__ import annotations

import logging
import os
from typing import Optional

from ...database.adapter import DatabaseAdapter, get_database
from .base import EventStore, StoreBackend
from .memory import MemoryEventStore
from .sql import SqlEventStore

logger = logging.getLogger(__name__)


async def get_event_store(
    backend: Optional[str] = None,
    *,
    db: Optional[DatabaseAdapter] = None,
) -> EventStore:
    """
    Get an EventStore instance.

    Args:
        backend: "sql" (default) or "memory". If not provided, uses the
                 OUTBOX_STORE_BACKEND env var.
        db: Database adapter for the SQL backend. Defaults to the global one.

    Returns:
        EventStore instance
    """
    if backend is None:
        backend = os.getenv("OUTBOX_STORE_BACKEND", StoreBackend.SQL.value)

    backend = backend.lower()
    if backend not in (StoreBackend.SQL.value, StoreBackend.MEMORY.value):
        logger.warning("Unknown event store backend '%s', falling back to 'sql'", backend)
        backend = StoreBackend.SQL.value

    if backend == StoreBackend.MEMORY.value:
        logger.warning("Using in-memory event store: queued events will not survive a restart")
        return MemoryEventStore()

    db = db or await get_database()
    store = SqlEventStore(db)
    await store.ensure_schema()
    logger.info("Created SqlEventStore on %s", db.config)
    return store
