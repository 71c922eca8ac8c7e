"""
Database abstraction layer supporting SQLite and PostgreSQL.

A POS server normally keeps its outbox in a local SQLite file; larger
sites can point it at PostgreSQL instead.

Usage:
    from src.core.database import get_database, DatabaseAdapter

    # Get the global database instance
    db = await get_database()

    # Execute queries (works with both backends)
    rows = await db.fetch("SELECT * FROM sync_event_queue WHERE location_id = $1", location_id)
    await db.execute("UPDATE sync_event_queue SET status = $1 WHERE id = $2", status, event_id)
"""

from .adapter import (
    DatabaseAdapter,
    DatabaseBackend,
    DatabaseConfig,
    get_database,
    close_database,
)

__all__ = [
    "DatabaseAdapter",
    "DatabaseBackend",
    "DatabaseConfig",
    "get_database",
    "close_database",
]
