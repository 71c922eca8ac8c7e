"""
SQL EventStore

Persists queued events in the `sync_event_queue` table through the
DatabaseAdapter, on SQLite (the POS server default) or PostgreSQL.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from ...database.adapter import DatabaseAdapter, DatabaseBackend
from ..exceptions import DuplicateEventError, EventNotFoundError, StoreError
from ..models import EventStatus, QueuedEvent
from .base import EventStore, StoreBackend, check_patch

logger = logging.getLogger(__name__)

TABLE = "sync_event_queue"

# seq breaks created_at ties so eviction and batches stay in insertion order
SQLITE_SCHEMA = """
CREATE TABLE IF NOT EXISTS sync_event_queue (
  seq INTEGER PRIMARY KEY AUTOINCREMENT,
  id TEXT NOT NULL UNIQUE,
  tenant_id TEXT NOT NULL,
  location_id TEXT NOT NULL,
  event_type TEXT NOT NULL,
  body TEXT NOT NULL,
  status TEXT NOT NULL DEFAULT 'pending',
  attempts INTEGER NOT NULL DEFAULT 0,
  max_attempts INTEGER NOT NULL DEFAULT 5,
  last_error TEXT,
  next_retry_at TEXT NOT NULL,
  claimed_by TEXT,
  claimed_at TEXT,
  created_at TEXT NOT NULL,
  synced_at TEXT,
  deleted_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_sync_event_queue_location
  ON sync_event_queue (location_id, deleted_at, created_at);
CREATE INDEX IF NOT EXISTS idx_sync_event_queue_due
  ON sync_event_queue (status, next_retry_at, created_at);
"""

_COLUMNS = (
    "id, tenant_id, location_id, event_type, body, status, attempts, max_attempts, "
    "last_error, next_retry_at, claimed_by, claimed_at, created_at, synced_at, deleted_at"
)

_TIMESTAMP_FIELDS = ("next_retry_at", "claimed_at", "created_at", "synced_at", "deleted_at")

_SQLITE_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


class SqlEventStore(EventStore):
    """
    EventStore over a DatabaseAdapter.

    SQLite keeps timestamps as fixed-width UTC ISO strings so that text
    comparison matches time order; PostgreSQL uses TIMESTAMPTZ.
    """

    def __init__(self, db: DatabaseAdapter):
        self._db = db

    @property
    def backend(self) -> StoreBackend:
        return StoreBackend.SQL

    @property
    def _is_sqlite(self) -> bool:
        return self._db.backend == DatabaseBackend.SQLITE

    async def ensure_schema(self) -> None:
        """Create the queue table on SQLite. PostgreSQL uses db/migrations."""
        if self._is_sqlite:
            await self._db.executescript(SQLITE_SCHEMA)

    # Conversion helpers

    def _ts(self, value: Optional[datetime]) -> Any:
        if value is None:
            return None
        value = value.astimezone(timezone.utc)
        if self._is_sqlite:
            return value.strftime(_SQLITE_TS_FORMAT)
        return value

    @staticmethod
    def _parse_ts(value: Any) -> Optional[datetime]:
        if value is None or isinstance(value, datetime):
            return value
        return datetime.strptime(value, _SQLITE_TS_FORMAT).replace(tzinfo=timezone.utc)

    def _to_db(self, field: str, value: Any) -> Any:
        if field in _TIMESTAMP_FIELDS:
            return self._ts(value)
        if field == "status":
            return EventStatus(value).value
        return value

    def _row_to_event(self, row: Dict[str, Any]) -> QueuedEvent:
        data = dict(row)
        data.pop("seq", None)
        if isinstance(data.get("body"), str):
            data["body"] = json.loads(data["body"])
        for field in _TIMESTAMP_FIELDS:
            data[field] = self._parse_ts(data.get(field))
        return QueuedEvent(**data)

    @staticmethod
    def _placeholders(start: int, count: int) -> str:
        return ", ".join(f"${i}" for i in range(start, start + count))

    # Writes

    async def _insert(self, conn, event: QueuedEvent) -> None:
        existing = await conn.fetchrow(f"SELECT id FROM {TABLE} WHERE id = $1", event.id)
        if existing:
            raise DuplicateEventError(event.id)

        await conn.execute(
            f"""
            INSERT INTO {TABLE} ({_COLUMNS})
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15)
            """,
            event.id,
            event.tenant_id,
            event.location_id,
            event.event_type,
            json.dumps(event.body),
            event.status.value,
            event.attempts,
            event.max_attempts,
            event.last_error,
            self._ts(event.next_retry_at),
            event.claimed_by,
            self._ts(event.claimed_at),
            self._ts(event.created_at),
            self._ts(event.synced_at),
            self._ts(event.deleted_at),
        )

    async def _delete(self, conn, ids: Sequence[str], location_id: str) -> int:
        if not ids:
            return 0
        return await conn.execute(
            f"""
            DELETE FROM {TABLE}
            WHERE location_id = $1 AND id IN ({self._placeholders(2, len(ids))})
            """,
            location_id,
            *ids,
        )

    async def create(self, event: QueuedEvent) -> QueuedEvent:
        async with self._db.transaction() as conn:
            await self._insert(conn, event)
        return event

    async def create_capped(self, event: QueuedEvent, cap: int) -> List[str]:
        if cap < 1:
            raise ValueError(f"Queue cap must be at least 1: {cap}")

        # Insert and eviction commit together
        async with self._db.transaction() as conn:
            await self._insert(conn, event)

            row = await conn.fetchrow(
                f"SELECT COUNT(*) AS count FROM {TABLE} WHERE location_id = $1 AND deleted_at IS NULL",
                event.location_id,
            )
            overflow = (row["count"] if row else 0) - cap
            if overflow <= 0:
                return []

            rows = await conn.fetch(
                f"""
                SELECT id FROM {TABLE}
                WHERE location_id = $1 AND deleted_at IS NULL AND id <> $2
                ORDER BY created_at ASC, seq ASC
                LIMIT $3
                """,
                event.location_id,
                event.id,
                overflow,
            )
            victims = [r["id"] for r in rows]
            await self._delete(conn, victims, event.location_id)
            return victims

    async def delete_many(self, ids: Sequence[str], location_id: str) -> int:
        async with self._db.transaction() as conn:
            return await self._delete(conn, list(ids), location_id)

    async def update(self, event_id: str, patch: Dict[str, Any]) -> QueuedEvent:
        patch = check_patch(patch)
        if patch:
            fields = list(patch)
            assignments = ", ".join(f"{field} = ${i}" for i, field in enumerate(fields, start=1))
            values = [self._to_db(field, patch[field]) for field in fields]
            updated = await self._db.execute(
                f"UPDATE {TABLE} SET {assignments} WHERE id = ${len(fields) + 1}",
                *values,
                event_id,
            )
            if updated == 0:
                raise EventNotFoundError(event_id)

        event = await self.get(event_id)
        if event is None:
            raise EventNotFoundError(event_id)
        return event

    async def claim(self, event_id: str, node_id: str, now: datetime) -> bool:
        claimed = await self._db.execute(
            f"""
            UPDATE {TABLE}
            SET status = $1, claimed_by = $2, claimed_at = $3
            WHERE id = $4 AND status IN ($5, $6) AND deleted_at IS NULL
            """,
            EventStatus.PROCESSING.value,
            node_id,
            self._ts(now),
            event_id,
            EventStatus.PENDING.value,
            EventStatus.FAILED.value,
        )
        return claimed == 1

    # Reads

    async def get(self, event_id: str) -> Optional[QueuedEvent]:
        row = await self._db.fetchrow(f"SELECT * FROM {TABLE} WHERE id = $1", event_id)
        return self._row_to_event(row) if row else None

    async def count(self, location_id: str) -> int:
        row = await self._db.fetchrow(
            f"SELECT COUNT(*) AS count FROM {TABLE} WHERE location_id = $1 AND deleted_at IS NULL",
            location_id,
        )
        return row["count"] if row else 0

    async def find_oldest(self, location_id: str, n: int) -> List[QueuedEvent]:
        if n <= 0:
            return []
        rows = await self._db.fetch(
            f"""
            SELECT * FROM {TABLE}
            WHERE location_id = $1 AND deleted_at IS NULL
            ORDER BY created_at ASC, seq ASC
            LIMIT $2
            """,
            location_id,
            n,
        )
        return [self._row_to_event(r) for r in rows]

    async def find_due(self, limit: int, now: datetime) -> List[QueuedEvent]:
        try:
            rows = await self._db.fetch(
                f"""
                SELECT * FROM {TABLE}
                WHERE status IN ($1, $2)
                  AND next_retry_at <= $3
                  AND deleted_at IS NULL
                ORDER BY created_at ASC, seq ASC
                LIMIT $4
                """,
                EventStatus.PENDING.value,
                EventStatus.FAILED.value,
                self._ts(now),
                limit,
            )
        except Exception as e:
            raise StoreError(f"Due batch read failed: {e}") from e
        return [self._row_to_event(r) for r in rows]

    async def find_by_status(
        self,
        status: EventStatus,
        limit: int = 100,
        offset: int = 0,
        location_id: Optional[str] = None
    ) -> List[QueuedEvent]:
        if location_id:
            rows = await self._db.fetch(
                f"""
                SELECT * FROM {TABLE}
                WHERE status = $1 AND location_id = $2
                ORDER BY created_at ASC, seq ASC
                LIMIT $3 OFFSET $4
                """,
                EventStatus(status).value, location_id, limit, offset
            )
        else:
            rows = await self._db.fetch(
                f"""
                SELECT * FROM {TABLE}
                WHERE status = $1
                ORDER BY created_at ASC, seq ASC
                LIMIT $2 OFFSET $3
                """,
                EventStatus(status).value, limit, offset
            )
        return [self._row_to_event(r) for r in rows]

    async def count_by_status(self, location_id: Optional[str] = None) -> Dict[EventStatus, int]:
        if location_id:
            rows = await self._db.fetch(
                f"SELECT status, COUNT(*) AS count FROM {TABLE} WHERE location_id = $1 GROUP BY status",
                location_id,
            )
        else:
            rows = await self._db.fetch(
                f"SELECT status, COUNT(*) AS count FROM {TABLE} GROUP BY status"
            )

        counts = {status: 0 for status in EventStatus}
        for row in rows:
            counts[EventStatus(row["status"])] = row["count"]
        return counts

    async def find_stale_processing(self, before: datetime, limit: int = 100) -> List[QueuedEvent]:
        rows = await self._db.fetch(
            f"""
            SELECT * FROM {TABLE}
            WHERE status = $1 AND (claimed_at IS NULL OR claimed_at < $2)
            ORDER BY created_at ASC, seq ASC
            LIMIT $3
            """,
            EventStatus.PROCESSING.value,
            self._ts(before),
            limit,
        )
        return [self._row_to_event(r) for r in rows]
