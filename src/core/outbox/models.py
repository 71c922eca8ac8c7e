"""
Outbox Models

The queued event record, its status state machine, and the request
model accepted by the enqueue path.
"""

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any, FrozenSet

from pydantic import BaseModel, Field, field_validator


def _utcnow() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(timezone.utc)


class EventStatus(str, Enum):
    """Status of a queued event."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    DEAD_LETTER = "dead_letter"  # Exceeded max attempts

    @property
    def is_terminal(self) -> bool:
        return self in (EventStatus.COMPLETED, EventStatus.DEAD_LETTER)


# Statuses the delivery worker picks up
DUE_STATUSES: FrozenSet[EventStatus] = frozenset({EventStatus.PENDING, EventStatus.FAILED})

ALLOWED_TRANSITIONS: Dict[EventStatus, FrozenSet[EventStatus]] = {
    EventStatus.PENDING: frozenset({EventStatus.PROCESSING, EventStatus.DEAD_LETTER}),
    EventStatus.PROCESSING: frozenset({EventStatus.COMPLETED, EventStatus.FAILED, EventStatus.DEAD_LETTER}),
    EventStatus.FAILED: frozenset({EventStatus.PROCESSING, EventStatus.DEAD_LETTER}),
    EventStatus.COMPLETED: frozenset(),
    # Operator requeue only
    EventStatus.DEAD_LETTER: frozenset({EventStatus.PENDING}),
}


def can_transition(current: EventStatus, target: EventStatus) -> bool:
    """Check whether a status change is part of the state machine."""
    return target in ALLOWED_TRANSITIONS[EventStatus(current)]


class QueuedEvent(BaseModel):
    """A business event waiting for delivery to the cloud."""

    id: str = Field(min_length=1)
    tenant_id: str
    location_id: str = Field(min_length=1)
    event_type: str
    # Any JSON value: object, array, string, number, bool or null
    body: Any = Field(default_factory=dict)

    status: EventStatus = EventStatus.PENDING
    attempts: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=5, ge=0)
    last_error: Optional[str] = None
    next_retry_at: datetime = Field(default_factory=_utcnow)

    claimed_by: Optional[str] = None
    claimed_at: Optional[datetime] = None

    created_at: datetime = Field(default_factory=_utcnow)
    synced_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    @property
    def exhausted(self) -> bool:
        """True once no further automatic attempt is allowed."""
        return self.attempts >= self.max_attempts

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def is_due(self, now: datetime) -> bool:
        return (
            self.status in DUE_STATUSES
            and self.deleted_at is None
            and self.next_retry_at <= now
        )

    def serialize_body(self) -> bytes:
        """Serialise the body exactly as it is signed and sent."""
        return serialize_body(self.body)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class EnqueueRequest(BaseModel):
    """Input for the enqueue path."""

    id: str = Field(min_length=1)
    tenant_id: str
    location_id: str = Field(min_length=1)
    event_type: str = Field(min_length=1)
    body: Any = Field(default_factory=dict)

    model_config = {"extra": "forbid"}

    @field_validator("body")
    @classmethod
    def _body_serializable(cls, value: Any) -> Any:
        try:
            serialize_body(value)
        except (TypeError, ValueError) as e:
            raise ValueError(f"body is not JSON serialisable: {e}") from e
        return value


def serialize_body(body: Any) -> bytes:
    """Compact, deterministic JSON encoding of an event body."""
    return json.dumps(body, separators=(",", ":"), sort_keys=True, allow_nan=False).encode("utf-8")
