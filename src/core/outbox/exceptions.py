"""
Outbox Exceptions

Raised by event stores. The enqueue path, the delivery worker and the
lifecycle catch them; none of them reach business code.
"""

from typing import Optional


class OutboxError(Exception):
    """Base exception for outbox errors."""


class StoreError(OutboxError):
    """The event store failed to read or write."""


class DuplicateEventError(StoreError):
    """An event with the same id is already queued."""

    def __init__(self, event_id: str):
        self.event_id = event_id
        super().__init__(f"Event already queued: {event_id}")


class EventNotFoundError(StoreError):
    """No queued event with the given id."""

    def __init__(self, event_id: str, location_id: Optional[str] = None):
        self.event_id = event_id
        self.location_id = location_id
        message = f"Event not found: {event_id}"
        if location_id:
            message += f" (location {location_id})"
        super().__init__(message)
