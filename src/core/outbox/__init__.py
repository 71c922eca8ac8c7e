"""
POS -> Cloud Outbox

Durable, at-least-once delivery of locally produced business events
(orders, payments, voids) to the cloud backoffice.

Usage:
    from src.core.outbox import OutboxWriter, DeliveryWorker, WorkerLifecycle

    store = await get_event_store()
    writer = OutboxWriter(store, config)
    await writer.enqueue(
        id=order_id,
        tenant_id=venue_id,
        location_id=location_id,
        event_type="order.closed",
        body={"order_id": order_id, "total": 4200},
    )

    lifecycle = WorkerLifecycle(DeliveryWorker(store, IngestTransport(config), config))
    await lifecycle.start()
"""

from .backoff import compute_backoff_ms, next_retry_time, MAX_BACKOFF_MS
from .clock import Clock, SystemClock
from .exceptions import (
    OutboxError,
    StoreError,
    DuplicateEventError,
    EventNotFoundError,
)
from .models import EventStatus, QueuedEvent, EnqueueRequest, can_transition
from .store import EventStore, MemoryEventStore, SqlEventStore, get_event_store
from .writer import OutboxWriter
from .transport import IngestTransport, DeliveryResult, sign_body
from .processor import DeliveryWorker, TickResult
from .dlq import DLQManager, DLQAction
from .lifecycle import WorkerLifecycle, outbox_lifespan

__all__ = [
    "compute_backoff_ms",
    "next_retry_time",
    "MAX_BACKOFF_MS",
    "Clock",
    "SystemClock",
    "OutboxError",
    "StoreError",
    "DuplicateEventError",
    "EventNotFoundError",
    "EventStatus",
    "QueuedEvent",
    "EnqueueRequest",
    "can_transition",
    "EventStore",
    "MemoryEventStore",
    "SqlEventStore",
    "get_event_store",
    "OutboxWriter",
    "IngestTransport",
    "DeliveryResult",
    "sign_body",
    "DeliveryWorker",
    "TickResult",
    "DLQManager",
    "DLQAction",
    "WorkerLifecycle",
    "outbox_lifespan",
]
