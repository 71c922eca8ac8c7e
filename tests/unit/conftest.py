"""
Unit Test Fixtures

Manual clock, in-memory store, and an httpx MockTransport standing in
for the cloud ingestion endpoint.
"""

from datetime import datetime, timedelta, timezone
from typing import Callable, List

import httpx
import pytest

from src.core.config import SyncConfig
from src.core.outbox.store.memory import MemoryEventStore
from src.core.outbox.transport import IngestTransport
from src.core.outbox.writer import OutboxWriter

START = datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime = START):
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, seconds: float = 0, milliseconds: float = 0) -> datetime:
        self.current += timedelta(seconds=seconds, milliseconds=milliseconds)
        return self.current

    def set(self, value: datetime) -> datetime:
        self.current = value
        return self.current


class FakeCloud:
    """Scripted ingestion endpoint that records every request."""

    def __init__(self, clock: ManualClock):
        self.clock = clock
        self.requests: List[httpx.Request] = []
        self.request_times: List[datetime] = []
        self.responder: Callable[[httpx.Request], httpx.Response] = lambda r: httpx.Response(200)

    def respond_with(self, *statuses: int):
        """Answer with the given statuses in order, repeating the last one."""
        script = list(statuses)

        def responder(request: httpx.Request) -> httpx.Response:
            status = script.pop(0) if len(script) > 1 else script[0]
            return httpx.Response(status, text="" if status < 300 else "upstream unavailable")

        self.responder = responder

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        self.request_times.append(self.clock.now())
        return self.responder(request)

    def calls_for(self, event_id: str) -> int:
        return sum(1 for r in self.requests if r.headers.get("X-Event-Id") == event_id)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def config() -> SyncConfig:
    return SyncConfig(
        cloud_base_url="https://cloud.example.test",
        signing_secret="test-secret",
        node_id="nuc-01",
        max_queue_size=1000,
        batch_size=10,
        max_attempts=5,
        interval_seconds=30,
    )


@pytest.fixture
def store() -> MemoryEventStore:
    return MemoryEventStore()


@pytest.fixture
def writer(store, config, clock) -> OutboxWriter:
    return OutboxWriter(store, config, clock)


@pytest.fixture
def cloud(clock) -> FakeCloud:
    return FakeCloud(clock)


@pytest.fixture
async def transport(cloud, config):
    client = httpx.AsyncClient(transport=httpx.MockTransport(cloud.handler))
    yield IngestTransport(config, client=client)
    await client.aclose()
