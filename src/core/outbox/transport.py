"""
Cloud Ingestion Transport

Signs and POSTs queued events to `{cloud_base_url}/events/ingest`.
Every failure (non-2xx, timeout, connection error, a request that cannot
be built) comes back as a DeliveryResult; nothing here raises for HTTP
trouble.

Identifier headers (X-Node-Id, X-Tenant-Id, X-Location-Id, X-Event-Id,
X-Event-Type) are percent-encoded UTF-8, since HTTP header values are
ASCII only. Plain ASCII ids made of letters, digits and "-._~" are sent
unchanged; the receiver must percent-decode the rest.
"""

import hashlib
import hmac
import logging
import time
from dataclasses import dataclass
from typing import Dict, Optional
from urllib.parse import quote

import httpx

from ..config import SyncConfig
from ..observability import inject_trace_context, record_histogram
from .models import QueuedEvent

logger = logging.getLogger(__name__)

# Longest response excerpt kept in last_error
_ERROR_BODY_LIMIT = 200


def sign_body(body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of the raw request body."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def encode_header_value(value: str) -> str:
    """Percent-encode a value so it is always a valid ASCII header."""
    return quote(value, safe="")


@dataclass
class DeliveryResult:
    """Outcome of one delivery attempt."""
    ok: bool
    status_code: Optional[int] = None
    error: Optional[str] = None
    duration_seconds: float = 0.0


class IngestTransport:
    """
    HTTP client for the cloud ingestion endpoint.

    Usage:
        async with IngestTransport(config) as transport:
            result = await transport.deliver(event)
    """

    def __init__(
        self,
        config: SyncConfig,
        client: Optional[httpx.AsyncClient] = None
    ):
        self._config = config
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(config.http_timeout_seconds)
        )

    async def __aenter__(self) -> "IngestTransport":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()
        return False

    async def aclose(self):
        if self._owns_client:
            await self._client.aclose()

    def build_headers(self, event: QueuedEvent, body: bytes) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "X-Node-Id": encode_header_value(self._config.node_id),
            "X-Request-Signature": sign_body(body, self._config.signing_secret),
            "X-Tenant-Id": encode_header_value(event.tenant_id),
            "X-Location-Id": encode_header_value(event.location_id),
            "X-Event-Id": encode_header_value(event.id),
            "X-Event-Type": encode_header_value(event.event_type),
        }
        return inject_trace_context(headers)

    async def deliver(self, event: QueuedEvent) -> DeliveryResult:
        """POST one event. Success is any 2xx status."""
        try:
            body = event.serialize_body()
        except (TypeError, ValueError) as e:
            return DeliveryResult(ok=False, error=f"Serialization error: {e}")

        started = time.monotonic()

        try:
            headers = self.build_headers(event, body)
            response = await self._client.post(
                self._config.ingest_url,
                content=body,
                headers=headers,
                timeout=self._config.http_timeout_seconds,
            )
        except httpx.TimeoutException as e:
            return self._result(started, error=f"Timeout after {self._config.http_timeout_seconds}s: {e!r}")
        except httpx.HTTPError as e:
            return self._result(started, error=f"Transport error: {e!r}")
        except (UnicodeError, ValueError) as e:
            return self._result(started, error=f"Request build error: {e!r}")

        if response.is_success:
            return self._result(started, ok=True, status_code=response.status_code)

        excerpt = response.text[:_ERROR_BODY_LIMIT]
        return self._result(
            started,
            status_code=response.status_code,
            error=f"HTTP {response.status_code}: {excerpt}" if excerpt else f"HTTP {response.status_code}",
        )

    def _result(
        self,
        started: float,
        ok: bool = False,
        status_code: Optional[int] = None,
        error: Optional[str] = None
    ) -> DeliveryResult:
        duration = time.monotonic() - started
        record_histogram(
            "outbox_delivery_duration_seconds",
            duration,
            {"outcome": "success" if ok else "failure"},
        )
        return DeliveryResult(ok=ok, status_code=status_code, error=error, duration_seconds=duration)
