"""
OpenTelemetry Tracing

Every delivery attempt runs inside an `outbox.deliver` client span, and
the W3C trace context rides along on the ingestion request so the cloud
side can join the same trace.

Exporters are chosen from the standard OTEL_* environment variables
unless passed explicitly.
"""

import os
import logging
from typing import Optional, Dict, Any
from contextlib import contextmanager

from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.sdk.resources import Resource, SERVICE_NAME, SERVICE_VERSION
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.trace import Status, StatusCode, Span
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator
from opentelemetry.propagate import set_global_textmap, inject

logger = logging.getLogger(__name__)

SERVICE = "pos-cloud-sync"

_tracer: Optional[trace.Tracer] = None


def init_tracing(
    service_name: str = SERVICE,
    service_version: str = "1.0.0",
    otlp_endpoint: Optional[str] = None,
    console_export: Optional[bool] = None
) -> trace.Tracer:
    """
    Install a tracer provider for this process.

    Args:
        service_name: Reported as service.name
        service_version: Reported as service.version
        otlp_endpoint: OTLP gRPC endpoint; defaults to OTEL_EXPORTER_OTLP_ENDPOINT
        console_export: Print spans to stdout; defaults to OTEL_CONSOLE_EXPORT=true

    Without any exporter spans are still created (so trace ids appear in
    logs and outbound headers) but go nowhere.
    """
    global _tracer

    if otlp_endpoint is None:
        otlp_endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    if console_export is None:
        console_export = os.getenv("OTEL_CONSOLE_EXPORT", "false").lower() == "true"

    provider = TracerProvider(resource=Resource.create({
        SERVICE_NAME: service_name,
        SERVICE_VERSION: service_version,
    }))

    if otlp_endpoint:
        provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint, insecure=True))
        )
        logger.info("Span export to %s", otlp_endpoint)
    if console_export:
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    trace.set_tracer_provider(provider)
    set_global_textmap(TraceContextTextMapPropagator())

    _tracer = trace.get_tracer(service_name, service_version)
    logger.info("Tracing ready for %s v%s", service_name, service_version)
    return _tracer


def get_tracer() -> trace.Tracer:
    """Tracer for outbox spans; a no-op tracer until init_tracing() ran."""
    global _tracer
    if _tracer is None:
        _tracer = trace.get_tracer(SERVICE)
    return _tracer


def get_current_span() -> Optional[Span]:
    return trace.get_current_span()


def get_trace_id() -> Optional[str]:
    """Hex trace id of the active span, or None outside a span."""
    context = get_current_span().get_span_context()
    if context.is_valid:
        return format(context.trace_id, "032x")
    return None


@contextmanager
def create_span(
    name: str,
    attributes: Dict[str, Any] = None,
    kind: trace.SpanKind = trace.SpanKind.INTERNAL
):
    """
    Run a block inside a span. Exceptions are recorded and re-raised.

    Usage:
        with create_span("outbox.reclaim", {"lease.seconds": 300}) as span:
            ...
    """
    with get_tracer().start_as_current_span(name, kind=kind, attributes=attributes or {}) as span:
        try:
            yield span
        except Exception as e:
            span.set_status(Status(StatusCode.ERROR, str(e)))
            span.record_exception(e)
            raise


@contextmanager
def delivery_span(
    event_id: str,
    event_type: str,
    tenant_id: str,
    location_id: str,
    attempt: int
):
    """Client span around one POST to the ingestion endpoint."""
    attributes = {
        "event.id": event_id,
        "event.type": event_type,
        "tenant.id": tenant_id,
        "location.id": location_id,
        "event.attempt": attempt,
    }
    with create_span("outbox.deliver", attributes, kind=trace.SpanKind.CLIENT) as span:
        yield span


def inject_trace_context(carrier: Dict[str, str]) -> Dict[str, str]:
    """Add traceparent/tracestate for the active span to outgoing headers."""
    inject(carrier)
    return carrier


def mark_span_failed(message: str, span: Optional[Span] = None):
    """Flag a span as failed without an exception."""
    span = span or get_current_span()
    if span:
        span.set_status(Status(StatusCode.ERROR, message))
