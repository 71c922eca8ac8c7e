"""
OpenTelemetry Metrics

Counters for every outbox state change plus a histogram of ingestion
request latency. Recording is a no-op until init_metrics() has created
the instruments, so library users pay nothing unless they opt in.
"""

import os
import logging
from typing import Optional, Dict, Any

from opentelemetry import metrics
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import (
    ConsoleMetricExporter,
    PeriodicExportingMetricReader,
)
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.sdk.resources import Resource, SERVICE_NAME

from .tracing import SERVICE

logger = logging.getLogger(__name__)

OUTBOX_COUNTERS = {
    "outbox_enqueued_total": "Events accepted into the outbox",
    "outbox_evicted_total": "Events dropped by the per-location queue cap",
    "outbox_delivered_total": "Events delivered to the cloud",
    "outbox_failed_total": "Failed delivery attempts",
    "outbox_dead_lettered_total": "Events moved to the dead letter state",
}

_meter: Optional[metrics.Meter] = None
_counters: Dict[str, metrics.Counter] = {}
_histograms: Dict[str, metrics.Histogram] = {}


def init_metrics(
    service_name: str = SERVICE,
    otlp_endpoint: Optional[str] = None,
    console_export: Optional[bool] = None,
    export_interval_ms: int = 60000
) -> metrics.Meter:
    """
    Install a meter provider and create the outbox instruments.

    Args:
        service_name: Reported as service.name
        otlp_endpoint: OTLP gRPC endpoint; defaults to OTEL_EXPORTER_OTLP_ENDPOINT
        console_export: Print metrics to stdout; defaults to OTEL_CONSOLE_EXPORT=true
        export_interval_ms: Push interval for every reader
    """
    global _meter

    if otlp_endpoint is None:
        otlp_endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    if console_export is None:
        console_export = os.getenv("OTEL_CONSOLE_EXPORT", "false").lower() == "true"

    readers = []
    if otlp_endpoint:
        readers.append(PeriodicExportingMetricReader(
            OTLPMetricExporter(endpoint=otlp_endpoint, insecure=True),
            export_interval_millis=export_interval_ms,
        ))
        logger.info("Metric export to %s every %dms", otlp_endpoint, export_interval_ms)
    if console_export:
        readers.append(PeriodicExportingMetricReader(
            ConsoleMetricExporter(),
            export_interval_millis=export_interval_ms,
        ))

    provider = MeterProvider(
        resource=Resource.create({SERVICE_NAME: service_name}),
        metric_readers=readers,
    )
    metrics.set_meter_provider(provider)
    _meter = metrics.get_meter(service_name)

    for name, description in OUTBOX_COUNTERS.items():
        _counters[name] = _meter.create_counter(name, description=description, unit="1")
    _histograms["outbox_delivery_duration_seconds"] = _meter.create_histogram(
        "outbox_delivery_duration_seconds",
        description="Cloud ingestion request duration",
        unit="s",
    )

    logger.info("Metrics ready for %s", service_name)
    return _meter


def get_meter() -> metrics.Meter:
    global _meter
    if _meter is None:
        _meter = metrics.get_meter(SERVICE)
    return _meter


def record_counter(name: str, value: int = 1, attributes: Dict[str, Any] = None):
    """Add to an outbox counter. Unknown names and an uninitialised meter are ignored."""
    counter = _counters.get(name)
    if counter is not None:
        counter.add(value, attributes or {})


def record_histogram(name: str, value: float, attributes: Dict[str, Any] = None):
    """Record one histogram sample. Ignored until init_metrics() ran."""
    histogram = _histograms.get(name)
    if histogram is not None:
        histogram.record(value, attributes or {})
