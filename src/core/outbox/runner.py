"""
Outbox Delivery Runner

Standalone service that runs the delivery worker next to the POS
server process.

Usage:
    python -m src.core.outbox.runner

Environment Variables:
    SYNC_CLOUD_BASE_URL: Cloud ingestion base URL (required)
    SYNC_SIGNING_SECRET: Shared HMAC secret (required)
    SYNC_NODE_ID: This POS node's identifier (default: hostname)
    SYNC_INTERVAL_SECONDS: Tick interval in seconds (default: 30)
    SYNC_BATCH_SIZE: Events per tick (default: 10)
    SYNC_MAX_ATTEMPTS: Max delivery attempts (default: 5)
    DATABASE_BACKEND / SQLITE_PATH / DATABASE_URL: Event store location
    LOG_LEVEL: Logging level (default: INFO)
    LOG_STRUCTURED: JSON logs (default: true)
    OTEL_EXPORTER_OTLP_ENDPOINT: OTLP gRPC collector for spans and metrics (optional)
"""

import os
import sys
import signal
import asyncio
import logging
from typing import Optional

from ..config import SyncConfig
from ..database.adapter import close_database
from ..observability import configure_logging, init_metrics, init_tracing
from .dlq import DLQManager
from .lifecycle import WorkerLifecycle
from .processor import DeliveryWorker
from .store.factory import get_event_store
from .transport import IngestTransport

logger = logging.getLogger(__name__)


class OutboxRunner:
    """
    Manages the delivery worker lifecycle with graceful shutdown.
    """

    def __init__(self, config: Optional[SyncConfig] = None):
        self.config = config or SyncConfig.from_env()
        self.lifecycle: Optional[WorkerLifecycle] = None
        self._shutdown_event = asyncio.Event()
        self._shutdown_requested = False

    def _setup_signal_handlers(self):
        """Set up signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._handle_shutdown_signal, sig)

    def _handle_shutdown_signal(self, sig: signal.Signals):
        """Handle shutdown signal."""
        if self._shutdown_requested:
            logger.warning("Received %s again, forcing exit", sig.name)
            sys.exit(1)

        logger.info("Received %s, initiating graceful shutdown", sig.name)
        self._shutdown_requested = True
        self._shutdown_event.set()

    async def run(self):
        """Run the delivery worker until shutdown is requested."""
        logger.info("Starting Outbox Delivery Runner")
        logger.info("  Node: %s", self.config.node_id)
        logger.info("  Ingest URL: %s", self.config.ingest_url)
        logger.info("  Interval: %ss", self.config.interval_seconds)
        logger.info("  Batch size: %d", self.config.batch_size)
        logger.info("  Max attempts: %d", self.config.max_attempts)

        self._setup_signal_handlers()

        store = await get_event_store()
        async with IngestTransport(self.config) as transport:
            worker = DeliveryWorker(store, transport, self.config)
            self.lifecycle = WorkerLifecycle(worker, dlq=DLQManager(store, self.config))

            try:
                await self.lifecycle.start()
                logger.info("Outbox Delivery Runner is running")

                await self._shutdown_event.wait()
            finally:
                logger.info("Stopping Outbox Delivery Runner")
                await self.lifecycle.stop()
                await close_database()
                logger.info("Outbox Delivery Runner stopped")

    async def health_check(self) -> dict:
        """Return health status for monitoring."""
        running = bool(self.lifecycle and self.lifecycle.running)
        last = self.lifecycle.last_result if self.lifecycle else None
        return {
            "status": "healthy" if running else "unhealthy",
            "running": running,
            "ticks": self.lifecycle.ticks if self.lifecycle else 0,
            "last_tick_error": last.error if last else None,
            "last_tick_errors": last.errors if last else 0,
            "shutdown_requested": self._shutdown_requested
        }


async def main():
    """Main entry point."""
    configure_logging(
        level=os.getenv("LOG_LEVEL", "INFO"),
        structured=os.getenv("LOG_STRUCTURED", "true").lower() == "true",
    )
    init_tracing()
    init_metrics()

    config = SyncConfig.from_env()
    issues = config.validate()
    for issue in issues:
        logger.warning(issue)
    if any(issue.startswith("ERROR") for issue in issues):
        sys.exit(1)

    if not config.enabled:
        logger.info("Outbox delivery disabled: SYNC_ENABLED=false")
        return

    runner = OutboxRunner(config)
    await runner.run()


if __name__ == "__main__":
    asyncio.run(main())
