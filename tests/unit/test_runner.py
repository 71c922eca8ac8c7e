"""
Tests for the standalone runner's health reporting.
"""

from src.core.outbox.lifecycle import WorkerLifecycle
from src.core.outbox.processor import DeliveryWorker, TickResult
from src.core.outbox.runner import OutboxRunner


class TestHealthCheck:
    """Test OutboxRunner.health_check()."""

    async def test_unhealthy_before_start(self, config):
        health = await OutboxRunner(config).health_check()

        assert health["status"] == "unhealthy"
        assert health["running"] is False
        assert health["ticks"] == 0

    async def test_healthy_while_running(self, config, store, transport, clock, cloud):
        runner = OutboxRunner(config)
        runner.lifecycle = WorkerLifecycle(DeliveryWorker(store, transport, config, clock), interval=3600)

        await runner.lifecycle.start()
        try:
            health = await runner.health_check()
        finally:
            await runner.lifecycle.stop()

        assert health["status"] == "healthy"
        assert health["shutdown_requested"] is False

    async def test_reports_last_tick_errors(self, config, store, transport, clock):
        runner = OutboxRunner(config)
        runner.lifecycle = WorkerLifecycle(DeliveryWorker(store, transport, config, clock), interval=3600)
        runner.lifecycle.last_result = TickResult(fetched=3, delivered=1, errors=2)

        health = await runner.health_check()

        assert health["last_tick_errors"] == 2
        assert health["last_tick_error"] is None

    async def test_no_errors_before_first_tick(self, config):
        health = await OutboxRunner(config).health_check()
        assert health["last_tick_errors"] == 0
