"""
Tests for the standalone reminder worker.

Coverage:
- Health check file content and atomic replacement
- Signal-driven graceful shutdown order
"""

import asyncio
import json
import signal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from booking.services.notification_service import ReminderKind
from booking.workers.reminder_scheduler import ReminderRunResult
from booking.workers.reminder_worker import HEALTH_FILE_NAME, async_main, update_health_check

WORKER = "booking.workers.reminder_worker"


@pytest.fixture
def health_dir(tmp_path):
    settings = MagicMock(HEALTH_CHECK_DIR=str(tmp_path), TIMEZONE="Europe/Rome")
    with patch("booking.workers.reminder_worker.get_settings", return_value=settings):
        yield tmp_path


class TestUpdateHealthCheck:
    """Test health check file updates."""

    @pytest.mark.asyncio
    async def test_healthy_run(self, health_dir):
        result = ReminderRunResult(duration_seconds=0.1234)
        result.sent[ReminderKind.DAY_BEFORE] = 2

        await update_health_check(result)

        data = json.loads((health_dir / HEALTH_FILE_NAME).read_text())
        assert data["status"] == "healthy"
        assert data["sent"] == {"day_before": 2, "same_day": 0}
        assert data["errors"] == 0
        assert data["duration_seconds"] == 0.123
        assert "last_run" in data

    @pytest.mark.asyncio
    async def test_errors_mark_unhealthy(self, health_dir):
        await update_health_check(ReminderRunResult(errors=1))

        data = json.loads((health_dir / HEALTH_FILE_NAME).read_text())
        assert data["status"] == "unhealthy"

    @pytest.mark.asyncio
    async def test_file_replaced_without_leftover_temp_files(self, health_dir):
        await update_health_check(ReminderRunResult())
        await update_health_check(ReminderRunResult(errors=2))

        assert [p.name for p in health_dir.iterdir()] == [HEALTH_FILE_NAME]
        data = json.loads((health_dir / HEALTH_FILE_NAME).read_text())
        assert data["errors"] == 2


class TestAsyncMain:
    """Test worker startup and graceful shutdown."""

    @pytest.mark.asyncio
    async def test_shutdown_signal_stops_scheduler_then_cache(self):
        calls: list[str] = []
        handlers = {}

        def record(name):
            async def step(*args, **kwargs):
                calls.append(name)
            return step

        async def start_and_signal():
            calls.append("scheduler.start")
            handlers[signal.SIGTERM]()

        scheduler = MagicMock()
        scheduler.start = AsyncMock(side_effect=start_and_signal)
        scheduler.stop = AsyncMock(side_effect=record("scheduler.stop"))
        scheduler.wait_for_in_flight = AsyncMock(side_effect=record("scheduler.wait_for_in_flight"))
        cache = MagicMock()
        cache.start = AsyncMock(side_effect=record("cache.start"))
        cache.stop = AsyncMock(side_effect=record("cache.stop"))

        loop = asyncio.get_running_loop()

        def add_signal_handler(sig, callback):
            handlers[sig] = callback

        with (
            patch.object(loop, "add_signal_handler", side_effect=add_signal_handler),
            patch(f"{WORKER}.get_cache", return_value=cache),
            patch(f"{WORKER}.build_reminder_scheduler", return_value=scheduler) as mock_build,
            patch(f"{WORKER}.close_redis_client", AsyncMock(side_effect=record("redis.close"))),
        ):
            await asyncio.wait_for(async_main(), timeout=1)

        assert set(handlers) == {signal.SIGTERM, signal.SIGINT}
        mock_build.assert_called_once_with(cache=cache, on_run_complete=update_health_check)
        assert calls == [
            "cache.start",
            "scheduler.start",
            "scheduler.stop",
            "scheduler.wait_for_in_flight",
            "cache.stop",
            "redis.close",
        ]
