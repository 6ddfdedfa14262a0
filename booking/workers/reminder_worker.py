"""
Reminder worker - Standalone process hosting the appointment reminder scheduler.

Use this entry point when reminders run in their own container instead of
inside the API process.

Architecture:
    - Single event loop (asyncio.run once) shared by the cache maintenance
      task and the scheduler timer
    - Graceful shutdown on SIGTERM/SIGINT: stop the timer, let the in-flight
      scan finish, stop cache maintenance
    - Health check file updated after every scan
"""

import asyncio
import json
import logging
import signal
import time
from datetime import datetime
from pathlib import Path
from zoneinfo import ZoneInfo

from booking.workers.reminder_scheduler import ReminderRunResult, build_reminder_scheduler
from shared.cache import get_cache
from shared.config import get_settings
from shared.logging_config import configure_logging
from shared.redis_client import close_redis_client

logger = logging.getLogger(__name__)

HEALTH_FILE_NAME = "reminder_worker_health.json"


async def update_health_check(result: ReminderRunResult) -> None:
    """
    Write the latest scan statistics to the health check file.

    The file is replaced atomically (write temp file, then rename).

    Args:
        result: Outcome of the scan that just finished
    """
    settings = get_settings()
    health_dir = Path(settings.HEALTH_CHECK_DIR)
    health_dir.mkdir(parents=True, exist_ok=True)
    health_file = health_dir / HEALTH_FILE_NAME
    temp_file = health_dir / f"reminder_worker_health.{int(time.time())}.tmp"

    now = datetime.now(ZoneInfo(settings.TIMEZONE))
    health_data = {
        "status": "healthy" if result.errors == 0 else "unhealthy",
        "last_run": now.isoformat(),
        "sent": {kind.value: count for kind, count in result.sent.items()},
        "duplicates_skipped": result.duplicates_skipped,
        "errors": result.errors,
        "duration_seconds": round(result.duration_seconds, 3),
        "skipped_overlap": result.skipped_overlap,
    }

    try:
        temp_file.write_text(json.dumps(health_data, indent=2))
        temp_file.rename(health_file)
        logger.debug(f"Health check file updated: {health_file}")
    except OSError as e:
        logger.error(f"Failed to write health check file: {e}", exc_info=True)


async def async_main() -> None:
    """
    Main async entry point - runs the scheduler until a shutdown signal arrives.
    """
    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def handle_shutdown_signal() -> None:
        logger.info("Received shutdown signal, initiating graceful shutdown...")
        shutdown_event.set()

    try:
        loop.add_signal_handler(signal.SIGTERM, handle_shutdown_signal)
        loop.add_signal_handler(signal.SIGINT, handle_shutdown_signal)
    except NotImplementedError:
        logger.warning("Signal handlers not supported on this platform")

    cache = get_cache()
    scheduler = build_reminder_scheduler(cache=cache, on_run_complete=update_health_check)

    logger.info("Reminder worker starting...")
    await cache.start()
    await scheduler.start()

    try:
        await shutdown_event.wait()
    finally:
        logger.info("Reminder worker shutting down gracefully...")
        await scheduler.stop()
        await scheduler.wait_for_in_flight()
        await cache.stop()
        await close_redis_client()
        logger.info("Reminder worker stopped")


def run_reminder_worker() -> None:
    """
    Synchronous entry point that sets up logging, then runs the async main function.
    """
    configure_logging()
    asyncio.run(async_main())


if __name__ == "__main__":
    run_reminder_worker()
