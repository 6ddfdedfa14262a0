"""
FastAPI API Service Entry Point

Hosts the notification center endpoints and, in-process, the appointment
reminder scheduler and the cache maintenance task.
"""

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.routes import notifications
from booking.workers.reminder_scheduler import build_reminder_scheduler
from shared.cache import get_cache
from shared.config import get_settings
from shared.logging_config import configure_logging
from shared.redis_client import close_redis_client

# Configure structured JSON logging on startup
configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Barbershop API",
    version="1.0.0",
)

settings = get_settings()
origins = settings.CORS_ORIGINS.split(",")

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

app.include_router(notifications.router)

app.state.reminder_scheduler = build_reminder_scheduler()


@app.on_event("startup")
async def start_background_jobs():
    """Start cache maintenance and the reminder scheduler."""
    await get_cache().start()
    await app.state.reminder_scheduler.start()
    logger.info("Appointment reminder scheduler started")


@app.on_event("shutdown")
async def stop_background_jobs():
    """Stop the scheduler (letting a running scan finish), then the cache tasks."""
    scheduler = app.state.reminder_scheduler
    await scheduler.stop()
    await scheduler.wait_for_in_flight()
    await get_cache().stop()
    await close_redis_client()
    logger.info("Background jobs stopped")


@app.get("/health")
async def health_check() -> JSONResponse:
    """
    Health check endpoint for Docker health checks and monitoring.

    Checks:
    - PostgreSQL connectivity (SELECT 1 query)
    - Reminder scheduler timer state
    - Cache size

    Returns:
        200 OK if all systems healthy
        503 Service Unavailable if degraded
    """
    from sqlalchemy import text

    from database.connection import get_async_session

    health_status = {
        "status": "healthy",
        "postgres": "unknown",
        "reminder_scheduler": "running" if app.state.reminder_scheduler.is_running else "stopped",
        "cache_items": get_cache().size,
    }
    status_code = 200

    try:
        async with get_async_session() as session:
            await session.execute(text("SELECT 1"))
            health_status["postgres"] = "connected"
    except Exception:
        health_status["postgres"] = "disconnected"
        health_status["status"] = "degraded"
        status_code = 503

    if not app.state.reminder_scheduler.is_running:
        health_status["status"] = "degraded"
        status_code = 503

    return JSONResponse(status_code=status_code, content=health_status)
