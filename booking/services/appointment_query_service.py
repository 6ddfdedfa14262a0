"""
Appointment query service - Read-only lookups used by the reminder scheduler.

Provides:
- fetch_confirmed_appointments_in_range: candidate appointments for a scan
- fetch_all_notifications: full notification scan used to build dedup markers
- fetch_sent_reminder_ids: live dedup check restricted to a set of appointments

No state management and no database modifications.
"""

import logging
from collections.abc import Iterable
from datetime import datetime

from sqlalchemy import and_, select

from database.connection import get_async_session
from database.models import (
    Appointment,
    AppointmentStatus,
    Notification,
    NotificationType,
)

logger = logging.getLogger(__name__)


async def fetch_confirmed_appointments_in_range(
    start: datetime, end: datetime
) -> list[Appointment]:
    """
    Get every confirmed appointment whose date falls in [start, end].

    Args:
        start: Window start (inclusive, timezone-aware)
        end: Window end (inclusive, timezone-aware)

    Returns:
        Appointments of any client and barber, ordered by date
    """
    async with get_async_session() as session:
        result = await session.execute(
            select(Appointment)
            .where(
                and_(
                    Appointment.status == AppointmentStatus.CONFIRMED,
                    Appointment.date >= start,
                    Appointment.date <= end,
                )
            )
            .order_by(Appointment.date)
        )
        appointments = list(result.scalars().all())

    logger.debug(
        f"Fetched {len(appointments)} confirmed appointments "
        f"between {start.isoformat()} and {end.isoformat()}"
    )
    return appointments


async def fetch_all_notifications() -> list[Notification]:
    """Get every notification, newest first."""
    async with get_async_session() as session:
        result = await session.execute(
            select(Notification).order_by(Notification.created_at.desc())
        )
        return list(result.scalars().all())


async def fetch_sent_reminder_ids(
    notification_type: NotificationType,
    appointment_ids: Iterable[int],
) -> set[int]:
    """
    Get the subset of appointment_ids that already have a notification of the given type.

    Bypasses every cache: this is the authoritative duplicate check.

    Args:
        notification_type: Reminder type to look for
        appointment_ids: Candidate appointment ids

    Returns:
        Appointment ids already notified
    """
    ids = list(appointment_ids)
    if not ids:
        return set()

    async with get_async_session() as session:
        result = await session.execute(
            select(Notification.related_id).where(
                and_(
                    Notification.type == notification_type,
                    Notification.related_id.in_(ids),
                )
            )
        )
        return {related_id for related_id in result.scalars().all() if related_id is not None}
