"""
Notification service - In-app notifications for clients and barbers.

Every notification is:
1. Persisted as a row in the notifications table (source of truth)
2. Announced on the Redis pub/sub channel, from which the WebSocket
   gateway pushes it to the connected user (best effort)
3. Followed by invalidation of the "notifications" cache tag, so cached
   reminder dedup snapshots never outlive a new row

User-facing text is Italian, with dates as dd/mm/yyyy and times as HH:MM
in the salon timezone.
"""

import logging
from datetime import datetime
from enum import Enum as PyEnum
from typing import Any
from zoneinfo import ZoneInfo

from sqlalchemy import and_, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from database.connection import get_async_session
from database.models import Appointment, Notification, NotificationType, User
from shared.cache import NOTIFICATIONS_TAG, get_cache
from shared.config import get_settings
from shared.redis_client import PublishError, publish_to_channel

logger = logging.getLogger(__name__)


class NotificationServiceError(Exception):
    """Base exception for NotificationService errors."""
    pass


class NotificationNotFoundError(NotificationServiceError):
    """Raised when a notification id does not exist."""
    pass


class ReminderKind(str, PyEnum):
    """Kind of appointment reminder sent by the scheduler."""

    DAY_BEFORE = "day_before"
    SAME_DAY = "same_day"


REMINDER_NOTIFICATION_TYPES: dict[ReminderKind, NotificationType] = {
    ReminderKind.DAY_BEFORE: NotificationType.APPOINTMENT_REMINDER,
    ReminderKind.SAME_DAY: NotificationType.APPOINTMENT_REMINDER_SAME_DAY,
}


# =============================================================================
# Formatting
# =============================================================================


def _to_local(dt: datetime) -> datetime:
    tz = ZoneInfo(get_settings().TIMEZONE)
    if dt.tzinfo is None:
        return dt.replace(tzinfo=tz)
    return dt.astimezone(tz)


def format_date(dt: datetime) -> str:
    """Format datetime as 'dd/mm/yyyy' in the salon timezone."""
    return _to_local(dt).strftime("%d/%m/%Y")


def format_time(dt: datetime) -> str:
    """Format datetime as 'HH:MM' in the salon timezone."""
    return _to_local(dt).strftime("%H:%M")


def serialize_notification(notification: Notification) -> dict[str, Any]:
    """Convert a notification row to the JSON payload pushed to clients."""
    return {
        "id": notification.id,
        "user_id": notification.user_id,
        "type": notification.type.value,
        "title": notification.title,
        "message": notification.message,
        "is_read": notification.is_read,
        "related_id": notification.related_id,
        "created_at": notification.created_at.isoformat() if notification.created_at else None,
    }


# =============================================================================
# Creation
# =============================================================================


async def create_notification(
    session: AsyncSession,
    user_id: int,
    notification_type: NotificationType,
    title: str,
    message: str,
    related_id: int | None = None,
) -> Notification:
    """
    Add a notification to the session (caller commits).

    Args:
        session: Database session
        user_id: Recipient user id
        notification_type: Type of notification
        title: Notification title
        message: Notification body
        related_id: Related entity id (e.g., appointment id)

    Returns:
        The pending Notification object
    """
    notification = Notification(
        user_id=user_id,
        type=notification_type,
        title=title,
        message=message,
        is_read=False,
        related_id=related_id,
    )
    session.add(notification)
    logger.debug(f"Created notification: {notification_type.value} - {title}")
    return notification


async def publish_notification(notification: Notification) -> None:
    """Push a notification to the pub/sub channel. Failures are logged only."""
    settings = get_settings()
    try:
        await publish_to_channel(
            settings.NOTIFICATIONS_CHANNEL, serialize_notification(notification)
        )
    except PublishError as e:
        logger.warning(
            f"Notification {notification.id} saved but not pushed: {e}",
            extra={"user_id": notification.user_id},
        )


async def _save_notification(
    user_id: int,
    notification_type: NotificationType,
    title: str,
    message: str,
    related_id: int | None = None,
) -> Notification:
    async with get_async_session() as session:
        notification = await create_notification(
            session, user_id, notification_type, title, message, related_id
        )
        await session.commit()
        await session.refresh(notification)

    get_cache().invalidate_by_tag(NOTIFICATIONS_TAG)
    await publish_notification(notification)
    return notification


async def create_appointment_reminder(user_id: int, appointment: Appointment) -> Notification:
    """Reminder sent the day before the appointment."""
    return await _save_notification(
        user_id,
        NotificationType.APPOINTMENT_REMINDER,
        "Promemoria Appuntamento",
        f"Hai un appuntamento programmato per il {format_date(appointment.date)} "
        f"alle {format_time(appointment.date)}.",
        related_id=appointment.id,
    )


async def create_same_day_appointment_reminder(
    user_id: int, appointment: Appointment
) -> Notification:
    """Reminder sent a couple of hours before the appointment."""
    return await _save_notification(
        user_id,
        NotificationType.APPOINTMENT_REMINDER_SAME_DAY,
        "Promemoria Appuntamento Oggi",
        f"Ricorda: hai un appuntamento oggi alle {format_time(appointment.date)}. Ti aspettiamo!",
        related_id=appointment.id,
    )


async def create_reminder_notification(
    user_id: int, appointment: Appointment, kind: ReminderKind
) -> Notification:
    """
    Create the reminder notification matching `kind`.

    Always inserts a new row; avoiding duplicates is the caller's job.
    """
    if kind == ReminderKind.DAY_BEFORE:
        return await create_appointment_reminder(user_id, appointment)
    if kind == ReminderKind.SAME_DAY:
        return await create_same_day_appointment_reminder(user_id, appointment)
    raise NotificationServiceError(f"Unknown reminder kind: {kind}")


async def create_appointment_confirmation(user_id: int, appointment: Appointment) -> Notification:
    return await _save_notification(
        user_id,
        NotificationType.APPOINTMENT_CONFIRMATION,
        "Appuntamento Confermato",
        f"Il tuo appuntamento per il {format_date(appointment.date)} "
        f"alle {format_time(appointment.date)} è stato confermato.",
        related_id=appointment.id,
    )


async def create_appointment_cancellation(user_id: int, appointment: Appointment) -> Notification:
    return await _save_notification(
        user_id,
        NotificationType.APPOINTMENT_CANCELLED,
        "Appuntamento Cancellato",
        f"L'appuntamento programmato per il {format_date(appointment.date)} "
        f"alle {format_time(appointment.date)} è stato cancellato.",
        related_id=appointment.id,
    )


async def create_appointment_modification(user_id: int, appointment: Appointment) -> Notification:
    return await _save_notification(
        user_id,
        NotificationType.APPOINTMENT_MODIFIED,
        "Appuntamento Modificato",
        f"Il tuo appuntamento è stato modificato. La nuova data è "
        f"{format_date(appointment.date)} alle {format_time(appointment.date)}.",
        related_id=appointment.id,
    )


async def create_appointment_request_notification(
    user_id: int, appointment: Appointment, client_name: str
) -> Notification:
    """Notify a barber that a client requested an appointment."""
    return await _save_notification(
        user_id,
        NotificationType.APPOINTMENT_REQUEST,
        "Nuova Richiesta di Appuntamento",
        f"{client_name} ha richiesto un appuntamento per il "
        f"{format_date(appointment.date)} alle {format_time(appointment.date)}.",
        related_id=appointment.id,
    )


async def create_new_message_notification(
    user_id: int, sender: User, message_id: int
) -> Notification:
    return await _save_notification(
        user_id,
        NotificationType.NEW_MESSAGE,
        "Nuovo Messaggio",
        f"Hai ricevuto un nuovo messaggio da {sender.name}.",
        related_id=message_id,
    )


async def create_system_notification(user_id: int, title: str, message: str) -> Notification:
    return await _save_notification(user_id, NotificationType.SYSTEM, title, message)


# =============================================================================
# Reads and read-state updates
# =============================================================================


async def list_user_notifications(
    user_id: int, limit: int = 50, include_read: bool = True
) -> list[Notification]:
    """
    List a user's notifications, newest first.

    Args:
        user_id: Recipient user id
        limit: Maximum number of rows
        include_read: If False, only unread notifications are returned
    """
    query = select(Notification).where(Notification.user_id == user_id)
    if not include_read:
        query = query.where(Notification.is_read.is_(False))
    query = query.order_by(Notification.created_at.desc()).limit(limit)

    async with get_async_session() as session:
        result = await session.execute(query)
        return list(result.scalars().all())


async def count_unread(user_id: int) -> int:
    """Number of unread notifications for a user."""
    async with get_async_session() as session:
        result = await session.execute(
            select(func.count(Notification.id)).where(
                and_(Notification.user_id == user_id, Notification.is_read.is_(False))
            )
        )
        return result.scalar() or 0


async def mark_as_read(notification_id: int) -> Notification:
    """
    Mark a single notification as read.

    Raises:
        NotificationNotFoundError: If the notification does not exist
    """
    async with get_async_session() as session:
        result = await session.execute(
            select(Notification).where(Notification.id == notification_id)
        )
        notification = result.scalar_one_or_none()

        if notification is None:
            raise NotificationNotFoundError(f"Notification {notification_id} not found")

        notification.is_read = True
        await session.commit()
        return notification


async def mark_all_as_read(user_id: int) -> int:
    """
    Mark every unread notification of a user as read.

    Returns:
        Number of notifications updated
    """
    async with get_async_session() as session:
        result = await session.execute(
            update(Notification)
            .where(and_(Notification.user_id == user_id, Notification.is_read.is_(False)))
            .values(is_read=True)
        )
        await session.commit()
        return result.rowcount or 0
