"""
Booking services module.

Services:
- appointment_query_service: Read-only appointment/notification lookups
- notification_service: Notification creation, push and read-state updates
"""

from booking.services.appointment_query_service import (
    fetch_all_notifications,
    fetch_confirmed_appointments_in_range,
    fetch_sent_reminder_ids,
)
from booking.services.notification_service import (
    REMINDER_NOTIFICATION_TYPES,
    NotificationNotFoundError,
    NotificationServiceError,
    ReminderKind,
    count_unread,
    create_reminder_notification,
    list_user_notifications,
    mark_all_as_read,
    mark_as_read,
)

__all__ = [
    "fetch_all_notifications",
    "fetch_confirmed_appointments_in_range",
    "fetch_sent_reminder_ids",
    "REMINDER_NOTIFICATION_TYPES",
    "NotificationNotFoundError",
    "NotificationServiceError",
    "ReminderKind",
    "count_unread",
    "create_reminder_notification",
    "list_user_notifications",
    "mark_all_as_read",
    "mark_as_read",
]
