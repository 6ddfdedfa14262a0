"""
Notification center endpoints.

Provides REST endpoints for:
- Listing a user's notifications
- Unread counter (badge)
- Marking one or all notifications as read
"""

import logging
from datetime import datetime

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from booking.services import notification_service
from booking.services.notification_service import NotificationNotFoundError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["notifications"])


class NotificationResponse(BaseModel):
    id: int
    user_id: int
    type: str
    title: str
    message: str
    is_read: bool
    related_id: int | None
    created_at: datetime | None


class NotificationsListResponse(BaseModel):
    items: list[NotificationResponse]
    total: int


class UnreadCountResponse(BaseModel):
    count: int


@router.get(
    "/users/{user_id}/notifications", response_model=NotificationsListResponse
)
async def list_notifications(user_id: int, limit: int = 50, include_read: bool = True):
    """
    List a user's notifications.

    Returns notifications sorted by created_at DESC (newest first).
    """
    notifications = await notification_service.list_user_notifications(
        user_id, limit=limit, include_read=include_read
    )
    return NotificationsListResponse(
        items=[
            NotificationResponse(**notification_service.serialize_notification(n))
            for n in notifications
        ],
        total=len(notifications),
    )


@router.get(
    "/users/{user_id}/notifications/unread-count", response_model=UnreadCountResponse
)
async def unread_count(user_id: int):
    """Number of unread notifications for the badge."""
    return UnreadCountResponse(count=await notification_service.count_unread(user_id))


@router.put("/notifications/{notification_id}/read")
async def mark_notification_read(notification_id: int):
    """Mark a single notification as read."""
    try:
        await notification_service.mark_as_read(notification_id)
    except NotificationNotFoundError:
        raise HTTPException(status_code=404, detail="Notification not found")
    return {"success": True}


@router.put("/users/{user_id}/notifications/mark-all-read")
async def mark_all_notifications_read(user_id: int):
    """Mark all unread notifications of a user as read."""
    updated = await notification_service.mark_all_as_read(user_id)
    return {"success": True, "updated": updated}
