"""
SQLAlchemy ORM models for the barbershop database.

This module defines the core tables:
- users: Clients and barbers (is_barber flag)
- services: Services offered, with price and duration
- appointments: Bookings of a client with a barber for a service
- notifications: In-app notifications shown in the notification center

All models use:
- Integer autoincrement primary keys
- TIMESTAMP WITH TIME ZONE for datetime fields
- Proper indexes for the reminder scheduler queries
"""

from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import (
    TIMESTAMP,
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy import (
    Enum as SQLEnum,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# ============================================================================
# Base Class
# ============================================================================


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


# ============================================================================
# Enums
# ============================================================================


class AppointmentStatus(str, PyEnum):
    """Appointment lifecycle status."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"

    def __str__(self):
        return self.value


class NotificationType(str, PyEnum):
    """Type of in-app notification."""

    # Reminders (created by the reminder scheduler)
    APPOINTMENT_REMINDER = "appointment_reminder"                    # ~24h before
    APPOINTMENT_REMINDER_SAME_DAY = "appointment_reminder_same_day"  # ~2h before

    # Appointment lifecycle
    APPOINTMENT_CONFIRMATION = "appointment_confirmation"
    APPOINTMENT_CANCELLED = "appointment_cancelled"
    APPOINTMENT_MODIFIED = "appointment_modified"
    APPOINTMENT_REQUEST = "appointment_request"

    # Other
    NEW_MESSAGE = "new_message"
    SYSTEM = "system"


# ============================================================================
# Core Models
# ============================================================================


class User(Base):
    """
    User model - Clients and barbers.

    Barbers are users with is_barber=True; everyone else is a client.
    """

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    username: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    phone: Mapped[str | None] = mapped_column(String(30), nullable=True)
    is_barber: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    image_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Relationships
    notifications: Mapped[list["Notification"]] = relationship(
        "Notification", back_populates="user"
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, username='{self.username}', is_barber={self.is_barber})>"


class Service(Base):
    """Service model - A bookable service (haircut, beard trim...)."""

    __tablename__ = "services"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    price: Mapped[int] = mapped_column(Integer, nullable=False)  # cents
    duration: Mapped[int] = mapped_column(Integer, nullable=False)  # minutes
    image_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint("price >= 0", name="check_service_price_non_negative"),
        CheckConstraint("duration > 0", name="check_service_duration_positive"),
    )

    def __repr__(self) -> str:
        return f"<Service(id={self.id}, name='{self.name}', price={self.price})>"


class Appointment(Base):
    """
    Appointment model - A client booking with a barber.

    Only CONFIRMED appointments receive reminders.
    """

    __tablename__ = "appointments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    date: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)

    # Foreign keys
    client_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    barber_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    service_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("services.id", ondelete="RESTRICT"), nullable=False
    )

    # Note: values_callable stores the enum .value ("confirmed") instead of .name
    status: Mapped[AppointmentStatus] = mapped_column(
        SQLEnum(
            AppointmentStatus,
            name="appointment_status",
            values_callable=lambda x: [e.value for e in x],
        ),
        default=AppointmentStatus.PENDING,
        nullable=False,
    )

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    walk_in: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Relationships
    client: Mapped["User"] = relationship("User", foreign_keys=[client_id])
    barber: Mapped["User"] = relationship("User", foreign_keys=[barber_id])
    service: Mapped["Service"] = relationship("Service")

    __table_args__ = (
        # Reminder scheduler query: status = confirmed AND date in window
        Index("idx_appointments_status_date", "status", "date"),
    )

    def __repr__(self) -> str:
        return f"<Appointment(id={self.id}, client_id={self.client_id}, status='{self.status.value}')>"


class Notification(Base):
    """
    Notification model - In-app notifications for clients and barbers.

    related_id points at the entity that triggered the notification
    (appointment id for appointment/reminder types, message id for
    new_message). Reminder deduplication relies on (type, related_id).
    """

    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )

    type: Mapped[NotificationType] = mapped_column(
        SQLEnum(
            NotificationType,
            name="notification_type",
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
    )

    # Content
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)

    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    related_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=text("CURRENT_TIMESTAMP"),
        nullable=False,
    )

    # Relationships
    user: Mapped["User"] = relationship("User", back_populates="notifications")

    __table_args__ = (
        Index("idx_notifications_user_is_read", "user_id", "is_read"),
        Index("idx_notifications_type_related", "type", "related_id"),
        Index("idx_notifications_created_at_desc", "created_at", postgresql_ops={"created_at": "DESC"}),
    )

    def __repr__(self) -> str:
        return f"<Notification(id={self.id}, type='{self.type.value}', is_read={self.is_read})>"
