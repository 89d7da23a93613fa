"""
shared/models/models.py
All SQLAlchemy ORM models for the booking core.
Users live in the identity service; they are referenced here by UUID only.
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum as PyEnum
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from config.database import Base


# ── Column Types ──────────────────────────────────────────────

class UTCDateTime(TypeDecorator):
    """Stores UTC, always hands back timezone-aware datetimes (SQLite drops tzinfo)."""
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None:
            if value.tzinfo is None:
                value = value.replace(tzinfo=timezone.utc)
            value = value.astimezone(timezone.utc)
            if dialect.name == "sqlite":
                value = value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum(enum_cls) -> Enum:
    # VARCHAR-backed so the partial index predicates below are portable
    return Enum(enum_cls, native_enum=False)


# ── Enumerations ──────────────────────────────────────────────

class UserRole(str, PyEnum):
    USER = "USER"
    SPECIALIST = "SPECIALIST"
    ADMIN = "ADMIN"


class DayOfWeek(str, PyEnum):
    MON = "MON"
    TUE = "TUE"
    WED = "WED"
    THU = "THU"
    FRI = "FRI"
    SAT = "SAT"
    SUN = "SUN"


class OverrideType(str, PyEnum):
    OFF = "OFF"           # Completely unavailable
    CUSTOM = "CUSTOM"     # Custom hours instead of the weekly rules


class SessionRequestStatus(str, PyEnum):
    PENDING_PAYMENT = "PENDING_PAYMENT"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


ACTIVE_REQUEST_STATUSES = (
    SessionRequestStatus.PENDING_PAYMENT,
    SessionRequestStatus.PENDING_APPROVAL,
)


class SessionStatus(str, PyEnum):
    CONFIRMED = "CONFIRMED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    NO_SHOW = "NO_SHOW"


# Sessions in these statuses keep holding their (specialist, date, start_time)
SLOT_HOLDING_SESSION_STATUSES = (
    SessionStatus.CONFIRMED,
    SessionStatus.COMPLETED,
    SessionStatus.NO_SHOW,
)


class SessionType(str, PyEnum):
    VIDEO_CALL = "video call"
    AUDIO_CALL = "audio call"


class NotificationType(str, PyEnum):
    BOOKING_REMINDER = "BOOKING_REMINDER"
    PAYMENT_REMINDER = "PAYMENT_REMINDER"
    SESSION_APPROVED = "SESSION_APPROVED"
    SESSION_BOOKED = "SESSION_BOOKED"
    SESSION_REQUEST_REJECTED = "SESSION_REQUEST_REJECTED"


# ── Mixins ────────────────────────────────────────────────────

class TimestampMixin:
    """Adds created_at and updated_at to any model."""
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=_utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False
    )


# ── Availability ──────────────────────────────────────────────

class AvailabilitySettings(TimestampMixin, Base):
    """Per-specialist slot configuration. Created lazily with defaults."""
    __tablename__ = "availability_settings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    specialist_id: Mapped[uuid.UUID] = mapped_column(Uuid, unique=True, nullable=False)
    slot_duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=60)
    break_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=15)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="Asia/Karachi")


class AvailabilityRule(TimestampMixin, Base):
    """Weekly recurring availability window, e.g. MON 09:00-17:00."""
    __tablename__ = "availability_rules"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    specialist_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    day_of_week: Mapped[DayOfWeek] = mapped_column(_enum(DayOfWeek), nullable=False)
    start_time: Mapped[str] = mapped_column(String(5), nullable=False)  # "09:00"
    end_time: Mapped[str] = mapped_column(String(5), nullable=False)    # "17:00"
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (
        Index("ix_availability_rules_specialist_day", "specialist_id", "day_of_week"),
    )


class AvailabilityOverride(TimestampMixin, Base):
    """One-off change to a single date: day off, or custom hours."""
    __tablename__ = "availability_overrides"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    specialist_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    date: Mapped[str] = mapped_column(String(10), nullable=False)  # "YYYY-MM-DD"
    type: Mapped[OverrideType] = mapped_column(_enum(OverrideType), nullable=False)
    start_time: Mapped[Optional[str]] = mapped_column(String(5), nullable=True)
    end_time: Mapped[Optional[str]] = mapped_column(String(5), nullable=True)
    reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    __table_args__ = (
        UniqueConstraint("specialist_id", "date", name="uq_availability_override_date"),
    )


# ── Booking ───────────────────────────────────────────────────

class SessionRequest(TimestampMixin, Base):
    """
    A booking attempt. Lifecycle:
    PENDING_PAYMENT → PENDING_APPROVAL → APPROVED | REJECTED
    with EXPIRED (payment deadline) and CANCELLED exits from the pending states.
    """
    __tablename__ = "session_requests"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    specialist_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)

    date: Mapped[str] = mapped_column(String(10), nullable=False)
    start_time: Mapped[str] = mapped_column(String(5), nullable=False)
    end_time: Mapped[str] = mapped_column(String(5), nullable=False)

    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="PKR")

    status: Mapped[SessionRequestStatus] = mapped_column(
        _enum(SessionRequestStatus),
        nullable=False,
        default=SessionRequestStatus.PENDING_PAYMENT,
    )
    payment_screenshot_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    approved_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    session_title: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    session_type: Mapped[Optional[SessionType]] = mapped_column(
        _enum(SessionType), nullable=True
    )

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        # The race-breaker: one live request per slot
        Index(
            "uq_session_requests_active_slot",
            "specialist_id",
            "date",
            "start_time",
            unique=True,
            postgresql_where=text("status IN ('PENDING_PAYMENT', 'PENDING_APPROVAL')"),
            sqlite_where=text("status IN ('PENDING_PAYMENT', 'PENDING_APPROVAL')"),
        ),
        Index("ix_session_requests_specialist_date", "specialist_id", "date"),
        Index("ix_session_requests_user_status", "user_id", "status"),
        Index("ix_session_requests_status_expires", "status", "expires_at"),
    )


class Session(TimestampMixin, Base):
    """
    A confirmed booking, materialized exactly once from an approved request.
    Status: CONFIRMED → COMPLETED | CANCELLED | NO_SHOW (all terminal).
    """
    __tablename__ = "sessions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    specialist_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    session_request_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("session_requests.id"), unique=True, nullable=False
    )

    date: Mapped[str] = mapped_column(String(10), nullable=False)
    start_time: Mapped[str] = mapped_column(String(5), nullable=False)
    end_time: Mapped[str] = mapped_column(String(5), nullable=False)
    starts_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="PKR")

    status: Mapped[SessionStatus] = mapped_column(
        _enum(SessionStatus), nullable=False, default=SessionStatus.CONFIRMED
    )
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    session_file: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    session_title: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    session_type: Mapped[Optional[SessionType]] = mapped_column(
        _enum(SessionType), nullable=True
    )

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        # Double-booking guard; a cancelled session releases its slot
        Index(
            "uq_sessions_slot",
            "specialist_id",
            "date",
            "start_time",
            unique=True,
            postgresql_where=text("status != 'CANCELLED'"),
            sqlite_where=text("status != 'CANCELLED'"),
        ),
        Index("ix_sessions_user_date", "user_id", "date"),
        Index("ix_sessions_specialist_date", "specialist_id", "date"),
        Index("ix_sessions_status_starts_at", "status", "starts_at"),
    )


# ── Notifications ─────────────────────────────────────────────

class DeviceToken(TimestampMixin, Base):
    """FCM registration token for one of a user's devices."""
    __tablename__ = "device_tokens"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    token: Mapped[str] = mapped_column(String(512), unique=True, nullable=False)
    platform: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    __table_args__ = (Index("ix_device_tokens_user_id", "user_id"),)


class Notification(TimestampMixin, Base):
    """In-app notification log. One row per delivery attempt."""
    __tablename__ = "notifications"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    type: Mapped[NotificationType] = mapped_column(_enum(NotificationType), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False)
    sent_push: Mapped[bool] = mapped_column(Boolean, default=False)

    __table_args__ = (Index("ix_notifications_user_id_read", "user_id", "is_read"),)
