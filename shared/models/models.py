"""
shared/models/models.py
All SQLAlchemy ORM models for the scheduling service.
UUID primary keys throughout; every instant is stored as UTC.
"""

import uuid
from datetime import datetime, time, timezone
from decimal import Decimal
from enum import Enum as PyEnum
from typing import List, Optional

from sqlalchemy import (
    DDL,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    SmallInteger,
    String,
    Text,
    Time,
    TypeDecorator,
    Uuid,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from config.database import Base
from config.settings import settings


# ── Enumerations ──────────────────────────────────────────────

class UserRole(str, PyEnum):
    CLIENT = "client"
    THERAPIST = "therapist"
    RECEPTION = "reception"
    ADMIN = "admin"


class MeetingType(str, PyEnum):
    IN_PERSON = "in_person"
    VIDEO = "video"
    PHONE = "phone"


class BookingStatus(str, PyEnum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    NO_SHOW = "no_show"


# Statuses that occupy the therapist's calendar
ACTIVE_BOOKING_STATUSES = (BookingStatus.PENDING, BookingStatus.CONFIRMED)


def _enum_values(enum_cls) -> List[str]:
    return [member.value for member in enum_cls]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


meeting_type_enum = Enum(MeetingType, values_callable=_enum_values, name="meeting_type")


# ── Column Types ──────────────────────────────────────────────

class UTCDateTime(TypeDecorator):
    """
    Timezone-aware datetime stored as UTC.
    Rejects naive values on write; always returns aware UTC values on read
    (SQLite drops the offset, PostgreSQL keeps it).
    """
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("Naive datetimes are not accepted; attach a timezone")
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


# ── Mixins ────────────────────────────────────────────────────

class TimestampMixin:
    """Adds created_at and updated_at to any model."""
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


# ── Models ────────────────────────────────────────────────────

class Therapist(TimestampMixin, Base):
    """
    Therapist profile reduced to what scheduling needs.
    Holds the schedule configuration consumed by the availability engine.
    """
    __tablename__ = "therapists"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    slug: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    timezone: Mapped[str] = mapped_column(
        String(50), nullable=False, default=settings.DEFAULT_TIMEZONE
    )

    # Schedule configuration
    default_session_duration: Mapped[int] = mapped_column(
        Integer, nullable=False, default=settings.DEFAULT_SESSION_DURATION
    )
    buffer_time: Mapped[int] = mapped_column(
        Integer, nullable=False, default=settings.DEFAULT_BUFFER_TIME
    )  # minutes blocked after each session
    advance_booking_days: Mapped[int] = mapped_column(
        Integer, nullable=False, default=settings.DEFAULT_ADVANCE_BOOKING_DAYS
    )
    min_booking_notice_hours: Mapped[int] = mapped_column(
        Integer, nullable=False, default=settings.DEFAULT_MIN_BOOKING_NOTICE_HOURS
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    working_hours: Mapped[List["TherapistAvailability"]] = relationship(
        back_populates="therapist",
        lazy="selectin",
        cascade="all, delete-orphan",
        order_by=lambda: [TherapistAvailability.day_of_week, TherapistAvailability.start_time],
    )

    __table_args__ = (
        CheckConstraint("buffer_time >= 0", name="ck_therapist_buffer_non_negative"),
        CheckConstraint("default_session_duration > 0", name="ck_therapist_duration_positive"),
    )

    def __repr__(self) -> str:
        return f"<Therapist {self.slug}>"


class TherapistAvailability(Base):
    """
    Recurring weekly working-hour window, in the therapist's timezone.
    day_of_week follows datetime.weekday(): 0 = Monday ... 6 = Sunday.
    """
    __tablename__ = "therapist_availability"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    therapist_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("therapists.id", ondelete="CASCADE"), nullable=False
    )
    day_of_week: Mapped[int] = mapped_column(SmallInteger, nullable=False)
    start_time: Mapped[time] = mapped_column(Time, nullable=False)
    end_time: Mapped[time] = mapped_column(Time, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    therapist: Mapped["Therapist"] = relationship(back_populates="working_hours")

    __table_args__ = (
        CheckConstraint("day_of_week BETWEEN 0 AND 6", name="ck_availability_day_of_week"),
        CheckConstraint("end_time > start_time", name="ck_availability_window_order"),
        Index("ix_availability_therapist_day", "therapist_id", "day_of_week"),
    )


class BlockedDate(Base):
    """Holiday or ad-hoc block. All-day blocks remove the whole local day."""
    __tablename__ = "blocked_dates"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    therapist_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("therapists.id", ondelete="CASCADE"), nullable=False
    )
    start_datetime: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    end_datetime: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    is_all_day: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("end_datetime > start_datetime", name="ck_blocked_date_order"),
        Index("ix_blocked_dates_therapist_start", "therapist_id", "start_datetime"),
    )


class SessionType(TimestampMixin, Base):
    """
    A bookable session offered by one therapist.
    duration and meeting_type are frozen once a booking references the row.
    """
    __tablename__ = "session_types"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    therapist_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("therapists.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    duration: Mapped[int] = mapped_column(Integer, nullable=False)  # minutes
    meeting_type: Mapped[MeetingType] = mapped_column(meeting_type_enum, nullable=False)
    price: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    color: Mapped[str] = mapped_column(String(7), default="#00A99D", nullable=False)

    __table_args__ = (
        CheckConstraint("duration > 0", name="ck_session_type_duration_positive"),
        Index("ix_session_types_therapist_id", "therapist_id"),
    )


class Booking(TimestampMixin, Base):
    """
    Core booking entity. Never deleted; cancellation is a status change.
    Status transitions: PENDING → CONFIRMED | CANCELLED;
    CONFIRMED → CANCELLED | COMPLETED | NO_SHOW.
    """
    __tablename__ = "bookings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_reference: Mapped[str] = mapped_column(String(50), nullable=False)
    therapist_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("therapists.id"), nullable=False
    )
    session_type_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("session_types.id", ondelete="SET NULL"), nullable=True
    )
    client_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)

    # Client details
    client_name: Mapped[str] = mapped_column(String(255), nullable=False)
    client_email: Mapped[str] = mapped_column(String(255), nullable=False)
    client_phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    client_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Schedule
    start_datetime: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    end_datetime: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    blocked_until: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    # end_datetime + therapist buffer at write time
    timezone: Mapped[str] = mapped_column(
        String(50), nullable=False, default=settings.DEFAULT_TIMEZONE
    )  # display only

    # Status
    status: Mapped[BookingStatus] = mapped_column(
        Enum(BookingStatus, values_callable=_enum_values, name="booking_status"),
        nullable=False,
        default=BookingStatus.CONFIRMED,
    )
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cancelled_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    # Meeting
    meeting_type: Mapped[MeetingType] = mapped_column(meeting_type_enum, nullable=False)
    meeting_link: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    meeting_location: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    internal_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    reminder_sent_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    created_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    audit_logs: Mapped[List["BookingAuditLog"]] = relationship(
        back_populates="booking", lazy="raise"
    )

    __table_args__ = (
        CheckConstraint("end_datetime > start_datetime", name="ck_booking_time_order"),
        CheckConstraint("blocked_until >= end_datetime", name="ck_booking_blocked_until"),
        Index("uq_bookings_booking_reference", "booking_reference", unique=True),
        Index("ix_bookings_therapist_start", "therapist_id", "start_datetime"),
        Index("ix_bookings_status", "status"),
        Index("ix_bookings_client_email", "client_email"),
    )


# PostgreSQL backs the no-overlap rule with an exclusion constraint over
# the buffered interval of active bookings. Other dialects rely on the
# row-locked re-check in the storage layer.
event.listen(
    Booking.__table__,
    "after_create",
    DDL(
        "ALTER TABLE bookings ADD CONSTRAINT ex_bookings_therapist_no_overlap "
        "EXCLUDE USING gist ("
        "therapist_id WITH =, "
        "tstzrange(start_datetime, blocked_until, '[)') WITH &&"
        ") WHERE (status IN ('pending', 'confirmed'))"
    ).execute_if(dialect="postgresql"),
)


class BookingAuditLog(Base):
    """Immutable log of all booking status transitions."""
    __tablename__ = "booking_audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id"), nullable=False
    )
    from_status: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    to_status: Mapped[str] = mapped_column(String(30), nullable=False)
    changed_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    booking: Mapped["Booking"] = relationship(back_populates="audit_logs")

    __table_args__ = (Index("ix_booking_audit_logs_booking_id", "booking_id"),)
