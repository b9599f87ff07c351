"""
shared/schemas/schemas.py
All Pydantic v2 request/response schemas for the scheduling API.
Timestamps must carry an offset; naive values are rejected with a 422.
"""

import uuid
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import AwareDatetime, BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

from services.scheduling.calendar import windows_overlap
from shared.models.models import BookingStatus, MeetingType


# ── Base ──────────────────────────────────────────────────────

class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class PaginatedResponse(BaseSchema):
    items: List[Any]
    total: int
    page: int
    page_size: int
    pages: int


def _validate_timezone(value: str) -> str:
    try:
        ZoneInfo(value)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValueError(f"Unknown timezone: {value}")
    return value


# ── Therapist Schedule ────────────────────────────────────────

class WorkingWindowSchema(BaseSchema):
    day_of_week: int = Field(..., ge=0, le=6)  # 0 = Monday
    start_time: time
    end_time: time
    is_active: bool = True

    @model_validator(mode="after")
    def validate_order(self):
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self


class ScheduleUpdateRequest(BaseSchema):
    timezone: str = Field(..., max_length=50)
    default_session_duration: int = Field(..., gt=0, le=480)
    buffer_time: int = Field(..., ge=0, le=240)
    advance_booking_days: int = Field(..., ge=1, le=365)
    min_booking_notice_hours: int = Field(..., ge=0, le=24 * 30)
    working_hours: List[WorkingWindowSchema] = Field(default_factory=list, max_length=70)

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        return _validate_timezone(v)

    @model_validator(mode="after")
    def validate_no_overlap(self):
        active = [
            (w.day_of_week, w.start_time, w.end_time)
            for w in self.working_hours
            if w.is_active
        ]
        if windows_overlap(active):
            raise ValueError("Working-hour windows on the same day must not overlap")
        return self


class ScheduleResponse(BaseSchema):
    therapist_id: uuid.UUID
    timezone: str
    default_session_duration: int
    buffer_time: int
    advance_booking_days: int
    min_booking_notice_hours: int
    working_hours: List[WorkingWindowSchema]


class TherapistResponse(BaseSchema):
    id: uuid.UUID
    slug: str
    name: str
    timezone: str
    default_session_duration: int
    buffer_time: int
    is_active: bool


# ── Session Types ─────────────────────────────────────────────

class SessionTypeCreate(BaseSchema):
    name: str = Field(..., min_length=2, max_length=255)
    duration: int = Field(..., gt=0, le=480)
    meeting_type: MeetingType
    price: Optional[Decimal] = Field(None, ge=0)
    description: Optional[str] = Field(None, max_length=2000)
    is_active: bool = True
    color: str = Field("#00A99D", pattern=r"^#[0-9A-Fa-f]{6}$")


class SessionTypeUpdate(BaseSchema):
    name: Optional[str] = Field(None, min_length=2, max_length=255)
    duration: Optional[int] = Field(None, gt=0, le=480)
    meeting_type: Optional[MeetingType] = None
    price: Optional[Decimal] = Field(None, ge=0)
    description: Optional[str] = Field(None, max_length=2000)
    is_active: Optional[bool] = None
    color: Optional[str] = Field(None, pattern=r"^#[0-9A-Fa-f]{6}$")


class SessionTypeResponse(BaseSchema):
    id: uuid.UUID
    therapist_id: uuid.UUID
    name: str
    duration: int
    meeting_type: str
    price: Optional[Decimal]
    description: Optional[str]
    is_active: bool
    color: str


# ── Blocked Dates ─────────────────────────────────────────────

class BlockedDateCreate(BaseSchema):
    start_datetime: AwareDatetime
    end_datetime: AwareDatetime
    reason: Optional[str] = Field(None, max_length=255)
    is_all_day: bool = False

    @model_validator(mode="after")
    def validate_order(self):
        if self.end_datetime <= self.start_datetime:
            raise ValueError("end_datetime must be after start_datetime")
        return self


class BlockedDateResponse(BaseSchema):
    id: uuid.UUID
    therapist_id: uuid.UUID
    start_datetime: datetime
    end_datetime: datetime
    reason: Optional[str]
    is_all_day: bool


# ── Availability ──────────────────────────────────────────────

class SlotResponse(BaseSchema):
    start: datetime
    end: datetime


class AvailabilityResponse(BaseSchema):
    therapist_id: uuid.UUID
    session_type_id: uuid.UUID
    timezone: str
    slots: List[SlotResponse]


class AvailableDatesResponse(BaseSchema):
    therapist_id: uuid.UUID
    session_type_id: uuid.UUID
    timezone: str
    dates: List[date]


# ── Bookings ──────────────────────────────────────────────────

class BookingCreateRequest(BaseSchema):
    therapist_id: uuid.UUID
    session_type_id: uuid.UUID
    client_name: str = Field(..., min_length=2, max_length=255)
    client_email: EmailStr
    client_phone: Optional[str] = Field(None, pattern=r"^\+?[0-9][0-9 \-]{6,19}$")
    client_notes: Optional[str] = Field(None, max_length=2000)
    start_datetime: AwareDatetime
    end_datetime: AwareDatetime
    timezone: Optional[str] = Field(None, max_length=50)

    @field_validator("start_datetime")
    @classmethod
    def validate_start_datetime(cls, v: datetime) -> datetime:
        from datetime import timezone
        now = datetime.now(timezone.utc)
        if v <= now:
            raise ValueError("Start time must be in the future")
        return v

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: Optional[str]) -> Optional[str]:
        return _validate_timezone(v) if v else v


class BookingCreateResponse(BaseSchema):
    booking_reference: str
    status: str
    start_datetime: datetime
    end_datetime: datetime
    meeting_link: Optional[str] = None
    notifications_delayed: bool = False
    message: Optional[str] = None


class BookingResponse(BaseSchema):
    id: uuid.UUID
    booking_reference: str
    therapist_id: uuid.UUID
    session_type_id: Optional[uuid.UUID]
    client_id: Optional[uuid.UUID]
    client_name: str
    client_email: str
    client_phone: Optional[str]
    client_notes: Optional[str]
    start_datetime: datetime
    end_datetime: datetime
    timezone: str
    status: str
    meeting_type: str
    meeting_link: Optional[str]
    meeting_location: Optional[str]
    cancellation_reason: Optional[str]
    cancelled_by: Optional[str]
    cancelled_at: Optional[datetime]
    reminder_sent_at: Optional[datetime]
    created_by: Optional[str]
    created_at: datetime


class StaffBookingResponse(BookingResponse):
    internal_notes: Optional[str]


class BookingRescheduleRequest(BaseSchema):
    start_datetime: AwareDatetime
    end_datetime: AwareDatetime
    booking_email: Optional[EmailStr] = None  # proves ownership when not signed in


class BookingCancelRequest(BaseSchema):
    reason: Optional[str] = Field(None, max_length=1000)
    booking_email: Optional[EmailStr] = None


class BookingStatusUpdateRequest(BaseSchema):
    status: BookingStatus
    reason: Optional[str] = Field(None, max_length=1000)
    internal_notes: Optional[str] = Field(None, max_length=2000)


# ── Common ────────────────────────────────────────────────────

class MessageResponse(BaseSchema):
    message: str
    success: bool = True


class ErrorResponse(BaseSchema):
    detail: str
    code: Optional[str] = None
    retryable: bool = False
