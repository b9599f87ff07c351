"""
services/booking/router.py
Booking lifecycle over HTTP.
States: PENDING → CONFIRMED | CANCELLED
        CONFIRMED → CANCELLED | COMPLETED | NO_SHOW

Scheduling rules live in services/scheduling/booking.py; this module only
handles access control and response shaping. Rejections from the core are
SchedulingError subclasses rendered by the handler in main.py.
"""

import math
from datetime import date
from typing import Optional
from uuid import UUID
from zoneinfo import ZoneInfo

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import get_redis
from config.settings import settings
from services.calendar.ics import build_booking_ics
from services.scheduling.booking import BookingOutcome, BookingRequest, BookingService
from services.scheduling.calendar import day_bounds
from services.scheduling.dependencies import get_booking_service, invalidate_availability_cache
from shared.middleware.auth import (
    TokenData,
    get_optional_principal,
    require_therapist_or_staff,
)
from shared.models.models import Booking, BookingStatus, SessionType, Therapist, UserRole
from shared.schemas.schemas import (
    BookingCancelRequest,
    BookingCreateRequest,
    BookingCreateResponse,
    BookingRescheduleRequest,
    BookingResponse,
    BookingStatusUpdateRequest,
    PaginatedResponse,
    StaffBookingResponse,
)

router = APIRouter(prefix="/bookings", tags=["Bookings"])


# ── Helpers ───────────────────────────────────────────────────

def _authorize_booking_access(
    booking: Booking,
    principal: Optional[TokenData],
    booking_email: Optional[str],
) -> None:
    """
    Signed-in staff, the booking's therapist and the booking's client may act
    on it. Anonymous callers must supply the email the booking was made with.
    """
    if principal is not None:
        if principal.can_manage_therapist(booking.therapist_id):
            return
        if principal.role == UserRole.CLIENT and (
            str(booking.client_id) == principal.user_id
            or principal.email.lower() == booking.client_email.lower()
        ):
            return
        raise HTTPException(status_code=403, detail="Not authorized for this booking")

    if not booking_email:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required or provide the booking email",
        )
    if booking_email.strip().lower() != booking.client_email.lower():
        raise HTTPException(status_code=403, detail="Email does not match booking")


def _actor(principal: Optional[TokenData], booking: Booking) -> str:
    return principal.actor if principal else f"client:{booking.client_email}"


def _create_response(outcome: BookingOutcome) -> BookingCreateResponse:
    booking = outcome.booking
    return BookingCreateResponse(
        booking_reference=booking.booking_reference,
        status=BookingStatus(booking.status).value,
        start_datetime=booking.start_datetime,
        end_datetime=booking.end_datetime,
        meeting_link=booking.meeting_link,
        notifications_delayed=outcome.notifications_delayed,
        message=outcome.message,
    )


async def _get_booking_by_id_or_404(booking_id: UUID, db: AsyncSession) -> Booking:
    booking = await db.get(Booking, booking_id)
    if not booking:
        raise HTTPException(status_code=404, detail="Booking not found")
    return booking


# ── Booking Creation ──────────────────────────────────────────

@router.post("", response_model=BookingCreateResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    data: BookingCreateRequest,
    principal: Optional[TokenData] = Depends(get_optional_principal),
    service: BookingService = Depends(get_booking_service),
    redis=Depends(get_redis),
):
    """
    Book a slot returned by GET /therapists/{id}/availability.

    409 `slot_no_longer_available` (retryable) means the slot was taken in the
    meantime: re-fetch availability and resubmit. A successful response with
    `notifications_delayed` means the booking is stored but the confirmation
    email could not be queued yet.
    """
    client_id = None
    if principal is not None and principal.role == UserRole.CLIENT:
        client_id = UUID(principal.user_id)

    outcome = await service.create_booking(
        BookingRequest(
            therapist_id=data.therapist_id,
            session_type_id=data.session_type_id,
            client_name=data.client_name,
            client_email=str(data.client_email),
            client_phone=data.client_phone,
            client_notes=data.client_notes,
            start_datetime=data.start_datetime,
            end_datetime=data.end_datetime,
            timezone=data.timezone,
            client_id=client_id,
            created_by=principal.actor if principal else "public",
        )
    )
    await invalidate_availability_cache(redis, data.therapist_id)
    return _create_response(outcome)


# ── Staff Listing ─────────────────────────────────────────────

@router.get("", response_model=PaginatedResponse)
async def list_bookings(
    therapist_id: Optional[UUID] = Query(None),
    booking_status: Optional[BookingStatus] = Query(None, alias="status"),
    date_from: Optional[date] = Query(None, alias="from"),
    date_to: Optional[date] = Query(None, alias="to"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    token_data: TokenData = Depends(require_therapist_or_staff),
    db: AsyncSession = Depends(get_db),
):
    """Bookings for the schedule views. Therapists only see their own."""
    if token_data.role == UserRole.THERAPIST:
        if therapist_id and str(therapist_id) != token_data.therapist_id:
            raise HTTPException(status_code=403, detail="You can only view your own bookings")
        if not token_data.therapist_id:
            raise HTTPException(status_code=403, detail="Token is not linked to a therapist")
        therapist_id = UUID(token_data.therapist_id)

    tz = ZoneInfo(settings.DEFAULT_TIMEZONE)
    if therapist_id:
        therapist = await db.get(Therapist, therapist_id)
        if therapist:
            tz = ZoneInfo(therapist.timezone)

    query = select(Booking)
    if therapist_id:
        query = query.where(Booking.therapist_id == therapist_id)
    if booking_status:
        query = query.where(Booking.status == booking_status)
    if date_from:
        query = query.where(Booking.start_datetime >= day_bounds(date_from, tz)[0])
    if date_to:
        query = query.where(Booking.start_datetime < day_bounds(date_to, tz)[1])

    total = await db.scalar(select(func.count()).select_from(query.subquery()))
    result = await db.execute(
        query.order_by(Booking.start_datetime)
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return PaginatedResponse(
        items=[StaffBookingResponse.model_validate(b) for b in result.scalars().all()],
        total=total,
        page=page,
        page_size=page_size,
        pages=math.ceil(total / page_size) if total else 0,
    )


# ── Lookup by Reference ───────────────────────────────────────

@router.get("/{reference}", response_model=BookingResponse)
async def get_booking(
    reference: str,
    email: Optional[str] = Query(None, description="Booking email, when not signed in"),
    principal: Optional[TokenData] = Depends(get_optional_principal),
    service: BookingService = Depends(get_booking_service),
):
    booking = await service.get_booking(reference)
    _authorize_booking_access(booking, principal, email)
    return booking


@router.get("/{reference}/ics")
async def download_booking_ics(
    reference: str,
    email: Optional[str] = Query(None),
    principal: Optional[TokenData] = Depends(get_optional_principal),
    service: BookingService = Depends(get_booking_service),
    db: AsyncSession = Depends(get_db),
):
    """Calendar invite for the booking (text/calendar)."""
    booking = await service.get_booking(reference)
    _authorize_booking_access(booking, principal, email)

    therapist = await db.get(Therapist, booking.therapist_id)
    session_type = await db.get(SessionType, booking.session_type_id) if booking.session_type_id else None
    content = build_booking_ics(
        booking,
        therapist.name if therapist else "Therapist",
        therapist.email if therapist else settings.EMAIL_FROM,
        session_type.name if session_type else None,
        cancelled=BookingStatus(booking.status) == BookingStatus.CANCELLED,
    )
    return Response(
        content=content,
        media_type="text/calendar; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="booking-{booking.booking_reference}.ics"'},
    )


# ── Reschedule & Cancel ───────────────────────────────────────

@router.patch("/{reference}", response_model=BookingCreateResponse)
async def reschedule_booking(
    reference: str,
    data: BookingRescheduleRequest,
    principal: Optional[TokenData] = Depends(get_optional_principal),
    service: BookingService = Depends(get_booking_service),
    redis=Depends(get_redis),
):
    """Move an active booking to another free slot of the same length."""
    booking = await service.get_booking(reference)
    _authorize_booking_access(booking, principal, data.booking_email)

    outcome = await service.reschedule_booking(
        booking.booking_reference,
        data.start_datetime,
        data.end_datetime,
        changed_by=_actor(principal, booking),
    )
    await invalidate_availability_cache(redis, outcome.booking.therapist_id)
    return _create_response(outcome)


@router.post("/{reference}/cancel", response_model=BookingCreateResponse)
async def cancel_booking(
    reference: str,
    data: BookingCancelRequest,
    principal: Optional[TokenData] = Depends(get_optional_principal),
    service: BookingService = Depends(get_booking_service),
    redis=Depends(get_redis),
):
    """Cancel a booking. The slot becomes bookable again immediately."""
    booking = await service.get_booking(reference)
    _authorize_booking_access(booking, principal, data.booking_email)

    outcome = await service.change_status(
        booking.booking_reference,
        BookingStatus.CANCELLED,
        changed_by=_actor(principal, booking),
        reason=data.reason or "No reason provided",
    )
    await invalidate_availability_cache(redis, outcome.booking.therapist_id)
    return _create_response(outcome)


# ── Therapist / Staff Status Updates ──────────────────────────

@router.patch("/{booking_id}/status", response_model=StaffBookingResponse)
async def update_booking_status(
    booking_id: UUID,
    data: BookingStatusUpdateRequest,
    token_data: TokenData = Depends(require_therapist_or_staff),
    service: BookingService = Depends(get_booking_service),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Mark a session completed / no-show, confirm a pending one, or cancel it."""
    booking = await _get_booking_by_id_or_404(booking_id, db)
    if not token_data.can_manage_therapist(booking.therapist_id):
        raise HTTPException(status_code=403, detail="Not authorized for this booking")

    if data.internal_notes is not None:
        booking.internal_notes = data.internal_notes

    outcome = await service.change_status(
        booking.booking_reference,
        BookingStatus(data.status),
        changed_by=token_data.actor,
        reason=data.reason,
    )
    await invalidate_availability_cache(redis, booking.therapist_id)
    return outcome.booking
