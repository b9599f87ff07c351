"""
services/therapist/router.py
Therapist calendar: public availability, weekly schedule, session types,
and blocked dates.
"""

import logging
from datetime import date
from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from redis.exceptions import RedisError
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from config.settings import settings
from services.scheduling.booking import BookingService
from services.scheduling.dependencies import get_booking_service, invalidate_availability_cache
from shared.middleware.auth import TokenData, ensure_can_manage_therapist, require_therapist_or_staff
from shared.models.models import (
    BlockedDate,
    Booking,
    MeetingType,
    SessionType,
    Therapist,
    TherapistAvailability,
)
from shared.schemas.schemas import (
    AvailabilityResponse,
    AvailableDatesResponse,
    BlockedDateCreate,
    BlockedDateResponse,
    MessageResponse,
    ScheduleResponse,
    ScheduleUpdateRequest,
    SessionTypeCreate,
    SessionTypeResponse,
    SessionTypeUpdate,
    SlotResponse,
    TherapistResponse,
    WorkingWindowSchema,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/therapists", tags=["Therapists"])


# ── Helpers ───────────────────────────────────────────────────

async def _get_therapist_or_404(therapist_id: UUID, db: AsyncSession) -> Therapist:
    therapist = await db.get(Therapist, therapist_id)
    if not therapist:
        raise HTTPException(status_code=404, detail="Therapist not found")
    return therapist


async def _get_session_type_or_404(therapist_id: UUID, session_type_id: UUID, db: AsyncSession) -> SessionType:
    session_type = await db.get(SessionType, session_type_id)
    if not session_type or session_type.therapist_id != therapist_id:
        raise HTTPException(status_code=404, detail="Session type not found")
    return session_type


def _schedule_response(therapist: Therapist) -> ScheduleResponse:
    return ScheduleResponse(
        therapist_id=therapist.id,
        timezone=therapist.timezone,
        default_session_duration=therapist.default_session_duration,
        buffer_time=therapist.buffer_time,
        advance_booking_days=therapist.advance_booking_days,
        min_booking_notice_hours=therapist.min_booking_notice_hours,
        working_hours=[WorkingWindowSchema.model_validate(w) for w in therapist.working_hours],
    )


# ── Public Endpoints ──────────────────────────────────────────

@router.get("/{therapist_id}", response_model=TherapistResponse)
async def get_therapist(therapist_id: UUID, db: AsyncSession = Depends(get_db)):
    therapist = await _get_therapist_or_404(therapist_id, db)
    if not therapist.is_active:
        raise HTTPException(status_code=404, detail="Therapist not found")
    return therapist


@router.get("/{therapist_id}/availability", response_model=AvailabilityResponse)
async def get_availability(
    therapist_id: UUID,
    session_type_id: UUID = Query(...),
    date_from: date = Query(..., alias="from", description="YYYY-MM-DD, therapist's local date"),
    date_to: date = Query(..., alias="to", description="YYYY-MM-DD, inclusive"),
    service: BookingService = Depends(get_booking_service),
    redis=Depends(get_redis),
):
    """
    Bookable slots for a session type. Read-only; cached for
    AVAILABILITY_CACHE_TTL seconds and dropped whenever the therapist's
    bookings or schedule change.
    """
    cache = RedisCache(redis)
    cache_key = cache.availability_key(
        str(therapist_id), str(session_type_id), date_from.isoformat(), date_to.isoformat()
    )
    try:
        cached = await cache.get(cache_key)
    except RedisError as e:
        logger.warning(f"Availability cache read failed: {e}")
        cached = None
    if cached:
        return AvailabilityResponse(**cached)

    config, slots = await service.get_availability_for_dates(
        therapist_id, session_type_id, date_from, date_to
    )
    response = AvailabilityResponse(
        therapist_id=therapist_id,
        session_type_id=session_type_id,
        timezone=config.timezone,
        slots=[SlotResponse(start=s.start, end=s.end) for s in slots],
    )
    try:
        await cache.set(cache_key, response.model_dump(mode="json"), ttl=settings.AVAILABILITY_CACHE_TTL)
    except RedisError as e:
        logger.warning(f"Availability cache write failed: {e}")
    return response


@router.get("/{therapist_id}/available-dates", response_model=AvailableDatesResponse)
async def get_available_dates(
    therapist_id: UUID,
    session_type_id: UUID = Query(...),
    service: BookingService = Depends(get_booking_service),
    redis=Depends(get_redis),
):
    """Dates the booking calendar should enable, in the therapist's timezone."""
    cache = RedisCache(redis)
    cache_key = cache.availability_key(
        str(therapist_id), str(session_type_id), "dates", service.clock().date().isoformat()
    )
    try:
        cached = await cache.get(cache_key)
    except RedisError as e:
        logger.warning(f"Available dates cache read failed: {e}")
        cached = None
    if cached:
        return AvailableDatesResponse(**cached)

    config, dates = await service.get_available_dates(therapist_id, session_type_id)
    response = AvailableDatesResponse(
        therapist_id=therapist_id,
        session_type_id=session_type_id,
        timezone=config.timezone,
        dates=dates,
    )
    try:
        await cache.set(cache_key, response.model_dump(mode="json"), ttl=settings.AVAILABILITY_CACHE_TTL)
    except RedisError as e:
        logger.warning(f"Available dates cache write failed: {e}")
    return response


@router.get("/{therapist_id}/session-types", response_model=List[SessionTypeResponse])
async def list_session_types(therapist_id: UUID, db: AsyncSession = Depends(get_db)):
    """Active session types a client can book."""
    await _get_therapist_or_404(therapist_id, db)
    result = await db.execute(
        select(SessionType)
        .where(SessionType.therapist_id == therapist_id, SessionType.is_active == True)
        .order_by(SessionType.duration, SessionType.name)
    )
    return result.scalars().all()


@router.get("/{therapist_id}/schedule", response_model=ScheduleResponse)
async def get_schedule(therapist_id: UUID, db: AsyncSession = Depends(get_db)):
    therapist = await _get_therapist_or_404(therapist_id, db)
    return _schedule_response(therapist)


# ── Schedule Management ───────────────────────────────────────

@router.put("/{therapist_id}/schedule", response_model=ScheduleResponse)
async def update_schedule(
    therapist_id: UUID,
    data: ScheduleUpdateRequest,
    token_data: TokenData = Depends(require_therapist_or_staff),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """
    Replace the weekly working hours and booking rules.
    Overlapping windows on the same day are rejected by the request schema.
    Existing bookings are untouched.
    """
    ensure_can_manage_therapist(token_data, therapist_id)
    therapist = await _get_therapist_or_404(therapist_id, db)

    therapist.timezone = data.timezone
    therapist.default_session_duration = data.default_session_duration
    therapist.buffer_time = data.buffer_time
    therapist.advance_booking_days = data.advance_booking_days
    therapist.min_booking_notice_hours = data.min_booking_notice_hours
    therapist.working_hours = [
        TherapistAvailability(
            day_of_week=w.day_of_week,
            start_time=w.start_time,
            end_time=w.end_time,
            is_active=w.is_active,
        )
        for w in data.working_hours
    ]
    await db.commit()
    await invalidate_availability_cache(redis, therapist_id)
    logger.info(f"Schedule updated for therapist {therapist_id} by {token_data.actor}")
    return _schedule_response(therapist)


# ── Session Types ─────────────────────────────────────────────

@router.post(
    "/{therapist_id}/session-types",
    response_model=SessionTypeResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_session_type(
    therapist_id: UUID,
    data: SessionTypeCreate,
    token_data: TokenData = Depends(require_therapist_or_staff),
    db: AsyncSession = Depends(get_db),
):
    ensure_can_manage_therapist(token_data, therapist_id)
    await _get_therapist_or_404(therapist_id, db)

    session_type = SessionType(
        therapist_id=therapist_id,
        **data.model_dump(exclude={"meeting_type"}),
        meeting_type=MeetingType(data.meeting_type),
    )
    db.add(session_type)
    await db.commit()
    return session_type


@router.patch("/{therapist_id}/session-types/{session_type_id}", response_model=SessionTypeResponse)
async def update_session_type(
    therapist_id: UUID,
    session_type_id: UUID,
    data: SessionTypeUpdate,
    token_data: TokenData = Depends(require_therapist_or_staff),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """
    Update a session type. Duration and meeting type are frozen once any
    booking references it; create a new session type instead.
    """
    ensure_can_manage_therapist(token_data, therapist_id)
    session_type = await _get_session_type_or_404(therapist_id, session_type_id, db)
    changes = data.model_dump(exclude_unset=True)

    frozen = {
        field for field in ("duration", "meeting_type")
        if field in changes and changes[field] != getattr(session_type, field)
    }
    if frozen:
        referenced = await db.scalar(
            select(func.count(Booking.id)).where(Booking.session_type_id == session_type.id)
        )
        if referenced:
            raise HTTPException(
                status_code=409,
                detail=f"Cannot change {', '.join(sorted(frozen))} of a session type that has bookings",
            )

    if "meeting_type" in changes and changes["meeting_type"] is not None:
        changes["meeting_type"] = MeetingType(changes["meeting_type"])
    for field, value in changes.items():
        setattr(session_type, field, value)

    await db.commit()
    await invalidate_availability_cache(redis, therapist_id)
    return session_type


@router.delete("/{therapist_id}/session-types/{session_type_id}", response_model=MessageResponse)
async def delete_session_type(
    therapist_id: UUID,
    session_type_id: UUID,
    token_data: TokenData = Depends(require_therapist_or_staff),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Delete a session type. Existing bookings keep their times and lose the reference."""
    ensure_can_manage_therapist(token_data, therapist_id)
    session_type = await _get_session_type_or_404(therapist_id, session_type_id, db)

    await db.execute(
        update(Booking)
        .where(Booking.session_type_id == session_type.id)
        .values(session_type_id=None)
    )
    await db.delete(session_type)
    await db.commit()
    await invalidate_availability_cache(redis, therapist_id)
    return MessageResponse(message="Session type deleted")


# ── Blocked Dates ─────────────────────────────────────────────

@router.get("/{therapist_id}/blocked-dates", response_model=List[BlockedDateResponse])
async def list_blocked_dates(
    therapist_id: UUID,
    token_data: TokenData = Depends(require_therapist_or_staff),
    db: AsyncSession = Depends(get_db),
):
    ensure_can_manage_therapist(token_data, therapist_id)
    result = await db.execute(
        select(BlockedDate)
        .where(BlockedDate.therapist_id == therapist_id)
        .order_by(BlockedDate.start_datetime)
    )
    return result.scalars().all()


@router.post(
    "/{therapist_id}/blocked-dates",
    response_model=BlockedDateResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_blocked_date(
    therapist_id: UUID,
    data: BlockedDateCreate,
    token_data: TokenData = Depends(require_therapist_or_staff),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Block time off. Bookings already inside the period are not cancelled."""
    ensure_can_manage_therapist(token_data, therapist_id)
    await _get_therapist_or_404(therapist_id, db)

    blocked = BlockedDate(therapist_id=therapist_id, **data.model_dump())
    db.add(blocked)
    await db.commit()
    await invalidate_availability_cache(redis, therapist_id)
    return blocked


@router.delete("/{therapist_id}/blocked-dates/{blocked_date_id}", response_model=MessageResponse)
async def delete_blocked_date(
    therapist_id: UUID,
    blocked_date_id: UUID,
    token_data: TokenData = Depends(require_therapist_or_staff),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    ensure_can_manage_therapist(token_data, therapist_id)
    blocked = await db.get(BlockedDate, blocked_date_id)
    if not blocked or blocked.therapist_id != therapist_id:
        raise HTTPException(status_code=404, detail="Blocked date not found")

    await db.delete(blocked)
    await db.commit()
    await invalidate_availability_cache(redis, therapist_id)
    return MessageResponse(message="Blocked date removed")
