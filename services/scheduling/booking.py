"""
services/scheduling/booking.py
Booking transaction and lifecycle.

States: PENDING → CONFIRMED | CANCELLED
        CONFIRMED → CANCELLED | COMPLETED | NO_SHOW
CANCELLED, COMPLETED and NO_SHOW are terminal.

create_booking order of operations:
  validate → race guard → allocate reference → meeting link (video only)
  → persist (single durability point) → notifications (best effort)
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Callable, List, Optional, Tuple
from uuid import UUID

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt

from config.settings import settings
from services.scheduling.availability import (
    AvailableSlots,
    ScheduleConfig,
    compute_available_slots,
    is_slot_free,
)
from services.scheduling.calendar import day_bounds
from services.scheduling.errors import (
    ConstraintViolation,
    InvalidRequest,
    InvalidTransition,
    NotFound,
    PersistenceError,
    ReferenceCollision,
    SlotNoLongerAvailable,
)
from services.scheduling.ports import BookingStorage, MeetingLinkProvider, NotificationDispatcher
from services.scheduling.reference import generate_reference, normalize_reference
from shared.models.models import (
    ACTIVE_BOOKING_STATUSES,
    Booking,
    BookingStatus,
    MeetingType,
    SessionType,
    Therapist,
    utcnow,
)

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS = {
    BookingStatus.PENDING: {BookingStatus.CONFIRMED, BookingStatus.CANCELLED},
    BookingStatus.CONFIRMED: {BookingStatus.CANCELLED, BookingStatus.COMPLETED, BookingStatus.NO_SHOW},
    BookingStatus.CANCELLED: set(),
    BookingStatus.COMPLETED: set(),
    BookingStatus.NO_SHOW: set(),
}

NOTIFICATION_RECIPIENTS = ("client", "therapist")
NOTIFICATIONS_DELAYED_MESSAGE = "Your booking is confirmed. The confirmation email may be delayed."


def can_transition(current: BookingStatus, target: BookingStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[BookingStatus(current)]


# ── Contracts ─────────────────────────────────────────────────

@dataclass
class BookingRequest:
    therapist_id: UUID
    session_type_id: UUID
    client_name: str
    client_email: str
    start_datetime: datetime
    end_datetime: datetime
    client_phone: Optional[str] = None
    client_notes: Optional[str] = None
    client_id: Optional[UUID] = None
    timezone: Optional[str] = None
    created_by: Optional[str] = None
    status: BookingStatus = BookingStatus.CONFIRMED


@dataclass
class BookingOutcome:
    booking: Booking
    notifications_delayed: bool = False

    @property
    def message(self) -> Optional[str]:
        return NOTIFICATIONS_DELAYED_MESSAGE if self.notifications_delayed else None


def _require_aware(value: datetime, name: str) -> None:
    if value.tzinfo is None or value.utcoffset() is None:
        raise InvalidRequest(f"{name} must include a timezone offset")


def _validate_interval(start: datetime, end: datetime) -> None:
    _require_aware(start, "start_datetime")
    _require_aware(end, "end_datetime")
    if end <= start:
        raise InvalidRequest("end_datetime must be after start_datetime")


# ── Service ───────────────────────────────────────────────────

class BookingService:
    """Scheduling core. One instance per request/unit of work."""

    def __init__(
        self,
        storage: BookingStorage,
        meeting_links: MeetingLinkProvider,
        notifications: NotificationDispatcher,
        clock: Callable[[], datetime] = utcnow,
        reference_factory: Callable[[], str] = generate_reference,
        max_reference_attempts: int = settings.BOOKING_REFERENCE_MAX_ATTEMPTS,
    ):
        self.storage = storage
        self.meeting_links = meeting_links
        self.notifications = notifications
        self.clock = clock
        self.reference_factory = reference_factory
        self.max_reference_attempts = max_reference_attempts

    # ── Lookups ───────────────────────────────────────────────

    async def _get_therapist_or_404(self, therapist_id: UUID) -> Therapist:
        therapist = await self.storage.find_therapist(therapist_id)
        if not therapist or not therapist.is_active:
            raise NotFound("Therapist not found")
        return therapist

    async def _get_session_type(self, therapist_id: UUID, session_type_id: UUID) -> SessionType:
        session_type = await self.storage.find_session_type(session_type_id)
        if not session_type or str(session_type.therapist_id) != str(therapist_id):
            raise NotFound("Session type not found")
        if not session_type.is_active:
            raise InvalidRequest("Session type is not currently offered")
        return session_type

    async def get_booking(self, reference: str) -> Booking:
        booking = await self.storage.find_booking(normalize_reference(reference))
        if not booking:
            raise NotFound("Booking not found")
        return booking

    # ── Availability ──────────────────────────────────────────

    async def get_availability(
        self,
        therapist_id: UUID,
        session_type_id: UUID,
        range_start: datetime,
        range_end: datetime,
    ) -> AvailableSlots:
        """Free slots for a session type. Read-only."""
        _validate_interval(range_start, range_end)
        config = await self.storage.find_therapist_config(therapist_id)
        if config is None:
            raise NotFound("Therapist not found")
        session_type = await self._get_session_type(therapist_id, session_type_id)

        buffer = timedelta(minutes=config.buffer_time)
        bookings = await self.storage.find_bookings_for_therapist(
            therapist_id, range_start - buffer, range_end + buffer, ACTIVE_BOOKING_STATUSES
        )
        blocked = await self.storage.find_blocked_dates(therapist_id, range_start, range_end)
        return compute_available_slots(
            config, session_type, bookings, range_start, range_end, self.clock(), blocked
        )

    async def get_availability_for_dates(
        self,
        therapist_id: UUID,
        session_type_id: UUID,
        first_day: date,
        last_day: date,
    ) -> Tuple[ScheduleConfig, AvailableSlots]:
        """Slots on local calendar days first_day..last_day (inclusive) in the therapist's timezone."""
        if last_day < first_day:
            raise InvalidRequest("'to' must not be before 'from'")
        if (last_day - first_day).days + 1 > settings.MAX_AVAILABILITY_RANGE_DAYS:
            raise InvalidRequest(
                f"Availability can be requested for at most {settings.MAX_AVAILABILITY_RANGE_DAYS} days"
            )
        config = await self.storage.find_therapist_config(therapist_id)
        if config is None:
            raise NotFound("Therapist not found")
        range_start, _ = day_bounds(first_day, config.tz)
        _, range_end = day_bounds(last_day, config.tz)
        slots = await self.get_availability(therapist_id, session_type_id, range_start, range_end)
        return config, slots

    async def get_available_dates(
        self, therapist_id: UUID, session_type_id: UUID
    ) -> Tuple[ScheduleConfig, List[date]]:
        """Local dates between the booking notice and the booking horizon that still have a free slot."""
        config = await self.storage.find_therapist_config(therapist_id)
        if config is None:
            raise NotFound("Therapist not found")
        now = self.clock()
        first_day = (now + timedelta(hours=config.min_booking_notice_hours)).astimezone(config.tz).date()
        last_day = (now + timedelta(days=config.advance_booking_days)).astimezone(config.tz).date()
        if last_day < first_day:
            return config, []
        range_start, _ = day_bounds(first_day, config.tz)
        _, range_end = day_bounds(last_day, config.tz)
        slots = await self.get_availability(therapist_id, session_type_id, range_start, range_end)
        return config, slots.available_dates()

    async def _assert_slot_free(
        self,
        therapist_id: UUID,
        start: datetime,
        end: datetime,
        buffer_minutes: int,
        exclude_id: Optional[UUID] = None,
    ) -> None:
        """Race guard: re-check the requested interval against current bookings."""
        buffer = timedelta(minutes=buffer_minutes)
        current = await self.storage.find_bookings_for_therapist(
            therapist_id, start - buffer, end + buffer, ACTIVE_BOOKING_STATUSES
        )
        current = [b for b in current if b.id != exclude_id]
        if not is_slot_free(start, end, current, buffer_minutes):
            raise SlotNoLongerAvailable(
                "This time slot is no longer available. Please refresh availability and choose another slot."
            )

    # ── Create ────────────────────────────────────────────────

    async def create_booking(self, request: BookingRequest) -> BookingOutcome:
        _validate_interval(request.start_datetime, request.end_datetime)
        therapist = await self._get_therapist_or_404(request.therapist_id)
        session_type = await self._get_session_type(therapist.id, request.session_type_id)

        if request.end_datetime - request.start_datetime != timedelta(minutes=session_type.duration):
            raise InvalidRequest(
                f"A {session_type.name} session lasts {session_type.duration} minutes"
            )
        if request.status not in ACTIVE_BOOKING_STATUSES:
            raise InvalidRequest("New bookings must start as pending or confirmed")

        # Step 1: race guard
        await self._assert_slot_free(
            therapist.id, request.start_datetime, request.end_datetime, therapist.buffer_time
        )

        booking = Booking(
            id=uuid.uuid4(),
            therapist_id=therapist.id,
            session_type_id=session_type.id,
            client_id=request.client_id,
            client_name=request.client_name,
            client_email=request.client_email.lower(),
            client_phone=request.client_phone,
            client_notes=request.client_notes,
            start_datetime=request.start_datetime,
            end_datetime=request.end_datetime,
            blocked_until=request.end_datetime + timedelta(minutes=therapist.buffer_time),
            timezone=request.timezone or therapist.timezone,
            status=request.status,
            meeting_type=session_type.meeting_type,
            meeting_location=settings.CLINIC_ADDRESS
            if session_type.meeting_type == MeetingType.IN_PERSON else None,
            created_by=request.created_by,
        )

        therapist_id, session_type_id = therapist.id, session_type.id

        # Steps 2-4: reference, meeting link, persist
        booking = await self._allocate_and_save(booking, therapist, session_type)
        logger.info(
            f"Booking {booking.booking_reference} created for therapist {therapist_id} "
            f"at {booking.start_datetime.isoformat()}"
        )

        # A collision rollback expires loaded rows; reload before dispatching.
        therapist = await self.storage.find_therapist(therapist_id)
        session_type = await self.storage.find_session_type(session_type_id)

        # Step 5: notifications never undo the booking
        delivered = await self._notify(
            self.notifications.send_booking_confirmation, booking, therapist, session_type
        )
        return BookingOutcome(booking=booking, notifications_delayed=not delivered)

    async def _allocate_and_save(
        self, booking: Booking, therapist: Therapist, session_type: SessionType
    ) -> Booking:
        """
        Allocate a reference and persist. Only allocation is retried on a
        reference collision; the meeting link is requested once.
        """
        link_requested = False
        meeting_link = None
        booking_id = booking.id
        buffer_minutes = therapist.buffer_time
        is_video = session_type.meeting_type == MeetingType.VIDEO
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(ReferenceCollision),
                stop=stop_after_attempt(self.max_reference_attempts),
                reraise=True,
            ):
                with attempt:
                    reference = normalize_reference(self.reference_factory())
                    if await self.storage.reference_exists(reference):
                        raise ReferenceCollision(reference)
                    booking.booking_reference = reference

                    if is_video and not link_requested:
                        link_requested = True
                        meeting_link = await self._create_meeting_link(booking, therapist, session_type)
                        booking.meeting_link = meeting_link

                    return await self.storage.save_booking(
                        booking, buffer_minutes, changed_by=booking.created_by
                    )
        except ReferenceCollision as exc:
            logger.error(f"Booking reference allocation exhausted: {exc}")
            raise PersistenceError("Could not allocate a booking reference. Please try again.") from exc
        except ConstraintViolation as exc:
            if meeting_link:
                logger.warning(
                    f"Calendar event for unsaved booking {booking_id} is orphaned "
                    f"(slot taken at write time); Meet link {meeting_link}"
                )
            raise SlotNoLongerAvailable(
                "This time slot was just booked by someone else. Please refresh availability."
            ) from exc

    async def _create_meeting_link(
        self, booking: Booking, therapist: Therapist, session_type: SessionType
    ) -> Optional[str]:
        try:
            return await self.meeting_links.create_meeting_link(
                summary=f"{session_type.name} with {therapist.name}",
                description=(
                    f"Therapy session for {booking.client_name}.\n"
                    f"Booking reference: {booking.booking_reference}"
                ),
                start=booking.start_datetime,
                end=booking.end_datetime,
                attendees=[booking.client_email, therapist.email],
                idempotency_key=str(booking.id),
            )
        except Exception as exc:
            # Providers should never raise; a broken one must not block the booking.
            logger.error(f"Meeting link provider raised for booking {booking.id}: {exc}", exc_info=True)
            return None

    async def _notify(self, send, booking: Booking, therapist: Therapist, session_type) -> bool:
        delivered = True
        for role in NOTIFICATION_RECIPIENTS:
            try:
                ok = await send(role, booking, therapist, session_type)
            except Exception as exc:
                logger.error(
                    f"Notification to {role} failed for booking {booking.booking_reference}: {exc}",
                    exc_info=True,
                )
                ok = False
            if not ok:
                logger.warning(f"Notification to {role} delayed for booking {booking.booking_reference}")
                delivered = False
        return delivered

    # ── Reschedule ────────────────────────────────────────────

    async def reschedule_booking(
        self,
        reference: str,
        start: datetime,
        end: datetime,
        changed_by: Optional[str] = None,
    ) -> BookingOutcome:
        """Move an active booking. Its duration must not change."""
        _validate_interval(start, end)
        booking = await self.get_booking(reference)
        if booking.status not in ACTIVE_BOOKING_STATUSES:
            raise InvalidTransition(f"Cannot reschedule a {BookingStatus(booking.status).value} booking")
        if end - start != booking.end_datetime - booking.start_datetime:
            raise InvalidRequest("Rescheduling must keep the original session length")
        if start <= self.clock():
            raise InvalidRequest("Cannot reschedule into the past")

        therapist = await self._get_therapist_or_404(booking.therapist_id)
        await self._assert_slot_free(
            therapist.id, start, end, therapist.buffer_time, exclude_id=booking.id
        )

        previous = booking.start_datetime
        booking.start_datetime = start
        booking.end_datetime = end
        booking.blocked_until = end + timedelta(minutes=therapist.buffer_time)
        booking.reminder_sent_at = None
        status_value = BookingStatus(booking.status).value
        try:
            booking = await self.storage.save_booking(
                booking,
                therapist.buffer_time,
                changed_by=changed_by,
                reason=f"Rescheduled from {previous.isoformat()}",
                from_status=status_value,
            )
        except ConstraintViolation as exc:
            raise SlotNoLongerAvailable(
                "This time slot was just booked by someone else. Please refresh availability."
            ) from exc

        session_type = None
        if booking.session_type_id:
            session_type = await self.storage.find_session_type(booking.session_type_id)
        delivered = await self._notify(
            self.notifications.send_booking_confirmation, booking, therapist, session_type
        )
        return BookingOutcome(booking=booking, notifications_delayed=not delivered)

    # ── Status changes ────────────────────────────────────────

    async def change_status(
        self,
        reference: str,
        new_status: BookingStatus,
        changed_by: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> BookingOutcome:
        booking = await self.get_booking(reference)
        current = BookingStatus(booking.status)
        new_status = BookingStatus(new_status)
        if not can_transition(current, new_status):
            raise InvalidTransition(
                f"Cannot change booking from {current.value} to {new_status.value}"
            )

        booking.status = new_status
        if new_status == BookingStatus.CANCELLED:
            booking.cancellation_reason = reason
            booking.cancelled_by = changed_by
            booking.cancelled_at = self.clock()

        therapist = await self.storage.find_therapist(booking.therapist_id)
        buffer_minutes = therapist.buffer_time if therapist else 0
        try:
            booking = await self.storage.save_booking(
                booking, buffer_minutes, changed_by=changed_by, reason=reason, from_status=current.value
            )
        except ConstraintViolation as exc:
            raise SlotNoLongerAvailable("This booking now conflicts with another booking") from exc
        logger.info(f"Booking {booking.booking_reference}: {current.value} → {new_status.value}")

        delivered = True
        if new_status == BookingStatus.CANCELLED and therapist is not None:
            session_type = None
            if booking.session_type_id:
                session_type = await self.storage.find_session_type(booking.session_type_id)
            delivered = await self._notify(
                self.notifications.send_booking_cancellation, booking, therapist, session_type
            )
        return BookingOutcome(booking=booking, notifications_delayed=not delivered)
