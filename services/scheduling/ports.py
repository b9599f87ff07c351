"""
services/scheduling/ports.py
Interfaces the booking transaction depends on. Production implementations
live in storage.py, services/calendar/google_meet.py and
services/notification/dispatch.py; tests plug in in-memory fakes.
"""

from datetime import datetime
from typing import List, Optional, Protocol, Sequence
from uuid import UUID

from services.scheduling.availability import BlockedPeriod, ScheduleConfig
from shared.models.models import Booking, BookingStatus, SessionType, Therapist


class BookingStorage(Protocol):
    async def find_therapist(self, therapist_id: UUID) -> Optional[Therapist]: ...

    async def find_therapist_config(self, therapist_id: UUID) -> Optional[ScheduleConfig]: ...

    async def find_session_type(self, session_type_id: UUID) -> Optional[SessionType]: ...

    async def find_bookings_for_therapist(
        self,
        therapist_id: UUID,
        range_start: datetime,
        range_end: datetime,
        statuses: Sequence[BookingStatus],
    ) -> List[Booking]: ...

    async def find_blocked_dates(
        self, therapist_id: UUID, range_start: datetime, range_end: datetime
    ) -> List[BlockedPeriod]: ...

    async def find_booking(self, reference: str) -> Optional[Booking]: ...

    async def reference_exists(self, reference: str) -> bool: ...

    async def save_booking(
        self,
        booking: Booking,
        buffer_minutes: int,
        changed_by: Optional[str] = None,
        reason: Optional[str] = None,
        from_status: Optional[str] = None,
    ) -> Booking:
        """
        Durably write the booking and an audit entry.
        Raises ConstraintViolation when it would overlap an active booking
        and ReferenceCollision when the reference is taken.
        """
        ...


class MeetingLinkProvider(Protocol):
    async def create_meeting_link(
        self,
        summary: str,
        description: str,
        start: datetime,
        end: datetime,
        attendees: Sequence[str],
        idempotency_key: str,
    ) -> Optional[str]:
        """Video meeting URL, or None on any failure. Never raises."""
        ...


class NotificationDispatcher(Protocol):
    async def send_booking_confirmation(
        self,
        recipient_role: str,
        booking: Booking,
        therapist: Therapist,
        session_type: Optional[SessionType],
    ) -> bool: ...

    async def send_booking_cancellation(
        self,
        recipient_role: str,
        booking: Booking,
        therapist: Therapist,
        session_type: Optional[SessionType],
    ) -> bool: ...
