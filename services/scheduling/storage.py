"""
services/scheduling/storage.py
SQLAlchemy implementation of the booking storage interface.

save_booking is where double-booking is prevented: the therapist row is
locked, the buffered interval is re-checked inside the same transaction,
and on PostgreSQL the exclusion constraint backs both up.
"""

import logging
from datetime import datetime, timedelta
from typing import List, Optional, Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from services.scheduling.availability import BlockedPeriod, ScheduleConfig
from services.scheduling.errors import ConstraintViolation, PersistenceError, ReferenceCollision
from shared.models.models import (
    ACTIVE_BOOKING_STATUSES,
    BlockedDate,
    Booking,
    BookingAuditLog,
    BookingStatus,
    SessionType,
    Therapist,
)

logger = logging.getLogger(__name__)


class SqlAlchemyBookingStorage:
    def __init__(self, session: AsyncSession):
        self.session = session

    # ── Reads ─────────────────────────────────────────────────

    async def find_therapist(self, therapist_id: UUID) -> Optional[Therapist]:
        return await self.session.get(Therapist, therapist_id)

    async def find_therapist_config(self, therapist_id: UUID) -> Optional[ScheduleConfig]:
        therapist = await self.find_therapist(therapist_id)
        if not therapist or not therapist.is_active:
            return None
        return ScheduleConfig.from_therapist(therapist)

    async def find_session_type(self, session_type_id: UUID) -> Optional[SessionType]:
        return await self.session.get(SessionType, session_type_id)

    async def find_bookings_for_therapist(
        self,
        therapist_id: UUID,
        range_start: datetime,
        range_end: datetime,
        statuses: Sequence[BookingStatus] = ACTIVE_BOOKING_STATUSES,
    ) -> List[Booking]:
        """Bookings whose [start, end) intersects [range_start, range_end)."""
        result = await self.session.execute(
            select(Booking)
            .where(
                Booking.therapist_id == therapist_id,
                Booking.status.in_(list(statuses)),
                Booking.start_datetime < range_end,
                Booking.end_datetime > range_start,
            )
            .order_by(Booking.start_datetime)
        )
        return list(result.scalars().all())

    async def find_blocked_dates(
        self, therapist_id: UUID, range_start: datetime, range_end: datetime
    ) -> List[BlockedPeriod]:
        # All-day blocks are widened by a day so local-day matching sees them
        # regardless of the therapist's UTC offset.
        margin = timedelta(days=1)
        result = await self.session.execute(
            select(BlockedDate)
            .where(
                BlockedDate.therapist_id == therapist_id,
                BlockedDate.start_datetime < range_end + margin,
                BlockedDate.end_datetime > range_start - margin,
            )
            .order_by(BlockedDate.start_datetime)
        )
        return [
            BlockedPeriod(b.start_datetime, b.end_datetime, b.is_all_day)
            for b in result.scalars().all()
        ]

    async def find_booking(self, reference: str) -> Optional[Booking]:
        result = await self.session.execute(
            select(Booking).where(Booking.booking_reference == reference)
        )
        return result.scalar_one_or_none()

    async def reference_exists(self, reference: str) -> bool:
        result = await self.session.execute(
            select(Booking.id).where(Booking.booking_reference == reference)
        )
        return result.first() is not None

    # ── Writes ────────────────────────────────────────────────

    async def _has_conflict(self, booking: Booking) -> bool:
        result = await self.session.execute(
            select(Booking.id)
            .where(
                Booking.therapist_id == booking.therapist_id,
                Booking.status.in_(list(ACTIVE_BOOKING_STATUSES)),
                Booking.id != booking.id,
                Booking.start_datetime < booking.blocked_until,
                Booking.blocked_until > booking.start_datetime,
            )
            .limit(1)
        )
        return result.first() is not None

    async def save_booking(
        self,
        booking: Booking,
        buffer_minutes: int,
        changed_by: Optional[str] = None,
        reason: Optional[str] = None,
        from_status: Optional[str] = None,
    ) -> Booking:
        """
        Insert or update a booking plus its audit entry and commit.
        Raises ConstraintViolation, ReferenceCollision or PersistenceError;
        the session is rolled back in every failure case.
        """
        booking.blocked_until = booking.end_datetime + timedelta(minutes=buffer_minutes)
        to_status = BookingStatus(booking.status).value
        try:
            # Serialize writers per therapist (no-op on SQLite, which locks the database)
            await self.session.execute(
                select(Therapist.id).where(Therapist.id == booking.therapist_id).with_for_update()
            )
            if booking.status in ACTIVE_BOOKING_STATUSES and await self._has_conflict(booking):
                raise ConstraintViolation(
                    f"Booking overlaps an active booking for therapist {booking.therapist_id}"
                )

            self.session.add(booking)
            self.session.add(
                BookingAuditLog(
                    booking_id=booking.id,
                    from_status=from_status,
                    to_status=to_status,
                    changed_by=changed_by,
                    reason=reason,
                )
            )
            await self.session.commit()
        except ConstraintViolation:
            await self.session.rollback()
            raise
        except IntegrityError as exc:
            await self.session.rollback()
            if "booking_reference" in str(exc.orig):
                raise ReferenceCollision(booking.booking_reference) from exc
            logger.warning(f"Storage rejected booking {booking.id}: {exc.orig}")
            raise ConstraintViolation(str(exc.orig)) from exc
        except SQLAlchemyError as exc:
            await self.session.rollback()
            logger.error(f"Failed to persist booking {booking.id}: {exc}", exc_info=True)
            raise PersistenceError("Booking could not be saved. Please try again.") from exc
        return booking
