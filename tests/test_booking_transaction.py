"""
tests/test_booking_transaction.py
Tests for BookingService against an in-memory storage: race guard,
reference allocation, meeting links, best-effort notifications,
rescheduling, and the status state machine.
"""

import asyncio
import uuid
from datetime import date, datetime, time, timedelta, timezone
from itertools import chain, repeat
from zoneinfo import ZoneInfo

import pytest

from config.settings import settings
from services.scheduling.availability import ScheduleConfig
from services.scheduling.booking import (
    NOTIFICATIONS_DELAYED_MESSAGE,
    BookingRequest,
    BookingService,
    can_transition,
)
from services.scheduling.calendar import at_local_time, overlaps
from services.scheduling.errors import (
    ConstraintViolation,
    InvalidRequest,
    InvalidTransition,
    NotFound,
    PersistenceError,
    ReferenceCollision,
    SlotNoLongerAvailable,
)
from shared.models.models import (
    ACTIVE_BOOKING_STATUSES,
    BookingStatus,
    MeetingType,
    SessionType,
    Therapist,
    TherapistAvailability,
)
from tests.conftest import FakeMeetingLinks, FakeNotifications

IST = ZoneInfo("Asia/Kolkata")
MONDAY = date(2025, 1, 6)
NOW = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


def local(hour: int, minute: int = 0, day: date = MONDAY) -> datetime:
    return at_local_time(day, time(hour, minute), IST)


class InMemoryStorage:
    """Implements the storage interface with the same overlap rule as the database."""

    def __init__(self, therapist, session_types, existing_references=(), collide_on_save=()):
        self.therapist = therapist
        self.session_types = {st.id: st for st in session_types}
        self.bookings = {}
        self.references = set(existing_references)
        self.collide_on_save = set(collide_on_save)
        self.audit = []

    async def find_therapist(self, therapist_id):
        return self.therapist if self.therapist.id == therapist_id else None

    async def find_therapist_config(self, therapist_id):
        therapist = await self.find_therapist(therapist_id)
        if not therapist or not therapist.is_active:
            return None
        return ScheduleConfig.from_therapist(therapist)

    async def find_session_type(self, session_type_id):
        return self.session_types.get(session_type_id)

    async def find_bookings_for_therapist(self, therapist_id, range_start, range_end, statuses=ACTIVE_BOOKING_STATUSES):
        snapshot = sorted(
            (
                b for b in self.bookings.values()
                if b.therapist_id == therapist_id
                and b.status in statuses
                and b.start_datetime < range_end
                and b.end_datetime > range_start
            ),
            key=lambda b: b.start_datetime,
        )
        # Yield so concurrent requests interleave between read and write
        await asyncio.sleep(0)
        return snapshot

    async def find_blocked_dates(self, therapist_id, range_start, range_end):
        return []

    async def find_booking(self, reference):
        return next((b for b in self.bookings.values() if b.booking_reference == reference), None)

    async def reference_exists(self, reference):
        return reference in self.references

    async def save_booking(self, booking, buffer_minutes, changed_by=None, reason=None, from_status=None):
        booking.blocked_until = booking.end_datetime + timedelta(minutes=buffer_minutes)
        if booking.booking_reference in self.collide_on_save:
            self.collide_on_save.discard(booking.booking_reference)
            raise ReferenceCollision(booking.booking_reference)
        if booking.status in ACTIVE_BOOKING_STATUSES:
            for other in self.bookings.values():
                if (
                    other.id != booking.id
                    and other.status in ACTIVE_BOOKING_STATUSES
                    and overlaps(booking.start_datetime, booking.blocked_until, other.start_datetime, other.blocked_until)
                ):
                    raise ConstraintViolation("overlap")
        self.bookings[booking.id] = booking
        self.references.add(booking.booking_reference)
        self.audit.append((from_status, BookingStatus(booking.status).value, changed_by, reason))
        return booking


class RaisingNotifications:
    async def send_booking_confirmation(self, recipient_role, booking, therapist, session_type):
        raise ConnectionError("broker unreachable")

    async def send_booking_cancellation(self, recipient_role, booking, therapist, session_type):
        raise ConnectionError("broker unreachable")


def fixed_references(*references):
    """Reference factory returning the given values, then repeating the last one."""
    values = chain(references, repeat(references[-1]))
    return lambda: next(values)


# ── Fixtures ──────────────────────────────────────────────────

@pytest.fixture
def therapist():
    return Therapist(
        id=uuid.uuid4(),
        slug="pihu-suri",
        name="Pihu Suri",
        email="pihu@mindweal.in",
        timezone="Asia/Kolkata",
        default_session_duration=50,
        buffer_time=10,
        advance_booking_days=30,
        min_booking_notice_hours=24,
        is_active=True,
        working_hours=[
            TherapistAvailability(day_of_week=0, start_time=time(9), end_time=time(12), is_active=True)
        ],
    )


def make_session_type(therapist, meeting_type=MeetingType.VIDEO, **overrides):
    params = dict(
        id=uuid.uuid4(),
        therapist_id=therapist.id,
        name="Individual Therapy",
        duration=50,
        meeting_type=meeting_type,
        is_active=True,
    )
    params.update(overrides)
    return SessionType(**params)


@pytest.fixture
def video_type(therapist):
    return make_session_type(therapist)


@pytest.fixture
def in_person_type(therapist):
    return make_session_type(therapist, MeetingType.IN_PERSON, name="In-Person Consultation")


@pytest.fixture
def storage(therapist, video_type, in_person_type):
    return InMemoryStorage(therapist, [video_type, in_person_type])


@pytest.fixture
def meeting_links():
    return FakeMeetingLinks()


@pytest.fixture
def notifications():
    return FakeNotifications()


@pytest.fixture
def service(storage, meeting_links, notifications):
    return BookingService(storage, meeting_links, notifications, clock=lambda: NOW)


def request_for(therapist, session_type, start=None, **overrides):
    start = start or local(10)
    params = dict(
        therapist_id=therapist.id,
        session_type_id=session_type.id,
        client_name="Asha Verma",
        client_email="Asha@Example.com",
        start_datetime=start,
        end_datetime=start + timedelta(minutes=session_type.duration),
        created_by="public",
    )
    params.update(overrides)
    return BookingRequest(**params)


# ── Create ────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_create_booking_confirms_and_removes_slot(service, storage, therapist, video_type, notifications):
    """A booked slot disappears from availability and stays listed in storage."""
    outcome = await service.create_booking(request_for(therapist, video_type))

    booking = outcome.booking
    assert booking.status == BookingStatus.CONFIRMED
    assert booking.booking_reference.startswith("MW-")
    assert booking.client_email == "asha@example.com"
    assert booking.blocked_until == local(11)
    assert storage.bookings[booking.id] is booking
    assert outcome.notifications_delayed is False
    assert outcome.message is None
    assert {role for kind, role, _ in notifications.sent} == {"client", "therapist"}

    slots = await service.get_availability(therapist.id, video_type.id, local(0), local(23))
    assert local(10) not in [s.start for s in slots]
    assert local(9) in [s.start for s in slots]


@pytest.mark.asyncio
async def test_concurrent_requests_for_same_slot(service, storage, therapist, video_type):
    """Exactly one of two simultaneous requests for a slot wins."""
    results = await asyncio.gather(
        service.create_booking(request_for(therapist, video_type)),
        service.create_booking(request_for(therapist, video_type, client_email="other@example.com")),
        return_exceptions=True,
    )

    winners = [r for r in results if not isinstance(r, Exception)]
    losers = [r for r in results if isinstance(r, Exception)]
    assert len(winners) == 1
    assert winners[0].booking.status == BookingStatus.CONFIRMED
    assert len(losers) == 1
    assert isinstance(losers[0], SlotNoLongerAvailable)
    assert losers[0].retryable is True
    assert len(storage.bookings) == 1


@pytest.mark.asyncio
async def test_request_inside_buffer_is_rejected(service, therapist, video_type):
    await service.create_booking(request_for(therapist, video_type))
    with pytest.raises(SlotNoLongerAvailable):
        await service.create_booking(request_for(therapist, video_type, start=local(10, 55)))


@pytest.mark.asyncio
async def test_storage_conflict_maps_to_slot_unavailable(service, storage, therapist, video_type):
    """A conflict only the storage layer sees is reported like the race guard."""

    async def nothing_booked(*args, **kwargs):
        return []

    await service.create_booking(request_for(therapist, video_type))
    storage.find_bookings_for_therapist = nothing_booked
    with pytest.raises(SlotNoLongerAvailable):
        await service.create_booking(request_for(therapist, video_type, start=local(10, 30)))


@pytest.mark.asyncio
async def test_conflict_after_meet_link_logs_orphaned_event(service, storage, therapist, video_type, caplog):
    async def nothing_booked(*args, **kwargs):
        return []

    await service.create_booking(request_for(therapist, video_type))
    storage.find_bookings_for_therapist = nothing_booked
    with caplog.at_level("WARNING", logger="services.scheduling.booking"):
        with pytest.raises(SlotNoLongerAvailable):
            await service.create_booking(request_for(therapist, video_type, start=local(10, 30)))

    orphaned = [r for r in caplog.records if "orphaned" in r.getMessage()]
    assert len(orphaned) == 1
    assert "https://meet.google.com/abc-defg-hij" in orphaned[0].getMessage()


@pytest.mark.asyncio
async def test_invalid_requests(service, therapist, video_type):
    with pytest.raises(InvalidRequest):
        await service.create_booking(
            request_for(therapist, video_type, end_datetime=local(10, 30))
        )
    with pytest.raises(InvalidRequest):
        await service.create_booking(
            request_for(therapist, video_type, end_datetime=local(9))
        )
    with pytest.raises(InvalidRequest):
        naive = datetime(2025, 1, 6, 10, 0)
        await service.create_booking(
            request_for(therapist, video_type, start_datetime=naive, end_datetime=naive + timedelta(minutes=50))
        )


@pytest.mark.asyncio
async def test_unknown_or_unavailable_references(service, storage, therapist, video_type):
    with pytest.raises(NotFound):
        await service.create_booking(request_for(therapist, video_type, therapist_id=uuid.uuid4()))
    with pytest.raises(NotFound):
        await service.create_booking(request_for(therapist, video_type, session_type_id=uuid.uuid4()))

    retired = make_session_type(therapist, is_active=False)
    storage.session_types[retired.id] = retired
    with pytest.raises(InvalidRequest):
        await service.create_booking(request_for(therapist, retired))

    foreign = make_session_type(therapist, therapist_id=uuid.uuid4())
    storage.session_types[foreign.id] = foreign
    with pytest.raises(NotFound):
        await service.create_booking(request_for(therapist, foreign))


# ── Notifications ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_failed_notifications_do_not_undo_booking(storage, meeting_links, therapist, video_type):
    service = BookingService(storage, meeting_links, FakeNotifications(fail=True), clock=lambda: NOW)
    outcome = await service.create_booking(request_for(therapist, video_type))

    assert outcome.notifications_delayed is True
    assert outcome.message == NOTIFICATIONS_DELAYED_MESSAGE
    assert outcome.booking.id in storage.bookings


@pytest.mark.asyncio
async def test_raising_dispatcher_is_contained(storage, meeting_links, therapist, video_type):
    service = BookingService(storage, meeting_links, RaisingNotifications(), clock=lambda: NOW)
    outcome = await service.create_booking(request_for(therapist, video_type))

    assert outcome.notifications_delayed is True
    assert outcome.booking.status == BookingStatus.CONFIRMED


# ── Meeting Links ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_video_booking_gets_meeting_link(service, meeting_links, therapist, video_type):
    outcome = await service.create_booking(request_for(therapist, video_type))

    assert outcome.booking.meeting_link == meeting_links.link
    assert len(meeting_links.calls) == 1
    call = meeting_links.calls[0]
    assert call["idempotency_key"] == str(outcome.booking.id)
    assert call["attendees"] == ["asha@example.com", therapist.email]


@pytest.mark.asyncio
@pytest.mark.parametrize("links", [FakeMeetingLinks(link=None), FakeMeetingLinks(raises=True)])
async def test_booking_proceeds_without_meeting_link(storage, notifications, therapist, video_type, links):
    service = BookingService(storage, links, notifications, clock=lambda: NOW)
    outcome = await service.create_booking(request_for(therapist, video_type))

    assert outcome.booking.meeting_link is None
    assert outcome.booking.id in storage.bookings


@pytest.mark.asyncio
async def test_in_person_booking_uses_clinic_address(service, meeting_links, therapist, in_person_type):
    outcome = await service.create_booking(request_for(therapist, in_person_type))

    assert outcome.booking.meeting_type == MeetingType.IN_PERSON
    assert outcome.booking.meeting_location == settings.CLINIC_ADDRESS
    assert outcome.booking.meeting_link is None
    assert meeting_links.calls == []


# ── Reference Allocation ──────────────────────────────────────

@pytest.mark.asyncio
async def test_taken_reference_is_regenerated(therapist, video_type, meeting_links, notifications):
    storage = InMemoryStorage(therapist, [video_type], existing_references={"MW-AAAAAAAA"})
    service = BookingService(
        storage, meeting_links, notifications,
        clock=lambda: NOW,
        reference_factory=fixed_references("MW-AAAAAAAA", "mw-bbbbbbbb"),
    )
    outcome = await service.create_booking(request_for(therapist, video_type))
    assert outcome.booking.booking_reference == "MW-BBBBBBBB"


@pytest.mark.asyncio
async def test_collision_at_write_retries_without_new_meeting_link(therapist, video_type, meeting_links, notifications):
    storage = InMemoryStorage(therapist, [video_type], collide_on_save={"MW-AAAAAAAA"})
    service = BookingService(
        storage, meeting_links, notifications,
        clock=lambda: NOW,
        reference_factory=fixed_references("MW-AAAAAAAA", "MW-CCCCCCCC"),
    )
    outcome = await service.create_booking(request_for(therapist, video_type))

    assert outcome.booking.booking_reference == "MW-CCCCCCCC"
    assert len(meeting_links.calls) == 1


@pytest.mark.asyncio
async def test_reference_allocation_gives_up(therapist, video_type, meeting_links, notifications):
    storage = InMemoryStorage(therapist, [video_type], existing_references={"MW-AAAAAAAA"})
    service = BookingService(
        storage, meeting_links, notifications,
        clock=lambda: NOW,
        reference_factory=fixed_references("MW-AAAAAAAA"),
        max_reference_attempts=3,
    )
    with pytest.raises(PersistenceError) as exc_info:
        await service.create_booking(request_for(therapist, video_type))

    assert exc_info.value.retryable is True
    assert storage.bookings == {}


# ── Lookup ────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_lookup_is_case_insensitive(service, therapist, video_type):
    outcome = await service.create_booking(request_for(therapist, video_type))
    found = await service.get_booking(f"  {outcome.booking.booking_reference.lower()} ")
    assert found is outcome.booking

    with pytest.raises(NotFound):
        await service.get_booking("MW-NOPE2345")


@pytest.mark.asyncio
async def test_availability_date_range_validation(service, therapist, video_type):
    with pytest.raises(InvalidRequest):
        await service.get_availability_for_dates(therapist.id, video_type.id, MONDAY, MONDAY - timedelta(days=1))
    with pytest.raises(InvalidRequest):
        await service.get_availability_for_dates(
            therapist.id, video_type.id, MONDAY, MONDAY + timedelta(days=settings.MAX_AVAILABILITY_RANGE_DAYS)
        )

    config, slots = await service.get_availability_for_dates(therapist.id, video_type.id, MONDAY, MONDAY)
    assert config.timezone == "Asia/Kolkata"
    assert [s.start for s in slots] == [local(9), local(10), local(11)]


# ── Status Changes ────────────────────────────────────────────

def test_transition_table():
    assert can_transition(BookingStatus.PENDING, BookingStatus.CONFIRMED)
    assert can_transition(BookingStatus.CONFIRMED, BookingStatus.NO_SHOW)
    assert not can_transition(BookingStatus.CONFIRMED, BookingStatus.PENDING)
    for terminal in (BookingStatus.CANCELLED, BookingStatus.COMPLETED, BookingStatus.NO_SHOW):
        assert not any(can_transition(terminal, target) for target in BookingStatus)


@pytest.mark.asyncio
async def test_cancel_frees_slot_and_notifies(service, storage, notifications, therapist, video_type):
    outcome = await service.create_booking(request_for(therapist, video_type))
    reference = outcome.booking.booking_reference

    cancelled = await service.change_status(reference, BookingStatus.CANCELLED, changed_by="client:asha", reason="Unwell")

    booking = cancelled.booking
    assert booking.status == BookingStatus.CANCELLED
    assert booking.cancellation_reason == "Unwell"
    assert booking.cancelled_by == "client:asha"
    assert booking.cancelled_at == NOW
    assert ("cancellation", "client", reference) in notifications.sent
    assert storage.audit[-1] == ("confirmed", "cancelled", "client:asha", "Unwell")

    slots = await service.get_availability(therapist.id, video_type.id, local(0), local(23))
    assert local(10) in [s.start for s in slots]


@pytest.mark.asyncio
async def test_terminal_status_cannot_change(service, therapist, video_type):
    outcome = await service.create_booking(request_for(therapist, video_type))
    reference = outcome.booking.booking_reference

    await service.change_status(reference, BookingStatus.COMPLETED, changed_by="therapist:1")
    with pytest.raises(InvalidTransition):
        await service.change_status(reference, BookingStatus.CANCELLED)


@pytest.mark.asyncio
async def test_pending_booking_can_be_confirmed(service, therapist, video_type):
    outcome = await service.create_booking(
        request_for(therapist, video_type, status=BookingStatus.PENDING)
    )
    confirmed = await service.change_status(outcome.booking.booking_reference, BookingStatus.CONFIRMED)
    assert confirmed.booking.status == BookingStatus.CONFIRMED


# ── Reschedule ────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_reschedule_may_overlap_own_old_time(service, storage, therapist, video_type):
    outcome = await service.create_booking(request_for(therapist, video_type))
    moved = await service.reschedule_booking(
        outcome.booking.booking_reference, local(10, 30), local(11, 20), changed_by="admin:1"
    )

    assert moved.booking.start_datetime == local(10, 30)
    assert moved.booking.blocked_until == local(11, 30)
    assert storage.audit[-1][3].startswith("Rescheduled from")


@pytest.mark.asyncio
async def test_reschedule_into_taken_slot(service, therapist, video_type):
    first = await service.create_booking(request_for(therapist, video_type, start=local(9)))
    await service.create_booking(request_for(therapist, video_type, start=local(11)))

    with pytest.raises(SlotNoLongerAvailable):
        await service.reschedule_booking(first.booking.booking_reference, local(11), local(11, 50))


@pytest.mark.asyncio
async def test_reschedule_rules(service, therapist, video_type):
    outcome = await service.create_booking(request_for(therapist, video_type))
    reference = outcome.booking.booking_reference

    with pytest.raises(InvalidRequest):
        await service.reschedule_booking(reference, local(11), local(12))
    past = NOW - timedelta(days=1)
    with pytest.raises(InvalidRequest):
        await service.reschedule_booking(reference, past, past + timedelta(minutes=50))

    await service.change_status(reference, BookingStatus.CANCELLED)
    with pytest.raises(InvalidTransition):
        await service.reschedule_booking(reference, local(11), local(11, 50))
