"""
services/scheduling/availability.py
Availability engine: turns a therapist's weekly working hours, the session
length and the existing bookings into bookable slots.

The engine is pure. Storage hands it a snapshot (`ScheduleConfig`, bookings,
blocked dates) and it returns a lazy `AvailableSlots` sequence that can be
iterated any number of times with identical results.
"""

from dataclasses import dataclass, field, replace
from datetime import date, datetime, time, timedelta
from typing import Iterable, Iterator, List, NamedTuple, Optional, Sequence, Tuple
from zoneinfo import ZoneInfo

from services.scheduling.calendar import (
    any_overlap,
    at_local_time,
    day_bounds,
    clip_to_window,
    expand_with_buffer,
    local_days,
)
from shared.models.models import ACTIVE_BOOKING_STATUSES


class Slot(NamedTuple):
    start: datetime
    end: datetime


@dataclass(frozen=True)
class WorkingWindow:
    day_of_week: int     # 0 = Monday
    start_time: time
    end_time: time


@dataclass(frozen=True)
class ScheduleConfig:
    """Everything the engine needs to know about a therapist's calendar."""
    therapist_id: str
    timezone: str
    windows: Tuple[WorkingWindow, ...] = ()
    default_session_duration: int = 60
    buffer_time: int = 15
    advance_booking_days: int = 30
    min_booking_notice_hours: int = 24

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    def windows_for(self, day_of_week: int) -> List[WorkingWindow]:
        return sorted(
            (w for w in self.windows if w.day_of_week == day_of_week),
            key=lambda w: w.start_time,
        )

    @classmethod
    def from_therapist(cls, therapist) -> "ScheduleConfig":
        """Snapshot an ORM Therapist (with working_hours loaded)."""
        return cls(
            therapist_id=str(therapist.id),
            timezone=therapist.timezone,
            windows=tuple(
                WorkingWindow(w.day_of_week, w.start_time, w.end_time)
                for w in therapist.working_hours
                if w.is_active
            ),
            default_session_duration=therapist.default_session_duration,
            buffer_time=therapist.buffer_time,
            advance_booking_days=therapist.advance_booking_days,
            min_booking_notice_hours=therapist.min_booking_notice_hours,
        )


@dataclass(frozen=True)
class BlockedPeriod:
    start: datetime
    end: datetime
    is_all_day: bool = False


def occupied_intervals(bookings: Iterable, buffer_minutes: int) -> List[Tuple[datetime, datetime]]:
    """Buffered intervals of the bookings that still hold the calendar."""
    return sorted(
        expand_with_buffer(b.start_datetime, b.end_datetime, buffer_minutes)
        for b in bookings
        if b.status in ACTIVE_BOOKING_STATUSES
    )


def is_slot_free(
    start: datetime,
    end: datetime,
    bookings: Iterable,
    buffer_minutes: int,
) -> bool:
    """Overlap check for a single interval. Also used as the booking race guard."""
    c_start, c_end = expand_with_buffer(start, end, buffer_minutes)
    return not any_overlap(c_start, c_end, occupied_intervals(bookings, buffer_minutes))


@dataclass
class AvailableSlots:
    """
    Lazy, finite, restartable sequence of free slots ordered by start.
    Each iteration recomputes from the captured snapshot.
    """
    config: ScheduleConfig
    duration: int
    range_start: datetime
    range_end: datetime
    now: datetime
    bookings: Sequence = ()
    blocked: Sequence[BlockedPeriod] = field(default_factory=tuple)

    def __post_init__(self):
        # Freeze the snapshot so later mutation of the caller's lists
        # cannot change what a restarted iteration yields.
        self.bookings = tuple(self.bookings)
        self.blocked = tuple(self.blocked)

    def __iter__(self) -> Iterator[Slot]:
        config = self.config
        earliest = self.now + timedelta(hours=config.min_booking_notice_hours)
        horizon = self.now + timedelta(days=config.advance_booking_days)

        if self.duration <= 0 or self.range_end <= self.range_start:
            return
        if self.range_start > horizon or self.range_end <= earliest:
            return

        tz = config.tz
        step = timedelta(minutes=self.duration + config.buffer_time)
        length = timedelta(minutes=self.duration)
        occupied = occupied_intervals(self.bookings, config.buffer_time)
        blocked_days = {b.start.astimezone(tz).date() for b in self.blocked if b.is_all_day}
        partial_blocks = [(b.start, b.end) for b in self.blocked if not b.is_all_day]

        for day in local_days(self.range_start, self.range_end, tz):
            if day in blocked_days:
                continue
            for window in config.windows_for(day.weekday()):
                for slot in self._window_candidates(day, window, tz, step, length):
                    if slot.start < earliest or slot.start > horizon:
                        continue
                    if slot.start < self.range_start or slot.end > self.range_end:
                        continue
                    if any_overlap(slot.start, slot.end, partial_blocks):
                        continue
                    b_start, b_end = expand_with_buffer(slot.start, slot.end, config.buffer_time)
                    if any_overlap(b_start, b_end, occupied):
                        continue
                    yield slot

    @staticmethod
    def _window_candidates(
        day: date,
        window: WorkingWindow,
        tz: ZoneInfo,
        step: timedelta,
        length: timedelta,
    ) -> Iterator[Slot]:
        window_start = at_local_time(day, window.start_time, tz)
        window_end = at_local_time(day, window.end_time, tz)
        start = window_start
        while clip_to_window(start, start + length, window_start, window_end):
            yield Slot(start, start + length)
            start += step

    def __bool__(self) -> bool:
        return next(iter(self), None) is not None

    def to_list(self) -> List[Slot]:
        return list(self)

    def available_dates(self) -> List[date]:
        """Local dates in range with at least one free slot. Stops at each day's first slot."""
        tz = self.config.tz
        dates = []
        for day in local_days(self.range_start, self.range_end, tz):
            day_start, day_end = day_bounds(day, tz)
            single_day = replace(
                self,
                range_start=max(day_start, self.range_start),
                range_end=min(day_end, self.range_end),
            )
            if single_day:
                dates.append(day)
        return dates


def compute_available_slots(
    config: ScheduleConfig,
    session_type,
    existing_bookings: Iterable,
    range_start: datetime,
    range_end: datetime,
    now: datetime,
    blocked_dates: Iterable[BlockedPeriod] = (),
    duration: Optional[int] = None,
) -> AvailableSlots:
    """
    Free slots for one therapist and session type in [range_start, range_end].

    Only pending/confirmed bookings block time; each blocks its interval plus
    the therapist's buffer. Slots must respect the minimum booking notice,
    the advance booking horizon and any blocked dates. `duration` overrides
    the session type length (the therapist default is used when neither is
    given).
    """
    if duration is None:
        duration = session_type.duration if session_type is not None else config.default_session_duration
    return AvailableSlots(
        config=config,
        duration=duration,
        range_start=range_start,
        range_end=range_end,
        now=now,
        bookings=existing_bookings,
        blocked=blocked_dates,
    )
