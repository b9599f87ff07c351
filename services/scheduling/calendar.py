"""
services/scheduling/calendar.py
Calendar arithmetic over timezone-aware instants.
All intervals are half-open: [start, end).
"""

from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable, Iterator, Sequence, Tuple
from zoneinfo import ZoneInfo


def overlaps(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    """True iff [a_start, a_end) and [b_start, b_end) intersect."""
    return a_start < b_end and b_start < a_end


def expand_with_buffer(start: datetime, end: datetime, buffer_minutes: int) -> Tuple[datetime, datetime]:
    """Occupied window of a session: the buffer is appended after the end only."""
    return start, end + timedelta(minutes=buffer_minutes)


def clip_to_window(
    candidate_start: datetime,
    candidate_end: datetime,
    window_start: datetime,
    window_end: datetime,
) -> bool:
    """True iff the candidate lies fully inside the window."""
    return window_start <= candidate_start and candidate_end <= window_end


# ── Day boundaries ────────────────────────────────────────────

def local_days(start: datetime, end: datetime, tz: ZoneInfo) -> Iterator[date]:
    """Local calendar days touched by [start, end], in order."""
    day = start.astimezone(tz).date()
    last = end.astimezone(tz).date()
    while day <= last:
        yield day
        day += timedelta(days=1)


def at_local_time(day: date, wall_time: time, tz: ZoneInfo) -> datetime:
    """
    Instant (UTC) of a wall-clock time on a local day.
    Wall times skipped by a DST jump resolve forward, ambiguous ones
    resolve to the first occurrence (fold=0).
    """
    local = datetime.combine(day, wall_time, tzinfo=tz)
    return local.astimezone(timezone.utc)


def day_bounds(day: date, tz: ZoneInfo) -> Tuple[datetime, datetime]:
    """UTC instants of local midnight and the following local midnight."""
    return at_local_time(day, time.min, tz), at_local_time(day + timedelta(days=1), time.min, tz)


def windows_overlap(windows: Iterable[Tuple[int, time, time]]) -> bool:
    """
    True if any two (day_of_week, start, end) windows of the same day intersect.
    Used to reject schedules before they are stored.
    """
    by_day: dict = {}
    for day_of_week, start, end in windows:
        by_day.setdefault(day_of_week, []).append((start, end))

    for spans in by_day.values():
        spans.sort()
        for (_, prev_end), (next_start, _) in zip(spans, spans[1:]):
            if next_start < prev_end:
                return True
    return False


def any_overlap(start: datetime, end: datetime, occupied: Sequence[Tuple[datetime, datetime]]) -> bool:
    return any(overlaps(start, end, o_start, o_end) for o_start, o_end in occupied)
