"""
tests/conftest.py
Shared fixtures: in-memory SQLite database, fake Redis, fake calendar and
notification adapters, an HTTP client against the app, and seed data.
"""

import os

# Settings are read at import time; configure before importing the app.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-for-jwt-signing-only")
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("ENABLE_METRICS", "false")

import fnmatch
import uuid
from datetime import datetime, time, timedelta, timezone
from typing import List, Optional, Tuple

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from jose import jwt
from sqlalchemy.pool import StaticPool

from config.database import Database
from config.redis_client import get_redis
from config.settings import settings
from services.calendar.google_meet import get_meeting_link_provider
from services.notification.dispatch import get_notification_dispatcher
from shared.models.models import (
    MeetingType,
    SessionType,
    Therapist,
    TherapistAvailability,
    UserRole,
)


# ── Fakes ─────────────────────────────────────────────────────

class FakeRedis:
    """Dict-backed stand-in for the redis.asyncio commands the app uses."""

    def __init__(self):
        self.store = {}

    async def get(self, key):
        return self.store.get(key)

    async def setex(self, key, ttl, value):
        self.store[key] = value

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                removed += 1
        return removed

    async def keys(self, pattern):
        return [k for k in self.store if fnmatch.fnmatch(k, pattern)]

    async def exists(self, key):
        return 1 if key in self.store else 0

    async def incr(self, key):
        self.store[key] = int(self.store.get(key, 0)) + 1
        return self.store[key]

    async def expire(self, key, seconds):
        return True

    async def ping(self):
        return True


class FakeMeetingLinks:
    def __init__(self, link: Optional[str] = "https://meet.google.com/abc-defg-hij", raises: bool = False):
        self.link = link
        self.raises = raises
        self.calls: List[dict] = []

    async def create_meeting_link(self, summary, description, start, end, attendees, idempotency_key):
        self.calls.append({
            "summary": summary,
            "start": start,
            "end": end,
            "attendees": list(attendees),
            "idempotency_key": idempotency_key,
        })
        if self.raises:
            raise RuntimeError("calendar API exploded")
        return self.link


class FakeNotifications:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: List[tuple] = []

    async def send_booking_confirmation(self, recipient_role, booking, therapist, session_type):
        self.sent.append(("confirmation", recipient_role, booking.booking_reference))
        return not self.fail

    async def send_booking_cancellation(self, recipient_role, booking, therapist, session_type):
        self.sent.append(("cancellation", recipient_role, booking.booking_reference))
        return not self.fail


# ── Auth Helpers ──────────────────────────────────────────────

def create_access_token(
    user_id: str,
    role: str,
    email: str,
    extra: Optional[dict] = None,
) -> Tuple[str, str]:
    """
    Sign an access token the way the identity service does.
    Returns (token, jti). Therapist tokens carry `therapist_id` in `extra`.
    """
    jti = str(uuid.uuid4())
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "role": role,
        "email": email,
        "jti": jti,
        "iat": now,
        "exp": now + timedelta(minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES),
        "type": "access",
        **(extra or {}),
    }
    token = jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)
    return token, jti


def auth_headers(
    role: UserRole = UserRole.ADMIN,
    user_id: Optional[str] = None,
    email: str = "staff@mindweal.in",
    therapist_id: Optional[str] = None,
) -> dict:
    """Generate Authorization header for a principal."""
    extra = {"therapist_id": str(therapist_id)} if therapist_id else None
    token, _ = create_access_token(user_id or str(uuid.uuid4()), role.value, email, extra)
    return {"Authorization": f"Bearer {token}"}


# ── Infrastructure Fixtures ───────────────────────────────────

@pytest_asyncio.fixture
async def database():
    """Fresh in-memory database per test; StaticPool keeps one shared connection."""
    db = Database(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await db.create_all()
    yield db
    await db.dispose()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def meeting_links():
    return FakeMeetingLinks()


@pytest.fixture
def notifications():
    return FakeNotifications()


@pytest_asyncio.fixture
async def client(database, fake_redis, meeting_links, notifications):
    from main import app

    app.state.database = database
    app.dependency_overrides[get_redis] = lambda: fake_redis
    app.dependency_overrides[get_meeting_link_provider] = lambda: meeting_links
    app.dependency_overrides[get_notification_dispatcher] = lambda: notifications

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ── Data Fixtures ─────────────────────────────────────────────

def every_day(start: time, end: time) -> List[TherapistAvailability]:
    return [
        TherapistAvailability(day_of_week=day, start_time=start, end_time=end, is_active=True)
        for day in range(7)
    ]


@pytest_asyncio.fixture
async def therapist(database) -> Therapist:
    """Works 09:00–12:00 every day, IST, 10 min buffer, 24h notice."""
    therapist = Therapist(
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
        working_hours=every_day(time(9, 0), time(12, 0)),
    )
    async with database.session() as db:
        db.add(therapist)
    return therapist


@pytest_asyncio.fixture
async def video_session_type(database, therapist) -> SessionType:
    session_type = SessionType(
        id=uuid.uuid4(),
        therapist_id=therapist.id,
        name="Individual Therapy",
        duration=50,
        meeting_type=MeetingType.VIDEO,
        is_active=True,
    )
    async with database.session() as db:
        db.add(session_type)
    return session_type


@pytest_asyncio.fixture
async def in_person_session_type(database, therapist) -> SessionType:
    session_type = SessionType(
        id=uuid.uuid4(),
        therapist_id=therapist.id,
        name="In-Person Consultation",
        duration=50,
        meeting_type=MeetingType.IN_PERSON,
        is_active=True,
    )
    async with database.session() as db:
        db.add(session_type)
    return session_type


def therapist_headers(therapist: Therapist) -> dict:
    return auth_headers(UserRole.THERAPIST, email=therapist.email, therapist_id=str(therapist.id))


def future_date(days: int = 3):
    """A calendar date comfortably past the 24h notice window."""
    return (datetime.now(timezone.utc) + timedelta(days=days)).date()
