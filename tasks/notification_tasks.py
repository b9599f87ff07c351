"""
tasks/notification_tasks.py
Celery tasks for booking emails (confirmation, cancellation, reminders).

Tasks re-read the booking from the database so the email always reflects
the committed row, and are safe to run twice.

Usage (through services/notification/dispatch.py):
    send_booking_confirmation.delay(booking_id=str(booking.id), recipient_role="client")
"""

import html
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID
from zoneinfo import ZoneInfo

from celery import Task
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from config.settings import settings
from services.calendar.ics import build_booking_ics
from tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


def sync_database_url(url: str) -> str:
    """Workers use a blocking driver for the same database."""
    return url.replace("+asyncpg", "+psycopg2").replace("+aiosqlite", "")


# ── Base Task with DB session ──────────────────────────────────────────────────

class DatabaseTask(Task):
    """Base class that provides a synchronous DB session for tasks."""
    abstract = True
    _session_factory = None

    def get_session(self):
        """Get a synchronous SQLAlchemy session (Celery runs sync by default)."""
        if DatabaseTask._session_factory is None:
            engine = create_engine(sync_database_url(settings.DATABASE_URL), pool_pre_ping=True)
            DatabaseTask._session_factory = sessionmaker(bind=engine, expire_on_commit=False)
        return DatabaseTask._session_factory()


# ── Core Delivery ──────────────────────────────────────────────────────────────

def _send_email(to_email: str, subject: str, html_body: str, ics: Optional[bytes] = None) -> bool:
    """Send transactional email via Resend. Returns True on success."""
    if not settings.RESEND_API_KEY:
        logger.warning(f"RESEND_API_KEY not set; email to {to_email} not sent")
        return False
    try:
        import resend
        resend.api_key = settings.RESEND_API_KEY
        params = {
            "from": f"{settings.EMAIL_FROM_NAME} <{settings.EMAIL_FROM}>",
            "to": [to_email],
            "subject": subject,
            "html": html_body,
        }
        if ics:
            params["attachments"] = [{"filename": "booking.ics", "content": list(ics)}]
        resend.Emails.send(params)
        return True
    except Exception as e:
        logger.warning(f"Email send failed: {e}")
        return False


# ── Email Templates ────────────────────────────────────────────────────────────

TEMPLATES = {
    "BOOKING_CONFIRMED": {
        "client": {
            "subject": "Booking Confirmed – {booking_reference}",
            "body": (
                "<p>Hi {client_name},</p>"
                "<p>Your {session_type} with {therapist_name} is confirmed for "
                "<strong>{when}</strong>.</p>"
                "<p>{where}</p>"
                "<p>Booking reference: <strong>{booking_reference}</strong></p>"
                "<p><a href=\"{manage_url}\">Manage your booking</a></p>"
            ),
        },
        "therapist": {
            "subject": "New Booking – {client_name} on {when}",
            "body": (
                "<p>Hi {therapist_name},</p>"
                "<p>{client_name} ({client_email}) booked a {session_type} for "
                "<strong>{when}</strong>.</p>"
                "<p>{where}</p>"
                "<p>Client notes: {client_notes}</p>"
                "<p>Booking reference: <strong>{booking_reference}</strong></p>"
            ),
        },
    },
    "BOOKING_CANCELLED": {
        "client": {
            "subject": "Booking Cancelled – {booking_reference}",
            "body": (
                "<p>Hi {client_name},</p>"
                "<p>Your {session_type} with {therapist_name} on <strong>{when}</strong> "
                "has been cancelled.</p>"
                "<p>Reason: {reason}</p>"
                "<p><a href=\"{book_url}\">Book another session</a></p>"
            ),
        },
        "therapist": {
            "subject": "Booking Cancelled – {client_name} on {when}",
            "body": (
                "<p>Hi {therapist_name},</p>"
                "<p>The {session_type} with {client_name} on <strong>{when}</strong> "
                "has been cancelled. The slot is open again.</p>"
                "<p>Reason: {reason}</p>"
            ),
        },
    },
    "BOOKING_REMINDER": {
        "client": {
            "subject": "Reminder: your session on {when}",
            "body": (
                "<p>Hi {client_name},</p>"
                "<p>This is a reminder of your {session_type} with {therapist_name} "
                "on <strong>{when}</strong>.</p>"
                "<p>{where}</p>"
                "<p>Booking reference: <strong>{booking_reference}</strong></p>"
            ),
        },
    },
}


# Values typed by clients or staff. Escaped before they reach an HTML body.
USER_FIELDS = ("client_name", "client_email", "client_notes", "therapist_name", "session_type", "reason")


def _escape(value) -> str:
    return html.escape(str(value), quote=True)


def _render(template: str, **kwargs) -> str:
    """Simple string template renderer."""
    for key, value in kwargs.items():
        template = template.replace(f"{{{key}}}", str(value))
    return template


def _where(booking) -> str:
    """Meeting details as an HTML fragment."""
    meeting_type = getattr(booking.meeting_type, "value", booking.meeting_type)
    if meeting_type == "video":
        if booking.meeting_link:
            link = _escape(booking.meeting_link)
            return f"Join online: <a href=\"{link}\">{link}</a>"
        return "The video link will be shared before your session."
    if meeting_type == "in_person":
        return f"Location: {_escape(booking.meeting_location or settings.CLINIC_ADDRESS)}"
    return "Your therapist will call you on the number you provided."


def template_vars(booking, therapist, session_type=None) -> dict:
    tz = ZoneInfo(booking.timezone or settings.DEFAULT_TIMEZONE)
    when = booking.start_datetime.astimezone(tz).strftime("%A, %d %B %Y at %I:%M %p %Z")
    return {
        "booking_reference": booking.booking_reference,
        "client_name": booking.client_name,
        "client_email": booking.client_email,
        "client_notes": booking.client_notes or "—",
        "therapist_name": therapist.name,
        "session_type": session_type.name if session_type else "session",
        "when": when,
        "where": _where(booking),
        "reason": booking.cancellation_reason or "Not provided",
        "manage_url": f"{settings.FRONTEND_URL}/bookings/{booking.booking_reference}",
        "book_url": f"{settings.FRONTEND_URL}/therapists/{therapist.slug}",
    }


def build_email(kind: str, recipient_role: str, booking, therapist, session_type=None):
    """Returns (to_email, subject, html, ics_bytes) for one recipient."""
    tmpl = TEMPLATES[kind][recipient_role]
    values = template_vars(booking, therapist, session_type)
    to_email = booking.client_email if recipient_role == "client" else therapist.email
    ics = None
    if kind != "BOOKING_REMINDER":
        ics = build_booking_ics(
            booking,
            therapist.name,
            therapist.email,
            session_type.name if session_type else None,
            cancelled=kind == "BOOKING_CANCELLED",
        )
    body_values = {
        key: _escape(value) if key in USER_FIELDS else value
        for key, value in values.items()
    }
    return to_email, _render(tmpl["subject"], **values), _render(tmpl["body"], **body_values), ics


def _load(db, booking_id: str):
    from shared.models.models import Booking, SessionType, Therapist

    booking = db.get(Booking, UUID(booking_id))
    if not booking:
        return None, None, None
    therapist = db.get(Therapist, booking.therapist_id)
    session_type = db.get(SessionType, booking.session_type_id) if booking.session_type_id else None
    return booking, therapist, session_type


def _deliver(task: DatabaseTask, kind: str, booking_id: str, recipient_role: str) -> bool:
    db = task.get_session()
    try:
        booking, therapist, session_type = _load(db, booking_id)
        if not booking or not therapist:
            logger.error(f"{kind}: booking {booking_id} not found")
            return False
        to_email, subject, html, ics = build_email(kind, recipient_role, booking, therapist, session_type)
    finally:
        db.close()

    if not _send_email(to_email, subject, html, ics):
        raise task.retry(countdown=60 * (2 ** task.request.retries))
    logger.info(f"{kind} email sent to {recipient_role} for booking {booking.booking_reference}")
    return True


# ── Booking Notification Tasks ─────────────────────────────────────────────────

@celery_app.task(bind=True, base=DatabaseTask, max_retries=3, default_retry_delay=60)
def send_booking_confirmation(self, booking_id: str, recipient_role: str):
    """Email the client or therapist a confirmation with a calendar invite."""
    return _deliver(self, "BOOKING_CONFIRMED", booking_id, recipient_role)


@celery_app.task(bind=True, base=DatabaseTask, max_retries=3, default_retry_delay=60)
def send_booking_cancellation(self, booking_id: str, recipient_role: str):
    """Email a cancellation notice with a CANCEL calendar object."""
    return _deliver(self, "BOOKING_CANCELLED", booking_id, recipient_role)


# ── Periodic / Scheduled Tasks ────────────────────────────────────────────────

@celery_app.task(bind=True, base=DatabaseTask)
def send_booking_reminders(self, now: Optional[str] = None):
    """
    Beat task. Emails clients whose confirmed session starts within
    REMINDER_HOURS_BEFORE and who have not been reminded yet.
    """
    from shared.models.models import Booking, BookingStatus, SessionType, Therapist

    current = datetime.fromisoformat(now) if now else datetime.now(timezone.utc)
    window_end = current + timedelta(hours=settings.REMINDER_HOURS_BEFORE)

    db = self.get_session()
    sent = 0
    try:
        bookings = db.execute(
            select(Booking).where(
                Booking.status == BookingStatus.CONFIRMED,
                Booking.reminder_sent_at.is_(None),
                Booking.start_datetime > current,
                Booking.start_datetime <= window_end,
            )
        ).scalars().all()

        for booking in bookings:
            therapist = db.get(Therapist, booking.therapist_id)
            if not therapist:
                continue
            session_type = db.get(SessionType, booking.session_type_id) if booking.session_type_id else None
            to_email, subject, html, _ = build_email("BOOKING_REMINDER", "client", booking, therapist, session_type)
            if _send_email(to_email, subject, html):
                booking.reminder_sent_at = current
                sent += 1

        db.commit()
        logger.info(f"Sent {sent} booking reminders")
    except Exception as e:
        db.rollback()
        logger.exception(f"send_booking_reminders failed: {e}")
    finally:
        db.close()
    return sent
