"""
services/calendar/ics.py
iCalendar invites attached to confirmation emails and served at
GET /bookings/{reference}/ics.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

from icalendar import Alarm, Calendar, Event, vCalAddress, vText

from config.settings import settings

PRODID = "-//MindWeal//Booking System//EN"

MEETING_TYPE_LABELS = {
    "in_person": "In-Person",
    "video": "Video Call",
    "phone": "Phone Call",
}


def _value(enum_or_str) -> str:
    return getattr(enum_or_str, "value", enum_or_str)


def _location(meeting_type: str, meeting_link: Optional[str], meeting_location: Optional[str]) -> str:
    if meeting_type == "video" and meeting_link:
        return meeting_link
    if meeting_type == "in_person" and meeting_location:
        return meeting_location
    if meeting_type == "phone":
        return "Phone Call"
    return ""


def _address(name: str, email: str, **params) -> vCalAddress:
    address = vCalAddress(f"mailto:{email}")
    address.params["cn"] = vText(name)
    for key, value in params.items():
        address.params[key.replace("_", "-")] = vText(value)
    return address


def build_booking_ics(
    booking,
    therapist_name: str,
    therapist_email: str,
    session_type_name: Optional[str] = None,
    cancelled: bool = False,
    now: Optional[datetime] = None,
) -> bytes:
    """Serialize one booking as a REQUEST (or CANCEL) calendar object."""
    meeting_type = _value(booking.meeting_type)
    session_type_name = session_type_name or "Therapy Session"
    location = _location(meeting_type, booking.meeting_link, booking.meeting_location)
    title = f"Therapy Session - {therapist_name}"

    description_lines = [
        f"Therapy Session with {therapist_name}",
        f"Session Type: {session_type_name}",
        f"Format: {MEETING_TYPE_LABELS.get(meeting_type, meeting_type)}",
    ]
    if meeting_type == "video" and booking.meeting_link:
        description_lines.append(f"Meeting Link: {booking.meeting_link}")
    if meeting_type == "in_person" and booking.meeting_location:
        description_lines.append(f"Location: {booking.meeting_location}")
    description_lines += ["", f"Booking Reference: {booking.booking_reference}", "", f"{settings.EMAIL_FROM_NAME}"]

    cal = Calendar()
    cal.add("prodid", PRODID)
    cal.add("version", "2.0")
    cal.add("method", "CANCEL" if cancelled else "REQUEST")

    event = Event()
    event.add("uid", f"{booking.booking_reference}@{settings.EMAIL_FROM.split('@')[-1]}")
    event.add("dtstamp", now or datetime.now(timezone.utc))
    event.add("dtstart", booking.start_datetime.astimezone(timezone.utc))
    event.add("dtend", booking.end_datetime.astimezone(timezone.utc))
    event.add("summary", title)
    event.add("description", "\n".join(description_lines))
    if location:
        event.add("location", location)
    if meeting_type == "video" and booking.meeting_link:
        event.add("url", booking.meeting_link)
    event.add("status", "CANCELLED" if cancelled else "CONFIRMED")
    event.add("transp", "OPAQUE")
    event.add("sequence", 1 if cancelled else 0)
    event.add("organizer", _address(settings.EMAIL_FROM_NAME, therapist_email))
    for name, email in ((booking.client_name, booking.client_email), (therapist_name, therapist_email)):
        event.add(
            "attendee",
            _address(name, email, role="REQ-PARTICIPANT", partstat="NEEDS-ACTION", rsvp="TRUE"),
        )

    if not cancelled:
        for before, label in ((timedelta(hours=24), "tomorrow"), (timedelta(hours=1), "in 1 hour")):
            alarm = Alarm()
            alarm.add("action", "DISPLAY")
            alarm.add("trigger", -before)
            alarm.add("description", f"Reminder: {title} {label}")
            event.add_component(alarm)

    cal.add_component(event)
    return cal.to_ical()
