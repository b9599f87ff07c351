"""
services/calendar/google_meet.py
Google Meet links via the Google Calendar REST API.

Authenticates as a service account with google-auth, then inserts an event
with a hangoutsMeet conference request. The event id is derived from the
booking id, so a retried insert finds the existing event instead of creating
a second one. Any failure yields None so the booking proceeds without a link.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional, Sequence

import httpx
from google.auth.transport.requests import Request
from google.oauth2 import service_account

from config.settings import Settings, settings

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_API = "https://www.googleapis.com/calendar/v3"
CALENDAR_SCOPES = ["https://www.googleapis.com/auth/calendar"]


def build_credentials(config: Settings) -> service_account.Credentials:
    # Keys pasted into .env usually carry escaped newlines
    return service_account.Credentials.from_service_account_info(
        {
            "client_email": config.GOOGLE_SERVICE_ACCOUNT_EMAIL,
            "private_key": config.GOOGLE_SERVICE_ACCOUNT_PRIVATE_KEY.replace("\\n", "\n"),
            "token_uri": GOOGLE_TOKEN_URL,
        },
        scopes=CALENDAR_SCOPES,
    )


def event_id_for(idempotency_key: str) -> str:
    """Calendar event ids must be base32hex; a UUID's hex form qualifies."""
    return uuid.UUID(idempotency_key).hex


class GoogleMeetLinkProvider:
    """MeetingLinkProvider backed by a Google service account."""

    def __init__(
        self,
        config: Settings = settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        credentials=None,
    ):
        self.config = config
        self.transport = transport
        self._credentials = credentials

    @property
    def configured(self) -> bool:
        return self._credentials is not None or self.config.google_calendar_configured

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.config.GOOGLE_API_TIMEOUT_SECONDS,
            transport=self.transport,
        )

    async def _get_access_token(self) -> str:
        if self._credentials is None:
            self._credentials = build_credentials(self.config)
        if not self._credentials.valid:
            # google-auth refreshes over a blocking session
            await asyncio.to_thread(self._credentials.refresh, Request())
        return self._credentials.token

    @staticmethod
    def _event_body(
        summary: str,
        description: str,
        start: datetime,
        end: datetime,
        attendees: Sequence[str],
        idempotency_key: str,
    ) -> dict:
        return {
            "id": event_id_for(idempotency_key),
            "summary": summary,
            "description": description,
            "start": {"dateTime": start.astimezone(timezone.utc).isoformat(), "timeZone": "UTC"},
            "end": {"dateTime": end.astimezone(timezone.utc).isoformat(), "timeZone": "UTC"},
            "attendees": [{"email": email} for email in attendees],
            "conferenceData": {
                "createRequest": {
                    "requestId": idempotency_key,
                    "conferenceSolutionKey": {"type": "hangoutsMeet"},
                }
            },
        }

    async def create_meeting_link(
        self,
        summary: str,
        description: str,
        start: datetime,
        end: datetime,
        attendees: Sequence[str],
        idempotency_key: str,
    ) -> Optional[str]:
        if not self.configured:
            logger.warning("Google Calendar API not configured. Skipping Meet link generation.")
            return None

        events_url = f"{GOOGLE_CALENDAR_API}/calendars/{self.config.GOOGLE_CALENDAR_ID}/events"
        try:
            token = await self._get_access_token()
            headers = {"Authorization": f"Bearer {token}"}
            async with self._client() as client:
                response = await client.post(
                    events_url,
                    params={"conferenceDataVersion": 1, "sendUpdates": "none"},
                    headers=headers,
                    json=self._event_body(summary, description, start, end, attendees, idempotency_key),
                )
                if response.status_code == 409:
                    # Event already inserted by an earlier attempt
                    response = await client.get(
                        f"{events_url}/{event_id_for(idempotency_key)}",
                        headers=headers,
                    )
                response.raise_for_status()
                link = response.json().get("hangoutLink")
        except Exception as e:
            logger.error(f"Failed to create Google Meet link ({idempotency_key}): {str(e)}")
            return None

        if not link:
            logger.warning(f"Calendar event created without a Meet link ({idempotency_key})")
        return link


# ── Dependency ────────────────────────────────────────────────
_provider: Optional[GoogleMeetLinkProvider] = None


def get_meeting_link_provider() -> GoogleMeetLinkProvider:
    """FastAPI dependency. One provider per process so the access token is reused."""
    global _provider
    if _provider is None:
        _provider = GoogleMeetLinkProvider()
    return _provider
