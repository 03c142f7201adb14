"""
Google Calendar adapter
Handles calendar event creation, updates, deletion and listing via Calendar API v3
"""

import hashlib
import logging
from datetime import datetime, timedelta
from typing import Any, Optional

import httpx

from ....config import GOOGLE_CLIENT_ID, GOOGLE_CLIENT_SECRET, PROVIDER_REQUEST_TIMEOUT_SECONDS
from ....models_calendar_sync import PROVIDER_GOOGLE
from ....shared.timeutils import parse_provider_datetime, to_rfc3339, utcnow
from ..credentials import TokenClient
from ..errors import CredentialError, NotFound, ProviderError, ReauthRequired
from ..schemas import AppointmentSnapshot, CredentialValidation, NormalizedEvent, OAuthCredentials
from .base import HttpCalendarAdapter, ProviderHttpClient

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_API = "https://www.googleapis.com/calendar/v3"

RATE_LIMIT_REASONS = {"rateLimitExceeded", "userRateLimitExceeded"}


def google_event_id(appointment_id: int, connection_id: int) -> str:
    """
    Client-supplied event id for an (appointment, connection) pair.

    Google ids must be base32hex (a-v, 0-9); hex digits and "hs" qualify.
    Re-sending a create with the same id yields 409 instead of a duplicate.
    """
    digest = hashlib.sha1(f"{appointment_id}:{connection_id}".encode()).hexdigest()
    return f"hs{digest}"


def build_event_body(appointment: AppointmentSnapshot) -> dict[str, Any]:
    event_data: dict[str, Any] = {
        "summary": appointment.summary,
        "description": appointment.description,
        "start": {"dateTime": to_rfc3339(appointment.scheduled_start), "timeZone": "UTC"},
        "end": {"dateTime": to_rfc3339(appointment.scheduled_end), "timeZone": "UTC"},
        "status": "confirmed",
        "reminders": {
            "useDefault": False,
            "overrides": [
                {"method": "email", "minutes": 24 * 60},
                {"method": "popup", "minutes": 30},
            ],
        },
        "extendedProperties": {"private": {"homesync_appointment_id": str(appointment.id)}},
    }

    if appointment.property_address:
        event_data["location"] = appointment.property_address

    if appointment.customer_email:
        event_data["attendees"] = [
            {"email": appointment.customer_email, "displayName": appointment.customer_name or ""}
        ]

    return event_data


def normalize_event(item: dict[str, Any]) -> Optional[NormalizedEvent]:
    """Google event resource -> NormalizedEvent; None for cancelled or malformed items"""
    if item.get("status") == "cancelled":
        return None

    start = item.get("start") or {}
    end = item.get("end") or {}
    is_all_day = "date" in start and "dateTime" not in start
    start_raw = start.get("dateTime") or start.get("date")
    end_raw = end.get("dateTime") or end.get("date")
    if not start_raw or not end_raw:
        return None

    return NormalizedEvent(
        id=item["id"],
        title=item.get("summary"),
        start=parse_provider_datetime(start_raw),
        end=parse_provider_datetime(end_raw),
        is_all_day=is_all_day,
        attendees=item.get("attendees") or [],
    )


class GoogleCalendarAdapter(HttpCalendarAdapter):
    provider = PROVIDER_GOOGLE

    @staticmethod
    def _events_url(calendar_id: str) -> str:
        return f"{GOOGLE_CALENDAR_API}/calendars/{calendar_id}/events"

    def _is_rate_limited(self, response: httpx.Response) -> bool:
        if response.status_code == 429:
            return True
        if response.status_code != 403:
            return False
        try:
            errors = response.json().get("error", {}).get("errors", [])
        except ValueError:
            return False
        return any(error.get("reason") in RATE_LIMIT_REASONS for error in errors)

    async def create_event(self, connection_id: int, appointment: AppointmentSnapshot) -> str:
        existing = appointment.external_event_id(connection_id)
        if existing:
            logger.info(f"ℹ️ Appointment {appointment.id} already has Google event {existing}, updating in place")
            await self.update_event(connection_id, appointment)
            return existing

        resolved = await self._resolve(connection_id)
        event_id = google_event_id(appointment.id, connection_id)
        event_data = build_event_body(appointment)
        event_data["id"] = event_id
        url = self._events_url(resolved.calendar_id)

        try:
            response = await self._request(resolved, "POST", url, json=event_data)
        except ProviderError as e:
            if e.status_code != 409:
                raise
            logger.info(f"ℹ️ Google event {event_id} already exists, updating it")
            await self._request(resolved, "PUT", f"{url}/{event_id}", json=event_data)
            return event_id

        created_id = response.json().get("id") or event_id
        logger.info(f"✅ Google Calendar event created: {created_id}")
        return created_id

    async def update_event(self, connection_id: int, appointment: AppointmentSnapshot) -> None:
        event_id = appointment.external_event_id(connection_id)
        if not event_id:
            logger.info(f"ℹ️ Appointment {appointment.id} has no Google event on connection {connection_id}")
            return

        resolved = await self._resolve(connection_id)
        await self._request(
            resolved,
            "PUT",
            f"{self._events_url(resolved.calendar_id)}/{event_id}",
            json=build_event_body(appointment),
        )
        logger.info(f"✅ Google Calendar event updated: {event_id}")

    async def delete_event(self, connection_id: int, appointment: AppointmentSnapshot) -> None:
        event_id = appointment.external_event_id(connection_id)
        if not event_id:
            logger.info(f"ℹ️ Appointment {appointment.id} has no Google event on connection {connection_id}")
            return

        resolved = await self._resolve(connection_id)
        try:
            await self._request(resolved, "DELETE", f"{self._events_url(resolved.calendar_id)}/{event_id}")
        except NotFound:
            logger.info(f"ℹ️ Google event {event_id} already deleted")
            return
        logger.info(f"✅ Google Calendar event deleted: {event_id}")

    async def list_events(self, connection_id: int, start: datetime, end: datetime) -> list[NormalizedEvent]:
        resolved = await self._resolve(connection_id)
        url = self._events_url(resolved.calendar_id)
        params: dict[str, Any] = {
            "timeMin": to_rfc3339(start),
            "timeMax": to_rfc3339(end),
            "singleEvents": "true",
            "orderBy": "startTime",
            "maxResults": 250,
        }

        events: list[NormalizedEvent] = []
        while True:
            response = await self._request(resolved, "GET", url, params=params)
            payload = response.json()
            for item in payload.get("items", []):
                event = normalize_event(item)
                if event:
                    events.append(event)

            page_token = payload.get("nextPageToken")
            if not page_token:
                break
            params = {**params, "pageToken": page_token}

        return events


class GoogleTokenClient(TokenClient):
    """Google OAuth token refresh and validation"""

    provider = PROVIDER_GOOGLE
    supports_refresh = True

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        timeout: float = PROVIDER_REQUEST_TIMEOUT_SECONDS,
    ):
        self._http = ProviderHttpClient(self.provider, http_client, timeout)
        self._client_id = client_id or GOOGLE_CLIENT_ID
        self._client_secret = client_secret or GOOGLE_CLIENT_SECRET

    async def refresh(self, credentials: OAuthCredentials) -> OAuthCredentials:
        if not credentials.refresh_token:
            raise ReauthRequired("Google connection has no refresh token, reconnect required")

        response = await self._http.send(
            "POST",
            GOOGLE_TOKEN_URL,
            data={
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                "refresh_token": credentials.refresh_token,
                "grant_type": "refresh_token",
            },
        )

        if response.status_code != 200:
            try:
                error = response.json().get("error")
            except ValueError:
                error = None
            if error == "invalid_grant":
                raise ReauthRequired("Google refresh token revoked, reconnect required")
            logger.error(f"❌ Token refresh failed: {response.text}")
            raise CredentialError(f"Google token refresh failed with status {response.status_code}")

        tokens = response.json()
        access_token = tokens.get("access_token")
        if not access_token:
            raise CredentialError("No access token in Google refresh response")

        return OAuthCredentials(
            access_token=access_token,
            refresh_token=tokens.get("refresh_token") or credentials.refresh_token,
            expires_at=utcnow() + timedelta(seconds=int(tokens.get("expires_in", 3600))),
            scope=tokens.get("scope") or credentials.scope,
            token_type=tokens.get("token_type", "Bearer"),
        )

    async def validate(self, calendar_id: str, credentials: OAuthCredentials) -> CredentialValidation:
        response = await self._http.send(
            "GET",
            f"{GOOGLE_CALENDAR_API}/calendars/{calendar_id}",
            headers={"Authorization": f"Bearer {credentials.access_token}"},
        )
        if response.status_code == 200:
            return CredentialValidation(valid=True)
        if response.status_code == 401:
            return CredentialValidation(valid=False, error="Token rejected by Google")
        return CredentialValidation(valid=False, error=f"Google validation failed with status {response.status_code}")
