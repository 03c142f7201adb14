"""
Outlook calendar adapter (Microsoft Graph v1.0)
"""

import logging
import uuid
from datetime import datetime
from typing import Any, Optional

import httpx

from ....config import PROVIDER_REQUEST_TIMEOUT_SECONDS
from ....models_calendar_sync import PROVIDER_OUTLOOK
from ....shared.timeutils import parse_provider_datetime, to_naive_utc
from ..credentials import TokenClient
from ..errors import NotFound, ReauthRequired
from ..schemas import AppointmentSnapshot, CredentialValidation, NormalizedEvent, OAuthCredentials
from .base import HttpCalendarAdapter, ProviderHttpClient

logger = logging.getLogger(__name__)

GRAPH_API = "https://graph.microsoft.com/v1.0"

# Graph returns event times in this zone when asked via the Prefer header
PREFER_UTC = {"Prefer": 'outlook.timezone="UTC"'}

_TRANSACTION_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, "https://homesync.app/calendar-sync")


def outlook_transaction_id(appointment_id: int, connection_id: int) -> str:
    """Graph de-duplicates creates that repeat a transactionId"""
    return str(uuid.uuid5(_TRANSACTION_NAMESPACE, f"{appointment_id}:{connection_id}"))


def _graph_datetime(value: datetime) -> dict[str, str]:
    return {"dateTime": to_naive_utc(value).replace(microsecond=0).isoformat(), "timeZone": "UTC"}


def build_event_body(appointment: AppointmentSnapshot) -> dict[str, Any]:
    event_data: dict[str, Any] = {
        "subject": appointment.summary,
        "body": {"contentType": "text", "content": appointment.description},
        "start": _graph_datetime(appointment.scheduled_start),
        "end": _graph_datetime(appointment.scheduled_end),
        "isReminderOn": True,
        "reminderMinutesBeforeStart": 30,
    }

    if appointment.property_address:
        event_data["location"] = {"displayName": appointment.property_address}

    if appointment.customer_email:
        event_data["attendees"] = [
            {
                "emailAddress": {
                    "address": appointment.customer_email,
                    "name": appointment.customer_name or "",
                },
                "type": "required",
            }
        ]

    return event_data


def normalize_event(item: dict[str, Any]) -> Optional[NormalizedEvent]:
    if item.get("isCancelled"):
        return None

    start_raw = (item.get("start") or {}).get("dateTime")
    end_raw = (item.get("end") or {}).get("dateTime")
    if not start_raw or not end_raw:
        return None

    return NormalizedEvent(
        id=item["id"],
        title=item.get("subject"),
        start=parse_provider_datetime(start_raw),
        end=parse_provider_datetime(end_raw),
        is_all_day=bool(item.get("isAllDay")),
        attendees=item.get("attendees") or [],
    )


class OutlookCalendarAdapter(HttpCalendarAdapter):
    provider = PROVIDER_OUTLOOK

    @staticmethod
    def _calendar_path(calendar_id: str) -> str:
        if not calendar_id or calendar_id == "primary":
            return f"{GRAPH_API}/me"
        return f"{GRAPH_API}/me/calendars/{calendar_id}"

    async def create_event(self, connection_id: int, appointment: AppointmentSnapshot) -> str:
        existing = appointment.external_event_id(connection_id)
        if existing:
            logger.info(f"ℹ️ Appointment {appointment.id} already has Outlook event {existing}, updating in place")
            await self.update_event(connection_id, appointment)
            return existing

        resolved = await self._resolve(connection_id)
        event_data = build_event_body(appointment)
        event_data["transactionId"] = outlook_transaction_id(appointment.id, connection_id)

        response = await self._request(
            resolved, "POST", f"{self._calendar_path(resolved.calendar_id)}/events", json=event_data
        )
        event_id = response.json()["id"]
        logger.info(f"✅ Outlook event created: {event_id}")
        return event_id

    async def update_event(self, connection_id: int, appointment: AppointmentSnapshot) -> None:
        event_id = appointment.external_event_id(connection_id)
        if not event_id:
            logger.info(f"ℹ️ Appointment {appointment.id} has no Outlook event on connection {connection_id}")
            return

        resolved = await self._resolve(connection_id)
        await self._request(resolved, "PATCH", f"{GRAPH_API}/me/events/{event_id}", json=build_event_body(appointment))
        logger.info(f"✅ Outlook event updated: {event_id}")

    async def delete_event(self, connection_id: int, appointment: AppointmentSnapshot) -> None:
        event_id = appointment.external_event_id(connection_id)
        if not event_id:
            logger.info(f"ℹ️ Appointment {appointment.id} has no Outlook event on connection {connection_id}")
            return

        resolved = await self._resolve(connection_id)
        try:
            await self._request(resolved, "DELETE", f"{GRAPH_API}/me/events/{event_id}")
        except NotFound:
            logger.info(f"ℹ️ Outlook event {event_id} already deleted")
            return
        logger.info(f"✅ Outlook event deleted: {event_id}")

    async def list_events(self, connection_id: int, start: datetime, end: datetime) -> list[NormalizedEvent]:
        resolved = await self._resolve(connection_id)
        url: Optional[str] = f"{self._calendar_path(resolved.calendar_id)}/calendarView"
        params: Optional[dict[str, Any]] = {
            "startDateTime": _graph_datetime(start)["dateTime"],
            "endDateTime": _graph_datetime(end)["dateTime"],
            "$top": 100,
        }

        events: list[NormalizedEvent] = []
        while url:
            response = await self._request(resolved, "GET", url, params=params, headers=PREFER_UTC)
            payload = response.json()
            for item in payload.get("value", []):
                event = normalize_event(item)
                if event:
                    events.append(event)
            # nextLink already carries the query
            url = payload.get("@odata.nextLink")
            params = None

        return events


class OutlookTokenClient(TokenClient):
    """
    Outlook credentials cannot be refreshed silently here; an expired token
    means the owner has to reconnect the calendar.
    """

    provider = PROVIDER_OUTLOOK
    supports_refresh = False

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = PROVIDER_REQUEST_TIMEOUT_SECONDS,
    ):
        self._http = ProviderHttpClient(self.provider, http_client, timeout)

    async def refresh(self, credentials: OAuthCredentials) -> OAuthCredentials:
        raise ReauthRequired("Outlook token expired, reconnect required")

    async def validate(self, calendar_id: str, credentials: OAuthCredentials) -> CredentialValidation:
        response = await self._http.send(
            "GET",
            f"{GRAPH_API}/me",
            headers={"Authorization": f"Bearer {credentials.access_token}"},
        )
        if response.status_code == 200:
            return CredentialValidation(valid=True)
        if response.status_code == 401:
            return CredentialValidation(valid=False, error="Token rejected by Microsoft Graph")
        return CredentialValidation(valid=False, error=f"Graph validation failed with status {response.status_code}")
