"""
Provider adapter base classes
Uniform async interface over external calendars plus the shared HTTP plumbing
(timeouts, 401 refresh-and-replay, status code to error mapping).
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

import httpx

from ....config import PROVIDER_REQUEST_TIMEOUT_SECONDS
from ..credentials import CredentialManager
from ..errors import AuthExpired, NotFound, ProviderError, RateLimited, UnknownProviderError
from ..schemas import AppointmentSnapshot, BusySlot, NormalizedEvent, ResolvedConnection

logger = logging.getLogger(__name__)


class CalendarAdapter(ABC):
    """One external calendar provider"""

    provider: str = ""

    @abstractmethod
    async def create_event(self, connection_id: int, appointment: AppointmentSnapshot) -> str:
        """Create (or update in place) the appointment's event. Returns the external event id."""

    @abstractmethod
    async def update_event(self, connection_id: int, appointment: AppointmentSnapshot) -> None:
        """Push the appointment's current fields to its existing event"""

    @abstractmethod
    async def delete_event(self, connection_id: int, appointment: AppointmentSnapshot) -> None:
        """Delete the appointment's event. An event that is already gone counts as deleted."""

    @abstractmethod
    async def list_events(self, connection_id: int, start: datetime, end: datetime) -> list[NormalizedEvent]:
        """All non-cancelled events overlapping [start, end), every page"""

    async def get_busy_slots(self, connection_id: int, start: datetime, end: datetime) -> list[BusySlot]:
        events = await self.list_events(connection_id, start, end)
        return [
            BusySlot(
                start=event.start,
                end=event.end,
                label=event.title or "Busy",
                source_connections=[connection_id],
                event_id=event.id,
            )
            for event in events
            if not event.is_all_day
        ]


def parse_retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


class ProviderHttpClient:
    """
    Sends provider requests with an explicit timeout.

    Uses the injected httpx.AsyncClient when given (tests, shared pools),
    otherwise opens a short-lived client per call.
    """

    def __init__(
        self,
        provider: str,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = PROVIDER_REQUEST_TIMEOUT_SECONDS,
    ):
        self.provider = provider
        self._http_client = http_client
        self._timeout = timeout

    async def send(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            if self._http_client is not None:
                return await self._http_client.request(method, url, timeout=self._timeout, **kwargs)
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                return await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise UnknownProviderError(f"{self.provider} request timed out: {method} {url}") from e
        except httpx.HTTPError as e:
            raise UnknownProviderError(f"{self.provider} transport error: {e}") from e


class HttpCalendarAdapter(CalendarAdapter):
    """Adapter talking to a JSON REST API with bearer tokens from CredentialManager"""

    def __init__(
        self,
        credentials: CredentialManager,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = PROVIDER_REQUEST_TIMEOUT_SECONDS,
    ):
        self._credentials = credentials
        self._http = ProviderHttpClient(self.provider, http_client, timeout)

    async def _resolve(self, connection_id: int) -> ResolvedConnection:
        return await self._credentials.resolve(connection_id)

    async def _request(
        self,
        resolved: ResolvedConnection,
        method: str,
        url: str,
        headers: Optional[dict] = None,
        **kwargs,
    ) -> httpx.Response:
        """Authorized request; a 401 refreshes credentials and replays once"""
        response = await self._http.send(
            method, url, headers=self._headers(resolved.access_token, headers), **kwargs
        )

        if response.status_code == 401:
            logger.info(f"🔄 {self.provider} returned 401 for connection {resolved.connection_id}, refreshing token")
            await self._credentials.refresh(resolved.connection_id)
            resolved = await self._resolve(resolved.connection_id)
            response = await self._http.send(
                method, url, headers=self._headers(resolved.access_token, headers), **kwargs
            )
            if response.status_code == 401:
                raise AuthExpired(
                    f"{self.provider} rejected refreshed credentials for connection {resolved.connection_id}",
                    status_code=401,
                )

        if response.is_success:
            return response

        raise self._map_error(response)

    @staticmethod
    def _headers(access_token: str, extra: Optional[dict] = None) -> dict:
        headers = {"Authorization": f"Bearer {access_token}", "Content-Type": "application/json"}
        if extra:
            headers.update(extra)
        return headers

    def _is_rate_limited(self, response: httpx.Response) -> bool:
        return response.status_code == 429

    def _map_error(self, response: httpx.Response) -> ProviderError:
        status = response.status_code
        detail = response.text[:500]

        if status in (404, 410):
            return NotFound(f"{self.provider} event not found", status_code=status)
        if self._is_rate_limited(response):
            return RateLimited(
                f"{self.provider} rate limit exceeded",
                status_code=status,
                retry_after=parse_retry_after(response),
            )
        if status == 401:
            return AuthExpired(f"{self.provider} credentials rejected", status_code=status)
        return UnknownProviderError(f"{self.provider} API error {status}: {detail}", status_code=status)
