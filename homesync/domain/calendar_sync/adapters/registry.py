"""Provider -> adapter lookup, selected once per connection"""

import logging
from typing import Optional

import httpx

from ..credentials import CredentialManager, TokenClient
from ..errors import UnsupportedProviderError
from .base import CalendarAdapter
from .google import GoogleCalendarAdapter, GoogleTokenClient
from .outlook import OutlookCalendarAdapter, OutlookTokenClient

logger = logging.getLogger(__name__)


class AdapterRegistry:
    def __init__(self, adapters: Optional[list[CalendarAdapter]] = None):
        self._adapters: dict[str, CalendarAdapter] = {}
        for adapter in adapters or []:
            self.register(adapter)

    def register(self, adapter: CalendarAdapter) -> None:
        self._adapters[adapter.provider] = adapter
        logger.debug(f"Registered calendar adapter: {adapter.provider}")

    def for_provider(self, provider: str) -> CalendarAdapter:
        adapter = self._adapters.get(provider)
        if adapter is None:
            raise UnsupportedProviderError(f"Unsupported calendar provider: {provider}")
        return adapter

    @property
    def providers(self) -> list[str]:
        return sorted(self._adapters)


def build_token_clients(http_client: Optional[httpx.AsyncClient] = None) -> dict[str, TokenClient]:
    clients: list[TokenClient] = [GoogleTokenClient(http_client), OutlookTokenClient(http_client)]
    return {client.provider: client for client in clients}


def build_adapter_registry(
    credentials: CredentialManager, http_client: Optional[httpx.AsyncClient] = None
) -> AdapterRegistry:
    return AdapterRegistry(
        [
            GoogleCalendarAdapter(credentials, http_client),
            OutlookCalendarAdapter(credentials, http_client),
        ]
    )
