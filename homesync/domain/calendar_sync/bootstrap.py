"""Wires the calendar sync services together for the API process and the worker"""

import logging
from typing import Callable, Optional

import httpx
from sqlalchemy.orm import Session

from ...config import SYNC_RETRY_STORE, SYNC_SCHEDULER_MODE
from ...database import SessionLocal
from .adapters.registry import build_adapter_registry, build_token_clients
from .busy_slots import BusyTimeService
from .credentials import CredentialManager, TokenCipher
from .orchestrator import CalendarSyncOrchestrator
from .retry_queue import InMemoryRetryStore, RetryQueue, RetryStore, SqlRetryStore
from .scheduler import SyncScheduler

logger = logging.getLogger(__name__)


def build_retry_store(
    session_factory: Callable[[], Session],
    kind: str = SYNC_RETRY_STORE,
    scheduler_mode: str = SYNC_SCHEDULER_MODE,
) -> RetryStore:
    """
    Pick the retry store. Outside embedded mode the process that queues a retry
    is not the one that drains it, so items must live in the database.
    """
    if kind != "database" and scheduler_mode != "embedded":
        logger.warning(
            f"⚠️ SYNC_RETRY_STORE={kind} cannot be drained with SYNC_SCHEDULER_MODE={scheduler_mode}, "
            f"using the database retry store"
        )
        kind = "database"
    if kind == "database":
        logger.info("💾 Calendar sync retry queue persisted in database")
        return SqlRetryStore(session_factory)
    if kind != "memory":
        logger.warning(f"⚠️ Unknown SYNC_RETRY_STORE '{kind}', using in-memory retry queue")
    return InMemoryRetryStore()


def build_sync_scheduler(
    session_factory: Callable[[], Session] = SessionLocal,
    http_client: Optional[httpx.AsyncClient] = None,
    cipher: Optional[TokenCipher] = None,
    retry_store: Optional[RetryStore] = None,
) -> SyncScheduler:
    credentials = CredentialManager(
        session_factory,
        cipher or TokenCipher.from_config(),
        build_token_clients(http_client),
    )
    registry = build_adapter_registry(credentials, http_client)
    retry_queue = RetryQueue(retry_store or build_retry_store(session_factory))
    orchestrator = CalendarSyncOrchestrator(
        session_factory,
        registry,
        credentials,
        retry_queue,
        busy_time=BusyTimeService(session_factory, registry),
    )
    return SyncScheduler(orchestrator, credentials, retry_queue, session_factory)
