"""Shared fixtures: in-memory database, fake clock, fake adapters and token clients."""

import os
from datetime import datetime, timedelta
from typing import Optional

from cryptography.fernet import Fernet

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["CALENDAR_ENCRYPTION_KEY"] = Fernet.generate_key().decode()
os.environ["SYNC_ADMIN_TOKEN"] = "test-admin-token"
os.environ["DB_LOG_SLOW_QUERIES"] = "false"

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from homesync import models, models_calendar_sync  # noqa: E402
from homesync.database import Base  # noqa: E402
from homesync.domain.calendar_sync.adapters.base import CalendarAdapter  # noqa: E402
from homesync.domain.calendar_sync.adapters.registry import AdapterRegistry  # noqa: E402
from homesync.domain.calendar_sync.busy_slots import BusyTimeService  # noqa: E402
from homesync.domain.calendar_sync.credentials import (  # noqa: E402
    CredentialManager,
    TokenCipher,
    TokenClient,
)
from homesync.domain.calendar_sync.errors import NotFound, ReauthRequired  # noqa: E402
from homesync.domain.calendar_sync.orchestrator import CalendarSyncOrchestrator  # noqa: E402
from homesync.domain.calendar_sync.retry_queue import InMemoryRetryStore, RetryQueue  # noqa: E402
from homesync.domain.calendar_sync.scheduler import SyncScheduler  # noqa: E402
from homesync.domain.calendar_sync.schemas import (  # noqa: E402
    AppointmentSnapshot,
    CredentialValidation,
    NormalizedEvent,
    OAuthCredentials,
)

START = datetime(2024, 1, 15, 9, 0)


class FrozenClock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeTokenClient(TokenClient):
    def __init__(self, provider: str, supports_refresh: bool):
        self.provider = provider
        self.supports_refresh = supports_refresh
        self.refresh_calls = 0
        self.refresh_error: Optional[Exception] = None
        self.validation = CredentialValidation(valid=True)

    async def refresh(self, credentials: OAuthCredentials) -> OAuthCredentials:
        self.refresh_calls += 1
        if self.refresh_error is not None:
            raise self.refresh_error
        if not self.supports_refresh:
            raise ReauthRequired(f"{self.provider} token expired, reconnect required")
        return OAuthCredentials(
            access_token=f"refreshed-{self.refresh_calls}",
            expires_at=START + timedelta(days=1),
        )

    async def validate(self, calendar_id: str, credentials: OAuthCredentials) -> CredentialValidation:
        return self.validation


class FakeAdapter(CalendarAdapter):
    """In-memory calendar per connection with injectable failures"""

    def __init__(self, provider: str):
        self.provider = provider
        self.calendars: dict[int, dict[str, NormalizedEvent]] = {}
        self.calls: list[tuple[str, int, Optional[int]]] = []
        self.errors: dict[tuple[str, int], Exception] = {}

    def fail(self, operation: str, connection_id: int, error: Exception) -> None:
        self.errors[(operation, connection_id)] = error

    def heal(self, operation: str, connection_id: int) -> None:
        self.errors.pop((operation, connection_id), None)

    def _record(self, operation: str, connection_id: int, appointment_id: Optional[int] = None) -> None:
        self.calls.append((operation, connection_id, appointment_id))
        error = self.errors.get((operation, connection_id))
        if error is not None:
            raise error

    def calls_for(self, operation: str) -> list[tuple[str, int, Optional[int]]]:
        return [call for call in self.calls if call[0] == operation]

    def add_event(self, connection_id: int, event: NormalizedEvent) -> None:
        self.calendars.setdefault(connection_id, {})[event.id] = event

    def _event(self, event_id: str, appointment: AppointmentSnapshot) -> NormalizedEvent:
        return NormalizedEvent(
            id=event_id,
            title=appointment.summary,
            start=appointment.scheduled_start,
            end=appointment.scheduled_end,
        )

    async def create_event(self, connection_id: int, appointment: AppointmentSnapshot) -> str:
        self._record("create", connection_id, appointment.id)
        existing = appointment.external_event_id(connection_id)
        if existing:
            await self.update_event(connection_id, appointment)
            return existing
        event_id = f"{self.provider}-{appointment.id}-{connection_id}"
        self.add_event(connection_id, self._event(event_id, appointment))
        return event_id

    async def update_event(self, connection_id: int, appointment: AppointmentSnapshot) -> None:
        self._record("update", connection_id, appointment.id)
        event_id = appointment.external_event_id(connection_id)
        if not event_id:
            return
        calendar = self.calendars.setdefault(connection_id, {})
        if event_id not in calendar:
            raise NotFound(f"{self.provider} event not found", status_code=404)
        calendar[event_id] = self._event(event_id, appointment)

    async def delete_event(self, connection_id: int, appointment: AppointmentSnapshot) -> None:
        self._record("delete", connection_id, appointment.id)
        event_id = appointment.external_event_id(connection_id)
        if event_id:
            self.calendars.setdefault(connection_id, {}).pop(event_id, None)

    async def list_events(self, connection_id: int, start: datetime, end: datetime) -> list[NormalizedEvent]:
        self._record("list", connection_id)
        return [
            event
            for event in self.calendars.get(connection_id, {}).values()
            if event.start < end and start < event.end
        ]


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def cipher():
    return TokenCipher([Fernet.generate_key().decode()])


@pytest.fixture
def token_clients():
    return {
        "google": FakeTokenClient("google", supports_refresh=True),
        "outlook": FakeTokenClient("outlook", supports_refresh=False),
    }


@pytest.fixture
def credentials(session_factory, cipher, token_clients, clock):
    return CredentialManager(session_factory, cipher, token_clients, now_fn=clock)


@pytest.fixture
def google_adapter():
    return FakeAdapter("google")


@pytest.fixture
def outlook_adapter():
    return FakeAdapter("outlook")


@pytest.fixture
def registry(google_adapter, outlook_adapter):
    return AdapterRegistry([google_adapter, outlook_adapter])


@pytest.fixture
def retry_queue(clock):
    return RetryQueue(InMemoryRetryStore(), cooldown_seconds=300, max_retries=3, now_fn=clock)


@pytest.fixture
def orchestrator(session_factory, registry, credentials, retry_queue, clock):
    return CalendarSyncOrchestrator(
        session_factory,
        registry,
        credentials,
        retry_queue,
        busy_time=BusyTimeService(session_factory, registry),
        now_fn=clock,
    )


@pytest.fixture
def scheduler(orchestrator, credentials, retry_queue, session_factory, clock):
    return SyncScheduler(
        orchestrator,
        credentials,
        retry_queue,
        session_factory,
        shutdown_grace_seconds=1,
        now_fn=clock,
    )


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make(email: Optional[str] = None) -> models.User:
        counter["n"] += 1
        user = models.User(email=email or f"owner{counter['n']}@example.com", business_name="Sparkle Cleaning")
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make


@pytest.fixture
def make_connection(db, cipher):
    def _make(
        user: models.User,
        provider: str = "google",
        calendar_id: str = "primary",
        access_token: str = "access-token",
        expires_at: Optional[datetime] = START + timedelta(hours=2),
        refresh_token: Optional[str] = "refresh-token",
        is_active: bool = True,
    ) -> models_calendar_sync.SyncConnection:
        blob = cipher.encrypt(
            OAuthCredentials(
                access_token=access_token, refresh_token=refresh_token, expires_at=expires_at
            ).model_dump_json()
        )
        connection = models_calendar_sync.SyncConnection(
            user_id=user.id,
            provider=provider,
            external_calendar_id=calendar_id,
            credential_blob=blob,
            is_active=is_active,
        )
        db.add(connection)
        db.commit()
        db.refresh(connection)
        return connection

    return _make


@pytest.fixture
def make_appointment(db):
    def _make(
        user: models.User,
        start: datetime = datetime(2024, 1, 15, 10, 0),
        duration_minutes: int = 60,
        **fields,
    ) -> models.Appointment:
        appointment = models.Appointment(
            user_id=user.id,
            scheduled_start=start,
            duration_minutes=duration_minutes,
            service_type=fields.pop("service_type", "deep-clean"),
            customer_name=fields.pop("customer_name", "Dana Customer"),
            customer_email=fields.pop("customer_email", "dana@example.com"),
            status=fields.pop("status", "confirmed"),
            **fields,
        )
        db.add(appointment)
        db.commit()
        db.refresh(appointment)
        return appointment

    return _make
