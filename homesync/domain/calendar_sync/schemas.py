"""Calendar sync schemas - Pydantic models shared by adapters, orchestrator and routes"""

from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class SyncAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class RetryOperation(str, Enum):
    FULL_SYNC = "fullSync"
    TOKEN_REFRESH = "tokenRefresh"
    APPOINTMENT_CREATE = "appointmentSync-create"
    APPOINTMENT_UPDATE = "appointmentSync-update"
    APPOINTMENT_DELETE = "appointmentSync-delete"

    @classmethod
    def for_action(cls, action: SyncAction) -> "RetryOperation":
        return cls(f"appointmentSync-{SyncAction(action).value}")

    @property
    def action(self) -> Optional[SyncAction]:
        """The appointment action behind an appointmentSync-* operation"""
        if self.value.startswith("appointmentSync-"):
            return SyncAction(self.value.split("-", 1)[1])
        return None


# ============================================================================
# PROVIDER-FACING MODELS
# ============================================================================


class OAuthCredentials(BaseModel):
    """Plaintext of a connection's encrypted credential blob"""

    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None  # naive UTC
    scope: Optional[str] = None
    token_type: str = "Bearer"


class ResolvedConnection(BaseModel):
    """What an adapter needs to talk to the provider for one connection"""

    connection_id: int
    provider: str
    calendar_id: str
    access_token: str


class CredentialValidation(BaseModel):
    valid: bool
    error: Optional[str] = None


class AppointmentSnapshot(BaseModel):
    """Detached copy of an appointment plus its external event ids per connection"""

    id: int
    user_id: int
    title: Optional[str] = None
    service_type: Optional[str] = None
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    property_address: Optional[str] = None
    notes: Optional[str] = None
    scheduled_start: datetime
    duration_minutes: int = 60
    status: str = "pending"
    external_event_ids: dict[int, str] = Field(default_factory=dict)

    class Config:
        from_attributes = True

    @property
    def scheduled_end(self) -> datetime:
        return self.scheduled_start + timedelta(minutes=self.duration_minutes)

    @property
    def summary(self) -> str:
        if self.title:
            return self.title
        return f"Appointment: {self.service_type or 'Service'}"

    @property
    def description(self) -> str:
        return (
            f"Customer: {self.customer_name or 'N/A'}\n"
            f"Email: {self.customer_email or 'N/A'}\n"
            f"Phone: {self.customer_phone or 'N/A'}\n"
            f"Address: {self.property_address or 'N/A'}\n"
            f"Notes: {self.notes or 'N/A'}"
        )

    def external_event_id(self, connection_id: int) -> Optional[str]:
        return self.external_event_ids.get(connection_id)


class NormalizedEvent(BaseModel):
    id: str
    title: Optional[str] = None
    start: datetime
    end: datetime
    is_all_day: bool = False
    attendees: list[dict[str, Any]] = Field(default_factory=list)


class BusySlot(BaseModel):
    start: datetime
    end: datetime
    label: Optional[str] = None
    source_connections: list[int] = Field(default_factory=list)
    event_id: Optional[str] = None


# ============================================================================
# RESULTS
# ============================================================================


class ConnectionConflicts(BaseModel):
    connection_id: int
    provider: str
    conflicts: list[BusySlot]


class ConflictCheckResult(BaseModel):
    has_conflicts: bool
    conflicts_by_connection: list[ConnectionConflicts] = Field(default_factory=list)
    total_conflicts: int = 0
    failed_connections: list[int] = Field(default_factory=list)


class BusyTimeResult(BaseModel):
    busy_slots: list[BusySlot]
    by_connection: dict[int, list[BusySlot]] = Field(default_factory=dict)
    failed_connections: list[int] = Field(default_factory=list)


class ConnectionSyncResult(BaseModel):
    connection_id: int
    provider: str
    success: bool
    external_event_id: Optional[str] = None
    error: Optional[str] = None
    retry_scheduled: bool = False
    conflict: bool = False


class DispatchResult(BaseModel):
    """Outcome of one fan-out. success means "sync attempted and at least one connection took it"."""

    success: bool
    action: SyncAction
    appointment_id: int
    results: list[ConnectionSyncResult] = Field(default_factory=list)
    total_connections: int = 0
    successful_connections: int = 0
    conflicts: Optional[ConflictCheckResult] = None


class SyncConflictInfo(BaseModel):
    id: Optional[int] = None
    connection_id: int
    appointment_id: int
    external_event_id: Optional[str] = None
    kind: str
    local_start: Optional[datetime] = None
    external_start: Optional[datetime] = None
    event_title: Optional[str] = None
    detected_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ReconcileResult(BaseModel):
    connection_id: int
    provider: str
    checked: int = 0
    cancelled: int = 0
    conflicts: list[SyncConflictInfo] = Field(default_factory=list)


class ConnectionReconcileOutcome(BaseModel):
    connection_id: int
    provider: str
    success: bool
    result: Optional[ReconcileResult] = None
    error: Optional[str] = None


class FullSyncResult(BaseModel):
    success: bool
    results: list[ConnectionReconcileOutcome] = Field(default_factory=list)
    total_connections: int = 0
    successful_connections: int = 0
    cancelled: bool = False


class ConnectionStatus(BaseModel):
    id: int
    user_id: int
    provider: str
    external_calendar_id: Optional[str] = None
    account_email: Optional[str] = None
    is_active: bool
    last_sync_at: Optional[datetime] = None
    last_sync_error: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class SyncStatusReport(BaseModel):
    total_connections: int
    active_connections: int
    connections_with_errors: int
    connections: list[ConnectionStatus]


class RetryItemStatus(BaseModel):
    key: str
    connection_id: int
    operation: str
    appointment_id: Optional[int] = None
    attempts: int
    last_error: Optional[str] = None
    next_retry: datetime


class SchedulerStatus(BaseModel):
    running: bool
    scheduled_tasks: list[str]
    retry_queue_size: int
    retry_items: list[RetryItemStatus] = Field(default_factory=list)


class AppointmentSyncRequest(BaseModel):
    action: SyncAction
    checkConflicts: bool = False


class RetryDrainResult(BaseModel):
    """Counts from one pass over the retry queue"""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    exhausted: int = 0
    dropped: int = 0
