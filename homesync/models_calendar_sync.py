"""
Calendar Sync Models
External calendar connections, per-connection event links, retry items and conflicts
"""

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func, text

from .database import Base

PROVIDER_GOOGLE = "google"
PROVIDER_OUTLOOK = "outlook"


class SyncConnection(Base):
    """One external calendar linked by a business owner"""

    __tablename__ = "calendar_sync_connections"
    __table_args__ = (
        # At most one active connection per (owner, provider, calendar)
        Index(
            "uq_calendar_sync_connections_active",
            "user_id",
            "provider",
            "external_calendar_id",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    provider = Column(String(20), nullable=False)  # google, outlook

    # Fernet-encrypted JSON: access_token, refresh_token, expires_at, scope
    credential_blob = Column(Text, nullable=False)

    external_calendar_id = Column(String(500), nullable=False, default="primary")
    account_email = Column(String(255), nullable=True)

    is_active = Column(Boolean, nullable=False, default=True)
    last_sync_at = Column(DateTime, nullable=True)
    last_sync_error = Column(Text, nullable=True)
    last_sync_error_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="calendar_connections")


class AppointmentCalendarEvent(Base):
    """External event id of an appointment on one connection"""

    __tablename__ = "appointment_calendar_events"
    __table_args__ = (
        UniqueConstraint("appointment_id", "connection_id", name="uq_appointment_connection_event"),
    )

    id = Column(Integer, primary_key=True, index=True)
    appointment_id = Column(Integer, ForeignKey("appointments.id"), nullable=False, index=True)
    connection_id = Column(
        Integer, ForeignKey("calendar_sync_connections.id"), nullable=False, index=True
    )
    external_event_id = Column(String(1024), nullable=False, index=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    appointment = relationship("Appointment", back_populates="calendar_events")
    connection = relationship("SyncConnection")


class SyncRetryItem(Base):
    """Durable copy of a retry queue entry (used when SYNC_RETRY_STORE=database)"""

    __tablename__ = "calendar_sync_retry_items"

    key = Column(String(255), primary_key=True)
    connection_id = Column(Integer, nullable=False, index=True)
    operation = Column(String(50), nullable=False)
    appointment_id = Column(Integer, nullable=True)
    attempt_count = Column(Integer, nullable=False, default=0)
    last_attempt_at = Column(DateTime, nullable=False)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False)


class SyncConflict(Base):
    """Divergence between a local appointment and its external event, left for manual resolution"""

    __tablename__ = "calendar_sync_conflicts"

    id = Column(Integer, primary_key=True, index=True)
    connection_id = Column(
        Integer, ForeignKey("calendar_sync_connections.id"), nullable=False, index=True
    )
    appointment_id = Column(Integer, ForeignKey("appointments.id"), nullable=False, index=True)
    external_event_id = Column(String(1024), nullable=True)
    kind = Column(String(30), nullable=False)  # time_mismatch, external_missing
    local_start = Column(DateTime, nullable=True)
    external_start = Column(DateTime, nullable=True)
    event_title = Column(String(500), nullable=True)
    detected_at = Column(DateTime, nullable=False)
    resolved_at = Column(DateTime, nullable=True)
