"""Calendar sync repository - Database operations for connections, event links and conflicts"""

from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from ...models import Appointment
from ...models_calendar_sync import AppointmentCalendarEvent, SyncConflict, SyncConnection
from ...shared.timeutils import utcnow
from .schemas import AppointmentSnapshot


class SyncRepository:
    """Repository for calendar sync database operations"""

    # Connection Methods
    @staticmethod
    def get_connection(db: Session, connection_id: int) -> Optional[SyncConnection]:
        return db.query(SyncConnection).filter(SyncConnection.id == connection_id).first()

    @staticmethod
    def get_active_connections(db: Session, user_id: Optional[int] = None) -> list[SyncConnection]:
        """Active connections, optionally limited to one owner"""
        query = db.query(SyncConnection).filter(SyncConnection.is_active.is_(True))
        if user_id is not None:
            query = query.filter(SyncConnection.user_id == user_id)
        return query.order_by(SyncConnection.id.asc()).all()

    @staticmethod
    def list_connections(db: Session, user_id: Optional[int] = None) -> list[SyncConnection]:
        query = db.query(SyncConnection)
        if user_id is not None:
            query = query.filter(SyncConnection.user_id == user_id)
        return query.order_by(SyncConnection.created_at.desc(), SyncConnection.id.desc()).all()

    @staticmethod
    def upsert_connection(
        db: Session,
        user_id: int,
        provider: str,
        external_calendar_id: str,
        credential_blob: str,
        account_email: Optional[str] = None,
    ) -> SyncConnection:
        """
        Create or re-link the connection for (owner, provider, calendar).

        Re-linking an existing row stores the new credentials, reactivates it and
        clears its error, so the tuple never has two active rows.
        """
        connection = (
            db.query(SyncConnection)
            .filter(
                SyncConnection.user_id == user_id,
                SyncConnection.provider == provider,
                SyncConnection.external_calendar_id == external_calendar_id,
            )
            .order_by(SyncConnection.is_active.desc(), SyncConnection.id.desc())
            .first()
        )

        if connection:
            connection.credential_blob = credential_blob
            connection.account_email = account_email or connection.account_email
            connection.is_active = True
            connection.last_sync_error = None
            connection.last_sync_error_at = None
            connection.updated_at = utcnow()
        else:
            connection = SyncConnection(
                user_id=user_id,
                provider=provider,
                external_calendar_id=external_calendar_id,
                credential_blob=credential_blob,
                account_email=account_email,
                is_active=True,
            )
            db.add(connection)

        db.commit()
        db.refresh(connection)
        return connection

    @staticmethod
    def update_credentials(db: Session, connection_id: int, credential_blob: str) -> None:
        db.query(SyncConnection).filter(SyncConnection.id == connection_id).update(
            {"credential_blob": credential_blob, "updated_at": utcnow()},
            synchronize_session=False,
        )
        db.commit()

    @staticmethod
    def mark_sync_success(db: Session, connection_id: int, now: datetime) -> None:
        """Stamp last_sync_at and clear any stored error"""
        db.query(SyncConnection).filter(SyncConnection.id == connection_id).update(
            {
                "last_sync_at": now,
                "last_sync_error": None,
                "last_sync_error_at": None,
                "updated_at": now,
            },
            synchronize_session=False,
        )
        db.commit()

    @staticmethod
    def mark_sync_error(db: Session, connection_id: int, error: str, now: datetime) -> None:
        db.query(SyncConnection).filter(SyncConnection.id == connection_id).update(
            {"last_sync_error": error, "last_sync_error_at": now, "updated_at": now},
            synchronize_session=False,
        )
        db.commit()

    @staticmethod
    def deactivate_connection(db: Session, connection_id: int, error: str, now: datetime) -> None:
        db.query(SyncConnection).filter(SyncConnection.id == connection_id).update(
            {
                "is_active": False,
                "last_sync_error": error,
                "last_sync_error_at": now,
                "updated_at": now,
            },
            synchronize_session=False,
        )
        db.commit()

    @staticmethod
    def clear_stale_errors(db: Session, cutoff: datetime) -> int:
        """Clear sync errors recorded before cutoff. Returns the number of connections touched."""
        cleared = (
            db.query(SyncConnection)
            .filter(
                SyncConnection.last_sync_error.isnot(None),
                SyncConnection.last_sync_error_at < cutoff,
            )
            .update(
                {"last_sync_error": None, "last_sync_error_at": None},
                synchronize_session=False,
            )
        )
        db.commit()
        return cleared

    # Appointment Methods
    @staticmethod
    def get_appointment(db: Session, appointment_id: int) -> Optional[Appointment]:
        return db.query(Appointment).filter(Appointment.id == appointment_id).first()

    @staticmethod
    def get_event_links(db: Session, appointment_id: int) -> dict[int, str]:
        """connection_id -> external_event_id for one appointment"""
        links = (
            db.query(AppointmentCalendarEvent)
            .filter(AppointmentCalendarEvent.appointment_id == appointment_id)
            .all()
        )
        return {link.connection_id: link.external_event_id for link in links}

    @classmethod
    def get_appointment_snapshot(cls, db: Session, appointment_id: int) -> Optional[AppointmentSnapshot]:
        appointment = cls.get_appointment(db, appointment_id)
        if not appointment:
            return None
        snapshot = AppointmentSnapshot.model_validate(appointment)
        return snapshot.model_copy(update={"external_event_ids": cls.get_event_links(db, appointment_id)})

    @staticmethod
    def set_event_link(
        db: Session, appointment_id: int, connection_id: int, external_event_id: str
    ) -> AppointmentCalendarEvent:
        link = (
            db.query(AppointmentCalendarEvent)
            .filter(
                AppointmentCalendarEvent.appointment_id == appointment_id,
                AppointmentCalendarEvent.connection_id == connection_id,
            )
            .first()
        )
        if link:
            link.external_event_id = external_event_id
        else:
            link = AppointmentCalendarEvent(
                appointment_id=appointment_id,
                connection_id=connection_id,
                external_event_id=external_event_id,
            )
            db.add(link)
        db.commit()
        return link

    @staticmethod
    def remove_event_link(db: Session, appointment_id: int, connection_id: int) -> bool:
        removed = (
            db.query(AppointmentCalendarEvent)
            .filter(
                AppointmentCalendarEvent.appointment_id == appointment_id,
                AppointmentCalendarEvent.connection_id == connection_id,
            )
            .delete(synchronize_session=False)
        )
        db.commit()
        return removed > 0

    @staticmethod
    def get_linked_appointments(
        db: Session, connection_id: int, start: datetime, end: datetime
    ) -> list[tuple[Appointment, AppointmentCalendarEvent]]:
        """Non-cancelled appointments scheduled in [start, end) that have an event on the connection"""
        return (
            db.query(Appointment, AppointmentCalendarEvent)
            .join(AppointmentCalendarEvent, AppointmentCalendarEvent.appointment_id == Appointment.id)
            .filter(
                AppointmentCalendarEvent.connection_id == connection_id,
                Appointment.scheduled_start >= start,
                Appointment.scheduled_start < end,
                Appointment.status != "cancelled",
            )
            .all()
        )

    @staticmethod
    def cancel_appointment_from_external(
        db: Session, appointment: Appointment, link: AppointmentCalendarEvent
    ) -> None:
        """External delete propagates in: cancel locally and drop the event link"""
        appointment.status = "cancelled"
        db.delete(link)
        db.commit()

    # Conflict Methods
    @staticmethod
    def record_conflict(
        db: Session,
        connection_id: int,
        appointment_id: int,
        kind: str,
        now: datetime,
        external_event_id: Optional[str] = None,
        local_start: Optional[datetime] = None,
        external_start: Optional[datetime] = None,
        event_title: Optional[str] = None,
    ) -> SyncConflict:
        """Record a divergence, refreshing the open one for the same appointment/connection/kind"""
        conflict = (
            db.query(SyncConflict)
            .filter(
                SyncConflict.connection_id == connection_id,
                SyncConflict.appointment_id == appointment_id,
                SyncConflict.kind == kind,
                SyncConflict.resolved_at.is_(None),
            )
            .first()
        )
        if not conflict:
            conflict = SyncConflict(connection_id=connection_id, appointment_id=appointment_id, kind=kind)
            db.add(conflict)

        conflict.external_event_id = external_event_id
        conflict.local_start = local_start
        conflict.external_start = external_start
        conflict.event_title = event_title
        conflict.detected_at = now
        db.commit()
        db.refresh(conflict)
        return conflict

    @staticmethod
    def get_open_conflicts(db: Session, user_id: Optional[int] = None) -> list[SyncConflict]:
        query = db.query(SyncConflict).filter(SyncConflict.resolved_at.is_(None))
        if user_id is not None:
            query = query.join(SyncConnection, SyncConnection.id == SyncConflict.connection_id).filter(
                SyncConnection.user_id == user_id
            )
        return query.order_by(SyncConflict.detected_at.desc()).all()

    @staticmethod
    def resolve_conflict(db: Session, conflict_id: int, now: datetime) -> Optional[SyncConflict]:
        conflict = db.query(SyncConflict).filter(SyncConflict.id == conflict_id).first()
        if not conflict:
            return None
        conflict.resolved_at = now
        db.commit()
        db.refresh(conflict)
        return conflict
