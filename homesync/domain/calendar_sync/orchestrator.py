"""
Calendar Sync Orchestrator
Fans appointment changes out to every connected calendar and reconciles
external changes back into local appointments.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.orm import Session

from ...config import SYNC_WINDOW_FUTURE_DAYS, SYNC_WINDOW_PAST_DAYS
from ...shared.locks import KeyedLock
from ...shared.timeutils import utcnow
from .adapters.registry import AdapterRegistry
from .busy_slots import BusyTimeService
from .credentials import CredentialManager
from .errors import ConnectionUnavailableError, NotFound, ProviderError, ReauthRequired
from .repository import SyncRepository
from .retry_queue import RetryQueue
from .schemas import (
    AppointmentSnapshot,
    ConflictCheckResult,
    ConnectionReconcileOutcome,
    ConnectionStatus,
    ConnectionSyncResult,
    DispatchResult,
    FullSyncResult,
    ReconcileResult,
    RetryOperation,
    SyncAction,
    SyncConflictInfo,
    SyncStatusReport,
)

logger = logging.getLogger(__name__)

# External start times within this tolerance of the local start are considered in sync
TIME_TOLERANCE = timedelta(seconds=60)

CONFLICT_TIME_MISMATCH = "time_mismatch"
CONFLICT_EXTERNAL_MISSING = "external_missing"


class CalendarSyncOrchestrator:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        registry: AdapterRegistry,
        credentials: CredentialManager,
        retry_queue: RetryQueue,
        busy_time: Optional[BusyTimeService] = None,
        now_fn: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._registry = registry
        self.credentials = credentials
        self.retry_queue = retry_queue
        self.busy_time = busy_time or BusyTimeService(session_factory, registry)
        self._now = now_fn
        self._event_locks = KeyedLock()

    def default_window(self) -> tuple[datetime, datetime]:
        now = self._now()
        return now - timedelta(days=SYNC_WINDOW_PAST_DAYS), now + timedelta(days=SYNC_WINDOW_FUTURE_DAYS)

    # ------------------------------------------------------------------
    # Connection bookkeeping
    # ------------------------------------------------------------------

    def _active_connections(self, user_id: Optional[int] = None) -> list[tuple[int, str]]:
        db = self._session_factory()
        try:
            return [(c.id, c.provider) for c in SyncRepository.get_active_connections(db, user_id)]
        finally:
            db.close()

    def _connection(self, connection_id: int) -> tuple[int, str]:
        db = self._session_factory()
        try:
            connection = SyncRepository.get_connection(db, connection_id)
            if not connection or not connection.is_active:
                raise ConnectionUnavailableError(f"Calendar connection {connection_id} is not active")
            return connection.id, connection.provider
        finally:
            db.close()

    def mark_success(self, connection_id: int) -> None:
        db = self._session_factory()
        try:
            SyncRepository.mark_sync_success(db, connection_id, self._now())
        finally:
            db.close()

    def mark_error(self, connection_id: int, error: str) -> None:
        db = self._session_factory()
        try:
            SyncRepository.mark_sync_error(db, connection_id, error, self._now())
        finally:
            db.close()

    def _snapshot(self, appointment_id: int) -> Optional[AppointmentSnapshot]:
        db = self._session_factory()
        try:
            return SyncRepository.get_appointment_snapshot(db, appointment_id)
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Local -> external
    # ------------------------------------------------------------------

    async def sync_appointment_to_connection(
        self, connection_id: int, appointment_id: int, action: SyncAction
    ) -> Optional[str]:
        """
        Run one adapter call for one connection. Raises on failure.

        Calls for the same (connection, appointment) are serialized and each
        reads the appointment fresh, so a queued update never overwrites a
        later delete with stale data.
        """
        action = SyncAction(action)
        _, provider = self._connection(connection_id)
        adapter = self._registry.for_provider(provider)

        async with self._event_locks.acquire((connection_id, appointment_id)):
            appointment = self._snapshot(appointment_id)
            if appointment is None:
                logger.info(f"ℹ️ Appointment {appointment_id} no longer exists, nothing to {action.value}")
                return None

            external_event_id = appointment.external_event_id(connection_id)

            if action == SyncAction.CREATE or (action == SyncAction.UPDATE and not external_event_id):
                external_event_id = await adapter.create_event(connection_id, appointment)
                db = self._session_factory()
                try:
                    SyncRepository.set_event_link(db, appointment_id, connection_id, external_event_id)
                finally:
                    db.close()
            elif action == SyncAction.UPDATE:
                await adapter.update_event(connection_id, appointment)
            else:
                await adapter.delete_event(connection_id, appointment)
                db = self._session_factory()
                try:
                    SyncRepository.remove_event_link(db, appointment_id, connection_id)
                finally:
                    db.close()

        self.mark_success(connection_id)
        return external_event_id

    def record_external_missing(self, connection_id: int, appointment_id: int, error: ProviderError) -> None:
        """Drop the stale link, open an external_missing conflict and note the error on the connection"""
        db = self._session_factory()
        try:
            appointment = SyncRepository.get_appointment(db, appointment_id)
            links = SyncRepository.get_event_links(db, appointment_id)
            SyncRepository.remove_event_link(db, appointment_id, connection_id)
            SyncRepository.record_conflict(
                db,
                connection_id=connection_id,
                appointment_id=appointment_id,
                kind=CONFLICT_EXTERNAL_MISSING,
                now=self._now(),
                external_event_id=links.get(connection_id),
                local_start=appointment.scheduled_start if appointment else None,
                event_title=appointment.title if appointment else None,
            )
            SyncRepository.mark_sync_error(db, connection_id, str(error), self._now())
        finally:
            db.close()

    async def _sync_one(
        self, connection_id: int, provider: str, appointment_id: int, action: SyncAction
    ) -> ConnectionSyncResult:
        try:
            external_event_id = await self.sync_appointment_to_connection(connection_id, appointment_id, action)
            return ConnectionSyncResult(
                connection_id=connection_id,
                provider=provider,
                success=True,
                external_event_id=external_event_id,
            )
        except ReauthRequired as e:
            logger.warning(f"⚠️ {provider} connection {connection_id} needs to be reconnected: {e}")
            self.mark_error(connection_id, str(e))
            return ConnectionSyncResult(connection_id=connection_id, provider=provider, success=False, error=str(e))
        except NotFound as e:
            if action == SyncAction.DELETE:
                raise
            logger.warning(
                f"⚠️ External event for appointment {appointment_id} is gone from {provider} connection {connection_id}"
            )
            self.record_external_missing(connection_id, appointment_id, e)
            return ConnectionSyncResult(
                connection_id=connection_id, provider=provider, success=False, error=str(e), conflict=True
            )

    async def _sync_one_or_queue(
        self, connection_id: int, provider: str, appointment_id: int, action: SyncAction
    ) -> ConnectionSyncResult:
        try:
            return await self._sync_one(connection_id, provider, appointment_id, action)
        except Exception as e:
            error = str(e) or e.__class__.__name__
            logger.error(f"❌ Failed to {action.value} event on {provider} connection {connection_id}: {error}")
            self.mark_error(connection_id, error)
            self.retry_queue.enqueue(
                connection_id, RetryOperation.for_action(action), error=error, appointment_id=appointment_id
            )
            return ConnectionSyncResult(
                connection_id=connection_id, provider=provider, success=False, error=error, retry_scheduled=True
            )

    async def _check_appointment_conflicts(self, appointment: AppointmentSnapshot) -> Optional[ConflictCheckResult]:
        try:
            result = await self.busy_time.check_conflicts(
                appointment.user_id,
                appointment.scheduled_start,
                appointment.scheduled_end,
                exclude_external_event_ids=appointment.external_event_ids.values(),
            )
        except Exception as e:
            logger.error(f"❌ Conflict check failed for appointment {appointment.id}: {e}")
            return None

        if result.has_conflicts:
            logger.warning(
                f"⚠️ Appointment {appointment.id} overlaps {result.total_conflicts} external event(s), syncing anyway"
            )
        return result

    async def dispatch(
        self, appointment_id: int, action: SyncAction, check_conflicts: bool = False
    ) -> DispatchResult:
        """
        Sync one appointment change to every active connection of its owner.

        Never raises for provider failures: they are recorded on the
        connection and queued for retry. success means at least one
        connection took the change.
        """
        action = SyncAction(action)
        appointment = self._snapshot(appointment_id)
        if appointment is None:
            logger.warning(f"⚠️ Appointment {appointment_id} not found, skipping calendar sync")
            return DispatchResult(success=False, action=action, appointment_id=appointment_id)

        connections = self._active_connections(appointment.user_id)
        if not connections:
            logger.info(f"ℹ️ No active calendar connections for user {appointment.user_id}")
            return DispatchResult(success=False, action=action, appointment_id=appointment_id)

        conflicts = None
        if check_conflicts and action != SyncAction.DELETE:
            conflicts = await self._check_appointment_conflicts(appointment)

        results = await asyncio.gather(
            *(
                self._sync_one_or_queue(connection_id, provider, appointment_id, action)
                for connection_id, provider in connections
            )
        )

        successful = sum(1 for result in results if result.success)
        logger.info(
            f"📅 Appointment {appointment_id} {action.value}: {successful}/{len(connections)} connections synced"
        )
        return DispatchResult(
            success=successful > 0,
            action=action,
            appointment_id=appointment_id,
            results=list(results),
            total_connections=len(connections),
            successful_connections=successful,
            conflicts=conflicts,
        )

    # ------------------------------------------------------------------
    # External -> local
    # ------------------------------------------------------------------

    async def reconcile(
        self,
        connection_id: int,
        window_start: Optional[datetime] = None,
        window_end: Optional[datetime] = None,
    ) -> ReconcileResult:
        """
        Pull external events for the window and bring local appointments in line.

        A linked appointment whose event is gone is cancelled locally; one whose
        event moved by more than the tolerance is recorded as a conflict and left
        as is. Failure is recorded on the connection and re-raised.
        """
        if window_start is None or window_end is None:
            default_start, default_end = self.default_window()
            window_start = window_start or default_start
            window_end = window_end or default_end

        _, provider = self._connection(connection_id)
        adapter = self._registry.for_provider(provider)

        try:
            events = await adapter.list_events(connection_id, window_start, window_end)
        except Exception as e:
            self.mark_error(connection_id, str(e) or e.__class__.__name__)
            raise

        events_by_id = {event.id: event for event in events}
        result = ReconcileResult(connection_id=connection_id, provider=provider)
        now = self._now()

        db = self._session_factory()
        try:
            for appointment, link in SyncRepository.get_linked_appointments(db, connection_id, window_start, window_end):
                result.checked += 1
                event = events_by_id.get(link.external_event_id)

                if event is None:
                    logger.info(
                        f"🗑️ Event {link.external_event_id} deleted externally, cancelling appointment {appointment.id}"
                    )
                    SyncRepository.cancel_appointment_from_external(db, appointment, link)
                    result.cancelled += 1
                    continue

                if abs(event.start - appointment.scheduled_start) > TIME_TOLERANCE:
                    logger.warning(
                        f"⚠️ Time conflict for appointment {appointment.id}: "
                        f"local {appointment.scheduled_start.isoformat()} vs external {event.start.isoformat()}"
                    )
                    conflict = SyncRepository.record_conflict(
                        db,
                        connection_id=connection_id,
                        appointment_id=appointment.id,
                        kind=CONFLICT_TIME_MISMATCH,
                        now=now,
                        external_event_id=event.id,
                        local_start=appointment.scheduled_start,
                        external_start=event.start,
                        event_title=event.title,
                    )
                    result.conflicts.append(SyncConflictInfo.model_validate(conflict))

            SyncRepository.mark_sync_success(db, connection_id, now)
        except Exception as e:
            db.rollback()
            SyncRepository.mark_sync_error(db, connection_id, str(e) or e.__class__.__name__, now)
            raise
        finally:
            db.close()

        logger.info(
            f"✅ Reconciled {provider} connection {connection_id}: "
            f"{result.checked} checked, {result.cancelled} cancelled, {len(result.conflicts)} conflicts"
        )
        return result

    async def perform_full_sync(self, cancel_event: Optional[asyncio.Event] = None) -> FullSyncResult:
        """Reconcile every active connection over the default window, one connection at a time"""
        connections = self._active_connections()
        window_start, window_end = self.default_window()
        logger.info(f"🔄 Starting full calendar sync for {len(connections)} connections")

        outcomes: list[ConnectionReconcileOutcome] = []
        cancelled = False
        for connection_id, provider in connections:
            if cancel_event is not None and cancel_event.is_set():
                logger.info("🛑 Full sync cancelled, skipping remaining connections")
                cancelled = True
                break

            try:
                result = await self.reconcile(connection_id, window_start, window_end)
                outcomes.append(
                    ConnectionReconcileOutcome(connection_id=connection_id, provider=provider, success=True, result=result)
                )
            except Exception as e:
                error = str(e) or e.__class__.__name__
                logger.error(f"❌ Full sync failed for {provider} connection {connection_id}: {error}")
                self.retry_queue.enqueue(connection_id, RetryOperation.FULL_SYNC, error=error)
                outcomes.append(
                    ConnectionReconcileOutcome(connection_id=connection_id, provider=provider, success=False, error=error)
                )

        successful = sum(1 for outcome in outcomes if outcome.success)
        total_cancelled = sum(outcome.result.cancelled for outcome in outcomes if outcome.result)
        total_conflicts = sum(len(outcome.result.conflicts) for outcome in outcomes if outcome.result)
        logger.info(
            f"📊 Full sync complete: {successful}/{len(connections)} connections, "
            f"{total_cancelled} appointments cancelled, {total_conflicts} conflicts, "
            f"{self.retry_queue.size()} items in retry queue"
        )

        return FullSyncResult(
            success=successful == len(outcomes) and not cancelled,
            results=outcomes,
            total_connections=len(connections),
            successful_connections=successful,
            cancelled=cancelled,
        )

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_sync_status(self, user_id: Optional[int] = None) -> SyncStatusReport:
        db = self._session_factory()
        try:
            connections = SyncRepository.list_connections(db, user_id)
            statuses = [ConnectionStatus.model_validate(connection) for connection in connections]
        finally:
            db.close()

        return SyncStatusReport(
            total_connections=len(statuses),
            active_connections=sum(1 for status in statuses if status.is_active),
            connections_with_errors=sum(1 for status in statuses if status.last_sync_error),
            connections=statuses,
        )

    def list_open_conflicts(self, user_id: Optional[int] = None) -> list[SyncConflictInfo]:
        db = self._session_factory()
        try:
            return [SyncConflictInfo.model_validate(c) for c in SyncRepository.get_open_conflicts(db, user_id)]
        finally:
            db.close()

    def resolve_conflict(self, conflict_id: int) -> Optional[SyncConflictInfo]:
        db = self._session_factory()
        try:
            conflict = SyncRepository.resolve_conflict(db, conflict_id, self._now())
            return SyncConflictInfo.model_validate(conflict) if conflict else None
        finally:
            db.close()
