"""
Calendar sync scheduler and retry coordinator

Runs four independent periodic jobs (full sync, retry drain, credential
validation, error cleanup) on an APScheduler AsyncIOScheduler. Each job is its
own asyncio task, so a slow full sync never delays the retry drain.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import Session

from ...config import (
    SYNC_CLEANUP_INTERVAL,
    SYNC_ERROR_RETENTION_DAYS,
    SYNC_FULL_SYNC_INTERVAL,
    SYNC_RETRY_INTERVAL,
    SYNC_SHUTDOWN_GRACE_SECONDS,
    SYNC_TOKEN_VALIDATION_INTERVAL,
)
from ...shared.timeutils import utcnow
from .credentials import CredentialManager
from .errors import ConnectionUnavailableError, ProviderError
from .orchestrator import CalendarSyncOrchestrator
from .repository import SyncRepository
from .retry_queue import RetryItem, RetryQueue
from .schemas import (
    CredentialValidation,
    ReconcileResult,
    RetryDrainResult,
    RetryOperation,
    SchedulerStatus,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PeriodicJob:
    """A coroutine function and the fixed interval it runs on"""

    name: str
    interval_seconds: int
    func: Callable[[], Awaitable]


class SyncScheduler:
    def __init__(
        self,
        orchestrator: CalendarSyncOrchestrator,
        credentials: CredentialManager,
        retry_queue: RetryQueue,
        session_factory: Callable[[], Session],
        full_sync_interval: int = SYNC_FULL_SYNC_INTERVAL,
        retry_interval: int = SYNC_RETRY_INTERVAL,
        token_validation_interval: int = SYNC_TOKEN_VALIDATION_INTERVAL,
        cleanup_interval: int = SYNC_CLEANUP_INTERVAL,
        shutdown_grace_seconds: float = SYNC_SHUTDOWN_GRACE_SECONDS,
        now_fn: Callable[[], datetime] = utcnow,
    ):
        self.orchestrator = orchestrator
        self.credentials = credentials
        self.retry_queue = retry_queue
        self._session_factory = session_factory
        self._intervals = {
            "fullSync": full_sync_interval,
            "retryProcessor": retry_interval,
            "tokenValidation": token_validation_interval,
            "cleanup": cleanup_interval,
        }
        self._shutdown_grace = shutdown_grace_seconds
        self._now = now_fn

        self.cancel_event = asyncio.Event()
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._in_flight: set[asyncio.Task] = set()
        self.is_running = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def periodic_jobs(self) -> list[PeriodicJob]:
        return [
            PeriodicJob("fullSync", self._intervals["fullSync"], self.run_full_sync),
            PeriodicJob("retryProcessor", self._intervals["retryProcessor"], self.process_retry_queue),
            PeriodicJob("tokenValidation", self._intervals["tokenValidation"], self.validate_all_credentials),
            PeriodicJob("cleanup", self._intervals["cleanup"], self.cleanup_stale_errors),
        ]

    def _tracked(self, job: PeriodicJob) -> Callable[[], Awaitable]:
        async def run():
            task = asyncio.current_task()
            if task is not None:
                self._in_flight.add(task)
            try:
                await job.func()
            except Exception as e:
                logger.error(f"❌ Calendar sync job {job.name} failed: {e}", exc_info=True)
            finally:
                if task is not None:
                    self._in_flight.discard(task)

        return run

    def start(self) -> None:
        """Schedule the periodic jobs. Must be called from a running event loop."""
        if self.is_running:
            logger.info("ℹ️ Calendar sync scheduler already running")
            return

        self.cancel_event.clear()
        self._scheduler = AsyncIOScheduler(timezone="UTC")
        for job in self.periodic_jobs():
            self._scheduler.add_job(
                self._tracked(job),
                trigger=IntervalTrigger(seconds=job.interval_seconds),
                id=f"calendar_sync_{job.name}",
                name=job.name,
                coalesce=True,
                max_instances=1,
                misfire_grace_time=120,
            )
        self._scheduler.start()
        self.is_running = True
        logger.info(f"🚀 Calendar sync scheduler started with jobs: {', '.join(self._intervals)}")

    async def stop(self) -> None:
        """
        Stop scheduling, give in-flight jobs the grace period to finish, then shut down.

        Full syncs stop between connections once cancel_event is set. Queued
        retry items are left in place.
        """
        if not self.is_running:
            return

        self.cancel_event.set()
        if self._scheduler is not None:
            self._scheduler.pause()

        pending = {task for task in self._in_flight if not task.done()}
        if pending:
            logger.info(f"⏳ Waiting up to {self._shutdown_grace}s for {len(pending)} calendar sync jobs")
            _, still_running = await asyncio.wait(pending, timeout=self._shutdown_grace)
            for task in still_running:
                logger.warning(f"⚠️ Cancelling calendar sync job still running after grace period: {task.get_name()}")
                task.cancel()

        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
        self.is_running = False
        logger.info("🛑 Calendar sync scheduler stopped")

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def run_full_sync(self):
        return await self.orchestrator.perform_full_sync(self.cancel_event)

    def _active_connection_ids(self) -> set[int]:
        db = self._session_factory()
        try:
            return {c.id for c in SyncRepository.get_active_connections(db)}
        finally:
            db.close()

    def _deactivate(self, connection_id: int, error: str) -> None:
        db = self._session_factory()
        try:
            SyncRepository.deactivate_connection(db, connection_id, error, self._now())
        finally:
            db.close()
        logger.warning(f"🚫 Calendar connection {connection_id} deactivated: {error}")

    def _exhaust(self, item: RetryItem) -> None:
        self.retry_queue.remove(item.key)
        self._deactivate(item.connection_id, f"Max retries exceeded: {item.last_error}")

    async def _run_operation(self, item: RetryItem) -> None:
        if item.operation == RetryOperation.FULL_SYNC:
            await self.orchestrator.reconcile(item.connection_id)
        elif item.operation == RetryOperation.TOKEN_REFRESH:
            await self.credentials.refresh(item.connection_id)
        else:
            if item.appointment_id is None:
                raise ValueError(f"Retry item {item.key} has no appointment id")
            await self.orchestrator.sync_appointment_to_connection(
                item.connection_id, item.appointment_id, item.operation.action
            )

    async def _retry(self, item: RetryItem) -> bool:
        try:
            await self._run_operation(item)
        except ProviderError as e:
            if e.retryable:
                return self._retry_failed(item, e)
            # Not retryable: drop the item, the connection stays active
            logger.warning(f"⚠️ Dropping retry {item.key}, provider refused it: {e}")
            self.retry_queue.remove(item.key)
            if item.appointment_id is not None and item.operation != RetryOperation.APPOINTMENT_DELETE:
                self.orchestrator.record_external_missing(item.connection_id, item.appointment_id, e)
            else:
                self.orchestrator.mark_error(item.connection_id, str(e) or e.__class__.__name__)
            return False
        except Exception as e:
            return self._retry_failed(item, e)

        self.retry_queue.remove(item.key)
        self.orchestrator.mark_success(item.connection_id)
        logger.info(f"✅ Retry succeeded for {item.key}")
        return True

    def _retry_failed(self, item: RetryItem, e: Exception) -> bool:
        error = str(e) or e.__class__.__name__
        logger.error(f"❌ Retry {item.attempt_count}/{self.retry_queue.max_retries} failed for {item.key}: {error}")
        updated = self.retry_queue.record_failure(item.key, error)
        self.orchestrator.mark_error(item.connection_id, error)
        if updated and self.retry_queue.is_exhausted(updated):
            self._exhaust(updated)
        return False

    async def process_retry_queue(self, now: Optional[datetime] = None) -> RetryDrainResult:
        """
        One drain cycle over the retry queue.

        Items still inside the cooldown are skipped first; exhausted items are
        removed and their connection deactivated; every other item is attempted
        concurrently and individual failures never stop the batch.
        """
        now = now or self._now()
        result = RetryDrainResult()
        items = self.retry_queue.items()
        if not items:
            return result

        active_ids = self._active_connection_ids()
        due: list[RetryItem] = []

        for item in items:
            if self.retry_queue.is_cooling_down(item, now):
                result.skipped += 1
                continue

            if item.connection_id not in active_ids:
                self.retry_queue.remove(item.key)
                result.dropped += 1
                continue

            if self.retry_queue.is_exhausted(item):
                self._exhaust(item)
                result.exhausted += 1
                continue

            attempted = self.retry_queue.mark_attempt(item.key, now)
            if attempted:
                due.append(attempted)

        if due:
            outcomes = await asyncio.gather(*(self._retry(item) for item in due), return_exceptions=True)
            for item, outcome in zip(due, outcomes):
                if isinstance(outcome, BaseException):
                    logger.error(f"❌ Unexpected error retrying {item.key}: {outcome}")
                    result.failed += 1
                elif outcome:
                    result.succeeded += 1
                else:
                    result.failed += 1

        result.processed = len(due)
        logger.info(
            f"🔁 Retry cycle: {result.succeeded} succeeded, {result.failed} failed, "
            f"{result.skipped} cooling down, {result.exhausted} exhausted, {result.dropped} dropped"
        )
        return result

    async def validate_all_credentials(self) -> dict[int, CredentialValidation]:
        """Validate every active connection; invalid ones get a tokenRefresh retry item"""
        connection_ids = sorted(self._active_connection_ids())

        async def check(connection_id: int) -> CredentialValidation:
            try:
                return await self.credentials.validate(connection_id)
            except Exception as e:
                return CredentialValidation(valid=False, error=str(e) or e.__class__.__name__)

        validations = await asyncio.gather(*(check(connection_id) for connection_id in connection_ids))

        results = dict(zip(connection_ids, validations))
        invalid = 0
        for connection_id, validation in results.items():
            if not validation.valid:
                invalid += 1
                self.retry_queue.enqueue(connection_id, RetryOperation.TOKEN_REFRESH, error=validation.error)

        logger.info(f"🔐 Validated {len(results)} calendar connections, {invalid} need a token refresh")
        return results

    async def cleanup_stale_errors(self, now: Optional[datetime] = None) -> int:
        cutoff = (now or self._now()) - timedelta(days=SYNC_ERROR_RETENTION_DAYS)
        db = self._session_factory()
        try:
            cleared = SyncRepository.clear_stale_errors(db, cutoff)
        finally:
            db.close()
        logger.info(f"🧹 Cleared {cleared} stale calendar sync errors")
        return cleared

    # ------------------------------------------------------------------
    # Admin operations
    # ------------------------------------------------------------------

    async def force_sync(self, connection_id: int) -> ReconcileResult:
        """Reconcile one connection now; on failure queue a fullSync retry and re-raise"""
        logger.info(f"⚡ Force sync requested for connection {connection_id}")
        try:
            return await self.orchestrator.reconcile(connection_id)
        except ConnectionUnavailableError:
            raise
        except Exception as e:
            self.retry_queue.enqueue(connection_id, RetryOperation.FULL_SYNC, error=str(e) or e.__class__.__name__)
            raise

    def clear_retry_queue(self, connection_id: int) -> int:
        return self.retry_queue.clear_connection(connection_id)

    def get_status(self) -> SchedulerStatus:
        scheduled = []
        if self._scheduler is not None and self.is_running:
            scheduled = [job.name for job in self._scheduler.get_jobs()]
        return SchedulerStatus(
            running=self.is_running,
            scheduled_tasks=scheduled,
            retry_queue_size=self.retry_queue.size(),
            retry_items=self.retry_queue.status(),
        )
