"""Tests for the retry drain, credential validation, cleanup and scheduler lifecycle."""

import asyncio
from datetime import timedelta

import pytest

from homesync.domain.calendar_sync.errors import RateLimited, UnknownProviderError
from homesync.domain.calendar_sync.scheduler import PeriodicJob
from homesync.domain.calendar_sync.schemas import CredentialValidation, RetryOperation, SyncAction
from homesync.models_calendar_sync import AppointmentCalendarEvent, SyncConflict, SyncConnection


def _connection(db, connection_id) -> SyncConnection:
    db.expire_all()
    return db.query(SyncConnection).filter(SyncConnection.id == connection_id).one()


class TestRetryDrain:
    async def test_item_inside_cooldown_is_skipped(self, scheduler, retry_queue, clock, make_user, make_connection):
        connection = make_connection(make_user())
        item = retry_queue.enqueue(connection.id, RetryOperation.FULL_SYNC, error="timeout")
        for _ in range(3):
            retry_queue.mark_attempt(item.key, clock())

        result = await scheduler.process_retry_queue(clock())

        assert result.skipped == 1
        assert result.exhausted == 0
        assert retry_queue.get(item.key).attempt_count == 3

    async def test_due_item_is_retried_and_removed_on_success(
        self, scheduler, retry_queue, google_adapter, db, clock, make_user, make_connection, make_appointment
    ):
        user = make_user()
        connection = make_connection(user)
        appointment = make_appointment(user)
        retry_queue.enqueue(
            connection.id, RetryOperation.APPOINTMENT_CREATE, error="503", appointment_id=appointment.id
        )

        result = await scheduler.process_retry_queue(clock.advance(minutes=5))

        assert result.succeeded == 1
        assert retry_queue.size() == 0
        assert google_adapter.calls_for("create") == [("create", connection.id, appointment.id)]
        db.expire_all()
        assert db.query(AppointmentCalendarEvent).count() == 1
        assert _connection(db, connection.id).last_sync_error is None

    async def test_failure_keeps_item_with_new_error(
        self, scheduler, retry_queue, google_adapter, db, clock, make_user, make_connection
    ):
        connection = make_connection(make_user())
        google_adapter.fail("list", connection.id, UnknownProviderError("still down"))
        item = retry_queue.enqueue(connection.id, RetryOperation.FULL_SYNC, error="down")

        result = await scheduler.process_retry_queue(clock.advance(minutes=5))

        assert result.failed == 1
        stored = retry_queue.get(item.key)
        assert stored.attempt_count == 1
        assert stored.last_error == "still down"
        assert stored.last_attempt_at == clock()
        assert _connection(db, connection.id).is_active is True

    async def test_three_failures_deactivate_connection(
        self, scheduler, retry_queue, google_adapter, db, clock, make_user, make_connection
    ):
        connection = make_connection(make_user())
        google_adapter.fail("list", connection.id, UnknownProviderError("Google 500"))
        retry_queue.enqueue(connection.id, RetryOperation.FULL_SYNC, error="Google 500")

        for _ in range(5):
            await scheduler.process_retry_queue(clock.advance(minutes=5))

        assert len(google_adapter.calls_for("list")) == 3
        assert retry_queue.size() == 0
        stored = _connection(db, connection.id)
        assert stored.is_active is False
        assert stored.last_sync_error == "Max retries exceeded: Google 500"

    async def test_exhausted_item_is_removed_without_another_attempt(
        self, scheduler, retry_queue, google_adapter, db, clock, make_user, make_connection
    ):
        connection = make_connection(make_user())
        item = retry_queue.enqueue(connection.id, RetryOperation.FULL_SYNC, error="timeout")
        for _ in range(3):
            retry_queue.mark_attempt(item.key, clock())

        result = await scheduler.process_retry_queue(clock.advance(minutes=5))

        assert result.exhausted == 1
        assert google_adapter.calls == []
        assert _connection(db, connection.id).last_sync_error == "Max retries exceeded: timeout"

    async def test_items_for_inactive_connections_are_dropped(
        self, scheduler, retry_queue, google_adapter, clock, make_user, make_connection
    ):
        connection = make_connection(make_user(), is_active=False)
        retry_queue.enqueue(connection.id, RetryOperation.FULL_SYNC)

        result = await scheduler.process_retry_queue(clock.advance(minutes=5))

        assert result.dropped == 1
        assert retry_queue.size() == 0
        assert google_adapter.calls == []

    async def test_token_refresh_item_uses_credential_manager(
        self, scheduler, retry_queue, token_clients, clock, make_user, make_connection
    ):
        connection = make_connection(make_user())
        retry_queue.enqueue(connection.id, RetryOperation.TOKEN_REFRESH, error="Token expired")

        result = await scheduler.process_retry_queue(clock.advance(minutes=5))

        assert result.succeeded == 1
        assert token_clients["google"].refresh_calls == 1

    async def test_reauth_required_runs_to_exhaustion(
        self, scheduler, retry_queue, db, clock, make_user, make_connection
    ):
        connection = make_connection(make_user(), provider="outlook")
        retry_queue.enqueue(connection.id, RetryOperation.TOKEN_REFRESH, error="Token expired")

        await scheduler.process_retry_queue(clock.advance(minutes=5))
        assert _connection(db, connection.id).is_active is True
        assert retry_queue.size() == 1

        for _ in range(2):
            await scheduler.process_retry_queue(clock.advance(minutes=5))

        assert retry_queue.size() == 0
        stored = _connection(db, connection.id)
        assert stored.is_active is False
        assert stored.last_sync_error.startswith("Max retries exceeded")

    async def test_update_of_externally_deleted_event_is_dropped_as_conflict(
        self, scheduler, orchestrator, retry_queue, google_adapter, db, clock, make_user, make_connection,
        make_appointment,
    ):
        user = make_user()
        connection = make_connection(user)
        appointment = make_appointment(user)
        await orchestrator.dispatch(appointment.id, SyncAction.CREATE)
        google_adapter.fail("update", connection.id, RateLimited("slow down"))
        await orchestrator.dispatch(appointment.id, SyncAction.UPDATE)
        assert retry_queue.size() == 1

        google_adapter.calendars[connection.id].clear()
        google_adapter.heal("update", connection.id)
        for _ in range(4):
            await scheduler.process_retry_queue(clock.advance(minutes=5))

        assert len(google_adapter.calls_for("update")) == 2
        assert retry_queue.size() == 0
        stored = _connection(db, connection.id)
        assert stored.is_active is True
        assert stored.last_sync_error == "google event not found"
        db.expire_all()
        assert db.query(AppointmentCalendarEvent).count() == 0
        conflict = db.query(SyncConflict).one()
        assert conflict.kind == "external_missing"
        assert conflict.appointment_id == appointment.id

    async def test_one_failure_does_not_abort_the_batch(
        self, scheduler, retry_queue, google_adapter, clock, make_user, make_connection
    ):
        user = make_user()
        failing = make_connection(user, provider="google")
        healthy = make_connection(user, provider="outlook")
        google_adapter.fail("list", failing.id, UnknownProviderError("down"))
        retry_queue.enqueue(failing.id, RetryOperation.FULL_SYNC)
        retry_queue.enqueue(healthy.id, RetryOperation.FULL_SYNC)

        result = await scheduler.process_retry_queue(clock.advance(minutes=5))

        assert result.processed == 2
        assert result.succeeded == 1
        assert result.failed == 1
        assert [item.connection_id for item in retry_queue.items()] == [failing.id]


class TestPeriodicJobs:
    async def test_invalid_credentials_enqueue_token_refresh(
        self, scheduler, retry_queue, token_clients, make_user, make_connection
    ):
        user = make_user()
        google = make_connection(user, provider="google")
        outlook = make_connection(user, provider="outlook")
        token_clients["outlook"].validation = CredentialValidation(valid=False, error="Token rejected")

        results = await scheduler.validate_all_credentials()

        assert results[google.id].valid is True
        assert results[outlook.id].valid is False
        assert [item.key for item in retry_queue.items()] == [f"{outlook.id}:tokenRefresh"]

    async def test_cleanup_clears_old_errors_only(self, scheduler, db, clock, make_user, make_connection):
        user = make_user()
        old = make_connection(user, provider="google")
        recent = make_connection(user, provider="outlook", is_active=False)
        old.last_sync_error, old.last_sync_error_at = "old error", clock() - timedelta(days=31)
        recent.last_sync_error, recent.last_sync_error_at = "recent error", clock() - timedelta(days=2)
        db.commit()

        cleared = await scheduler.cleanup_stale_errors(clock())

        assert cleared == 1
        assert _connection(db, old.id).last_sync_error is None
        stored_recent = _connection(db, recent.id)
        assert stored_recent.last_sync_error == "recent error"
        assert stored_recent.is_active is False


class TestAdminOperations:
    async def test_force_sync_failure_enqueues_full_sync(
        self, scheduler, retry_queue, google_adapter, make_user, make_connection
    ):
        connection = make_connection(make_user())
        google_adapter.fail("list", connection.id, UnknownProviderError("down"))

        with pytest.raises(UnknownProviderError):
            await scheduler.force_sync(connection.id)

        assert [item.key for item in retry_queue.items()] == [f"{connection.id}:fullSync"]

    async def test_clear_retry_queue(self, scheduler, retry_queue, make_user, make_connection):
        connection = make_connection(make_user())
        retry_queue.enqueue(connection.id, RetryOperation.FULL_SYNC)
        retry_queue.enqueue(connection.id, RetryOperation.for_action(SyncAction.DELETE), appointment_id=3)

        assert scheduler.clear_retry_queue(connection.id) == 2
        assert retry_queue.size() == 0


class TestLifecycle:
    async def test_start_and_stop(self, scheduler, retry_queue, make_user, make_connection):
        connection = make_connection(make_user())
        retry_queue.enqueue(connection.id, RetryOperation.FULL_SYNC, error="down")

        scheduler.start()
        status = scheduler.get_status()

        assert status.running is True
        assert sorted(status.scheduled_tasks) == ["cleanup", "fullSync", "retryProcessor", "tokenValidation"]
        assert status.retry_queue_size == 1
        assert status.retry_items[0].next_retry is not None

        await scheduler.stop()

        assert scheduler.get_status().running is False
        assert scheduler.cancel_event.is_set()
        # Queued work is kept for the next start
        assert retry_queue.size() == 1

    async def test_stop_waits_for_in_flight_jobs(self, scheduler):
        finished = []

        async def slow_job():
            await asyncio.sleep(0.05)
            finished.append(True)

        scheduler.start()
        task = asyncio.create_task(scheduler._tracked(PeriodicJob("slowJob", 60, slow_job))())
        await asyncio.sleep(0)

        await scheduler.stop()

        assert task.done()
        assert finished == [True]
