"""
Retry queue for failed calendar sync operations

Items are keyed by connection, operation and (for appointment syncs) the
appointment, so re-enqueuing the same failure updates one item instead of
piling up duplicates. Retries use a flat cooldown, not exponential backoff.
"""

import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.orm import Session

from ...config import SYNC_MAX_RETRIES, SYNC_RETRY_COOLDOWN_SECONDS
from ...models_calendar_sync import SyncRetryItem
from ...shared.timeutils import utcnow
from .schemas import RetryItemStatus, RetryOperation

logger = logging.getLogger(__name__)


def retry_key(connection_id: int, operation: RetryOperation, appointment_id: Optional[int] = None) -> str:
    key = f"{connection_id}:{RetryOperation(operation).value}"
    if appointment_id is not None:
        key = f"{key}:{appointment_id}"
    return key


@dataclass
class RetryItem:
    key: str
    connection_id: int
    operation: RetryOperation
    appointment_id: Optional[int]
    attempt_count: int
    last_attempt_at: datetime
    last_error: Optional[str]
    created_at: datetime


class RetryStore:
    """Storage backend for retry items. All calls happen under RetryQueue's lock."""

    def get(self, key: str) -> Optional[RetryItem]:
        raise NotImplementedError

    def put(self, item: RetryItem) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> bool:
        raise NotImplementedError

    def all(self) -> list[RetryItem]:
        raise NotImplementedError


class InMemoryRetryStore(RetryStore):
    """Process-local store; items are lost on restart"""

    def __init__(self):
        self._items: dict[str, RetryItem] = {}

    def get(self, key: str) -> Optional[RetryItem]:
        item = self._items.get(key)
        return replace(item) if item else None

    def put(self, item: RetryItem) -> None:
        self._items[item.key] = replace(item)

    def delete(self, key: str) -> bool:
        return self._items.pop(key, None) is not None

    def all(self) -> list[RetryItem]:
        return [replace(item) for item in self._items.values()]


class SqlRetryStore(RetryStore):
    """Durable store backed by calendar_sync_retry_items"""

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    @staticmethod
    def _to_item(row: SyncRetryItem) -> RetryItem:
        return RetryItem(
            key=row.key,
            connection_id=row.connection_id,
            operation=RetryOperation(row.operation),
            appointment_id=row.appointment_id,
            attempt_count=row.attempt_count,
            last_attempt_at=row.last_attempt_at,
            last_error=row.last_error,
            created_at=row.created_at,
        )

    def get(self, key: str) -> Optional[RetryItem]:
        db = self._session_factory()
        try:
            row = db.query(SyncRetryItem).filter(SyncRetryItem.key == key).first()
            return self._to_item(row) if row else None
        finally:
            db.close()

    def put(self, item: RetryItem) -> None:
        db = self._session_factory()
        try:
            row = db.query(SyncRetryItem).filter(SyncRetryItem.key == item.key).first()
            if not row:
                row = SyncRetryItem(key=item.key)
                db.add(row)
            row.connection_id = item.connection_id
            row.operation = item.operation.value
            row.appointment_id = item.appointment_id
            row.attempt_count = item.attempt_count
            row.last_attempt_at = item.last_attempt_at
            row.last_error = item.last_error
            row.created_at = item.created_at
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def delete(self, key: str) -> bool:
        db = self._session_factory()
        try:
            removed = db.query(SyncRetryItem).filter(SyncRetryItem.key == key).delete(synchronize_session=False)
            db.commit()
            return removed > 0
        finally:
            db.close()

    def all(self) -> list[RetryItem]:
        db = self._session_factory()
        try:
            rows = db.query(SyncRetryItem).order_by(SyncRetryItem.created_at.asc()).all()
            return [self._to_item(row) for row in rows]
        finally:
            db.close()


class RetryQueue:
    """Thread-safe retry bookkeeping shared by API handlers, periodic jobs and worker tasks"""

    def __init__(
        self,
        store: Optional[RetryStore] = None,
        cooldown_seconds: int = SYNC_RETRY_COOLDOWN_SECONDS,
        max_retries: int = SYNC_MAX_RETRIES,
        now_fn: Callable[[], datetime] = utcnow,
    ):
        self._store = store or InMemoryRetryStore()
        self.cooldown = timedelta(seconds=cooldown_seconds)
        self.max_retries = max_retries
        self._now = now_fn
        self._lock = threading.Lock()

    def enqueue(
        self,
        connection_id: int,
        operation: RetryOperation,
        error: Optional[str] = None,
        appointment_id: Optional[int] = None,
    ) -> RetryItem:
        """
        Add a retry item, or refresh the error of the existing one.

        A new item starts at attempt 0 with its cooldown running from now.
        Re-enqueuing keeps the attempt count.
        """
        operation = RetryOperation(operation)
        key = retry_key(connection_id, operation, appointment_id)
        now = self._now()

        with self._lock:
            item = self._store.get(key)
            if item:
                item.last_error = error
                item.last_attempt_at = now
            else:
                item = RetryItem(
                    key=key,
                    connection_id=connection_id,
                    operation=operation,
                    appointment_id=appointment_id,
                    attempt_count=0,
                    last_attempt_at=now,
                    last_error=error,
                    created_at=now,
                )
            self._store.put(item)

        logger.info(f"🔁 Queued {operation.value} retry for connection {connection_id} ({key})")
        return item

    def get(self, key: str) -> Optional[RetryItem]:
        with self._lock:
            return self._store.get(key)

    def remove(self, key: str) -> bool:
        with self._lock:
            return self._store.delete(key)

    def items(self) -> list[RetryItem]:
        """Snapshot of the queue; mutating the returned items does not touch the queue"""
        with self._lock:
            return self._store.all()

    def size(self) -> int:
        return len(self.items())

    def next_retry_at(self, item: RetryItem) -> datetime:
        return item.last_attempt_at + self.cooldown

    def is_cooling_down(self, item: RetryItem, now: datetime) -> bool:
        return now < self.next_retry_at(item)

    def is_exhausted(self, item: RetryItem) -> bool:
        return item.attempt_count >= self.max_retries

    def mark_attempt(self, key: str, now: Optional[datetime] = None) -> Optional[RetryItem]:
        """Count an attempt and restart the cooldown"""
        with self._lock:
            item = self._store.get(key)
            if not item:
                return None
            item.attempt_count += 1
            item.last_attempt_at = now or self._now()
            self._store.put(item)
            return item

    def record_failure(self, key: str, error: str) -> Optional[RetryItem]:
        with self._lock:
            item = self._store.get(key)
            if not item:
                return None
            item.last_error = error
            self._store.put(item)
            return item

    def clear_connection(self, connection_id: int) -> int:
        with self._lock:
            keys = [item.key for item in self._store.all() if item.connection_id == connection_id]
            for key in keys:
                self._store.delete(key)
        if keys:
            logger.info(f"🧹 Cleared {len(keys)} retry items for connection {connection_id}")
        return len(keys)

    def status(self) -> list[RetryItemStatus]:
        return [
            RetryItemStatus(
                key=item.key,
                connection_id=item.connection_id,
                operation=item.operation.value,
                appointment_id=item.appointment_id,
                attempts=item.attempt_count,
                last_error=item.last_error,
                next_retry=self.next_retry_at(item),
            )
            for item in self.items()
        ]
