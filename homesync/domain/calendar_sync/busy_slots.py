"""
Conflict detection and busy-time merging across an owner's calendars
"""

import asyncio
import logging
from collections.abc import Iterable
from datetime import datetime
from typing import Callable, Optional, Union

from sqlalchemy.orm import Session

from .adapters.registry import AdapterRegistry
from .repository import SyncRepository
from .schemas import BusySlot, BusyTimeResult, ConflictCheckResult, ConnectionConflicts

logger = logging.getLogger(__name__)


def intervals_overlap(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    """Half-open overlap: touching intervals do not conflict"""
    return a_start < b_end and b_start < a_end


def find_conflicts(slots: Iterable[BusySlot], start: datetime, end: datetime) -> list[BusySlot]:
    return [slot for slot in slots if intervals_overlap(start, end, slot.start, slot.end)]


def merge_busy_slots(per_connection_slots: Iterable[Iterable[BusySlot]]) -> list[BusySlot]:
    """
    Merge busy slots from several calendars into a minimal sorted list.

    Slots whose start is <= the running end (overlapping or touching) are
    folded into one; labels join with " / " and source connections accumulate.
    """
    all_slots = [slot for slots in per_connection_slots for slot in slots]
    if not all_slots:
        return []

    # sorted() is stable, so equal starts keep their input order
    ordered = sorted(all_slots, key=lambda slot: slot.start)

    merged: list[BusySlot] = []
    current = ordered[0].model_copy(deep=True)
    for slot in ordered[1:]:
        if slot.start <= current.end:
            current.end = max(current.end, slot.end)
            labels = [label for label in (current.label, slot.label) if label]
            current.label = " / ".join(labels) if labels else None
            for source in slot.source_connections:
                if source not in current.source_connections:
                    current.source_connections.append(source)
            current.event_id = None
        else:
            merged.append(current)
            current = slot.model_copy(deep=True)
    merged.append(current)
    return merged


class BusyTimeService:
    """Queries every active calendar of an owner for busy time"""

    def __init__(self, session_factory: Callable[[], Session], registry: AdapterRegistry):
        self._session_factory = session_factory
        self._registry = registry

    def _active_connections(self, user_id: int) -> list[tuple[int, str]]:
        db = self._session_factory()
        try:
            return [(c.id, c.provider) for c in SyncRepository.get_active_connections(db, user_id)]
        finally:
            db.close()

    async def _collect(
        self, user_id: int, start: datetime, end: datetime
    ) -> tuple[list[tuple[int, str, list[BusySlot]]], list[int]]:
        connections = self._active_connections(user_id)

        async def fetch(connection_id: int, provider: str) -> list[BusySlot]:
            adapter = self._registry.for_provider(provider)
            return await adapter.get_busy_slots(connection_id, start, end)

        outcomes = await asyncio.gather(
            *(fetch(connection_id, provider) for connection_id, provider in connections),
            return_exceptions=True,
        )

        collected: list[tuple[int, str, list[BusySlot]]] = []
        failed: list[int] = []
        for (connection_id, provider), outcome in zip(connections, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"❌ Failed to read busy time from {provider} connection {connection_id}: {outcome}")
                failed.append(connection_id)
                continue
            collected.append((connection_id, provider, outcome))
        return collected, failed

    async def get_busy_slots(self, user_id: int, start: datetime, end: datetime) -> BusyTimeResult:
        collected, failed = await self._collect(user_id, start, end)
        by_connection = {connection_id: slots for connection_id, _, slots in collected}
        return BusyTimeResult(
            busy_slots=merge_busy_slots(by_connection.values()),
            by_connection=by_connection,
            failed_connections=failed,
        )

    async def check_conflicts(
        self,
        user_id: int,
        start: datetime,
        end: datetime,
        exclude_external_event_ids: Optional[Union[str, Iterable[str]]] = None,
    ) -> ConflictCheckResult:
        """Busy slots overlapping [start, end) per connection, ignoring the excluded events"""
        if isinstance(exclude_external_event_ids, str):
            excluded = {exclude_external_event_ids}
        else:
            excluded = set(exclude_external_event_ids or [])

        collected, failed = await self._collect(user_id, start, end)

        conflicts_by_connection: list[ConnectionConflicts] = []
        for connection_id, provider, slots in collected:
            conflicts = find_conflicts((s for s in slots if s.event_id not in excluded), start, end)
            if conflicts:
                conflicts_by_connection.append(
                    ConnectionConflicts(connection_id=connection_id, provider=provider, conflicts=conflicts)
                )

        total = sum(len(entry.conflicts) for entry in conflicts_by_connection)
        return ConflictCheckResult(
            has_conflicts=total > 0,
            conflicts_by_connection=conflicts_by_connection,
            total_conflicts=total,
            failed_connections=failed,
        )
