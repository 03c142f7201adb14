"""
Calendar Sync Routes
Operational endpoints over the sync orchestrator and scheduler
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from ...auth import require_admin
from ...shared.timeutils import to_naive_utc
from .errors import CalendarSyncError, ConnectionUnavailableError
from .scheduler import SyncScheduler
from .schemas import (
    AppointmentSyncRequest,
    BusyTimeResult,
    ConflictCheckResult,
    DispatchResult,
    ReconcileResult,
    SchedulerStatus,
    SyncConflictInfo,
    SyncStatusReport,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/calendar-sync", tags=["calendar-sync"], dependencies=[Depends(require_admin)])


def get_sync_scheduler(request: Request) -> SyncScheduler:
    scheduler = getattr(request.app.state, "sync_scheduler", None)
    if scheduler is None:
        raise HTTPException(status_code=503, detail="Calendar sync not initialized")
    return scheduler


def _validate_range(start: datetime, end: datetime) -> tuple[datetime, datetime]:
    start, end = to_naive_utc(start), to_naive_utc(end)
    if end <= start:
        raise HTTPException(status_code=400, detail="end must be after start")
    return start, end


@router.get("/status", response_model=SyncStatusReport)
async def get_sync_status(
    user_id: Optional[int] = None, scheduler: SyncScheduler = Depends(get_sync_scheduler)
):
    """Per-connection sync state"""
    return scheduler.orchestrator.get_sync_status(user_id)


@router.get("/scheduler", response_model=SchedulerStatus)
async def get_scheduler_status(scheduler: SyncScheduler = Depends(get_sync_scheduler)):
    return scheduler.get_status()


@router.get("/conflicts/open", response_model=list[SyncConflictInfo])
async def list_open_conflicts(
    user_id: Optional[int] = None, scheduler: SyncScheduler = Depends(get_sync_scheduler)
):
    return scheduler.orchestrator.list_open_conflicts(user_id)


@router.post("/conflicts/{conflict_id}/resolve", response_model=SyncConflictInfo)
async def resolve_conflict(conflict_id: int, scheduler: SyncScheduler = Depends(get_sync_scheduler)):
    conflict = scheduler.orchestrator.resolve_conflict(conflict_id)
    if not conflict:
        raise HTTPException(status_code=404, detail="Conflict not found")
    return conflict


@router.post("/connections/{connection_id}/sync", response_model=ReconcileResult)
async def force_sync_connection(connection_id: int, scheduler: SyncScheduler = Depends(get_sync_scheduler)):
    """Reconcile one connection immediately"""
    try:
        return await scheduler.force_sync(connection_id)
    except ConnectionUnavailableError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except CalendarSyncError as e:
        logger.error(f"❌ Force sync failed for connection {connection_id}: {e}")
        raise HTTPException(status_code=502, detail=f"Calendar sync failed: {e}")


@router.delete("/connections/{connection_id}/retry-queue")
async def clear_retry_queue(connection_id: int, scheduler: SyncScheduler = Depends(get_sync_scheduler)):
    removed = scheduler.clear_retry_queue(connection_id)
    return {"connection_id": connection_id, "removed": removed}


@router.post("/appointments/{appointment_id}/sync", response_model=DispatchResult)
async def sync_appointment(
    appointment_id: int,
    body: AppointmentSyncRequest,
    scheduler: SyncScheduler = Depends(get_sync_scheduler),
):
    """Push one appointment change to every connected calendar of its owner"""
    return await scheduler.orchestrator.dispatch(appointment_id, body.action, check_conflicts=body.checkConflicts)


@router.get("/busy-slots", response_model=BusyTimeResult)
async def get_busy_slots(
    user_id: int,
    start: datetime,
    end: datetime,
    scheduler: SyncScheduler = Depends(get_sync_scheduler),
):
    start, end = _validate_range(start, end)
    return await scheduler.orchestrator.busy_time.get_busy_slots(user_id, start, end)


@router.get("/conflict-check", response_model=ConflictCheckResult)
async def check_conflicts(
    user_id: int,
    start: datetime,
    end: datetime,
    exclude_event_id: Optional[list[str]] = Query(default=None),
    scheduler: SyncScheduler = Depends(get_sync_scheduler),
):
    """Does [start, end) overlap anything on the owner's calendars?"""
    start, end = _validate_range(start, end)
    return await scheduler.orchestrator.busy_time.check_conflicts(
        user_id, start, end, exclude_external_event_ids=exclude_event_id
    )
