"""Sync trigger, history and cancellation routes."""
import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from pydantic import BaseModel

from blingsync.api.deps import (
    get_client_factory,
    get_db_engine,
    get_user_id,
    require_company_access,
)
from blingsync.bling.client import BlingClient
from blingsync.bling.errors import SyncAlreadyRunningError
from blingsync.config import get_settings
from blingsync.models.sync import SyncRunLog, SyncStatus, SyncType
from blingsync.sync.logs import SyncLogNotFound, SyncLogPage, SyncLogService, SyncStats
from blingsync.sync.orchestrator import SyncOptions
from blingsync.sync.runner import build_client, build_orchestrator, execute_sync

logger = logging.getLogger(__name__)

router = APIRouter()


class SyncTriggerRequest(BaseModel):
    type: SyncType
    options: SyncOptions = SyncOptions()


class SyncTriggerResponse(BaseModel):
    message: str
    sync_id: str
    status: str


async def _do_sync(engine, client: BlingClient, log: SyncRunLog, options: SyncOptions) -> None:
    """Background task: run the sync. The log records the outcome."""
    try:
        await execute_sync(engine, client, log, options)
    except Exception as exc:
        logger.error("Sync %s failed: %s", log.id, exc)


@router.post("", response_model=SyncTriggerResponse)
async def trigger_sync(
    request: SyncTriggerRequest,
    background_tasks: BackgroundTasks,
    company_id: str = Depends(require_company_access),
    user_id: str = Depends(get_user_id),
    engine=Depends(get_db_engine),
    client_factory=Depends(get_client_factory),
):
    """
    Start a sync for the company. Returns immediately with the log id;
    the run continues in the background.
    """
    sync_type = request.type.value
    logs = SyncLogService(engine)
    client = build_client(engine, company_id, client_factory)
    try:
        if logs.has_active_sync_for_type(company_id, sync_type):
            raise SyncAlreadyRunningError(f"A {sync_type} sync is already running for {company_id}")
        log = build_orchestrator(engine, client).start(company_id, sync_type, request.options, user_id)
    except Exception:
        await client.aclose()
        raise

    background_tasks.add_task(_do_sync, engine, client, log, request.options)
    return SyncTriggerResponse(message="Sincronização iniciada", sync_id=log.id, status=log.status)


@router.get("", response_model=SyncLogPage)
def list_syncs(
    company_id: str = Depends(require_company_access),
    sync_type: Optional[SyncType] = None,
    status: Optional[SyncStatus] = None,
    started_by: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    engine=Depends(get_db_engine),
):
    """Sync history, newest first."""
    return SyncLogService(engine).list_sync_logs(
        company_id,
        sync_type=sync_type.value if sync_type else None,
        status=status.value if status else None,
        started_by=started_by,
        start_date=start_date,
        end_date=end_date,
        page=page,
        limit=limit,
    )


@router.get("/stats", response_model=SyncStats)
def sync_stats(
    company_id: str = Depends(require_company_access),
    days: Optional[int] = Query(default=None, ge=1),
    engine=Depends(get_db_engine),
):
    return SyncLogService(engine).get_sync_stats(
        company_id, days_back=days or get_settings().sync_stats_days
    )


@router.get("/active", response_model=List[SyncRunLog])
def active_syncs(
    company_id: str = Depends(require_company_access),
    engine=Depends(get_db_engine),
):
    return SyncLogService(engine).get_active_sync_logs(company_id)


@router.get("/{sync_id}", response_model=SyncRunLog)
def get_sync(
    sync_id: str,
    company_id: str = Depends(require_company_access),
    engine=Depends(get_db_engine),
):
    log = SyncLogService(engine).get_sync_log(sync_id, company_id)
    if log is None:
        raise SyncLogNotFound(sync_id)
    return log


@router.post("/{sync_id}/cancel", response_model=SyncRunLog)
def cancel_sync(
    sync_id: str,
    company_id: str = Depends(require_company_access),
    engine=Depends(get_db_engine),
):
    """Stop a running sync; it halts before its next page."""
    return SyncLogService(engine).cancel_sync_log(sync_id, company_id)
