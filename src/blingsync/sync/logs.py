"""
SyncLogService: create, advance, query and summarize SyncRunLog rows.

Lifecycle rules enforced here:
  - a log is created in_progress with zero counters;
  - completed_at is stamped exactly once, on the first move into a
    terminal status (completed / failed / cancelled);
  - nothing moves a log out of a terminal status;
  - counters never decrease;
  - a completed or failed log is frozen: counters, result and error
    message no longer change. A cancelled log still takes the progress
    flush of the page that was in flight when it was cancelled.

Creation is a compare-and-swap: the partial unique index on
(company_id, sync_type) WHERE status = 'in_progress' rejects a second
concurrent run even when two triggers pass has_active_sync_for_type()
at the same time.
"""
import logging
import math
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from pydantic import BaseModel
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from blingsync.bling.errors import InvalidTransitionError, SyncAlreadyRunningError
from blingsync.clock import as_utc, utcnow
from blingsync.models.sync import TERMINAL_STATUSES, SyncRunLog, SyncStatus

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Sincronização cancelada pelo usuário"
MAX_PAGE_SIZE = 100

# Terminal statuses whose outcome is final; cancelled is not one of them
FROZEN_STATUSES = frozenset({SyncStatus.COMPLETED.value, SyncStatus.FAILED.value})


class SyncLogNotFound(LookupError):
    """Raised when a sync log id does not exist (or belongs to another company)."""


class SyncLogPage(BaseModel):
    data: List[SyncRunLog]
    total: int
    page: int
    limit: int
    total_pages: int


class SyncTypeStats(BaseModel):
    count: int
    success_rate: float


class SyncStats(BaseModel):
    total_syncs: int = 0
    successful_syncs: int = 0
    failed_syncs: int = 0
    cancelled_syncs: int = 0
    in_progress_syncs: int = 0
    success_rate: float = 0.0  # percent of finished runs that completed
    avg_duration_minutes: float = 0.0
    last_sync_at: Optional[datetime] = None
    sync_types: Dict[str, SyncTypeStats] = {}


class SyncLogService:
    def __init__(self, engine):
        self.engine = engine

    # ── Writes ────────────────────────────────────────────────────────────────

    def create_sync_log(
        self,
        company_id: str,
        sync_type: str,
        *,
        started_by: Optional[str] = None,
        options: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> SyncRunLog:
        """
        Insert a new in_progress log.

        Raises:
            SyncAlreadyRunningError: if an in_progress log already exists
                for (company_id, sync_type).
        """
        log = SyncRunLog(
            company_id=company_id,
            sync_type=sync_type,
            status=SyncStatus.IN_PROGRESS.value,
            started_by=started_by,
            options=options or {},
            meta=metadata or {},
        )
        with Session(self.engine) as s:
            s.add(log)
            try:
                s.commit()
            except IntegrityError as exc:
                s.rollback()
                raise SyncAlreadyRunningError(
                    f"A {sync_type} sync is already running for company {company_id}"
                ) from exc
            s.refresh(log)
        logger.info("Sync %s started: company=%s type=%s", log.id, company_id, sync_type)
        return log

    def update_sync_log(
        self,
        log_id: str,
        *,
        status: Optional[str] = None,
        result: Optional[Dict[str, Any]] = None,
        total_processed: Optional[int] = None,
        total_success: Optional[int] = None,
        total_errors: Optional[int] = None,
        error_message: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> SyncRunLog:
        """
        Apply a partial update.

        Raises:
            SyncLogNotFound: if the log does not exist.
            InvalidTransitionError: if the log is terminal and a different
                status is requested, or if the log completed or failed and
                its counters, result or error message would change.
            ValueError: if a counter would decrease.
        """
        counters = {
            "total_processed": total_processed,
            "total_success": total_success,
            "total_errors": total_errors,
        }
        with Session(self.engine) as s:
            log = s.get(SyncRunLog, log_id)
            if log is None:
                raise SyncLogNotFound(log_id)

            if log.status in FROZEN_STATUSES and _changes_outcome(
                log, counters, result, error_message
            ):
                raise InvalidTransitionError(
                    f"Sync {log_id} is already {log.status}; its outcome cannot change"
                )

            if status is not None and status != log.status:
                if log.is_terminal:
                    raise InvalidTransitionError(
                        f"Sync {log_id} is already {log.status}; cannot move to {status}"
                    )
                log.status = status
                if status in TERMINAL_STATUSES:
                    log.completed_at = utcnow()

            for name, value in counters.items():
                if value is None:
                    continue
                if value < getattr(log, name):
                    raise ValueError(f"{name} cannot decrease ({getattr(log, name)} -> {value})")
                setattr(log, name, value)

            # JSON columns: assign new objects so the change is detected
            if result is not None:
                log.result = dict(result)
            if metadata is not None:
                log.meta = {**(log.meta or {}), **metadata}
            if error_message is not None:
                log.error_message = error_message

            log.updated_at = utcnow()
            s.add(log)
            s.commit()
            s.refresh(log)
            return log

    def update_sync_progress(
        self,
        log_id: str,
        *,
        total_processed: int,
        total_success: int,
        total_errors: int,
        result: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> SyncRunLog:
        """Write counters and tallies without touching the status."""
        return self.update_sync_log(
            log_id,
            total_processed=total_processed,
            total_success=total_success,
            total_errors=total_errors,
            result=result,
            metadata=metadata,
        )

    def finish_sync_log(
        self, log_id: str, status: str, error_message: Optional[str] = None
    ) -> SyncRunLog:
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"{status!r} is not a terminal status")
        return self.update_sync_log(log_id, status=status, error_message=error_message)

    def cancel_sync_log(self, log_id: str, company_id: str) -> SyncRunLog:
        """
        Mark a running sync as cancelled. The orchestrator notices between pages.

        Raises:
            SyncLogNotFound: if no such log exists for the company.
            InvalidTransitionError: if the log already finished.
        """
        if self.get_sync_log(log_id, company_id) is None:
            raise SyncLogNotFound(log_id)
        log = self.update_sync_log(
            log_id, status=SyncStatus.CANCELLED.value, error_message=CANCELLED_MESSAGE
        )
        logger.info("Sync %s cancelled for company %s", log_id, company_id)
        return log

    def cleanup_old_logs(self, days: int = 90) -> int:
        """Delete finished logs started more than `days` ago. Returns the count."""
        cutoff = utcnow() - timedelta(days=days)
        with Session(self.engine) as s:
            expired = s.exec(
                select(SyncRunLog).where(
                    SyncRunLog.started_at < cutoff,
                    SyncRunLog.status.in_(sorted(TERMINAL_STATUSES)),
                )
            ).all()
            for log in expired:
                s.delete(log)
            s.commit()
            removed = len(expired)
        logger.info("Removed %d sync logs older than %d days", removed, days)
        return removed

    # ── Reads ─────────────────────────────────────────────────────────────────

    def get_sync_log(self, log_id: str, company_id: str) -> Optional[SyncRunLog]:
        with Session(self.engine) as s:
            return s.exec(
                select(SyncRunLog).where(
                    SyncRunLog.id == log_id, SyncRunLog.company_id == company_id
                )
            ).first()

    def get_status(self, log_id: str) -> Optional[str]:
        """Current status only; polled by the orchestrator between pages."""
        with Session(self.engine) as s:
            log = s.get(SyncRunLog, log_id)
            return log.status if log else None

    def list_sync_logs(
        self,
        company_id: str,
        *,
        sync_type: Optional[str] = None,
        status: Optional[str] = None,
        started_by: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        page: int = 1,
        limit: int = 20,
    ) -> SyncLogPage:
        """Newest first. `limit` is capped at 100, `page` starts at 1."""
        page = max(page, 1)
        limit = min(max(limit, 1), MAX_PAGE_SIZE)

        conditions = [SyncRunLog.company_id == company_id]
        if sync_type:
            conditions.append(SyncRunLog.sync_type == sync_type)
        if status:
            conditions.append(SyncRunLog.status == status)
        if started_by:
            conditions.append(SyncRunLog.started_by == started_by)
        if start_date:
            conditions.append(SyncRunLog.started_at >= as_utc(start_date))
        if end_date:
            conditions.append(SyncRunLog.started_at <= as_utc(end_date))

        with Session(self.engine) as s:
            total = s.exec(
                select(func.count()).select_from(SyncRunLog).where(*conditions)
            ).one()
            rows = s.exec(
                select(SyncRunLog)
                .where(*conditions)
                .order_by(SyncRunLog.started_at.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            ).all()

        return SyncLogPage(
            data=list(rows),
            total=total,
            page=page,
            limit=limit,
            total_pages=math.ceil(total / limit),
        )

    def get_active_sync_logs(self, company_id: str) -> List[SyncRunLog]:
        with Session(self.engine) as s:
            return list(
                s.exec(
                    select(SyncRunLog)
                    .where(
                        SyncRunLog.company_id == company_id,
                        SyncRunLog.status == SyncStatus.IN_PROGRESS.value,
                    )
                    .order_by(SyncRunLog.started_at.desc())
                ).all()
            )

    def has_active_sync_for_type(self, company_id: str, sync_type: str) -> bool:
        """Advisory check; create_sync_log() is the authoritative guard."""
        with Session(self.engine) as s:
            found = s.exec(
                select(SyncRunLog.id).where(
                    SyncRunLog.company_id == company_id,
                    SyncRunLog.sync_type == sync_type,
                    SyncRunLog.status == SyncStatus.IN_PROGRESS.value,
                )
            ).first()
        return found is not None

    def get_last_successful_sync(self, company_id: str, sync_type: str) -> Optional[SyncRunLog]:
        with Session(self.engine) as s:
            return s.exec(
                select(SyncRunLog)
                .where(
                    SyncRunLog.company_id == company_id,
                    SyncRunLog.sync_type == sync_type,
                    SyncRunLog.status == SyncStatus.COMPLETED.value,
                )
                .order_by(SyncRunLog.completed_at.desc())
            ).first()

    def get_sync_stats(self, company_id: str, days_back: int = 30) -> SyncStats:
        """Aggregate the company's runs started within the last `days_back` days."""
        since = utcnow() - timedelta(days=days_back)
        with Session(self.engine) as s:
            logs = s.exec(
                select(SyncRunLog).where(
                    SyncRunLog.company_id == company_id,
                    SyncRunLog.started_at >= since,
                )
            ).all()

        if not logs:
            return SyncStats()

        by_status = {status.value: 0 for status in SyncStatus}
        for log in logs:
            by_status[log.status] = by_status.get(log.status, 0) + 1

        durations = [
            (log.completed_at - log.started_at).total_seconds() / 60
            for log in logs
            if log.completed_at is not None
        ]

        per_type: Dict[str, List[SyncRunLog]] = {}
        for log in logs:
            per_type.setdefault(log.sync_type, []).append(log)

        return SyncStats(
            total_syncs=len(logs),
            successful_syncs=by_status[SyncStatus.COMPLETED.value],
            failed_syncs=by_status[SyncStatus.FAILED.value],
            cancelled_syncs=by_status[SyncStatus.CANCELLED.value],
            in_progress_syncs=by_status[SyncStatus.IN_PROGRESS.value],
            success_rate=_success_rate(logs),
            avg_duration_minutes=round(sum(durations) / len(durations), 2) if durations else 0.0,
            last_sync_at=max(log.started_at for log in logs),
            sync_types={
                sync_type: SyncTypeStats(count=len(group), success_rate=_success_rate(group))
                for sync_type, group in per_type.items()
            },
        )


def _changes_outcome(
    log: SyncRunLog,
    counters: Dict[str, Optional[int]],
    result: Optional[Dict[str, Any]],
    error_message: Optional[str],
) -> bool:
    if any(value is not None and value != getattr(log, name) for name, value in counters.items()):
        return True
    if result is not None and result != log.result:
        return True
    return error_message is not None and error_message != log.error_message


def _success_rate(logs: List[SyncRunLog]) -> float:
    """Percentage of finished runs that completed; running ones are left out."""
    finished = [log for log in logs if log.is_terminal]
    if not finished:
        return 0.0
    completed = sum(1 for log in finished if log.status == SyncStatus.COMPLETED.value)
    return round(100.0 * completed / len(finished), 2)
