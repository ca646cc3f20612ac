"""
APScheduler jobs for background sync.

Nightly sync catches anything changed in Bling since each company's last
completed run. A second job prunes finished sync logs past the retention
window.

The scheduler runs in the `python -m blingsync` process; the API runs
separately under uvicorn.
"""
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from blingsync.clock import utcnow
from blingsync.config import get_settings

logger = logging.getLogger(__name__)


def build_scheduler(engine) -> AsyncIOScheduler:
    """
    Create and configure the APScheduler.

    Args:
        engine: SQLAlchemy engine shared by the jobs.

    Returns:
        Configured AsyncIOScheduler (not yet started).
    """
    settings = get_settings()
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        _nightly_sync,
        trigger="cron",
        hour=settings.sync_hour,
        minute=0,
        id="nightly_sync",
        replace_existing=True,
        kwargs={"engine": engine},
    )
    scheduler.add_job(
        _cleanup_logs,
        trigger="cron",
        hour=settings.sync_hour,
        minute=30,
        id="cleanup_sync_logs",
        replace_existing=True,
        kwargs={"engine": engine},
    )

    return scheduler


async def _nightly_sync(engine) -> None:
    """
    Nightly job: incremental "all" sync for every active connection.

    One company failing (expired authorization, Bling down, a run already
    in progress) does not stop the others.
    """
    from blingsync.db.stores import SqlCredentialStore
    from blingsync.sync.runner import run_sync

    logger.info("Nightly sync starting at %s", utcnow().isoformat())

    for state in SqlCredentialStore(engine).list_active():
        if not state.is_authenticated:
            logger.info("Skipping company %s: Bling not authorized yet", state.company_id)
            continue
        try:
            summary = await run_sync(engine, state.company_id, "all", started_by="scheduler")
            logger.info(
                "Nightly sync for %s: %s (%d synced, %d errors)",
                state.company_id, summary.status, summary.synced, len(summary.errors),
            )
        except Exception as exc:
            logger.error("Nightly sync failed for %s: %s", state.company_id, exc)


async def _cleanup_logs(engine) -> None:
    from blingsync.sync.logs import SyncLogService

    days = get_settings().sync_log_retention_days
    try:
        SyncLogService(engine).cleanup_old_logs(days)
    except Exception as exc:
        logger.error("Sync log cleanup failed: %s", exc)
