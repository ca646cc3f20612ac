"""
Wiring for sync runs: load the tenant's connection, build a client and an
orchestrator on the SQL stores, run, and record the outcome as an activity.

Used by the API (background task), the nightly scheduler job and the CLI.
"""
import logging
from typing import Callable, Optional

from blingsync.bling.client import BlingClient
from blingsync.bling.errors import ConfigurationError
from blingsync.bling.tokens import TokenState
from blingsync.config import get_settings
from blingsync.db.stores import SqlActivitySink, SqlCredentialStore
from blingsync.models.sync import SyncRunLog
from blingsync.sync.logs import SyncLogService
from blingsync.sync.orchestrator import SyncOptions, SyncOrchestrator, SyncSummary
from blingsync.sync.persist import SqlEntityPersister

logger = logging.getLogger(__name__)

ClientFactory = Callable[[TokenState, SqlCredentialStore], BlingClient]


def default_client_factory(state: TokenState, store: SqlCredentialStore) -> BlingClient:
    return BlingClient(state, store=store)


def build_client(engine, company_id: str, client_factory: Optional[ClientFactory] = None) -> BlingClient:
    """
    Raises:
        ConfigurationError: if the company has no active Bling connection.
    """
    store = SqlCredentialStore(engine)
    state = store.load(company_id)
    if state is None or not state.is_active:
        raise ConfigurationError(f"No active Bling connection for company {company_id}")
    return (client_factory or default_client_factory)(state, store)


def build_orchestrator(engine, client: BlingClient) -> SyncOrchestrator:
    settings = get_settings()
    return SyncOrchestrator(
        client,
        SyncLogService(engine),
        SqlEntityPersister(engine),
        page_size=settings.sync_page_size,
        delay_between_pages=settings.sync_delay_seconds,
    )


async def execute_sync(
    engine,
    client: BlingClient,
    log: SyncRunLog,
    options: Optional[SyncOptions] = None,
) -> SyncSummary:
    """Run an already-created log to completion. Closes the client."""
    activities = SqlActivitySink(engine)
    try:
        summary = await build_orchestrator(engine, client).execute(log, options)
    except Exception as exc:
        _record_outcome(activities, log, success=False, detail=str(exc))
        raise
    finally:
        await client.aclose()

    _record_outcome(
        activities,
        log,
        success=summary.success,
        detail=None if summary.success else "; ".join(summary.errors[-1:]),
        synced=summary.synced,
        status=summary.status,
    )
    return summary


async def run_sync(
    engine,
    company_id: str,
    sync_type: str,
    options: Optional[SyncOptions] = None,
    started_by: Optional[str] = None,
    client_factory: Optional[ClientFactory] = None,
) -> SyncSummary:
    """
    Create a log and run it in the current task.

    Raises:
        ConfigurationError: no active connection (no log is created).
        SyncAlreadyRunningError: a run of this type is already in progress.
    """
    options = options or SyncOptions()
    client = build_client(engine, company_id, client_factory)
    try:
        log = build_orchestrator(engine, client).start(company_id, sync_type, options, started_by)
    except Exception:
        await client.aclose()
        raise
    return await execute_sync(engine, client, log, options)


def _record_outcome(
    activities,
    log: SyncRunLog,
    *,
    success: bool,
    detail: Optional[str] = None,
    synced: int = 0,
    status: Optional[str] = None,
) -> None:
    try:
        activities.record(
            "sync_completed" if success else "sync_failed",
            f"Sincronização Bling {'concluída' if success else 'falhou'}",
            company_id=log.company_id,
            user_id=log.started_by,
            description=f"Sincronização {log.sync_type} "
            f"{'concluída com sucesso' if success else 'falhou'} para empresa {log.company_id}",
            metadata={
                "sync_id": log.id,
                "sync_type": log.sync_type,
                "status": status,
                "synced": synced,
                "error": detail,
            },
        )
    except Exception:
        # The run itself is already recorded in its log
        logger.exception("Could not record activity for sync %s", log.id)
