"""
SyncOrchestrator: pulls pages of Bling records and persists them locally.

Flow for one run:
  1. Create SyncRunLog (status="in_progress") before any remote call
  2. Resolve the `since` checkpoint (explicit start_date, else the last
     completed run of the same type, unless force_update)
  3. For each entity type: fetch page N, persist every item independently,
     write counters to the log, move to page N+1 while Bling reports more
  4. Before every page, poll the log; a cancelled log stops the loop
  5. Update SyncRunLog (status="completed")

A failing item is recorded in the log's result and counted in
total_errors; the run keeps going. A failing page (HTTP error, timeout)
fails the run and is reported in the returned summary. Any other error
(bad credentials, refresh rejected) fails the run and is re-raised.
"""
import asyncio
import logging
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from blingsync.bling.errors import (
    ConfigurationError,
    FetchError,
    InvalidTransitionError,
    ItemPersistError,
)
from blingsync.bling.schemas import BlingResponse, CustomerFilters, OrderFilters, ProductFilters
from blingsync.clock import as_utc
from blingsync.models.sync import SyncRunLog, SyncStatus, SyncType
from blingsync.sync.logs import SyncLogService

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 100

# entity -> (client method, filter model)
ENTITY_SOURCES = {
    SyncType.ORDERS.value: ("get_orders", OrderFilters),
    SyncType.PRODUCTS.value: ("get_products", ProductFilters),
    SyncType.CUSTOMERS.value: ("get_customers", CustomerFilters),
}


class SyncOptions(BaseModel):
    start_date: Optional[date] = None  # overrides the checkpoint
    end_date: Optional[date] = None
    force_update: bool = False  # ignore the checkpoint, fetch everything
    page_size: Optional[int] = Field(default=None, ge=1, le=100)
    include_data: bool = False  # echo each record into the log's result


class SyncSummary(BaseModel):
    log_id: str
    status: str
    success: bool
    synced: int
    errors: List[str] = []


class _RunTally:
    """In-memory counters for one run; flushed to the log after every page."""

    def __init__(self, log_id: str):
        self.log_id = log_id
        self.processed = 0
        self.success = 0
        self.errors = 0
        self.result: Dict[str, Dict[str, Any]] = {}
        self.error_messages: List[str] = []
        self.cancelled = False

    def bucket(self, entity: str) -> Dict[str, Any]:
        return self.result.setdefault(
            entity, {"processed": 0, "success": 0, "errors": 0, "items": []}
        )

    def record_success(self, entity: str, item_id: str, data: Optional[Dict] = None) -> None:
        entry: Dict[str, Any] = {"id": item_id, "status": "success"}
        if data is not None:
            entry["data"] = data
        self._record(entity, entry, ok=True)

    def record_error(self, entity: str, item_id: str, message: str) -> None:
        self._record(entity, {"id": item_id, "status": "error", "error": message}, ok=False)
        self.error_messages.append(f"{entity} {item_id}: {message}")

    def _record(self, entity: str, entry: Dict[str, Any], *, ok: bool) -> None:
        bucket = self.bucket(entity)
        bucket["items"].append(entry)
        bucket["processed"] += 1
        self.processed += 1
        if ok:
            bucket["success"] += 1
            self.success += 1
        else:
            bucket["errors"] += 1
            self.errors += 1


class SyncOrchestrator:
    """Runs Bling -> DB syncs for one company."""

    def __init__(
        self,
        client,
        logs: SyncLogService,
        persister,
        *,
        page_size: int = DEFAULT_PAGE_SIZE,
        delay_between_pages: float = 0.0,
    ):
        """
        Args:
            client: BlingClient for the company (or AsyncMock in tests).
            logs: SyncLogService bound to the same database.
            persister: EntityPersister used to store each record.
            page_size: Records per page requested from Bling (1-100).
            delay_between_pages: Seconds to sleep between page requests.
        """
        if not 1 <= page_size <= 100:
            raise ValueError("page_size must be between 1 and 100")
        self.client = client
        self.logs = logs
        self.persister = persister
        self.page_size = page_size
        self.delay_between_pages = delay_between_pages

    async def run(
        self,
        company_id: str,
        sync_type: str,
        options: Optional[SyncOptions] = None,
        started_by: Optional[str] = None,
    ) -> SyncSummary:
        """
        Create the log and execute the run.

        Raises:
            SyncAlreadyRunningError: if a run of this type is in progress.
            ConfigurationError, RefreshError, AuthExchangeError: after the
                log has been marked failed.
        """
        options = options or SyncOptions()
        log = self.start(company_id, sync_type, options, started_by)
        return await self.execute(log, options)

    def start(
        self,
        company_id: str,
        sync_type: str,
        options: SyncOptions,
        started_by: Optional[str] = None,
    ) -> SyncRunLog:
        """Create the in_progress log without contacting Bling."""
        sync_type = SyncType(sync_type).value
        return self.logs.create_sync_log(
            company_id,
            sync_type,
            started_by=started_by,
            options=options.model_dump(mode="json"),
        )

    async def execute(self, log: SyncRunLog, options: Optional[SyncOptions] = None) -> SyncSummary:
        options = options or SyncOptions()
        tally = _RunTally(log.id)

        try:
            state = self.client.token_state
            if not state.is_active or not state.is_authenticated:
                raise ConfigurationError(
                    f"Bling connection for company {log.company_id} is not authorized"
                )

            since = self._resolve_since(log, options)
            for entity in _entities_for(log.sync_type):
                await self._sync_entity(tally, log.company_id, entity, since, options)
                if tally.cancelled:
                    break

        except FetchError as exc:
            logger.warning("Sync %s failed fetching from Bling: %s", log.id, exc)
            return self._finish(tally, SyncStatus.FAILED.value, str(exc))

        except Exception as exc:
            self._finish(tally, SyncStatus.FAILED.value, str(exc))
            raise

        if tally.cancelled:
            logger.info("Sync %s stopped after cancellation", log.id)
            return self._summary(tally, SyncStatus.CANCELLED.value)
        return self._finish(tally, SyncStatus.COMPLETED.value)

    # ─── Internal helpers ─────────────────────────────────────────────────────

    def _resolve_since(self, log: SyncRunLog, options: SyncOptions) -> Optional[Union[datetime, date]]:
        if options.start_date is not None:
            return options.start_date
        if options.force_update:
            return None
        last = self.logs.get_last_successful_sync(log.company_id, log.sync_type)
        if last is None or last.completed_at is None:
            return None
        return as_utc(last.completed_at)

    async def _sync_entity(
        self,
        tally: _RunTally,
        company_id: str,
        entity: str,
        since: Optional[Union[datetime, date]],
        options: SyncOptions,
    ) -> None:
        method_name, filter_cls = ENTITY_SOURCES[entity]
        fetch = getattr(self.client, method_name)
        page_size = options.page_size or self.page_size
        page = 1

        while True:
            if self._is_cancelled(tally.log_id):
                tally.cancelled = True
                return

            filters = filter_cls(
                pagina=page,
                limite=page_size,
                data_alteracao_inicial=since,
                data_alteracao_final=options.end_date,
            )
            response: BlingResponse = await fetch(filters)
            if not response.success:
                error = response.error
                raise FetchError(
                    f"Failed to fetch {entity} page {page}: {error.message if error else 'unknown error'}",
                    code=error.code if error else None,
                )

            items = response.data or []
            if not items:
                return

            for item in items:
                self._persist(tally, company_id, entity, item, options.include_data)

            self.logs.update_sync_progress(
                tally.log_id,
                total_processed=tally.processed,
                total_success=tally.success,
                total_errors=tally.errors,
                result=tally.result,
            )
            logger.info(
                "Sync %s: %s page %d done (%d items, %d errors so far)",
                tally.log_id, entity, page, len(items), tally.errors,
            )

            if not _has_more_pages(response.meta, page, len(items), page_size):
                return
            page += 1
            if self.delay_between_pages:
                await asyncio.sleep(self.delay_between_pages)

    def _persist(
        self,
        tally: _RunTally,
        company_id: str,
        entity: str,
        item: Dict[str, Any],
        include_data: bool,
    ) -> None:
        item_id = str(item.get("id", "unknown"))
        try:
            self.persister.save(company_id, entity, item)
        except ItemPersistError as exc:
            logger.warning("Sync %s: %s", tally.log_id, exc)
            tally.record_error(entity, item_id, exc.reason)
            return
        except Exception as exc:
            # Anything the persister didn't classify still only costs this item
            logger.exception("Sync %s: unexpected error saving %s %s", tally.log_id, entity, item_id)
            tally.record_error(entity, item_id, str(exc))
            return
        tally.record_success(entity, item_id, item if include_data else None)

    def _is_cancelled(self, log_id: str) -> bool:
        return self.logs.get_status(log_id) == SyncStatus.CANCELLED.value

    def _finish(self, tally: _RunTally, status: str, error_message: Optional[str] = None) -> SyncSummary:
        self.logs.update_sync_progress(
            tally.log_id,
            total_processed=tally.processed,
            total_success=tally.success,
            total_errors=tally.errors,
            result=tally.result,
        )
        try:
            log = self.logs.finish_sync_log(tally.log_id, status, error_message)
        except InvalidTransitionError:
            # Cancelled out-of-band after the last poll; the cancellation stands
            final = self.logs.get_status(tally.log_id)
            logger.info("Sync %s was already %s; keeping that status", tally.log_id, final)
            return self._summary(tally, final, error_message)
        logger.info(
            "Sync %s %s: processed=%d success=%d errors=%d",
            log.id, log.status, log.total_processed, log.total_success, log.total_errors,
        )
        return self._summary(tally, log.status, error_message)

    @staticmethod
    def _summary(tally: _RunTally, status: str, error_message: Optional[str] = None) -> SyncSummary:
        errors = list(tally.error_messages)
        if error_message:
            errors.append(error_message)
        return SyncSummary(
            log_id=tally.log_id,
            status=status,
            success=status == SyncStatus.COMPLETED.value,
            synced=tally.success,
            errors=errors,
        )


def _entities_for(sync_type: str) -> List[str]:
    if sync_type == SyncType.ALL.value:
        return [SyncType.ORDERS.value, SyncType.PRODUCTS.value, SyncType.CUSTOMERS.value]
    return [sync_type]


def _has_more_pages(meta: Optional[Dict[str, Any]], page: int, count: int, page_size: int) -> bool:
    """Trust Bling's page count when present; otherwise a full page means maybe more."""
    pages = (meta or {}).get("pages")
    if isinstance(pages, int):
        return page < pages
    return count >= page_size
