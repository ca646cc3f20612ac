"""
Main entrypoint: runs the APScheduler jobs (nightly sync, log cleanup).

FastAPI runs separately under uvicorn (OAuth callback, sync admin, proxy).

Usage:
    python -m blingsync configure                       # store app credentials, print consent URL
    python -m blingsync sync --company ACME [--type T]  # one sync now
    python -m blingsync cleanup [--days 90]             # prune old sync logs
    python -m blingsync                                 # starts the scheduler
    uvicorn blingsync.api.main:app --host 0.0.0.0 --port 8000  # starts API
"""
import argparse
import asyncio
import logging
import sys

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)


def _run_setup() -> None:
    from blingsync.scripts.setup import run_setup
    run_setup()


def _run_sync(argv) -> int:
    from blingsync.scripts.backfill import main
    return main(argv)


def _run_cleanup(argv) -> None:
    from blingsync.config import get_settings
    from blingsync.db.engine import get_engine
    from blingsync.sync.logs import SyncLogService

    parser = argparse.ArgumentParser(description="Delete finished sync logs")
    parser.add_argument("--days", type=int, default=get_settings().sync_log_retention_days)
    args = parser.parse_args(argv)
    SyncLogService(get_engine()).cleanup_old_logs(args.days)


async def _run_scheduler() -> None:
    from blingsync.config import get_settings
    from blingsync.db.engine import get_engine
    from blingsync.scheduler.jobs import build_scheduler

    settings = get_settings()
    scheduler = build_scheduler(get_engine())
    scheduler.start()
    logger.info(
        "Scheduler started (nightly sync at %02d:00 UTC). Press Ctrl+C to stop.",
        settings.sync_hour,
    )

    try:
        await asyncio.Event().wait()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Shutting down...")
    finally:
        scheduler.shutdown()
        logger.info("Goodbye.")


if __name__ == "__main__":
    # Dispatch on first argument; no argument starts the scheduler
    command = sys.argv[1] if len(sys.argv) > 1 else None
    if command == "configure":
        _run_setup()
    elif command == "sync":
        sys.exit(_run_sync(sys.argv[2:]))
    elif command == "cleanup":
        _run_cleanup(sys.argv[2:])
    else:
        asyncio.run(_run_scheduler())
