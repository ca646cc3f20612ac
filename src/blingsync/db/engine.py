"""SQLModel engine singleton."""
from sqlmodel import SQLModel, create_engine

from blingsync.config import get_settings

_engine = None


def _import_models() -> None:
    # Import all models so metadata is populated before create_all
    from blingsync.models.activity import ActivityRecord  # noqa
    from blingsync.models.company import CompanyUser  # noqa
    from blingsync.models.connection import BlingConnection  # noqa
    from blingsync.models.entities import BlingCustomer, BlingOrder, BlingProduct  # noqa
    from blingsync.models.sync import SyncRunLog  # noqa


def get_engine():
    """Return the module-level engine, creating it on first call."""
    global _engine
    if _engine is None:
        settings = get_settings()
        connect_args = {}
        if settings.database_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False  # shared with the API's threadpool
        _engine = create_engine(settings.database_url, connect_args=connect_args)
        init_db(_engine)
    return _engine


def init_db(engine) -> None:
    """Create missing tables and apply column migrations (idempotent)."""
    _import_models()
    SQLModel.metadata.create_all(engine)
    from blingsync.db.migrations import run_migrations
    run_migrations(engine)
