"""Sync run log model."""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from uuid import uuid4

from sqlalchemy import JSON, Column, Index, text
from sqlmodel import Field, SQLModel

from blingsync.clock import utcnow


class SyncType(str, Enum):
    ORDERS = "orders"
    PRODUCTS = "products"
    CUSTOMERS = "customers"
    ALL = "all"


class SyncStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset(
    {SyncStatus.COMPLETED.value, SyncStatus.FAILED.value, SyncStatus.CANCELLED.value}
)

_ACTIVE_ONLY = text("status = 'in_progress'")


class SyncRunLog(SQLModel, table=True):
    """Records one sync attempt: lifecycle, counters and per-item outcomes."""

    __tablename__ = "bling_sync_logs"
    # At most one in_progress run per (company, type): inserts race on this index
    __table_args__ = (
        Index(
            "ux_bling_sync_logs_active",
            "company_id",
            "sync_type",
            unique=True,
            sqlite_where=_ACTIVE_ONLY,
            postgresql_where=_ACTIVE_ONLY,
        ),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    company_id: str = Field(index=True)
    sync_type: str  # "orders", "products", "customers", "all"
    status: str = Field(default=SyncStatus.IN_PROGRESS.value, index=True)
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    started_by: Optional[str] = None
    options: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    result: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    total_processed: int = 0
    total_success: int = 0
    total_errors: int = 0
    error_message: Optional[str] = None
    # "metadata" is reserved on declarative models; the column and the
    # serialized field keep that name
    meta: Dict[str, Any] = Field(
        default_factory=dict, sa_column=Column("metadata", JSON),
        serialization_alias="metadata",
    )
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
