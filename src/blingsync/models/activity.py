"""Audit trail of user-visible integration events."""
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from blingsync.clock import utcnow


class ActivityRecord(SQLModel, table=True):
    __tablename__ = "activity_logs"

    id: Optional[int] = Field(default=None, primary_key=True)
    type: str = Field(index=True)  # "integration_configured", "sync_completed", ...
    title: str
    description: Optional[str] = None
    user_id: Optional[str] = None
    entity_type: str = "company"
    entity_id: str = Field(index=True)
    # "metadata" is reserved on declarative models; the column and the
    # serialized field keep that name
    meta: Dict[str, Any] = Field(
        default_factory=dict, sa_column=Column("metadata", JSON),
        serialization_alias="metadata",
    )
    created_at: datetime = Field(default_factory=utcnow)
