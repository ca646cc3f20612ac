"""Company membership, used to authorize per-tenant requests."""
from datetime import datetime
from typing import Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel

from blingsync.clock import utcnow


class CompanyUser(SQLModel, table=True):
    __tablename__ = "company_users"
    __table_args__ = (UniqueConstraint("company_id", "user_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    company_id: str = Field(index=True)
    user_id: str = Field(index=True)
    role: str = "member"
    created_at: datetime = Field(default_factory=utcnow)
