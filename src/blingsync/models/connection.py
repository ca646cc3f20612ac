"""Bling connection (credentials + tokens) per company."""
from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel

from blingsync.bling.tokens import TokenState
from blingsync.clock import utcnow


class BlingConnection(SQLModel, table=True):
    """One row per company. Never deleted; administrators toggle is_active."""

    __tablename__ = "bling_configs"

    id: Optional[int] = Field(default=None, primary_key=True)
    company_id: str = Field(unique=True, index=True)
    client_id: str
    client_secret: str
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    is_active: bool = True
    webhook_url: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def to_token_state(self) -> TokenState:
        return TokenState(
            company_id=self.company_id,
            client_id=self.client_id,
            client_secret=self.client_secret,
            access_token=self.access_token,
            refresh_token=self.refresh_token,
            expires_at=self.expires_at,
            is_active=self.is_active,
        )
