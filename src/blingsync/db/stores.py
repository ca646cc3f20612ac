"""
Collaborators the core is built against, and their SQLModel implementations.

The Bling client, the sync orchestrator and the OAuth callback handler only
see the Protocols below; the Sql* classes are what the API, scheduler and
CLI wire in.
"""
import logging
from typing import Any, Dict, List, Optional, Protocol

from sqlmodel import Session, select

from blingsync.bling.tokens import TokenState
from blingsync.clock import utcnow
from blingsync.models.activity import ActivityRecord
from blingsync.models.company import CompanyUser
from blingsync.models.connection import BlingConnection

logger = logging.getLogger(__name__)


# ── Interfaces ────────────────────────────────────────────────────────────────

class CredentialStore(Protocol):
    def load(self, company_id: str) -> Optional[TokenState]:
        ...

    def save(self, state: TokenState) -> None:
        ...


class AccessChecker(Protocol):
    async def has_access(self, user_id: str, company_id: str) -> bool:
        ...


class ActivitySink(Protocol):
    def record(
        self,
        type: str,
        title: str,
        *,
        company_id: str,
        user_id: Optional[str] = None,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        ...


# ── SQL implementations ───────────────────────────────────────────────────────

class SqlCredentialStore:
    """TokenState persistence on the bling_configs table."""

    def __init__(self, engine):
        self.engine = engine

    def load(self, company_id: str) -> Optional[TokenState]:
        with Session(self.engine) as s:
            row = self._get(s, company_id)
            return row.to_token_state() if row else None

    def save(self, state: TokenState) -> None:
        """Write credentials and tokens in one transaction (insert or update)."""
        with Session(self.engine) as s:
            row = self._get(s, state.company_id)
            if row is None:
                row = BlingConnection(
                    company_id=state.company_id,
                    client_id=state.client_id,
                    client_secret=state.client_secret,
                )
            row.client_id = state.client_id
            row.client_secret = state.client_secret
            row.access_token = state.access_token
            row.refresh_token = state.refresh_token
            row.expires_at = state.expires_at
            row.is_active = state.is_active
            row.updated_at = utcnow()
            s.add(row)
            s.commit()

    def list_active(self) -> List[TokenState]:
        with Session(self.engine) as s:
            rows = s.exec(
                select(BlingConnection).where(BlingConnection.is_active == True)  # noqa: E712
            ).all()
            return [row.to_token_state() for row in rows]

    @staticmethod
    def _get(s: Session, company_id: str) -> Optional[BlingConnection]:
        return s.exec(
            select(BlingConnection).where(BlingConnection.company_id == company_id)
        ).first()


class SqlAccessChecker:
    """Grants access when the user is a member of the company."""

    def __init__(self, engine):
        self.engine = engine

    async def has_access(self, user_id: str, company_id: str) -> bool:
        if not user_id or not company_id:
            return False
        with Session(self.engine) as s:
            membership = s.exec(
                select(CompanyUser).where(
                    CompanyUser.user_id == user_id,
                    CompanyUser.company_id == company_id,
                )
            ).first()
        return membership is not None


class SqlActivitySink:
    """Appends ActivityRecord rows."""

    def __init__(self, engine):
        self.engine = engine

    def record(
        self,
        type: str,
        title: str,
        *,
        company_id: str,
        user_id: Optional[str] = None,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        with Session(self.engine) as s:
            s.add(
                ActivityRecord(
                    type=type,
                    title=title,
                    description=description,
                    user_id=user_id,
                    entity_type="company",
                    entity_id=company_id,
                    meta=metadata or {},
                )
            )
            s.commit()
        logger.debug("Recorded activity %s for company %s", type, company_id)
