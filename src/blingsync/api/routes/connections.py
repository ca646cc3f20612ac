"""Per-company Bling connection settings."""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlmodel import Session, select

from blingsync.api.deps import get_client_factory, get_session, require_company_access
from blingsync.bling.errors import ConfigurationError
from blingsync.clock import utcnow
from blingsync.models.connection import BlingConnection

router = APIRouter()


class ConnectionCreate(BaseModel):
    client_id: str = Field(min_length=1)
    client_secret: str = Field(min_length=1)
    webhook_url: Optional[str] = None
    is_active: bool = True


class ConnectionUpdate(BaseModel):
    client_id: Optional[str] = Field(default=None, min_length=1)
    client_secret: Optional[str] = Field(default=None, min_length=1)
    webhook_url: Optional[str] = None
    is_active: Optional[bool] = None


class ConnectionView(BaseModel):
    """Connection without the client secret or token values."""

    company_id: str
    client_id: str
    is_active: bool
    is_authorized: bool
    expires_at: Optional[datetime]
    webhook_url: Optional[str]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_row(cls, row: BlingConnection) -> "ConnectionView":
        return cls(
            company_id=row.company_id,
            client_id=row.client_id,
            is_active=row.is_active,
            is_authorized=bool(row.access_token or row.refresh_token),
            expires_at=row.expires_at,
            webhook_url=row.webhook_url,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )


def _get_row(session: Session, company_id: str) -> Optional[BlingConnection]:
    return session.exec(
        select(BlingConnection).where(BlingConnection.company_id == company_id)
    ).first()


@router.get("", response_model=Optional[ConnectionView])
def get_connection(
    company_id: str = Depends(require_company_access),
    session: Session = Depends(get_session),
):
    """Return the company's connection, or null when none was saved."""
    row = _get_row(session, company_id)
    return ConnectionView.from_row(row) if row else None


@router.post("", response_model=ConnectionView, status_code=201)
def create_connection(
    body: ConnectionCreate,
    company_id: str = Depends(require_company_access),
    session: Session = Depends(get_session),
):
    if _get_row(session, company_id):
        raise HTTPException(status_code=409, detail="Configuração Bling já existe para esta empresa")
    row = BlingConnection(company_id=company_id, **body.model_dump())
    session.add(row)
    session.commit()
    session.refresh(row)
    return ConnectionView.from_row(row)


@router.patch("", response_model=ConnectionView)
def update_connection(
    body: ConnectionUpdate,
    company_id: str = Depends(require_company_access),
    session: Session = Depends(get_session),
):
    row = _get_row(session, company_id)
    if row is None:
        raise ConfigurationError(f"No Bling connection for company {company_id}")

    changes = body.model_dump(exclude_unset=True, exclude_none=True)
    if any(k in changes and changes[k] != getattr(row, k) for k in ("client_id", "client_secret")):
        # Tokens were issued to the previous app credentials
        row.access_token = None
        row.refresh_token = None
        row.expires_at = None
    for key, value in changes.items():
        setattr(row, key, value)
    row.updated_at = utcnow()
    session.add(row)
    session.commit()
    session.refresh(row)
    return ConnectionView.from_row(row)


@router.get("/authorize-url")
async def authorize_url(
    company_id: str = Depends(require_company_access),
    session: Session = Depends(get_session),
    client_factory=Depends(get_client_factory),
):
    """URL of the Bling consent page; the company id travels in `state`."""
    row = _get_row(session, company_id)
    if row is None:
        raise ConfigurationError(f"No Bling connection for company {company_id}")
    client = client_factory(row.to_token_state(), None)
    try:
        return {"url": client.authorization_url(state=company_id)}
    finally:
        await client.aclose()
