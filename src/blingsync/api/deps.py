"""Request-scoped dependencies shared by the /bling routers."""
from typing import AsyncGenerator, Generator, Optional

from fastapi import Depends, Header, HTTPException, Query, Request
from sqlmodel import Session

from blingsync.bling.client import BlingClient
from blingsync.bling.errors import AccessDeniedError
from blingsync.db.stores import SqlAccessChecker
from blingsync.sync.runner import ClientFactory, build_client, default_client_factory


def get_db_engine(request: Request):
    return request.app.state.engine


def get_session(engine=Depends(get_db_engine)) -> Generator[Session, None, None]:
    """FastAPI dependency that yields a DB session."""
    with Session(engine) as session:
        yield session


def get_client_factory() -> ClientFactory:
    return default_client_factory


def get_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    """Caller identity, set by the session layer in front of this API."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Token de acesso necessário")
    return x_user_id


async def require_company_access(
    company_id: str = Query(..., min_length=1),
    user_id: str = Depends(get_user_id),
    engine=Depends(get_db_engine),
) -> str:
    if not await SqlAccessChecker(engine).has_access(user_id, company_id):
        raise AccessDeniedError(f"user {user_id} cannot access company {company_id}")
    return company_id


async def get_bling_client(
    company_id: str = Depends(require_company_access),
    engine=Depends(get_db_engine),
    client_factory: ClientFactory = Depends(get_client_factory),
) -> AsyncGenerator[BlingClient, None]:
    """Client for the company's active connection, closed after the request."""
    client = build_client(engine, company_id, client_factory)
    try:
        yield client
    finally:
        await client.aclose()
