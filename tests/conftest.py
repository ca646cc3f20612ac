"""Shared test fixtures."""
from datetime import datetime, timedelta, timezone
from typing import Callable, Generator

import httpx
import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

# Import all models so SQLModel.metadata knows about them
from blingsync.models.activity import ActivityRecord  # noqa: F401
from blingsync.models.company import CompanyUser
from blingsync.models.connection import BlingConnection
from blingsync.models.entities import BlingCustomer, BlingOrder, BlingProduct  # noqa: F401
from blingsync.models.sync import SyncRunLog  # noqa: F401

from blingsync.bling import client as client_module
from blingsync.bling.client import BlingClient
from blingsync.bling.tokens import TokenState
from blingsync.clock import utcnow

BASE_URL = "https://bling.test/Api/v3"
COMPANY_ID = "acme"
USER_ID = "user-1"


@pytest.fixture(name="engine")
def engine_fixture():
    """In-memory SQLite engine. Tables recreated fresh for each test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="test_session")
def test_session_fixture(engine) -> Generator[Session, None, None]:
    """Provides a DB session connected to in-memory SQLite."""
    with Session(engine) as session:
        yield session


@pytest.fixture(autouse=True)
def _fresh_refresh_locks():
    """asyncio.Lock binds to the loop that first waits on it; each test has its own loop."""
    client_module._refresh_locks.clear()
    yield
    client_module._refresh_locks.clear()


@pytest.fixture(name="unauthorized_state")
def unauthorized_state_fixture() -> TokenState:
    """Credentials saved, OAuth not completed yet."""
    return TokenState(company_id=COMPANY_ID, client_id="cid", client_secret="csecret")


@pytest.fixture(name="authorized_state")
def authorized_state_fixture() -> TokenState:
    """Valid for another hour."""
    return TokenState(
        company_id=COMPANY_ID,
        client_id="cid",
        client_secret="csecret",
        access_token="a0",
        refresh_token="r0",
        expires_at=utcnow() + timedelta(hours=1),
    )


@pytest.fixture(name="expired_state")
def expired_state_fixture(authorized_state) -> TokenState:
    return authorized_state.model_copy(update={"expires_at": utcnow() - timedelta(minutes=1)})


@pytest.fixture(name="make_client")
def make_client_fixture() -> Callable[..., BlingClient]:
    """Build a BlingClient whose HTTP calls go to `handler` (httpx.MockTransport)."""

    def _make(state: TokenState, handler, store=None, **kwargs) -> BlingClient:
        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return BlingClient(state, store=store, http=http, base_url=BASE_URL, **kwargs)

    return _make


@pytest.fixture(name="seeded_connection")
def seeded_connection_fixture(test_session: Session, authorized_state) -> BlingConnection:
    """An authorized connection for COMPANY_ID, with USER_ID as a member."""
    row = BlingConnection(
        company_id=COMPANY_ID,
        client_id=authorized_state.client_id,
        client_secret=authorized_state.client_secret,
        access_token=authorized_state.access_token,
        refresh_token=authorized_state.refresh_token,
        expires_at=authorized_state.expires_at,
        created_at=datetime(2025, 1, 15, 7, 0, tzinfo=timezone.utc),
    )
    test_session.add(row)
    test_session.add(CompanyUser(company_id=COMPANY_ID, user_id=USER_ID))
    test_session.commit()
    test_session.refresh(row)
    return row


class FakeBlingApi:
    """Scripted Bling HTTP API for httpx.MockTransport.

    The token endpoint answers with a fresh a1/r1 pair unless scripted
    otherwise; unscripted resources answer 404.
    """

    def __init__(self):
        self.requests = []
        self.routes = {}

    def on(self, method: str, path: str, status: int = 200, json=None) -> None:
        self.routes[(method, path)] = (status, json)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path.split("/Api/v3", 1)[-1]
        scripted = self.routes.get((request.method, path))
        if scripted is not None:
            status, body = scripted
            return httpx.Response(status, json=body)
        if path == "/oauth/token":
            return httpx.Response(
                200, json={"access_token": "a1", "refresh_token": "r1", "expires_in": 3600}
            )
        return httpx.Response(
            404, json={"error": {"type": "RESOURCE_NOT_FOUND", "description": "Recurso não encontrado"}}
        )

    def paths(self, method: str = None):
        return [
            r.url.path.split("/Api/v3", 1)[-1]
            for r in self.requests
            if method is None or r.method == method
        ]


@pytest.fixture(name="fake_bling")
def fake_bling_fixture() -> FakeBlingApi:
    return FakeBlingApi()


@pytest.fixture(name="api")
def api_fixture(engine, fake_bling):
    """TestClient on the app, with Bling calls routed to fake_bling."""
    from fastapi.testclient import TestClient

    from blingsync.api.deps import get_client_factory
    from blingsync.api.main import create_app

    def client_factory(state, store):
        http = httpx.AsyncClient(transport=httpx.MockTransport(fake_bling))
        return BlingClient(state, store=store, http=http, base_url=BASE_URL)

    app = create_app(engine)
    app.dependency_overrides[get_client_factory] = lambda: client_factory
    with TestClient(app) as c:
        yield c
