"""OAuth redirect target for the Bling authorization popup."""
from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Header
from fastapi.responses import HTMLResponse

from blingsync.api.deps import get_client_factory, get_db_engine
from blingsync.bling.oauth import OAuthCallbackHandler, render_callback_page
from blingsync.db.stores import SqlAccessChecker, SqlActivitySink, SqlCredentialStore

router = APIRouter()


@router.get("/bling/callback", response_class=HTMLResponse)
async def bling_callback(
    code: Optional[str] = None,
    state: Optional[str] = None,
    x_user_id: Optional[str] = Header(default=None),
    user_id: Optional[str] = Cookie(default=None),
    engine=Depends(get_db_engine),
    client_factory=Depends(get_client_factory),
):
    """
    Bling redirects here with ?code=...&state=<company_id>.
    Returns a page that notifies the opener window: 200 on success, 400 otherwise.
    """
    handler = OAuthCallbackHandler(
        credentials=SqlCredentialStore(engine),
        access=SqlAccessChecker(engine),
        activities=SqlActivitySink(engine),
        client_factory=client_factory,
    )
    result = await handler.handle(code, state, x_user_id or user_id)
    return HTMLResponse(
        render_callback_page(result), status_code=200 if result.success else 400
    )
