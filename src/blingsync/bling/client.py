"""
Async client for the Bling ERP API v3.

Every call goes through request(), which first makes sure the bearer token
is usable. Refresh is lazy: the first request after expiry pays for it.
Refreshes for the same company are serialized on an asyncio.Lock, and the
credential store is re-read under the lock, so concurrent requests that all
saw an expired token rotate it once instead of invalidating each other's
refresh tokens.

Non-2xx responses come back as BlingResponse(success=False, error=...).
Timeouts and transport errors raise FetchError.
"""
import asyncio
import logging
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional, Type

import httpx

from blingsync.bling.errors import AuthExchangeError, BlingError, FetchError, RefreshError
from blingsync.bling.schemas import (
    BlingFailure,
    BlingResponse,
    CustomerFilters,
    OrderFilters,
    OrderStats,
    ProductFilters,
)
from blingsync.bling.tokens import TokenState
from blingsync.clock import format_bling_datetime, utcnow
from blingsync.config import get_settings

logger = logging.getLogger(__name__)

# ── Endpoints ─────────────────────────────────────────────────────────────────

TOKEN_ENDPOINT = "/oauth/token"
AUTHORIZE_ENDPOINT = "/oauth/authorize"
ORDERS_ENDPOINT = "/pedidos/vendas"
PRODUCTS_ENDPOINT = "/produtos"
CUSTOMERS_ENDPOINT = "/contatos"
WEBHOOKS_ENDPOINT = "/webhooks"

_refresh_locks: Dict[str, asyncio.Lock] = {}


def _refresh_lock(company_id: str) -> asyncio.Lock:
    lock = _refresh_locks.get(company_id)
    if lock is None:
        lock = _refresh_locks[company_id] = asyncio.Lock()
    return lock


class BlingClient:
    """
    Authenticated client for one company's Bling connection.

    Usage:
        async with BlingClient(state, store=SqlCredentialStore(engine)) as client:
            response = await client.get_orders(OrderFilters(pagina=1))
    """

    def __init__(
        self,
        token_state: TokenState,
        *,
        store=None,
        http: Optional[httpx.AsyncClient] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Args:
            token_state: Credentials and current tokens for the company.
            store: Optional CredentialStore; refreshed tokens are written to it.
            http: httpx.AsyncClient to use. Defaults to a client owned by
                  this instance (closed by aclose()).
            base_url: API root. Defaults to settings.bling_base_url.
            timeout: Per-request timeout in seconds. Defaults to
                     settings.bling_timeout_seconds.
            clock: Returns the current naive-UTC time (tests pin it).
        """
        settings = get_settings()
        self._state = token_state
        self._store = store
        self._base_url = (base_url or settings.bling_base_url).rstrip("/")
        self._clock = clock
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(
            timeout=timeout if timeout is not None else settings.bling_timeout_seconds
        )

    async def __aenter__(self) -> "BlingClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    @property
    def token_state(self) -> TokenState:
        return self._state

    # ── OAuth ─────────────────────────────────────────────────────────────────

    def authorization_url(self, state: str, redirect_uri: Optional[str] = None) -> str:
        """URL the user opens to grant access; `state` carries the company id."""
        params = {
            "response_type": "code",
            "client_id": self._state.client_id,
            "state": state,
        }
        redirect_uri = redirect_uri or get_settings().bling_redirect_uri
        if redirect_uri:
            params["redirect_uri"] = redirect_uri
        return str(httpx.URL(self._base_url + AUTHORIZE_ENDPOINT, params=params))

    async def authenticate(self, authorization_code: str) -> TokenState:
        """
        Exchange a one-time authorization code for an access/refresh pair.

        The new state is adopted by this client but NOT written to the
        credential store; the OAuth callback persists it once every step
        has succeeded.

        Raises:
            AuthExchangeError: if the code is empty or rejected. Not retried.
        """
        if not authorization_code:
            raise AuthExchangeError("Authorization code is required")
        new_state = await self._token_grant(
            {"grant_type": "authorization_code", "code": authorization_code},
            AuthExchangeError,
        )
        self._state = new_state
        logger.info("Bling authorization completed for company %s", new_state.company_id)
        return new_state

    async def ensure_valid_token(self) -> None:
        """Refresh the access token if it is missing or expired; otherwise no-op."""
        if not self._state.is_expired(self._clock()):
            return

        stale_token = self._state.access_token
        async with _refresh_lock(self._state.company_id):
            # Another task may have rotated the token while we waited
            if self._store is not None:
                stored = self._store.load(self._state.company_id)
                if (
                    stored is not None
                    and stored.is_authenticated
                    and stored.access_token != stale_token
                ):
                    self._state = stored
            if not self._state.is_expired(self._clock()):
                return
            await self.refresh_token()

    async def refresh_token(self) -> TokenState:
        """
        Exchange the stored refresh token for a new access/refresh pair.

        Raises:
            RefreshError: if there is no refresh token or Bling rejects it.
                The tenant must re-run the OAuth flow.
        """
        if not self._state.refresh_token:
            raise RefreshError("Refresh token not available; re-authorize the Bling integration")
        new_state = await self._token_grant(
            {"grant_type": "refresh_token", "refresh_token": self._state.refresh_token},
            RefreshError,
        )
        if self._store is not None:
            self._store.save(new_state)
        self._state = new_state
        logger.info("Refreshed Bling token for company %s", new_state.company_id)
        return new_state

    async def _token_grant(self, grant: Dict[str, str], error_cls: Type[BlingError]) -> TokenState:
        form = {
            **grant,
            "client_id": self._state.client_id,
            "client_secret": self._state.client_secret,
        }
        try:
            response = await self._http.post(
                self._base_url + TOKEN_ENDPOINT,
                data=form,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise error_cls(f"Bling token endpoint unreachable: {exc}") from exc

        body = _json_or_none(response)
        if response.is_error:
            failure = _failure_from(response, body)
            raise error_cls(f"Bling rejected {grant['grant_type']} grant: {failure.message}")
        if not isinstance(body, dict):
            raise error_cls("Bling token endpoint returned a non-JSON body")
        try:
            return self._state.with_token_response(body, self._clock())
        except ValueError as exc:
            raise error_cls(str(exc)) from exc

    # ── Generic request ───────────────────────────────────────────────────────

    async def request(
        self,
        method: str,
        endpoint: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        _retry_unauthorized: bool = True,
    ) -> BlingResponse:
        """
        Perform an authenticated call and normalize the outcome.

        Raises:
            RefreshError: if a token refresh was needed and failed.
            FetchError: on timeout or transport failure.
        """
        await self.ensure_valid_token()
        try:
            response = await self._http.request(
                method,
                self._base_url + endpoint,
                params=_clean_params(params),
                json=json,
                headers={
                    "Authorization": f"Bearer {self._state.access_token}",
                    "Accept": "application/json",
                },
            )
        except httpx.TimeoutException as exc:
            raise FetchError(f"Bling request timed out: {method} {endpoint}", code="timeout") from exc
        except httpx.HTTPError as exc:
            raise FetchError(f"Bling request failed: {method} {endpoint}: {exc}", code="transport") from exc

        body = _json_or_none(response)

        if response.status_code == 401 and _retry_unauthorized:
            # Token revoked or rotated elsewhere: force one refresh and retry
            logger.info("Bling returned 401 for company %s; refreshing once", self._state.company_id)
            self._state = self._state.invalidated()
            return await self.request(
                method, endpoint, params=params, json=json, _retry_unauthorized=False
            )

        if response.is_error:
            failure = _failure_from(response, body)
            logger.warning(
                "Bling %s %s failed with %s: %s",
                method, endpoint, response.status_code, failure.message,
            )
            return BlingResponse(success=False, error=failure)

        if isinstance(body, dict):
            return BlingResponse(success=True, data=body.get("data"), meta=body.get("meta"))
        return BlingResponse(success=True, data=body)

    # ── Orders ────────────────────────────────────────────────────────────────

    async def get_orders(self, filters: Optional[OrderFilters] = None) -> BlingResponse:
        return await self.request("GET", ORDERS_ENDPOINT, params=_params(filters))

    async def get_order(self, order_id: str) -> BlingResponse:
        return await self.request("GET", f"{ORDERS_ENDPOINT}/{order_id}")

    async def create_order(self, order: Dict[str, Any]) -> BlingResponse:
        return await self.request("POST", ORDERS_ENDPOINT, json=order)

    async def update_order(self, order_id: str, changes: Dict[str, Any]) -> BlingResponse:
        return await self.request("PUT", f"{ORDERS_ENDPOINT}/{order_id}", json=changes)

    async def delete_order(self, order_id: str) -> BlingResponse:
        return await self.request("DELETE", f"{ORDERS_ENDPOINT}/{order_id}")

    async def update_order_status(self, order_id: str, situacao_id: int) -> BlingResponse:
        return await self.update_order(order_id, {"situacao": {"id": situacao_id}})

    async def get_orders_by_date_range(self, start: date, end: date) -> BlingResponse:
        """First page (up to 100) of orders placed between start and end, inclusive."""
        return await self.get_orders(OrderFilters(data_inicial=start, data_final=end, limite=100))

    async def get_stats(
        self, start: Optional[date] = None, end: Optional[date] = None
    ) -> BlingResponse:
        """
        Order count, revenue and per-status counts for orders placed in the period.

        Walks every page of orders. A failed page fails the whole call, so a
        partial sum is never reported. On success, data is an OrderStats dict
        with Bling-style camelCase keys.
        """
        stats = OrderStats()
        page = 1
        while True:
            response = await self.get_orders(
                OrderFilters(pagina=page, limite=100, data_inicial=start, data_final=end)
            )
            if not response.success:
                return response
            orders = response.data or []
            for order in orders:
                stats.total_orders += 1
                stats.total_revenue += _order_total(order)
                status = _order_status(order)
                stats.orders_by_status[status] = stats.orders_by_status.get(status, 0) + 1

            total_pages = (response.meta or {}).get("pages")
            if total_pages is not None:
                if page >= int(total_pages):
                    break
            elif len(orders) < 100:
                break
            page += 1

        stats.total_revenue = round(stats.total_revenue, 2)
        if stats.total_orders:
            stats.average_order_value = round(stats.total_revenue / stats.total_orders, 2)
        return BlingResponse(success=True, data=stats.model_dump(by_alias=True))

    # ── Products ──────────────────────────────────────────────────────────────

    async def get_products(self, filters: Optional[ProductFilters] = None) -> BlingResponse:
        return await self.request("GET", PRODUCTS_ENDPOINT, params=_params(filters))

    async def get_product(self, product_id: str) -> BlingResponse:
        return await self.request("GET", f"{PRODUCTS_ENDPOINT}/{product_id}")

    async def create_product(self, product: Dict[str, Any]) -> BlingResponse:
        return await self.request("POST", PRODUCTS_ENDPOINT, json=product)

    async def update_product(self, product_id: str, changes: Dict[str, Any]) -> BlingResponse:
        return await self.request("PUT", f"{PRODUCTS_ENDPOINT}/{product_id}", json=changes)

    async def delete_product(self, product_id: str) -> BlingResponse:
        return await self.request("DELETE", f"{PRODUCTS_ENDPOINT}/{product_id}")

    # ── Customers ─────────────────────────────────────────────────────────────

    async def get_customers(self, filters: Optional[CustomerFilters] = None) -> BlingResponse:
        return await self.request("GET", CUSTOMERS_ENDPOINT, params=_params(filters))

    async def get_customer(self, customer_id: str) -> BlingResponse:
        return await self.request("GET", f"{CUSTOMERS_ENDPOINT}/{customer_id}")

    async def create_customer(self, customer: Dict[str, Any]) -> BlingResponse:
        return await self.request("POST", CUSTOMERS_ENDPOINT, json=customer)

    async def update_customer(self, customer_id: str, changes: Dict[str, Any]) -> BlingResponse:
        return await self.request("PUT", f"{CUSTOMERS_ENDPOINT}/{customer_id}", json=changes)

    async def delete_customer(self, customer_id: str) -> BlingResponse:
        return await self.request("DELETE", f"{CUSTOMERS_ENDPOINT}/{customer_id}")

    # ── Webhooks / utilities ──────────────────────────────────────────────────

    async def setup_webhook(self, url: str, events: List[str]) -> BlingResponse:
        return await self.request("POST", WEBHOOKS_ENDPOINT, json={"url": url, "events": events})

    async def test_connection(self) -> BlingResponse:
        """Cheapest authenticated call: one order."""
        return await self.get_orders(OrderFilters(limite=1))


# ── Helpers ───────────────────────────────────────────────────────────────────

def _params(filters) -> Optional[Dict[str, Any]]:
    return filters.to_params() if filters is not None else None


def _clean_params(params: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Drop None values and format dates and date-times the way Bling expects."""
    if not params:
        return None
    cleaned: Dict[str, Any] = {}
    for key, value in params.items():
        if value is None:
            continue
        if isinstance(value, datetime):
            value = format_bling_datetime(value)
        elif isinstance(value, date):
            value = value.isoformat()
        elif isinstance(value, bool):
            value = "true" if value else "false"
        cleaned[key] = value
    return cleaned or None


def _order_total(order: Dict[str, Any]) -> float:
    try:
        return float(order.get("total") or 0)
    except (TypeError, ValueError):
        logger.warning("Order %s has a non-numeric total: %r", order.get("id"), order.get("total"))
        return 0.0


def _order_status(order: Dict[str, Any]) -> str:
    situacao = order.get("situacao")
    if isinstance(situacao, dict):
        value = situacao.get("id", situacao.get("valor"))
        if value is not None:
            return str(value)
    return "unknown"


def _json_or_none(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return None


def _failure_from(response: httpx.Response, body: Any) -> BlingFailure:
    """Bling errors look like {"error": {"type": ..., "message": ..., "description": ...}}."""
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return BlingFailure(
            code=str(error.get("type") or response.status_code),
            message=error.get("description") or error.get("message") or response.reason_phrase,
        )
    if isinstance(error, str):
        # OAuth endpoint: {"error": "invalid_grant", "error_description": "..."}
        return BlingFailure(code=error, message=body.get("error_description") or error)
    return BlingFailure(
        code=str(response.status_code),
        message=f"Bling API request failed: {response.status_code} {response.reason_phrase}",
    )
