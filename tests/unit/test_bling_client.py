"""Tests for BlingClient: token lifecycle, request normalization, parameters.

HTTP goes through httpx.MockTransport; no network.
"""
import asyncio
import json
from datetime import date, datetime, timedelta, timezone
from urllib.parse import parse_qsl

import httpx
import pytest
from pydantic import ValidationError

from blingsync.bling.errors import AuthExchangeError, FetchError, RefreshError
from blingsync.bling.schemas import CustomerFilters, OrderFilters, ProductFilters

NOW = datetime(2025, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


# ─── Helpers ──────────────────────────────────────────────────────────────────

class FakeStore:
    """In-memory CredentialStore."""

    def __init__(self, state=None):
        self.states = {}
        self.saved = []
        if state is not None:
            self.states[state.company_id] = state

    def load(self, company_id):
        return self.states.get(company_id)

    def save(self, state):
        self.states[state.company_id] = state
        self.saved.append(state)


def _form(request: httpx.Request) -> dict:
    return dict(parse_qsl(request.content.decode()))


def _token_ok(access="a1", refresh="r1", expires_in=3600) -> httpx.Response:
    return httpx.Response(
        200, json={"access_token": access, "refresh_token": refresh, "expires_in": expires_in}
    )


def _orders_ok(data=None, pages=1) -> httpx.Response:
    return httpx.Response(200, json={"data": data or [], "meta": {"pages": pages}})


class Recorder:
    """MockTransport handler: token endpoint and resources, with call log."""

    def __init__(self, token=None, resource=None):
        self.calls = []
        self._token = token or (lambda request: _token_ok())
        self._resource = resource or (lambda request: _orders_ok())

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        if request.url.path.endswith("/oauth/token"):
            return self._token(request)
        return self._resource(request)

    @property
    def token_calls(self):
        return [r for r in self.calls if r.url.path.endswith("/oauth/token")]

    @property
    def resource_calls(self):
        return [r for r in self.calls if not r.url.path.endswith("/oauth/token")]


# ─── OAuth code exchange ──────────────────────────────────────────────────────

class TestAuthenticate:
    @pytest.mark.asyncio
    async def test_valid_code_yields_tokens_and_expiry(self, make_client, unauthorized_state):
        recorder = Recorder()
        client = make_client(unauthorized_state, recorder, clock=lambda: NOW)

        state = await client.authenticate("validcode")

        assert state.access_token == "a1"
        assert state.refresh_token == "r1"
        assert state.expires_at == NOW + timedelta(seconds=3600)
        assert client.token_state == state

    @pytest.mark.asyncio
    async def test_posts_authorization_code_grant(self, make_client, unauthorized_state):
        recorder = Recorder()
        client = make_client(unauthorized_state, recorder)

        await client.authenticate("validcode")

        form = _form(recorder.token_calls[0])
        assert recorder.token_calls[0].method == "POST"
        assert form == {
            "grant_type": "authorization_code",
            "code": "validcode",
            "client_id": "cid",
            "client_secret": "csecret",
        }

    @pytest.mark.asyncio
    async def test_rejected_code_raises_and_leaves_state(self, make_client, unauthorized_state):
        recorder = Recorder(
            token=lambda r: httpx.Response(
                400, json={"error": "invalid_grant", "error_description": "code already used"}
            )
        )
        client = make_client(unauthorized_state, recorder)

        with pytest.raises(AuthExchangeError, match="code already used"):
            await client.authenticate("usedcode")

        assert client.token_state.access_token is None
        assert client.token_state.refresh_token is None
        assert len(recorder.token_calls) == 1  # never retried

    @pytest.mark.asyncio
    async def test_does_not_write_store(self, make_client, unauthorized_state):
        store = FakeStore(unauthorized_state)
        client = make_client(unauthorized_state, Recorder(), store=store)

        await client.authenticate("validcode")

        assert store.saved == []

    @pytest.mark.asyncio
    async def test_empty_code_raises_without_http(self, make_client, unauthorized_state):
        recorder = Recorder()
        client = make_client(unauthorized_state, recorder)
        with pytest.raises(AuthExchangeError):
            await client.authenticate("")
        assert recorder.calls == []

    @pytest.mark.asyncio
    async def test_response_without_access_token(self, make_client, unauthorized_state):
        recorder = Recorder(token=lambda r: httpx.Response(200, json={"expires_in": 60}))
        client = make_client(unauthorized_state, recorder)
        with pytest.raises(AuthExchangeError, match="access_token"):
            await client.authenticate("validcode")

    def test_authorization_url(self, make_client, unauthorized_state):
        client = make_client(unauthorized_state, Recorder())
        url = httpx.URL(client.authorization_url(state="acme", redirect_uri="https://app.test/cb"))
        assert url.path.endswith("/oauth/authorize")
        assert url.params["response_type"] == "code"
        assert url.params["client_id"] == "cid"
        assert url.params["state"] == "acme"
        assert url.params["redirect_uri"] == "https://app.test/cb"


# ─── Refresh before request ───────────────────────────────────────────────────

class TestEnsureValidToken:
    @pytest.mark.asyncio
    async def test_expired_token_refreshed_once_before_request(self, make_client, expired_state):
        recorder = Recorder()
        client = make_client(expired_state, recorder)

        response = await client.get_orders()

        assert response.success
        assert len(recorder.token_calls) == 1
        assert recorder.calls[0] is recorder.token_calls[0]  # refresh happens first
        assert _form(recorder.token_calls[0])["grant_type"] == "refresh_token"
        assert _form(recorder.token_calls[0])["refresh_token"] == "r0"
        assert recorder.resource_calls[0].headers["Authorization"] == "Bearer a1"

    @pytest.mark.asyncio
    async def test_missing_access_token_triggers_refresh(self, make_client, authorized_state):
        state = authorized_state.model_copy(update={"access_token": None})
        recorder = Recorder()
        client = make_client(state, recorder)

        await client.get_products()

        assert len(recorder.token_calls) == 1

    @pytest.mark.asyncio
    async def test_valid_token_not_refreshed(self, make_client, authorized_state):
        recorder = Recorder()
        client = make_client(authorized_state, recorder)

        await client.get_orders()
        await client.get_customers()

        assert recorder.token_calls == []
        assert recorder.resource_calls[0].headers["Authorization"] == "Bearer a0"

    @pytest.mark.asyncio
    async def test_refresh_writes_through_store(self, make_client, expired_state):
        store = FakeStore(expired_state)
        client = make_client(expired_state, Recorder(), store=store)

        await client.get_orders()

        assert len(store.saved) == 1
        assert store.saved[0].access_token == "a1"
        assert store.saved[0].refresh_token == "r1"

    @pytest.mark.asyncio
    async def test_refresh_keeps_old_refresh_token_when_not_rotated(self, make_client, expired_state):
        recorder = Recorder(
            token=lambda r: httpx.Response(200, json={"access_token": "a1", "expires_in": 60})
        )
        client = make_client(expired_state, recorder)

        await client.get_orders()

        assert client.token_state.refresh_token == "r0"

    @pytest.mark.asyncio
    async def test_no_refresh_token_raises(self, make_client, expired_state):
        state = expired_state.model_copy(update={"refresh_token": None})
        recorder = Recorder()
        client = make_client(state, recorder)

        with pytest.raises(RefreshError):
            await client.get_orders()
        assert recorder.calls == []

    @pytest.mark.asyncio
    async def test_rejected_refresh_raises(self, make_client, expired_state):
        store = FakeStore(expired_state)
        recorder = Recorder(
            token=lambda r: httpx.Response(
                400, json={"error": "invalid_grant", "error_description": "expired"}
            )
        )
        client = make_client(expired_state, recorder, store=store)

        with pytest.raises(RefreshError):
            await client.get_orders()
        assert recorder.resource_calls == []
        assert store.saved == []

    @pytest.mark.asyncio
    async def test_concurrent_refreshes_are_serialized(self, make_client, expired_state):
        """Two clients for the same company rotate the refresh token once."""
        store = FakeStore(expired_state)
        token_calls = []

        async def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/oauth/token"):
                token_calls.append(_form(request)["refresh_token"])
                await asyncio.sleep(0)  # let the other task reach the lock
                return _token_ok()
            return _orders_ok()

        first = make_client(expired_state, handler, store=store)
        second = make_client(expired_state, handler, store=store)

        results = await asyncio.gather(first.get_orders(), second.get_orders())

        assert all(r.success for r in results)
        assert token_calls == ["r0"]
        assert first.token_state.access_token == second.token_state.access_token == "a1"

    @pytest.mark.asyncio
    async def test_unauthorized_response_refreshes_and_retries_once(self, make_client, authorized_state):
        seen = []

        def resource(request):
            seen.append(request.headers["Authorization"])
            if request.headers["Authorization"] == "Bearer a0":
                return httpx.Response(401, json={"error": {"type": "invalid_token"}})
            return _orders_ok([{"id": 1}])

        recorder = Recorder(resource=resource)
        client = make_client(authorized_state, recorder)

        response = await client.get_orders()

        assert response.success
        assert response.data == [{"id": 1}]
        assert seen == ["Bearer a0", "Bearer a1"]
        assert len(recorder.token_calls) == 1

    @pytest.mark.asyncio
    async def test_repeated_unauthorized_is_returned_as_failure(self, make_client, authorized_state):
        recorder = Recorder(resource=lambda r: httpx.Response(401, json={}))
        client = make_client(authorized_state, recorder)

        response = await client.get_orders()

        assert not response.success
        assert response.error.code == "401"
        assert len(recorder.resource_calls) == 2


# ─── Response normalization ───────────────────────────────────────────────────

class TestRequest:
    @pytest.mark.asyncio
    async def test_success_splits_data_and_meta(self, make_client, authorized_state):
        recorder = Recorder(resource=lambda r: _orders_ok([{"id": 7}], pages=3))
        client = make_client(authorized_state, recorder)

        response = await client.get_orders()

        assert response.success
        assert response.data == [{"id": 7}]
        assert response.meta == {"pages": 3}
        assert response.error is None

    @pytest.mark.asyncio
    async def test_bling_error_body_normalized(self, make_client, authorized_state):
        body = {
            "error": {
                "type": "RESOURCE_NOT_FOUND",
                "message": "Not found",
                "description": "Pedido não encontrado",
            }
        }
        recorder = Recorder(resource=lambda r: httpx.Response(404, json=body))
        client = make_client(authorized_state, recorder)

        response = await client.get_order("999")

        assert not response.success
        assert response.data is None
        assert response.error.code == "RESOURCE_NOT_FOUND"
        assert response.error.message == "Pedido não encontrado"

    @pytest.mark.asyncio
    async def test_non_json_error_normalized(self, make_client, authorized_state):
        recorder = Recorder(resource=lambda r: httpx.Response(500, text="<html>oops</html>"))
        client = make_client(authorized_state, recorder)

        response = await client.get_product("1")

        assert not response.success
        assert response.error.code == "500"
        assert "500" in response.error.message

    @pytest.mark.asyncio
    async def test_timeout_raises_fetch_error(self, make_client, authorized_state):
        def resource(request):
            raise httpx.ReadTimeout("timed out", request=request)

        client = make_client(authorized_state, Recorder(resource=resource))

        with pytest.raises(FetchError) as exc_info:
            await client.get_orders()
        assert exc_info.value.code == "timeout"

    @pytest.mark.asyncio
    async def test_transport_error_raises_fetch_error(self, make_client, authorized_state):
        def resource(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = make_client(authorized_state, Recorder(resource=resource))

        with pytest.raises(FetchError) as exc_info:
            await client.get_customers()
        assert exc_info.value.code == "transport"

    @pytest.mark.asyncio
    async def test_update_order_status_sends_situacao(self, make_client, authorized_state):
        recorder = Recorder(resource=lambda r: httpx.Response(204))
        client = make_client(authorized_state, recorder)

        response = await client.update_order_status("42", 9)

        request = recorder.resource_calls[0]
        assert response.success
        assert request.method == "PUT"
        assert request.url.path.endswith("/pedidos/vendas/42")
        assert json.loads(request.content) == {"situacao": {"id": 9}}

    @pytest.mark.asyncio
    async def test_setup_webhook_posts_url_and_events(self, make_client, authorized_state):
        recorder = Recorder(resource=lambda r: httpx.Response(201, json={"data": {"id": 5}}))
        client = make_client(authorized_state, recorder)

        response = await client.setup_webhook("https://app.test/hook", ["order.created"])

        request = recorder.resource_calls[0]
        assert response.data == {"id": 5}
        assert request.url.path.endswith("/webhooks")
        assert json.loads(request.content) == {
            "url": "https://app.test/hook",
            "events": ["order.created"],
        }

    @pytest.mark.asyncio
    async def test_test_connection_asks_for_one_order(self, make_client, authorized_state):
        recorder = Recorder()
        client = make_client(authorized_state, recorder)

        await client.test_connection()

        params = recorder.resource_calls[0].url.params
        assert params["limite"] == "1"


# ─── Record writes ────────────────────────────────────────────────────────────

class TestRecordWrites:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("method_name, path", [
        ("create_order", "/pedidos/vendas"),
        ("create_product", "/produtos"),
        ("create_customer", "/contatos"),
    ])
    async def test_create_posts_body(self, make_client, authorized_state, method_name, path):
        recorder = Recorder(resource=lambda r: httpx.Response(201, json={"data": {"id": 10}}))
        client = make_client(authorized_state, recorder)

        response = await getattr(client, method_name)({"nome": "Novo"})

        request = recorder.resource_calls[0]
        assert response.data == {"id": 10}
        assert request.method == "POST"
        assert request.url.path.endswith(path)
        assert json.loads(request.content) == {"nome": "Novo"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("method_name, path", [
        ("update_order", "/pedidos/vendas/7"),
        ("update_product", "/produtos/7"),
        ("update_customer", "/contatos/7"),
    ])
    async def test_update_puts_changes(self, make_client, authorized_state, method_name, path):
        recorder = Recorder(resource=lambda r: httpx.Response(204))
        client = make_client(authorized_state, recorder)

        response = await getattr(client, method_name)("7", {"observacoes": "urgente"})

        request = recorder.resource_calls[0]
        assert response.success
        assert response.data is None
        assert request.method == "PUT"
        assert request.url.path.endswith(path)
        assert json.loads(request.content) == {"observacoes": "urgente"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("method_name, path", [
        ("delete_order", "/pedidos/vendas/7"),
        ("delete_product", "/produtos/7"),
        ("delete_customer", "/contatos/7"),
    ])
    async def test_delete(self, make_client, authorized_state, method_name, path):
        recorder = Recorder(resource=lambda r: httpx.Response(204))
        client = make_client(authorized_state, recorder)

        response = await getattr(client, method_name)("7")

        request = recorder.resource_calls[0]
        assert response.success
        assert request.method == "DELETE"
        assert request.url.path.endswith(path)

    @pytest.mark.asyncio
    async def test_rejected_write_is_a_failure(self, make_client, authorized_state):
        body = {"error": {"type": "VALIDATION_ERROR", "description": "Campo nome obrigatório"}}
        recorder = Recorder(resource=lambda r: httpx.Response(400, json=body))
        client = make_client(authorized_state, recorder)

        response = await client.create_customer({"email": "x@y.z"})

        assert not response.success
        assert response.error.code == "VALIDATION_ERROR"


# ─── Date range and stats ─────────────────────────────────────────────────────

class TestOrderQueries:
    @pytest.mark.asyncio
    async def test_orders_by_date_range(self, make_client, authorized_state):
        recorder = Recorder(resource=lambda r: _orders_ok([{"id": 1}]))
        client = make_client(authorized_state, recorder)

        response = await client.get_orders_by_date_range(date(2025, 1, 1), date(2025, 1, 31))

        params = recorder.resource_calls[0].url.params
        assert response.data == [{"id": 1}]
        assert params["dataInicial"] == "2025-01-01"
        assert params["dataFinal"] == "2025-01-31"
        assert params["limite"] == "100"

    @pytest.mark.asyncio
    async def test_stats_over_all_pages(self, make_client, authorized_state):
        pages = {
            "1": [
                {"id": 1, "total": "100.50", "situacao": {"id": 6}},
                {"id": 2, "total": 49.5, "situacao": {"id": 9}},
            ],
            "2": [{"id": 3, "total": "50", "situacao": {"id": 6}}],
        }

        def resource(request):
            return _orders_ok(pages[request.url.params["pagina"]], pages=2)

        recorder = Recorder(resource=resource)
        client = make_client(authorized_state, recorder)

        response = await client.get_stats(date(2025, 1, 1), date(2025, 1, 31))

        assert response.success
        assert response.data == {
            "totalOrders": 3,
            "totalRevenue": 200.0,
            "averageOrderValue": 66.67,
            "ordersByStatus": {"6": 2, "9": 1},
        }
        assert len(recorder.resource_calls) == 2
        assert recorder.resource_calls[0].url.params["dataInicial"] == "2025-01-01"

    @pytest.mark.asyncio
    async def test_stats_without_orders(self, make_client, authorized_state):
        client = make_client(authorized_state, Recorder())

        response = await client.get_stats()

        assert response.data == {
            "totalOrders": 0,
            "totalRevenue": 0.0,
            "averageOrderValue": 0.0,
            "ordersByStatus": {},
        }

    @pytest.mark.asyncio
    async def test_stats_skips_unreadable_totals(self, make_client, authorized_state):
        orders = [{"id": 1, "total": "n/a"}, {"id": 2, "total": "10"}]
        client = make_client(authorized_state, Recorder(resource=lambda r: _orders_ok(orders)))

        response = await client.get_stats()

        assert response.data["totalOrders"] == 2
        assert response.data["totalRevenue"] == 10.0
        assert response.data["ordersByStatus"] == {"unknown": 2}

    @pytest.mark.asyncio
    async def test_stats_failed_page_is_returned(self, make_client, authorized_state):
        calls = []

        def resource(request):
            calls.append(request)
            if len(calls) == 1:
                return _orders_ok([{"id": 1, "total": "5"}], pages=2)
            return httpx.Response(503, json={"error": {"type": "UNAVAILABLE"}})

        client = make_client(authorized_state, Recorder(resource=resource))

        response = await client.get_stats()

        assert not response.success
        assert response.error.code == "UNAVAILABLE"


# ─── Query parameters ─────────────────────────────────────────────────────────

class TestParameters:
    @pytest.mark.asyncio
    async def test_none_filters_are_omitted(self, make_client, authorized_state):
        recorder = Recorder()
        client = make_client(authorized_state, recorder)

        await client.get_products(ProductFilters(pagina=2, nome=None, codigo="SKU-1"))

        params = dict(recorder.resource_calls[0].url.params)
        assert params == {"pagina": "2", "codigo": "SKU-1"}

    @pytest.mark.asyncio
    async def test_dates_and_camel_case_names(self, make_client, authorized_state):
        recorder = Recorder()
        client = make_client(authorized_state, recorder)

        await client.get_orders(
            OrderFilters(
                data_inicial=date(2025, 1, 1),
                data_alteracao_inicial=date(2025, 2, 1),
                id_contato=77,
            )
        )

        params = recorder.resource_calls[0].url.params
        assert params["dataInicial"] == "2025-01-01"
        assert params["dataAlteracaoInicial"] == "2025-02-01"
        assert params["idContato"] == "77"

    @pytest.mark.asyncio
    async def test_change_bound_keeps_time_of_day(self, make_client, authorized_state):
        recorder = Recorder()
        client = make_client(authorized_state, recorder)

        # 14:30:45 UTC is 11:30:45 in Brasília
        since = datetime(2025, 2, 1, 14, 30, 45, 900000, tzinfo=timezone.utc)
        await client.get_orders(OrderFilters(data_alteracao_inicial=since))

        params = recorder.resource_calls[0].url.params
        assert params["dataAlteracaoInicial"] == "2025-02-01 11:30:45"

    def test_change_bound_keeps_datetime_type(self):
        since = datetime(2025, 2, 1, 14, 30, tzinfo=timezone.utc)
        assert OrderFilters(data_alteracao_inicial=since).data_alteracao_inicial == since
        assert OrderFilters(data_alteracao_inicial=date(2025, 2, 1)).data_alteracao_inicial == date(2025, 2, 1)

    @pytest.mark.asyncio
    async def test_list_values_are_repeated(self, make_client, authorized_state):
        recorder = Recorder()
        client = make_client(authorized_state, recorder)

        await client.get_orders(OrderFilters(id_situacoes=[6, 9]))

        assert recorder.resource_calls[0].url.params.get_list("idsSituacoes[]") == ["6", "9"]

    @pytest.mark.asyncio
    async def test_customer_document_filter(self, make_client, authorized_state):
        recorder = Recorder()
        client = make_client(authorized_state, recorder)

        await client.get_customers(CustomerFilters(numero_documento="12345678900"))

        assert recorder.resource_calls[0].url.params["numeroDocumento"] == "12345678900"

    @pytest.mark.parametrize("field, value", [
        ("pagina", 0),
        ("pagina", -1),
        ("limite", 0),
        ("limite", 101),
    ])
    def test_invalid_pagination_rejected(self, field, value):
        with pytest.raises(ValueError):
            OrderFilters(**{field: value})

    def test_validation_error_is_a_value_error(self):
        with pytest.raises(ValidationError):
            ProductFilters(pagina=0)
