"""Pass-through routes to the Bling API for the company's connection."""
from datetime import date
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlmodel import Session, select

from blingsync.api.deps import get_bling_client, get_session, require_company_access
from blingsync.bling.client import BlingClient
from blingsync.bling.schemas import BlingResponse, CustomerFilters, OrderFilters, ProductFilters
from blingsync.clock import utcnow
from blingsync.models.connection import BlingConnection

router = APIRouter()


class OrderStatusUpdate(BaseModel):
    situacao_id: int


class WebhookRequest(BaseModel):
    url: str = Field(min_length=1)
    events: List[str] = Field(min_length=1)


def _reply(response: BlingResponse):
    """Successful calls as-is; Bling-side failures as 502 with the normalized error."""
    if response.success:
        return response
    return JSONResponse(status_code=502, content=response.model_dump(mode="json"))


# ── Orders ────────────────────────────────────────────────────────────────────

@router.get("/orders", response_model=BlingResponse)
async def list_orders(
    pagina: int = Query(default=1, ge=1),
    limite: int = Query(default=100, ge=1, le=100),
    data_inicial: Optional[date] = None,
    data_final: Optional[date] = None,
    situacao: Optional[List[int]] = Query(default=None),
    numero: Optional[int] = None,
    client: BlingClient = Depends(get_bling_client),
):
    filters = OrderFilters(
        pagina=pagina,
        limite=limite,
        data_inicial=data_inicial,
        data_final=data_final,
        id_situacoes=situacao,
        numero=numero,
    )
    return _reply(await client.get_orders(filters))


@router.get("/orders/{order_id}", response_model=BlingResponse)
async def get_order(order_id: str, client: BlingClient = Depends(get_bling_client)):
    return _reply(await client.get_order(order_id))


@router.post("/orders", response_model=BlingResponse)
async def create_order(
    order: Dict[str, Any] = Body(..., min_length=1),
    client: BlingClient = Depends(get_bling_client),
):
    return _reply(await client.create_order(order))


@router.put("/orders/{order_id}", response_model=BlingResponse)
async def update_order(
    order_id: str,
    changes: Dict[str, Any] = Body(..., min_length=1),
    client: BlingClient = Depends(get_bling_client),
):
    return _reply(await client.update_order(order_id, changes))


@router.delete("/orders/{order_id}", response_model=BlingResponse)
async def delete_order(order_id: str, client: BlingClient = Depends(get_bling_client)):
    return _reply(await client.delete_order(order_id))


@router.patch("/orders/{order_id}/status", response_model=BlingResponse)
async def update_order_status(
    order_id: str,
    body: OrderStatusUpdate,
    client: BlingClient = Depends(get_bling_client),
):
    return _reply(await client.update_order_status(order_id, body.situacao_id))


# ── Products ──────────────────────────────────────────────────────────────────

@router.get("/products", response_model=BlingResponse)
async def list_products(
    pagina: int = Query(default=1, ge=1),
    limite: int = Query(default=100, ge=1, le=100),
    codigo: Optional[str] = None,
    nome: Optional[str] = None,
    tipo: Optional[str] = None,
    situacao: Optional[str] = None,
    client: BlingClient = Depends(get_bling_client),
):
    filters = ProductFilters(
        pagina=pagina, limite=limite, codigo=codigo, nome=nome, tipo=tipo, situacao=situacao
    )
    return _reply(await client.get_products(filters))


@router.get("/products/{product_id}", response_model=BlingResponse)
async def get_product(product_id: str, client: BlingClient = Depends(get_bling_client)):
    return _reply(await client.get_product(product_id))


@router.post("/products", response_model=BlingResponse)
async def create_product(
    product: Dict[str, Any] = Body(..., min_length=1),
    client: BlingClient = Depends(get_bling_client),
):
    return _reply(await client.create_product(product))


@router.put("/products/{product_id}", response_model=BlingResponse)
async def update_product(
    product_id: str,
    changes: Dict[str, Any] = Body(..., min_length=1),
    client: BlingClient = Depends(get_bling_client),
):
    return _reply(await client.update_product(product_id, changes))


@router.delete("/products/{product_id}", response_model=BlingResponse)
async def delete_product(product_id: str, client: BlingClient = Depends(get_bling_client)):
    return _reply(await client.delete_product(product_id))


# ── Customers ─────────────────────────────────────────────────────────────────

@router.get("/customers", response_model=BlingResponse)
async def list_customers(
    pagina: int = Query(default=1, ge=1),
    limite: int = Query(default=100, ge=1, le=100),
    nome: Optional[str] = None,
    email: Optional[str] = None,
    numero_documento: Optional[str] = None,
    situacao: Optional[str] = None,
    client: BlingClient = Depends(get_bling_client),
):
    filters = CustomerFilters(
        pagina=pagina,
        limite=limite,
        nome=nome,
        email=email,
        numero_documento=numero_documento,
        situacao=situacao,
    )
    return _reply(await client.get_customers(filters))


@router.get("/customers/{customer_id}", response_model=BlingResponse)
async def get_customer(customer_id: str, client: BlingClient = Depends(get_bling_client)):
    return _reply(await client.get_customer(customer_id))


@router.post("/customers", response_model=BlingResponse)
async def create_customer(
    customer: Dict[str, Any] = Body(..., min_length=1),
    client: BlingClient = Depends(get_bling_client),
):
    return _reply(await client.create_customer(customer))


@router.put("/customers/{customer_id}", response_model=BlingResponse)
async def update_customer(
    customer_id: str,
    changes: Dict[str, Any] = Body(..., min_length=1),
    client: BlingClient = Depends(get_bling_client),
):
    return _reply(await client.update_customer(customer_id, changes))


@router.delete("/customers/{customer_id}", response_model=BlingResponse)
async def delete_customer(customer_id: str, client: BlingClient = Depends(get_bling_client)):
    return _reply(await client.delete_customer(customer_id))


# ── Stats ─────────────────────────────────────────────────────────────────────

@router.get("/stats", response_model=BlingResponse)
async def order_stats(
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    client: BlingClient = Depends(get_bling_client),
):
    """Order totals computed from Bling for orders placed in the period."""
    if start_date and end_date and start_date > end_date:
        raise HTTPException(status_code=422, detail="start_date deve ser anterior a end_date")
    return _reply(await client.get_stats(start_date, end_date))


# ── Webhooks / connection test ────────────────────────────────────────────────

@router.post("/webhooks", response_model=BlingResponse)
async def setup_webhook(
    body: WebhookRequest,
    company_id: str = Depends(require_company_access),
    client: BlingClient = Depends(get_bling_client),
    session: Session = Depends(get_session),
):
    """Register the webhook with Bling and remember its URL on the connection."""
    response = await client.setup_webhook(body.url, body.events)
    if response.success:
        row = session.exec(
            select(BlingConnection).where(BlingConnection.company_id == company_id)
        ).first()
        if row is not None:
            row.webhook_url = body.url
            row.updated_at = utcnow()
            session.add(row)
            session.commit()
    return _reply(response)


@router.get("/test")
async def test_connection(client: BlingClient = Depends(get_bling_client)):
    """Cheapest authenticated call; reports whether the connection works."""
    response = await client.test_connection()
    if response.success:
        return {"success": True, "message": "Conexão com o Bling estabelecida com sucesso"}
    return JSONResponse(
        status_code=502,
        content={
            "success": False,
            "message": "Falha ao conectar com o Bling",
            "error": response.error.model_dump() if response.error else None,
        },
    )
