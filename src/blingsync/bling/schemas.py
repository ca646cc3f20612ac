"""Request filters and the normalized response envelope for the Bling API.

Filter field names are snake_case in Python and serialize to Bling's
camelCase query parameters. Unset filters are never sent.
"""
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_serializer

from blingsync.clock import format_bling_datetime


class BlingFailure(BaseModel):
    code: str
    message: str


class BlingResponse(BaseModel):
    """Outcome of one API call. On failure, data is None and error is set."""

    success: bool
    data: Any = None
    meta: Optional[Dict[str, Any]] = None
    error: Optional[BlingFailure] = None


class _Filters(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    pagina: Optional[int] = Field(default=None, ge=1)
    limite: Optional[int] = Field(default=None, ge=1, le=100)
    # A datetime bound keeps its time of day; a plain date means the whole day
    data_alteracao_inicial: Optional[Union[datetime, date]] = Field(default=None, alias="dataAlteracaoInicial")
    data_alteracao_final: Optional[Union[datetime, date]] = Field(default=None, alias="dataAlteracaoFinal")

    @field_serializer("data_alteracao_inicial", "data_alteracao_final")
    def _serialize_change_bound(self, value: Optional[Union[datetime, date]]):
        if isinstance(value, datetime):
            return format_bling_datetime(value)
        if isinstance(value, date):
            return value.isoformat()
        return value

    def to_params(self) -> Dict[str, Any]:
        """Query parameters with Bling names, unset fields dropped.

        Dates go out as YYYY-MM-DD and change-time bounds with a time of day
        as "YYYY-MM-DD HH:MM:SS".
        """
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class OrderFilters(_Filters):
    data_inicial: Optional[date] = Field(default=None, alias="dataInicial")
    data_final: Optional[date] = Field(default=None, alias="dataFinal")
    id_situacoes: Optional[List[int]] = Field(default=None, alias="idsSituacoes[]")
    numero: Optional[int] = None
    id_contato: Optional[int] = Field(default=None, alias="idContato")
    id_vendedor: Optional[int] = Field(default=None, alias="idVendedor")


class ProductFilters(_Filters):
    codigo: Optional[str] = None
    nome: Optional[str] = None
    tipo: Optional[str] = None  # "P" product, "S" service
    situacao: Optional[str] = None  # "A" active, "I" inactive
    formato: Optional[str] = None


class CustomerFilters(_Filters):
    nome: Optional[str] = None
    email: Optional[str] = None
    numero_documento: Optional[str] = Field(default=None, alias="numeroDocumento")
    situacao: Optional[str] = None


class OrderStats(BaseModel):
    """Order totals for a period, computed from the orders Bling returns."""

    model_config = ConfigDict(populate_by_name=True)

    total_orders: int = Field(default=0, alias="totalOrders")
    total_revenue: float = Field(default=0.0, alias="totalRevenue")
    average_order_value: float = Field(default=0.0, alias="averageOrderValue")
    orders_by_status: Dict[str, int] = Field(default_factory=dict, alias="ordersByStatus")
