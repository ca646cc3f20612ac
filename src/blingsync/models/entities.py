"""Local copies of Bling orders, products and customers.

Each row is keyed by (company_id, bling_id) so a re-sync updates in place.
The full Bling payload is kept in raw_json for fields we don't map.
"""
from datetime import datetime
from typing import Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel

from blingsync.clock import utcnow


class BlingOrder(SQLModel, table=True):
    __tablename__ = "bling_orders"
    __table_args__ = (UniqueConstraint("company_id", "bling_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    company_id: str = Field(index=True)
    bling_id: str
    numero: Optional[str] = None
    data: Optional[str] = None  # order date as sent by Bling, "YYYY-MM-DD"
    situacao_id: Optional[int] = None
    situacao_valor: Optional[str] = None
    contato_nome: Optional[str] = None
    total: Optional[float] = None
    raw_json: Optional[str] = None
    synced_at: datetime = Field(default_factory=utcnow)


class BlingProduct(SQLModel, table=True):
    __tablename__ = "bling_products"
    __table_args__ = (UniqueConstraint("company_id", "bling_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    company_id: str = Field(index=True)
    bling_id: str
    nome: Optional[str] = None
    codigo: Optional[str] = None
    preco: Optional[float] = None
    tipo: Optional[str] = None
    situacao: Optional[str] = None
    estoque_atual: Optional[float] = None
    raw_json: Optional[str] = None
    synced_at: datetime = Field(default_factory=utcnow)


class BlingCustomer(SQLModel, table=True):
    __tablename__ = "bling_customers"
    __table_args__ = (UniqueConstraint("company_id", "bling_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    company_id: str = Field(index=True)
    bling_id: str
    nome: Optional[str] = None
    codigo: Optional[str] = None
    numero_documento: Optional[str] = None  # CPF/CNPJ
    email: Optional[str] = None
    situacao: Optional[str] = None
    raw_json: Optional[str] = None
    synced_at: datetime = Field(default_factory=utcnow)
