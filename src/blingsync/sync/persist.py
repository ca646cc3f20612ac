"""
Upserts Bling records into the local bling_orders / bling_products /
bling_customers tables.

Each record is written in its own transaction so one bad record never
rolls back its neighbours. Failures surface as ItemPersistError, which the
orchestrator records without stopping the run.
"""
import json
from typing import Any, Dict, Protocol, Type

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, SQLModel, select

from blingsync.bling.errors import ItemPersistError
from blingsync.clock import utcnow
from blingsync.models.entities import BlingCustomer, BlingOrder, BlingProduct


class EntityPersister(Protocol):
    def save(self, company_id: str, entity: str, item: Dict[str, Any]) -> None:
        ...


def _float(value: Any):
    if value in (None, ""):
        return None
    return float(value)


def _order_fields(item: Dict[str, Any]) -> Dict[str, Any]:
    situacao = item.get("situacao") or {}
    contato = item.get("contato") or item.get("cliente") or {}
    return {
        "numero": str(item["numero"]) if item.get("numero") is not None else None,
        "data": item.get("data"),
        "situacao_id": situacao.get("id"),
        "situacao_valor": situacao.get("valor"),
        "contato_nome": contato.get("nome"),
        "total": _float(item.get("total")),
    }


def _product_fields(item: Dict[str, Any]) -> Dict[str, Any]:
    estoque = item.get("estoque") or {}
    return {
        "nome": item.get("nome"),
        "codigo": item.get("codigo"),
        "preco": _float(item.get("preco")),
        "tipo": item.get("tipo"),
        "situacao": item.get("situacao"),
        "estoque_atual": _float(estoque.get("saldoVirtualTotal", estoque.get("atual"))),
    }


def _customer_fields(item: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "nome": item.get("nome"),
        "codigo": item.get("codigo"),
        "numero_documento": item.get("numeroDocumento"),
        "email": item.get("email"),
        "situacao": item.get("situacao"),
    }


ENTITY_TABLES: Dict[str, tuple] = {
    "orders": (BlingOrder, _order_fields),
    "products": (BlingProduct, _product_fields),
    "customers": (BlingCustomer, _customer_fields),
}


class SqlEntityPersister:
    """Insert-or-update keyed by (company_id, bling_id)."""

    def __init__(self, engine):
        self.engine = engine

    def save(self, company_id: str, entity: str, item: Dict[str, Any]) -> None:
        """
        Raises:
            ItemPersistError: if the record has no id, cannot be mapped,
                or the database write fails.
            KeyError: if `entity` is not a known entity type.
        """
        model, extract = ENTITY_TABLES[entity]
        bling_id = item.get("id")
        if bling_id is None:
            raise ItemPersistError("unknown", "record has no id")
        bling_id = str(bling_id)

        try:
            fields = extract(item)
        except (TypeError, ValueError, KeyError, AttributeError) as exc:
            raise ItemPersistError(bling_id, f"unmappable record: {exc}") from exc

        try:
            self._upsert(model, company_id, bling_id, fields, json.dumps(item, default=str))
        except SQLAlchemyError as exc:
            raise ItemPersistError(bling_id, str(exc)) from exc

    def _upsert(
        self,
        model: Type[SQLModel],
        company_id: str,
        bling_id: str,
        fields: Dict[str, Any],
        raw_json: str,
    ) -> None:
        with Session(self.engine) as s:
            existing = s.exec(
                select(model).where(
                    model.company_id == company_id,
                    model.bling_id == bling_id,
                )
            ).first()

            if existing:
                # Update scalar fields in-place (keeps same id)
                for k, v in fields.items():
                    setattr(existing, k, v)
                existing.raw_json = raw_json
                existing.synced_at = utcnow()
                s.add(existing)
            else:
                s.add(model(company_id=company_id, bling_id=bling_id, raw_json=raw_json, **fields))
            s.commit()
