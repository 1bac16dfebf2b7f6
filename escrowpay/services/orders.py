"""Order/fulfillment store consulted by the auto-release sweep."""
from __future__ import annotations

from typing import Protocol, runtime_checkable

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from escrowpay.models.order import Order


@runtime_checkable
class OrderStore(Protocol):
    def get_orders_with_status(self, status: str) -> list[str]: ...


class SqlOrderStore:
    """Reads delivery status from the storefront's ``orders`` table."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def get_orders_with_status(self, status: str) -> list[str]:
        with self._session_factory() as db:
            return list(db.scalars(select(Order.id).where(Order.status == status)))


__all__ = ["OrderStore", "SqlOrderStore"]
