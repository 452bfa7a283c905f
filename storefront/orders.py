"""
Durable order records.

``orders.session_id`` carries a UNIQUE constraint; it is the idempotency key
that turns at-least-once webhook delivery into exactly one order, whatever
instance the delivery lands on.
"""

from abc import ABC, abstractmethod
from typing import Iterable, Optional

import psycopg
from psycopg.types.json import Jsonb

from .db import get_conn
from .errors import IdempotencyConflict, StorageError
from .models import NewOrder, NewOrderLineItem, Order, OrderLineItem, OrderStatus

_ORDER_COLUMNS = (
    "id::text AS id, session_id, account_id::text AS account_id, email, amount, status, "
    "customer_name, phone, address_line1, address_line2, city, state, postal_code, country, "
    "metadata, created_at, updated_at"
)
_ITEM_COLUMNS = "id::text AS id, order_id::text AS order_id, product_id, quantity, unit_price"


class OrderStore(ABC):
    @abstractmethod
    def create_order(self, order: NewOrder) -> Order:
        """Insert an order. Raises IdempotencyConflict if its session already has one."""
        ...

    @abstractmethod
    def add_line_items(self, order_id: str, items: Iterable[NewOrderLineItem]) -> list[OrderLineItem]:
        ...

    @abstractmethod
    def get_order(self, order_id: str) -> Optional[Order]:
        ...

    @abstractmethod
    def get_order_by_session(self, session_id: str) -> Optional[Order]:
        ...

    @abstractmethod
    def list_line_items(self, order_id: str) -> list[OrderLineItem]:
        ...

    @abstractmethod
    def update_status(self, order_id: str, status: OrderStatus) -> Optional[Order]:
        ...


class AccountDirectory(ABC):
    @abstractmethod
    def find_account_id(self, email: str) -> Optional[str]:
        ...


class PostgresOrderStore(OrderStore):
    def create_order(self, order: NewOrder) -> Order:
        try:
            with get_conn() as conn:
                row = conn.execute(
                    "INSERT INTO orders(session_id, account_id, email, amount, status, customer_name, phone, "
                    "address_line1, address_line2, city, state, postal_code, country, metadata) "
                    "VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s) "
                    f"ON CONFLICT (session_id) DO NOTHING RETURNING {_ORDER_COLUMNS}",
                    (
                        order.session_id, order.account_id, order.email, order.amount, order.status.value,
                        order.customer_name, order.phone, order.address_line1, order.address_line2,
                        order.city, order.state, order.postal_code, order.country, Jsonb(order.metadata),
                    ),
                ).fetchone()
        except psycopg.Error as exc:
            raise StorageError("Failed to create order") from exc

        if row is None:
            raise IdempotencyConflict(order.session_id)
        return Order(**row)

    def add_line_items(self, order_id: str, items: Iterable[NewOrderLineItem]) -> list[OrderLineItem]:
        created = []
        try:
            with get_conn() as conn:
                for item in items:
                    row = conn.execute(
                        "INSERT INTO order_items(order_id, product_id, quantity, unit_price) "
                        f"VALUES (%s, %s, %s, %s) RETURNING {_ITEM_COLUMNS}",
                        (order_id, item.product_id, item.quantity, item.unit_price),
                    ).fetchone()
                    created.append(OrderLineItem(**row))
        except psycopg.Error as exc:
            raise StorageError("Failed to create order items") from exc
        return created

    def get_order(self, order_id: str) -> Optional[Order]:
        return self._fetch_order("id = %s", order_id)

    def get_order_by_session(self, session_id: str) -> Optional[Order]:
        return self._fetch_order("session_id = %s", session_id)

    def _fetch_order(self, condition: str, value: str) -> Optional[Order]:
        try:
            with get_conn() as conn:
                row = conn.execute(f"SELECT {_ORDER_COLUMNS} FROM orders WHERE {condition}", (value,)).fetchone()
                if not row:
                    return None
                items = conn.execute(
                    f"SELECT {_ITEM_COLUMNS} FROM order_items WHERE order_id = %s ORDER BY id",
                    (row["id"],),
                ).fetchall()
        except psycopg.Error as exc:
            raise StorageError("Failed to read order") from exc
        return Order(**row, items=[OrderLineItem(**item) for item in items])

    def list_line_items(self, order_id: str) -> list[OrderLineItem]:
        try:
            with get_conn() as conn:
                rows = conn.execute(
                    f"SELECT {_ITEM_COLUMNS} FROM order_items WHERE order_id = %s ORDER BY id",
                    (order_id,),
                ).fetchall()
        except psycopg.Error as exc:
            raise StorageError("Failed to read order items") from exc
        return [OrderLineItem(**row) for row in rows]

    def update_status(self, order_id: str, status: OrderStatus) -> Optional[Order]:
        try:
            with get_conn() as conn:
                row = conn.execute(
                    "UPDATE orders SET status = %s, updated_at = NOW() "
                    f"WHERE id = %s RETURNING {_ORDER_COLUMNS}",
                    (status.value, order_id),
                ).fetchone()
        except psycopg.Error as exc:
            raise StorageError("Failed to update order status") from exc
        return Order(**row) if row else None


class PostgresAccountDirectory(AccountDirectory):
    def find_account_id(self, email: str) -> Optional[str]:
        with get_conn() as conn:
            row = conn.execute(
                "SELECT id::text AS id FROM accounts WHERE lower(email) = lower(%s)",
                (email,),
            ).fetchone()
        return row["id"] if row else None
