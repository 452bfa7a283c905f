from abc import ABC, abstractmethod
from typing import Iterable

import psycopg
from pydantic import ValidationError as SchemaError

from .db import get_conn
from .errors import InvalidProductPrice, StorageError
from .logs import get_logger
from .models import Product

logger = get_logger(__name__)


class Catalog(ABC):
    """Read-only view of the authoritative product records."""

    @abstractmethod
    def get_products_by_ids(self, product_ids: Iterable[str]) -> dict[str, Product]:
        """Batch read; ids with no product are simply absent from the result."""
        ...


class PostgresCatalog(Catalog):
    def get_products_by_ids(self, product_ids: Iterable[str]) -> dict[str, Product]:
        ids = list(dict.fromkeys(product_ids))
        if not ids:
            return {}
        try:
            with get_conn() as conn:
                rows = conn.execute(
                    "SELECT id::text AS id, title, description, price, image, inventory "
                    "FROM products WHERE id::text = ANY(%s)",
                    (ids,),
                ).fetchall()
        except psycopg.Error as exc:
            raise StorageError("Failed to fetch products") from exc
        return {row["id"]: _product_from_row(row) for row in rows}


def _product_from_row(row: dict) -> Product:
    try:
        return Product(**row)
    except SchemaError as exc:
        fields = sorted({str(error["loc"][0]) for error in exc.errors() if error["loc"]})
        logger.error("catalog_row_invalid", product_id=row.get("id"), fields=fields)
        if fields == ["price"]:
            raise InvalidProductPrice(row["id"]) from exc
        raise StorageError(f"Product record is corrupt: {row.get('id')}") from exc
