"""
Server-side pricing and inventory gate.

Client carts carry product ids and quantities only. Prices come from the
catalog and are converted to minor units here; a failure on any line aborts
the whole checkout.
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable

from .errors import InsufficientInventory, InvalidProductPrice, ProductNotFound
from .models import CartLine, PricedLineItem, Product
from .validation import sanitize_string

MAX_UNIT_PRICE = Decimal("999999")


def to_minor_units(price: Decimal) -> int:
    return int((Decimal(price) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount: int) -> Decimal:
    return (Decimal(amount) / 100).quantize(Decimal("0.01"))


def price_line(line: CartLine, product: Product | None) -> PricedLineItem:
    if product is None:
        raise ProductNotFound(line.product_id)
    if product.inventory < line.quantity:
        raise InsufficientInventory(line.product_id, product.title, line.quantity, product.inventory)
    if not Decimal(0) < product.price <= MAX_UNIT_PRICE or to_minor_units(product.price) == 0:
        raise InvalidProductPrice(line.product_id)

    return PricedLineItem(
        product_id=product.id,
        title=sanitize_string(product.title, 200),
        description=sanitize_string(product.description, 500) or None,
        image=product.image or None,
        unit_amount=to_minor_units(product.price),
        quantity=line.quantity,
    )


def price_cart(lines: Iterable[CartLine], products: dict[str, Product]) -> list[PricedLineItem]:
    return [price_line(line, products.get(line.product_id)) for line in lines]


def cart_total(items: Iterable[PricedLineItem]) -> int:
    """Total in minor units."""
    return sum(item.unit_amount * item.quantity for item in items)
