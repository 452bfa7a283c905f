import json
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

METADATA_SCHEMA_VERSION = "1"
# Hosted checkout processors cap each metadata value; Stripe allows 500 characters.
METADATA_VALUE_LIMIT = 500

_SHIPPING_METADATA_KEYS = {
    "name": "customerName",
    "phone": "phone",
    "address_line1": "addressLine1",
    "address_line2": "addressLine2",
    "city": "city",
    "state": "state",
    "postal_code": "postalCode",
    "country": "country",
}


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class OrderStatus(str, Enum):
    PAID = "paid"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @classmethod
    def parse(cls, value: Any) -> Optional["OrderStatus"]:
        if not isinstance(value, str):
            return None
        value = value.strip().lower()
        value = {"shipping": "shipped", "canceled": "cancelled"}.get(value, value)
        try:
            return cls(value)
        except ValueError:
            return None


class CartLine(CamelModel):
    product_id: str = Field(min_length=1, max_length=64)
    quantity: int = Field(ge=1, le=999)


class ShippingInfo(CamelModel):
    name: str
    phone: str
    address_line1: str
    address_line2: str = ""
    city: str
    state: str
    postal_code: str
    country: str = Field(max_length=2)


class Product(BaseModel):
    id: str
    title: str
    description: Optional[str] = None
    price: Decimal
    image: Optional[str] = None
    inventory: int = 0


class PricedLineItem(BaseModel):
    product_id: str
    title: str
    description: Optional[str] = None
    image: Optional[str] = None
    unit_amount: int = Field(gt=0)
    quantity: int = Field(ge=1)


class CheckoutSession(CamelModel):
    session_id: str
    redirect_url: str


class CheckoutMetadata(BaseModel):
    """
    Cart and shipping snapshot that rides inside the processor's session.

    Only ``{productId, quantity}`` pairs travel; prices are looked up again
    from the catalog when the order is fulfilled.
    """

    version: str = METADATA_SCHEMA_VERSION
    items: list[CartLine]
    shipping: Optional[ShippingInfo] = None

    def to_processor_metadata(self) -> dict[str, str]:
        raw_items = json.dumps(
            [item.model_dump(by_alias=True) for item in self.items],
            separators=(",", ":"),
        )
        chunks = [raw_items[i:i + METADATA_VALUE_LIMIT] for i in range(0, len(raw_items), METADATA_VALUE_LIMIT)]

        metadata = {"schemaVersion": self.version}
        for index, chunk in enumerate(chunks):
            metadata["items" if index == 0 else f"items_{index}"] = chunk

        if self.shipping is not None:
            for field_name, key in _SHIPPING_METADATA_KEYS.items():
                metadata[key] = getattr(self.shipping, field_name)
        return metadata

    @staticmethod
    def items_from_processor_metadata(metadata: dict[str, str]) -> list[CartLine]:
        """
        Decode the cart snapshot. Raises ValueError on an unknown schema
        version, broken JSON, or a list that is not a non-empty list of lines.
        """
        version = metadata.get("schemaVersion", METADATA_SCHEMA_VERSION)
        if version != METADATA_SCHEMA_VERSION:
            raise ValueError(f"Unsupported metadata schema version: {version}")

        raw_items = metadata.get("items") or ""
        index = 1
        while f"items_{index}" in metadata:
            raw_items += metadata[f"items_{index}"]
            index += 1

        items = json.loads(raw_items)
        if not isinstance(items, list) or not items:
            raise ValueError("Cart snapshot must be a non-empty list")
        return [CartLine.model_validate(item) for item in items]

    @staticmethod
    def shipping_from_processor_metadata(metadata: dict[str, str]) -> dict[str, Optional[str]]:
        """Shipping snapshot keyed by order column name."""
        return {
            ("customer_name" if field_name == "name" else field_name): metadata.get(key) or None
            for field_name, key in _SHIPPING_METADATA_KEYS.items()
        }


class NewOrder(BaseModel):
    session_id: str
    account_id: Optional[str] = None
    email: str
    amount: Decimal
    status: OrderStatus = OrderStatus.PAID
    customer_name: Optional[str] = None
    phone: Optional[str] = None
    address_line1: Optional[str] = None
    address_line2: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None
    metadata: dict[str, str] = Field(default_factory=dict)


class NewOrderLineItem(BaseModel):
    product_id: str
    quantity: int = Field(ge=1)
    unit_price: Decimal = Field(ge=0)


class OrderLineItem(CamelModel):
    id: str
    order_id: str
    product_id: str
    quantity: int
    unit_price: Decimal


class Order(CamelModel):
    id: str
    session_id: str
    account_id: Optional[str] = None
    email: str
    amount: Decimal
    status: OrderStatus
    customer_name: Optional[str] = None
    phone: Optional[str] = None
    address_line1: Optional[str] = None
    address_line2: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None
    metadata: dict[str, str] = Field(default_factory=dict)
    created_at: datetime
    updated_at: Optional[datetime] = None
    items: list[OrderLineItem] = Field(default_factory=list)


class EventData(BaseModel):
    object: dict[str, Any]


class WebhookEvent(BaseModel):
    id: str
    type: str
    data: EventData


class CompletedCheckout(BaseModel):
    id: str
    customer_email: Optional[str] = None
    customer_details: Optional[dict[str, Any]] = None
    amount_total: Optional[int] = None
    metadata: dict[str, str] = Field(default_factory=dict)

    @property
    def email(self) -> Optional[str]:
        if self.customer_email:
            return self.customer_email
        if self.customer_details and self.customer_details.get("email"):
            return self.customer_details["email"]
        return None


class OrderUpdateResponse(CamelModel):
    success: bool = True
    order: Order


class WebhookAck(BaseModel):
    received: bool = True
