"""
Checkout session initiation.

Validates the untrusted request, prices it against the catalog and opens a
hosted session with the payment processor. No order exists until the
processor confirms payment through the webhook.
"""

from typing import Any

from fastapi.concurrency import run_in_threadpool

from .catalog import Catalog
from .errors import ValidationError
from .logs import get_logger
from .models import CartLine, CheckoutMetadata, CheckoutSession
from .pricing import cart_total, price_cart
from .processor import SESSION_ID_PLACEHOLDER, PaymentProcessor
from .validation import sanitize_shipping_info, validate_cart_items, validate_email, validate_shipping_info

logger = get_logger(__name__)


class CheckoutService:
    def __init__(self, catalog: Catalog, processor: PaymentProcessor, base_url: str):
        self.catalog = catalog
        self.processor = processor
        self.base_url = base_url.rstrip("/")

    @property
    def success_url(self) -> str:
        return f"{self.base_url}/success?session_id={SESSION_ID_PLACEHOLDER}"

    @property
    def cancel_url(self) -> str:
        return f"{self.base_url}/cart"

    async def create_session(self, body: Any) -> CheckoutSession:
        if not isinstance(body, dict):
            raise ValidationError("Request body must be a JSON object")

        email = body.get("email")
        items = body.get("items")
        shipping_info = body.get("shippingInfo")

        if not validate_email(email):
            raise ValidationError("Valid email address is required")

        items_check = validate_cart_items(items)
        if not items_check.valid:
            raise ValidationError("Invalid cart items", items_check.errors)

        shipping_check = validate_shipping_info(shipping_info)
        if not shipping_check.valid:
            raise ValidationError("Invalid shipping information", shipping_check.errors)

        lines = [CartLine(product_id=item["productId"].lower(), quantity=int(item["quantity"])) for item in items]

        products = await run_in_threadpool(self.catalog.get_products_by_ids, [line.product_id for line in lines])
        priced = price_cart(lines, products)

        metadata = CheckoutMetadata(items=lines, shipping=sanitize_shipping_info(shipping_info))

        session = await self.processor.create_checkout_session(
            line_items=priced,
            customer_email=email,
            metadata=metadata.to_processor_metadata(),
            success_url=self.success_url,
            cancel_url=self.cancel_url,
        )

        logger.info(
            "checkout_session_created",
            session_id=session.session_id,
            email=email,
            line_count=len(priced),
            amount_minor=cart_total(priced),
            category="payment",
        )
        return session
