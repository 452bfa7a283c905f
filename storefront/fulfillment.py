"""
Fulfillment of paid checkout sessions.

The processor delivers events at least once and retries anything that is not
acknowledged with a 2xx. This handler therefore authenticates first, creates
the order under the ``session_id`` uniqueness constraint, and treats every
later problem with line items as degraded but acknowledged.
"""

import json
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import ValidationError as SchemaError

from .catalog import Catalog
from .errors import AuthenticationError, IdempotencyConflict, ValidationError
from .logs import get_logger
from .models import CheckoutMetadata, CompletedCheckout, NewOrder, NewOrderLineItem, Order, WebhookEvent
from .orders import AccountDirectory, OrderStore
from .pricing import from_minor_units
from .processor import PaymentProcessor

logger = get_logger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"


class FulfillmentOutcome(str, Enum):
    CREATED = "created"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"


class FulfillmentHandler:
    def __init__(
        self,
        processor: PaymentProcessor,
        orders: OrderStore,
        catalog: Catalog,
        accounts: Optional[AccountDirectory] = None,
    ):
        self.processor = processor
        self.orders = orders
        self.catalog = catalog
        self.accounts = accounts

    def handle(self, payload: bytes, signature: Optional[str]) -> FulfillmentOutcome:
        try:
            self.processor.verify_webhook(payload, signature)
        except AuthenticationError:
            logger.warning("webhook_signature_invalid", has_signature=bool(signature), category="security")
            raise

        event = self._parse_event(payload)
        if event.type != CHECKOUT_COMPLETED:
            logger.info("webhook_event_ignored", event_id=event.id, event_type=event.type)
            return FulfillmentOutcome.IGNORED

        try:
            checkout = CompletedCheckout.model_validate(event.data.object)
        except SchemaError as exc:
            logger.warning("webhook_event_malformed", event_id=event.id, error=str(exc))
            raise ValidationError("Malformed checkout session") from exc

        email = checkout.email
        if not email:
            logger.error("webhook_missing_email", event_id=event.id, session_id=checkout.id, category="payment")
            raise ValidationError("No customer email")

        shipping = CheckoutMetadata.shipping_from_processor_metadata(checkout.metadata)
        new_order = NewOrder(
            session_id=checkout.id,
            account_id=self._resolve_account(email),
            email=email,
            amount=from_minor_units(checkout.amount_total) if checkout.amount_total else Decimal("0.00"),
            metadata=checkout.metadata,
            **shipping,
        )

        try:
            order = self.orders.create_order(new_order)
        except IdempotencyConflict:
            logger.info("order_duplicate_delivery", event_id=event.id, session_id=checkout.id, category="payment")
            return FulfillmentOutcome.DUPLICATE

        logger.info(
            "order_created",
            order_id=order.id,
            session_id=order.session_id,
            amount=str(order.amount),
            category="payment",
        )
        self._materialize_line_items(order, checkout.metadata)
        return FulfillmentOutcome.CREATED

    def _parse_event(self, payload: bytes) -> WebhookEvent:
        try:
            return WebhookEvent.model_validate(json.loads(payload))
        except (ValueError, SchemaError) as exc:
            logger.warning("webhook_payload_malformed", error=str(exc))
            raise ValidationError("Malformed webhook event") from exc

    def _resolve_account(self, email: str) -> Optional[str]:
        if self.accounts is None:
            return None
        try:
            return self.accounts.find_account_id(email)
        except Exception as exc:
            # Guest checkout is a valid end state.
            logger.warning("account_lookup_failed", email=email, error=str(exc))
            return None

    def _materialize_line_items(self, order: Order, metadata: dict[str, str]) -> None:
        try:
            lines = CheckoutMetadata.items_from_processor_metadata(metadata)
        except ValueError as exc:
            logger.error("line_items_skipped", order_id=order.id, reason=str(exc), category="payment")
            return

        try:
            products = self.catalog.get_products_by_ids(line.product_id for line in lines)
            items = [
                NewOrderLineItem(
                    product_id=line.product_id,
                    quantity=line.quantity,
                    unit_price=products[line.product_id].price if line.product_id in products else Decimal("0"),
                )
                for line in lines
            ]
            missing = [line.product_id for line in lines if line.product_id not in products]
            if missing:
                logger.warning("line_item_products_missing", order_id=order.id, product_ids=missing)
            self.orders.add_line_items(order.id, items)
        except Exception as exc:
            # The order is already the record of payment; never make the processor retry it.
            logger.error("line_items_failed", order_id=order.id, error=str(exc), exc_info=True, category="payment")
            return

        logger.info("line_items_created", order_id=order.id, count=len(items))
