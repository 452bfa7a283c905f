"""
Payment processor port and its Stripe adapter.

The port has two jobs: open a hosted checkout session, and authenticate the
signed callbacks the processor sends back once the customer has paid.
"""

import uuid
from abc import ABC, abstractmethod
from typing import Optional

import stripe

from .errors import AuthenticationError, ConfigurationError, UpstreamError
from .logs import get_logger
from .models import CheckoutSession, PricedLineItem

logger = get_logger(__name__)

SESSION_ID_PLACEHOLDER = "{CHECKOUT_SESSION_ID}"


class PaymentProcessor(ABC):
    @abstractmethod
    async def create_checkout_session(
        self,
        line_items: list[PricedLineItem],
        customer_email: str,
        metadata: dict[str, str],
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        """Open a hosted payment session. Raises UpstreamError on any failure."""
        ...

    @abstractmethod
    def verify_webhook(self, payload: bytes, signature: Optional[str]) -> None:
        """
        Raise AuthenticationError unless ``signature`` signs ``payload``, or
        ConfigurationError when no signing secret is configured.
        """
        ...


def session_params(
    line_items: list[PricedLineItem],
    customer_email: str,
    metadata: dict[str, str],
    success_url: str,
    cancel_url: str,
    currency: str,
) -> dict:
    """Build the ``checkout.sessions.create`` request from server-priced lines."""
    stripe_line_items = []
    for item in line_items:
        product_data = {"name": item.title}
        if item.description:
            product_data["description"] = item.description
        if item.image:
            product_data["images"] = [item.image]
        stripe_line_items.append(
            {
                "price_data": {
                    "currency": currency,
                    "unit_amount": item.unit_amount,
                    "product_data": product_data,
                },
                "quantity": item.quantity,
            }
        )
    return {
        "mode": "payment",
        "payment_method_types": ["card"],
        "line_items": stripe_line_items,
        "customer_email": customer_email,
        "success_url": success_url,
        "cancel_url": cancel_url,
        "metadata": metadata,
    }


class StripeProcessor(PaymentProcessor):
    def __init__(
        self,
        secret_key: str,
        webhook_secret: str,
        api_base: str = "https://api.stripe.com",
        timeout: float = 10.0,
        currency: str = "usd",
        tolerance: int = 300,
        client: Optional[stripe.StripeClient] = None,
    ):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self.currency = currency
        self.tolerance = tolerance
        self._client = client

    @property
    def client(self) -> stripe.StripeClient:
        if self._client is None:
            # One attempt only; the customer retries, not us.
            self._client = stripe.StripeClient(
                self.secret_key,
                base_addresses={"api": self.api_base},
                http_client=stripe.HTTPXClient(timeout=self.timeout),
                max_network_retries=0,
            )
        return self._client

    async def create_checkout_session(
        self,
        line_items: list[PricedLineItem],
        customer_email: str,
        metadata: dict[str, str],
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        params = session_params(line_items, customer_email, metadata, success_url, cancel_url, self.currency)

        try:
            session = await self.client.checkout.sessions.create_async(
                params=params,
                options={"idempotency_key": str(uuid.uuid4())},
            )
        except stripe.APIConnectionError as exc:
            logger.error("processor_unreachable", error=str(exc), category="payment")
            raise UpstreamError("Payment processor unavailable") from exc
        except stripe.StripeError as exc:
            logger.error(
                "processor_request_rejected",
                status_code=exc.http_status,
                code=exc.code,
                error=exc.user_message or str(exc),
                error_type=type(exc).__name__,
                category="payment",
            )
            raise UpstreamError("Payment processor rejected the session request") from exc

        if not session.id or not session.url:
            logger.error("processor_response_incomplete", session_id=session.id, category="payment")
            raise UpstreamError("Payment processor response is missing the session id or url")

        return CheckoutSession(session_id=session.id, redirect_url=session.url)

    def verify_webhook(self, payload: bytes, signature: Optional[str]) -> None:
        if not signature:
            raise AuthenticationError("No signature")
        if not self.webhook_secret:
            logger.error("webhook_secret_missing", category="security")
            raise ConfigurationError("Webhook secret not configured")
        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"), signature, self.webhook_secret, self.tolerance
            )
        except UnicodeDecodeError as exc:
            raise AuthenticationError("Webhook Error: payload is not valid UTF-8") from exc
        except stripe.SignatureVerificationError as exc:
            raise AuthenticationError(f"Webhook Error: {exc.user_message or exc}") from exc
