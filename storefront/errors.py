"""
Error taxonomy for the checkout and fulfillment pipeline.

Each error knows the HTTP status it maps to and the message a caller may see.
Errors flagged ``public = False`` are reported with a generic message; their
detail only reaches the server log.
"""

from typing import Optional

GENERIC_RETRY_MESSAGE = "Failed to create checkout session. Please try again."


class StorefrontError(Exception):
    status_code = 500
    public = True

    def __init__(self, message: str, details: Optional[list[str]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or []

    def to_dict(self) -> dict:
        if not self.public:
            return {"error": self.public_message}
        body: dict = {"error": self.message}
        if self.details:
            body["details"] = self.details
        return body

    @property
    def public_message(self) -> str:
        return self.message if self.public else "Internal server error"


class ValidationError(StorefrontError):
    status_code = 400


class UnsupportedMediaType(ValidationError):
    status_code = 415


class PayloadTooLarge(ValidationError):
    status_code = 413


class AdmissionDenied(StorefrontError):
    status_code = 429

    def __init__(self, reset_time: int, message: str = "Too many requests. Please try again later."):
        super().__init__(message)
        self.reset_time = reset_time


class InventoryError(StorefrontError):
    status_code = 409


class ProductNotFound(InventoryError):
    status_code = 404

    def __init__(self, product_id: str):
        super().__init__(f"Product not found: {product_id}")
        self.product_id = product_id


class InsufficientInventory(InventoryError):
    def __init__(self, product_id: str, title: str, requested: int, available: int):
        super().__init__(f"Insufficient inventory for product: {title}")
        self.product_id = product_id
        self.requested = requested
        self.available = available


class InvalidProductPrice(InventoryError):
    def __init__(self, product_id: str):
        super().__init__(f"Product is not available for purchase: {product_id}")
        self.product_id = product_id


class UpstreamError(StorefrontError):
    status_code = 502
    public = False

    @property
    def public_message(self) -> str:
        return GENERIC_RETRY_MESSAGE


class StorageError(StorefrontError):
    status_code = 500
    public = False


class AuthenticationError(StorefrontError):
    status_code = 400


class AuthorizationError(StorefrontError):
    status_code = 401


class NotFound(StorefrontError):
    status_code = 404


class IdempotencyConflict(StorefrontError):
    """An order for this checkout session already exists."""

    status_code = 200

    def __init__(self, session_id: str):
        super().__init__(f"Order already exists for session {session_id}")
        self.session_id = session_id


class ConfigurationError(StorefrontError):
    """A required secret or setting is missing; the request cannot be served."""

    status_code = 500
    public = False
