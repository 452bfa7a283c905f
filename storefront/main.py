from fastapi import Depends, FastAPI, Header, Request, Response
from fastapi.responses import JSONResponse
from fastapi.concurrency import run_in_threadpool

import hmac
import json
import math
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Optional

from .catalog import Catalog, PostgresCatalog
from .checkout import CheckoutService
from .errors import (
    AdmissionDenied,
    AuthorizationError,
    NotFound,
    PayloadTooLarge,
    StorefrontError,
    UnsupportedMediaType,
    ValidationError,
)
from .fulfillment import FulfillmentHandler
from .logs import add_context, clear_context, configure_logging, get_logger
from .models import CheckoutSession, Order, OrderStatus, OrderUpdateResponse, WebhookAck
from .orders import AccountDirectory, OrderStore, PostgresAccountDirectory, PostgresOrderStore
from .processor import PaymentProcessor, StripeProcessor
from .ratelimit import MemoryCounterStore, PostgresCounterStore, RateLimiter, RateLimitResult
from .settings import (
    ADMIN_API_TOKEN,
    ADMIN_RATE_LIMIT,
    CHECKOUT_CURRENCY,
    CHECKOUT_RATE_LIMIT,
    MAX_ADMIN_BODY_BYTES,
    MAX_CHECKOUT_BODY_BYTES,
    PROCESSOR_TIMEOUT_SECONDS,
    PUBLIC_BASE_URL,
    RATE_LIMIT_BACKEND,
    RATE_LIMIT_WINDOW_MS,
    STRIPE_API_BASE,
    STRIPE_SECRET_KEY,
    STRIPE_WEBHOOK_SECRET,
    WEBHOOK_TOLERANCE_SECONDS,
    check_settings,
)
from .validation import validate_identifier

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    report = check_settings()
    if not report["valid"]:
        logger.warning("settings_incomplete", missing=report["missing"], invalid=report["invalid"])
    yield


app = FastAPI(title="Storefront Checkout", version="0.1.0", lifespan=lifespan)


@app.middleware("http")
async def bind_request_context(request: Request, call_next):
    request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
    clear_context()
    add_context(request_id=request_id, path=request.url.path, method=request.method)
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# --- collaborators (overridden in tests) -------------------------------------

@lru_cache
def get_rate_limiter() -> RateLimiter:
    store = PostgresCounterStore() if RATE_LIMIT_BACKEND == "postgres" else MemoryCounterStore()
    return RateLimiter(store)


@lru_cache
def get_processor() -> PaymentProcessor:
    return StripeProcessor(
        secret_key=STRIPE_SECRET_KEY,
        webhook_secret=STRIPE_WEBHOOK_SECRET,
        api_base=STRIPE_API_BASE,
        timeout=PROCESSOR_TIMEOUT_SECONDS,
        currency=CHECKOUT_CURRENCY,
        tolerance=WEBHOOK_TOLERANCE_SECONDS,
    )


def get_catalog() -> Catalog:
    return PostgresCatalog()


def get_order_store() -> OrderStore:
    return PostgresOrderStore()


def get_account_directory() -> AccountDirectory:
    return PostgresAccountDirectory()


def get_admin_token() -> str:
    return ADMIN_API_TOKEN


def get_checkout_service(
    catalog: Catalog = Depends(get_catalog),
    processor: PaymentProcessor = Depends(get_processor),
) -> CheckoutService:
    return CheckoutService(catalog, processor, PUBLIC_BASE_URL)


def get_fulfillment_handler(
    processor: PaymentProcessor = Depends(get_processor),
    orders: OrderStore = Depends(get_order_store),
    catalog: Catalog = Depends(get_catalog),
    accounts: AccountDirectory = Depends(get_account_directory),
) -> FulfillmentHandler:
    return FulfillmentHandler(processor, orders, catalog, accounts)


# --- request helpers ---------------------------------------------------------

def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else "unknown"


def rate_limit_headers(limit: int, result: RateLimitResult, now: int) -> dict[str, str]:
    headers = {
        "X-RateLimit-Limit": str(limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": datetime.fromtimestamp(result.reset_time / 1000, tz=timezone.utc).isoformat(),
    }
    if not result.allowed:
        headers["Retry-After"] = str(max(0, math.ceil((result.reset_time - now) / 1000)))
    return headers


def admit(request: Request, limiter: RateLimiter, endpoint_class: str, limit: int) -> None:
    """Count the request against its window; headers ride on whatever response follows."""
    ip = client_ip(request)
    result = limiter.check(f"{endpoint_class}:{ip}", limit, RATE_LIMIT_WINDOW_MS)
    request.state.rate_limit_headers = rate_limit_headers(limit, result, limiter.clock())
    if not result.allowed:
        logger.warning("rate_limit_exceeded", endpoint=endpoint_class, ip=ip, category="security")
        raise AdmissionDenied(result.reset_time)


async def read_json_body(request: Request, max_bytes: int) -> Any:
    content_type = request.headers.get("content-type", "")
    if "application/json" not in content_type:
        raise UnsupportedMediaType("Content-Type must be application/json")

    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > max_bytes:
        raise PayloadTooLarge("Request body too large")

    raw = await request.body()
    if len(raw) > max_bytes:
        raise PayloadTooLarge("Request body too large")

    try:
        return json.loads(raw)
    except ValueError:
        raise ValidationError("Invalid JSON")


def authorize_admin(presented: Optional[str], expected: str) -> None:
    if not expected or not presented or not hmac.compare_digest(presented, expected):
        logger.warning("admin_authorization_failed", category="security")
        raise AuthorizationError("Unauthorized")


# --- error rendering ---------------------------------------------------------

@app.exception_handler(StorefrontError)
async def storefront_error_handler(request: Request, exc: StorefrontError):
    if exc.public:
        logger.info("request_rejected", path=request.url.path, status_code=exc.status_code, error=exc.message)
    else:
        logger.error("request_failed", path=request.url.path, status_code=exc.status_code, error=exc.message, exc_info=exc)
    headers = getattr(request.state, "rate_limit_headers", None) or {}
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.error("unhandled_error", path=request.url.path, exc_info=exc)
    headers = getattr(request.state, "rate_limit_headers", None) or {}
    return JSONResponse(status_code=500, content={"error": "Internal server error"}, headers=headers)


# --- routes ------------------------------------------------------------------

@app.get("/health")
def health():
    return {"ok": True}


@app.post("/checkout/sessions", response_model=CheckoutSession)
async def create_checkout_session(
    request: Request,
    response: Response,
    limiter: RateLimiter = Depends(get_rate_limiter),
    service: CheckoutService = Depends(get_checkout_service),
):
    admit(request, limiter, "checkout", CHECKOUT_RATE_LIMIT)
    body = await read_json_body(request, MAX_CHECKOUT_BODY_BYTES)
    session = await service.create_session(body)
    response.headers.update(request.state.rate_limit_headers)
    return session


@app.post("/webhooks/payments", response_model=WebhookAck)
async def payment_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    handler: FulfillmentHandler = Depends(get_fulfillment_handler),
):
    """
    Signed callback from the payment processor. The body is read raw: the
    signature covers the exact bytes, so nothing may parse it beforehand.
    """
    payload = await request.body()
    await run_in_threadpool(handler.handle, payload, stripe_signature)
    return WebhookAck(received=True)


@app.get("/orders/{order_id}", response_model=Order)
async def get_order(
    order_id: str,
    request: Request,
    response: Response,
    x_admin_token: Optional[str] = Header(None, alias="X-Admin-Token"),
    limiter: RateLimiter = Depends(get_rate_limiter),
    orders: OrderStore = Depends(get_order_store),
    admin_token: str = Depends(get_admin_token),
):
    admit(request, limiter, "admin-order", ADMIN_RATE_LIMIT)
    authorize_admin(x_admin_token, admin_token)
    if not validate_identifier(order_id):
        raise ValidationError("Invalid order ID")

    order = await run_in_threadpool(orders.get_order, order_id)
    if order is None:
        raise NotFound("Order not found")

    response.headers.update(request.state.rate_limit_headers)
    return order


@app.patch("/orders/{order_id}", response_model=OrderUpdateResponse)
async def update_order_status(
    order_id: str,
    request: Request,
    response: Response,
    x_admin_token: Optional[str] = Header(None, alias="X-Admin-Token"),
    limiter: RateLimiter = Depends(get_rate_limiter),
    orders: OrderStore = Depends(get_order_store),
    admin_token: str = Depends(get_admin_token),
):
    admit(request, limiter, "admin-order", ADMIN_RATE_LIMIT)
    authorize_admin(x_admin_token, admin_token)
    if not validate_identifier(order_id):
        raise ValidationError("Invalid order ID")

    body = await read_json_body(request, MAX_ADMIN_BODY_BYTES)
    raw_status = body.get("status") if isinstance(body, dict) else None
    if not raw_status or not isinstance(raw_status, str):
        raise ValidationError("Status is required")

    status = OrderStatus.parse(raw_status)
    if status is None:
        allowed = ", ".join(s.value for s in OrderStatus)
        raise ValidationError(f"Invalid status. Must be one of: {allowed}")

    order = await run_in_threadpool(orders.update_status, order_id, status)
    if order is None:
        raise NotFound("Order not found")

    logger.info("order_status_updated", order_id=order_id, status=status.value)
    response.headers.update(request.state.rate_limit_headers)
    return OrderUpdateResponse(order=order)
