from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from storefront.main import (
    app,
    get_account_directory,
    get_admin_token,
    get_catalog,
    get_order_store,
    get_processor,
    get_rate_limiter,
)
from storefront.models import Product
from storefront.ratelimit import MemoryCounterStore, RateLimiter
from tests.fakes import (
    ADMIN_TOKEN,
    MUG_ID,
    POSTER_ID,
    TEE_ID,
    FakeAccountDirectory,
    FakeCatalog,
    FakeClock,
    FakeOrderStore,
    FakeProcessor,
)


@pytest.fixture()
def products():
    return [
        Product(id=MUG_ID, title="Enamel Mug", description="Holds coffee", price=Decimal("25.00"), inventory=5),
        Product(id=TEE_ID, title="Logo Tee", price=Decimal("19.99"), image="https://cdn.example.com/tee.png", inventory=50),
        Product(id=POSTER_ID, title="Poster", price=Decimal("7.50"), inventory=0),
    ]


@pytest.fixture()
def catalog(products):
    return FakeCatalog(products)


@pytest.fixture()
def orders():
    return FakeOrderStore()


@pytest.fixture()
def accounts():
    return FakeAccountDirectory()


@pytest.fixture()
def processor():
    return FakeProcessor()


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def limiter(clock):
    return RateLimiter(MemoryCounterStore(cleanup_probability=0.0), clock=clock)


@pytest.fixture()
def client(catalog, orders, accounts, processor, limiter):
    app.dependency_overrides[get_catalog] = lambda: catalog
    app.dependency_overrides[get_order_store] = lambda: orders
    app.dependency_overrides[get_account_directory] = lambda: accounts
    app.dependency_overrides[get_processor] = lambda: processor
    app.dependency_overrides[get_rate_limiter] = lambda: limiter
    app.dependency_overrides[get_admin_token] = lambda: ADMIN_TOKEN
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture()
def shipping():
    return {
        "name": "Ada Lovelace",
        "phone": "(555) 123-4567",
        "addressLine1": "12 Analytical Way",
        "city": "Springfield",
        "state": "IL",
        "postalCode": "62701",
        "country": "US",
    }
