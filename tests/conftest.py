"""
Pytest configuration and fixtures.
"""
import asyncio
import base64
import copy
import hashlib
import hmac
from decimal import Decimal
from typing import Any, AsyncGenerator, Dict, Optional
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from reconciler.config import Settings
from reconciler.core.errors import ConflictError, StaleVersion
from reconciler.core.models import CheckoutSession, Order, Product, Subscriber
from reconciler.core.order_ledger import OrderLedger
from reconciler.core.subscription_ledger import SubscriptionLedger
from reconciler.database.connection import create_session_factory
from reconciler.database.models import Base
from reconciler.integrations.gateway import GatewayHolder
from reconciler.integrations.mercadopago_client import MercadoPagoGateway

WEBHOOK_SECRET = "whsec_test_fake_secret"


def sign(request_id: str, body: bytes, secret: str = WEBHOOK_SECRET, encoding: str = "hex") -> str:
    """Build an X-Signature header value the way the gateway does."""
    digest = hmac.new(
        secret.encode(), b"id=" + request_id.encode() + b";" + body, hashlib.sha256
    ).digest()
    value = digest.hex() if encoding == "hex" else base64.b64encode(digest).decode()
    return f"sha256={value}"


class InMemoryCatalog:
    def __init__(self, *products: Product):
        self.products: Dict[str, Product] = {p.id: p for p in products}

    async def get_product(self, product_id: str) -> Optional[Product]:
        return self.products.get(product_id)


class InMemoryOrderStore:
    """
    Order store double with the same compare-and-set contract as the SQL store.

    ``get`` yields to the event loop after reading so concurrent callers
    interleave between read and write.
    """

    def __init__(self) -> None:
        self.rows: Dict[str, Order] = {}
        self.writes = 0

    async def add(self, order: Order) -> Order:
        self.rows[order.id] = copy.deepcopy(order)
        return copy.deepcopy(order)

    async def get(self, order_id: str) -> Optional[Order]:
        row = copy.deepcopy(self.rows.get(order_id))
        await asyncio.sleep(0)
        return row

    async def find_by_checkout_ref(self, checkout_ref: str) -> Optional[Order]:
        for row in self.rows.values():
            if row.checkout_ref == checkout_ref:
                return copy.deepcopy(row)
        return None

    async def compare_and_set(
        self,
        order_id: str,
        expected_version: int,
        *,
        status: Optional[str] = None,
        payment_ref: Optional[str] = None,
        checkout_ref: Optional[str] = None,
    ) -> Order:
        row = self.rows[order_id]
        if row.version != expected_version:
            raise StaleVersion(order_id)
        if checkout_ref is not None:
            for other in self.rows.values():
                if other.id != order_id and other.checkout_ref == checkout_ref:
                    raise ConflictError(f"Checkout reference {checkout_ref} is already linked")
            row.checkout_ref = checkout_ref
        if status is not None:
            row.status = status
        if payment_ref is not None:
            row.payment_ref = payment_ref
        row.version += 1
        self.writes += 1
        return copy.deepcopy(row)


class InMemorySubscriberStore:
    def __init__(self, *subscribers: Subscriber):
        self.rows: Dict[str, Subscriber] = {s.id: copy.deepcopy(s) for s in subscribers}
        self.writes = 0

    async def get(self, subscriber_id: str) -> Optional[Subscriber]:
        row = copy.deepcopy(self.rows.get(subscriber_id))
        await asyncio.sleep(0)
        return row

    async def find_by_email(self, email: str) -> Optional[Subscriber]:
        for row in self.rows.values():
            if row.email == email:
                return copy.deepcopy(row)
        return None

    async def compare_and_set(self, subscriber: Subscriber, expected_version: int) -> Subscriber:
        row = self.rows[subscriber.id]
        if row.version != expected_version:
            raise StaleVersion(subscriber.id)
        stored = copy.deepcopy(subscriber)
        stored.version = expected_version + 1
        self.rows[subscriber.id] = stored
        self.writes += 1
        return copy.deepcopy(stored)


@pytest.fixture
def products() -> Dict[str, Product]:
    return {
        "P1": Product(id="P1", name="Coffee beans 1kg", price=Decimal("1000")),
        "P2": Product(id="P2", name="Grinder", price=Decimal("249.99")),
        "SUB": Product(id="SUB", name="Premium monthly", price=Decimal("500"), is_subscription=True),
    }


@pytest.fixture
def catalog(products: Dict[str, Product]) -> InMemoryCatalog:
    return InMemoryCatalog(*products.values())


@pytest.fixture
def order_store() -> InMemoryOrderStore:
    return InMemoryOrderStore()


@pytest.fixture
def subscriber_store() -> InMemorySubscriberStore:
    return InMemorySubscriberStore(
        Subscriber(id="user-1", email="ana@example.com"),
        Subscriber(id="user-2", email="bruno@example.com"),
    )


@pytest.fixture
def order_ledger(order_store: InMemoryOrderStore, catalog: InMemoryCatalog) -> OrderLedger:
    return OrderLedger(order_store, catalog)


@pytest.fixture
def subscription_ledger(subscriber_store: InMemorySubscriberStore) -> SubscriptionLedger:
    return SubscriptionLedger(subscriber_store)


@pytest.fixture
def gateway() -> AsyncMock:
    """Gateway double; status fetches are configured per test."""
    mock = AsyncMock(spec=MercadoPagoGateway)
    mock.create_checkout_session.return_value = CheckoutSession(
        redirect_url="https://gateway.test/checkout/pref-1", session_ref="pref-1"
    )
    mock.create_mandate.return_value = CheckoutSession(
        redirect_url="https://gateway.test/preapproval/mandate-1", session_ref="mandate-1"
    )
    return mock


@pytest.fixture
def gateway_holder(gateway: AsyncMock) -> GatewayHolder:
    return GatewayHolder.of(gateway)


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        gateway_access_token="TEST-access-token",
        webhook_secret=WEBHOOK_SECRET,
        database_url="sqlite+aiosqlite://",
        app_name="payment-reconciler-test",
        app_env="test",
        log_level="DEBUG",
        debug=True,
    )


@pytest.fixture
def production_settings() -> Settings:
    return Settings(
        gateway_access_token="APP_USR-access-token",
        webhook_secret=WEBHOOK_SECRET,
        database_url="sqlite+aiosqlite://",
        app_env="production",
    )


@pytest_asyncio.fixture
async def session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], Any]:
    """In-memory SQLite database shared by every session of one test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield create_session_factory(engine)

    await engine.dispose()


@pytest_asyncio.fixture
async def api_client(
    test_settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    gateway_holder: GatewayHolder,
) -> AsyncGenerator[AsyncClient, Any]:
    """HTTP client against the app wired to SQLite and the gateway double."""
    from reconciler.api.dependencies import build_container
    from reconciler.api.main import create_app

    container = build_container(test_settings, session_factory, gateway_holder)
    app = create_app(container=container)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        ac.container = container  # type: ignore[attr-defined]
        yield ac
