"""
Integration tests for the HTTP API.

The app runs against in-memory SQLite with the gateway client replaced by a
mock; no external services are required.
"""
import json
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from reconciler.core.errors import (
    AlreadyLinked,
    AuthenticationError,
    ConcurrentModification,
    EmptyCart,
    GatewayNotConfigured,
    ReconciliationError,
    UnknownProduct,
    UpstreamError,
)
from reconciler.core.models import GatewayMandate, GatewayPayment, Product, Subscriber

from .conftest import sign


@pytest_asyncio.fixture
async def client(api_client: AsyncClient) -> AsyncClient:
    """API client with a seeded catalog and one subscriber."""
    container = api_client.container
    await container.catalog.add(Product(id="P1", name="Coffee beans 1kg", price=Decimal("1000")))
    await container.catalog.add(
        Product(id="SUB", name="Premium monthly", price=Decimal("500"), is_subscription=True)
    )
    await container.subscriber_store.add(Subscriber(id="user-1", email="ana@example.com"))
    return api_client


class TestCheckoutEndpoints:
    """Test suite for checkout creation over HTTP."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_create_checkout(self, client: AsyncClient) -> None:
        response = await client.post(
            "/checkout", json={"buyer": "buyer-1", "items": [{"product_id": "P1", "quantity": 2}]}
        )

        assert response.status_code == 201
        data = response.json()
        assert data["redirect_url"] == "https://gateway.test/checkout/pref-1"

        status_response = await client.get(f"/orders/{data['order_id']}/status")
        assert status_response.status_code == 200
        order = status_response.json()
        assert order["status"] == "pending"
        assert Decimal(str(order["total_amount"])) == Decimal("2000")

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_numeric_product_id_accepted(self, client: AsyncClient) -> None:
        await client.container.catalog.add(Product(id="7", name="Filter", price=Decimal("15")))

        response = await client.post("/checkout", json={"items": [{"product_id": 7, "quantity": 1}]})

        assert response.status_code == 201

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_empty_cart_is_bad_request(self, client: AsyncClient) -> None:
        response = await client.post("/checkout", json={"items": []})

        assert response.status_code == 400

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_zero_quantity_rejected_by_schema(self, client: AsyncClient) -> None:
        response = await client.post(
            "/checkout", json={"items": [{"product_id": "P1", "quantity": 0}]}
        )

        assert response.status_code == 422

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_product_is_not_found(self, client: AsyncClient) -> None:
        response = await client.post(
            "/checkout", json={"items": [{"product_id": "NOPE", "quantity": 1}]}
        )

        assert response.status_code == 404

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_gateway_failure_is_bad_gateway(
        self, client: AsyncClient, gateway: AsyncMock
    ) -> None:
        gateway.create_checkout_session.side_effect = UpstreamError("Gateway timed out")

        response = await client.post(
            "/checkout", json={"items": [{"product_id": "P1", "quantity": 1}]}
        )

        assert response.status_code == 502

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_subscription_checkout(self, client: AsyncClient) -> None:
        response = await client.post(
            "/checkout/subscription", json={"subscriber_id": "user-1", "product_id": "SUB"}
        )

        assert response.status_code == 201
        assert response.json() == {"redirect_url": "https://gateway.test/preapproval/mandate-1"}

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_subscription_checkout_for_one_off_product(self, client: AsyncClient) -> None:
        response = await client.post(
            "/checkout/subscription", json={"subscriber_id": "user-1", "product_id": "P1"}
        )

        assert response.status_code == 400


class TestWebhookEndpoint:
    """Test suite for gateway notifications over HTTP."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_payment_webhook_approves_order(
        self, client: AsyncClient, gateway: AsyncMock
    ) -> None:
        created = await client.post(
            "/checkout", json={"items": [{"product_id": "P1", "quantity": 1}]}
        )
        order_id = created.json()["order_id"]
        gateway.get_payment.return_value = GatewayPayment(
            id="pay-1", status="approved", external_reference=order_id, session_ref="pref-1"
        )
        body = json.dumps({"type": "payment", "data": {"id": "pay-1"}}).encode()

        response = await client.post(
            "/webhook",
            content=body,
            headers={
                "Content-Type": "application/json",
                "X-Request-Id": "req-1",
                "X-Signature": sign("req-1", body),
            },
        )

        assert response.status_code == 200
        assert response.json() == {"received": True}
        status_response = await client.get(f"/orders/{order_id}/status")
        assert status_response.json()["status"] == "approved"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_query_string_notification(
        self, client: AsyncClient, gateway: AsyncMock
    ) -> None:
        gateway.get_mandate.return_value = GatewayMandate(
            id="mandate-1", status="authorized", external_reference="user-1"
        )

        response = await client.post("/webhook?type=preapproval&data.id=mandate-1")

        assert response.status_code == 200
        gateway.get_mandate.assert_awaited_once_with("mandate-1")
        subscriber = await client.container.subscription_ledger.get("user-1")
        assert subscriber.is_premium is True

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unmatched_payment_still_acknowledged(
        self, client: AsyncClient, gateway: AsyncMock
    ) -> None:
        gateway.get_payment.return_value = GatewayPayment(
            id="pay-9", status="approved", external_reference="no-such-order"
        )

        response = await client.post("/webhook", json={"type": "payment", "data": {"id": "pay-9"}})

        assert response.status_code == 200

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_production_app_rejects_unsigned_webhook(self, production_settings) -> None:
        from reconciler.api.main import create_app

        app = create_app(production_settings)
        try:
            async with AsyncClient(
                transport=ASGITransport(app=app), base_url="http://test"
            ) as ac:
                response = await ac.post(
                    "/webhook", json={"type": "payment", "data": {"id": "1"}}
                )
        finally:
            await app.state.container.close()

        assert response.status_code == 401
        assert app.state.container.webhooks.enforce_signatures is True

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_production_container_rejects_unsigned_webhook(
        self, client: AsyncClient, production_settings, gateway: AsyncMock
    ) -> None:
        from reconciler.api.dependencies import Container
        from reconciler.api.main import create_app

        current = client.container
        strict = Container(production_settings, current.session_factory, current.gateway)
        app = create_app(container=strict)
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            response = await ac.post("/webhook", json={"type": "payment", "data": {"id": "1"}})

        assert response.status_code == 401
        gateway.get_payment.assert_not_awaited()


class TestOrderAndSubscriptionEndpoints:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_order_status(self, client: AsyncClient) -> None:
        response = await client.get("/orders/missing/status")

        assert response.status_code == 404

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_cancel_subscription(self, client: AsyncClient) -> None:
        await client.container.subscription_ledger.activate("user-1", "mandate-1")

        response = await client.post("/subscriptions/user-1/cancel")

        assert response.status_code == 200
        data = response.json()
        assert data["is_premium"] is False
        assert data["mandate_ref"] == "mandate-1"
        assert data["cancelled_at"] is not None


class TestMonitoringEndpoints:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_health_check(self, client: AsyncClient) -> None:
        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["checks"]["database"]["status"] == "healthy"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_liveness(self, client: AsyncClient) -> None:
        response = await client.get("/health/live")

        assert response.json()["status"] == "alive"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_metrics_endpoint(self, client: AsyncClient) -> None:
        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "text/plain" in response.headers["content-type"]
        assert "webhook_events_processed_total" in response.text

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_trace_id_header(self, client: AsyncClient) -> None:
        response = await client.get("/health/live")

        assert "X-Trace-ID" in response.headers


class TestErrorMapping:
    @pytest.mark.unit
    @pytest.mark.parametrize(
        "error,expected",
        [
            (EmptyCart(), 400),
            (UnknownProduct("X"), 404),
            (AuthenticationError("bad signature"), 401),
            (AlreadyLinked("o-1", "pref-1", "pref-2"), 409),
            (ConcurrentModification("order", "o-1"), 409),
            (GatewayNotConfigured(), 503),
            (UpstreamError("timeout"), 502),
            (ReconciliationError("other"), 500),
        ],
    )
    def test_status_for(self, error, expected: int) -> None:
        from reconciler.api.main import status_for

        assert status_for(error) == expected
