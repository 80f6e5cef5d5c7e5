"""
Tests for the checkout orchestrator.
"""
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from reconciler.core.checkout import CheckoutOrchestrator
from reconciler.core.errors import (
    EmptyCart,
    GatewayNotConfigured,
    NotASubscriptionProduct,
    NotFound,
    UnknownProduct,
    UpstreamError,
)
from reconciler.core.models import CartItem
from reconciler.core.order_ledger import OrderLedger
from reconciler.core.subscription_ledger import SubscriptionLedger
from reconciler.integrations.gateway import GatewayHolder

from .conftest import InMemoryOrderStore


@pytest.fixture
def orchestrator(
    catalog,
    order_ledger: OrderLedger,
    subscription_ledger: SubscriptionLedger,
    gateway_holder: GatewayHolder,
) -> CheckoutOrchestrator:
    return CheckoutOrchestrator(catalog, order_ledger, subscription_ledger, gateway_holder)


class TestCreateCheckout:
    """Test suite for one-off checkouts."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_creates_pending_order_and_links_session(
        self,
        orchestrator: CheckoutOrchestrator,
        order_ledger: OrderLedger,
        gateway: AsyncMock,
    ) -> None:
        result = await orchestrator.create_checkout("buyer-1", [CartItem("P1", 2)])

        assert result.redirect_url == "https://gateway.test/checkout/pref-1"
        order = await order_ledger.get(result.order_id)
        assert order.status == "pending"
        assert order.total == Decimal("2000")
        assert order.checkout_ref == "pref-1"

        gateway.create_checkout_session.assert_awaited_once()
        args, kwargs = gateway.create_checkout_session.call_args
        assert kwargs["correlation_token"] == result.order_id
        assert [(i.product_id, i.quantity) for i in args[0]] == [("P1", 2)]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_product_creates_nothing(
        self,
        orchestrator: CheckoutOrchestrator,
        order_store: InMemoryOrderStore,
        gateway: AsyncMock,
    ) -> None:
        with pytest.raises(UnknownProduct):
            await orchestrator.create_checkout("buyer-1", [CartItem("P1", 1), CartItem("X", 1)])

        assert order_store.rows == {}
        gateway.create_checkout_session.assert_not_awaited()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_empty_cart(
        self, orchestrator: CheckoutOrchestrator, gateway: AsyncMock
    ) -> None:
        with pytest.raises(EmptyCart):
            await orchestrator.create_checkout("buyer-1", [])
        gateway.create_checkout_session.assert_not_awaited()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_gateway_failure_leaves_unlinked_pending_order(
        self,
        orchestrator: CheckoutOrchestrator,
        order_store: InMemoryOrderStore,
        gateway: AsyncMock,
    ) -> None:
        gateway.create_checkout_session.side_effect = UpstreamError("Gateway timed out")

        with pytest.raises(UpstreamError):
            await orchestrator.create_checkout("buyer-1", [CartItem("P1", 1)])

        (order,) = order_store.rows.values()
        assert order.status == "pending"
        assert order.checkout_ref is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unconfigured_gateway(
        self,
        catalog,
        order_ledger: OrderLedger,
        subscription_ledger: SubscriptionLedger,
        order_store: InMemoryOrderStore,
    ) -> None:
        orchestrator = CheckoutOrchestrator(
            catalog, order_ledger, subscription_ledger, GatewayHolder()
        )

        with pytest.raises(GatewayNotConfigured):
            await orchestrator.create_checkout("buyer-1", [CartItem("P1", 1)])
        assert order_store.rows == {}


class TestCreateSubscriptionCheckout:
    """Test suite for recurring mandates."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_creates_mandate_for_subscriber(
        self, orchestrator: CheckoutOrchestrator, gateway: AsyncMock
    ) -> None:
        result = await orchestrator.create_subscription_checkout("user-1", "SUB")

        assert result.redirect_url == "https://gateway.test/preapproval/mandate-1"
        gateway.create_mandate.assert_awaited_once_with(
            payer_email="ana@example.com",
            amount=Decimal("500"),
            correlation_token="user-1",
            reason="Premium monthly",
        )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_does_not_activate_before_authorization(
        self,
        orchestrator: CheckoutOrchestrator,
        subscription_ledger: SubscriptionLedger,
    ) -> None:
        await orchestrator.create_subscription_checkout("user-1", "SUB")

        assert (await subscription_ledger.get("user-1")).is_premium is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_one_off_product_rejected(
        self, orchestrator: CheckoutOrchestrator, gateway: AsyncMock
    ) -> None:
        with pytest.raises(NotASubscriptionProduct):
            await orchestrator.create_subscription_checkout("user-1", "P1")
        gateway.create_mandate.assert_not_awaited()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_product(self, orchestrator: CheckoutOrchestrator) -> None:
        with pytest.raises(UnknownProduct):
            await orchestrator.create_subscription_checkout("user-1", "NOPE")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_subscriber(
        self, orchestrator: CheckoutOrchestrator, gateway: AsyncMock
    ) -> None:
        with pytest.raises(NotFound):
            await orchestrator.create_subscription_checkout("ghost", "SUB")
        gateway.create_mandate.assert_not_awaited()
