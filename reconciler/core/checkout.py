"""
Synchronous checkout path.

Flow:
1. Resolve cart items against the catalog
2. Open a pending order (prices snapshotted)
3. Open a gateway checkout session carrying the order id as external reference
4. Link the gateway session reference to the order
5. Return the redirect URL without waiting for the buyer
"""
from typing import Optional, Sequence

import structlog

from reconciler.core.errors import NotASubscriptionProduct, UnknownProduct
from reconciler.core.models import (
    CartItem,
    CheckoutResult,
    Product,
    SubscriptionCheckoutResult,
)
from reconciler.core.order_ledger import OrderLedger
from reconciler.core.ports import Catalog
from reconciler.core.subscription_ledger import SubscriptionLedger
from reconciler.integrations.gateway import GatewayHolder

logger = structlog.get_logger(__name__)


class CheckoutOrchestrator:
    """Turns a cart or a subscription request into a gateway redirect."""

    def __init__(
        self,
        catalog: Catalog,
        order_ledger: OrderLedger,
        subscription_ledger: SubscriptionLedger,
        gateway: GatewayHolder,
    ):
        self.catalog = catalog
        self.order_ledger = order_ledger
        self.subscription_ledger = subscription_ledger
        self.gateway = gateway

    async def _resolve(self, product_id: str) -> Product:
        product = await self.catalog.get_product(product_id)
        if product is None:
            raise UnknownProduct(product_id)
        return product

    async def create_checkout(
        self, buyer: Optional[str], cart_items: Sequence[CartItem]
    ) -> CheckoutResult:
        """
        Create an order and the gateway session the buyer pays in.

        Args:
            buyer: User id, or None for anonymous
            cart_items: Requested products and quantities

        Returns:
            CheckoutResult: Order id and gateway redirect URL

        Raises:
            GatewayNotConfigured: If no gateway credentials are configured
            UnknownProduct: If a cart item references a missing product
            EmptyCart, InvalidItem: Propagated from the order ledger
            UpstreamError: If the gateway call fails
        """
        gateway = self.gateway.ensure_configured()

        for item in cart_items:
            await self._resolve(item.product_id)

        order = await self.order_ledger.create(buyer, cart_items)
        session = await gateway.create_checkout_session(order.items, correlation_token=order.id)
        await self.order_ledger.attach_checkout_reference(order.id, session.session_ref)

        logger.info(
            "checkout_created",
            order_id=order.id,
            checkout_ref=session.session_ref,
            total=str(order.total),
        )
        return CheckoutResult(order_id=order.id, redirect_url=session.redirect_url)

    async def create_subscription_checkout(
        self, subscriber_id: str, product_id: str
    ) -> SubscriptionCheckoutResult:
        """
        Open a recurring mandate for a subscription product.

        No order row is created; the mandate is tracked by the subscription
        ledger once the gateway reports it authorized.
        """
        gateway = self.gateway.ensure_configured()

        product = await self._resolve(product_id)
        if not product.is_subscription:
            raise NotASubscriptionProduct(product_id)
        subscriber = await self.subscription_ledger.get(subscriber_id)

        session = await gateway.create_mandate(
            payer_email=subscriber.email,
            amount=product.price,
            correlation_token=subscriber.id,
            reason=product.name,
        )

        logger.info(
            "subscription_checkout_created",
            subscriber_id=subscriber.id,
            product_id=product.id,
            mandate_ref=session.session_ref,
        )
        return SubscriptionCheckoutResult(redirect_url=session.redirect_url)
