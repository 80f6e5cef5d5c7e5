"""
Order ledger: owns order lifecycle state and idempotent transitions.

Transitions:
- pending -> approved when the gateway reports an approved payment
- pending/approved -> any other gateway status, mirrored verbatim
- any -> refunded (refunded is terminal)
- approved never moves back to pending

Every write is a compare-and-set on the order's version, so a stale read never
overwrites a newer status. A lost race is retried once against a fresh read;
a second loss surfaces as ConcurrentModification.
"""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Sequence

import structlog

from reconciler.core.errors import (
    AlreadyLinked,
    ConcurrentModification,
    EmptyCart,
    InvalidItem,
    NotFound,
    StaleVersion,
    ValidationError,
)
from reconciler.core.models import ANONYMOUS_BUYER, CartItem, LineItem, Order, OrderStatus
from reconciler.core.ports import Catalog, OrderStore
from reconciler.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

MAX_WRITE_ATTEMPTS = 2
CENTS = Decimal("0.01")


class OrderLedger:
    """Creates orders and applies gateway-reported status changes exactly once."""

    def __init__(self, store: OrderStore, catalog: Catalog):
        self.store = store
        self.catalog = catalog

    async def create(self, buyer: Optional[str], items: Sequence[CartItem]) -> Order:
        """
        Open a pending order with prices snapshotted from the catalog.

        Args:
            buyer: User id, or None for an anonymous checkout
            items: Requested products and quantities

        Returns:
            Order: The persisted order

        Raises:
            EmptyCart: If no items were given
            InvalidItem: If a product is unknown or a quantity is not positive
        """
        if not items:
            raise EmptyCart()

        line_items = []
        for item in items:
            if not isinstance(item.quantity, int) or item.quantity <= 0:
                raise InvalidItem(item.product_id, "quantity must be a positive integer")
            product = await self.catalog.get_product(item.product_id)
            if product is None:
                raise InvalidItem(item.product_id)
            line_items.append(
                LineItem(
                    product_id=product.id,
                    name=product.name,
                    quantity=item.quantity,
                    unit_price=product.price,
                )
            )

        total = sum((line.subtotal for line in line_items), Decimal("0")).quantize(CENTS)
        now = datetime.now(timezone.utc)
        order = Order(
            id=str(uuid.uuid4()),
            buyer=buyer or ANONYMOUS_BUYER,
            items=line_items,
            total=total,
            status=OrderStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
        order = await self.store.add(order)

        logger.info(
            "order_created",
            order_id=order.id,
            buyer=order.buyer,
            total=str(order.total),
            item_count=len(line_items),
        )
        return order

    async def get(self, order_id: str) -> Order:
        order = await self.store.get(order_id)
        if order is None:
            raise NotFound(f"Order {order_id} not found")
        return order

    async def find_by_checkout_reference(self, checkout_ref: str) -> Optional[Order]:
        """Correlation lookup for webhook processing. Absence is a valid outcome."""
        return await self.store.find_by_checkout_ref(checkout_ref)

    async def attach_checkout_reference(self, order_id: str, checkout_ref: str) -> Order:
        """
        Link an order to its gateway checkout session, once.

        Re-attaching the same reference is a no-op.

        Raises:
            AlreadyLinked: If the order is linked to a different reference
        """

        def _link(order: Order) -> Optional[Dict[str, Any]]:
            if order.checkout_ref == checkout_ref:
                return None
            if order.checkout_ref is not None:
                raise AlreadyLinked(order.id, order.checkout_ref, checkout_ref)
            return {"checkout_ref": checkout_ref}

        order = await self._update(order_id, _link)
        logger.info("order_checkout_linked", order_id=order_id, checkout_ref=checkout_ref)
        return order

    async def apply_payment_status(
        self, order_id: str, gateway_status: str, payment_ref: Optional[str]
    ) -> Order:
        """
        Mirror a gateway payment status onto the order.

        Idempotent: if the order already has ``gateway_status`` the unchanged
        order is returned. Status and payment reference are written together.
        """
        if not gateway_status:
            raise ValidationError("Gateway status is required")

        def _transition(order: Order) -> Optional[Dict[str, Any]]:
            if order.status == gateway_status:
                return None
            if order.status == OrderStatus.REFUNDED:
                logger.warning(
                    "order_transition_ignored",
                    order_id=order.id,
                    current_status=order.status,
                    gateway_status=gateway_status,
                    reason="refunded_is_terminal",
                )
                return None
            if order.status == OrderStatus.APPROVED and gateway_status == OrderStatus.PENDING:
                logger.warning(
                    "order_transition_ignored",
                    order_id=order.id,
                    current_status=order.status,
                    gateway_status=gateway_status,
                    reason="approved_never_returns_to_pending",
                )
                return None
            return {"status": gateway_status, "payment_ref": payment_ref or order.payment_ref}

        return await self._update(order_id, _transition)

    async def mark_refunded(self, order_id: str, payment_ref: Optional[str] = None) -> Order:
        """Move an order to refunded from any status."""

        def _refund(order: Order) -> Optional[Dict[str, Any]]:
            if order.status == OrderStatus.REFUNDED:
                return None
            return {"status": OrderStatus.REFUNDED, "payment_ref": payment_ref or order.payment_ref}

        return await self._update(order_id, _refund)

    async def _update(
        self, order_id: str, decide: Callable[[Order], Optional[Dict[str, Any]]]
    ) -> Order:
        """Read, decide and compare-and-set, retrying once on a stale version."""
        for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
            order = await self.get(order_id)
            changes = decide(order)
            if changes is None:
                return order
            try:
                updated = await self.store.compare_and_set(order_id, order.version, **changes)
            except StaleVersion:
                if attempt < MAX_WRITE_ATTEMPTS:
                    metrics.record_concurrent_modification("order", "retried")
                    logger.info("order_update_retrying", order_id=order_id, version=order.version)
                    continue
                break

            if "status" in changes and updated.status != order.status:
                metrics.record_order_transition(order.status, updated.status)
                logger.info(
                    "order_status_applied",
                    order_id=order_id,
                    from_status=order.status,
                    to_status=updated.status,
                    payment_ref=updated.payment_ref,
                )
            return updated

        metrics.record_concurrent_modification("order", "failed")
        logger.warning("order_update_conflict", order_id=order_id)
        raise ConcurrentModification("order", order_id)
