"""
Collaborator interfaces consumed by the ledgers and orchestrators.

Concrete implementations live in ``reconciler.database.stores`` and
``reconciler.integrations.mercadopago_client``.
"""
from decimal import Decimal
from typing import List, Optional, Protocol

from reconciler.core.models import (
    CheckoutSession,
    GatewayMandate,
    GatewayPayment,
    LineItem,
    Order,
    Product,
    Subscriber,
)


class Catalog(Protocol):
    async def get_product(self, product_id: str) -> Optional[Product]:
        ...


class OrderStore(Protocol):
    async def add(self, order: Order) -> Order:
        ...

    async def get(self, order_id: str) -> Optional[Order]:
        ...

    async def find_by_checkout_ref(self, checkout_ref: str) -> Optional[Order]:
        ...

    async def compare_and_set(
        self,
        order_id: str,
        expected_version: int,
        *,
        status: Optional[str] = None,
        payment_ref: Optional[str] = None,
        checkout_ref: Optional[str] = None,
    ) -> Order:
        """Write the given fields if the row is still at ``expected_version``.

        Raises StaleVersion otherwise. A ``checkout_ref`` already used by
        another order raises AlreadyLinked.
        """
        ...


class SubscriberStore(Protocol):
    async def get(self, subscriber_id: str) -> Optional[Subscriber]:
        ...

    async def find_by_email(self, email: str) -> Optional[Subscriber]:
        ...

    async def compare_and_set(self, subscriber: Subscriber, expected_version: int) -> Subscriber:
        """Persist the subscription fields of ``subscriber``; raises StaleVersion."""
        ...


class PaymentGateway(Protocol):
    async def create_checkout_session(
        self, items: List[LineItem], correlation_token: str
    ) -> CheckoutSession:
        ...

    async def create_mandate(
        self, payer_email: str, amount: Decimal, correlation_token: str, reason: str
    ) -> CheckoutSession:
        ...

    async def get_payment(self, payment_id: str) -> GatewayPayment:
        ...

    async def get_mandate(self, mandate_id: str) -> GatewayMandate:
        ...
