"""Domain records exchanged between the ledgers, stores and gateway."""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

ANONYMOUS_BUYER = "anonymous"


class OrderStatus:
    """Order statuses the ledger knows about; gateway statuses outside this set are mirrored."""

    PENDING = "pending"
    APPROVED = "approved"
    FAILED = "failed"
    REFUNDED = "refunded"


class MandateStatus:
    """Gateway mandate statuses the dispatcher acts on."""

    AUTHORIZED = "authorized"


@dataclass(frozen=True)
class Product:
    """Catalog entry as seen by checkout."""

    id: str
    name: str
    price: Decimal
    is_subscription: bool = False


@dataclass(frozen=True)
class CartItem:
    """A requested product and quantity, before prices are resolved."""

    product_id: str
    quantity: int


@dataclass(frozen=True)
class LineItem:
    """An order line with the unit price frozen at creation time."""

    product_id: str
    name: str
    quantity: int
    unit_price: Decimal

    @property
    def subtotal(self) -> Decimal:
        return self.unit_price * self.quantity


@dataclass
class Order:
    """Order aggregate. Only status and payment_ref change once checkout is linked."""

    id: str
    buyer: str
    items: List[LineItem]
    total: Decimal
    status: str = OrderStatus.PENDING
    checkout_ref: Optional[str] = None
    payment_ref: Optional[str] = None
    version: int = 1
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class Subscriber:
    """Subscriber with its embedded subscription record."""

    id: str
    email: str
    is_premium: bool = False
    mandate_ref: Optional[str] = None
    activated_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    version: int = 1


@dataclass(frozen=True)
class CheckoutSession:
    """Gateway response when opening a checkout session or a mandate."""

    redirect_url: str
    session_ref: str


@dataclass(frozen=True)
class GatewayPayment:
    """Authoritative payment record fetched from the gateway."""

    id: str
    status: str
    amount: Optional[Decimal] = None
    payer_email: Optional[str] = None
    external_reference: Optional[str] = None
    session_ref: Optional[str] = None


@dataclass(frozen=True)
class GatewayMandate:
    """Authoritative mandate (preapproval) record fetched from the gateway."""

    id: str
    status: str
    payer_email: Optional[str] = None
    external_reference: Optional[str] = None


@dataclass(frozen=True)
class CheckoutResult:
    order_id: str
    redirect_url: str


@dataclass(frozen=True)
class SubscriptionCheckoutResult:
    redirect_url: str


@dataclass
class WebhookEvent:
    """A classified inbound notification. Consumed once per dispatch."""

    kind: Optional[str]
    resource_id: Optional[str]
    raw_type: Optional[str] = None
