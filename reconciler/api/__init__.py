"""FastAPI application and routes."""
from .main import app
from .schemas import (
    CheckoutRequest,
    CheckoutResponse,
    OrderStatusResponse,
    SubscriptionCheckoutRequest,
    SubscriptionCheckoutResponse,
)

__all__ = [
    "app",
    "CheckoutRequest",
    "CheckoutResponse",
    "OrderStatusResponse",
    "SubscriptionCheckoutRequest",
    "SubscriptionCheckoutResponse",
]
