"""Core reconciliation logic."""
from .checkout import CheckoutOrchestrator
from .order_ledger import OrderLedger
from .signature import SignatureVerifier
from .subscription_ledger import SubscriptionLedger
from .webhook_dispatcher import WebhookDispatcher

__all__ = [
    "CheckoutOrchestrator",
    "OrderLedger",
    "SignatureVerifier",
    "SubscriptionLedger",
    "WebhookDispatcher",
]
