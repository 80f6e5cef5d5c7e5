"""
Error taxonomy for checkout and webhook reconciliation.

Each concrete error belongs to one family; the HTTP layer maps families to
status codes and the webhook dispatcher decides which ones are acknowledged.
"""
from typing import Optional


class ReconciliationError(Exception):
    """Base exception for all reconciliation errors."""

    pass


class ValidationError(ReconciliationError):
    """Raised when input has the wrong shape or violates a business rule."""

    pass


class EmptyCart(ValidationError):
    """Raised when an order is requested without line items."""

    def __init__(self) -> None:
        super().__init__("Cart must contain at least one item")


class InvalidItem(ValidationError):
    """Raised when a line item references a missing product or a bad quantity."""

    def __init__(self, product_id: str, reason: str = "product does not exist"):
        super().__init__(f"Invalid item {product_id}: {reason}")
        self.product_id = product_id


class NotASubscriptionProduct(ValidationError):
    """Raised when a subscription checkout targets a one-off product."""

    def __init__(self, product_id: str):
        super().__init__(f"Product {product_id} is not a subscription product")
        self.product_id = product_id


class NotFound(ReconciliationError):
    """Raised when an order, product, subscriber or gateway record is unknown."""

    pass


class UnknownProduct(NotFound):
    """Raised when a cart references a product missing from the catalog."""

    def __init__(self, product_id: str):
        super().__init__(f"Product {product_id} does not exist")
        self.product_id = product_id


class AuthenticationError(ReconciliationError):
    """Raised when a webhook signature is missing or invalid in production."""

    pass


class ConflictError(ReconciliationError):
    """Raised when a write would contradict already recorded state."""

    pass


class AlreadyLinked(ConflictError):
    """Raised when an order already carries a different checkout reference."""

    def __init__(self, order_id: str, existing_ref: str, new_ref: str):
        super().__init__(
            f"Order {order_id} is already linked to checkout {existing_ref}, not {new_ref}"
        )
        self.order_id = order_id
        self.existing_ref = existing_ref
        self.new_ref = new_ref


class MandateConflict(ConflictError):
    """Raised when an active subscription is activated with another mandate."""

    def __init__(self, subscriber_id: str, existing_ref: str, new_ref: str):
        super().__init__(
            f"Subscriber {subscriber_id} is active with mandate {existing_ref}, not {new_ref}"
        )
        self.subscriber_id = subscriber_id
        self.existing_ref = existing_ref
        self.new_ref = new_ref


class UpstreamError(ReconciliationError):
    """Raised when the gateway or catalog is unreachable or returns malformed data."""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        super().__init__(message)
        self.original_error = original_error


class GatewayNotConfigured(UpstreamError):
    """Raised at an entry point when no gateway credentials are configured."""

    def __init__(self) -> None:
        super().__init__("Payment gateway is not configured")


class ConcurrentModification(ReconciliationError):
    """Raised when an optimistic update loses a race twice in a row."""

    def __init__(self, entity: str, entity_id: str):
        super().__init__(f"Concurrent modification of {entity} {entity_id}")
        self.entity = entity
        self.entity_id = entity_id


class StaleVersion(Exception):
    """Raised by a store when a compare-and-set finds a newer row version."""

    pass
