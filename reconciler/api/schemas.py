"""
Pydantic schemas for API request/response models.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field, field_validator


class CartItemRequest(BaseModel):
    """A product and quantity in a checkout cart."""

    product_id: Union[str, int] = Field(..., description="Catalog product identifier")
    quantity: int = Field(..., gt=0, description="Units to buy")

    @field_validator("product_id")
    @classmethod
    def normalize_product_id(cls, v: Union[str, int]) -> str:
        """Catalog ids are compared as strings."""
        return str(v)


class CheckoutRequest(BaseModel):
    """Request schema for a one-off checkout."""

    buyer: Optional[str] = Field(default=None, description="User id; anonymous if omitted")
    items: List[CartItemRequest] = Field(..., description="Cart contents")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "buyer": "123e4567-e89b-12d3-a456-426614174000",
                    "items": [{"product_id": "P1", "quantity": 2}],
                }
            ]
        }
    }


class CheckoutResponse(BaseModel):
    """Response schema for a created checkout."""

    order_id: str = Field(..., description="Local order id")
    redirect_url: str = Field(..., description="Gateway page the buyer completes payment on")


class SubscriptionCheckoutRequest(BaseModel):
    """Request schema for a subscription checkout."""

    subscriber_id: str = Field(..., description="Subscriber (user) id")
    product_id: Union[str, int] = Field(..., description="Subscription product id")

    @field_validator("product_id")
    @classmethod
    def normalize_product_id(cls, v: Union[str, int]) -> str:
        """Catalog ids are compared as strings."""
        return str(v)


class SubscriptionCheckoutResponse(BaseModel):
    """Response schema for a subscription checkout."""

    redirect_url: str = Field(..., description="Gateway page the payer authorizes the mandate on")


class OrderStatusResponse(BaseModel):
    """Response schema for order status."""

    order_id: str = Field(..., description="Order id")
    status: str = Field(..., description="Order status")
    total_amount: Decimal = Field(..., description="Order total")


class SubscriptionResponse(BaseModel):
    """Response schema for subscription state."""

    subscriber_id: str = Field(..., description="Subscriber id")
    is_premium: bool = Field(..., description="Whether the subscription is active")
    mandate_ref: Optional[str] = Field(default=None, description="Gateway mandate id")
    activated_at: Optional[datetime] = Field(default=None, description="Activation timestamp")
    cancelled_at: Optional[datetime] = Field(default=None, description="Cancellation timestamp")


class WebhookAck(BaseModel):
    """Acknowledgement returned to the gateway."""

    received: bool = Field(default=True, description="Delivery accepted")


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")
