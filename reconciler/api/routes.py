"""
API routes for checkout, gateway webhooks, orders and subscriptions.

Reconciliation errors propagate to the application's exception handler, which
maps them onto HTTP status codes.
"""
from typing import Any, Dict

import structlog
from fastapi import APIRouter, Depends, Request, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from reconciler.core.errors import ReconciliationError
from reconciler.core.models import CartItem
from reconciler.monitoring.metrics import metrics

from .dependencies import Container, get_container
from .schemas import (
    CheckoutRequest,
    CheckoutResponse,
    HealthCheckResponse,
    OrderStatusResponse,
    SubscriptionCheckoutRequest,
    SubscriptionCheckoutResponse,
    SubscriptionResponse,
    WebhookAck,
)

logger = structlog.get_logger(__name__)

checkout_router = APIRouter(prefix="/checkout", tags=["checkout"])
webhook_router = APIRouter(prefix="/webhook", tags=["webhooks"])
order_router = APIRouter(prefix="/orders", tags=["orders"])
subscription_router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])
monitoring_router = APIRouter(tags=["monitoring"])


@checkout_router.post(
    "",
    response_model=CheckoutResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a checkout",
    description="Open a pending order and return the gateway redirect URL",
)
async def create_checkout(
    request: CheckoutRequest,
    container: Container = Depends(get_container),
) -> CheckoutResponse:
    cart = [CartItem(product_id=item.product_id, quantity=item.quantity) for item in request.items]
    try:
        result = await container.checkout.create_checkout(request.buyer, cart)
    except ReconciliationError as e:
        metrics.record_checkout("order", type(e).__name__)
        raise

    metrics.record_checkout("order", "created")
    return CheckoutResponse(order_id=result.order_id, redirect_url=result.redirect_url)


@checkout_router.post(
    "/subscription",
    response_model=SubscriptionCheckoutResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a subscription checkout",
    description="Open a recurring mandate for a subscription product",
)
async def create_subscription_checkout(
    request: SubscriptionCheckoutRequest,
    container: Container = Depends(get_container),
) -> SubscriptionCheckoutResponse:
    try:
        result = await container.checkout.create_subscription_checkout(
            request.subscriber_id, request.product_id
        )
    except ReconciliationError as e:
        metrics.record_checkout("subscription", type(e).__name__)
        raise

    metrics.record_checkout("subscription", "created")
    return SubscriptionCheckoutResponse(redirect_url=result.redirect_url)


@webhook_router.post(
    "",
    response_model=WebhookAck,
    summary="Gateway webhook endpoint",
    description="Receive payment and preapproval notifications from the gateway",
)
async def gateway_webhook(
    request: Request,
    container: Container = Depends(get_container),
) -> Dict[str, Any]:
    """
    Handle gateway notifications.

    The body is read as raw bytes and never parsed by FastAPI, so the
    signature is checked over exactly what the gateway signed.
    """
    body = await request.body()
    return await container.webhooks.handle(request.headers, request.query_params, body)


@order_router.get(
    "/{order_id}/status",
    response_model=OrderStatusResponse,
    summary="Get order status",
)
async def get_order_status(
    order_id: str,
    container: Container = Depends(get_container),
) -> OrderStatusResponse:
    order = await container.order_ledger.get(order_id)
    return OrderStatusResponse(order_id=order.id, status=order.status, total_amount=order.total)


@subscription_router.post(
    "/{subscriber_id}/cancel",
    response_model=SubscriptionResponse,
    summary="Cancel a subscription",
)
async def cancel_subscription(
    subscriber_id: str,
    container: Container = Depends(get_container),
) -> SubscriptionResponse:
    subscriber = await container.subscription_ledger.cancel(subscriber_id)
    return SubscriptionResponse(
        subscriber_id=subscriber.id,
        is_premium=subscriber.is_premium,
        mandate_ref=subscriber.mandate_ref,
        activated_at=subscriber.activated_at,
        cancelled_at=subscriber.cancelled_at,
    )


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Database connectivity and gateway configuration",
)
async def health(container: Container = Depends(get_container)) -> Dict[str, Any]:
    return await container.health.check_all()


@monitoring_router.get("/health/live", response_model=HealthCheckResponse, summary="Liveness probe")
async def liveness(container: Container = Depends(get_container)) -> Dict[str, Any]:
    return await container.health.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
    responses={503: {"model": HealthCheckResponse}},
)
async def readiness(container: Container = Depends(get_container)) -> Any:
    result = await container.health.readiness()
    if result["status"] != "healthy":
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=result)
    return result


@monitoring_router.get("/metrics", summary="Prometheus metrics", include_in_schema=False)
async def prometheus_metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
