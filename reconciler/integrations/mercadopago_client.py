"""
MercadoPago REST client implementing the payment gateway interface.

Implements:
- Checkout preferences (one-off payments) and preapprovals (mandates)
- Authoritative payment and preapproval lookups for webhook processing
- Circuit breaker around outbound calls
- Error classification into NotFound / UpstreamError

Every call is a single attempt bounded by the configured timeout; retrying is
left to the caller or, for webhooks, to the gateway's own redelivery.
"""
import time
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Callable, Dict, List, Optional
from urllib.parse import quote

import httpx
import structlog

from reconciler.config import Settings
from reconciler.core.errors import GatewayNotConfigured, NotFound, UpstreamError
from reconciler.core.models import CheckoutSession, GatewayMandate, GatewayPayment, LineItem
from reconciler.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class CircuitBreaker:
    """
    Circuit breaker for gateway API calls.

    Prevents cascading failures by temporarily stopping requests
    when error rate exceeds threshold.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    async def call(self, func: Callable[[], Awaitable[Any]]) -> Any:
        """
        Execute coroutine function with circuit breaker protection.

        Raises:
            UpstreamError: If circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.time() - self.last_failure_time > self.timeout
            ):
                self._set_state("half_open")
                self.success_count = 0
                logger.info("circuit_breaker_half_open")
            else:
                raise UpstreamError("Gateway circuit breaker is open")

        try:
            result = await func()
        except Exception:
            self.on_failure()
            raise
        self.on_success()
        return result

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.failure_count >= self.failure_threshold or self.state == "half_open":
            self._set_state("open")
            logger.warning(
                "circuit_breaker_opened",
                failure_count=self.failure_count,
            )

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(state)


def _decimal(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


def _optional_str(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


class MercadoPagoGateway:
    """
    Async MercadoPago client.

    Features:
    - Bearer-token authenticated JSON calls with a per-call timeout
    - Correlation token sent as ``external_reference``
    - Circuit breaker
    - Comprehensive error classification
    """

    def __init__(
        self,
        access_token: str,
        base_url: str = "https://api.mercadopago.com",
        timeout_seconds: float = 10.0,
        currency: str = "ARS",
        notification_url: Optional[str] = None,
        back_urls: Optional[Dict[str, str]] = None,
        subscription_back_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.currency = currency
        self.notification_url = notification_url
        self.back_urls = back_urls or {}
        self.subscription_back_url = subscription_back_url
        self.circuit_breaker = CircuitBreaker()
        self.client = httpx.AsyncClient(
            base_url=base_url,
            headers={
                "Authorization": f"Bearer {access_token}",
                "Content-Type": "application/json",
            },
            timeout=timeout_seconds,
            transport=transport,
        )

        logger.info("mercadopago_client_initialized", base_url=base_url)

    @classmethod
    def from_settings(cls, settings: Settings) -> "MercadoPagoGateway":
        """Build a client from settings, failing if no access token is configured."""
        if not settings.gateway_access_token:
            raise GatewayNotConfigured()
        return cls(
            access_token=settings.gateway_access_token,
            base_url=settings.gateway_base_url,
            timeout_seconds=settings.gateway_timeout_seconds,
            currency=settings.gateway_currency,
            notification_url=settings.notification_url,
            back_urls={
                "success": settings.checkout_success_url,
                "failure": settings.checkout_failure_url,
                "pending": settings.checkout_pending_url,
            },
            subscription_back_url=settings.subscription_back_url,
        )

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """
        Perform one gateway call and return the decoded JSON object.

        Raises:
            NotFound: If the gateway answers 404
            UpstreamError: On timeout, transport failure, error status or a
                body that is not a JSON object
        """
        start_time = time.time()

        async def _send() -> httpx.Response:
            response = await self.client.request(method, path, json=json, headers=headers)
            if response.status_code >= 500:
                raise UpstreamError(f"Gateway {operation} failed with HTTP {response.status_code}")
            return response

        try:
            response = await self.circuit_breaker.call(_send)
        except httpx.TimeoutException as e:
            metrics.record_gateway_call(operation, "timeout", time.time() - start_time)
            logger.error("gateway_api_timeout", operation=operation, path=path)
            raise UpstreamError(f"Gateway {operation} timed out", original_error=e)
        except httpx.HTTPError as e:
            metrics.record_gateway_call(operation, "transport_error", time.time() - start_time)
            logger.error("gateway_api_transport_error", operation=operation, error=str(e))
            raise UpstreamError(f"Gateway {operation} failed: {e}", original_error=e)
        except UpstreamError as e:
            metrics.record_gateway_call(operation, "server_error", time.time() - start_time)
            logger.error("gateway_api_error", operation=operation, error=str(e))
            raise

        duration = time.time() - start_time
        if response.status_code == 404:
            metrics.record_gateway_call(operation, "not_found", duration)
            raise NotFound(f"Gateway resource not found: {path}")
        if response.status_code >= 400:
            metrics.record_gateway_call(operation, "client_error", duration)
            logger.error(
                "gateway_api_rejected",
                operation=operation,
                status_code=response.status_code,
                body=response.text[:500],
            )
            raise UpstreamError(f"Gateway {operation} rejected with HTTP {response.status_code}")

        try:
            payload = response.json()
        except ValueError as e:
            metrics.record_gateway_call(operation, "malformed", duration)
            raise UpstreamError(f"Gateway {operation} returned invalid JSON", original_error=e)
        if not isinstance(payload, dict):
            metrics.record_gateway_call(operation, "malformed", duration)
            raise UpstreamError(f"Gateway {operation} returned an unexpected payload")

        metrics.record_gateway_call(operation, "ok", duration)
        return payload

    @staticmethod
    def _session_from(payload: Dict[str, Any], operation: str) -> CheckoutSession:
        redirect_url = payload.get("init_point") or payload.get("sandbox_init_point")
        session_ref = _optional_str(payload.get("id"))
        if not redirect_url or not session_ref:
            raise UpstreamError(f"Gateway {operation} response lacks init_point or id")
        return CheckoutSession(redirect_url=redirect_url, session_ref=session_ref)

    async def create_checkout_session(
        self, items: List[LineItem], correlation_token: str
    ) -> CheckoutSession:
        """
        Create a checkout preference for an order.

        Args:
            items: Order lines with snapshotted prices
            correlation_token: Local order id, echoed back as external_reference

        Returns:
            CheckoutSession: Redirect URL and preference id
        """
        body: Dict[str, Any] = {
            "items": [
                {
                    "id": item.product_id,
                    "title": item.name,
                    "quantity": item.quantity,
                    # JSON number on the wire; local totals stay Decimal
                    "unit_price": float(item.unit_price),
                    "currency_id": self.currency,
                }
                for item in items
            ],
            "external_reference": correlation_token,
            "back_urls": self.back_urls,
            "auto_return": "approved",
        }
        if self.notification_url:
            body["notification_url"] = self.notification_url

        logger.info("creating_checkout_preference", correlation_token=correlation_token)
        payload = await self._request(
            "create_preference",
            "POST",
            "/checkout/preferences",
            json=body,
            headers={"X-Idempotency-Key": f"preference:{correlation_token}"},
        )
        session = self._session_from(payload, "create_preference")
        logger.info(
            "checkout_preference_created",
            correlation_token=correlation_token,
            preference_id=session.session_ref,
        )
        return session

    async def create_mandate(
        self, payer_email: str, amount: Decimal, correlation_token: str, reason: str
    ) -> CheckoutSession:
        """Create a monthly preapproval (recurring mandate) for a subscriber."""
        body: Dict[str, Any] = {
            "payer_email": payer_email,
            "reason": reason,
            "external_reference": correlation_token,
            "auto_recurring": {
                "frequency": 1,
                "frequency_type": "months",
                "transaction_amount": float(amount),
                "currency_id": self.currency,
            },
            "status": "pending",
        }
        if self.subscription_back_url:
            body["back_url"] = self.subscription_back_url

        logger.info("creating_preapproval", correlation_token=correlation_token)
        payload = await self._request("create_preapproval", "POST", "/preapproval", json=body)
        session = self._session_from(payload, "create_preapproval")
        logger.info(
            "preapproval_created",
            correlation_token=correlation_token,
            preapproval_id=session.session_ref,
        )
        return session

    async def get_payment(self, payment_id: str) -> GatewayPayment:
        """Fetch the authoritative payment record."""
        path = f"/v1/payments/{quote(str(payment_id), safe='')}"
        payload = await self._request("get_payment", "GET", path)
        status = _optional_str(payload.get("status"))
        if status is None:
            raise UpstreamError(f"Gateway payment {payment_id} has no status")
        payer = payload.get("payer") if isinstance(payload.get("payer"), dict) else {}
        return GatewayPayment(
            id=_optional_str(payload.get("id")) or str(payment_id),
            status=status,
            amount=_decimal(payload.get("transaction_amount")),
            payer_email=_optional_str(payer.get("email")),
            external_reference=_optional_str(payload.get("external_reference")),
            session_ref=_optional_str(payload.get("preference_id")),
        )

    async def get_mandate(self, mandate_id: str) -> GatewayMandate:
        """Fetch the authoritative preapproval record."""
        path = f"/preapproval/{quote(str(mandate_id), safe='')}"
        payload = await self._request("get_preapproval", "GET", path)
        status = _optional_str(payload.get("status"))
        if status is None:
            raise UpstreamError(f"Gateway preapproval {mandate_id} has no status")
        return GatewayMandate(
            id=_optional_str(payload.get("id")) or str(mandate_id),
            status=status,
            payer_email=_optional_str(payload.get("payer_email")),
            external_reference=_optional_str(payload.get("external_reference")),
        )

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self.client.aclose()
