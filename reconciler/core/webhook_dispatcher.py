"""
Gateway webhook dispatcher.

Implements:
- Signature policy (reject in production, warn-and-accept elsewhere)
- Event classification from the signed JSON body, or the query string when bodiless
- Authoritative re-fetch of the payment or mandate from the gateway
- Correlation to local orders/subscribers and idempotent ledger updates

The notification itself is only a "go look" signal: amounts, statuses and
payers embedded in it are never used. Every outcome other than a rejected
signature in production is acknowledged, since the gateway redelivers on
non-2xx and an unmatched or failed event would otherwise be retried forever.
"""
import json
import re
import time
from typing import Any, Dict, Mapping, Optional, Tuple

import structlog

from reconciler.core.errors import AuthenticationError, NotFound, ReconciliationError
from reconciler.core.models import (
    GatewayMandate,
    GatewayPayment,
    MandateStatus,
    Order,
    Subscriber,
    WebhookEvent,
)
from reconciler.core.order_ledger import OrderLedger
from reconciler.core.signature import SignatureVerifier
from reconciler.core.subscription_ledger import SubscriptionLedger
from reconciler.integrations.gateway import GatewayHolder
from reconciler.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

PAYMENT_EVENT = "payment"
MANDATE_EVENT = "mandate"

_PAYMENT_TYPES = frozenset({"payment"})
_MANDATE_TYPES = frozenset({"preapproval", "subscription_preapproval"})

SIGNATURE_HEADER = "x-signature"
REQUEST_ID_HEADER = "x-request-id"

# Gateway ids are numeric or short alphanumeric tokens
RESOURCE_ID_PATTERN = re.compile(r"[A-Za-z0-9_-]{1,64}")

ACKNOWLEDGEMENT: Dict[str, Any] = {"received": True}


def _parse_body(raw_body: bytes) -> Dict[str, Any]:
    if not raw_body:
        return {}
    try:
        body = json.loads(raw_body)
    except (UnicodeDecodeError, ValueError):
        logger.warning("webhook_body_not_json", size=len(raw_body))
        return {}
    return body if isinstance(body, dict) else {}


def _as_str(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def _descriptor(event_type: Any, resource_id: Any) -> Tuple[Optional[str], Optional[str]]:
    return _as_str(event_type), _as_str(resource_id)


def classify_event(query_params: Mapping[str, str], raw_body: bytes) -> WebhookEvent:
    """
    Work out the event kind and gateway resource id.

    The body descriptor (``{"type": "payment", "data": {"id": "123"}}``) is
    covered by the signature and is used whenever the body carries one.
    Query-string descriptors (``?type=payment&data.id=123`` or
    ``?topic=payment&id=123``) are only read for bodiless notifications.
    Type and id always come from the same source.

    A resource id that is not a single plain token is dropped, leaving an
    event that is acknowledged without any gateway fetch.
    """
    body = _parse_body(raw_body)
    data = body.get("data") if isinstance(body.get("data"), dict) else {}

    raw_type, resource_id = _descriptor(body.get("type") or body.get("topic"), data.get("id"))
    if raw_type is None and resource_id is None:
        raw_type, resource_id = _descriptor(
            query_params.get("type") or query_params.get("topic"),
            query_params.get("data.id") or query_params.get("id"),
        )

    if resource_id is not None and not RESOURCE_ID_PATTERN.fullmatch(resource_id):
        logger.warning("webhook_resource_id_rejected", event_type=raw_type, size=len(resource_id))
        resource_id = None

    kind = None
    if raw_type in _PAYMENT_TYPES:
        kind = PAYMENT_EVENT
    elif raw_type in _MANDATE_TYPES:
        kind = MANDATE_EVENT
    return WebhookEvent(kind=kind, resource_id=resource_id, raw_type=raw_type)


class WebhookDispatcher:
    """Single entry point for asynchronous gateway notifications."""

    def __init__(
        self,
        verifier: SignatureVerifier,
        order_ledger: OrderLedger,
        subscription_ledger: SubscriptionLedger,
        gateway: GatewayHolder,
        webhook_secret: Optional[str],
        enforce_signatures: bool,
    ):
        """
        Initialize webhook dispatcher.

        Args:
            verifier: Signature verifier
            order_ledger: Ledger for payment events
            subscription_ledger: Ledger for mandate events
            gateway: Holder for the gateway client used for status fetches
            webhook_secret: Shared HMAC secret
            enforce_signatures: Reject unverified deliveries (production)
        """
        self.verifier = verifier
        self.order_ledger = order_ledger
        self.subscription_ledger = subscription_ledger
        self.gateway = gateway
        self.webhook_secret = webhook_secret
        self.enforce_signatures = enforce_signatures

    async def handle(
        self, headers: Mapping[str, str], query_params: Mapping[str, str], raw_body: bytes
    ) -> Dict[str, Any]:
        """
        Authenticate, classify and apply one notification.

        Returns:
            Dict[str, Any]: ``{"received": True}``

        Raises:
            AuthenticationError: Only when signatures are enforced and the
            delivery is unsigned or wrongly signed
        """
        start_time = time.time()
        try:
            self._authenticate(headers, raw_body)
        except AuthenticationError:
            metrics.record_webhook_event("unknown", "rejected", time.time() - start_time)
            raise

        event = classify_event(query_params, raw_body)
        kind = event.kind or "unknown"
        log = logger.bind(event_type=event.raw_type, resource_id=event.resource_id)

        try:
            if event.kind == PAYMENT_EVENT:
                outcome = await self._handle_payment(event)
            elif event.kind == MANDATE_EVENT:
                outcome = await self._handle_mandate(event)
            else:
                log.info("webhook_event_ignored")
                outcome = "ignored"
        except ReconciliationError as e:
            log.warning("webhook_event_failed", error=str(e), error_type=type(e).__name__)
            outcome = "failed"
        except Exception as e:
            log.error("webhook_event_unexpected_error", error=str(e), exc_info=True)
            outcome = "failed"

        metrics.record_webhook_event(kind, outcome, time.time() - start_time)
        log.info("webhook_event_acknowledged", kind=kind, outcome=outcome)
        return dict(ACKNOWLEDGEMENT)

    def _authenticate(self, headers: Mapping[str, str], raw_body: bytes) -> None:
        lowered = {key.lower(): value for key, value in headers.items()}
        signature = lowered.get(SIGNATURE_HEADER)
        request_id = lowered.get(REQUEST_ID_HEADER)

        if not signature or not request_id:
            self._signature_failure("missing", request_id)
        elif not self.verifier.verify(request_id, signature, raw_body, self.webhook_secret):
            self._signature_failure("invalid", request_id)

    def _signature_failure(self, reason: str, request_id: Optional[str]) -> None:
        if self.enforce_signatures:
            metrics.record_signature_failure("rejected")
            logger.warning("webhook_signature_rejected", reason=reason, request_id=request_id)
            raise AuthenticationError(f"Webhook signature {reason}")

        # Relaxed development mode; not a production security model.
        metrics.record_signature_failure("accepted")
        logger.warning(
            "webhook_signature_unverified_accepted", reason=reason, request_id=request_id
        )

    async def _handle_payment(self, event: WebhookEvent) -> str:
        if not event.resource_id:
            logger.warning("webhook_payment_missing_id")
            return "ignored"

        gateway = self.gateway.ensure_configured()
        payment = await gateway.get_payment(event.resource_id)

        order = await self._correlate_order(payment)
        if order is None:
            logger.info(
                "webhook_payment_unmatched",
                payment_id=payment.id,
                external_reference=payment.external_reference,
                session_ref=payment.session_ref,
            )
            return "unmatched"

        updated = await self.order_ledger.apply_payment_status(order.id, payment.status, payment.id)
        return "applied" if updated.version != order.version else "unchanged"

    async def _correlate_order(self, payment: GatewayPayment) -> Optional[Order]:
        """
        Find the local order a payment belongs to.

        The external reference (our order id) is canonical. The gateway
        session reference is only used when no external reference was echoed
        back; if both are present they must agree.
        """
        if payment.external_reference:
            try:
                order = await self.order_ledger.get(payment.external_reference)
            except NotFound:
                return None
            if (
                payment.session_ref
                and order.checkout_ref
                and order.checkout_ref != payment.session_ref
            ):
                logger.warning(
                    "webhook_payment_correlation_mismatch",
                    payment_id=payment.id,
                    order_id=order.id,
                    order_checkout_ref=order.checkout_ref,
                    session_ref=payment.session_ref,
                )
                return None
            return order

        if payment.session_ref:
            return await self.order_ledger.find_by_checkout_reference(payment.session_ref)
        return None

    async def _handle_mandate(self, event: WebhookEvent) -> str:
        if not event.resource_id:
            logger.warning("webhook_mandate_missing_id")
            return "ignored"

        gateway = self.gateway.ensure_configured()
        mandate = await gateway.get_mandate(event.resource_id)

        if mandate.status != MandateStatus.AUTHORIZED:
            logger.info("webhook_mandate_not_applied", mandate_id=mandate.id, status=mandate.status)
            return "ignored"

        subscriber = await self._resolve_subscriber(mandate)
        if subscriber is None:
            logger.info(
                "webhook_mandate_unmatched",
                mandate_id=mandate.id,
                external_reference=mandate.external_reference,
            )
            return "unmatched"

        updated = await self.subscription_ledger.activate(subscriber.id, mandate.id)
        return "applied" if updated.version != subscriber.version else "unchanged"

    async def _resolve_subscriber(self, mandate: GatewayMandate) -> Optional[Subscriber]:
        if mandate.external_reference:
            subscriber = await self.subscription_ledger.find(mandate.external_reference)
            if subscriber is not None:
                return subscriber
        if mandate.payer_email:
            return await self.subscription_ledger.find_by_email(mandate.payer_email)
        return None
