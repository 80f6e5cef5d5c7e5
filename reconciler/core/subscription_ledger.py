"""Subscription ledger: premium activation and cancellation for subscribers."""
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Optional

import structlog

from reconciler.core.errors import (
    ConcurrentModification,
    MandateConflict,
    NotFound,
    StaleVersion,
    ValidationError,
)
from reconciler.core.models import Subscriber
from reconciler.core.ports import SubscriberStore
from reconciler.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

MAX_WRITE_ATTEMPTS = 2


class SubscriptionLedger:
    """Two-state subscription record: active (premium) or inactive."""

    def __init__(self, store: SubscriberStore):
        self.store = store

    async def get(self, subscriber_id: str) -> Subscriber:
        subscriber = await self.store.get(subscriber_id)
        if subscriber is None:
            raise NotFound(f"Subscriber {subscriber_id} not found")
        return subscriber

    async def find(self, subscriber_id: str) -> Optional[Subscriber]:
        return await self.store.get(subscriber_id)

    async def find_by_email(self, email: str) -> Optional[Subscriber]:
        return await self.store.find_by_email(email)

    async def activate(self, subscriber_id: str, mandate_ref: str) -> Subscriber:
        """
        Mark a subscriber premium under the given mandate.

        Raises:
            MandateConflict: If already active under a different mandate
        """
        if not mandate_ref:
            raise ValidationError("Mandate reference is required")

        def _activate(subscriber: Subscriber) -> Optional[Subscriber]:
            if subscriber.is_premium:
                if subscriber.mandate_ref == mandate_ref:
                    return None
                raise MandateConflict(subscriber.id, subscriber.mandate_ref or "", mandate_ref)
            return replace(
                subscriber,
                is_premium=True,
                mandate_ref=mandate_ref,
                activated_at=datetime.now(timezone.utc),
            )

        subscriber, changed = await self._update(subscriber_id, _activate)
        if changed:
            metrics.record_subscription_change("activated")
            logger.info(
                "subscription_activated", subscriber_id=subscriber_id, mandate_ref=mandate_ref
            )
        return subscriber

    async def cancel(self, subscriber_id: str) -> Subscriber:
        """Drop premium, keeping the mandate reference for audit."""

        def _cancel(subscriber: Subscriber) -> Optional[Subscriber]:
            if not subscriber.is_premium:
                return None
            return replace(
                subscriber, is_premium=False, cancelled_at=datetime.now(timezone.utc)
            )

        subscriber, changed = await self._update(subscriber_id, _cancel)
        if changed:
            metrics.record_subscription_change("cancelled")
            logger.info(
                "subscription_cancelled",
                subscriber_id=subscriber_id,
                mandate_ref=subscriber.mandate_ref,
            )
        return subscriber

    async def _update(
        self, subscriber_id: str, decide: Callable[[Subscriber], Optional[Subscriber]]
    ) -> tuple[Subscriber, bool]:
        for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
            current = await self.get(subscriber_id)
            desired = decide(current)
            if desired is None:
                return current, False
            try:
                return await self.store.compare_and_set(desired, current.version), True
            except StaleVersion:
                if attempt < MAX_WRITE_ATTEMPTS:
                    metrics.record_concurrent_modification("subscriber", "retried")
                    continue

        metrics.record_concurrent_modification("subscriber", "failed")
        logger.warning("subscription_update_conflict", subscriber_id=subscriber_id)
        raise ConcurrentModification("subscriber", subscriber_id)
