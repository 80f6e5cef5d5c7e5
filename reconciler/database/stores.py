"""
SQLAlchemy-backed catalog, order store and subscriber store.

Each operation runs in its own short transaction. Updates are compare-and-set
statements guarded by the row ``version`` column: a ``rowcount`` of zero means
another writer got there first and StaleVersion is raised for the ledger to
retry.
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from reconciler.core.errors import ConflictError, StaleVersion, UpstreamError
from reconciler.core.models import LineItem, Order, Product, Subscriber
from reconciler.database.connection import session_scope
from reconciler.database.models import (
    OrderItemRecord,
    OrderRecord,
    ProductRecord,
    SubscriberRecord,
)

logger = structlog.get_logger(__name__)


def _order_from_record(record: OrderRecord) -> Order:
    return Order(
        id=record.id,
        buyer=record.buyer,
        items=[
            LineItem(
                product_id=item.product_id,
                name=item.name,
                quantity=item.quantity,
                unit_price=Decimal(item.unit_price),
            )
            for item in record.items
        ],
        total=Decimal(record.total),
        status=record.status,
        checkout_ref=record.checkout_ref,
        payment_ref=record.payment_ref,
        version=record.version,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


def _subscriber_from_record(record: SubscriberRecord) -> Subscriber:
    return Subscriber(
        id=record.id,
        email=record.email,
        is_premium=record.is_premium,
        mandate_ref=record.mandate_ref,
        activated_at=record.activated_at,
        cancelled_at=record.cancelled_at,
        version=record.version,
    )


class SqlAlchemyCatalog:
    """Product lookups against the ``products`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get_product(self, product_id: str) -> Optional[Product]:
        try:
            async with self.session_factory() as session:
                record = await session.get(ProductRecord, str(product_id))
        except SQLAlchemyError as e:
            logger.error("catalog_lookup_failed", product_id=product_id, error=str(e))
            raise UpstreamError(f"Catalog unavailable: {e}", original_error=e)

        if record is None:
            return None
        return Product(
            id=record.id,
            name=record.name,
            price=Decimal(record.price),
            is_subscription=record.is_subscription,
        )

    async def add(self, product: Product) -> Product:
        async with session_scope(self.session_factory) as session:
            session.add(
                ProductRecord(
                    id=product.id,
                    name=product.name,
                    price=product.price,
                    is_subscription=product.is_subscription,
                )
            )
        return product


class SqlAlchemyOrderStore:
    """Order rows with optimistic version checks."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def _load(self, session: AsyncSession, **criteria: Any) -> Optional[Order]:
        stmt = select(OrderRecord).filter_by(**criteria).execution_options(
            populate_existing=True
        )
        result = await session.execute(stmt)
        record = result.scalar_one_or_none()
        return _order_from_record(record) if record is not None else None

    async def add(self, order: Order) -> Order:
        record = OrderRecord(
            id=order.id,
            buyer=order.buyer,
            total=order.total,
            status=order.status,
            checkout_ref=order.checkout_ref,
            payment_ref=order.payment_ref,
            version=order.version,
            created_at=order.created_at,
            updated_at=order.updated_at,
            items=[
                OrderItemRecord(
                    position=position,
                    product_id=item.product_id,
                    name=item.name,
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                )
                for position, item in enumerate(order.items)
            ],
        )
        async with session_scope(self.session_factory) as session:
            session.add(record)
        return order

    async def get(self, order_id: str) -> Optional[Order]:
        async with self.session_factory() as session:
            return await self._load(session, id=order_id)

    async def find_by_checkout_ref(self, checkout_ref: str) -> Optional[Order]:
        async with self.session_factory() as session:
            return await self._load(session, checkout_ref=checkout_ref)

    async def compare_and_set(
        self,
        order_id: str,
        expected_version: int,
        *,
        status: Optional[str] = None,
        payment_ref: Optional[str] = None,
        checkout_ref: Optional[str] = None,
    ) -> Order:
        values: Dict[str, Any] = {
            "version": expected_version + 1,
            "updated_at": datetime.now(timezone.utc),
        }
        if status is not None:
            values["status"] = status
        if payment_ref is not None:
            values["payment_ref"] = payment_ref
        if checkout_ref is not None:
            values["checkout_ref"] = checkout_ref

        stmt = (
            update(OrderRecord)
            .where(OrderRecord.id == order_id, OrderRecord.version == expected_version)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        try:
            async with session_scope(self.session_factory) as session:
                result = await session.execute(stmt)
        except IntegrityError as e:
            logger.warning(
                "order_checkout_ref_taken", order_id=order_id, checkout_ref=checkout_ref
            )
            raise ConflictError(
                f"Checkout reference {checkout_ref} is already linked to another order"
            ) from e

        if result.rowcount == 0:
            raise StaleVersion(f"order {order_id} is no longer at version {expected_version}")

        order = await self.get(order_id)
        if order is None:
            raise StaleVersion(f"order {order_id} disappeared during update")
        return order


class SqlAlchemySubscriberStore:
    """Subscriber rows with optimistic version checks."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def _load(self, session: AsyncSession, **criteria: Any) -> Optional[Subscriber]:
        stmt = select(SubscriberRecord).filter_by(**criteria).execution_options(
            populate_existing=True
        )
        result = await session.execute(stmt)
        record = result.scalar_one_or_none()
        return _subscriber_from_record(record) if record is not None else None

    async def add(self, subscriber: Subscriber) -> Subscriber:
        async with session_scope(self.session_factory) as session:
            session.add(
                SubscriberRecord(
                    id=subscriber.id,
                    email=subscriber.email,
                    is_premium=subscriber.is_premium,
                    mandate_ref=subscriber.mandate_ref,
                    activated_at=subscriber.activated_at,
                    cancelled_at=subscriber.cancelled_at,
                    version=subscriber.version,
                )
            )
        return subscriber

    async def get(self, subscriber_id: str) -> Optional[Subscriber]:
        async with self.session_factory() as session:
            return await self._load(session, id=subscriber_id)

    async def find_by_email(self, email: str) -> Optional[Subscriber]:
        async with self.session_factory() as session:
            return await self._load(session, email=email)

    async def compare_and_set(self, subscriber: Subscriber, expected_version: int) -> Subscriber:
        stmt = (
            update(SubscriberRecord)
            .where(
                SubscriberRecord.id == subscriber.id,
                SubscriberRecord.version == expected_version,
            )
            .values(
                is_premium=subscriber.is_premium,
                mandate_ref=subscriber.mandate_ref,
                activated_at=subscriber.activated_at,
                cancelled_at=subscriber.cancelled_at,
                version=expected_version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        async with session_scope(self.session_factory) as session:
            result = await session.execute(stmt)
        if result.rowcount == 0:
            raise StaleVersion(
                f"subscriber {subscriber.id} is no longer at version {expected_version}"
            )

        updated = await self.get(subscriber.id)
        if updated is None:
            raise StaleVersion(f"subscriber {subscriber.id} disappeared during update")
        return updated
