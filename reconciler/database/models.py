"""SQLAlchemy database models for orders, catalog products and subscribers."""
from datetime import datetime
from decimal import Decimal
from typing import List

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class ProductRecord(Base):
    """
    Catalog products table.

    Read-only from this service's point of view; checkout snapshots price and
    name into order items.
    """

    __tablename__ = "products"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(80), nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    is_subscription: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    def __repr__(self) -> str:
        """String representation of ProductRecord."""
        return f"<ProductRecord(id={self.id}, name={self.name}, price={self.price})>"


class OrderRecord(Base):
    """
    Orders table.

    Rows are never deleted. ``version`` backs the compare-and-set updates made
    by the order ledger; ``checkout_ref`` is the gateway session the order is
    correlated with and is unique once set.
    """

    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    buyer: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    total: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    checkout_ref: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    payment_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )

    items: Mapped[List["OrderItemRecord"]] = relationship(
        back_populates="order",
        order_by="OrderItemRecord.position",
        lazy="selectin",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        CheckConstraint("total >= 0", name="non_negative_total"),
        Index("idx_orders_buyer_status", "buyer", "status"),
    )

    def __repr__(self) -> str:
        """String representation of OrderRecord."""
        return f"<OrderRecord(id={self.id}, status={self.status}, total={self.total})>"


class OrderItemRecord(Base):
    """Order line items with the unit price as it was at purchase time."""

    __tablename__ = "order_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("orders.id"), nullable=False, index=True
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    product_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(80), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)

    order: Mapped[OrderRecord] = relationship(back_populates="items")

    __table_args__ = (CheckConstraint("quantity > 0", name="positive_quantity"),)


class SubscriberRecord(Base):
    """
    Subscribers table with the embedded subscription record.

    premium implies mandate_ref is set; cancellation keeps mandate_ref.
    """

    __tablename__ = "subscribers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    is_premium: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    mandate_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    activated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __table_args__ = (
        CheckConstraint(
            "NOT is_premium OR mandate_ref IS NOT NULL", name="premium_requires_mandate"
        ),
    )

    def __repr__(self) -> str:
        """String representation of SubscriberRecord."""
        return f"<SubscriberRecord(id={self.id}, premium={self.is_premium})>"
