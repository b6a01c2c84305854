"""Customer order models.

An order is a frozen snapshot of a cart: amounts, address, NIT and item
descriptions never change after creation. Only status, driver, restaurant
and lifecycle timestamps move, and every status move is written to
``order_status_history``.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import JSON, DateTime, ForeignKey, Integer, Numeric, String, Text, event, func, inspect
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from app.db.base import Base, TimestampMixin, VersionMixin, value_enum
from app.models.restaurant import ServiceType, Zone
from app.models.validators import non_negative, positive


class OrderStatus(str, Enum):
    """Lifecycle of a customer order."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    READY = "ready"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


TERMINAL_STATUSES = {OrderStatus.COMPLETED, OrderStatus.CANCELLED, OrderStatus.REFUNDED}


class PaymentMethod(str, Enum):
    CASH = "cash"
    CARD = "card"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    REFUNDED = "refunded"


FROZEN_AMOUNTS = ("subtotal", "discount_total", "delivery_fee", "tax", "total")


class Order(Base, TimestampMixin, VersionMixin):
    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(primary_key=True)
    order_number: Mapped[str] = mapped_column(String(32), unique=True, nullable=False, index=True)
    customer_id: Mapped[int] = mapped_column(
        ForeignKey("customers.id", ondelete="CASCADE"), nullable=False, index=True
    )
    restaurant_id: Mapped[int] = mapped_column(
        ForeignKey("restaurants.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    driver_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("drivers.id", ondelete="SET NULL"), nullable=True, index=True
    )
    service_type: Mapped[ServiceType] = mapped_column(value_enum(ServiceType), nullable=False)
    zone: Mapped[Zone] = mapped_column(value_enum(Zone), nullable=False)
    status: Mapped[OrderStatus] = mapped_column(
        value_enum(OrderStatus), default=OrderStatus.PENDING, nullable=False, index=True
    )

    subtotal: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    discount_total: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0.00"), nullable=False)
    delivery_fee: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0.00"), nullable=False)
    tax: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0.00"), nullable=False)
    total: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)

    delivery_address_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("customer_addresses.id", ondelete="SET NULL"), nullable=True
    )
    delivery_address_snapshot: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    nit_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("customer_nits.id", ondelete="SET NULL"), nullable=True
    )
    nit_snapshot: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    points_earned: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    points_redeemed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    payment_method: Mapped[PaymentMethod] = mapped_column(value_enum(PaymentMethod), nullable=False)
    payment_status: Mapped[PaymentStatus] = mapped_column(
        value_enum(PaymentStatus), default=PaymentStatus.PENDING, nullable=False
    )
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    scheduled_for: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    scheduled_pickup_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    estimated_ready_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    ready_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    assigned_to_driver_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    picked_up_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    items: Mapped[list["OrderItem"]] = relationship(
        "OrderItem", back_populates="order", cascade="all, delete-orphan", order_by="OrderItem.id"
    )
    status_history: Mapped[list["OrderStatusHistory"]] = relationship(
        "OrderStatusHistory", back_populates="order",
        order_by="OrderStatusHistory.id",
    )
    restaurant: Mapped["Restaurant"] = relationship("Restaurant")
    driver: Mapped[Optional["Driver"]] = relationship("Driver")

    @validates(*FROZEN_AMOUNTS)
    def _validate_amounts(self, key, value):
        state = inspect(self)
        if state.persistent and getattr(self, key) is not None and Decimal(str(getattr(self, key))) != Decimal(str(value)):
            raise ValueError(f"{key} is frozen once the order is placed")
        return non_negative(key, value)

    @validates("points_earned", "points_redeemed")
    def _validate_points(self, key, value):
        return non_negative(key, value)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def computed_total(self) -> Decimal:
        """Total reproduced from the stored components."""
        return self.subtotal - self.discount_total + self.delivery_fee + self.tax


class OrderItem(Base):
    """Immutable order line with a frozen copy of the catalog entry."""

    __tablename__ = "order_items"

    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[int] = mapped_column(
        ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    # Live references are informational only; the catalog row may later change or disappear
    product_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("products.id", ondelete="SET NULL"), nullable=True
    )
    variant_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("product_variants.id", ondelete="SET NULL"), nullable=True
    )
    combo_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("combos.id", ondelete="SET NULL"), nullable=True
    )
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    options_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0.00"), nullable=False)
    subtotal: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    selected_options: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    product_snapshot: Mapped[dict] = mapped_column(JSON, nullable=False)
    promotion_snapshot: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    order: Mapped["Order"] = relationship("Order", back_populates="items")

    @validates("quantity")
    def _validate_quantity(self, key, value):
        return positive(key, value)

    @validates("unit_price", "options_price", "subtotal")
    def _validate_amounts(self, key, value):
        return non_negative(key, value)


class OrderStatusHistory(Base):
    """Append-only log of status changes."""

    __tablename__ = "order_status_history"

    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[int] = mapped_column(
        ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    previous_status: Mapped[Optional[OrderStatus]] = mapped_column(value_enum(OrderStatus), nullable=True)
    new_status: Mapped[OrderStatus] = mapped_column(value_enum(OrderStatus), nullable=False)
    changed_by_type: Mapped[str] = mapped_column(String(20), nullable=False)
    changed_by_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    order: Mapped["Order"] = relationship("Order", back_populates="status_history")


@event.listens_for(OrderStatusHistory, "before_update")
def _history_is_append_only(mapper, connection, target):
    raise ValueError("Order status history cannot be modified")


@event.listens_for(OrderStatusHistory, "before_delete")
def _history_rows_cannot_be_deleted(mapper, connection, target):
    raise ValueError("Order status history cannot be deleted")


from app.models.restaurant import Restaurant, Driver  # noqa: E402
