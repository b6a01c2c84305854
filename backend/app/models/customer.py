"""Customer, address book, NIT and loyalty ledger models."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Integer, Numeric, String, Text, event, func
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from app.db.base import Base, TimestampMixin, value_enum
from app.models.validators import non_negative


class CustomerType(Base, TimestampMixin):
    """Loyalty tier. A customer belongs to the highest tier whose threshold they reach."""

    __tablename__ = "customer_types"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    points_required: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    multiplier: Mapped[Decimal] = mapped_column(Numeric(4, 2), default=Decimal("1.00"), nullable=False)
    color: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    @validates("points_required", "multiplier")
    def _validate_non_negative(self, key, value):
        return non_negative(key, value)


class Customer(Base, TimestampMixin):
    __tablename__ = "customers"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, unique=True)
    phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    # Running balance; always equals the signed sum of points_transactions
    points: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    customer_type_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("customer_types.id", ondelete="SET NULL"), nullable=True
    )
    points_updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    customer_type: Mapped[Optional["CustomerType"]] = relationship("CustomerType")
    addresses: Mapped[list["CustomerAddress"]] = relationship(
        "CustomerAddress", back_populates="customer", cascade="all, delete-orphan"
    )
    nits: Mapped[list["CustomerNit"]] = relationship(
        "CustomerNit", back_populates="customer", cascade="all, delete-orphan"
    )

    @validates("points")
    def _validate_points(self, key, value):
        return non_negative(key, value)


class CustomerAddress(Base, TimestampMixin):
    __tablename__ = "customer_addresses"

    id: Mapped[int] = mapped_column(primary_key=True)
    customer_id: Mapped[int] = mapped_column(
        ForeignKey("customers.id", ondelete="CASCADE"), nullable=False, index=True
    )
    label: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    address_line: Mapped[str] = mapped_column(String(500), nullable=False)
    latitude: Mapped[float] = mapped_column(Float, nullable=False)
    longitude: Mapped[float] = mapped_column(Float, nullable=False)
    delivery_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    customer: Mapped["Customer"] = relationship("Customer", back_populates="addresses")

    def snapshot(self) -> dict:
        """Frozen copy stored on an order."""
        return {
            "id": self.id,
            "label": self.label,
            "address_line": self.address_line,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "delivery_notes": self.delivery_notes,
        }


class CustomerNit(Base, TimestampMixin):
    """Tax ID used for invoicing."""

    __tablename__ = "customer_nits"

    id: Mapped[int] = mapped_column(primary_key=True)
    customer_id: Mapped[int] = mapped_column(
        ForeignKey("customers.id", ondelete="CASCADE"), nullable=False, index=True
    )
    nit: Mapped[str] = mapped_column(String(20), nullable=False)
    nit_type: Mapped[str] = mapped_column(String(20), default="personal", nullable=False)
    business_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    customer: Mapped["Customer"] = relationship("Customer", back_populates="nits")

    def snapshot(self) -> dict:
        return {
            "id": self.id,
            "nit": self.nit,
            "nit_type": self.nit_type,
            "business_name": self.business_name,
        }


class PointsTransactionType(str, Enum):
    EARNED = "earned"
    REDEEMED = "redeemed"
    EXPIRED = "expired"
    ADJUSTED = "adjusted"


class CustomerPointsTransaction(Base):
    """Append-only ledger row.

    ``points`` is a magnitude for earned/redeemed/expired rows and a signed
    delta for adjusted rows; ``signed_points`` gives the effect on the balance.
    """

    __tablename__ = "customer_points_transactions"

    id: Mapped[int] = mapped_column(primary_key=True)
    customer_id: Mapped[int] = mapped_column(
        ForeignKey("customers.id", ondelete="CASCADE"), nullable=False, index=True
    )
    order_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("orders.id", ondelete="SET NULL"), nullable=True, index=True
    )
    type: Mapped[PointsTransactionType] = mapped_column(value_enum(PointsTransactionType), nullable=False)
    points: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    @validates("points")
    def _validate_points(self, key, value):
        if self.type is not None and self.type != PointsTransactionType.ADJUSTED:
            return non_negative(key, value)
        return value

    @property
    def signed_points(self) -> int:
        if self.type == PointsTransactionType.EARNED:
            return self.points
        if self.type == PointsTransactionType.ADJUSTED:
            return self.points
        return -self.points


@event.listens_for(CustomerPointsTransaction, "before_update")
def _ledger_is_append_only(mapper, connection, target):
    raise ValueError("Points ledger entries cannot be modified")


@event.listens_for(CustomerPointsTransaction, "before_delete")
def _ledger_rows_cannot_be_deleted(mapper, connection, target):
    raise ValueError("Points ledger entries cannot be deleted")
