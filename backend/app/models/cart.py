"""Shopping cart models."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import JSON, DateTime, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from app.db.base import Base, TimestampMixin, value_enum
from app.models.restaurant import ServiceType, Zone
from app.models.validators import non_negative, positive, validate_list_of_dicts


class CartStatus(str, Enum):
    ACTIVE = "active"
    CONVERTED = "converted"
    ABANDONED = "abandoned"


class Cart(Base, TimestampMixin):
    """A customer's cart. Only ``CartEngine`` mutates carts."""

    __tablename__ = "carts"

    id: Mapped[int] = mapped_column(primary_key=True)
    customer_id: Mapped[int] = mapped_column(
        ForeignKey("customers.id", ondelete="CASCADE"), nullable=False, index=True
    )
    restaurant_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("restaurants.id", ondelete="SET NULL"), nullable=True
    )
    service_type: Mapped[ServiceType] = mapped_column(
        value_enum(ServiceType), default=ServiceType.PICKUP, nullable=False
    )
    zone: Mapped[Zone] = mapped_column(value_enum(Zone), default=Zone.CAPITAL, nullable=False)
    delivery_address_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("customer_addresses.id", ondelete="SET NULL"), nullable=True
    )
    status: Mapped[CartStatus] = mapped_column(
        value_enum(CartStatus), default=CartStatus.ACTIVE, nullable=False, index=True
    )
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    items: Mapped[list["CartItem"]] = relationship(
        "CartItem", back_populates="cart", cascade="all, delete-orphan", order_by="CartItem.id"
    )
    restaurant: Mapped[Optional["Restaurant"]] = relationship("Restaurant")
    delivery_address: Mapped[Optional["CustomerAddress"]] = relationship("CustomerAddress")

    @property
    def is_empty(self) -> bool:
        return not self.items

    @property
    def subtotal(self) -> Decimal:
        return sum((item.subtotal for item in self.items), Decimal("0.00"))


class CartItem(Base, TimestampMixin):
    """One cart line. References a product (optionally a variant) or a combo."""

    __tablename__ = "cart_items"

    id: Mapped[int] = mapped_column(primary_key=True)
    cart_id: Mapped[int] = mapped_column(
        ForeignKey("carts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    product_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("products.id", ondelete="CASCADE"), nullable=True
    )
    variant_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("product_variants.id", ondelete="CASCADE"), nullable=True
    )
    combo_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("combos.id", ondelete="CASCADE"), nullable=True
    )
    quantity: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    # [{"section_id", "option_id", "name", "price"}] snapshot of the chosen options
    selected_options: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)

    unit_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    base_unit_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    promotion_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("promotions.id", ondelete="SET NULL"), nullable=True
    )
    subtotal: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    cart: Mapped["Cart"] = relationship("Cart", back_populates="items")
    product: Mapped[Optional["Product"]] = relationship("Product")
    variant: Mapped[Optional["ProductVariant"]] = relationship("ProductVariant")
    combo: Mapped[Optional["Combo"]] = relationship("Combo")
    promotion: Mapped[Optional["Promotion"]] = relationship("Promotion")

    @validates("quantity")
    def _validate_quantity(self, key, value):
        return positive(key, value)

    @validates("unit_price", "base_unit_price", "subtotal")
    def _validate_amounts(self, key, value):
        return non_negative(key, value)

    @validates("selected_options")
    def _validate_options(self, key, value):
        return validate_list_of_dicts(key, value)

    @property
    def options_total(self) -> Decimal:
        return sum((Decimal(str(opt.get("price", 0))) for opt in self.selected_options or []), Decimal("0.00"))

    @property
    def item_key(self) -> tuple:
        """Identity used by the merge policy: (product, variant, combo, options)."""
        options = tuple(sorted(
            (opt.get("section_id"), opt.get("option_id")) for opt in self.selected_options or []
        ))
        return (self.product_id, self.variant_id, self.combo_id, options)


from app.models.restaurant import Restaurant  # noqa: E402
from app.models.customer import CustomerAddress  # noqa: E402
from app.models.menu import Product, ProductVariant, Combo, Promotion  # noqa: E402
