"""Menu catalog models: products, variants, combos, option sections and promotions.

Every sellable thing carries the same four-column price set, one column
per cell of the ``{pickup, delivery} x {capital, interior}`` matrix.
"""

from __future__ import annotations

from datetime import date, datetime, time
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import JSON, Boolean, Date, ForeignKey, Integer, Numeric, String, Text, Time
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from app.db.base import Base, TimestampMixin, value_enum
from app.models.restaurant import ServiceType, Zone
from app.models.validators import non_negative, percentage, positive, weekday_list

PRICE_COLUMNS = {
    (ServiceType.PICKUP, Zone.CAPITAL): "price_pickup_capital",
    (ServiceType.DELIVERY, Zone.CAPITAL): "price_delivery_capital",
    (ServiceType.PICKUP, Zone.INTERIOR): "price_pickup_interior",
    (ServiceType.DELIVERY, Zone.INTERIOR): "price_delivery_interior",
}


def price_column(service_type: ServiceType, zone: Zone) -> str:
    """Name of the stored column for one cell of the price matrix."""
    return PRICE_COLUMNS[(ServiceType(service_type), Zone(zone))]


class ZonePriceMixin:
    """The four-zone price set shared by products, variants and combos."""

    price_pickup_capital: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    price_delivery_capital: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    price_pickup_interior: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    price_delivery_interior: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)

    @validates(
        "price_pickup_capital", "price_delivery_capital",
        "price_pickup_interior", "price_delivery_interior",
    )
    def _validate_prices(self, key, value):
        return non_negative(key, value)

    def zone_price(self, service_type: ServiceType, zone: Zone) -> Optional[Decimal]:
        return getattr(self, price_column(service_type, zone))


class Product(Base, TimestampMixin, ZonePriceMixin):
    """A menu product. Products with variants are priced per variant."""

    __tablename__ = "products"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    category: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    has_variants: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    variants: Mapped[list["ProductVariant"]] = relationship(
        "ProductVariant", back_populates="product", cascade="all, delete-orphan"
    )


class ProductVariant(Base, TimestampMixin, ZonePriceMixin):
    """A size/flavour variant of a product, priced independently."""

    __tablename__ = "product_variants"

    id: Mapped[int] = mapped_column(primary_key=True)
    product_id: Mapped[int] = mapped_column(
        ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    sku: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    product: Mapped["Product"] = relationship("Product", back_populates="variants")


class Combo(Base, TimestampMixin, ZonePriceMixin):
    """A fixed bundle of products sold at its own price."""

    __tablename__ = "combos"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    items: Mapped[list["ComboItem"]] = relationship(
        "ComboItem", back_populates="combo", cascade="all, delete-orphan"
    )


class ComboItem(Base):
    __tablename__ = "combo_items"

    id: Mapped[int] = mapped_column(primary_key=True)
    combo_id: Mapped[int] = mapped_column(
        ForeignKey("combos.id", ondelete="CASCADE"), nullable=False, index=True
    )
    product_id: Mapped[int] = mapped_column(
        ForeignKey("products.id", ondelete="CASCADE"), nullable=False
    )
    quantity: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    combo: Mapped["Combo"] = relationship("Combo", back_populates="items")
    product: Mapped["Product"] = relationship("Product")

    @validates("quantity")
    def _validate_quantity(self, key, value):
        return positive(key, value)


class Section(Base):
    """A group of customisation options ("Choose your sauce")."""

    __tablename__ = "sections"

    id: Mapped[int] = mapped_column(primary_key=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    is_required: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    options: Mapped[list["SectionOption"]] = relationship(
        "SectionOption", back_populates="section", cascade="all, delete-orphan"
    )


class SectionOption(Base):
    __tablename__ = "section_options"

    id: Mapped[int] = mapped_column(primary_key=True)
    section_id: Mapped[int] = mapped_column(
        ForeignKey("sections.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    price_modifier: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    section: Mapped["Section"] = relationship("Section", back_populates="options")

    @validates("price_modifier")
    def _validate_price_modifier(self, key, value):
        return non_negative(key, value)


class PromotionType(str, Enum):
    """How a promotion changes the base price."""

    PERCENTAGE_DISCOUNT = "percentage_discount"
    FIXED = "fixed"
    BUNDLE_SPECIAL = "bundle_special"
    DAILY_SPECIAL = "daily_special"


class Promotion(Base, TimestampMixin):
    """A time-boxed price overlay applied to the items it links."""

    __tablename__ = "promotions"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[PromotionType] = mapped_column(value_enum(PromotionType), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    valid_from: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    valid_until: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    time_from: Mapped[Optional[time]] = mapped_column(Time, nullable=True)
    time_until: Mapped[Optional[time]] = mapped_column(Time, nullable=True)
    weekdays: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)  # ISO 1-7, None = every day

    items: Mapped[list["PromotionItem"]] = relationship(
        "PromotionItem", back_populates="promotion", cascade="all, delete-orphan"
    )

    @validates("weekdays")
    def _validate_weekdays(self, key, value):
        return weekday_list(key, value)

    @property
    def is_percentage(self) -> bool:
        return self.type == PromotionType.PERCENTAGE_DISCOUNT

    def is_valid_at(self, local_dt: datetime) -> bool:
        """Check the active flag plus the date range, weekday set and time window.

        A window whose ``time_from`` is later than ``time_until`` spans midnight.
        """
        if not self.is_active:
            return False

        today = local_dt.date()
        if self.valid_from and today < self.valid_from:
            return False
        if self.valid_until and today > self.valid_until:
            return False

        if self.weekdays and local_dt.isoweekday() not in self.weekdays:
            return False

        if self.time_from and self.time_until:
            now = local_dt.time().replace(tzinfo=None)
            if self.time_from <= self.time_until:
                return self.time_from <= now <= self.time_until
            return now >= self.time_from or now <= self.time_until
        return True


class PromotionItem(Base):
    """Links a promotion to one product, variant or combo with its overlay values."""

    __tablename__ = "promotion_items"

    id: Mapped[int] = mapped_column(primary_key=True)
    promotion_id: Mapped[int] = mapped_column(
        ForeignKey("promotions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    product_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("products.id", ondelete="CASCADE"), nullable=True, index=True
    )
    variant_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("product_variants.id", ondelete="CASCADE"), nullable=True, index=True
    )
    combo_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("combos.id", ondelete="CASCADE"), nullable=True, index=True
    )

    discount_percent: Mapped[Optional[Decimal]] = mapped_column(Numeric(5, 2), nullable=True)
    special_price_pickup_capital: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    special_price_delivery_capital: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    special_price_pickup_interior: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    special_price_delivery_interior: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)

    promotion: Mapped["Promotion"] = relationship("Promotion", back_populates="items")

    @validates("discount_percent")
    def _validate_discount(self, key, value):
        return percentage(key, value)

    @validates(
        "special_price_pickup_capital", "special_price_delivery_capital",
        "special_price_pickup_interior", "special_price_delivery_interior",
    )
    def _validate_special_prices(self, key, value):
        return non_negative(key, value)

    def special_price(self, service_type: ServiceType, zone: Zone) -> Optional[Decimal]:
        return getattr(self, "special_" + price_column(service_type, zone))
