"""Zone pricing with promotion overlay.

The base price is a strict 2x2 lookup of ``{pickup, delivery} x
{capital, interior}``. At most one promotion overlays it: the valid one
with the lowest ``(sort_order, id)``. Percentage promotions scale the base
price; fixed/bundle/daily specials substitute their own four-zone price
set through the same lookup.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Union

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import DomainError, NotFoundError
from app.core.timeutil import to_local, utcnow
from app.models.menu import Combo, Product, ProductVariant, Promotion, PromotionItem
from app.models.restaurant import ServiceType, Zone

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")

Priceable = Union[Product, ProductVariant, Combo]


def money(value) -> Decimal:
    """Quantize to cents, rounding half up."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def compute_tax(subtotal, discount=Decimal("0"), tax_rate=None) -> Decimal:
    """Tax on the item subtotal net of *discount*. Never negative."""
    tax_rate = settings.tax_rate if tax_rate is None else Decimal(str(tax_rate))
    base = max(Decimal(str(subtotal)) - Decimal(str(discount)), Decimal("0"))
    return money(base * tax_rate)


@dataclass
class PriceQuote:
    unit_price: Decimal
    base_price: Decimal
    promotion: Optional[Promotion] = None
    promotion_item: Optional[PromotionItem] = None

    @property
    def savings(self) -> Decimal:
        return self.base_price - self.unit_price


class PriceResolver:
    """Resolve the unit price of a product, variant or combo for a pricing context."""

    def __init__(self, db: Session):
        self.db = db

    def resolve_item(
        self,
        product_id: Optional[int] = None,
        variant_id: Optional[int] = None,
        combo_id: Optional[int] = None,
        require_active: bool = True,
    ) -> Priceable:
        """Turn a (product | combo, variant?) reference into the entity that carries the price."""
        if bool(product_id) == bool(combo_id):
            raise DomainError(
                "ITEM_REFERENCE_REQUIRED", "Exactly one of product_id or combo_id is required"
            )

        if combo_id:
            combo = self.db.get(Combo, combo_id)
            if combo is None:
                raise NotFoundError("COMBO_NOT_FOUND", "Combo not found", {"combo_id": combo_id})
            if require_active and not combo.is_active:
                raise DomainError("ITEM_UNAVAILABLE", f"'{combo.name}' is not available", {"combo_id": combo_id})
            return combo

        product = self.db.get(Product, product_id)
        if product is None:
            raise NotFoundError("PRODUCT_NOT_FOUND", "Product not found", {"product_id": product_id})
        if require_active and not product.is_active:
            raise DomainError("ITEM_UNAVAILABLE", f"'{product.name}' is not available", {"product_id": product_id})

        if variant_id:
            variant = self.db.get(ProductVariant, variant_id)
            if variant is None or variant.product_id != product.id:
                raise NotFoundError(
                    "VARIANT_NOT_FOUND", "Variant not found for this product",
                    {"product_id": product_id, "variant_id": variant_id},
                )
            if require_active and not variant.is_active:
                raise DomainError(
                    "ITEM_UNAVAILABLE", f"'{product.name} {variant.name}' is not available",
                    {"variant_id": variant_id},
                )
            return variant

        if product.has_variants:
            raise DomainError(
                "VARIANT_REQUIRED", f"'{product.name}' must be ordered through one of its variants",
                {"product_id": product_id},
            )
        return product

    def price(
        self,
        item: Priceable,
        service_type: ServiceType,
        zone: Zone,
        now: Optional[datetime] = None,
    ) -> PriceQuote:
        service_type = ServiceType(service_type)
        zone = Zone(zone)
        if isinstance(item, Product) and item.has_variants:
            raise DomainError(
                "VARIANT_REQUIRED", f"'{item.name}' is priced per variant",
                {"product_id": item.id},
            )

        base = item.zone_price(service_type, zone)
        if base is None:
            raise DomainError(
                "PRICE_NOT_AVAILABLE",
                f"No {service_type.value}/{zone.value} price for this item",
                {"service_type": service_type.value, "zone": zone.value},
            )
        base = money(base)

        local_now = to_local(now or utcnow())
        for link in self._promotion_links(item):
            promotion = link.promotion
            if not promotion.is_valid_at(local_now):
                continue
            if promotion.is_percentage:
                if link.discount_percent is None:
                    continue
                unit_price = money(base * (Decimal("100") - Decimal(str(link.discount_percent))) / Decimal("100"))
            else:
                special = link.special_price(service_type, zone)
                if special is None:
                    continue
                unit_price = money(special)
            logger.debug(
                f"{type(item).__name__} {item.id} {service_type.value}/{zone.value}: "
                f"{base} -> {unit_price} via promotion {promotion.id}"
            )
            return PriceQuote(unit_price=unit_price, base_price=base, promotion=promotion, promotion_item=link)

        return PriceQuote(unit_price=base, base_price=base)

    def _promotion_links(self, item: Priceable) -> list:
        """Promotion links that target *item*, ordered by (sort_order, id) of the promotion."""
        if isinstance(item, Combo):
            match = PromotionItem.combo_id == item.id
        elif isinstance(item, ProductVariant):
            match = or_(
                PromotionItem.variant_id == item.id,
                and_(PromotionItem.product_id == item.product_id, PromotionItem.variant_id.is_(None)),
            )
        else:
            match = and_(PromotionItem.product_id == item.id, PromotionItem.variant_id.is_(None))

        return (
            self.db.query(PromotionItem)
            .join(Promotion, PromotionItem.promotion_id == Promotion.id)
            .filter(match, Promotion.is_active.is_(True))
            .order_by(Promotion.sort_order, Promotion.id, PromotionItem.id)
            .all()
        )
