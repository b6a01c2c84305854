"""Cart engine: the only writer of carts and cart items.

Each customer has at most one ``active`` cart. The cart's pricing context
is ``{service_type, zone}``; every change to that context re-prices every
line in the same transaction, so no line ever carries a price from an old
context. Quantity and option edits keep the line's unit price unless a
re-price is requested explicitly.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import DomainError, ForbiddenError, NotFoundError, ValidationFailed
from app.core.timeutil import as_utc, utcnow
from app.db.session import transaction
from app.models.cart import Cart, CartItem, CartStatus
from app.models.customer import Customer, CustomerAddress
from app.models.menu import ProductVariant, SectionOption
from app.models.restaurant import Restaurant, ServiceType, Zone
from app.services.geofence_service import GeofenceResolver
from app.services.pricing_service import PriceResolver, compute_tax, money

logger = logging.getLogger(__name__)


@dataclass
class CartValidation:
    is_valid: bool
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"is_valid": self.is_valid, "errors": self.errors}


def check_quantity(quantity: int) -> None:
    """Line quantities are bounded by 1 and ``max_item_quantity``."""
    if quantity < 1 or quantity > settings.max_item_quantity:
        raise ValidationFailed(
            "INVALID_QUANTITY",
            f"Quantity must be between 1 and {settings.max_item_quantity}",
            {"quantity": quantity, "maximum": settings.max_item_quantity},
        )


def get_owned_address(db: Session, customer_id: int, address_id: int) -> CustomerAddress:
    """Load an address, distinguishing missing (404) from someone else's (403)."""
    address = db.get(CustomerAddress, address_id)
    if address is None:
        raise NotFoundError("ADDRESS_NOT_FOUND", "Address not found", {"address_id": address_id})
    if address.customer_id != customer_id:
        raise ForbiddenError("ADDRESS_FORBIDDEN", "This address belongs to another customer")
    return address


class CartEngine:
    """Owns each customer's single mutable active cart."""

    def __init__(
        self,
        db: Session,
        merge_identical_items: Optional[bool] = None,
        prices: Optional[PriceResolver] = None,
        geofence: Optional[GeofenceResolver] = None,
    ):
        self.db = db
        self.merge_identical_items = (
            settings.cart_merge_identical_items if merge_identical_items is None else merge_identical_items
        )
        self.prices = prices or PriceResolver(db)
        self.geofence = geofence or GeofenceResolver(db)

    # ===== CART LOOKUP =====

    def find_active_cart(self, customer_id: int, lock: bool = False) -> Optional[Cart]:
        """The customer's active cart, or None. Expired and duplicate carts are abandoned."""
        query = (
            self.db.query(Cart)
            .filter(Cart.customer_id == customer_id, Cart.status == CartStatus.ACTIVE)
            .order_by(Cart.id.desc())
        )
        if lock:
            query = query.with_for_update()
        carts = query.all()
        if not carts:
            return None

        cart, duplicates = carts[0], carts[1:]
        for stale in duplicates:
            logger.warning(f"Customer {customer_id} had extra active cart {stale.id}; abandoning it")
            stale.status = CartStatus.ABANDONED

        expires_at = as_utc(cart.expires_at)
        if expires_at is not None and expires_at < utcnow():
            logger.info(f"Cart {cart.id} expired at {expires_at}; abandoning it")
            cart.status = CartStatus.ABANDONED
            self.db.flush()
            return None

        if duplicates:
            self.db.flush()
        return cart

    def get_active_cart(self, customer_id: int) -> Cart:
        """Find-or-create the customer's active cart."""
        with transaction(self.db):
            cart = self._get_or_create(customer_id)
        return cart

    def _get_or_create(self, customer_id: int) -> Cart:
        cart = self.find_active_cart(customer_id, lock=True)
        if cart is not None:
            return cart

        if self.db.get(Customer, customer_id) is None:
            raise NotFoundError("CUSTOMER_NOT_FOUND", "Customer not found", {"customer_id": customer_id})

        cart = Cart(
            customer_id=customer_id,
            service_type=ServiceType.PICKUP,
            zone=Zone(settings.default_zone),
            status=CartStatus.ACTIVE,
            expires_at=utcnow() + timedelta(days=settings.cart_expiration_days),
        )
        self.db.add(cart)
        self.db.flush()
        logger.info(f"Created cart {cart.id} for customer {customer_id}")
        return cart

    def _touch(self, cart: Cart) -> None:
        cart.expires_at = utcnow() + timedelta(days=settings.cart_expiration_days)

    # ===== ITEMS =====

    def add_item(
        self,
        customer_id: int,
        product_id: Optional[int] = None,
        combo_id: Optional[int] = None,
        variant_id: Optional[int] = None,
        quantity: int = 1,
        selected_options: Optional[List[dict]] = None,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> CartItem:
        """Price and add a line, or bump the matching line when merging is enabled."""
        check_quantity(quantity)

        with transaction(self.db):
            cart = self._get_or_create(customer_id)
            entity = self.prices.resolve_item(product_id, variant_id, combo_id)
            options = self._resolve_options(selected_options)

            candidate = CartItem(
                product_id=entity.product_id if isinstance(entity, ProductVariant) else product_id,
                variant_id=entity.id if isinstance(entity, ProductVariant) else None,
                combo_id=combo_id,
                selected_options=options,
            )

            if self.merge_identical_items:
                existing = next((i for i in cart.items if i.item_key == candidate.item_key), None)
                if existing is not None:
                    check_quantity(existing.quantity + quantity)
                    existing.quantity += quantity
                    self._recompute_subtotal(existing)
                    self._touch(cart)
                    self.db.flush()
                    logger.info(f"Cart {cart.id}: merged {quantity} into item {existing.id}")
                    return existing

            quote = self.prices.price(entity, cart.service_type, cart.zone, now)
            candidate.quantity = quantity
            candidate.notes = notes
            candidate.unit_price = quote.unit_price
            candidate.base_unit_price = quote.base_price
            candidate.promotion_id = quote.promotion.id if quote.promotion else None
            self._recompute_subtotal(candidate)
            cart.items.append(candidate)
            self._touch(cart)
            self.db.flush()
            logger.info(f"Cart {cart.id}: added item {candidate.id} at {candidate.unit_price}")
        return candidate

    def update_item(
        self,
        customer_id: int,
        item_id: int,
        quantity: Optional[int] = None,
        selected_options: Optional[List[dict]] = None,
        reprice: bool = False,
        now: Optional[datetime] = None,
    ) -> CartItem:
        """Change quantity and/or options. Unit price is kept unless *reprice* is set."""
        if quantity is not None:
            check_quantity(quantity)

        with transaction(self.db):
            cart, item = self._owned_item(customer_id, item_id)
            if quantity is not None:
                item.quantity = quantity
            if selected_options is not None:
                item.selected_options = self._resolve_options(selected_options)
            if reprice:
                self._reprice_item(cart, item, now)
            else:
                self._recompute_subtotal(item)
            self._touch(cart)
            self.db.flush()
        return item

    def remove_item(self, customer_id: int, item_id: int) -> Cart:
        with transaction(self.db):
            cart, item = self._owned_item(customer_id, item_id)
            cart.items.remove(item)
            self._touch(cart)
            self.db.flush()
        return cart

    def clear(self, customer_id: int) -> Cart:
        with transaction(self.db):
            cart = self._get_or_create(customer_id)
            cart.items.clear()
            self.db.flush()
            logger.info(f"Cart {cart.id} cleared")
        return cart

    # ===== PRICING CONTEXT =====

    def set_service_type(self, customer_id: int, service_type: ServiceType, now: Optional[datetime] = None) -> Cart:
        """Switch pickup/delivery and re-price every line.

        Delivery needs an attached address that falls inside some
        restaurant's geofence; that restaurant and its zone are adopted.
        Leaving delivery unbinds the restaurant and resets the zone to the
        default; the address stays attached for a later switch back.
        """
        service_type = ServiceType(service_type)
        with transaction(self.db):
            cart = self._get_or_create(customer_id)

            if service_type == ServiceType.DELIVERY:
                if cart.delivery_address_id is None:
                    raise DomainError(
                        "DELIVERY_ADDRESS_REQUIRED",
                        "Attach a delivery address before switching to delivery",
                    )
                address = get_owned_address(self.db, customer_id, cart.delivery_address_id)
                restaurant = self._delivery_restaurant_for(address)
                cart.restaurant_id = restaurant.id
                cart.zone = restaurant.zone
            elif cart.service_type == ServiceType.DELIVERY:
                cart.restaurant_id = None
                cart.zone = Zone(settings.default_zone)

            cart.service_type = service_type
            self.reprice(cart, now)
            self._touch(cart)
            self.db.flush()
            logger.info(f"Cart {cart.id} now {cart.service_type.value}/{cart.zone.value}")
        return cart

    def set_restaurant(self, customer_id: int, restaurant_id: int, now: Optional[datetime] = None) -> Cart:
        """Bind a pickup restaurant and adopt its zone."""
        with transaction(self.db):
            cart = self._get_or_create(customer_id)
            restaurant = self.db.get(Restaurant, restaurant_id)
            if restaurant is None:
                raise NotFoundError("RESTAURANT_NOT_FOUND", "Restaurant not found", {"restaurant_id": restaurant_id})
            if not restaurant.is_active:
                raise DomainError("RESTAURANT_INACTIVE", f"{restaurant.name} is not taking orders")
            if not restaurant.pickup_active:
                raise DomainError(
                    "SERVICE_TYPE_NOT_AVAILABLE", f"{restaurant.name} does not offer pickup",
                    {"service_type": ServiceType.PICKUP.value},
                )

            cart.restaurant_id = restaurant.id
            cart.service_type = ServiceType.PICKUP
            cart.zone = restaurant.zone
            self.reprice(cart, now)
            self._touch(cart)
            self.db.flush()
        return cart

    def set_delivery_address(
        self,
        customer_id: int,
        address_id: int,
        activate_delivery: bool = True,
        now: Optional[datetime] = None,
    ) -> Cart:
        """Attach an address; by default also switch to delivery from the restaurant serving it."""
        with transaction(self.db):
            cart = self._get_or_create(customer_id)
            address = get_owned_address(self.db, customer_id, address_id)

            if activate_delivery or cart.service_type == ServiceType.DELIVERY:
                restaurant = self._delivery_restaurant_for(address)
                cart.restaurant_id = restaurant.id
                cart.zone = restaurant.zone
                cart.service_type = ServiceType.DELIVERY
                cart.delivery_address_id = address.id
                self.reprice(cart, now)
            else:
                cart.delivery_address_id = address.id
            self._touch(cart)
            self.db.flush()
        return cart

    def reprice(self, cart: Cart, now: Optional[datetime] = None) -> Cart:
        """Re-price every line under the cart's current {service_type, zone}."""
        for item in cart.items:
            self._reprice_item(cart, item, now)
        return cart

    # ===== VALIDATION & SUMMARY =====

    def validate(self, customer_id: int) -> CartValidation:
        """Check the cart can be checked out: non-empty, every item still sellable."""
        cart = self.get_active_cart(customer_id)
        return self.validate_cart(cart)

    def validate_cart(self, cart: Cart) -> CartValidation:
        errors = []
        if cart.is_empty:
            errors.append({"code": "CART_EMPTY", "message": "The cart is empty"})

        for item in cart.items:
            if item.combo_id is not None:
                if item.combo is None or not item.combo.is_active:
                    errors.append(self._item_error(item, "Combo is no longer available"))
                continue

            product = item.product
            if product is None or not product.is_active:
                errors.append(self._item_error(item, "Product is no longer available"))
                continue
            if item.variant_id is not None:
                variant = item.variant
                if variant is None or not variant.is_active:
                    errors.append(self._item_error(item, f"Variant of '{product.name}' is no longer available"))
            elif product.has_variants:
                errors.append(self._item_error(item, f"'{product.name}' now requires a variant"))

        return CartValidation(is_valid=not errors, errors=errors)

    def summary(self, cart: Cart) -> dict:
        subtotal = money(cart.subtotal)
        discounts = money(sum(
            ((item.base_unit_price - item.unit_price) * item.quantity for item in cart.items),
            Decimal("0"),
        ))
        delivery_fee = (
            money(settings.delivery_fee_for_zone(cart.zone))
            if cart.service_type == ServiceType.DELIVERY else Decimal("0.00")
        )
        tax = compute_tax(subtotal)
        return {
            "subtotal": subtotal,
            "discounts": discounts,
            "delivery_fee": delivery_fee,
            "tax": tax,
            "total": money(subtotal + delivery_fee + tax),
            "items_count": sum(item.quantity for item in cart.items),
            "can_checkout": not cart.is_empty,
        }

    # ===== INTERNALS =====

    def _owned_item(self, customer_id: int, item_id: int):
        item = self.db.get(CartItem, item_id)
        if item is None:
            raise NotFoundError("CART_ITEM_NOT_FOUND", "Cart item not found", {"item_id": item_id})
        cart = item.cart
        if cart.customer_id != customer_id:
            raise ForbiddenError("CART_ITEM_FORBIDDEN", "This cart item belongs to another customer")
        if cart.status != CartStatus.ACTIVE:
            raise NotFoundError("CART_ITEM_NOT_FOUND", "Cart item not found", {"item_id": item_id})
        return cart, item

    def _delivery_restaurant_for(self, address: CustomerAddress) -> Restaurant:
        result = self.geofence.resolve(address.latitude, address.longitude)
        if not result.found:
            raise DomainError(
                "ADDRESS_OUTSIDE_DELIVERY_ZONE",
                "We do not deliver to this address yet",
                {"nearest_pickup_locations": [n.to_dict() for n in result.nearest_pickup_locations]},
            )
        return result.restaurant

    def _resolve_options(self, selected_options: Optional[List[dict]]) -> List[dict]:
        """Turn {section_id, option_id} references into priced snapshots."""
        snapshots = []
        for ref in selected_options or []:
            section_id = ref.get("section_id")
            option_id = ref.get("option_id")
            option = self.db.get(SectionOption, option_id) if option_id else None
            if option is None or not option.is_active or (section_id and option.section_id != section_id):
                raise DomainError(
                    "OPTION_NOT_FOUND", "Selected option is not available",
                    {"section_id": section_id, "option_id": option_id},
                )
            snapshots.append({
                "section_id": option.section_id,
                "option_id": option.id,
                "name": option.name,
                "price": str(money(option.price_modifier)),
            })
        return snapshots

    def _reprice_item(self, cart: Cart, item: CartItem, now: Optional[datetime]) -> None:
        if item.combo_id is not None:
            entity = item.combo
        elif item.variant_id is not None:
            entity = item.variant
        else:
            entity = item.product
        if entity is None:
            raise DomainError("ITEM_UNAVAILABLE", "An item in the cart no longer exists", {"item_id": item.id})

        quote = self.prices.price(entity, cart.service_type, cart.zone, now)
        item.unit_price = quote.unit_price
        item.base_unit_price = quote.base_price
        item.promotion_id = quote.promotion.id if quote.promotion else None
        self._recompute_subtotal(item)

    @staticmethod
    def _recompute_subtotal(item: CartItem) -> None:
        item.subtotal = money(Decimal(str(item.unit_price)) * item.quantity + item.options_total)

    @staticmethod
    def _item_error(item: CartItem, message: str) -> dict:
        return {"code": "ITEM_UNAVAILABLE", "item_id": item.id, "message": message}
