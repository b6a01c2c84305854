"""Cart -> order conversion.

Conversion is a single transaction: preconditions are checked fail-fast
(each with its own error code), the cart is re-priced if the requested
pricing context differs from the cart's, amounts are computed, the order
and its item/address/NIT snapshots are written, the cart is flipped to
``converted`` and the two ledger entries (redemption debit, earning
credit) are appended. Any failure rolls everything back and leaves the
cart ``active``.

The flip is a conditional ``UPDATE carts SET status='converted' WHERE
id=:id AND status='active'``; when a concurrent conversion already
committed, zero rows match and the caller gets a retryable conflict.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import ConflictError, DomainError, ForbiddenError, NotFoundError, ValidationFailed
from app.core.sanitize import sanitize_text
from app.core.timeutil import as_utc, to_local, utcnow
from app.db.session import transaction
from app.models.cart import Cart, CartItem, CartStatus
from app.models.customer import Customer, CustomerNit
from app.models.order import Order, OrderItem, OrderStatus, OrderStatusHistory, PaymentMethod
from app.models.restaurant import Restaurant, ServiceType
from app.services.audit_service import log_action
from app.services.cart_service import CartEngine, get_owned_address
from app.services.points_service import PointsLedger, calculate_points_to_earn
from app.services.pricing_service import compute_tax, money

logger = logging.getLogger(__name__)


@dataclass
class OrderAmounts:
    subtotal: Decimal
    discount_total: Decimal
    delivery_fee: Decimal
    tax: Decimal
    total: Decimal


def generate_order_number(now: datetime) -> str:
    return f"ORD-{now:%Y%m%d}-{uuid.uuid4().hex[:6].upper()}"


class OrderConversionService:
    """Turns a customer's active cart into an immutable order."""

    def __init__(self, db: Session, carts: Optional[CartEngine] = None, ledger: Optional[PointsLedger] = None):
        self.db = db
        self.carts = carts or CartEngine(db)
        self.ledger = ledger or PointsLedger(db)

    def convert(
        self,
        customer_id: int,
        restaurant_id: int,
        service_type: ServiceType,
        payment_method: PaymentMethod,
        delivery_address_id: Optional[int] = None,
        points_to_redeem: int = 0,
        scheduled_pickup_time: Optional[datetime] = None,
        scheduled_delivery_time: Optional[datetime] = None,
        nit_id: Optional[int] = None,
        notes: Optional[str] = None,
        cart_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Order:
        """Convert the customer's active cart (or *cart_id*) into a ``pending`` order."""
        try:
            service_type = ServiceType(service_type)
            payment_method = PaymentMethod(payment_method)
        except ValueError as e:
            raise ValidationFailed("INVALID_REQUEST", str(e))
        if points_to_redeem is None or points_to_redeem < 0:
            raise ValidationFailed("INVALID_POINTS", "points_to_redeem cannot be negative")

        now = as_utc(now) or utcnow()

        with transaction(self.db):
            customer = self._lock_customer(customer_id)
            cart = self._lock_cart(customer_id, cart_id)

            if cart.is_empty:
                raise DomainError("CART_EMPTY", "The cart is empty")
            validation = self.carts.validate_cart(cart)
            if not validation.is_valid:
                raise DomainError("CART_INVALID", "Some items in the cart are no longer available",
                                  {"errors": validation.errors})

            restaurant = self._check_restaurant(restaurant_id, service_type, now)

            address = None
            scheduled_for = None
            if service_type == ServiceType.DELIVERY:
                address = self._check_delivery_address(customer_id, delivery_address_id, restaurant)
                scheduled_for = as_utc(scheduled_delivery_time)
                scheduled_pickup_time = None
            else:
                scheduled_pickup_time = self._check_pickup_time(scheduled_pickup_time, restaurant, now)

            nit = self._owned_nit(customer_id, nit_id) if nit_id else None

            repriced = self._align_pricing_context(cart, restaurant, service_type, address, now)
            if not repriced:
                self._check_promotions(cart, now)

            subtotal = money(cart.subtotal)
            if subtotal < money(restaurant.minimum_order_amount):
                raise DomainError(
                    "MINIMUM_ORDER_NOT_MET",
                    f"Minimum order at {restaurant.name} is Q{money(restaurant.minimum_order_amount)}",
                    {"minimum_order_amount": money(restaurant.minimum_order_amount), "subtotal": subtotal},
                )

            amounts = self._compute_amounts(subtotal, restaurant, service_type, customer, points_to_redeem)
            multiplier = customer.customer_type.multiplier if customer.customer_type else Decimal("1")
            points_earned = calculate_points_to_earn(amounts.total, multiplier)

            self._flip_cart(cart)

            order = Order(
                order_number=generate_order_number(now),
                customer_id=customer.id,
                restaurant_id=restaurant.id,
                service_type=service_type,
                zone=restaurant.zone,
                status=OrderStatus.PENDING,
                subtotal=amounts.subtotal,
                discount_total=amounts.discount_total,
                delivery_fee=amounts.delivery_fee,
                tax=amounts.tax,
                total=amounts.total,
                delivery_address_id=address.id if address else None,
                delivery_address_snapshot=address.snapshot() if address else None,
                nit_id=nit.id if nit else None,
                nit_snapshot=nit.snapshot() if nit else None,
                points_earned=points_earned,
                points_redeemed=points_to_redeem,
                payment_method=payment_method,
                notes=sanitize_text(notes),
                scheduled_for=scheduled_for,
                scheduled_pickup_time=scheduled_pickup_time,
                estimated_ready_at=scheduled_pickup_time or now + timedelta(minutes=restaurant.estimated_pickup_time),
            )
            order.items = [self._snapshot_item(item) for item in cart.items]
            self.db.add(order)
            self.db.flush()

            self.db.add(OrderStatusHistory(
                order_id=order.id,
                previous_status=None,
                new_status=OrderStatus.PENDING,
                changed_by_type="customer",
                changed_by_id=customer.id,
                notes="Order placed",
            ))

            if points_to_redeem:
                self.ledger.redeem(
                    customer.id, points_to_redeem, order_id=order.id,
                    description=f"Redeemed on order {order.order_number}",
                )
            self.ledger.earn(
                customer.id, points_earned, order_id=order.id,
                description=f"Earned on order {order.order_number}",
            )
            self.db.flush()

        logger.info(
            f"Cart {cart.id} converted to order {order.order_number} "
            f"(total {amounts.total}, +{points_earned}/-{points_to_redeem} points)"
        )
        log_action(
            "cart_converted", "order", order.id, actor_type="customer", actor_id=customer_id,
            details={"cart_id": cart.id, "order_number": order.order_number, "total": str(amounts.total)},
        )
        return order

    # ===== PRECONDITIONS =====

    def _lock_customer(self, customer_id: int) -> Customer:
        customer = (
            self.db.query(Customer)
            .filter(Customer.id == customer_id)
            .with_for_update()
            .first()
        )
        if customer is None:
            raise NotFoundError("CUSTOMER_NOT_FOUND", "Customer not found", {"customer_id": customer_id})
        return customer

    def _lock_cart(self, customer_id: int, cart_id: Optional[int]) -> Cart:
        if cart_id is None:
            cart = self.carts.find_active_cart(customer_id, lock=True)
            if cart is None:
                raise DomainError("CART_NOT_FOUND", "There is no active cart to check out")
            return cart

        cart = self.db.query(Cart).filter(Cart.id == cart_id).with_for_update().first()
        if cart is None:
            raise NotFoundError("CART_NOT_FOUND", "Cart not found", {"cart_id": cart_id})
        if cart.customer_id != customer_id:
            raise ForbiddenError("CART_FORBIDDEN", "This cart belongs to another customer")
        if cart.status != CartStatus.ACTIVE:
            raise ConflictError(
                "CART_ALREADY_CONVERTED", "This cart has already been checked out",
                {"cart_id": cart_id, "status": cart.status.value},
            )
        return cart

    def _check_restaurant(self, restaurant_id: int, service_type: ServiceType, now: datetime) -> Restaurant:
        restaurant = self.db.get(Restaurant, restaurant_id)
        if restaurant is None:
            raise DomainError("RESTAURANT_NOT_FOUND", "Restaurant not found", {"restaurant_id": restaurant_id})
        if not restaurant.is_active:
            raise DomainError("RESTAURANT_INACTIVE", f"{restaurant.name} is not taking orders")
        if not restaurant.supports(service_type):
            raise DomainError(
                "SERVICE_TYPE_NOT_AVAILABLE",
                f"{restaurant.name} does not offer {service_type.value}",
                {"service_type": service_type.value},
            )
        if not restaurant.can_accept_orders(service_type, to_local(now)):
            raise DomainError("RESTAURANT_CLOSED", f"{restaurant.name} is not accepting orders right now")
        return restaurant

    def _check_delivery_address(self, customer_id: int, address_id: Optional[int], restaurant: Restaurant):
        if address_id is None:
            raise DomainError("DELIVERY_ADDRESS_REQUIRED", "Delivery orders need a delivery address")
        address = get_owned_address(self.db, customer_id, address_id)

        result = self.carts.geofence.resolve(address.latitude, address.longitude)
        if not result.found:
            raise DomainError(
                "ADDRESS_OUTSIDE_DELIVERY_ZONE", "We do not deliver to this address yet",
                {"nearest_pickup_locations": [n.to_dict() for n in result.nearest_pickup_locations]},
            )
        if result.restaurant.id != restaurant.id:
            raise DomainError(
                "ADDRESS_OUTSIDE_DELIVERY_ZONE",
                f"{restaurant.name} does not deliver to this address",
                {"resolved_restaurant_id": result.restaurant.id},
            )
        return address

    def _check_pickup_time(
        self, scheduled: Optional[datetime], restaurant: Restaurant, now: datetime
    ) -> datetime:
        if scheduled is None:
            return now + timedelta(minutes=restaurant.estimated_pickup_time)
        scheduled = as_utc(scheduled)
        earliest = now + timedelta(minutes=settings.min_pickup_lead_minutes)
        if scheduled < earliest:
            raise DomainError(
                "SCHEDULED_TIME_TOO_SOON",
                f"Pickup must be scheduled at least {settings.min_pickup_lead_minutes} minutes ahead",
                {"earliest": earliest.isoformat()},
            )
        return scheduled

    def _owned_nit(self, customer_id: int, nit_id: int) -> CustomerNit:
        nit = self.db.get(CustomerNit, nit_id)
        if nit is None:
            raise NotFoundError("NIT_NOT_FOUND", "NIT not found", {"nit_id": nit_id})
        if nit.customer_id != customer_id:
            raise ForbiddenError("NIT_FORBIDDEN", "This NIT belongs to another customer")
        return nit

    def _align_pricing_context(self, cart: Cart, restaurant: Restaurant, service_type: ServiceType,
                               address, now: datetime) -> bool:
        """Bind the cart to the order's context; re-price when {service_type, zone} changed."""
        changed = cart.service_type != service_type or cart.zone != restaurant.zone
        cart.restaurant_id = restaurant.id
        cart.service_type = service_type
        cart.zone = restaurant.zone
        if address is not None:
            cart.delivery_address_id = address.id
        if changed:
            logger.info(f"Cart {cart.id} re-priced for {service_type.value}/{restaurant.zone.value} at checkout")
            self.carts.reprice(cart, now)
        return changed

    def _check_promotions(self, cart: Cart, now: datetime) -> None:
        local_now = to_local(now)
        for item in cart.items:
            if item.promotion_id is None:
                continue
            promotion = item.promotion
            if promotion is None or not promotion.is_valid_at(local_now):
                raise DomainError(
                    "PROMOTION_EXPIRED",
                    "A promotion applied to your cart has ended; review the cart before ordering",
                    {"item_id": item.id, "promotion_id": item.promotion_id},
                )

    def _compute_amounts(self, subtotal: Decimal, restaurant: Restaurant, service_type: ServiceType,
                         customer: Customer, points_to_redeem: int) -> OrderAmounts:
        delivery_fee = (
            money(settings.delivery_fee_for_zone(restaurant.zone))
            if service_type == ServiceType.DELIVERY else Decimal("0.00")
        )

        discount_total = Decimal("0.00")
        if points_to_redeem:
            if points_to_redeem < settings.min_points_to_redeem:
                raise DomainError(
                    "POINTS_BELOW_MINIMUM",
                    f"At least {settings.min_points_to_redeem} points are required to redeem",
                    {"minimum": settings.min_points_to_redeem},
                )
            if points_to_redeem > customer.points:
                raise DomainError(
                    "INSUFFICIENT_POINTS",
                    f"You have {customer.points} points available",
                    {"available": customer.points, "requested": points_to_redeem},
                )
            discount_total = money(points_to_redeem * settings.point_value)
            if discount_total > subtotal + delivery_fee:
                raise DomainError(
                    "POINTS_EXCEED_ORDER_TOTAL",
                    "Redeemed points are worth more than the order",
                    {"discount": discount_total, "payable": subtotal + delivery_fee},
                )

        tax = compute_tax(subtotal, discount_total)
        total = money(subtotal - discount_total + delivery_fee + tax)
        return OrderAmounts(subtotal, discount_total, delivery_fee, tax, total)

    # ===== WRITES =====

    def _flip_cart(self, cart: Cart) -> None:
        self.db.flush()
        flipped = (
            self.db.query(Cart)
            .filter(Cart.id == cart.id, Cart.status == CartStatus.ACTIVE)
            .update({Cart.status: CartStatus.CONVERTED}, synchronize_session=False)
        )
        if flipped != 1:
            raise ConflictError(
                "CART_ALREADY_CONVERTED", "This cart was checked out by another request",
                {"cart_id": cart.id},
            )
        self.db.expire(cart, ["status"])

    @staticmethod
    def _snapshot_item(item: CartItem) -> OrderItem:
        if item.combo_id is not None:
            combo = item.combo
            product_snapshot = {
                "type": "combo",
                "name": combo.name,
                "description": combo.description,
                "items": [
                    {"product_id": ci.product_id, "name": ci.product.name, "quantity": ci.quantity}
                    for ci in combo.items
                ],
            }
        else:
            product = item.product
            product_snapshot = {
                "type": "product",
                "name": product.name,
                "description": product.description,
                "category": product.category,
                "variant": item.variant.name if item.variant is not None else None,
            }

        promotion_snapshot = None
        if item.promotion is not None:
            promotion_snapshot = {
                "id": item.promotion.id,
                "name": item.promotion.name,
                "type": item.promotion.type.value,
                "base_unit_price": str(money(item.base_unit_price)),
                "unit_price": str(money(item.unit_price)),
            }

        return OrderItem(
            product_id=item.product_id,
            variant_id=item.variant_id,
            combo_id=item.combo_id,
            quantity=item.quantity,
            unit_price=item.unit_price,
            options_price=money(item.options_total),
            subtotal=item.subtotal,
            selected_options=item.selected_options,
            product_snapshot=product_snapshot,
            promotion_snapshot=promotion_snapshot,
            notes=item.notes,
        )
