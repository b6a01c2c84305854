"""Order lifecycle state machine.

Every status change is a compare-and-set on ``(status, version)``: the
UPDATE only matches when nobody else moved the order since it was read,
and bumps the version. Exactly one ``OrderStatusHistory`` row is written
per change, in the same transaction.

Transition table::

    pending          -> confirmed | preparing | cancelled | refunded
    confirmed        -> preparing | cancelled | refunded
    preparing        -> ready | cancelled | refunded
    ready            -> completed (pickup) | out_for_delivery (delivery) | cancelled | refunded
    out_for_delivery -> delivered | refunded
    delivered        -> completed | refunded
    completed, cancelled, refunded: terminal
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from app.core.errors import ConflictError, DomainError, NotFoundError, ValidationFailed
from app.core.sanitize import sanitize_text
from app.core.timeutil import as_utc, utcnow
from app.db.session import transaction
from app.models.customer import Customer
from app.models.order import Order, OrderStatus, OrderStatusHistory, PaymentStatus
from app.models.restaurant import Driver, Restaurant, ServiceType
from app.services.audit_service import log_action
from app.services.points_service import PointsLedger

logger = logging.getLogger(__name__)

S = OrderStatus

TRANSITIONS = {
    S.PENDING: {S.CONFIRMED, S.PREPARING, S.CANCELLED, S.REFUNDED},
    S.CONFIRMED: {S.PREPARING, S.CANCELLED, S.REFUNDED},
    S.PREPARING: {S.READY, S.CANCELLED, S.REFUNDED},
    S.READY: {S.COMPLETED, S.OUT_FOR_DELIVERY, S.CANCELLED, S.REFUNDED},
    S.OUT_FOR_DELIVERY: {S.DELIVERED, S.REFUNDED},
    S.DELIVERED: {S.COMPLETED, S.REFUNDED},
    S.COMPLETED: set(),
    S.CANCELLED: set(),
    S.REFUNDED: set(),
}

# Transitions that only make sense for one service type
SERVICE_TYPE_ONLY = {
    (S.READY, S.COMPLETED): ServiceType.PICKUP,
    (S.READY, S.OUT_FOR_DELIVERY): ServiceType.DELIVERY,
}

CANCELLABLE_STATUSES = {S.PENDING, S.CONFIRMED, S.PREPARING, S.READY}
DRIVER_ASSIGNABLE_STATUSES = {S.PENDING, S.CONFIRMED, S.PREPARING, S.READY}
RESTAURANT_CHANGEABLE_STATUSES = {S.PENDING, S.CONFIRMED, S.PREPARING}

TIMESTAMP_FIELDS = {
    S.READY: "ready_at",
    S.OUT_FOR_DELIVERY: "picked_up_at",
    S.DELIVERED: "delivered_at",
    S.COMPLETED: "completed_at",
    S.CANCELLED: "cancelled_at",
}


def allowed_transitions(order: Order) -> set:
    """Statuses *order* can move to next, honoring its service type."""
    return {
        target for target in TRANSITIONS[order.status]
        if SERVICE_TYPE_ONLY.get((order.status, target), order.service_type) == order.service_type
    }


class OrderStateMachine:
    """Applies lifecycle changes to orders."""

    def __init__(self, db: Session, ledger: Optional[PointsLedger] = None):
        self.db = db
        self.ledger = ledger or PointsLedger(db)

    def transition(
        self,
        order_id: int,
        new_status: OrderStatus,
        actor_type: str = "staff",
        actor_id: Optional[int] = None,
        notes: Optional[str] = None,
        expected_version: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Order:
        """Move an order to *new_status*.

        Cancelling needs a reason in *notes*. Cancelling or refunding
        reverses the order's point movements.
        """
        try:
            new_status = OrderStatus(new_status)
        except ValueError:
            raise ValidationFailed("INVALID_STATUS", f"Unknown status '{new_status}'")

        notes = sanitize_text(notes)
        if new_status == S.CANCELLED and not notes:
            raise ValidationFailed("CANCELLATION_REASON_REQUIRED", "A cancellation reason is required")
        now = as_utc(now) or utcnow()

        with transaction(self.db):
            order = self._get(order_id)
            previous = order.status
            if expected_version is not None and order.version != expected_version:
                raise ConflictError(
                    "ORDER_STATUS_CHANGED", "The order was modified by someone else; reload and retry",
                    {"current_status": previous.value, "current_version": order.version},
                )

            if new_status not in allowed_transitions(order):
                code = "ORDER_NOT_CANCELLABLE" if new_status == S.CANCELLED else "INVALID_STATUS_TRANSITION"
                raise DomainError(
                    code,
                    f"Cannot change order {order.order_number} from {previous.value} to {new_status.value}",
                    {"current_status": previous.value, "requested_status": new_status.value},
                )

            values = {Order.status: new_status}
            timestamp_field = TIMESTAMP_FIELDS.get(new_status)
            if timestamp_field:
                values[getattr(Order, timestamp_field)] = now
            if new_status == S.CANCELLED:
                values[Order.cancellation_reason] = notes
            if new_status == S.REFUNDED:
                values[Order.payment_status] = PaymentStatus.REFUNDED

            self._compare_and_set(order, values)
            self._record(order, previous, new_status, actor_type, actor_id, notes)

            if new_status in (S.CANCELLED, S.REFUNDED):
                self._reverse_points(order)

        logger.info(f"Order {order.order_number}: {previous.value} -> {new_status.value} by {actor_type}")
        log_action(
            "order_status_changed", "order", order.id, actor_type=actor_type, actor_id=actor_id,
            details={"from": previous.value, "to": new_status.value, "notes": notes},
        )
        return order

    def cancel(
        self,
        order_id: int,
        reason: str,
        actor_type: str = "staff",
        actor_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Order:
        """Cancel an order that has not left the kitchen yet."""
        order = self._get(order_id)
        if order.status not in CANCELLABLE_STATUSES:
            raise DomainError(
                "ORDER_NOT_CANCELLABLE",
                f"Order {order.order_number} can no longer be cancelled",
                {"current_status": order.status.value},
            )
        return self.transition(order_id, S.CANCELLED, actor_type, actor_id, notes=reason, now=now)

    def assign_driver(
        self,
        order_id: int,
        driver_id: int,
        actor_type: str = "staff",
        actor_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Order:
        """Attach a driver of the order's restaurant. Status does not change."""
        now = as_utc(now) or utcnow()
        with transaction(self.db):
            order = self._get(order_id)
            if order.service_type != ServiceType.DELIVERY:
                raise DomainError("DRIVER_NOT_APPLICABLE", "Only delivery orders take a driver")
            if order.status not in DRIVER_ASSIGNABLE_STATUSES:
                raise DomainError(
                    "DRIVER_ASSIGNMENT_CLOSED",
                    f"Cannot assign a driver to a {order.status.value} order",
                    {"current_status": order.status.value},
                )

            driver = self.db.get(Driver, driver_id)
            if driver is None or not driver.is_active:
                raise NotFoundError("DRIVER_NOT_FOUND", "Driver not found or inactive", {"driver_id": driver_id})
            if driver.restaurant_id != order.restaurant_id:
                raise DomainError(
                    "DRIVER_RESTAURANT_MISMATCH", "Driver belongs to a different restaurant",
                    {"driver_restaurant_id": driver.restaurant_id, "order_restaurant_id": order.restaurant_id},
                )

            self._compare_and_set(order, {Order.driver_id: driver.id, Order.assigned_to_driver_at: now})
            self._record(order, order.status, order.status, actor_type, actor_id, f"Driver assigned: {driver.name}")

        logger.info(f"Order {order.order_number}: driver {driver.id} assigned")
        log_action(
            "driver_assigned", "order", order.id, actor_type=actor_type, actor_id=actor_id,
            details={"driver_id": driver.id},
        )
        return order

    def change_restaurant(
        self,
        order_id: int,
        restaurant_id: int,
        actor_type: str = "staff",
        actor_id: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> Order:
        """Hand an order to another restaurant before it is ready. Prices stay frozen."""
        with transaction(self.db):
            order = self._get(order_id)
            if order.status not in RESTAURANT_CHANGEABLE_STATUSES:
                raise DomainError(
                    "RESTAURANT_CHANGE_CLOSED",
                    f"Cannot move a {order.status.value} order to another restaurant",
                    {"current_status": order.status.value},
                )
            restaurant = self.db.get(Restaurant, restaurant_id)
            if restaurant is None or not restaurant.is_active:
                raise NotFoundError(
                    "RESTAURANT_NOT_FOUND", "Restaurant not found or inactive", {"restaurant_id": restaurant_id}
                )
            if not restaurant.supports(order.service_type):
                raise DomainError(
                    "SERVICE_TYPE_NOT_AVAILABLE",
                    f"{restaurant.name} does not offer {order.service_type.value}",
                )

            previous_restaurant_id = order.restaurant_id
            self._compare_and_set(
                order, {Order.restaurant_id: restaurant.id, Order.driver_id: None, Order.assigned_to_driver_at: None}
            )
            note = f"Moved to {restaurant.name}"
            if reason:
                note = f"{note}: {sanitize_text(reason)}"
            self._record(order, order.status, order.status, actor_type, actor_id, note)

        logger.info(f"Order {order.order_number}: restaurant {previous_restaurant_id} -> {restaurant.id}")
        log_action(
            "order_restaurant_changed", "order", order.id, actor_type=actor_type, actor_id=actor_id,
            details={"from": previous_restaurant_id, "to": restaurant.id},
        )
        return order

    # ===== INTERNALS =====

    def _get(self, order_id: int) -> Order:
        order = self.db.get(Order, order_id)
        if order is None:
            raise NotFoundError("ORDER_NOT_FOUND", "Order not found", {"order_id": order_id})
        return order

    def _compare_and_set(self, order: Order, values: dict) -> None:
        expected_status, expected_version = order.status, order.version
        values[Order.version] = expected_version + 1
        updated = (
            self.db.query(Order)
            .filter(Order.id == order.id, Order.status == expected_status, Order.version == expected_version)
            .update(values, synchronize_session=False)
        )
        if updated != 1:
            raise ConflictError(
                "ORDER_STATUS_CHANGED", "The order was modified by someone else; reload and retry",
                {"order_id": order.id},
            )
        self.db.refresh(order)

    def _record(self, order: Order, previous: Optional[OrderStatus], new: OrderStatus,
                actor_type: str, actor_id: Optional[int], notes: Optional[str]) -> None:
        self.db.add(OrderStatusHistory(
            order_id=order.id,
            previous_status=previous,
            new_status=new,
            changed_by_type=actor_type,
            changed_by_id=actor_id,
            notes=notes,
        ))
        self.db.flush()

    def _reverse_points(self, order: Order) -> None:
        """Give back redeemed points and take back earned ones (never below zero)."""
        if order.points_redeemed:
            self.ledger.adjust(
                order.customer_id, order.points_redeemed,
                reason=f"Points returned for order {order.order_number}", order_id=order.id,
            )
        if order.points_earned:
            customer = self.db.get(Customer, order.customer_id)
            revoke = min(order.points_earned, customer.points)
            if revoke < order.points_earned:
                logger.warning(
                    f"Order {order.order_number}: customer {customer.id} already spent "
                    f"{order.points_earned - revoke} earned points; revoking {revoke}"
                )
            self.ledger.adjust(
                order.customer_id, -revoke,
                reason=f"Points revoked for order {order.order_number}", order_id=order.id,
            )
