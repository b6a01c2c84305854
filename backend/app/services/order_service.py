"""Customer-facing order queries and reorder."""

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session, selectinload

from app.core.errors import ForbiddenError, NotFoundError, OrderingError
from app.models.order import Order, OrderStatus, TERMINAL_STATUSES
from app.models.restaurant import ServiceType
from app.services.cart_service import CartEngine
from app.services.order_state_service import allowed_transitions

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = [s for s in OrderStatus if s not in TERMINAL_STATUSES]

# Ordered milestones shown on the tracking screen
TRACKING_STEPS = {
    ServiceType.PICKUP: [
        (OrderStatus.PENDING, "created_at"),
        (OrderStatus.CONFIRMED, None),
        (OrderStatus.PREPARING, None),
        (OrderStatus.READY, "ready_at"),
        (OrderStatus.COMPLETED, "completed_at"),
    ],
    ServiceType.DELIVERY: [
        (OrderStatus.PENDING, "created_at"),
        (OrderStatus.CONFIRMED, None),
        (OrderStatus.PREPARING, None),
        (OrderStatus.READY, "ready_at"),
        (OrderStatus.OUT_FOR_DELIVERY, "picked_up_at"),
        (OrderStatus.DELIVERED, "delivered_at"),
    ],
}


@dataclass
class ReorderResult:
    cart: object
    added: int
    skipped: List[dict]


class OrderService:
    def __init__(self, db: Session):
        self.db = db

    def list_orders(
        self,
        customer_id: int,
        status: Optional[OrderStatus] = None,
        skip: int = 0,
        limit: int = 20,
    ) -> Tuple[List[Order], int]:
        query = self.db.query(Order).filter(Order.customer_id == customer_id)
        if status:
            query = query.filter(Order.status == status)
        total = query.count()
        orders = (
            query.options(selectinload(Order.items))
            .order_by(Order.created_at.desc(), Order.id.desc())
            .offset(skip)
            .limit(limit)
            .all()
        )
        return orders, total

    def active_orders(self, customer_id: int) -> List[Order]:
        return (
            self.db.query(Order)
            .options(selectinload(Order.items))
            .filter(Order.customer_id == customer_id, Order.status.in_(ACTIVE_STATUSES))
            .order_by(Order.created_at.desc(), Order.id.desc())
            .all()
        )

    def get_for_customer(self, order_id: int, customer_id: int) -> Order:
        """Load an order, distinguishing missing (404) from someone else's (403)."""
        order = self.db.get(Order, order_id)
        if order is None:
            raise NotFoundError("ORDER_NOT_FOUND", "Order not found", {"order_id": order_id})
        if order.customer_id != customer_id:
            raise ForbiddenError("ORDER_FORBIDDEN", "You do not have access to this order")
        return order

    def track(self, order_id: int, customer_id: int) -> dict:
        order = self.get_for_customer(order_id, customer_id)
        reached = {h.new_status: h.created_at for h in order.status_history}

        steps = []
        current_index = None
        for index, (status, field) in enumerate(TRACKING_STEPS[order.service_type]):
            at = getattr(order, field) if field else None
            at = at or reached.get(status)
            completed = status in reached or at is not None
            if status == order.status:
                current_index = index
            steps.append({"status": status.value, "completed": completed, "at": at})

        return {
            "order_id": order.id,
            "order_number": order.order_number,
            "status": order.status.value,
            "service_type": order.service_type.value,
            "current_step": current_index,
            "steps": steps,
            "estimated_ready_at": order.estimated_ready_at,
            "driver": (
                {"id": order.driver.id, "name": order.driver.name, "phone": order.driver.phone}
                if order.driver else None
            ),
            "next_statuses": sorted(s.value for s in allowed_transitions(order)),
            "history": [
                {
                    "previous_status": h.previous_status.value if h.previous_status else None,
                    "new_status": h.new_status.value,
                    "notes": h.notes,
                    "at": h.created_at,
                }
                for h in order.status_history
            ],
        }

    def reorder(self, order_id: int, customer_id: int, carts: Optional[CartEngine] = None) -> ReorderResult:
        """Replace the active cart with the order's lines at current prices.

        Lines whose product, variant, combo or options are gone are skipped
        and reported rather than failing the whole reorder.
        """
        order = self.get_for_customer(order_id, customer_id)
        carts = carts or CartEngine(self.db)

        carts.clear(customer_id)
        self._restore_context(carts, order, customer_id)

        added, skipped = 0, []
        for item in order.items:
            options = [
                {"section_id": opt.get("section_id"), "option_id": opt.get("option_id")}
                for opt in item.selected_options or []
            ]
            try:
                carts.add_item(
                    customer_id,
                    product_id=item.product_id,
                    combo_id=item.combo_id,
                    variant_id=item.variant_id,
                    quantity=item.quantity,
                    selected_options=options,
                    notes=item.notes,
                )
                added += 1
            except OrderingError as e:
                skipped.append({
                    "name": (item.product_snapshot or {}).get("name"),
                    "error_code": e.error_code,
                    "message": e.message,
                })

        cart = carts.get_active_cart(customer_id)
        logger.info(f"Reorder of {order.order_number}: {added} added, {len(skipped)} skipped")
        return ReorderResult(cart=cart, added=added, skipped=skipped)

    @staticmethod
    def _restore_context(carts: CartEngine, order: Order, customer_id: int) -> None:
        """Reuse the order's delivery address or pickup restaurant when still possible."""
        if order.service_type == ServiceType.DELIVERY and order.delivery_address_id:
            try:
                carts.set_delivery_address(customer_id, order.delivery_address_id)
                return
            except OrderingError as e:
                logger.info(f"Reorder of {order.order_number}: address unusable ({e.error_code}), trying pickup")
        try:
            carts.set_restaurant(customer_id, order.restaurant_id)
        except OrderingError as e:
            logger.info(f"Reorder of {order.order_number}: restaurant unavailable ({e.error_code})")
