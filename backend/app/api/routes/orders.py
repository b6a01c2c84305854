"""Customer order routes: checkout, history, tracking, cancel and reorder."""

import logging
from typing import Optional

from fastapi import APIRouter, Query, Request

from app.api.routes.cart import serialize_cart
from app.core.rate_limit import limiter
from app.core.rbac import ActorType, CurrentCustomer
from app.core.responses import list_response, paginated_response
from app.db.session import DbSession
from app.models.order import OrderStatus
from app.schemas.order import (
    OrderCancel,
    OrderCreate,
    OrderDetailResponse,
    OrderResponse,
    OrderTrackingResponse,
    ReorderResponse,
)
from app.services.cart_service import CartEngine
from app.services.order_conversion_service import OrderConversionService
from app.services.order_service import OrderService
from app.services.order_state_service import OrderStateMachine

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/orders", response_model=OrderDetailResponse, status_code=201)
@limiter.limit("10/minute")
def create_order(request: Request, db: DbSession, customer: CurrentCustomer, body: OrderCreate):
    """Check out the active cart.

    Fails with 422 and a specific ``error_code`` when a precondition does
    not hold (empty cart, address outside the delivery area, pickup time
    too soon, ...), and with 409 when the cart was already converted.
    """
    order = OrderConversionService(db).convert(
        customer.id,
        restaurant_id=body.restaurant_id,
        service_type=body.service_type,
        payment_method=body.payment_method,
        delivery_address_id=body.delivery_address_id,
        points_to_redeem=body.points_to_redeem,
        scheduled_pickup_time=body.scheduled_pickup_time,
        scheduled_delivery_time=body.scheduled_delivery_time,
        nit_id=body.nit_id,
        notes=body.notes,
        cart_id=body.cart_id,
    )
    return order


@router.get("/orders")
@limiter.limit("60/minute")
def list_orders(
    request: Request,
    db: DbSession,
    customer: CurrentCustomer,
    status: Optional[OrderStatus] = None,
    skip: int = Query(0, ge=0, description="Number of items to skip"),
    limit: int = Query(20, ge=1, le=100, description="Maximum items to return"),
):
    orders, total = OrderService(db).list_orders(customer.id, status=status, skip=skip, limit=limit)
    items = [OrderResponse.model_validate(o) for o in orders]
    return paginated_response(items, total, skip, limit)


@router.get("/orders/active")
@limiter.limit("60/minute")
def list_active_orders(request: Request, db: DbSession, customer: CurrentCustomer):
    """Orders that are not completed, cancelled or refunded."""
    orders = OrderService(db).active_orders(customer.id)
    return list_response([OrderResponse.model_validate(o) for o in orders])


@router.get("/orders/{order_id}", response_model=OrderDetailResponse)
@limiter.limit("60/minute")
def get_order(request: Request, db: DbSession, customer: CurrentCustomer, order_id: int):
    return OrderService(db).get_for_customer(order_id, customer.id)


@router.get("/orders/{order_id}/track", response_model=OrderTrackingResponse)
@limiter.limit("60/minute")
def track_order(request: Request, db: DbSession, customer: CurrentCustomer, order_id: int):
    return OrderService(db).track(order_id, customer.id)


@router.post("/orders/{order_id}/cancel", response_model=OrderDetailResponse)
@limiter.limit("10/minute")
def cancel_order(request: Request, db: DbSession, customer: CurrentCustomer, order_id: int, body: OrderCancel):
    OrderService(db).get_for_customer(order_id, customer.id)
    return OrderStateMachine(db).cancel(
        order_id, body.reason, actor_type=ActorType.CUSTOMER.value, actor_id=customer.id
    )


@router.post("/orders/{order_id}/reorder", response_model=ReorderResponse)
@limiter.limit("10/minute")
def reorder(request: Request, db: DbSession, customer: CurrentCustomer, order_id: int):
    """Refill the cart with a past order's items at today's prices."""
    engine = CartEngine(db)
    result = OrderService(db).reorder(order_id, customer.id, carts=engine)
    return ReorderResponse(
        cart=serialize_cart(result.cart, engine),
        added=result.added,
        skipped_count=len(result.skipped),
        skipped=result.skipped,
    )
