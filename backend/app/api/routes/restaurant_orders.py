"""Restaurant staff routes for moving orders through their lifecycle."""

from fastapi import APIRouter, Request

from app.core.rate_limit import limiter
from app.core.rbac import RequireStaff
from app.db.session import DbSession
from app.schemas.order import (
    AssignDriverRequest,
    ChangeRestaurantRequest,
    OrderDetailResponse,
    OrderStatusUpdate,
)
from app.services.order_state_service import OrderStateMachine

router = APIRouter()


@router.put("/restaurant/orders/{order_id}/status", response_model=OrderDetailResponse)
@limiter.limit("60/minute")
def update_order_status(
    request: Request, db: DbSession, staff: RequireStaff, order_id: int, body: OrderStatusUpdate
):
    """Move an order to its next status. Cancelling requires ``notes`` as the reason."""
    return OrderStateMachine(db).transition(
        order_id,
        body.status,
        actor_type=staff.actor.value,
        actor_id=staff.id,
        notes=body.notes,
        expected_version=body.expected_version,
    )


@router.post("/restaurant/orders/{order_id}/assign-driver", response_model=OrderDetailResponse)
@limiter.limit("30/minute")
def assign_driver(
    request: Request, db: DbSession, staff: RequireStaff, order_id: int, body: AssignDriverRequest
):
    return OrderStateMachine(db).assign_driver(
        order_id, body.driver_id, actor_type=staff.actor.value, actor_id=staff.id
    )


@router.put("/restaurant/orders/{order_id}/restaurant", response_model=OrderDetailResponse)
@limiter.limit("30/minute")
def change_order_restaurant(
    request: Request, db: DbSession, staff: RequireStaff, order_id: int, body: ChangeRestaurantRequest
):
    """Hand the order to another restaurant. Any assigned driver is released."""
    return OrderStateMachine(db).change_restaurant(
        order_id, body.restaurant_id, actor_type=staff.actor.value, actor_id=staff.id, reason=body.reason
    )
