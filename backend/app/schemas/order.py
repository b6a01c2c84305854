"""Customer order schemas."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator

from app.models.order import OrderStatus, PaymentMethod, PaymentStatus
from app.models.restaurant import ServiceType, Zone
from app.schemas.cart import CartResponse


class OrderCreate(BaseModel):
    """Checkout request: converts the caller's active cart."""

    restaurant_id: int
    service_type: ServiceType
    payment_method: PaymentMethod
    delivery_address_id: Optional[int] = None
    points_to_redeem: int = Field(default=0, ge=0)
    scheduled_pickup_time: Optional[datetime] = None
    scheduled_delivery_time: Optional[datetime] = None
    nit_id: Optional[int] = None
    notes: Optional[str] = Field(default=None, max_length=500)
    cart_id: Optional[int] = None

    @model_validator(mode="after")
    def schedule_matches_service_type(self):
        if self.service_type == ServiceType.DELIVERY and self.scheduled_pickup_time is not None:
            raise ValueError("scheduled_pickup_time only applies to pickup orders")
        if self.service_type == ServiceType.PICKUP and self.scheduled_delivery_time is not None:
            raise ValueError("scheduled_delivery_time only applies to delivery orders")
        return self


class OrderCancel(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


class OrderStatusUpdate(BaseModel):
    """Staff status change. ``expected_version`` enables optimistic concurrency."""

    status: OrderStatus
    notes: Optional[str] = Field(default=None, max_length=500)
    expected_version: Optional[int] = None


class AssignDriverRequest(BaseModel):
    driver_id: int


class ChangeRestaurantRequest(BaseModel):
    restaurant_id: int
    reason: Optional[str] = Field(default=None, max_length=500)


class OrderItemResponse(BaseModel):
    id: int
    product_id: Optional[int] = None
    variant_id: Optional[int] = None
    combo_id: Optional[int] = None
    quantity: int
    unit_price: Decimal
    options_price: Decimal
    subtotal: Decimal
    selected_options: Optional[List[Dict[str, Any]]] = None
    product_snapshot: Dict[str, Any]
    promotion_snapshot: Optional[Dict[str, Any]] = None
    notes: Optional[str] = None

    model_config = {"from_attributes": True}


class OrderStatusHistoryResponse(BaseModel):
    id: int
    previous_status: Optional[OrderStatus] = None
    new_status: OrderStatus
    changed_by_type: str
    changed_by_id: Optional[int] = None
    notes: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class OrderResponse(BaseModel):
    """Order response schema."""

    id: int
    order_number: str
    customer_id: int
    restaurant_id: int
    driver_id: Optional[int] = None
    service_type: ServiceType
    zone: Zone
    status: OrderStatus
    version: int

    subtotal: Decimal
    discount_total: Decimal
    delivery_fee: Decimal
    tax: Decimal
    total: Decimal

    delivery_address_id: Optional[int] = None
    delivery_address_snapshot: Optional[Dict[str, Any]] = None
    nit_snapshot: Optional[Dict[str, Any]] = None
    points_earned: int
    points_redeemed: int
    payment_method: PaymentMethod
    payment_status: PaymentStatus
    notes: Optional[str] = None

    scheduled_for: Optional[datetime] = None
    scheduled_pickup_time: Optional[datetime] = None
    estimated_ready_at: Optional[datetime] = None
    ready_at: Optional[datetime] = None
    assigned_to_driver_at: Optional[datetime] = None
    picked_up_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    created_at: Optional[datetime] = None

    items: List[OrderItemResponse] = []

    model_config = {"from_attributes": True}


class OrderDetailResponse(OrderResponse):
    status_history: List[OrderStatusHistoryResponse] = []


class TrackingStep(BaseModel):
    status: OrderStatus
    completed: bool
    at: Optional[datetime] = None


class TrackingHistoryEntry(BaseModel):
    previous_status: Optional[OrderStatus] = None
    new_status: OrderStatus
    notes: Optional[str] = None
    at: Optional[datetime] = None


class OrderTrackingResponse(BaseModel):
    order_id: int
    order_number: str
    status: OrderStatus
    service_type: ServiceType
    current_step: Optional[int] = None
    steps: List[TrackingStep]
    estimated_ready_at: Optional[datetime] = None
    driver: Optional[Dict[str, Any]] = None
    next_statuses: List[OrderStatus] = []
    history: List[TrackingHistoryEntry] = []


class SkippedItem(BaseModel):
    name: Optional[str] = None
    error_code: str
    message: str


class ReorderResponse(BaseModel):
    cart: CartResponse
    added: int
    skipped_count: int
    skipped: List[SkippedItem] = []
