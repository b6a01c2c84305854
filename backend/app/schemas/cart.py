"""Cart schemas."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator

from app.core.config import settings
from app.models.cart import CartStatus
from app.models.restaurant import ServiceType, Zone


class SelectedOptionRef(BaseModel):
    """Reference to a catalog option chosen for a line."""

    section_id: Optional[int] = None
    option_id: int


class CartItemAdd(BaseModel):
    """Add a product (optionally a variant) or a combo to the cart."""

    product_id: Optional[int] = None
    combo_id: Optional[int] = None
    variant_id: Optional[int] = None
    quantity: int = Field(default=1, ge=1, le=settings.max_item_quantity)
    selected_options: List[SelectedOptionRef] = []
    notes: Optional[str] = Field(default=None, max_length=500)

    @model_validator(mode="after")
    def exactly_one_reference(self):
        if (self.product_id is None) == (self.combo_id is None):
            raise ValueError("Provide exactly one of product_id or combo_id")
        if self.combo_id is not None and self.variant_id is not None:
            raise ValueError("variant_id only applies to products")
        return self


class CartItemUpdate(BaseModel):
    quantity: Optional[int] = Field(default=None, ge=1, le=settings.max_item_quantity)
    selected_options: Optional[List[SelectedOptionRef]] = None
    reprice: bool = False


class ServiceTypeUpdate(BaseModel):
    service_type: ServiceType


class CartRestaurantUpdate(BaseModel):
    restaurant_id: int


class CartDeliveryAddressUpdate(BaseModel):
    address_id: int


class SelectedOptionResponse(BaseModel):
    section_id: Optional[int] = None
    option_id: int
    name: str
    price: Decimal


class CartItemResponse(BaseModel):
    """Cart item response schema."""

    id: int
    product_id: Optional[int] = None
    variant_id: Optional[int] = None
    combo_id: Optional[int] = None
    quantity: int
    selected_options: Optional[List[SelectedOptionResponse]] = None
    unit_price: Decimal
    base_unit_price: Decimal
    promotion_id: Optional[int] = None
    subtotal: Decimal
    notes: Optional[str] = None

    model_config = {"from_attributes": True}


class CartRestaurantResponse(BaseModel):
    id: int
    name: str
    address: Optional[str] = None
    zone: Zone
    estimated_pickup_time: int
    estimated_delivery_time: int

    model_config = {"from_attributes": True}


class CartSummary(BaseModel):
    subtotal: Decimal
    discounts: Decimal
    delivery_fee: Decimal
    tax: Decimal
    total: Decimal
    items_count: int
    can_checkout: bool


class CartResponse(BaseModel):
    """Active cart with its lines, restaurant and totals."""

    id: int
    customer_id: int
    status: CartStatus
    service_type: ServiceType
    zone: Zone
    restaurant_id: Optional[int] = None
    restaurant: Optional[CartRestaurantResponse] = None
    delivery_address_id: Optional[int] = None
    expires_at: Optional[datetime] = None
    items: List[CartItemResponse] = []
    summary: Optional[CartSummary] = None

    model_config = {"from_attributes": True}


class CartValidationResponse(BaseModel):
    is_valid: bool
    errors: List[Dict[str, Any]] = []
