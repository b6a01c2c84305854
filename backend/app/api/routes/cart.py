"""Shopping cart routes for the authenticated customer."""

import logging

from fastapi import APIRouter, Request

from app.core.rate_limit import limiter
from app.core.rbac import CurrentCustomer
from app.core.sanitize import sanitize_text
from app.db.session import DbSession
from app.models.cart import Cart
from app.schemas.cart import (
    CartDeliveryAddressUpdate,
    CartItemAdd,
    CartItemResponse,
    CartItemUpdate,
    CartResponse,
    CartRestaurantUpdate,
    CartSummary,
    CartValidationResponse,
    ServiceTypeUpdate,
)
from app.services.cart_service import CartEngine

logger = logging.getLogger(__name__)

router = APIRouter()


def serialize_cart(cart: Cart, engine: CartEngine) -> CartResponse:
    data = CartResponse.model_validate(cart)
    data.summary = CartSummary(**engine.summary(cart))
    return data


def _option_refs(options) -> list:
    return [opt.model_dump() for opt in options] if options is not None else None


@router.get("/cart", response_model=CartResponse)
@limiter.limit("60/minute")
def get_cart(request: Request, db: DbSession, customer: CurrentCustomer):
    """Current active cart; an empty one is created if the customer has none."""
    engine = CartEngine(db)
    cart = engine.get_active_cart(customer.id)
    return serialize_cart(cart, engine)


@router.post("/cart/items", response_model=CartItemResponse, status_code=201)
@limiter.limit("60/minute")
def add_cart_item(request: Request, db: DbSession, customer: CurrentCustomer, body: CartItemAdd):
    engine = CartEngine(db)
    item = engine.add_item(
        customer.id,
        product_id=body.product_id,
        combo_id=body.combo_id,
        variant_id=body.variant_id,
        quantity=body.quantity,
        selected_options=_option_refs(body.selected_options),
        notes=sanitize_text(body.notes),
    )
    return item


@router.put("/cart/items/{item_id}", response_model=CartItemResponse)
@limiter.limit("60/minute")
def update_cart_item(
    request: Request, db: DbSession, customer: CurrentCustomer, item_id: int, body: CartItemUpdate
):
    engine = CartEngine(db)
    return engine.update_item(
        customer.id,
        item_id,
        quantity=body.quantity,
        selected_options=_option_refs(body.selected_options),
        reprice=body.reprice,
    )


@router.delete("/cart/items/{item_id}", response_model=CartResponse)
@limiter.limit("60/minute")
def remove_cart_item(request: Request, db: DbSession, customer: CurrentCustomer, item_id: int):
    engine = CartEngine(db)
    cart = engine.remove_item(customer.id, item_id)
    return serialize_cart(cart, engine)


@router.delete("/cart", response_model=CartResponse)
@limiter.limit("30/minute")
def clear_cart(request: Request, db: DbSession, customer: CurrentCustomer):
    engine = CartEngine(db)
    cart = engine.clear(customer.id)
    return serialize_cart(cart, engine)


@router.put("/cart/service-type", response_model=CartResponse)
@limiter.limit("30/minute")
def set_service_type(request: Request, db: DbSession, customer: CurrentCustomer, body: ServiceTypeUpdate):
    """Switch pickup/delivery. Every line is re-priced for the new zone and service type."""
    engine = CartEngine(db)
    cart = engine.set_service_type(customer.id, body.service_type)
    return serialize_cart(cart, engine)


@router.put("/cart/restaurant", response_model=CartResponse)
@limiter.limit("30/minute")
def set_restaurant(request: Request, db: DbSession, customer: CurrentCustomer, body: CartRestaurantUpdate):
    engine = CartEngine(db)
    cart = engine.set_restaurant(customer.id, body.restaurant_id)
    return serialize_cart(cart, engine)


@router.put("/cart/delivery-address", response_model=CartResponse)
@limiter.limit("30/minute")
def set_delivery_address(
    request: Request, db: DbSession, customer: CurrentCustomer, body: CartDeliveryAddressUpdate
):
    engine = CartEngine(db)
    cart = engine.set_delivery_address(customer.id, body.address_id)
    return serialize_cart(cart, engine)


@router.post("/cart/validate", response_model=CartValidationResponse)
@limiter.limit("60/minute")
def validate_cart(request: Request, db: DbSession, customer: CurrentCustomer):
    engine = CartEngine(db)
    return engine.validate(customer.id).to_dict()
