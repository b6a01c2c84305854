"""API routes."""

from fastapi import APIRouter

from app.api.routes import addresses, cart, orders, points, restaurant_orders

api_router = APIRouter()

# Customer-facing routes
api_router.include_router(cart.router, tags=["cart"])
api_router.include_router(addresses.router, tags=["addresses"])
api_router.include_router(orders.router, tags=["orders"])
api_router.include_router(points.router, tags=["points"])

# Restaurant staff routes
api_router.include_router(restaurant_orders.router, tags=["restaurant-orders"])
