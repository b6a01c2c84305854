# Services module

from app.services.geofence_service import GeofenceResolver, GeofenceResult
from app.services.pricing_service import PriceResolver, PriceQuote, compute_tax, money
from app.services.points_service import (
    PointsLedger,
    calculate_points_to_earn,
    round_with_threshold,
)
from app.services.cart_service import CartEngine, CartValidation

# Order lifecycle
from app.services.order_conversion_service import OrderConversionService
from app.services.order_state_service import OrderStateMachine, allowed_transitions
from app.services.order_service import OrderService, ReorderResult

__all__ = [
    "GeofenceResolver",
    "GeofenceResult",
    "PriceResolver",
    "PriceQuote",
    "money",
    "compute_tax",
    "PointsLedger",
    "calculate_points_to_earn",
    "round_with_threshold",
    "CartEngine",
    "CartValidation",
    "OrderConversionService",
    "OrderStateMachine",
    "allowed_transitions",
    "OrderService",
    "ReorderResult",
]
