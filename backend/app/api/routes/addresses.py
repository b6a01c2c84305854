"""Delivery coverage check for a map point."""

from fastapi import APIRouter, Request

from app.core.rate_limit import limiter
from app.core.rbac import CurrentPrincipal
from app.db.session import DbSession
from app.schemas.address import AddressValidateRequest, AddressValidateResponse, CoveringRestaurantResponse
from app.services.geofence_service import GeofenceResolver

router = APIRouter()


@router.post("/addresses/validate", response_model=AddressValidateResponse)
@limiter.limit("60/minute")
def validate_address(
    request: Request, db: DbSession, principal: CurrentPrincipal, body: AddressValidateRequest
):
    """Resolve which restaurant delivers to the point, or suggest pickup locations."""
    result = GeofenceResolver(db).resolve(body.latitude, body.longitude)
    nearest = [n.to_dict() for n in result.nearest_pickup_locations]

    if result.found:
        return AddressValidateResponse(
            is_valid=True,
            delivery_available=True,
            zone=result.zone,
            restaurant=CoveringRestaurantResponse.model_validate(result.restaurant),
            nearest_pickup_locations=nearest,
            message=f"{result.restaurant.name} delivers to this address",
        )
    return AddressValidateResponse(
        is_valid=False,
        delivery_available=False,
        nearest_pickup_locations=nearest,
        message=(
            "We do not deliver to this address yet; you can pick up at a nearby restaurant"
            if nearest else "We do not deliver to this address yet"
        ),
    )
