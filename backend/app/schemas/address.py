"""Delivery address coverage schemas."""

from typing import List, Optional

from pydantic import BaseModel, Field

from app.models.restaurant import Zone


class AddressValidateRequest(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


class NearbyRestaurantResponse(BaseModel):
    id: int
    name: str
    address: Optional[str] = None
    zone: Zone
    distance_km: float
    estimated_pickup_time: int


class CoveringRestaurantResponse(BaseModel):
    id: int
    name: str
    address: Optional[str] = None
    zone: Zone
    estimated_delivery_time: int

    model_config = {"from_attributes": True}


class AddressValidateResponse(BaseModel):
    """Whether a point can be delivered to, and from where.

    Outside every delivery area the closest pickup-capable restaurants
    are suggested instead.
    """

    is_valid: bool
    delivery_available: bool
    zone: Optional[Zone] = None
    restaurant: Optional[CoveringRestaurantResponse] = None
    nearest_pickup_locations: List[NearbyRestaurantResponse] = []
    message: Optional[str] = None
