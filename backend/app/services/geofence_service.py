"""Geofence resolution: which restaurant delivers to a point, and in which zone.

Restaurants store their delivery area as KML ``<coordinates>`` text
(``lng,lat[,alt]`` tuples separated by whitespace). Containment uses the
even-odd ray casting rule on the (lng, lat) ring. When several polygons
contain the point the restaurant whose stored position is closest wins,
ties broken by restaurant id. The zone comes from the winning restaurant,
never from the geometry.
"""

import logging
import math
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from functools import lru_cache
from typing import List, Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import ValidationFailed
from app.models.restaurant import Restaurant, Zone

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0

Ring = Tuple[Tuple[float, float], ...]


@dataclass
class NearbyRestaurant:
    """A pickup suggestion for a point outside every delivery area."""
    restaurant: Restaurant
    distance_km: float

    def to_dict(self) -> dict:
        return {
            "id": self.restaurant.id,
            "name": self.restaurant.name,
            "address": self.restaurant.address,
            "zone": self.restaurant.zone.value,
            "distance_km": round(self.distance_km, 2),
            "estimated_pickup_time": self.restaurant.estimated_pickup_time,
        }


@dataclass
class GeofenceResult:
    restaurant: Optional[Restaurant] = None
    zone: Optional[Zone] = None
    distance_km: Optional[float] = None
    nearest_pickup_locations: List[NearbyRestaurant] = field(default_factory=list)

    @property
    def found(self) -> bool:
        return self.restaurant is not None


def validate_coordinates(latitude, longitude) -> Tuple[float, float]:
    """Reject non-numeric, NaN or out-of-range coordinates before any geometry runs."""
    try:
        lat = float(latitude)
        lng = float(longitude)
    except (TypeError, ValueError):
        raise ValidationFailed(
            "INVALID_COORDINATES", "Latitude and longitude must be numbers",
            {"latitude": latitude, "longitude": longitude},
        )
    if math.isnan(lat) or math.isnan(lng) or not -90 <= lat <= 90 or not -180 <= lng <= 180:
        raise ValidationFailed(
            "INVALID_COORDINATES",
            "Latitude must be within [-90, 90] and longitude within [-180, 180]",
            {"latitude": latitude, "longitude": longitude},
        )
    return lat, lng


@lru_cache(maxsize=512)
def parse_kml_coordinates(kml: str) -> Ring:
    """Parse a KML polygon into its outer (lng, lat) ring.

    Accepts a full KML document (the first ``<coordinates>`` element, which
    is the outer boundary of the first polygon) or the bare coordinates text.
    Altitude is ignored and a closing vertex equal to the first is dropped.
    """
    text = kml.strip()
    if text.startswith("<"):
        try:
            root = ET.fromstring(text)
        except ET.ParseError as e:
            logger.warning(f"Unparseable KML geofence: {e}")
            return ()
        node = root if root.tag.endswith("coordinates") else root.find(".//{*}coordinates")
        if node is None:
            node = root.find(".//coordinates")
        text = (node.text or "") if node is not None else ""

    ring = []
    for token in text.split():
        parts = token.split(",")
        if len(parts) < 2:
            continue
        try:
            ring.append((float(parts[0]), float(parts[1])))
        except ValueError:
            logger.warning(f"Skipping malformed KML coordinate {token!r}")
    if len(ring) > 1 and ring[0] == ring[-1]:
        ring.pop()
    return tuple(ring)


def point_in_polygon(lng: float, lat: float, ring: Sequence[Tuple[float, float]]) -> bool:
    """Even-odd ray casting test. Rings with fewer than 3 distinct vertices never match."""
    if len(set(ring)) < 3:
        return False

    inside = False
    j = len(ring) - 1
    for i in range(len(ring)):
        xi, yi = ring[i]
        xj, yj = ring[j]
        if (yi > lat) != (yj > lat):
            x_cross = (xj - xi) * (lat - yi) / (yj - yi) + xi
            if lng < x_cross:
                inside = not inside
        j = i
    return inside


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two points in kilometres."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)

    a = (math.sin(dphi / 2) ** 2
         + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2)
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def restaurant_center(restaurant: Restaurant) -> Optional[Tuple[float, float]]:
    """(lat, lng) of the restaurant, falling back to its polygon's vertex centroid."""
    if restaurant.latitude is not None and restaurant.longitude is not None:
        return restaurant.latitude, restaurant.longitude
    if restaurant.has_geofence:
        ring = parse_kml_coordinates(restaurant.geofence_kml)
        if ring:
            return (
                sum(p[1] for p in ring) / len(ring),
                sum(p[0] for p in ring) / len(ring),
            )
    return None


class GeofenceResolver:
    """Resolve the delivering restaurant and pricing zone for a coordinate."""

    def __init__(self, db: Session, nearest_limit: Optional[int] = None):
        self.db = db
        self.nearest_limit = settings.nearest_pickup_limit if nearest_limit is None else nearest_limit

    def resolve(self, latitude, longitude) -> GeofenceResult:
        lat, lng = validate_coordinates(latitude, longitude)

        candidates = (
            self.db.query(Restaurant)
            .filter(
                Restaurant.is_active.is_(True),
                Restaurant.delivery_active.is_(True),
                Restaurant.geofence_kml.isnot(None),
            )
            .order_by(Restaurant.id)
            .all()
        )

        matches = []
        for restaurant in candidates:
            if not restaurant.has_geofence:
                continue
            ring = parse_kml_coordinates(restaurant.geofence_kml)
            if not point_in_polygon(lng, lat, ring):
                continue
            center = restaurant_center(restaurant)
            distance = haversine_km(lat, lng, *center) if center else math.inf
            matches.append((distance, restaurant.id, restaurant))

        if matches:
            distance, _, winner = min(matches, key=lambda m: (m[0], m[1]))
            if len(matches) > 1:
                logger.info(
                    f"Point ({lat}, {lng}) inside {len(matches)} geofences; "
                    f"restaurant {winner.id} is closest"
                )
            return GeofenceResult(
                restaurant=winner,
                zone=winner.zone,
                distance_km=None if math.isinf(distance) else distance,
            )

        return GeofenceResult(nearest_pickup_locations=self.nearest_pickup(lat, lng))

    def nearest_pickup(self, lat: float, lng: float) -> List[NearbyRestaurant]:
        """Up to ``nearest_limit`` pickup restaurants sorted by (distance, id)."""
        restaurants = (
            self.db.query(Restaurant)
            .filter(Restaurant.is_active.is_(True), Restaurant.pickup_active.is_(True))
            .all()
        )
        ranked = []
        for restaurant in restaurants:
            center = restaurant_center(restaurant)
            if center is None:
                continue
            ranked.append(NearbyRestaurant(restaurant, haversine_km(lat, lng, *center)))
        ranked.sort(key=lambda n: (n.distance_km, n.restaurant.id))
        return ranked[: self.nearest_limit]
