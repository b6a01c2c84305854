"""Tests for POST /addresses/validate and GET /points."""

from decimal import Decimal

from app.models.restaurant import Zone
from app.services.points_service import PointsLedger

from conftest import CAPITAL_CENTER, INTERIOR_CENTER, OUTSIDE_POINT

API = "/api/v1"


class TestAddressValidation:
    """POST /api/v1/addresses/validate"""

    def test_inside_a_delivery_area(self, client, auth_headers, make_restaurant):
        restaurant = make_restaurant(name="Zona 10", center=CAPITAL_CENTER, zone=Zone.CAPITAL)

        response = client.post(
            f"{API}/addresses/validate",
            json={"latitude": 14.6350, "longitude": -90.5070},
            headers=auth_headers,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["is_valid"] is True
        assert body["delivery_available"] is True
        assert body["zone"] == "capital"
        assert body["restaurant"]["id"] == restaurant.id

    def test_outside_every_area_suggests_pickup(self, client, auth_headers, make_restaurant):
        make_restaurant(name="Zona 10", center=CAPITAL_CENTER)
        make_restaurant(name="Xela", center=INTERIOR_CENTER, zone=Zone.INTERIOR)

        response = client.post(
            f"{API}/addresses/validate",
            json={"latitude": OUTSIDE_POINT[0], "longitude": OUTSIDE_POINT[1]},
            headers=auth_headers,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["is_valid"] is False
        assert body["delivery_available"] is False
        assert body["zone"] is None
        nearest = body["nearest_pickup_locations"]
        assert len(nearest) == 2
        assert nearest[0]["distance_km"] <= nearest[1]["distance_km"]

    def test_nothing_nearby(self, client, auth_headers):
        response = client.post(
            f"{API}/addresses/validate", json={"latitude": 0, "longitude": 0}, headers=auth_headers
        )
        assert response.json()["nearest_pickup_locations"] == []
        assert response.json()["message"] == "We do not deliver to this address yet"

    def test_out_of_range_coordinates(self, client, auth_headers):
        response = client.post(
            f"{API}/addresses/validate", json={"latitude": 95, "longitude": 0}, headers=auth_headers
        )
        assert response.status_code == 422

    def test_open_to_staff_too(self, client, staff_headers):
        response = client.post(
            f"{API}/addresses/validate", json={"latitude": 0, "longitude": 0}, headers=staff_headers
        )
        assert response.status_code == 200

    def test_requires_token(self, client):
        response = client.post(f"{API}/addresses/validate", json={"latitude": 0, "longitude": 0})
        assert response.status_code == 401


class TestPointsBalance:
    """GET /api/v1/points"""

    def test_balance_tier_and_history(self, client, auth_headers, customer, db_session, tiers):
        ledger = PointsLedger(db_session, autocommit=True)
        ledger.earn(customer.id, 650, description="Welcome")
        ledger.redeem(customer.id, 100, description="Order")

        response = client.get(f"{API}/points", headers=auth_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["points"] == 550
        assert Decimal(body["points_value"]) == Decimal("55.00")
        assert body["min_points_to_redeem"] == 100
        assert body["tier"]["name"] == "Plata"
        assert body["next_tier"]["name"] == "Oro"
        assert body["points_to_next_tier"] == 1450
        assert [t["signed_points"] for t in body["transactions"]] == [-100, 650]

    def test_history_limit(self, client, auth_headers, customer, db_session):
        ledger = PointsLedger(db_session, autocommit=True)
        for _ in range(5):
            ledger.earn(customer.id, 10)

        body = client.get(f"{API}/points", params={"limit": 3}, headers=auth_headers).json()

        assert body["points"] == 50
        assert len(body["transactions"]) == 3

    def test_new_customer(self, client, auth_headers):
        body = client.get(f"{API}/points", headers=auth_headers).json()
        assert body["points"] == 0
        assert body["tier"] is None
        assert body["transactions"] == []

    def test_token_for_missing_customer(self, client, headers_for):
        response = client.get(f"{API}/points", headers=headers_for(424242))
        assert response.status_code == 404
        assert response.json()["error_code"] == "CUSTOMER_NOT_FOUND"
