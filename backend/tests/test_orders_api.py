"""Tests for the customer /orders routes: checkout, history, tracking, cancel, reorder."""

from datetime import timedelta
from decimal import Decimal

import pytest

from app.core.timeutil import utcnow
from app.models.order import Order, OrderStatus
from app.services.order_state_service import OrderStateMachine
from app.services.points_service import PointsLedger

from conftest import CAPITAL_CENTER

API = "/api/v1"


@pytest.fixture
def restaurant(make_restaurant):
    return make_restaurant(name="Zona 10", center=CAPITAL_CENTER)


@pytest.fixture
def pollo(make_product):
    return make_product(name="Pollo frito")


@pytest.fixture
def checkout(client, auth_headers, restaurant, pollo):
    """Fill the cart with 2 x 50.00 and POST /orders with *overrides*."""
    def _checkout(headers=None, quantity=2, **overrides):
        headers = headers or auth_headers
        client.post(f"{API}/cart/items", json={"product_id": pollo.id, "quantity": quantity}, headers=headers)
        body = {"restaurant_id": restaurant.id, "service_type": "pickup", "payment_method": "cash"}
        body.update(overrides)
        return client.post(f"{API}/orders", json=body, headers=headers)
    return _checkout


# ============== Checkout ==============

class TestCreateOrder:
    """POST /api/v1/orders"""

    def test_pickup_checkout(self, client, auth_headers, checkout, customer):
        response = checkout(notes="Sin cebolla")

        assert response.status_code == 201
        order = response.json()
        assert order["status"] == "pending"
        assert order["customer_id"] == customer.id
        assert order["order_number"].startswith("ORD-")
        assert Decimal(order["subtotal"]) == Decimal("100.00")
        assert Decimal(order["total"]) == Decimal("100.00")
        assert order["points_earned"] == 10
        assert order["items"][0]["product_snapshot"]["name"] == "Pollo frito"
        assert [h["new_status"] for h in order["status_history"]] == ["pending"]

        # the cart is consumed; a fresh one is empty
        cart = client.get(f"{API}/cart", headers=auth_headers).json()
        assert cart["items"] == []

    def test_delivery_checkout(self, checkout, customer, make_address):
        address = make_address(customer, point=CAPITAL_CENTER)

        response = checkout(service_type="delivery", delivery_address_id=address.id)

        assert response.status_code == 201
        assert response.json()["service_type"] == "delivery"
        assert Decimal(response.json()["subtotal"]) == Decimal("110.00")
        assert response.json()["delivery_address_snapshot"]["id"] == address.id

    def test_redeem_points(self, client, checkout, make_customer, headers_for):
        rich = make_customer(name="Rica", points=500)

        response = checkout(headers=headers_for(rich.id), points_to_redeem=100)

        assert response.status_code == 201
        assert response.json()["points_redeemed"] == 100
        assert Decimal(response.json()["discount_total"]) == Decimal("10.00")
        assert Decimal(response.json()["total"]) == Decimal("90.00")

    def test_empty_cart(self, client, auth_headers, restaurant):
        client.get(f"{API}/cart", headers=auth_headers)
        response = client.post(
            f"{API}/orders",
            json={"restaurant_id": restaurant.id, "service_type": "pickup", "payment_method": "cash"},
            headers=auth_headers,
        )
        assert response.status_code == 422
        assert response.json()["error_code"] == "CART_EMPTY"

    def test_pickup_15_minutes_ahead_rejected(self, checkout):
        soon = (utcnow() + timedelta(minutes=15)).isoformat()

        response = checkout(scheduled_pickup_time=soon)

        assert response.status_code == 422
        assert response.json()["error_code"] == "SCHEDULED_TIME_TOO_SOON"

    def test_pickup_45_minutes_ahead_accepted(self, checkout):
        later = (utcnow() + timedelta(minutes=45)).isoformat()
        response = checkout(scheduled_pickup_time=later)
        assert response.status_code == 201

    def test_delivery_15_minutes_ahead_accepted(self, checkout, customer, make_address):
        address = make_address(customer, point=CAPITAL_CENTER)
        soon = (utcnow() + timedelta(minutes=15)).isoformat()

        response = checkout(service_type="delivery", delivery_address_id=address.id, scheduled_delivery_time=soon)

        assert response.status_code == 201

    def test_pickup_time_on_delivery_order_is_malformed(self, checkout, customer, make_address):
        address = make_address(customer, point=CAPITAL_CENTER)
        later = (utcnow() + timedelta(minutes=45)).isoformat()

        response = checkout(service_type="delivery", delivery_address_id=address.id, scheduled_pickup_time=later)

        assert response.status_code == 422
        assert "detail" in response.json()

    def test_converting_the_same_cart_twice(self, client, auth_headers, checkout, restaurant):
        cart_id = client.get(f"{API}/cart", headers=auth_headers).json()["id"]
        assert checkout(cart_id=cart_id).status_code == 201

        response = client.post(
            f"{API}/orders",
            json={
                "restaurant_id": restaurant.id, "service_type": "pickup",
                "payment_method": "cash", "cart_id": cart_id,
            },
            headers=auth_headers,
        )

        assert response.status_code == 409
        assert response.json()["error_code"] == "CART_ALREADY_CONVERTED"

    def test_staff_cannot_check_out(self, client, staff_headers, restaurant):
        response = client.post(
            f"{API}/orders",
            json={"restaurant_id": restaurant.id, "service_type": "pickup", "payment_method": "cash"},
            headers=staff_headers,
        )
        assert response.status_code == 403


# ============== History ==============

class TestOrderQueries:
    def test_list_is_paginated_and_scoped(self, client, auth_headers, checkout, make_customer, headers_for):
        for _ in range(3):
            checkout()
        other = make_customer(name="Beto")
        checkout(headers=headers_for(other.id))

        response = client.get(f"{API}/orders", params={"limit": 2}, headers=auth_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 3
        assert len(body["items"]) == 2
        assert body["has_more"] is True

    def test_filter_by_status_and_active(self, client, auth_headers, checkout):
        first = checkout().json()
        checkout()
        client.post(f"{API}/orders/{first['id']}/cancel", json={"reason": "Changed my mind"}, headers=auth_headers)

        cancelled = client.get(f"{API}/orders", params={"status": "cancelled"}, headers=auth_headers).json()
        active = client.get(f"{API}/orders/active", headers=auth_headers).json()

        assert [o["id"] for o in cancelled["items"]] == [first["id"]]
        assert active["total"] == 1
        assert active["items"][0]["id"] != first["id"]

    def test_get_order(self, client, auth_headers, checkout):
        order = checkout().json()
        response = client.get(f"{API}/orders/{order['id']}", headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["order_number"] == order["order_number"]

    def test_someone_elses_order(self, client, checkout, make_customer, headers_for):
        order = checkout().json()
        other = make_customer(name="Beto")

        response = client.get(f"{API}/orders/{order['id']}", headers=headers_for(other.id))

        assert response.status_code == 403
        assert response.json()["error_code"] == "ORDER_FORBIDDEN"

    def test_missing_order(self, client, auth_headers):
        response = client.get(f"{API}/orders/9999", headers=auth_headers)
        assert response.status_code == 404
        assert response.json()["error_code"] == "ORDER_NOT_FOUND"

    def test_track(self, client, auth_headers, checkout):
        order = checkout().json()

        response = client.get(f"{API}/orders/{order['id']}/track", headers=auth_headers)

        assert response.status_code == 200
        tracking = response.json()
        assert tracking["status"] == "pending"
        assert tracking["current_step"] == 0
        assert [s["status"] for s in tracking["steps"]] == ["pending", "confirmed", "preparing", "ready", "completed"]
        assert tracking["steps"][0]["completed"] is True
        assert tracking["steps"][1]["completed"] is False
        assert "cancelled" in tracking["next_statuses"]
        assert tracking["driver"] is None


# ============== Cancel & reorder ==============

class TestCancelAndReorder:
    def test_cancel_then_cancel_again(self, client, auth_headers, checkout):
        """pending -> cancelled, then a second cancel is a precondition failure."""
        order = checkout().json()

        response = client.post(
            f"{API}/orders/{order['id']}/cancel", json={"reason": "Customer request"}, headers=auth_headers
        )
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "cancelled"
        assert body["cancellation_reason"] == "Customer request"
        cancel_rows = [h for h in body["status_history"] if h["new_status"] == "cancelled"]
        assert len(cancel_rows) == 1
        assert cancel_rows[0]["previous_status"] == "pending"
        assert cancel_rows[0]["changed_by_type"] == "customer"

        again = client.post(
            f"{API}/orders/{order['id']}/cancel", json={"reason": "Customer request"}, headers=auth_headers
        )
        assert again.status_code == 422
        assert again.json()["error_code"] == "ORDER_NOT_CANCELLABLE"

    def test_customer_can_cancel_until_ready(self, client, auth_headers, checkout, db_session):
        order = checkout().json()
        machine = OrderStateMachine(db_session)
        for status in (OrderStatus.CONFIRMED, OrderStatus.PREPARING, OrderStatus.READY):
            machine.transition(order["id"], status)

        response = client.post(
            f"{API}/orders/{order['id']}/cancel", json={"reason": "Running late"}, headers=auth_headers
        )

        assert response.status_code == 200
        assert response.json()["status_history"][-1]["previous_status"] == "ready"

    def test_cancel_needs_reason(self, client, auth_headers, checkout):
        order = checkout().json()
        response = client.post(f"{API}/orders/{order['id']}/cancel", json={"reason": ""}, headers=auth_headers)
        assert response.status_code == 422

    def test_cannot_cancel_someone_elses_order(self, client, checkout, make_customer, headers_for):
        order = checkout().json()
        other = make_customer(name="Beto")

        response = client.post(
            f"{API}/orders/{order['id']}/cancel", json={"reason": "Prank"}, headers=headers_for(other.id)
        )

        assert response.status_code == 403

    def test_reorder_refills_cart(self, client, auth_headers, checkout, restaurant):
        order = checkout().json()

        response = client.post(f"{API}/orders/{order['id']}/reorder", headers=auth_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["added"] == 1
        assert body["skipped_count"] == 0
        assert body["cart"]["restaurant_id"] == restaurant.id
        assert body["cart"]["items"][0]["quantity"] == 2

    def test_reorder_skips_unavailable_items(self, client, auth_headers, checkout, pollo, db_session):
        order = checkout().json()
        pollo.is_active = False
        db_session.commit()

        response = client.post(f"{API}/orders/{order['id']}/reorder", headers=auth_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["added"] == 0
        assert body["skipped"] == [
            {"name": "Pollo frito", "error_code": "ITEM_UNAVAILABLE", "message": "'Pollo frito' is not available"}
        ]
        assert body["cart"]["items"] == []


# ============== Invariants ==============

class TestInvariants:
    @pytest.mark.parametrize("redeem,cancel", [(0, False), (0, True), (100, False), (100, True)])
    def test_totals_and_ledger_stay_consistent(self, client, db_session, checkout, make_customer, headers_for,
                                               redeem, cancel):
        buyer = make_customer(name="Carla")
        headers = headers_for(buyer.id)
        if redeem:
            # earn enough points on a first large order
            assert checkout(headers=headers, quantity=30).status_code == 201

        order = checkout(headers=headers, points_to_redeem=redeem).json()
        if cancel:
            client.post(f"{API}/orders/{order['id']}/cancel", json={"reason": "Test"}, headers=headers)

        for row in db_session.query(Order).filter(Order.customer_id == buyer.id):
            assert row.total == row.computed_total()
        db_session.refresh(buyer)
        assert PointsLedger(db_session).ledger_balance(buyer.id) == buyer.points
        assert buyer.points >= 0
