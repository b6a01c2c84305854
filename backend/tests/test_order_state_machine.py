"""Tests for the order lifecycle state machine."""

from decimal import Decimal

import pytest

from app.core.errors import ConflictError, DomainError, NotFoundError, ValidationFailed
from app.models.order import Order, OrderStatus, OrderStatusHistory, PaymentMethod, PaymentStatus
from app.models.restaurant import ServiceType, Zone
from app.services.cart_service import CartEngine
from app.services.order_conversion_service import OrderConversionService
from app.services.order_state_service import OrderStateMachine, allowed_transitions
from app.services.points_service import PointsLedger

from conftest import CAPITAL_CENTER, INTERIOR_CENTER

S = OrderStatus


@pytest.fixture
def restaurant(make_restaurant):
    return make_restaurant(name="Zona 10", center=CAPITAL_CENTER, zone=Zone.CAPITAL)


@pytest.fixture
def place_order(db_session, customer, restaurant, make_product, make_address):
    """Place a 2 x 50.00 order for the default customer."""
    product = make_product()

    def _place(service_type=ServiceType.PICKUP, who=None, points_to_redeem=0) -> Order:
        who = who or customer
        CartEngine(db_session).add_item(who.id, product_id=product.id, quantity=2)
        address_id = None
        if service_type == ServiceType.DELIVERY:
            address_id = make_address(who, point=CAPITAL_CENTER).id
        return OrderConversionService(db_session).convert(
            who.id, restaurant.id, service_type, PaymentMethod.CASH,
            delivery_address_id=address_id, points_to_redeem=points_to_redeem,
        )
    return _place


def walk(machine, order, *statuses):
    for status in statuses:
        order = machine.transition(order.id, status)
    return order


def history(db_session, order):
    return (
        db_session.query(OrderStatusHistory)
        .filter_by(order_id=order.id)
        .order_by(OrderStatusHistory.id)
        .all()
    )


class TestCancellation:
    def test_cancel_pending_writes_one_history_row(self, db_session, place_order):
        """pending -> cancelled with a reason, then a second cancel is refused."""
        order = place_order()
        machine = OrderStateMachine(db_session)

        order = machine.cancel(order.id, "Customer request", actor_type="customer", actor_id=order.customer_id)

        assert order.status == S.CANCELLED
        assert order.cancellation_reason == "Customer request"
        assert order.cancelled_at is not None
        rows = [h for h in history(db_session, order) if h.new_status == S.CANCELLED]
        assert len(rows) == 1
        assert rows[0].previous_status == S.PENDING
        assert rows[0].changed_by_type == "customer"

        with pytest.raises(DomainError) as exc:
            machine.cancel(order.id, "Again")
        assert exc.value.error_code == "ORDER_NOT_CANCELLABLE"
        assert len(history(db_session, order)) == 2

    @pytest.mark.parametrize("path", [[], [S.CONFIRMED], [S.CONFIRMED, S.PREPARING], [S.PREPARING, S.READY]])
    def test_cancellable_until_ready(self, db_session, place_order, path):
        machine = OrderStateMachine(db_session)
        order = walk(machine, place_order(), *path)
        assert machine.cancel(order.id, "Out of stock").status == S.CANCELLED

    def test_not_cancellable_after_completion(self, db_session, place_order):
        machine = OrderStateMachine(db_session)
        order = walk(machine, place_order(), S.PREPARING, S.READY, S.COMPLETED)
        with pytest.raises(DomainError) as exc:
            machine.cancel(order.id, "Too late")
        assert exc.value.error_code == "ORDER_NOT_CANCELLABLE"

    def test_not_cancellable_once_out_for_delivery(self, db_session, place_order):
        machine = OrderStateMachine(db_session)
        order = walk(machine, place_order(ServiceType.DELIVERY), S.PREPARING, S.READY, S.OUT_FOR_DELIVERY)
        with pytest.raises(DomainError) as exc:
            machine.transition(order.id, S.CANCELLED, notes="Driver crashed")
        assert exc.value.error_code == "ORDER_NOT_CANCELLABLE"

    def test_reason_required(self, db_session, place_order):
        order = place_order()
        with pytest.raises(ValidationFailed) as exc:
            OrderStateMachine(db_session).transition(order.id, S.CANCELLED, notes="   ")
        assert exc.value.error_code == "CANCELLATION_REASON_REQUIRED"


class TestTransitions:
    def test_pickup_lifecycle(self, db_session, place_order):
        machine = OrderStateMachine(db_session)
        order = walk(machine, place_order(), S.CONFIRMED, S.PREPARING, S.READY, S.COMPLETED)

        assert order.status == S.COMPLETED
        assert order.ready_at is not None
        assert order.completed_at is not None
        assert order.version == 5
        steps = [(h.previous_status, h.new_status) for h in history(db_session, order)]
        assert steps == [
            (None, S.PENDING),
            (S.PENDING, S.CONFIRMED),
            (S.CONFIRMED, S.PREPARING),
            (S.PREPARING, S.READY),
            (S.READY, S.COMPLETED),
        ]

    def test_delivery_lifecycle(self, db_session, place_order):
        machine = OrderStateMachine(db_session)
        order = walk(
            machine, place_order(ServiceType.DELIVERY),
            S.CONFIRMED, S.PREPARING, S.READY, S.OUT_FOR_DELIVERY, S.DELIVERED, S.COMPLETED,
        )
        assert order.picked_up_at is not None
        assert order.delivered_at is not None
        assert order.status == S.COMPLETED

    def test_pickup_order_never_goes_out_for_delivery(self, db_session, place_order):
        machine = OrderStateMachine(db_session)
        order = walk(machine, place_order(), S.PREPARING, S.READY)
        with pytest.raises(DomainError) as exc:
            machine.transition(order.id, S.OUT_FOR_DELIVERY)
        assert exc.value.error_code == "INVALID_STATUS_TRANSITION"

    def test_delivery_order_cannot_skip_the_drive(self, db_session, place_order):
        machine = OrderStateMachine(db_session)
        order = walk(machine, place_order(ServiceType.DELIVERY), S.PREPARING, S.READY)
        with pytest.raises(DomainError):
            machine.transition(order.id, S.COMPLETED)

    def test_skipping_ahead_rejected(self, db_session, place_order):
        order = place_order()
        with pytest.raises(DomainError) as exc:
            OrderStateMachine(db_session).transition(order.id, S.DELIVERED)
        assert exc.value.error_code == "INVALID_STATUS_TRANSITION"
        assert exc.value.data == {"current_status": "pending", "requested_status": "delivered"}

    @pytest.mark.parametrize("target", list(OrderStatus))
    def test_terminal_states_are_final(self, db_session, place_order, target):
        machine = OrderStateMachine(db_session)
        order = machine.cancel(place_order().id, "Closed early")
        with pytest.raises(DomainError):
            machine.transition(order.id, target, notes="retry")

    def test_unknown_status(self, db_session, place_order):
        with pytest.raises(ValidationFailed) as exc:
            OrderStateMachine(db_session).transition(place_order().id, "teleported")
        assert exc.value.error_code == "INVALID_STATUS"

    def test_unknown_order(self, db_session):
        with pytest.raises(NotFoundError):
            OrderStateMachine(db_session).transition(999, S.CONFIRMED)

    def test_allowed_transitions_follow_service_type(self, db_session, place_order):
        machine = OrderStateMachine(db_session)
        pickup = walk(machine, place_order(), S.PREPARING, S.READY)
        delivery = walk(machine, place_order(ServiceType.DELIVERY), S.PREPARING, S.READY)

        assert allowed_transitions(pickup) == {S.COMPLETED, S.CANCELLED, S.REFUNDED}
        assert allowed_transitions(delivery) == {S.OUT_FOR_DELIVERY, S.CANCELLED, S.REFUNDED}


class TestConcurrency:
    def test_expected_version_mismatch(self, db_session, place_order):
        order = place_order()
        machine = OrderStateMachine(db_session)
        machine.transition(order.id, S.CONFIRMED)

        with pytest.raises(ConflictError) as exc:
            machine.transition(order.id, S.PREPARING, expected_version=1)
        assert exc.value.error_code == "ORDER_STATUS_CHANGED"

        assert machine.transition(order.id, S.PREPARING, expected_version=2).version == 3

    def test_stale_read_loses_compare_and_set(self, db_session, place_order):
        order = place_order()
        assert order.version == 1
        # Another writer moves the order behind this session's back
        db_session.query(Order).filter(Order.id == order.id).update(
            {Order.status: S.CONFIRMED, Order.version: 2}, synchronize_session=False
        )

        with pytest.raises(ConflictError):
            OrderStateMachine(db_session).transition(order.id, S.CONFIRMED)

        db_session.refresh(order)
        assert order.status == S.PENDING
        assert len(history(db_session, order)) == 1


class TestPointsReversal:
    def test_cancel_returns_redeemed_and_revokes_earned(self, db_session, make_customer, place_order):
        rich = make_customer(name="Rica", points=500)
        order = place_order(who=rich, points_to_redeem=100)
        db_session.refresh(rich)
        assert rich.points == 500 - 100 + order.points_earned

        OrderStateMachine(db_session).cancel(order.id, "Customer request")

        db_session.refresh(rich)
        assert rich.points == 500

    def test_refund_marks_payment_and_reverses(self, db_session, customer, place_order):
        machine = OrderStateMachine(db_session)
        walk(machine, place_order(), S.PREPARING, S.READY, S.COMPLETED)

        order = walk(machine, place_order(), S.PREPARING)
        order = machine.transition(order.id, S.REFUNDED, notes="Burnt")

        assert order.payment_status == PaymentStatus.REFUNDED
        db_session.refresh(customer)
        # only the completed order's points remain
        assert customer.points == 10
        assert PointsLedger(db_session).ledger_balance(customer.id) == 10

    def test_revocation_capped_at_balance(self, db_session, customer, place_order):
        order = place_order()
        PointsLedger(db_session, autocommit=True).redeem(customer.id, 8, description="Spent elsewhere")

        OrderStateMachine(db_session).cancel(order.id, "Customer request")

        db_session.refresh(customer)
        assert customer.points == 0
        assert PointsLedger(db_session).ledger_balance(customer.id) == 0


class TestDriverAssignment:
    def test_assign_driver_keeps_status(self, db_session, place_order, restaurant, make_driver):
        driver = make_driver(restaurant)
        order = place_order(ServiceType.DELIVERY)

        order = OrderStateMachine(db_session).assign_driver(order.id, driver.id, actor_id=900)

        assert order.driver_id == driver.id
        assert order.assigned_to_driver_at is not None
        assert order.status == S.PENDING
        assert order.version == 2
        last = history(db_session, order)[-1]
        assert (last.previous_status, last.new_status) == (S.PENDING, S.PENDING)
        assert last.notes == "Driver assigned: Luis"

    def test_pickup_orders_take_no_driver(self, db_session, place_order, restaurant, make_driver):
        driver = make_driver(restaurant)
        with pytest.raises(DomainError) as exc:
            OrderStateMachine(db_session).assign_driver(place_order().id, driver.id)
        assert exc.value.error_code == "DRIVER_NOT_APPLICABLE"

    def test_driver_from_another_restaurant(self, db_session, place_order, make_restaurant, make_driver):
        other = make_restaurant(name="Xela", center=INTERIOR_CENTER, zone=Zone.INTERIOR)
        driver = make_driver(other)
        with pytest.raises(DomainError) as exc:
            OrderStateMachine(db_session).assign_driver(place_order(ServiceType.DELIVERY).id, driver.id)
        assert exc.value.error_code == "DRIVER_RESTAURANT_MISMATCH"

    def test_inactive_driver(self, db_session, place_order, restaurant, make_driver):
        driver = make_driver(restaurant, is_active=False)
        with pytest.raises(NotFoundError) as exc:
            OrderStateMachine(db_session).assign_driver(place_order(ServiceType.DELIVERY).id, driver.id)
        assert exc.value.error_code == "DRIVER_NOT_FOUND"

    def test_closed_once_on_the_road(self, db_session, place_order, restaurant, make_driver):
        driver = make_driver(restaurant)
        machine = OrderStateMachine(db_session)
        order = walk(machine, place_order(ServiceType.DELIVERY), S.PREPARING, S.READY, S.OUT_FOR_DELIVERY)
        with pytest.raises(DomainError) as exc:
            machine.assign_driver(order.id, driver.id)
        assert exc.value.error_code == "DRIVER_ASSIGNMENT_CLOSED"


class TestChangeRestaurant:
    def test_move_clears_driver_and_keeps_amounts(self, db_session, place_order, restaurant, make_restaurant,
                                                  make_driver):
        other = make_restaurant(name="Zona 1", center=(14.6400, -90.5130))
        machine = OrderStateMachine(db_session)
        order = place_order(ServiceType.DELIVERY)
        machine.assign_driver(order.id, make_driver(restaurant).id)

        order = machine.change_restaurant(order.id, other.id, reason="Kitchen overloaded")

        assert order.restaurant_id == other.id
        assert order.driver_id is None
        assert order.total == Decimal("110.00")
        assert history(db_session, order)[-1].notes == "Moved to Zona 1: Kitchen overloaded"

    def test_closed_once_ready(self, db_session, place_order, make_restaurant):
        other = make_restaurant(name="Zona 1")
        machine = OrderStateMachine(db_session)
        order = walk(machine, place_order(), S.PREPARING, S.READY)
        with pytest.raises(DomainError) as exc:
            machine.change_restaurant(order.id, other.id)
        assert exc.value.error_code == "RESTAURANT_CHANGE_CLOSED"

    def test_target_must_offer_service_type(self, db_session, place_order, make_restaurant):
        no_delivery = make_restaurant(name="Kiosko", delivery_active=False)
        with pytest.raises(DomainError) as exc:
            OrderStateMachine(db_session).change_restaurant(place_order(ServiceType.DELIVERY).id, no_delivery.id)
        assert exc.value.error_code == "SERVICE_TYPE_NOT_AVAILABLE"
