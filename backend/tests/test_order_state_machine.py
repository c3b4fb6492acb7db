"""
Order state machine tests.

Verifies:
- Transition table and guards (empty order, payment coverage, active payments)
- Placement side effects happen exactly once (stock, order_placed_at, revenue entry)
- Cancellation releases stock and reverses revenue
"""

from orderledger.errors import OrderStateTransitionError
from orderledger.extensions import db
from orderledger.models import JournalEntry, Order, Payment
from orderledger.services import order_service, order_state_service, payment_service
from orderledger.services.ledger_service import account_balance
from orderledger.states import (
    ORDER_ADDING_ITEMS,
    ORDER_ARRANGING_PAYMENT,
    ORDER_CANCELLED,
    ORDER_PAYMENT_AUTHORIZED,
    ORDER_PAYMENT_SETTLED,
    PAYMENT_AUTHORIZED,
    PAYMENT_CANCELLED,
)


def _placed_entries(order):
    return (
        db.session.query(JournalEntry)
        .filter_by(order_id=order.id, source_type="order_placed")
        .all()
    )


class TestTransitions:
    def test_new_order_starts_active_in_adding_items(self, channel):
        order = order_service.create_order(channel_id=channel.id)

        assert order.state == ORDER_ADDING_ITEMS
        assert order.active is True
        assert order.order_placed_at is None
        assert order.to_dict()["next_states"] == [ORDER_ARRANGING_PAYMENT, ORDER_CANCELLED]

    def test_empty_order_cannot_arrange_payment(self, channel):
        order = order_service.create_order(channel_id=channel.id)

        result = order_state_service.transition_order_to_state(order.id, ORDER_ARRANGING_PAYMENT)

        assert isinstance(result, OrderStateTransitionError)
        payload = result.to_dict()
        assert payload["__typename"] == "OrderStateTransitionError"
        assert payload["errorCode"] == "ORDER_STATE_TRANSITION_ERROR"
        assert payload["fromState"] == ORDER_ADDING_ITEMS
        assert payload["toState"] == ORDER_ARRANGING_PAYMENT
        assert "empty" in payload["transitionError"]

    def test_transition_to_current_state_is_a_no_op(self, order_factory, tshirt):
        order = order_factory([(tshirt, 1)])

        result = order_state_service.transition_order_to_state(order.id, ORDER_ARRANGING_PAYMENT)

        assert isinstance(result, Order)
        assert result.state == ORDER_ARRANGING_PAYMENT

    def test_transition_not_in_table_is_rejected(self, channel, tshirt, settings):
        order = order_service.create_order(channel_id=channel.id)
        order_service.add_item_to_order(order.id, tshirt.id, 1, settings=settings)

        result = order_state_service.transition_order_to_state(order.id, ORDER_PAYMENT_SETTLED)

        assert isinstance(result, OrderStateTransitionError)
        assert db.session.get(Order, order.id).state == ORDER_ADDING_ITEMS

    def test_unknown_state_is_rejected(self, channel):
        order = order_service.create_order(channel_id=channel.id)

        result = order_state_service.transition_order_to_state(order.id, "Shipping")

        assert isinstance(result, OrderStateTransitionError)
        assert "Unknown" in result.transition_error

    def test_payment_settled_requires_settled_coverage(self, order_factory, tshirt):
        order = order_factory([(tshirt, 2)])

        result = order_state_service.transition_order_to_state(order.id, ORDER_PAYMENT_SETTLED)

        assert isinstance(result, OrderStateTransitionError)
        assert "settled Payments" in result.transition_error

    def test_back_to_adding_items_blocked_by_active_payment(self, order_factory, tshirt, settings):
        order = order_factory([(tshirt, 2)])
        payment_service.add_payment_to_order(order.id, method_code="card", amount=500, settings=settings)

        result = order_state_service.transition_order_to_state(order.id, ORDER_ADDING_ITEMS)

        assert isinstance(result, OrderStateTransitionError)
        assert "active payments" in result.transition_error

    def test_back_to_adding_items_without_payments(self, order_factory, tshirt):
        order = order_factory([(tshirt, 1)])

        result = order_state_service.transition_order_to_state(order.id, ORDER_ADDING_ITEMS)

        assert result.state == ORDER_ADDING_ITEMS


class TestPlacement:
    def test_cash_payment_places_and_settles(self, placed_order_factory, tshirt):
        order = placed_order_factory([(tshirt, 2)], method="cash")

        assert order.state == ORDER_PAYMENT_SETTLED
        assert order.active is False
        assert order.order_placed_at is not None
        assert tshirt.stock_allocated == 2
        assert len(_placed_entries(order)) == 1
        assert account_balance(order.channel_id, "SALES") == -2000

    def test_card_authorization_places_once_then_settles(self, order_factory, tshirt, settings):
        order = order_factory([(tshirt, 1)])

        order = payment_service.add_payment_to_order(order.id, method_code="card", settings=settings)
        assert order.state == ORDER_PAYMENT_AUTHORIZED
        assert order.order_placed_at is not None
        placed_at = order.order_placed_at

        payment = order.payments[0]
        assert payment.state == PAYMENT_AUTHORIZED
        payment_service.settle_payment(payment.id, settings=settings)

        order = db.session.get(Order, order.id)
        assert order.state == ORDER_PAYMENT_SETTLED
        assert order.order_placed_at == placed_at
        assert len(_placed_entries(order)) == 1
        assert tshirt.stock_allocated == 1

    def test_partial_payment_leaves_order_arranging_payment(self, order_factory, tshirt, settings):
        order = order_factory([(tshirt, 2)])

        order = payment_service.add_payment_to_order(order.id, method_code="cash", amount=500, settings=settings)

        assert order.state == ORDER_ARRANGING_PAYMENT
        assert order.order_placed_at is None
        assert order_state_service.outstanding_amount(order) == 1500

    def test_stock_shortfall_at_placement_aborts_payment(self, order_factory, tshirt, settings):
        order = order_factory([(tshirt, 5)])
        tshirt.stock_on_hand = 2
        db.session.commit()

        result = payment_service.add_payment_to_order(order.id, method_code="card", settings=settings)

        assert isinstance(result, OrderStateTransitionError)
        assert result.to_state == ORDER_PAYMENT_AUTHORIZED
        order = db.session.get(Order, order.id)
        assert order.state == ORDER_ARRANGING_PAYMENT
        assert order.order_placed_at is None
        assert db.session.query(Payment).filter_by(order_id=order.id).count() == 0


class TestCancellationByTransition:
    def test_cancel_unplaced_order_cancels_open_payments(self, order_factory, tshirt, settings):
        order = order_factory([(tshirt, 2)])
        payment_service.add_payment_to_order(order.id, method_code="card", amount=500, settings=settings)

        order = order_state_service.transition_order_to_state(order.id, ORDER_CANCELLED)

        assert order.state == ORDER_CANCELLED
        assert [p.state for p in order.payments] == [PAYMENT_CANCELLED]
        assert db.session.query(JournalEntry).filter_by(order_id=order.id).count() == 0

    def test_cancel_placed_order_releases_stock_and_reverses_revenue(self, placed_order_factory, tshirt):
        order = placed_order_factory([(tshirt, 2)])

        order = order_state_service.transition_order_to_state(order.id, ORDER_CANCELLED)

        assert order.state == ORDER_CANCELLED
        assert tshirt.stock_allocated == 0
        assert order.lines[0].quantity == 0
        assert order.lines[0].cancelled_quantity == 2
        assert account_balance(order.channel_id, "SALES") == 0
        # Settled cash stays collected; the customer is now owed a refund.
        assert account_balance(order.channel_id, "ACCOUNTS_RECEIVABLE") == -2000

    def test_cancelled_is_terminal(self, placed_order_factory, tshirt):
        order = placed_order_factory([(tshirt, 1)])
        order_state_service.transition_order_to_state(order.id, ORDER_CANCELLED)

        result = order_state_service.transition_order_to_state(order.id, ORDER_ADDING_ITEMS)

        assert isinstance(result, OrderStateTransitionError)
        assert result.from_state == ORDER_CANCELLED
