"""
Refund tests.

Verifies:
- Itemized refunds use the prorated line price (with tax)
- Refund totals never exceed what is left on the payment
- Pending refunds post only when settled
- total = items + shipping + adjustment holds for amount refunds
- Cash paid out is charged to the drawer open when the refund is made
"""

from orderledger.errors import (
    AlreadyRefundedError,
    NothingToRefundError,
    PaymentOrderMismatchError,
    QuantityTooGreatError,
    RefundAmountError,
    RefundOrderStateError,
    RefundStateTransitionError,
)
from orderledger.extensions import db
from orderledger.models import CashierSession, JournalEntry, Refund, RefundLine
from orderledger.services import cashier_service, order_service, order_state_service, payment_service, refund_service
from orderledger.services.ledger_service import account_balance, find_unbalanced_entries
from orderledger.states import ORDER_ARRANGING_PAYMENT, REFUND_PENDING, REFUND_SETTLED


def _open_drawer(channel, settings, cash):
    return cashier_service.open_cashier_session(
        channel_id=channel.id,
        cashier_user_id=1,
        opening_balances=[{"account_code": "CASH_ON_HAND", "amount_cents": cash}],
        settings=settings,
    )


class TestItemizedRefunds:
    def test_line_refund_posts_sales_return(self, placed_order_factory, tshirt, settings):
        order = placed_order_factory([(tshirt, 2)])
        line = order.lines[0]

        refund = refund_service.refund_order(
            payment_id=order.payments[0].id,
            lines=[{"order_line_id": line.id, "quantity": 1}],
            reason="damaged",
            actor_user_id=1,
            settings=settings,
        )

        assert refund.state == REFUND_SETTLED
        assert refund.items_cents == 1000
        assert refund.total_cents == 1000
        assert refund.debit_account_code == "SALES_RETURNS"
        assert account_balance(order.channel_id, "SALES_RETURNS") == 1000
        assert account_balance(order.channel_id, "CASH_ON_HAND") == 1000
        assert find_unbalanced_entries() == []

    def test_refund_includes_line_tax(self, placed_order_factory, taxed_variant, settings):
        order = placed_order_factory([(taxed_variant, 1)])

        refund = refund_service.refund_order(
            payment_id=order.payments[0].id,
            lines=[{"order_line_id": order.lines[0].id, "quantity": 1}],
            settings=settings,
        )

        assert refund.total_cents == 1160

    def test_quantity_too_great(self, placed_order_factory, tshirt, settings):
        order = placed_order_factory([(tshirt, 2)])

        result = refund_service.refund_order(
            payment_id=order.payments[0].id,
            lines=[{"order_line_id": order.lines[0].id, "quantity": 3}],
            settings=settings,
        )

        assert isinstance(result, QuantityTooGreatError)

    def test_repeated_line_is_summed(self, placed_order_factory, tshirt, settings):
        order = placed_order_factory([(tshirt, 2)])
        line_id = order.lines[0].id

        result = refund_service.refund_order(
            payment_id=order.payments[0].id,
            amount=500,
            lines=[{"order_line_id": line_id, "quantity": 2}, {"order_line_id": line_id, "quantity": 2}],
            settings=settings,
        )

        assert isinstance(result, QuantityTooGreatError)
        assert db.session.query(RefundLine).count() == 0

    def test_repeated_line_within_quantity(self, placed_order_factory, tshirt, settings):
        order = placed_order_factory([(tshirt, 2)])
        line_id = order.lines[0].id

        refund = refund_service.refund_order(
            payment_id=order.payments[0].id,
            lines=[{"order_line_id": line_id, "quantity": 1}, {"order_line_id": line_id, "quantity": 1}],
            settings=settings,
        )

        assert refund.items_cents == 2000
        assert [(rl.order_line_id, rl.quantity) for rl in refund.lines] == [(line_id, 2)]

    def test_fully_refunded_line(self, placed_order_factory, tshirt, settings):
        order = placed_order_factory([(tshirt, 1)])
        payment_id = order.payments[0].id
        selection = [{"order_line_id": order.lines[0].id, "quantity": 1}]
        first = refund_service.refund_order(payment_id=payment_id, lines=selection, settings=settings)

        result = refund_service.refund_order(payment_id=payment_id, lines=selection, settings=settings)

        assert isinstance(result, AlreadyRefundedError)
        assert result.to_dict()["refundId"] == first.id

    def test_lines_of_another_order(self, placed_order_factory, tshirt, mug, settings):
        first = placed_order_factory([(tshirt, 1)])
        second = placed_order_factory([(mug, 1)])

        result = refund_service.refund_order(
            payment_id=first.payments[0].id,
            lines=[{"order_line_id": second.lines[0].id, "quantity": 1}],
            settings=settings,
        )

        assert isinstance(result, PaymentOrderMismatchError)


class TestAmountRefunds:
    def test_nothing_to_refund(self, placed_order_factory, tshirt, settings):
        order = placed_order_factory([(tshirt, 1)])

        result = refund_service.refund_order(payment_id=order.payments[0].id, settings=settings)

        assert isinstance(result, NothingToRefundError)

    def test_amount_cannot_exceed_remaining(self, placed_order_factory, tshirt, settings):
        order = placed_order_factory([(tshirt, 2)])
        payment_id = order.payments[0].id
        refund_service.refund_order(payment_id=payment_id, amount=1500, settings=settings)

        result = refund_service.refund_order(payment_id=payment_id, amount=600, settings=settings)

        assert isinstance(result, RefundAmountError)
        assert result.to_dict()["maximumRefundable"] == 500

    def test_explicit_amount_is_balanced_by_adjustment(self, placed_order_factory, tshirt, settings):
        order = placed_order_factory([(tshirt, 2)])

        refund = refund_service.refund_order(
            payment_id=order.payments[0].id,
            amount=700,
            lines=[{"order_line_id": order.lines[0].id, "quantity": 1}],
            settings=settings,
        )

        assert refund.items_cents == 1000
        assert refund.adjustment_cents == -300
        assert refund.total_cents == refund.items_cents + refund.shipping_cents + refund.adjustment_cents
        assert [(rl.order_line_id, rl.quantity) for rl in refund.lines] == [(order.lines[0].id, 1)]

    def test_shipping_refund(self, channel, tshirt, shipping_method, settings):
        order = order_service.create_order(channel_id=channel.id)
        order_service.add_item_to_order(order.id, tshirt.id, 1, settings=settings)
        order_service.set_order_shipping_method(order.id, shipping_method.id)
        order_state_service.transition_order_to_state(order.id, ORDER_ARRANGING_PAYMENT)
        order = payment_service.add_payment_to_order(order.id, method_code="cash", settings=settings)

        refund = refund_service.refund_order(payment_id=order.payments[0].id, shipping=500, settings=settings)

        assert refund.total_cents == 500
        assert refund.shipping_cents == 500


class TestRefundStates:
    def test_payment_must_be_settled(self, order_factory, tshirt, settings):
        order = order_factory([(tshirt, 1)])
        order = payment_service.add_payment_to_order(order.id, method_code="card", settings=settings)

        result = refund_service.refund_order(payment_id=order.payments[0].id, amount=100, settings=settings)

        assert isinstance(result, RefundStateTransitionError)
        assert result.from_state == "Authorized"

    def test_order_must_be_placed(self, order_factory, tshirt, settings):
        order = order_factory([(tshirt, 2)])
        order = payment_service.add_payment_to_order(order.id, method_code="cash", amount=500, settings=settings)

        result = refund_service.refund_order(payment_id=order.payments[0].id, amount=100, settings=settings)

        assert isinstance(result, RefundOrderStateError)
        assert result.to_dict()["orderState"] == "ArrangingPayment"

    def test_card_refund_posts_on_settlement(self, order_factory, tshirt, settings):
        order = order_factory([(tshirt, 1)])
        order = payment_service.add_payment_to_order(order.id, method_code="card", settings=settings)
        payment_service.settle_payment(order.payments[0].id, settings=settings)

        refund = refund_service.refund_order(payment_id=order.payments[0].id, amount=400, settings=settings)

        assert refund.state == REFUND_PENDING
        assert refund.cashier_session_id is None
        assert db.session.query(JournalEntry).filter_by(source_type="refund").count() == 0
        assert account_balance(order.channel_id, "CLEARING_CARD") == 1000

        refund = refund_service.settle_refund(refund.id, transaction_id="RF-77", settings=settings)

        assert refund.state == REFUND_SETTLED
        assert refund.transaction_id == "RF-77"
        assert account_balance(order.channel_id, "CLEARING_CARD") == 600

        again = refund_service.settle_refund(refund.id, settings=settings)
        assert isinstance(again, RefundStateTransitionError)
        assert db.session.get(Refund, refund.id).state == REFUND_SETTLED


class TestRefundDrawer:
    def test_cash_refund_comes_from_the_open_drawer(self, channel, placed_order_factory, tshirt, settings):
        morning = _open_drawer(channel, settings, 5000)
        order = placed_order_factory([(tshirt, 1)])
        assert order.payments[0].cashier_session_id == morning.id
        cashier_service.close_cashier_session(
            session_id=morning.id,
            closing_balances=[
                {"account_code": "CASH_ON_HAND", "amount_cents": 6000},
                {"account_code": "CLEARING_MPESA", "amount_cents": 0},
            ],
            settings=settings,
        )
        afternoon = _open_drawer(channel, settings, 6000)

        refund = refund_service.refund_order(payment_id=order.payments[0].id, amount=1000, settings=settings)

        assert refund.cashier_session_id == afternoon.id
        assert cashier_service.expected_cash(db.session.get(CashierSession, afternoon.id)) == 5000
        assert cashier_service.expected_cash(db.session.get(CashierSession, morning.id)) == 6000

    def test_cash_refund_without_open_drawer_is_untagged(self, placed_order_factory, tshirt, settings):
        order = placed_order_factory([(tshirt, 1)])

        refund = refund_service.refund_order(payment_id=order.payments[0].id, amount=1000, settings=settings)

        assert refund.cashier_session_id is None
        assert account_balance(order.channel_id, "CASH_ON_HAND") == 0
