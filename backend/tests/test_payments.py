"""
Payment lifecycle tests: handlers, settlement, cancellation and cash control.
"""

import warnings

import pytest
from sqlalchemy.exc import SAWarning

from orderledger.errors import (
    IneligiblePaymentMethodError,
    ManualPaymentStateError,
    OrderPaymentStateError,
    PaymentDeclinedError,
    PaymentStateTransitionError,
    SettlePaymentError,
)
from orderledger.extensions import db
from orderledger.models import Order, Payment
from orderledger.services import cashier_service, order_service, payment_service
from orderledger.services.cashier_service import CashierSessionError
from orderledger.services.channel_service import create_payment_method, get_payment_method
from orderledger.services.ledger_service import account_balance, list_entries
from orderledger.services.payment_handlers import (
    HandlerResult,
    PaymentHandler,
    register_handler,
    unregister_handler,
)
from orderledger.states import (
    ORDER_ARRANGING_PAYMENT,
    ORDER_PAYMENT_AUTHORIZED,
    ORDER_PAYMENT_SETTLED,
    PAYMENT_AUTHORIZED,
    PAYMENT_CANCELLED,
    PAYMENT_DECLINED,
    PAYMENT_SETTLED,
)


class DecliningHandler(PaymentHandler):
    code = "always-decline"

    def create_payment(self, order, amount_cents, metadata):
        return HandlerResult(state=PAYMENT_DECLINED, error_message="Card reported stolen")


@pytest.fixture
def declining_method(channel):
    register_handler(DecliningHandler())
    create_payment_method(channel_id=channel.id, code="stolen-card", name="Stolen", handler="always-decline")
    db.session.commit()
    yield "stolen-card"
    unregister_handler("always-decline")


class TestAddPayment:
    def test_order_must_be_arranging_payment(self, channel, tshirt, settings):
        order = order_service.create_order(channel_id=channel.id)
        order_service.add_item_to_order(order.id, tshirt.id, 1, settings=settings)

        result = payment_service.add_payment_to_order(order.id, method_code="cash", settings=settings)

        assert isinstance(result, OrderPaymentStateError)

    def test_unknown_method(self, order_factory, tshirt, settings):
        order = order_factory([(tshirt, 1)])

        result = payment_service.add_payment_to_order(order.id, method_code="bitcoin", settings=settings)

        assert isinstance(result, IneligiblePaymentMethodError)
        assert "bitcoin" in result.to_dict()["eligibilityCheckerMessage"]

    def test_disabled_method(self, order_factory, tshirt, settings):
        get_payment_method(settings.channel_id, "mpesa").enabled = False
        db.session.commit()
        order = order_factory([(tshirt, 1)])

        result = payment_service.add_payment_to_order(order.id, method_code="mpesa", settings=settings)

        assert isinstance(result, IneligiblePaymentMethodError)

    def test_declined_payment_is_kept(self, order_factory, tshirt, settings, declining_method):
        order = order_factory([(tshirt, 1)])

        result = payment_service.add_payment_to_order(order.id, method_code=declining_method, settings=settings)

        assert isinstance(result, PaymentDeclinedError)
        assert result.to_dict()["paymentErrorMessage"] == "Card reported stolen"
        payment = db.session.query(Payment).filter_by(order_id=order.id).one()
        assert payment.state == PAYMENT_DECLINED
        assert db.session.get(Order, order.id).state == ORDER_ARRANGING_PAYMENT

    def test_split_tender_settles_order(self, order_factory, tshirt, settings):
        order = order_factory([(tshirt, 2)])

        payment_service.add_payment_to_order(order.id, method_code="cash", amount=1200, settings=settings)
        order = payment_service.add_payment_to_order(order.id, method_code="mpesa", settings=settings)

        # mpesa only authorizes; the order is placed but not settled yet
        assert order.state == ORDER_PAYMENT_AUTHORIZED
        mpesa = [p for p in order.payments if p.method == "mpesa"][0]
        assert mpesa.amount_cents == 800

        payment_service.settle_payment(mpesa.id, settings=settings)

        order = db.session.get(Order, order.id)
        assert order.state == ORDER_PAYMENT_SETTLED
        assert account_balance(order.channel_id, "CASH_ON_HAND") == 1200
        assert account_balance(order.channel_id, "CLEARING_MPESA") == 800
        assert account_balance(order.channel_id, "ACCOUNTS_RECEIVABLE") == 0


class TestSettleAndCancel:
    def test_credit_payment_cannot_be_settled(self, order_factory, tshirt, customer, settings):
        order = order_factory([(tshirt, 1)], customer=customer)
        order = payment_service.add_payment_to_order(order.id, method_code="credit", settings=settings)
        payment = order.payments[0]
        assert payment.state == PAYMENT_AUTHORIZED

        result = payment_service.settle_payment(payment.id, settings=settings)

        assert isinstance(result, SettlePaymentError)
        assert db.session.get(Payment, payment.id).state == PAYMENT_AUTHORIZED

    def test_settled_payment_cannot_be_cancelled(self, placed_order_factory, tshirt):
        order = placed_order_factory([(tshirt, 1)])

        result = payment_service.cancel_payment(order.payments[0].id)

        assert isinstance(result, PaymentStateTransitionError)
        assert result.from_state == PAYMENT_SETTLED
        assert result.to_state == PAYMENT_CANCELLED

    def test_authorized_card_payment_can_be_cancelled(self, order_factory, tshirt, settings):
        order = order_factory([(tshirt, 1)])
        order = payment_service.add_payment_to_order(order.id, method_code="card", amount=400, settings=settings)

        payment = payment_service.cancel_payment(order.payments[0].id, actor_user_id=2)

        assert payment.state == PAYMENT_CANCELLED
        assert account_balance(order.channel_id, "CLEARING_CARD") == 0

    def test_settling_twice_is_rejected(self, placed_order_factory, tshirt, settings):
        order = placed_order_factory([(tshirt, 1)])

        result = payment_service.settle_payment(order.payments[0].id, settings=settings)

        assert isinstance(result, PaymentStateTransitionError)

    def test_generic_transition_rejects_unknown_state(self, order_factory, tshirt, settings):
        order = order_factory([(tshirt, 1)])
        order = payment_service.add_payment_to_order(order.id, method_code="card", settings=settings)

        result = payment_service.transition_payment_to_state(order.payments[0].id, "Refunded", settings=settings)

        assert isinstance(result, PaymentStateTransitionError)
        assert "Unknown" in result.transition_error


class TestManualPayment:
    def test_manual_payment_requires_arranging_state(self, placed_order_factory, tshirt, settings):
        order = placed_order_factory([(tshirt, 1)])

        result = payment_service.add_manual_payment_to_order(order.id, method_code="cash", settings=settings)

        assert isinstance(result, ManualPaymentStateError)

    def test_manual_payment_settles_outstanding(self, order_factory, tshirt, settings):
        order = order_factory([(tshirt, 2)])

        order = payment_service.add_manual_payment_to_order(
            order.id, method_code="card", transaction_id="BANK-REF-9", settings=settings
        )

        assert order.state == ORDER_PAYMENT_SETTLED
        payment = order.payments[0]
        assert payment.state == PAYMENT_SETTLED
        assert payment.transaction_id == "BANK-REF-9"
        assert account_balance(order.channel_id, "CLEARING_CARD") == 2000


class TestCashControl:
    def test_cash_payment_requires_open_session(self, order_factory, tshirt, settings):
        order = order_factory([(tshirt, 1)])

        with pytest.raises(CashierSessionError):
            payment_service.add_payment_to_order(
                order.id, method_code="cash", settings=settings.with_overrides(cash_control_enabled=True)
            )

        assert db.session.query(Payment).filter_by(order_id=order.id).count() == 0

    def test_card_payment_ignores_cash_control(self, order_factory, tshirt, settings):
        order = order_factory([(tshirt, 1)])

        order = payment_service.add_payment_to_order(
            order.id, method_code="card", settings=settings.with_overrides(cash_control_enabled=True)
        )

        assert order.payments[0].cashier_session_id is None

    def test_cash_payment_is_tagged_with_open_session(self, order_factory, channel, tshirt, settings):
        session = cashier_service.open_cashier_session(
            channel_id=channel.id,
            cashier_user_id=1,
            opening_balances=[{"account_code": "CASH_ON_HAND", "amount_cents": 5000}],
            settings=settings,
        )
        order = order_factory([(tshirt, 1)])

        order = payment_service.add_payment_to_order(
            order.id, method_code="cash", settings=settings.with_overrides(cash_control_enabled=True)
        )

        assert order.payments[0].cashier_session_id == session.id
        assert cashier_service.expected_cash(session) == 6000

    def test_session_lookup_does_not_orphan_the_payment(self, order_factory, channel, tshirt, settings):
        cashier_service.open_cashier_session(
            channel_id=channel.id, cashier_user_id=1, opening_balances=[], settings=settings
        )
        order = order_factory([(tshirt, 1)])

        with warnings.catch_warnings():
            warnings.simplefilter("error", SAWarning)
            order = payment_service.add_payment_to_order(order.id, method_code="cash", settings=settings)

        assert [p.state for p in order.payments] == [PAYMENT_SETTLED]


class TestSettlementJournal:
    def test_sale_is_recognized_before_cash_clears_it(self, order_factory, tshirt, settings):
        order = order_factory([(tshirt, 1)])

        order = payment_service.add_payment_to_order(order.id, method_code="cash", settings=settings)

        entries = list_entries(channel_id=order.channel_id, order_id=order.id)
        assert [e.source_type for e in entries] == ["order_placed", "payment"]

    def test_manual_payment_follows_the_sale(self, order_factory, tshirt, settings):
        order = order_factory([(tshirt, 1)])

        order = payment_service.add_manual_payment_to_order(order.id, method_code="mpesa", settings=settings)

        entries = list_entries(channel_id=order.channel_id, order_id=order.id)
        assert [e.source_type for e in entries] == ["order_placed", "payment"]
