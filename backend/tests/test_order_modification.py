"""
Order modification engine tests.

Verifies:
- Batch preconditions (Modifying state, non-empty batch)
- Dry runs never persist
- Price increases need a payment method, decreases need a refund payment id
- Settlement of the modification gates leaving the Modifying state
- Ledger entries stay balanced
"""

import pytest

from orderledger.errors import (
    NoChangesSpecifiedError,
    OrderModificationStateError,
    OrderStateTransitionError,
    PaymentMethodMissingError,
    RefundPaymentIdMissingError,
)
from orderledger.extensions import db
from orderledger.models import JournalEntry, Order, OrderModification, Payment, Refund
from orderledger.services import cashier_service, modification_service, order_state_service, payment_service, refund_service
from orderledger.services.cashier_service import CashierSessionError
from orderledger.services.ledger_service import account_balance, find_unbalanced_entries, list_entries
from orderledger.services.modification_service import ModificationPreview
from orderledger.states import (
    ORDER_MODIFYING,
    ORDER_PAYMENT_SETTLED,
    PAYMENT_SETTLED,
    REFUND_PENDING,
    REFUND_SETTLED,
)


def _start_modifying(order):
    return order_state_service.transition_order_to_state(order.id, ORDER_MODIFYING)


class TestPreconditions:
    def test_order_must_be_modifying(self, placed_order_factory, tshirt, mug, settings):
        order = placed_order_factory([(tshirt, 2)])

        result = modification_service.modify_order(
            order.id, add_items=[{"product_variant_id": mug.id, "quantity": 1}], settings=settings
        )

        assert isinstance(result, OrderModificationStateError)

    def test_empty_batch(self, placed_order_factory, tshirt, settings):
        order = _start_modifying(placed_order_factory([(tshirt, 2)]))

        result = modification_service.modify_order(order.id, note="nothing", settings=settings)

        assert isinstance(result, NoChangesSpecifiedError)
        assert db.session.query(OrderModification).count() == 0


class TestDryRun:
    def test_dry_run_previews_without_persisting(self, placed_order_factory, tshirt, mug, settings):
        order = _start_modifying(placed_order_factory([(tshirt, 2)]))

        result = modification_service.modify_order(
            order.id,
            dry_run=True,
            add_items=[{"product_variant_id": mug.id, "quantity": 1}],
            settings=settings,
        )

        assert isinstance(result, ModificationPreview)
        assert result.price_change == 500
        assert result.to_dict()["total_with_tax"] == 2500

        order = db.session.get(Order, order.id)
        assert order.total_with_tax_cents == 2000
        assert len(order.lines) == 1
        assert db.session.query(OrderModification).count() == 0
        assert mug.stock_allocated == 0


class TestPriceIncrease:
    def test_increase_requires_payment_method(self, placed_order_factory, tshirt, mug, settings):
        order = _start_modifying(placed_order_factory([(tshirt, 2)]))

        result = modification_service.modify_order(
            order.id, add_items=[{"product_variant_id": mug.id, "quantity": 1}], settings=settings
        )

        assert isinstance(result, PaymentMethodMissingError)
        order = db.session.get(Order, order.id)
        assert len(order.lines) == 1
        assert order.total_with_tax_cents == 2000

    def test_increase_settles_with_new_payment(self, placed_order_factory, tshirt, mug, settings):
        order = _start_modifying(placed_order_factory([(tshirt, 2)]))

        order = modification_service.modify_order(
            order.id,
            add_items=[{"product_variant_id": mug.id, "quantity": 1}],
            payment_method_code="cash",
            note="added a mug",
            actor_user_id=2,
            settings=settings,
        )

        assert order.total_with_tax_cents == 2500
        modification = order.modifications[0]
        assert modification.price_change_cents == 500
        assert modification.is_settled is True
        payment = db.session.get(Payment, modification.payment_id)
        assert payment.amount_cents == 500
        assert payment.state == PAYMENT_SETTLED
        assert mug.stock_allocated == 1
        assert account_balance(order.channel_id, "SALES") == -2500
        assert account_balance(order.channel_id, "ACCOUNTS_RECEIVABLE") == 0
        assert (
            db.session.query(JournalEntry)
            .filter_by(order_id=order.id, source_type="order_modification")
            .count()
            == 1
        )

        order = order_state_service.transition_order_to_state(order.id, ORDER_PAYMENT_SETTLED)
        assert order.state == ORDER_PAYMENT_SETTLED

    def test_surcharge_counts_towards_price_change(self, placed_order_factory, tshirt, settings):
        order = _start_modifying(placed_order_factory([(tshirt, 1)]))

        order = modification_service.modify_order(
            order.id,
            surcharges=[{"description": "Gift wrap", "sku": "WRAP", "price": 300, "tax_rate_bps": 0}],
            payment_method_code="cash",
            settings=settings,
        )

        assert order.total_with_tax_cents == 1300
        assert [s.description for s in order.surcharges] == ["Gift wrap"]
        assert order.modifications[0].price_change_cents == 300


class TestPriceDecrease:
    def test_decrease_requires_refund_payment(self, placed_order_factory, tshirt, settings):
        order = _start_modifying(placed_order_factory([(tshirt, 2)]))
        line = order.lines[0]

        result = modification_service.modify_order(
            order.id, adjust_order_lines=[{"order_line_id": line.id, "quantity": 1}], settings=settings
        )

        assert isinstance(result, RefundPaymentIdMissingError)
        assert db.session.get(Order, order.id).lines[0].quantity == 2

    def test_decrease_refunds_against_payment(self, placed_order_factory, tshirt, settings):
        order = _start_modifying(placed_order_factory([(tshirt, 2)]))
        line = order.lines[0]
        payment = order.payments[0]

        order = modification_service.modify_order(
            order.id,
            adjust_order_lines=[{"order_line_id": line.id, "quantity": 1}],
            refund={"payment_id": payment.id, "reason": "one shirt too many"},
            settings=settings,
        )

        modification = order.modifications[0]
        assert modification.price_change_cents == -1000
        assert modification.is_settled is True
        refund = db.session.get(Refund, modification.refund_id)
        assert refund.state == REFUND_SETTLED
        assert refund.total_cents == 1000
        assert refund.debit_account_code == "ACCOUNTS_RECEIVABLE"
        assert tshirt.stock_allocated == 1
        assert account_balance(order.channel_id, "CASH_ON_HAND") == 1000
        assert account_balance(order.channel_id, "ACCOUNTS_RECEIVABLE") == 0
        assert find_unbalanced_entries() == []

        order = order_state_service.transition_order_to_state(order.id, ORDER_PAYMENT_SETTLED)
        assert order.state == ORDER_PAYMENT_SETTLED

    def test_pending_refund_blocks_leaving_modifying(self, order_factory, tshirt, settings):
        order = order_factory([(tshirt, 2)])
        order = payment_service.add_payment_to_order(order.id, method_code="card", settings=settings)
        payment = order.payments[0]
        payment_service.settle_payment(payment.id, settings=settings)
        order = _start_modifying(db.session.get(Order, order.id))

        order = modification_service.modify_order(
            order.id,
            adjust_order_lines=[{"order_line_id": order.lines[0].id, "quantity": 1}],
            refund={"payment_id": payment.id},
            settings=settings,
        )
        modification = order.modifications[0]
        assert modification.is_settled is False
        assert db.session.get(Refund, modification.refund_id).state == REFUND_PENDING

        result = order_state_service.transition_order_to_state(order.id, ORDER_PAYMENT_SETTLED)
        assert isinstance(result, OrderStateTransitionError)
        assert result.from_state == ORDER_MODIFYING

        refund_service.settle_refund(modification.refund_id, transaction_id="RF-1", settings=settings)
        assert db.session.get(OrderModification, modification.id).is_settled is True

        order = order_state_service.transition_order_to_state(order.id, ORDER_PAYMENT_SETTLED)
        assert order.state == ORDER_PAYMENT_SETTLED


class TestModificationDrawer:
    def test_cash_increase_lands_in_open_drawer(self, channel, placed_order_factory, tshirt, mug, settings):
        session = cashier_service.open_cashier_session(
            channel_id=channel.id,
            cashier_user_id=1,
            opening_balances=[{"account_code": "CASH_ON_HAND", "amount_cents": 5000}],
            settings=settings,
        )
        order = _start_modifying(placed_order_factory([(tshirt, 1)]))

        order = modification_service.modify_order(
            order.id,
            add_items=[{"product_variant_id": mug.id, "quantity": 1}],
            payment_method_code="cash",
            settings=settings,
        )

        payment = db.session.get(Payment, order.modifications[0].payment_id)
        assert payment.cashier_session_id == session.id
        assert cashier_service.expected_cash(session) == 6500

    def test_cash_decrease_pays_out_of_open_drawer(self, channel, placed_order_factory, tshirt, settings):
        order = _start_modifying(placed_order_factory([(tshirt, 2)]))
        session = cashier_service.open_cashier_session(
            channel_id=channel.id,
            cashier_user_id=1,
            opening_balances=[{"account_code": "CASH_ON_HAND", "amount_cents": 5000}],
            settings=settings,
        )

        order = modification_service.modify_order(
            order.id,
            adjust_order_lines=[{"order_line_id": order.lines[0].id, "quantity": 1}],
            refund={"payment_id": order.payments[0].id},
            settings=settings,
        )

        refund = db.session.get(Refund, order.modifications[0].refund_id)
        assert refund.cashier_session_id == session.id
        assert cashier_service.expected_cash(session) == 4000

    def test_cash_control_requires_open_drawer(self, placed_order_factory, tshirt, mug, settings):
        order = _start_modifying(placed_order_factory([(tshirt, 1)]))

        with pytest.raises(CashierSessionError):
            modification_service.modify_order(
                order.id,
                add_items=[{"product_variant_id": mug.id, "quantity": 1}],
                payment_method_code="cash",
                settings=settings.with_overrides(cash_control_enabled=True),
            )

        assert db.session.query(OrderModification).count() == 0

    def test_revenue_delta_is_journaled_before_its_payment(self, placed_order_factory, tshirt, mug, settings):
        order = _start_modifying(placed_order_factory([(tshirt, 1)]))

        modification_service.modify_order(
            order.id,
            add_items=[{"product_variant_id": mug.id, "quantity": 1}],
            payment_method_code="cash",
            settings=settings,
        )

        entries = list_entries(channel_id=order.channel_id, order_id=order.id)
        assert [e.source_type for e in entries] == ["order_placed", "payment", "order_modification", "payment"]


class TestAddresses:
    def test_address_change_without_price_change(self, placed_order_factory, tshirt, settings):
        order = _start_modifying(placed_order_factory([(tshirt, 1)]))

        order = modification_service.modify_order(
            order.id,
            update_shipping_address={"streetLine1": "12 Kenyatta Ave", "city": "Nairobi"},
            settings=settings,
        )

        assert order.shipping_address["city"] == "Nairobi"
        modification = order.modifications[0]
        assert modification.price_change_cents == 0
        assert modification.is_settled is True
        assert modification.shipping_address_change == {"streetLine1": "12 Kenyatta Ave", "city": "Nairobi"}
