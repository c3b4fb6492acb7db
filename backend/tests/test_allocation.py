"""
Bulk customer payment allocation tests.

Three credit orders of 1000, 2000 and 500 cents, placed in that order.
"""

import pytest

from orderledger.extensions import db
from orderledger.models import Order
from orderledger.services.allocation_service import AllocationError, allocate_bulk_payment
from orderledger.services.ledger_service import account_balance, find_unbalanced_entries
from orderledger.services.order_state_service import outstanding_amount
from orderledger.states import (
    ORDER_PAYMENT_AUTHORIZED,
    ORDER_PAYMENT_SETTLED,
    PAYMENT_CANCELLED,
    PAYMENT_SETTLED,
)


@pytest.fixture
def credit_orders(placed_order_factory, customer, tshirt, mug):
    return [
        placed_order_factory([(tshirt, 1)], method="credit", customer=customer),
        placed_order_factory([(tshirt, 2)], method="credit", customer=customer),
        placed_order_factory([(mug, 1)], method="credit", customer=customer),
    ]


def _paid(result):
    return [(item["order_id"], item["amount_paid"]) for item in result.orders_paid]


class TestAllocation:
    def test_oldest_first_partial(self, credit_orders, customer, settings):
        first, second, third = credit_orders
        assert first.state == ORDER_PAYMENT_AUTHORIZED

        result = allocate_bulk_payment(customer_id=customer.id, payment_amount=2500, settings=settings)

        assert _paid(result) == [(first.id, 1000), (second.id, 1500)]
        assert result.total_allocated == 2500
        assert result.remaining_balance == 1000
        assert result.excess_payment == 0
        assert result.customer_outstanding == 1000

        first = db.session.get(Order, first.id)
        assert first.state == ORDER_PAYMENT_SETTLED
        assert {p.method: p.state for p in first.payments} == {"credit": PAYMENT_CANCELLED, "cash": PAYMENT_SETTLED}
        second = db.session.get(Order, second.id)
        assert second.state == ORDER_PAYMENT_AUTHORIZED
        assert outstanding_amount(second) == 500
        assert account_balance(customer.channel_id, "CASH_ON_HAND") == 2500
        assert account_balance(customer.channel_id, "ACCOUNTS_RECEIVABLE") == 1000

    def test_excess_payment(self, credit_orders, customer, settings):
        result = allocate_bulk_payment(customer_id=customer.id, payment_amount=5000, settings=settings)

        assert result.total_allocated == 3500
        assert result.remaining_balance == 0
        assert result.excess_payment == 1500
        assert sum(item["amount_paid"] for item in result.orders_paid) + result.excess_payment == 5000
        assert all(db.session.get(Order, o.id).state == ORDER_PAYMENT_SETTLED for o in credit_orders)
        assert find_unbalanced_entries() == []

        payload = result.to_dict()
        assert payload["__typename"] == "PaymentAllocationResult"
        assert payload["excessPayment"] == "1500"

    def test_explicit_order_ids(self, credit_orders, customer, settings):
        first, second, third = credit_orders

        result = allocate_bulk_payment(
            customer_id=customer.id,
            payment_amount=1000,
            order_ids=[third.id, first.id],
            payment_method_code="mpesa",
            settings=settings,
        )

        assert _paid(result) == [(third.id, 500), (first.id, 500)]
        assert result.remaining_balance == 500
        assert result.customer_outstanding == 2500
        assert result.to_dict()["customerOutstanding"] == "2500"
        assert account_balance(customer.channel_id, "CLEARING_MPESA") == 1000

    def test_newest_first_policy(self, credit_orders, customer, settings):
        first, second, third = credit_orders

        result = allocate_bulk_payment(
            customer_id=customer.id,
            payment_amount=600,
            settings=settings.with_overrides(allocation_order_policy="newest_first"),
        )

        assert _paid(result) == [(third.id, 500), (second.id, 100)]

    def test_deposit_to_bank(self, credit_orders, customer, settings):
        allocate_bulk_payment(
            customer_id=customer.id,
            payment_amount=1000,
            payment_method_code="card",
            debit_account_code="BANK_MAIN",
            settings=settings,
        )

        assert account_balance(customer.channel_id, "BANK_MAIN") == 1000
        assert account_balance(customer.channel_id, "CLEARING_CARD") == 0


class TestAllocationErrors:
    def test_amount_must_be_positive(self, credit_orders, customer, settings):
        with pytest.raises(AllocationError):
            allocate_bulk_payment(customer_id=customer.id, payment_amount=0, settings=settings)

    def test_duplicate_order_ids(self, credit_orders, customer, settings):
        first = credit_orders[0]

        with pytest.raises(AllocationError):
            allocate_bulk_payment(
                customer_id=customer.id, payment_amount=100, order_ids=[first.id, first.id], settings=settings
            )

    def test_foreign_order_ids(self, credit_orders, customer, placed_order_factory, tshirt, settings):
        walk_in = placed_order_factory([(tshirt, 1)])

        with pytest.raises(AllocationError):
            allocate_bulk_payment(
                customer_id=customer.id, payment_amount=100, order_ids=[walk_in.id], settings=settings
            )

    def test_credit_method_rejected(self, credit_orders, customer, settings):
        with pytest.raises(AllocationError):
            allocate_bulk_payment(
                customer_id=customer.id, payment_amount=100, payment_method_code="credit", settings=settings
            )

        assert account_balance(customer.channel_id, "ACCOUNTS_RECEIVABLE") == 3500

    def test_unknown_policy(self, customer, settings):
        with pytest.raises(AllocationError):
            allocate_bulk_payment(
                customer_id=customer.id,
                payment_amount=100,
                settings=settings.with_overrides(allocation_order_policy="largest_first"),
            )
