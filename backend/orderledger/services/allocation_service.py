# Overview: Service-layer bulk allocation of one customer payment across outstanding orders.

"""
Bulk Payment Allocation

WHY: Credit customers pay their account in lump sums. One incoming amount
has to be spread across the orders they still owe on, deterministically and
without rounding drift.

ALGORITHM (integer cents only):
    remaining = P
    for order in candidates:            # explicit order_ids order, else policy
        pay = min(remaining, outstanding(order))
        if pay > 0: settle a payment of `pay` on the order
        remaining -= pay
    excessPayment    = remaining left after the last order
    remainingBalance = outstanding still unpaid across the candidates
    customerOutstanding = everything the customer still owes afterwards,
                          targeted or not

CONSERVATION:
    sum(amountPaid) + excessPayment    == P
    sum(amountPaid) + remainingBalance == outstanding(candidates)
    excessPayment > 0  =>  remainingBalance == 0

POLICY (no order_ids): oldest_first (FIFO by placement) or newest_first.

CONCURRENCY: the customer row is locked and versioned for the whole
allocation, so two allocations for the same customer serialize.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from flask import current_app

from ..extensions import db
from ..models import Customer, Order, Payment
from ..states import (
    ORDER_CANCELLED,
    ORDER_PAYMENT_AUTHORIZED,
    ORDER_PAYMENT_SETTLED,
    PAYMENT_AUTHORIZED,
    PAYMENT_CANCELLED,
    PAYMENT_SETTLED,
)
from orderledger.time_utils import utcnow
from .audit_service import append_audit_event
from .channel_service import get_payment_method
from .concurrency import lock_for_update, run_with_retry
from .ledger_service import get_account
from .order_state_service import apply_transition, outstanding_amount
from .payment_handlers import get_handler
from .payment_service import resolve_cashier_session_id
from .posting_service import post_payment_settled
from .settings_service import ChannelSettings


class AllocationError(Exception):
    """Raised for allocation input errors."""
    pass


POLICY_OLDEST_FIRST = "oldest_first"
POLICY_NEWEST_FIRST = "newest_first"
ALLOCATION_POLICIES = (POLICY_OLDEST_FIRST, POLICY_NEWEST_FIRST)


@dataclass
class PaymentAllocationResult:
    orders_paid: list[dict] = field(default_factory=list)
    total_allocated: int = 0
    remaining_balance: int = 0
    excess_payment: int = 0
    customer_outstanding: int = 0

    def to_dict(self) -> dict:
        return {
            "__typename": "PaymentAllocationResult",
            "ordersPaid": [
                {
                    "orderId": item["order_id"],
                    "orderCode": item["order_code"],
                    "amountPaid": str(item["amount_paid"]),
                }
                for item in self.orders_paid
            ],
            "totalAllocated": str(self.total_allocated),
            "remainingBalance": str(self.remaining_balance),
            "excessPayment": str(self.excess_payment),
            "customerOutstanding": str(self.customer_outstanding),
        }


def _candidate_orders(customer: Customer, order_ids: list[int] | None, policy: str) -> list[Order]:
    base = db.session.query(Order).filter(
        Order.customer_id == customer.id,
        Order.order_placed_at.isnot(None),
        Order.state != ORDER_CANCELLED,
    )
    if order_ids:
        ids = [int(order_id) for order_id in order_ids]
        if len(set(ids)) != len(ids):
            raise AllocationError("order_ids contains duplicates")
        found = {order.id: order for order in base.filter(Order.id.in_(ids)).all()}
        missing = [order_id for order_id in ids if order_id not in found]
        if missing:
            raise AllocationError(
                f"Orders {missing} are not open placed orders of customer {customer.id}"
            )
        return [found[order_id] for order_id in ids]

    if policy == POLICY_NEWEST_FIRST:
        ordering = (Order.order_placed_at.desc(), Order.id.desc())
    else:
        ordering = (Order.order_placed_at.asc(), Order.id.asc())
    return base.order_by(*ordering).all()


def _close_out_credit(order: Order, *, actor_user_id: int | None) -> None:
    """Once settled money covers the order, drop its credit authorizations."""
    for payment in order.payments:
        if payment.state == PAYMENT_AUTHORIZED and payment.handler == "credit":
            payment.state = PAYMENT_CANCELLED
    if order.state == ORDER_PAYMENT_AUTHORIZED:
        apply_transition(order, ORDER_PAYMENT_SETTLED, actor_user_id=actor_user_id)


def allocate_bulk_payment(
    *,
    customer_id: int,
    payment_amount: int,
    order_ids: list[int] | None = None,
    payment_method_code: str = "cash",
    debit_account_code: str | None = None,
    actor_user_id: int | None = None,
    settings: ChannelSettings,
) -> PaymentAllocationResult:
    """
    Spread payment_amount across the customer's outstanding orders.

    Args:
        customer_id: Customer paying
        payment_amount: Amount received (cents, > 0)
        order_ids: Explicit allocation order (optional)
        payment_method_code: Tender the money arrived in
        debit_account_code: Account the money landed in, overriding the
            method's account (e.g. BANK_MAIN)

    Raises:
        AllocationError: bad amount, unknown customer/method/account or order ids
    """
    if payment_amount is None or int(payment_amount) <= 0:
        raise AllocationError("payment_amount must be a positive integer number of cents")
    payment_amount = int(payment_amount)
    policy = settings.allocation_order_policy
    if policy not in ALLOCATION_POLICIES:
        raise AllocationError(f"Unknown allocation policy '{policy}'")

    def _op():
        customer = lock_for_update(db.session.query(Customer).filter_by(id=customer_id)).first()
        if not customer:
            raise AllocationError(f"Customer {customer_id} not found")
        # Bumps version_id: a concurrent allocation for this customer fails on commit.
        customer.last_allocation_at = utcnow()

        method = get_payment_method(customer.channel_id, payment_method_code)
        if not method or not method.enabled:
            raise AllocationError(f"Payment method '{payment_method_code}' is not available")
        if method.handler == "credit":
            raise AllocationError("A credit method cannot settle credit balances")
        handler = get_handler(method.handler)
        account_code = debit_account_code or handler.account_code
        if not account_code:
            raise AllocationError(f"Payment method '{payment_method_code}' cannot receive an allocation")
        if not get_account(customer.channel_id, account_code):
            raise AllocationError(f"Unknown account {account_code}")

        cashier_session_id = resolve_cashier_session_id(handler, customer.channel_id, settings)
        candidates = _candidate_orders(customer, order_ids, policy)
        result = PaymentAllocationResult()
        remaining = payment_amount
        for order in candidates:
            due = outstanding_amount(order)
            pay = min(remaining, due)
            if pay > 0:
                payment = Payment(
                    order=order,
                    method=method.code,
                    handler=method.handler,
                    amount_cents=pay,
                    state=PAYMENT_SETTLED,
                    ledger_account_code=account_code,
                    payment_metadata={"allocation": True, "customer_id": customer.id},
                    cashier_session_id=cashier_session_id,
                    created_by_user_id=actor_user_id,
                    settled_at=utcnow(),
                )
                db.session.add(payment)
                db.session.flush()
                post_payment_settled(payment, channel_id=order.channel_id)
                result.orders_paid.append({"order_id": order.id, "order_code": order.code, "amount_paid": pay})
                result.total_allocated += pay
                remaining -= pay
                if pay == due:
                    _close_out_credit(order, actor_user_id=actor_user_id)
            result.remaining_balance += due - pay

        result.excess_payment = remaining
        result.customer_outstanding = sum(
            outstanding_amount(order) for order in _candidate_orders(customer, None, policy)
        )

        append_audit_event(
            channel_id=customer.channel_id,
            event_type="CUSTOMER_PAYMENT_ALLOCATED",
            event_category="payments",
            entity_type="customer",
            entity_id=customer.id,
            actor_user_id=actor_user_id,
            payload={
                "payment_amount": payment_amount,
                "total_allocated": result.total_allocated,
                "remaining_balance": result.remaining_balance,
                "excess_payment": result.excess_payment,
                "customer_outstanding": result.customer_outstanding,
                "orders": [item["order_id"] for item in result.orders_paid],
            },
        )
        db.session.commit()
        current_app.logger.info(
            "Allocated %s of %s for customer %s across %d order(s); excess %s",
            result.total_allocated, payment_amount, customer.id, len(result.orders_paid), result.excess_payment,
        )
        return result

    try:
        return run_with_retry(_op)
    except Exception:
        db.session.rollback()
        raise
