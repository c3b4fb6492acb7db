# Overview: Ledger posting rules for orders, payments, refunds, cash counts and purchases.

"""
Posting rules (every entry balances, amounts in integer cents)

- Order placed:        Dr ACCOUNTS_RECEIVABLE total_with_tax
                       Cr SALES sub_total, Cr SHIPPING_INCOME shipping, Cr TAX_PAYABLE tax
- Revenue delta:       same accounts, signed by the change in totals
                       (modifications and line cancellations)
- Payment settled:     Dr method account, Cr ACCOUNTS_RECEIVABLE
- Refund settled:      Dr SALES_RETURNS (or ACCOUNTS_RECEIVABLE for modification
                       refunds), Cr method account
- Cash count variance: Dr/Cr CASH_OVER_SHORT against CASH_ON_HAND (session tagged)
- Purchase on credit:  Dr PURCHASES, Cr ACCOUNTS_PAYABLE
- Supplier payment:    Dr ACCOUNTS_PAYABLE, Cr paying account

Cashier-controlled accounts carry the cashier session id on the line so the
session's expected balances can be read straight from the ledger.
"""

from __future__ import annotations

from ..models import CashDrawerCount, Order, Payment, Purchase, PurchasePayment, Refund
from .ledger_service import (
    ACCOUNT_CASH_ON_HAND,
    ACCOUNT_CASH_OVER_SHORT,
    ACCOUNT_PAYABLE,
    ACCOUNT_PURCHASES,
    ACCOUNT_RECEIVABLE,
    ACCOUNT_SALES,
    ACCOUNT_SHIPPING_INCOME,
    ACCOUNT_TAX_PAYABLE,
    LedgerIntegrityError,
    credit,
    debit,
    post_journal_entry,
    signed,
)
from .payment_handlers import get_handler
from .pricing_service import totals_snapshot


SOURCE_ORDER_PLACED = "order_placed"
SOURCE_ORDER_MODIFICATION = "order_modification"
SOURCE_ORDER_CANCELLATION = "order_cancellation"
SOURCE_PAYMENT = "payment"
SOURCE_REFUND = "refund"
SOURCE_CASH_COUNT = "cash_count"
SOURCE_PURCHASE = "purchase"
SOURCE_PURCHASE_PAYMENT = "purchase_payment"
SOURCE_REVERSAL = "reversal"

# Entries that recognize (or adjust) revenue for an order; reverse_order undoes these only.
REVENUE_SOURCES = (SOURCE_ORDER_PLACED, SOURCE_ORDER_MODIFICATION, SOURCE_ORDER_CANCELLATION)


def post_order_placed(order: Order):
    t = totals_snapshot(order)
    return post_journal_entry(
        channel_id=order.channel_id,
        source_type=SOURCE_ORDER_PLACED,
        source_id=order.id,
        order_id=order.id,
        memo=f"Order {order.code} placed",
        lines=[
            signed(ACCOUNT_RECEIVABLE, t["total_with_tax"]),
            signed(ACCOUNT_SALES, -t["sub_total"]),
            signed(ACCOUNT_SHIPPING_INCOME, -t["shipping"]),
            signed(ACCOUNT_TAX_PAYABLE, -t["tax"]),
        ],
    )


def post_revenue_delta(order: Order, before: dict, after: dict, *, source_type: str, source_id, memo: str | None = None):
    """Post the change between two totals snapshots. Nothing is posted for a zero delta."""
    d_total = after["total_with_tax"] - before["total_with_tax"]
    d_sub = after["sub_total"] - before["sub_total"]
    d_ship = after["shipping"] - before["shipping"]
    d_tax = after["tax"] - before["tax"]
    return post_journal_entry(
        channel_id=order.channel_id,
        source_type=source_type,
        source_id=source_id,
        order_id=order.id,
        memo=memo,
        lines=[
            signed(ACCOUNT_RECEIVABLE, d_total),
            signed(ACCOUNT_SALES, -d_sub),
            signed(ACCOUNT_SHIPPING_INCOME, -d_ship),
            signed(ACCOUNT_TAX_PAYABLE, -d_tax),
        ],
    )


def _session_tag(handler, account_code: str, cashier_session_id: int | None) -> int | None:
    if handler.cashier_controlled or account_code == ACCOUNT_CASH_ON_HAND:
        return cashier_session_id
    return None


def payment_account(payment: Payment) -> str:
    account_code = payment.ledger_account_code or get_handler(payment.handler).account_code
    if not account_code:
        raise LedgerIntegrityError(f"Payment {payment.id} ({payment.handler}) has no ledger account")
    return account_code


def post_payment_settled(payment: Payment, *, channel_id: int):
    handler = get_handler(payment.handler)
    account_code = payment_account(payment)
    payment.ledger_account_code = account_code
    return post_journal_entry(
        channel_id=channel_id,
        source_type=SOURCE_PAYMENT,
        source_id=payment.id,
        order_id=payment.order_id,
        memo=f"Payment {payment.id} settled ({payment.method})",
        lines=[
            debit(
                account_code,
                payment.amount_cents,
                cashier_session_id=_session_tag(handler, account_code, payment.cashier_session_id),
            ),
            credit(ACCOUNT_RECEIVABLE, payment.amount_cents),
        ],
    )


def post_refund_settled(refund: Refund, *, channel_id: int):
    payment = refund.payment
    handler = get_handler(payment.handler)
    account_code = payment_account(payment)
    return post_journal_entry(
        channel_id=channel_id,
        source_type=SOURCE_REFUND,
        source_id=refund.id,
        order_id=refund.order_id,
        memo=f"Refund {refund.id} settled ({refund.method})",
        lines=[
            debit(refund.debit_account_code, refund.total_cents),
            credit(
                account_code,
                refund.total_cents,
                cashier_session_id=_session_tag(handler, account_code, refund.cashier_session_id),
            ),
        ],
    )


def post_cash_count_variance(count: CashDrawerCount):
    """
    Book a count variance so the drawer's ledger balance matches the count.

    short (variance < 0): Dr CASH_OVER_SHORT, Cr CASH_ON_HAND
    over  (variance > 0): Dr CASH_ON_HAND, Cr CASH_OVER_SHORT
    """
    v = count.variance_cents
    if not v:
        return None
    return post_journal_entry(
        channel_id=count.channel_id,
        source_type=SOURCE_CASH_COUNT,
        source_id=count.id,
        memo=f"Cash {count.count_type} count variance (session {count.session_id})",
        lines=[
            signed(ACCOUNT_CASH_ON_HAND, v, cashier_session_id=count.session_id),
            signed(ACCOUNT_CASH_OVER_SHORT, -v),
        ],
    )


def post_purchase(purchase: Purchase, *, paid_from_account: str = ACCOUNT_CASH_ON_HAND):
    credit_account = ACCOUNT_PAYABLE if purchase.is_credit_purchase else paid_from_account
    return post_journal_entry(
        channel_id=purchase.channel_id,
        source_type=SOURCE_PURCHASE,
        source_id=purchase.id,
        memo=f"Purchase {purchase.reference}",
        lines=[
            debit(ACCOUNT_PURCHASES, purchase.total_cents),
            credit(credit_account, purchase.total_cents),
        ],
    )


def post_supplier_payment(purchase_payment: PurchasePayment, *, paid_from_account: str):
    return post_journal_entry(
        channel_id=purchase_payment.channel_id,
        source_type=SOURCE_PURCHASE_PAYMENT,
        source_id=purchase_payment.id,
        memo=f"Supplier payment on purchase {purchase_payment.purchase_id}",
        lines=[
            debit(ACCOUNT_PAYABLE, purchase_payment.amount_cents),
            credit(paid_from_account, purchase_payment.amount_cents),
        ],
    )
