# Overview: Service-layer refunds; itemized or amount refunds against one settled payment.

"""
Refund Service

RULES:
- Refunds go against exactly one Settled payment.
- total = items + shipping + adjustment. When an explicit amount is given,
  total = amount and the adjustment absorbs the difference, so the identity
  always holds.
- items = sum over lines of round-half-up(prorated line price with tax *
  qty / line quantity) (integer cents).
- total <= payment.amount - sum(non-failed refunds) (maximumRefundable).
- The handler decides whether the refund settles immediately or stays
  Pending until settle_refund.
- Cash paid out through a cashier-controlled handler is charged to the
  session open when the refund settles, not the one that took the payment.

LEDGER (on settlement): Dr SALES_RETURNS (or ACCOUNTS_RECEIVABLE for
modification refunds) / Cr the payment's account.
"""

from __future__ import annotations

from flask import current_app

from ..errors import (
    AlreadyRefundedError,
    MultipleOrderError,
    NothingToRefundError,
    PaymentOrderMismatchError,
    QuantityTooGreatError,
    RefundAmountError,
    RefundOrderStateError,
    RefundStateTransitionError,
)
from ..extensions import db
from ..models import Order, OrderLine, OrderModification, Refund, RefundLine
from ..states import (
    ORDER_ADDING_ITEMS,
    ORDER_ARRANGING_PAYMENT,
    PAYMENT_SETTLED,
    REFUND_FAILED,
    REFUND_SETTLED,
    REFUND_TRANSITIONS,
)
from orderledger.time_utils import utcnow
from .audit_service import append_audit_event
from .concurrency import lock_for_update, run_mutation
from .ledger_service import ACCOUNT_SALES_RETURNS
from .payment_handlers import PaymentHandler, get_handler
from .payment_service import get_payment_locked, resolve_cashier_session_id
from .posting_service import post_refund_settled
from .pricing_service import round_half_up_div
from .settings_service import ChannelSettings


class RefundError(Exception):
    """Raised for refund lookup and input errors."""
    pass


def _refunded_quantities(order_line_id: int) -> tuple[int, int | None]:
    """(quantity already refunded for a line, id of the latest refund touching it)."""
    rows = (
        db.session.query(RefundLine.quantity, Refund.id)
        .join(Refund, Refund.id == RefundLine.refund_id)
        .filter(RefundLine.order_line_id == order_line_id, Refund.state != REFUND_FAILED)
        .order_by(Refund.id.asc())
        .all()
    )
    total = sum(q for q, _ in rows)
    last_id = rows[-1][1] if rows else None
    return total, last_id


def attach_refund_session(refund: Refund, handler: PaymentHandler, channel_id: int, settings: ChannelSettings) -> None:
    """Cash paid out comes from the drawer open now."""
    if refund.cashier_session_id is None:
        refund.cashier_session_id = resolve_cashier_session_id(handler, channel_id, settings)


def line_refund_amount(line: OrderLine, quantity: int) -> int:
    """Share of the line's prorated price (with tax) for quantity units."""
    if line.quantity <= 0 or quantity <= 0:
        return 0
    return round_half_up_div(line.prorated_line_price_with_tax_cents * quantity, line.quantity)


def refund_order(
    *,
    payment_id: int,
    amount: int | None = None,
    reason: str | None = None,
    lines: list[dict] | None = None,
    shipping: int = 0,
    adjustment: int = 0,
    actor_user_id: int | None = None,
    settings: ChannelSettings,
):
    """
    lines: [{"order_line_id", "quantity"}]; repeated lines are summed.

    Returns:
        Refund | AlreadyRefundedError | MultipleOrderError |
        NothingToRefundError | PaymentOrderMismatchError |
        QuantityTooGreatError | RefundAmountError | RefundOrderStateError |
        RefundStateTransitionError
    """
    def _op():
        payment = get_payment_locked(payment_id)
        if payment.state != PAYMENT_SETTLED:
            raise RefundStateTransitionError(
                payment.state,
                "Pending",
                f"Cannot refund a Payment in the \"{payment.state}\" state",
            )
        order = lock_for_update(db.session.query(Order).filter_by(id=payment.order_id)).first()
        if order.state in (ORDER_ADDING_ITEMS, ORDER_ARRANGING_PAYMENT):
            raise RefundOrderStateError(order.state)

        requested: list[tuple[OrderLine, int]] = []
        if lines:
            ids = [int(item["order_line_id"]) for item in lines]
            found = db.session.query(OrderLine).filter(OrderLine.id.in_(ids)).all()
            if len(found) != len(set(ids)):
                raise RefundError("One or more order lines were not found")
            if len({line.order_id for line in found}) > 1:
                raise MultipleOrderError()
            if found[0].order_id != order.id:
                raise PaymentOrderMismatchError()

            by_id = {line.id: line for line in found}
            quantities: dict[int, int] = {}
            for item in lines:
                qty = int(item["quantity"])
                if qty < 0:
                    raise RefundError("Refund quantity cannot be negative")
                line_id = int(item["order_line_id"])
                quantities[line_id] = quantities.get(line_id, 0) + qty
            for line_id, qty in quantities.items():
                line = by_id[line_id]
                already, last_refund_id = _refunded_quantities(line.id)
                if line.quantity > 0 and already >= line.quantity:
                    raise AlreadyRefundedError(last_refund_id)
                if qty > line.quantity - already:
                    raise QuantityTooGreatError()
                if qty:
                    requested.append((line, qty))

        items = sum(line_refund_amount(line, qty) for line, qty in requested)
        shipping_cents = int(shipping or 0)
        if shipping_cents < 0:
            raise RefundError("Shipping refund cannot be negative")
        if amount is not None:
            total = int(amount)
            adjustment_cents = total - items - shipping_cents
        else:
            adjustment_cents = int(adjustment or 0)
            total = items + shipping_cents + adjustment_cents

        if total <= 0:
            raise NothingToRefundError()
        maximum = payment.amount_cents - payment.refunded_cents
        if total > maximum:
            raise RefundAmountError(maximum)

        handler = get_handler(payment.handler)
        result = handler.create_refund(payment, total)
        refund = Refund(
            payment=payment,
            order_id=order.id,
            items_cents=items,
            shipping_cents=shipping_cents,
            adjustment_cents=adjustment_cents,
            total_cents=total,
            state=result.state,
            reason=reason,
            method=payment.method,
            transaction_id=result.transaction_id,
            debit_account_code=ACCOUNT_SALES_RETURNS,
            created_by_user_id=actor_user_id,
        )
        db.session.add(refund)
        db.session.flush()
        for line, qty in requested:
            db.session.add(RefundLine(refund=refund, order_line_id=line.id, quantity=qty))

        if refund.state == REFUND_SETTLED:
            attach_refund_session(refund, handler, order.channel_id, settings)
            refund.settled_at = utcnow()
            post_refund_settled(refund, channel_id=order.channel_id)

        append_audit_event(
            channel_id=order.channel_id,
            event_type="REFUND_CREATED",
            event_category="payments",
            entity_type="refund",
            entity_id=refund.id,
            actor_user_id=actor_user_id,
            order_id=order.id,
            payment_id=payment.id,
            note=reason,
            payload={"total": total, "items": items, "shipping": shipping_cents, "adjustment": adjustment_cents},
        )
        db.session.commit()
        current_app.logger.info(
            "Refund %s (%s, %s) on payment %s", refund.id, total, refund.state, payment.id
        )
        return refund

    return run_mutation(_op)


def settle_refund(
    refund_id: int,
    *,
    transaction_id: str | None = None,
    actor_user_id: int | None = None,
    settings: ChannelSettings,
):
    """
    Pending -> Settled. Posts the refund and settles the modification it
    belongs to, if any.

    Returns:
        Refund | RefundStateTransitionError
    """
    def _op():
        refund = lock_for_update(db.session.query(Refund).filter_by(id=refund_id)).first()
        if not refund:
            raise RefundError(f"Refund {refund_id} not found")
        if REFUND_SETTLED not in REFUND_TRANSITIONS.get(refund.state, ()):
            raise RefundStateTransitionError(
                refund.state,
                REFUND_SETTLED,
                f"Cannot transition Refund from \"{refund.state}\" to \"{REFUND_SETTLED}\"",
            )

        order = db.session.get(Order, refund.order_id)
        attach_refund_session(refund, get_handler(refund.payment.handler), order.channel_id, settings)
        refund.state = REFUND_SETTLED
        refund.settled_at = utcnow()
        if transaction_id:
            refund.transaction_id = transaction_id
        post_refund_settled(refund, channel_id=order.channel_id)

        modification = db.session.query(OrderModification).filter_by(refund_id=refund.id).first()
        if modification:
            modification.is_settled = True

        append_audit_event(
            channel_id=order.channel_id,
            event_type="REFUND_SETTLED",
            event_category="payments",
            entity_type="refund",
            entity_id=refund.id,
            actor_user_id=actor_user_id,
            order_id=order.id,
            payment_id=refund.payment_id,
        )
        db.session.commit()
        return refund

    return run_mutation(_op)


def get_refund(refund_id: int) -> Refund:
    refund = db.session.get(Refund, refund_id)
    if not refund:
        raise RefundError(f"Refund {refund_id} not found")
    return refund
