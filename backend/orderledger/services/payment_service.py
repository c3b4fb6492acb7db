# Overview: Service-layer payment lifecycle; add, settle, cancel and transition payments on orders.

"""
Payment Service

WHY: Payments move money into the business. Each state change has to agree
with the payment handler, the owning order's state machine and the ledger
in one transaction.

STATES (orderledger.states.PAYMENT_TRANSITIONS):
    Created -> Authorized | Settled | Declined | Error | Cancelled
    Authorized -> Settled | Cancelled | Declined | Error
    Settled is final; money goes back through refunds.

LEDGER:
- Settlement posts Dr <method account> / Cr ACCOUNTS_RECEIVABLE.
- Cashier-controlled payments carry the open cashier session id. With
  cash control enabled on the channel they require an open session.
"""

from __future__ import annotations

from flask import current_app

from ..errors import (
    CancelPaymentError,
    IneligiblePaymentMethodError,
    ManualPaymentStateError,
    OrderPaymentStateError,
    OrderStateTransitionError,
    PaymentDeclinedError,
    PaymentFailedError,
    PaymentStateTransitionError,
    SettlePaymentError,
)
from ..extensions import db
from ..models import Order, Payment
from ..states import (
    ORDER_ARRANGING_ADDITIONAL_PAYMENT,
    ORDER_ARRANGING_PAYMENT,
    ORDER_CANCELLED,
    ORDER_PAYMENT_SETTLED,
    PAYMENT_CANCELLED,
    PAYMENT_DECLINED,
    PAYMENT_ERROR,
    PAYMENT_SETTLED,
    PAYMENT_STATES,
    PAYMENT_TRANSITIONS,
)
from orderledger.time_utils import utcnow
from .audit_service import append_audit_event
from .cashier_service import get_current_session, require_open_session
from .channel_service import get_payment_method
from .concurrency import lock_for_update, run_mutation
from .order_state_service import get_order_locked, outstanding_amount, try_advance_after_payment
from .payment_handlers import PaymentHandler, get_handler
from .posting_service import post_payment_settled
from .settings_service import ChannelSettings


class PaymentError(Exception):
    """Raised for payment lookup and input errors (HTTP 400/404)."""
    pass


# =============================================================================
# HELPERS
# =============================================================================

def get_payment_locked(payment_id: int) -> Payment:
    payment = lock_for_update(db.session.query(Payment).filter_by(id=payment_id)).first()
    if not payment:
        raise PaymentError(f"Payment {payment_id} not found")
    return payment


def get_payment(payment_id: int) -> Payment:
    payment = db.session.get(Payment, payment_id)
    if not payment:
        raise PaymentError(f"Payment {payment_id} not found")
    return payment


def resolve_cashier_session_id(handler: PaymentHandler, channel_id: int, settings: ChannelSettings) -> int | None:
    """
    Session that money moved through a cashier-controlled handler belongs
    to: the one open now, not the one that took the original payment.

    Raises:
        CashierSessionError: cash control is on and no session is open
    """
    if not handler.cashier_controlled:
        return None
    if settings.cash_control_enabled:
        return require_open_session(channel_id).id
    session = get_current_session(channel_id)
    return session.id if session else None


def attach_cashier_session(payment: Payment, handler: PaymentHandler, channel_id: int, settings: ChannelSettings) -> None:
    """Tag a cashier-controlled payment with the open session."""
    session_id = resolve_cashier_session_id(handler, channel_id, settings)
    if session_id is not None:
        payment.cashier_session_id = session_id


def _transition_error(payment: Payment, to_state: str, message: str | None = None) -> PaymentStateTransitionError:
    return PaymentStateTransitionError(
        payment.state,
        to_state,
        message or f"Cannot transition Payment from \"{payment.state}\" to \"{to_state}\"",
    )


def _audit(payment: Payment, order: Order, event_type: str, actor_user_id: int | None, payload: dict | None = None):
    append_audit_event(
        channel_id=order.channel_id,
        event_type=event_type,
        event_category="payments",
        entity_type="payment",
        entity_id=payment.id,
        actor_user_id=actor_user_id,
        order_id=order.id,
        payment_id=payment.id,
        cashier_session_id=payment.cashier_session_id,
        payload=payload,
    )


def _mark_settled(payment: Payment, order: Order, *, settings: ChannelSettings) -> None:
    """Caller has validated the transition."""
    handler = get_handler(payment.handler)
    if payment.cashier_session_id is None:
        attach_cashier_session(payment, handler, order.channel_id, settings)
    payment.state = PAYMENT_SETTLED
    payment.settled_at = utcnow()


def _settle_and_post(payment: Payment, order: Order, *, settings: ChannelSettings, actor_user_id: int | None) -> None:
    """
    Settle, let the order advance, then post the settlement.

    Placing the order recognizes the sale (Dr AR) so it has to land in the
    journal before the payment clears AR.
    """
    _mark_settled(payment, order, settings=settings)
    try_advance_after_payment(order, actor_user_id=actor_user_id)
    _post_settlement(payment, order, actor_user_id=actor_user_id)


def _post_settlement(payment: Payment, order: Order, *, actor_user_id: int | None) -> None:
    db.session.flush()
    post_payment_settled(payment, channel_id=order.channel_id)
    _audit(payment, order, "PAYMENT_SETTLED", actor_user_id, {"amount": payment.amount_cents})


# =============================================================================
# ADD
# =============================================================================

def add_payment_to_order(
    order_id: int,
    *,
    method_code: str,
    amount: int | None = None,
    metadata: dict | None = None,
    actor_user_id: int | None = None,
    settings: ChannelSettings,
):
    """
    Checkout payment through the method's handler.

    Returns:
        Order | OrderPaymentStateError | IneligiblePaymentMethodError |
        PaymentDeclinedError | PaymentFailedError | OrderStateTransitionError
    """
    def _op():
        order = get_order_locked(order_id)
        if order.state != ORDER_ARRANGING_PAYMENT:
            raise OrderPaymentStateError()

        method = get_payment_method(order.channel_id, method_code)
        if not method:
            raise IneligiblePaymentMethodError(f"Unknown payment method '{method_code}'")
        if not method.enabled:
            raise IneligiblePaymentMethodError(f"Payment method '{method_code}' is disabled")

        value = outstanding_amount(order) if amount is None else int(amount)
        if value <= 0:
            raise PaymentError("Payment amount must be greater than zero")

        handler = get_handler(method.handler)
        payment = Payment(
            order=order,
            method=method.code,
            handler=method.handler,
            amount_cents=value,
            state="Created",
            payment_metadata=metadata,
            created_by_user_id=actor_user_id,
        )
        db.session.add(payment)
        attach_cashier_session(payment, handler, order.channel_id, settings)
        db.session.flush()

        result = handler.create_payment(order, value, metadata)
        payment.transaction_id = result.transaction_id
        if result.metadata:
            payment.payment_metadata = {**(metadata or {}), **result.metadata}

        if result.state == PAYMENT_DECLINED:
            payment.state = PAYMENT_DECLINED
            payment.error_message = result.error_message
            _audit(payment, order, "PAYMENT_DECLINED", actor_user_id)
            db.session.commit()
            return PaymentDeclinedError(result.error_message or "Payment declined")
        if result.state == PAYMENT_ERROR:
            payment.state = PAYMENT_ERROR
            payment.error_message = result.error_message
            _audit(payment, order, "PAYMENT_FAILED", actor_user_id)
            db.session.commit()
            return PaymentFailedError(result.error_message or "Payment failed")

        if result.state == PAYMENT_SETTLED:
            _settle_and_post(payment, order, settings=settings, actor_user_id=actor_user_id)
        else:
            payment.state = result.state
            _audit(payment, order, "PAYMENT_ADDED", actor_user_id, {"state": payment.state, "amount": value})
            try_advance_after_payment(order, actor_user_id=actor_user_id)

        db.session.commit()
        current_app.logger.info(
            "Payment %s (%s, %s) added to order %s", payment.id, method.code, payment.state, order.code
        )
        return order

    return run_mutation(_op)


def add_manual_payment_to_order(
    order_id: int,
    *,
    method_code: str,
    transaction_id: str | None = None,
    metadata: dict | None = None,
    actor_user_id: int | None = None,
    settings: ChannelSettings,
):
    """
    Record money received outside the handler (already settled) for the
    outstanding amount.

    Returns:
        Order | ManualPaymentStateError | IneligiblePaymentMethodError
    """
    def _op():
        order = get_order_locked(order_id)
        if order.state not in (ORDER_ARRANGING_PAYMENT, ORDER_ARRANGING_ADDITIONAL_PAYMENT):
            raise ManualPaymentStateError()

        method = get_payment_method(order.channel_id, method_code)
        if not method or not method.enabled:
            raise IneligiblePaymentMethodError(f"Payment method '{method_code}' is not available")
        handler = get_handler(method.handler)
        if handler.account_code is None:
            raise IneligiblePaymentMethodError(f"Payment method '{method_code}' cannot record settled money")

        value = outstanding_amount(order)
        if value <= 0:
            raise PaymentError(f"Order {order.code} has nothing outstanding")

        payment = Payment(
            order=order,
            method=method.code,
            handler=method.handler,
            amount_cents=value,
            state="Created",
            transaction_id=transaction_id,
            payment_metadata=metadata,
            created_by_user_id=actor_user_id,
        )
        db.session.add(payment)
        db.session.flush()
        _settle_and_post(payment, order, settings=settings, actor_user_id=actor_user_id)
        db.session.commit()
        return order

    return run_mutation(_op)


# =============================================================================
# SETTLE / CANCEL
# =============================================================================

def _settle(payment: Payment, *, settings: ChannelSettings, actor_user_id: int | None) -> Payment:
    if PAYMENT_SETTLED not in PAYMENT_TRANSITIONS.get(payment.state, ()):
        raise _transition_error(payment, PAYMENT_SETTLED)

    order = get_order_locked(payment.order_id)
    if order.state == ORDER_CANCELLED:
        raise OrderStateTransitionError(
            order.state,
            ORDER_PAYMENT_SETTLED,
            f"Cannot settle a Payment on an Order in the \"{ORDER_CANCELLED}\" state",
        )

    result = get_handler(payment.handler).settle_payment(payment)
    if not result.success:
        raise SettlePaymentError(result.error_message or "Settlement rejected")
    if result.transaction_id:
        payment.transaction_id = result.transaction_id

    _settle_and_post(payment, order, settings=settings, actor_user_id=actor_user_id)
    return payment


def settle_payment(payment_id: int, *, actor_user_id: int | None = None, settings: ChannelSettings):
    """
    Returns:
        Payment | OrderStateTransitionError | PaymentStateTransitionError |
        SettlePaymentError
    """
    def _op():
        payment = get_payment_locked(payment_id)
        _settle(payment, settings=settings, actor_user_id=actor_user_id)
        db.session.commit()
        return payment

    return run_mutation(_op)


def _cancel(payment: Payment, *, actor_user_id: int | None) -> Payment:
    if PAYMENT_CANCELLED not in PAYMENT_TRANSITIONS.get(payment.state, ()):
        raise _transition_error(payment, PAYMENT_CANCELLED)

    result = get_handler(payment.handler).cancel_payment(payment)
    if not result.success:
        raise CancelPaymentError(result.error_message or "Cancellation rejected")

    payment.state = PAYMENT_CANCELLED
    _audit(payment, payment.order, "PAYMENT_CANCELLED", actor_user_id)
    return payment


def cancel_payment(payment_id: int, *, actor_user_id: int | None = None):
    """Returns: Payment | CancelPaymentError | PaymentStateTransitionError"""
    def _op():
        payment = get_payment_locked(payment_id)
        _cancel(payment, actor_user_id=actor_user_id)
        db.session.commit()
        return payment

    return run_mutation(_op)


def transition_payment_to_state(
    payment_id: int,
    state: str,
    *,
    actor_user_id: int | None = None,
    settings: ChannelSettings,
):
    """
    Generic payment transition (admin).

    Returns:
        Payment | PaymentStateTransitionError
    """
    def _op():
        payment = get_payment_locked(payment_id)
        if state not in PAYMENT_STATES:
            raise _transition_error(payment, state, f"Unknown payment state \"{state}\"")
        if state == payment.state:
            return payment
        if state not in PAYMENT_TRANSITIONS.get(payment.state, ()):
            raise _transition_error(payment, state)

        if state == PAYMENT_SETTLED:
            try:
                _settle(payment, settings=settings, actor_user_id=actor_user_id)
            except (SettlePaymentError, OrderStateTransitionError) as exc:
                raise _transition_error(payment, state, exc.message)
        elif state == PAYMENT_CANCELLED:
            try:
                _cancel(payment, actor_user_id=actor_user_id)
            except CancelPaymentError as exc:
                raise _transition_error(payment, state, exc.message)
        else:
            from_state = payment.state
            payment.state = state
            _audit(payment, payment.order, "PAYMENT_STATE_CHANGED", actor_user_id, {"from": from_state, "to": state})
            try_advance_after_payment(payment.order, actor_user_id=actor_user_id)

        db.session.commit()
        return payment

    return run_mutation(_op)
