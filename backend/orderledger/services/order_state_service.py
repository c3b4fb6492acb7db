# Overview: Service-layer order state machine; transition table, guards, placement and cancellation effects.

"""
Order State Machine

WHY: Every order state change goes through one place so the allowed
transitions, the content guards and the side effects (placing the order,
releasing stock, reversing revenue) cannot drift apart.

RULES:
- Allowed transitions come from orderledger.states.ORDER_TRANSITIONS.
- Requesting the order's current state is a no-op that returns the order
  unchanged (idempotent success).
- Guards:
    ArrangingPayment   at least one line with quantity > 0
    PaymentAuthorized  authorized + settled payments (net of refunds) cover total_with_tax
    PaymentSettled     settled payments (net of refunds) cover total_with_tax
    PartiallyShipped   at least one fulfillment shipped
    Shipped            every line fully shipped
    PartiallyDelivered at least one fulfillment delivered
    Delivered          every line fully delivered
    leaving Modifying  no unsettled modification (except to ArrangingAdditionalPayment)
    back to AddingItems  no authorized/settled payments
- Entering PaymentAuthorized/PaymentSettled for the first time places the
  order: order_placed_at is set, stock is allocated and the sale is posted.
"""

from __future__ import annotations

from flask import current_app

from ..errors import InsufficientStockError, OrderStateTransitionError
from ..extensions import db
from ..models import JournalEntry, Order, OrderLine, ProductVariant
from ..states import (
    FULFILLMENT_DELIVERED,
    FULFILLMENT_SHIPPED,
    ORDER_ADDING_ITEMS,
    ORDER_ARRANGING_ADDITIONAL_PAYMENT,
    ORDER_ARRANGING_PAYMENT,
    ORDER_CANCELLED,
    ORDER_DELIVERED,
    ORDER_MODIFYING,
    ORDER_PARTIALLY_DELIVERED,
    ORDER_PARTIALLY_SHIPPED,
    ORDER_PAYMENT_AUTHORIZED,
    ORDER_PAYMENT_SETTLED,
    ORDER_SHIPPED,
    ORDER_STATES,
    ORDER_TRANSITIONS,
    PAYMENT_AUTHORIZED,
    PAYMENT_CANCELLED,
    PAYMENT_CREATED,
    PAYMENT_SETTLED,
    next_order_states,
)
from orderledger.time_utils import utcnow
from .audit_service import append_audit_event
from .concurrency import lock_for_update, run_mutation
from .posting_service import (
    SOURCE_ORDER_CANCELLATION,
    post_order_placed,
    post_revenue_delta,
)
from .pricing_service import recalculate_order, totals_snapshot


class OrderError(Exception):
    """Raised for order lookup and input errors (HTTP 400/404)."""
    pass


# =============================================================================
# LOOKUPS
# =============================================================================

def get_order_locked(order_id: int) -> Order:
    order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
    if not order:
        raise OrderError(f"Order {order_id} not found")
    return order


def get_order(order_id: int) -> Order:
    order = db.session.get(Order, order_id)
    if not order:
        raise OrderError(f"Order {order_id} not found")
    return order


def next_states(order: Order) -> list[str]:
    return next_order_states(order.state)


# =============================================================================
# PAYMENT COVERAGE
# =============================================================================

def covered_amount(order: Order, states: tuple[str, ...]) -> int:
    """Sum of payments in the given states, net of their non-failed refunds."""
    return sum(
        p.amount_cents - p.refunded_cents
        for p in order.payments
        if p.state in states
    )


def outstanding_amount(order: Order) -> int:
    """What the customer still owes after settled payments (never negative)."""
    return max(0, order.total_with_tax_cents - covered_amount(order, (PAYMENT_SETTLED,)))


def has_settled_payments(order: Order) -> bool:
    return any(p.state == PAYMENT_SETTLED for p in order.payments)


def cancel_open_payments(order: Order) -> list[int]:
    """Cancel Created/Authorized payments; settled money is never touched here."""
    cancelled = []
    for payment in order.payments:
        if payment.state in (PAYMENT_CREATED, PAYMENT_AUTHORIZED):
            payment.state = PAYMENT_CANCELLED
            cancelled.append(payment.id)
    return cancelled


# =============================================================================
# FULFILLMENT PROGRESS
# =============================================================================

def _fulfilled_by_state(order: Order, states: tuple[str, ...]) -> dict[int, int]:
    totals: dict[int, int] = {}
    for fulfillment in order.fulfillments:
        if fulfillment.state not in states:
            continue
        for fl in fulfillment.lines:
            totals[fl.order_line_id] = totals.get(fl.order_line_id, 0) + fl.quantity
    return totals


def fulfillment_progress(order: Order) -> dict:
    shipped = _fulfilled_by_state(order, (FULFILLMENT_SHIPPED, FULFILLMENT_DELIVERED))
    delivered = _fulfilled_by_state(order, (FULFILLMENT_DELIVERED,))
    lines = [l for l in order.lines if l.quantity > 0]
    return {
        "any_shipped": any(v > 0 for v in shipped.values()),
        "all_shipped": bool(lines) and all(shipped.get(l.id, 0) >= l.quantity for l in lines),
        "any_delivered": any(v > 0 for v in delivered.values()),
        "all_delivered": bool(lines) and all(delivered.get(l.id, 0) >= l.quantity for l in lines),
    }


def derive_fulfillment_state(order: Order) -> str | None:
    """Most advanced shipping state the fulfillments support, or None."""
    progress = fulfillment_progress(order)
    if progress["all_delivered"]:
        return ORDER_DELIVERED
    if progress["any_delivered"]:
        return ORDER_PARTIALLY_DELIVERED
    if progress["all_shipped"]:
        return ORDER_SHIPPED
    if progress["any_shipped"]:
        return ORDER_PARTIALLY_SHIPPED
    return None


# =============================================================================
# GUARDS
# =============================================================================

def check_transition_guard(order: Order, to_state: str) -> str | None:
    """Return a transition error message, or None when the guard passes."""
    from_state = order.state

    if from_state == ORDER_MODIFYING and to_state != ORDER_ARRANGING_ADDITIONAL_PAYMENT:
        if any(not m.is_settled for m in order.modifications):
            return "Cannot transition away from \"Modifying\" while a modification is unsettled"

    if to_state == ORDER_ARRANGING_PAYMENT:
        if not any(line.quantity > 0 for line in order.lines):
            return "Cannot transition Order to the \"ArrangingPayment\" state when it is empty"

    elif to_state == ORDER_ADDING_ITEMS:
        if any(p.state in (PAYMENT_AUTHORIZED, PAYMENT_SETTLED) for p in order.payments):
            return "Cannot transition Order to the \"AddingItems\" state while it has active payments"

    elif to_state == ORDER_PAYMENT_AUTHORIZED:
        if covered_amount(order, (PAYMENT_AUTHORIZED, PAYMENT_SETTLED)) < order.total_with_tax_cents:
            return "Cannot transition Order to the \"PaymentAuthorized\" state when the total is not covered by authorized Payments"

    elif to_state == ORDER_PAYMENT_SETTLED:
        if covered_amount(order, (PAYMENT_SETTLED,)) < order.total_with_tax_cents:
            return "Cannot transition Order to the \"PaymentSettled\" state when the total is not covered by settled Payments"

    elif to_state in (ORDER_PARTIALLY_SHIPPED, ORDER_SHIPPED, ORDER_PARTIALLY_DELIVERED, ORDER_DELIVERED):
        progress = fulfillment_progress(order)
        required = {
            ORDER_PARTIALLY_SHIPPED: progress["any_shipped"],
            ORDER_SHIPPED: progress["all_shipped"],
            ORDER_PARTIALLY_DELIVERED: progress["any_delivered"],
            ORDER_DELIVERED: progress["all_delivered"],
        }[to_state]
        if not required:
            return f"Cannot transition Order to the \"{to_state}\" state unless the fulfillments allow it"

    return None


# =============================================================================
# STOCK
# =============================================================================

def allocate_stock(variant: ProductVariant, quantity: int) -> None:
    if not variant.track_inventory or quantity <= 0:
        return
    if variant.stock_available < quantity:
        raise InsufficientStockError(max(0, variant.stock_available))
    variant.stock_allocated += quantity


def release_stock(variant: ProductVariant, quantity: int) -> None:
    if not variant.track_inventory or quantity <= 0:
        return
    variant.stock_allocated = max(0, variant.stock_allocated - quantity)


# =============================================================================
# SIDE EFFECTS
# =============================================================================

def place_order(order: Order, *, actor_user_id: int | None = None) -> None:
    """Allocate stock, stamp order_placed_at and recognize the sale."""
    for line in order.lines:
        allocate_stock(line.product_variant, line.quantity)
    order.order_placed_at = utcnow()
    order.active = False
    post_order_placed(order)
    append_audit_event(
        channel_id=order.channel_id,
        event_type="ORDER_PLACED",
        event_category="orders",
        entity_type="order",
        entity_id=order.id,
        actor_user_id=actor_user_id,
        order_id=order.id,
        payload={"total_with_tax": order.total_with_tax_cents},
    )
    current_app.logger.info("Order %s placed (total_with_tax=%s)", order.code, order.total_with_tax_cents)


def _next_cancellation_source_id(order: Order) -> str:
    n = (
        db.session.query(JournalEntry)
        .filter_by(channel_id=order.channel_id, order_id=order.id, source_type=SOURCE_ORDER_CANCELLATION)
        .count()
    )
    return f"{order.id}:{n + 1}"


def apply_line_cancellations(
    order: Order,
    quantities: dict[int, int],
    *,
    cancel_shipping: bool = False,
    reason: str | None = None,
) -> bool:
    """
    Remove quantities from lines, release their stock and reverse the revenue.

    Quantities must already be validated against the unfulfilled amount.
    Returns True when no line quantity remains.
    """
    before = totals_snapshot(order)
    lines_by_id = {line.id: line for line in order.lines}

    for line_id, qty in quantities.items():
        if qty <= 0:
            continue
        line: OrderLine = lines_by_id[line_id]
        line.quantity -= qty
        line.cancelled_quantity = (line.cancelled_quantity or 0) + qty
        if order.order_placed_at is not None:
            release_stock(line.product_variant, qty)

    fully_cancelled = all(line.quantity == 0 for line in order.lines)
    if cancel_shipping or fully_cancelled:
        for shipping_line in list(order.shipping_lines):
            order.shipping_lines.remove(shipping_line)

    recalculate_order(order)
    if reason:
        order.cancel_reason = reason

    if order.order_placed_at is not None:
        post_revenue_delta(
            order,
            before,
            totals_snapshot(order),
            source_type=SOURCE_ORDER_CANCELLATION,
            source_id=_next_cancellation_source_id(order),
            memo=f"Order {order.code} cancellation",
        )
    return fully_cancelled


def _cancel_everything(order: Order, *, reason: str | None = None) -> None:
    if order.order_placed_at is None:
        cancel_open_payments(order)
        return
    remaining = {
        line.id: line.quantity - line.fulfilled_quantity
        for line in order.lines
        if line.quantity - line.fulfilled_quantity > 0
    }
    if remaining:
        apply_line_cancellations(order, remaining, cancel_shipping=True, reason=reason)
    cancel_open_payments(order)


# =============================================================================
# TRANSITIONS
# =============================================================================

def apply_transition(order: Order, to_state: str, *, actor_user_id: int | None = None) -> Order:
    """
    Validate and apply a transition on a locked order (no commit).

    Raises:
        OrderStateTransitionError: unknown state, not allowed, or guard failed
    """
    from_state = order.state
    if to_state == from_state:
        return order

    if to_state not in ORDER_STATES:
        raise OrderStateTransitionError(from_state, to_state, f"Unknown order state \"{to_state}\"")
    if to_state not in ORDER_TRANSITIONS.get(from_state, ()):
        raise OrderStateTransitionError(
            from_state, to_state, f"Cannot transition Order from \"{from_state}\" to \"{to_state}\""
        )

    guard_error = check_transition_guard(order, to_state)
    if guard_error:
        raise OrderStateTransitionError(from_state, to_state, guard_error)

    if to_state in (ORDER_PAYMENT_AUTHORIZED, ORDER_PAYMENT_SETTLED) and order.order_placed_at is None:
        try:
            place_order(order, actor_user_id=actor_user_id)
        except InsufficientStockError as exc:
            raise OrderStateTransitionError(from_state, to_state, exc.message)
    elif to_state == ORDER_CANCELLED:
        _cancel_everything(order)

    order.state = to_state
    order.updated_at = utcnow()

    append_audit_event(
        channel_id=order.channel_id,
        event_type="ORDER_STATE_CHANGED",
        event_category="orders",
        entity_type="order",
        entity_id=order.id,
        actor_user_id=actor_user_id,
        order_id=order.id,
        payload={"from": from_state, "to": to_state},
    )
    return order


def try_advance_after_payment(order: Order, *, actor_user_id: int | None = None) -> None:
    """
    Move an order forward once its payments cover the total.

    ArrangingPayment / ArrangingAdditionalPayment / PaymentAuthorized ->
    PaymentSettled when settled funds cover it, else -> PaymentAuthorized
    when authorized funds do. Orders in other states are left alone.
    """
    if order.state not in (ORDER_ARRANGING_PAYMENT, ORDER_ARRANGING_ADDITIONAL_PAYMENT, ORDER_PAYMENT_AUTHORIZED):
        return
    total = order.total_with_tax_cents
    if covered_amount(order, (PAYMENT_SETTLED,)) >= total:
        apply_transition(order, ORDER_PAYMENT_SETTLED, actor_user_id=actor_user_id)
    elif (
        order.state != ORDER_PAYMENT_AUTHORIZED
        and covered_amount(order, (PAYMENT_AUTHORIZED, PAYMENT_SETTLED)) >= total
    ):
        apply_transition(order, ORDER_PAYMENT_AUTHORIZED, actor_user_id=actor_user_id)


def transition_order_to_state(order_id: int, state: str, *, actor_user_id: int | None = None):
    """
    Transition an order.

    Returns:
        Order | OrderStateTransitionError
    """
    def _op():
        order = get_order_locked(order_id)
        if order.state == state:
            return order
        apply_transition(order, state, actor_user_id=actor_user_id)
        db.session.commit()
        return order

    return run_mutation(_op)
