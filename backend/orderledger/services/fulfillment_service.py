# Overview: Service-layer fulfillments; shipping order lines and driving the order's shipping states.

"""
Fulfillment Service

RULES:
- Fulfillments may be created once the order is PaymentSettled (or part-way
  through shipping).
- A line can never be fulfilled beyond its quantity.
- Creating a fulfillment consumes stock on hand (and the allocation made at
  placement); cancelling it puts the stock back.
- Fulfillment states: Pending -> Shipped -> Delivered, Pending/Shipped -> Cancelled.
- After every fulfillment change the order moves to the most advanced
  shipping state its fulfillments support, when the transition table allows it.
"""

from __future__ import annotations

from flask import current_app

from ..errors import (
    EmptyOrderLineSelectionError,
    FulfillmentStateTransitionError,
    InsufficientStockOnHandError,
    ItemsAlreadyFulfilledError,
)
from ..extensions import db
from ..models import Fulfillment, FulfillmentLine, Order
from ..states import (
    FULFILLMENT_CANCELLED,
    FULFILLMENT_PENDING,
    FULFILLMENT_STATES,
    FULFILLMENT_TRANSITIONS,
    ORDER_PARTIALLY_DELIVERED,
    ORDER_PARTIALLY_SHIPPED,
    ORDER_PAYMENT_SETTLED,
    ORDER_TRANSITIONS,
)
from orderledger.time_utils import utcnow
from .audit_service import append_audit_event
from .concurrency import lock_for_update, run_mutation
from .order_state_service import OrderError, apply_transition, derive_fulfillment_state, get_order_locked

FULFILLABLE_ORDER_STATES = (ORDER_PAYMENT_SETTLED, ORDER_PARTIALLY_SHIPPED, ORDER_PARTIALLY_DELIVERED)


def _sync_order_state(order: Order, *, actor_user_id: int | None) -> None:
    target = derive_fulfillment_state(order)
    if target and target != order.state and target in ORDER_TRANSITIONS.get(order.state, ()):
        apply_transition(order, target, actor_user_id=actor_user_id)


def add_fulfillment_to_order(
    order_id: int,
    *,
    lines: list[dict],
    method: str,
    tracking_code: str | None = None,
    actor_user_id: int | None = None,
):
    """
    lines: [{"order_line_id", "quantity"}]

    Returns:
        Fulfillment | EmptyOrderLineSelectionError | ItemsAlreadyFulfilledError |
        InsufficientStockOnHandError | FulfillmentStateTransitionError
    """
    def _op():
        order = get_order_locked(order_id)
        if order.state not in FULFILLABLE_ORDER_STATES:
            raise FulfillmentStateTransitionError(
                "Created",
                FULFILLMENT_PENDING,
                f"Cannot create a Fulfillment for an Order in the \"{order.state}\" state",
            )
        selected = [item for item in (lines or []) if int(item.get("quantity", 0)) > 0]
        if not selected:
            raise EmptyOrderLineSelectionError()

        lines_by_id = {line.id: line for line in order.lines}
        wanted: dict[int, int] = {}
        for item in selected:
            line_id = int(item["order_line_id"])
            if line_id not in lines_by_id:
                raise OrderError(f"Order line {line_id} not found on order {order.id}")
            wanted[line_id] = wanted.get(line_id, 0) + int(item["quantity"])

        for line_id, qty in wanted.items():
            line = lines_by_id[line_id]
            if line.fulfilled_quantity + qty > line.quantity:
                raise ItemsAlreadyFulfilledError()
            variant = line.product_variant
            if variant.track_inventory and variant.stock_on_hand < qty:
                raise InsufficientStockOnHandError(variant.id, variant.name, variant.stock_on_hand)

        fulfillment = Fulfillment(
            order=order,
            method=method or "manual",
            tracking_code=tracking_code,
            state=FULFILLMENT_PENDING,
        )
        db.session.add(fulfillment)
        for line_id, qty in wanted.items():
            line = lines_by_id[line_id]
            fulfillment.lines.append(FulfillmentLine(order_line=line, quantity=qty))
            variant = line.product_variant
            if variant.track_inventory:
                variant.stock_on_hand -= qty
                variant.stock_allocated = max(0, variant.stock_allocated - qty)
        db.session.flush()

        append_audit_event(
            channel_id=order.channel_id,
            event_type="FULFILLMENT_CREATED",
            event_category="orders",
            entity_type="fulfillment",
            entity_id=fulfillment.id,
            actor_user_id=actor_user_id,
            order_id=order.id,
            payload={"lines": {str(k): v for k, v in wanted.items()}, "method": fulfillment.method},
        )
        db.session.commit()
        return fulfillment

    return run_mutation(_op)


def transition_fulfillment_to_state(fulfillment_id: int, state: str, *, actor_user_id: int | None = None):
    """
    Returns:
        Fulfillment | FulfillmentStateTransitionError | OrderStateTransitionError
    """
    def _op():
        fulfillment = lock_for_update(db.session.query(Fulfillment).filter_by(id=fulfillment_id)).first()
        if not fulfillment:
            raise OrderError(f"Fulfillment {fulfillment_id} not found")
        order = get_order_locked(fulfillment.order_id)

        from_state = fulfillment.state
        if state == from_state:
            return fulfillment
        if state not in FULFILLMENT_STATES or state not in FULFILLMENT_TRANSITIONS.get(from_state, ()):
            raise FulfillmentStateTransitionError(
                from_state,
                state,
                f"Cannot transition Fulfillment from \"{from_state}\" to \"{state}\"",
            )

        fulfillment.state = state
        fulfillment.updated_at = utcnow()
        if state == FULFILLMENT_CANCELLED:
            for fl in fulfillment.lines:
                variant = fl.order_line.product_variant
                if variant.track_inventory:
                    variant.stock_on_hand += fl.quantity
                    variant.stock_allocated += fl.quantity
        db.session.flush()

        _sync_order_state(order, actor_user_id=actor_user_id)
        append_audit_event(
            channel_id=order.channel_id,
            event_type="FULFILLMENT_STATE_CHANGED",
            event_category="orders",
            entity_type="fulfillment",
            entity_id=fulfillment.id,
            actor_user_id=actor_user_id,
            order_id=order.id,
            payload={"from": from_state, "to": state},
        )
        db.session.commit()
        current_app.logger.info(
            "Fulfillment %s %s -> %s (order %s now %s)", fulfillment.id, from_state, state, order.code, order.state
        )
        return fulfillment

    return run_mutation(_op)
