# Overview: Service-layer order operations; active-order building, cancellation and reversal.

"""
Order Service

WHY: Builds orders while they are active (AddingItems) and unwinds them
after placement (cancel_order / reverse_order).

DESIGN PRINCIPLES:
- Active-order mutations only in AddingItems (else OrderModificationError).
- Quantities are validated against available stock and the channel item limit.
- cancel_order removes unfulfilled quantities and posts the revenue delta.
- reverse_order undoes the order's revenue entries but NEVER moves money:
  settled payments stay settled and hadPayments tells the caller a manual
  refund is required.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass, field

from flask import current_app

from ..errors import (
    CancelActiveOrderError,
    EmptyOrderLineSelectionError,
    IneligibleShippingMethodError,
    InsufficientStockError,
    MultipleOrderError,
    NegativeQuantityError,
    OrderLimitError,
    OrderModificationError,
    OrderStateTransitionError,
    QuantityTooGreatError,
)
from ..extensions import db
from ..models import Channel, JournalEntry, Order, OrderLine, ProductVariant, ShippingLine, ShippingMethod
from ..states import (
    ORDER_ADDING_ITEMS,
    ORDER_ARRANGING_PAYMENT,
    ORDER_CANCELLED,
    ORDER_TRANSITIONS,
)
from orderledger.time_utils import utcnow
from .audit_service import append_audit_event
from .concurrency import run_mutation, run_with_retry
from .ledger_service import is_reversed, reverse_entry
from .order_state_service import (
    OrderError,
    apply_line_cancellations,
    cancel_open_payments,
    get_order_locked,
    has_settled_payments,
    release_stock,
)
from .posting_service import REVENUE_SOURCES
from .pricing_service import (
    apply_coupon,
    is_shipping_method_eligible,
    recalculate_order,
    remove_coupon,
)
from .settings_service import ChannelSettings


# =============================================================================
# HELPERS
# =============================================================================

def _generate_order_code() -> str:
    return secrets.token_hex(6).upper()


def _require_active(order: Order) -> None:
    if order.state != ORDER_ADDING_ITEMS:
        raise OrderModificationError()


def get_variant(order: Order, product_variant_id: int) -> ProductVariant:
    variant = db.session.get(ProductVariant, product_variant_id)
    if not variant or variant.channel_id != order.channel_id:
        raise OrderError(f"Product variant {product_variant_id} not found")
    return variant


def check_stock(variant: ProductVariant, requested: int) -> None:
    """requested is the quantity that must be available (not yet allocated)."""
    if variant.track_inventory and requested > variant.stock_available:
        raise InsufficientStockError(max(0, variant.stock_available))


def check_item_limit(total_quantity: int, settings: ChannelSettings) -> None:
    if total_quantity > settings.order_item_limit:
        raise OrderLimitError(settings.order_item_limit)


def find_line_for_variant(order: Order, variant_id: int) -> OrderLine | None:
    for line in order.lines:
        if line.product_variant_id == variant_id:
            return line
    return None


def get_shipping_method(order: Order, shipping_method_id: int) -> ShippingMethod:
    method = db.session.get(ShippingMethod, shipping_method_id)
    if not method or method.channel_id != order.channel_id:
        raise OrderError(f"Shipping method {shipping_method_id} not found")
    return method


def replace_shipping_methods(order: Order, methods: list[ShippingMethod]) -> None:
    """Swap the order's shipping lines; raises IneligibleShippingMethodError."""
    for shipping_line in list(order.shipping_lines):
        order.shipping_lines.remove(shipping_line)
    recalculate_order(order)
    for method in methods:
        if not is_shipping_method_eligible(order, method):
            raise IneligibleShippingMethodError()
        order.shipping_lines.append(ShippingLine(
            shipping_method=method,
            shipping_method_id=method.id,
            price_cents=method.price_cents,
            tax_rate_bps=method.tax_rate_bps,
        ))
    recalculate_order(order)


# =============================================================================
# ORDER CREATION
# =============================================================================

def create_order(*, channel_id: int, customer_id: int | None = None, actor_user_id: int | None = None) -> Order:
    def _op():
        channel = db.session.get(Channel, channel_id)
        if not channel:
            raise OrderError(f"Channel {channel_id} not found")
        order = Order(
            channel_id=channel_id,
            customer_id=customer_id,
            code=_generate_order_code(),
            state=ORDER_ADDING_ITEMS,
            active=True,
            currency_code=channel.currency_code,
            created_at=utcnow(),
        )
        db.session.add(order)
        db.session.flush()
        append_audit_event(
            channel_id=channel_id,
            event_type="ORDER_CREATED",
            event_category="orders",
            entity_type="order",
            entity_id=order.id,
            actor_user_id=actor_user_id,
            order_id=order.id,
        )
        db.session.commit()
        return order

    try:
        return run_with_retry(_op)
    except Exception:
        db.session.rollback()
        raise


# =============================================================================
# ACTIVE ORDER BUILDING
# =============================================================================

def add_item_to_order(order_id: int, product_variant_id: int, quantity: int, *, settings: ChannelSettings):
    """
    Returns:
        Order | OrderModificationError | InsufficientStockError |
        NegativeQuantityError | OrderLimitError
    """
    def _op():
        order = get_order_locked(order_id)
        _require_active(order)
        if quantity < 0:
            raise NegativeQuantityError()
        if quantity == 0:
            raise OrderError("Quantity must be greater than zero")

        variant = get_variant(order, product_variant_id)
        line = find_line_for_variant(order, variant.id)
        new_quantity = (line.quantity if line else 0) + quantity
        check_stock(variant, new_quantity)
        check_item_limit(order.total_quantity + quantity, settings)

        if line:
            line.quantity = new_quantity
        else:
            order.lines.append(OrderLine(
                product_variant=variant,
                product_variant_id=variant.id,
                quantity=quantity,
                unit_price_cents=variant.price_cents,
                tax_rate_bps=variant.tax_rate_bps,
            ))
        recalculate_order(order)
        db.session.commit()
        return order

    return run_mutation(_op)


def adjust_order_line(order_id: int, order_line_id: int, quantity: int, *, settings: ChannelSettings):
    """Set a line's quantity; 0 removes the line."""
    def _op():
        order = get_order_locked(order_id)
        _require_active(order)
        if quantity < 0:
            raise NegativeQuantityError()
        line = next((l for l in order.lines if l.id == order_line_id), None)
        if not line:
            raise OrderError(f"Order line {order_line_id} not found on order {order_id}")

        if quantity == 0:
            order.lines.remove(line)
        else:
            check_stock(line.product_variant, quantity)
            check_item_limit(order.total_quantity - line.quantity + quantity, settings)
            line.quantity = quantity
        recalculate_order(order)
        db.session.commit()
        return order

    return run_mutation(_op)


def remove_order_line(order_id: int, order_line_id: int):
    def _op():
        order = get_order_locked(order_id)
        _require_active(order)
        line = next((l for l in order.lines if l.id == order_line_id), None)
        if not line:
            raise OrderError(f"Order line {order_line_id} not found on order {order_id}")
        order.lines.remove(line)
        recalculate_order(order)
        db.session.commit()
        return order

    return run_mutation(_op)


def set_order_shipping_method(order_id: int, shipping_method_id: int):
    """Returns: Order | OrderModificationError | IneligibleShippingMethodError"""
    def _op():
        order = get_order_locked(order_id)
        _require_active(order)
        method = get_shipping_method(order, shipping_method_id)
        replace_shipping_methods(order, [method])
        db.session.commit()
        return order

    return run_mutation(_op)


def apply_coupon_code(order_id: int, coupon_code: str):
    """Returns: Order | OrderModificationError | CouponCode{Invalid,Expired,Limit}Error"""
    def _op():
        order = get_order_locked(order_id)
        _require_active(order)
        apply_coupon(order, coupon_code)
        recalculate_order(order)
        db.session.commit()
        return order

    return run_mutation(_op)


def remove_coupon_code(order_id: int, coupon_code: str):
    def _op():
        order = get_order_locked(order_id)
        _require_active(order)
        remove_coupon(order, coupon_code)
        recalculate_order(order)
        db.session.commit()
        return order

    return run_mutation(_op)


def set_order_shipping_address(order_id: int, address: dict):
    return _set_address(order_id, address, field_name="shipping_address")


def set_order_billing_address(order_id: int, address: dict):
    return _set_address(order_id, address, field_name="billing_address")


def _set_address(order_id: int, address: dict, *, field_name: str):
    def _op():
        order = get_order_locked(order_id)
        _require_active(order)
        if not isinstance(address, dict):
            raise OrderError("Address must be an object")
        setattr(order, field_name, dict(address))
        order.updated_at = utcnow()
        db.session.commit()
        return order

    return run_mutation(_op)


# =============================================================================
# CANCELLATION
# =============================================================================

def cancel_order(
    order_id: int,
    *,
    lines: list[dict] | None = None,
    reason: str | None = None,
    cancel_shipping: bool = False,
    actor_user_id: int | None = None,
):
    """
    Cancel some or all unfulfilled quantities of a placed order.

    lines: [{"order_line_id": int, "quantity": int}] or None for everything.

    Returns:
        Order | CancelActiveOrderError | EmptyOrderLineSelectionError |
        QuantityTooGreatError | MultipleOrderError | OrderStateTransitionError
    """
    def _op():
        order = get_order_locked(order_id)

        if order.state in (ORDER_ADDING_ITEMS, ORDER_ARRANGING_PAYMENT):
            raise CancelActiveOrderError(order.state)
        if ORDER_CANCELLED not in ORDER_TRANSITIONS.get(order.state, ()):
            raise OrderStateTransitionError(
                order.state,
                ORDER_CANCELLED,
                f"Cannot transition Order from \"{order.state}\" to \"{ORDER_CANCELLED}\"",
            )

        if lines is not None and len(lines) == 0:
            raise EmptyOrderLineSelectionError()

        lines_by_id = {line.id: line for line in order.lines}
        if lines is None:
            quantities = {
                line.id: line.quantity - line.fulfilled_quantity
                for line in order.lines
                if line.quantity - line.fulfilled_quantity > 0
            }
        else:
            requested_ids = [int(item["order_line_id"]) for item in lines]
            foreign = [line_id for line_id in requested_ids if line_id not in lines_by_id]
            if foreign:
                known = db.session.query(OrderLine).filter(OrderLine.id.in_(foreign)).all()
                if len(known) != len(set(foreign)):
                    raise OrderError("One or more order lines were not found")
                raise MultipleOrderError()

            quantities = {}
            for item in lines:
                line = lines_by_id[int(item["order_line_id"])]
                qty = int(item["quantity"])
                if qty < 0:
                    raise OrderError("Cancellation quantity cannot be negative")
                quantities[line.id] = quantities.get(line.id, 0) + qty
            for line_id, qty in quantities.items():
                line = lines_by_id[line_id]
                if qty > line.quantity - line.fulfilled_quantity:
                    raise QuantityTooGreatError()
            if not any(qty > 0 for qty in quantities.values()):
                raise EmptyOrderLineSelectionError()

        from_state = order.state
        fully_cancelled = apply_line_cancellations(
            order, quantities, cancel_shipping=cancel_shipping, reason=reason
        )
        if fully_cancelled:
            cancel_open_payments(order)
            order.state = ORDER_CANCELLED
            order.updated_at = utcnow()

        append_audit_event(
            channel_id=order.channel_id,
            event_type="ORDER_CANCELLED" if fully_cancelled else "ORDER_LINES_CANCELLED",
            event_category="orders",
            entity_type="order",
            entity_id=order.id,
            actor_user_id=actor_user_id,
            order_id=order.id,
            note=reason,
            payload={"from": from_state, "lines": {str(k): v for k, v in quantities.items()}},
        )
        db.session.commit()
        current_app.logger.info(
            "Order %s cancellation (full=%s, lines=%s)", order.code, fully_cancelled, quantities
        )
        return order

    return run_mutation(_op)


# =============================================================================
# REVERSAL
# =============================================================================

@dataclass
class OrderReversalResult:
    order: Order
    had_payments: bool
    reversed_entry_ids: list[int] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "__typename": "OrderReversalResult",
            "order": self.order.to_dict(),
            "hadPayments": self.had_payments,
            "reversedEntryIds": self.reversed_entry_ids,
        }


def reverse_order(order_id: int, *, reason: str | None = None, actor_user_id: int | None = None) -> OrderReversalResult:
    """
    Reverse every revenue entry of a placed order and cancel it.

    Payment and refund entries are left alone: money already collected is
    not returned automatically. had_payments signals a manual refund is due.

    Raises:
        OrderError: order not placed or already cancelled
    """
    def _op():
        order = get_order_locked(order_id)
        if order.order_placed_at is None:
            raise OrderError("Only placed orders can be reversed")
        if order.state == ORDER_CANCELLED:
            raise OrderError("Order is already cancelled")

        entries = (
            db.session.query(JournalEntry)
            .filter(
                JournalEntry.channel_id == order.channel_id,
                JournalEntry.order_id == order.id,
                JournalEntry.source_type.in_(REVENUE_SOURCES),
            )
            .order_by(JournalEntry.id.asc())
            .all()
        )
        reversed_ids = []
        for entry in entries:
            if is_reversed(entry):
                continue
            reversal = reverse_entry(entry, memo=f"Order {order.code} reversed" + (f": {reason}" if reason else ""))
            reversed_ids.append(reversal.id)

        for line in order.lines:
            release_stock(line.product_variant, line.quantity - line.fulfilled_quantity)

        had_payments = has_settled_payments(order)
        cancel_open_payments(order)
        from_state = order.state
        order.state = ORDER_CANCELLED
        order.cancel_reason = reason
        order.updated_at = utcnow()

        append_audit_event(
            channel_id=order.channel_id,
            event_type="ORDER_REVERSED",
            event_category="orders",
            entity_type="order",
            entity_id=order.id,
            actor_user_id=actor_user_id,
            order_id=order.id,
            note=reason,
            payload={"from": from_state, "reversed_entry_ids": reversed_ids, "had_payments": had_payments},
        )
        db.session.commit()
        if had_payments:
            current_app.logger.warning(
                "Order %s reversed with settled payments; manual refund required", order.code
            )
        return OrderReversalResult(order=order, had_payments=had_payments, reversed_entry_ids=reversed_ids)

    try:
        return run_with_retry(_op)
    except Exception:
        db.session.rollback()
        raise
