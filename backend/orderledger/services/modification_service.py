# Overview: Service-layer order modification; batched changes to a placed order with settlement.

"""
Order Modification Engine

WHY: After checkout an order can only change as one audited batch
(modify_order), and the money side of that batch has to be settled in the
same breath: a price increase needs a payment, a decrease needs a refund.

FLOW (one transaction):
1. Precondition: order.state == Modifying, batch not empty
2. Snapshot totals, apply every change, recalculate
3. price_change = new total_with_tax - old total_with_tax
4. Dry run: return the preview and roll everything back
5. Record one OrderModification and post the revenue delta
6. price_change > 0: settled payment via payment_method_code (or attribute
   an existing settled payment_id)
   price_change < 0: refund against refund["payment_id"]
7. Commit

INVARIANTS:
- Nothing partially applies: any typed error rolls the whole batch back.
- The ledger delta and the OrderModification row commit together.
"""

from __future__ import annotations

from flask import current_app

from ..errors import (
    NegativeQuantityError,
    NoChangesSpecifiedError,
    OrderModificationStateError,
    PaymentMethodMissingError,
    RefundPaymentIdMissingError,
)
from ..extensions import db
from ..models import (
    OrderLine,
    OrderModification,
    OrderModificationLine,
    Payment,
    Refund,
    Surcharge,
)
from ..states import ORDER_MODIFYING, PAYMENT_SETTLED, REFUND_SETTLED
from orderledger.time_utils import utcnow
from .audit_service import append_audit_event
from .channel_service import get_payment_method
from .concurrency import run_mutation
from .ledger_service import ACCOUNT_RECEIVABLE
from .order_service import (
    check_item_limit,
    find_line_for_variant,
    get_shipping_method,
    get_variant,
    replace_shipping_methods,
)
from .order_state_service import OrderError, allocate_stock, get_order_locked, release_stock
from .payment_handlers import get_handler
from .payment_service import attach_cashier_session
from .posting_service import (
    SOURCE_ORDER_MODIFICATION,
    post_payment_settled,
    post_refund_settled,
    post_revenue_delta,
)
from .pricing_service import apply_coupon, recalculate_order, remove_coupon, totals_snapshot
from .refund_service import attach_refund_session
from .settings_service import ChannelSettings


class ModificationPreview:
    """Dry-run result: the order as it would look, plus the price change."""

    def __init__(self, order_dict: dict, price_change: int):
        self.order_dict = order_dict
        self.price_change = price_change

    def to_dict(self) -> dict:
        payload = dict(self.order_dict)
        payload["__typename"] = "Order"
        payload["price_change"] = self.price_change
        payload["dry_run"] = True
        return payload


def _has_changes(**batch) -> bool:
    for value in batch.values():
        if value is None:
            continue
        if isinstance(value, (list, dict, str)) and not value:
            continue
        return True
    return False


def _merge_address(current: dict | None, changes: dict) -> dict:
    merged = dict(current or {})
    merged.update({k: v for k, v in changes.items() if v is not None})
    return merged


# =============================================================================
# BATCH APPLICATION
# =============================================================================

def _apply_add_items(order, add_items, deltas):
    for item in add_items:
        quantity = int(item.get("quantity", 0))
        if quantity < 0:
            raise NegativeQuantityError()
        if quantity == 0:
            raise OrderError("Quantity must be greater than zero")
        variant = get_variant(order, int(item["product_variant_id"]))

        # Added quantities are allocated immediately; the order is already placed.
        allocate_stock(variant, quantity)

        line = find_line_for_variant(order, variant.id)
        if line:
            line.quantity += quantity
        else:
            line = OrderLine(
                product_variant=variant,
                product_variant_id=variant.id,
                quantity=quantity,
                unit_price_cents=variant.price_cents,
                tax_rate_bps=variant.tax_rate_bps,
            )
            order.lines.append(line)
            db.session.flush()
        deltas[line.id] = deltas.get(line.id, 0) + quantity


def _apply_adjustments(order, adjust_order_lines, deltas):
    lines_by_id = {line.id: line for line in order.lines}
    for item in adjust_order_lines:
        line_id = int(item["order_line_id"])
        quantity = int(item["quantity"])
        if quantity < 0:
            raise NegativeQuantityError()
        line = lines_by_id.get(line_id)
        if not line:
            raise OrderError(f"Order line {line_id} not found on order {order.id}")
        if quantity < line.fulfilled_quantity:
            raise OrderError(
                f"Order line {line_id} cannot be reduced below its fulfilled quantity ({line.fulfilled_quantity})"
            )

        diff = quantity - line.quantity
        if diff > 0:
            allocate_stock(line.product_variant, diff)
        elif diff < 0:
            release_stock(line.product_variant, -diff)
        # Placed lines keep their row at quantity 0 so history stays intact.
        line.quantity = quantity
        if diff:
            deltas[line.id] = deltas.get(line.id, 0) + diff


def _apply_surcharges(order, modification, surcharges):
    for item in surcharges:
        order.surcharges.append(Surcharge(
            order_modification_id=modification.id,
            description=item.get("description") or "Surcharge",
            sku=item.get("sku"),
            price_cents=int(item["price"]),
            tax_rate_bps=int(item.get("tax_rate_bps") or 0),
        ))


def _apply_coupon_codes(order, coupon_codes):
    """coupon_codes is the complete desired set."""
    wanted = list(dict.fromkeys(coupon_codes))
    for code in list(order.coupon_codes):
        if code not in wanted:
            remove_coupon(order, code)
    for code in wanted:
        apply_coupon(order, code)


# =============================================================================
# SETTLEMENT
# =============================================================================

def _settle_increase(order, modification, price_change, *, payment_method_code, payment_id, actor_user_id, settings):
    if payment_id is not None:
        payment = db.session.get(Payment, int(payment_id))
        if not payment or payment.order_id != order.id:
            raise OrderError(f"Payment {payment_id} not found on order {order.id}")
        if payment.state != PAYMENT_SETTLED:
            raise OrderError(f"Payment {payment_id} is not settled")
        modification.payment_id = payment.id
        modification.is_settled = True
        return payment

    method = get_payment_method(order.channel_id, payment_method_code)
    if not method or not method.enabled:
        raise OrderError(f"Payment method '{payment_method_code}' is not available")
    handler = get_handler(method.handler)
    if handler.account_code is None:
        raise OrderError(f"Payment method '{payment_method_code}' cannot settle a modification")

    payment = Payment(
        order=order,
        method=method.code,
        handler=method.handler,
        amount_cents=price_change,
        state=PAYMENT_SETTLED,
        payment_metadata={"order_modification_id": modification.id},
        created_by_user_id=actor_user_id,
        settled_at=utcnow(),
    )
    db.session.add(payment)
    attach_cashier_session(payment, handler, order.channel_id, settings)
    db.session.flush()
    post_payment_settled(payment, channel_id=order.channel_id)

    modification.payment_id = payment.id
    modification.is_settled = True
    return payment


def _settle_decrease(order, modification, price_change, *, refund, actor_user_id, settings):
    payment = db.session.get(Payment, int(refund["payment_id"]))
    if not payment or payment.order_id != order.id:
        raise OrderError(f"Payment {refund['payment_id']} not found on order {order.id}")
    if payment.state != PAYMENT_SETTLED:
        raise OrderError(f"Payment {payment.id} is not settled")

    amount = -price_change
    if amount > payment.amount_cents - payment.refunded_cents:
        raise OrderError(
            f"Payment {payment.id} cannot cover a refund of {amount} "
            f"(refundable {payment.amount_cents - payment.refunded_cents})"
        )

    handler = get_handler(payment.handler)
    result = handler.create_refund(payment, amount)
    record = Refund(
        payment=payment,
        order_id=order.id,
        items_cents=amount,
        shipping_cents=0,
        adjustment_cents=0,
        total_cents=amount,
        state=result.state,
        reason=refund.get("reason"),
        method=payment.method,
        transaction_id=result.transaction_id,
        debit_account_code=ACCOUNT_RECEIVABLE,
        created_by_user_id=actor_user_id,
        settled_at=utcnow() if result.state == REFUND_SETTLED else None,
    )
    db.session.add(record)
    db.session.flush()
    if record.state == REFUND_SETTLED:
        attach_refund_session(record, handler, order.channel_id, settings)
        post_refund_settled(record, channel_id=order.channel_id)

    modification.refund_id = record.id
    modification.is_settled = record.state == REFUND_SETTLED
    return record


# =============================================================================
# ENTRY POINT
# =============================================================================

def modify_order(
    order_id: int,
    *,
    dry_run: bool = False,
    add_items: list[dict] | None = None,
    adjust_order_lines: list[dict] | None = None,
    surcharges: list[dict] | None = None,
    update_shipping_address: dict | None = None,
    update_billing_address: dict | None = None,
    shipping_method_ids: list[int] | None = None,
    coupon_codes: list[str] | None = None,
    note: str | None = None,
    payment_method_code: str | None = None,
    payment_id: int | None = None,
    refund: dict | None = None,
    actor_user_id: int | None = None,
    settings: ChannelSettings,
):
    """
    Apply a batch of changes to an order in the Modifying state.

    add_items:          [{"product_variant_id", "quantity"}]
    adjust_order_lines: [{"order_line_id", "quantity"}] (absolute quantities)
    surcharges:         [{"description", "sku", "price", "tax_rate_bps"}]
    refund:             {"payment_id", "reason"}

    Returns:
        Order | ModificationPreview (dry run) | CouponCodeExpiredError |
        CouponCodeInvalidError | CouponCodeLimitError |
        IneligibleShippingMethodError | InsufficientStockError |
        NegativeQuantityError | NoChangesSpecifiedError | OrderLimitError |
        OrderModificationStateError | PaymentMethodMissingError |
        RefundPaymentIdMissingError
    """
    def _op():
        order = get_order_locked(order_id)
        if order.state != ORDER_MODIFYING:
            raise OrderModificationStateError()
        if not _has_changes(
            add_items=add_items,
            adjust_order_lines=adjust_order_lines,
            surcharges=surcharges,
            update_shipping_address=update_shipping_address,
            update_billing_address=update_billing_address,
            shipping_method_ids=shipping_method_ids,
            coupon_codes=coupon_codes,
        ):
            raise NoChangesSpecifiedError()

        before = totals_snapshot(order)
        modification = OrderModification(
            order=order,
            note=note,
            created_by_user_id=actor_user_id,
        )
        db.session.add(modification)
        db.session.flush()

        deltas: dict[int, int] = {}
        if add_items:
            _apply_add_items(order, add_items, deltas)
        if adjust_order_lines:
            _apply_adjustments(order, adjust_order_lines, deltas)
        check_item_limit(order.total_quantity, settings)

        if surcharges:
            _apply_surcharges(order, modification, surcharges)
        if update_shipping_address:
            order.shipping_address = _merge_address(order.shipping_address, update_shipping_address)
            modification.shipping_address_change = dict(update_shipping_address)
        if update_billing_address:
            order.billing_address = _merge_address(order.billing_address, update_billing_address)
            modification.billing_address_change = dict(update_billing_address)
        if coupon_codes is not None:
            _apply_coupon_codes(order, coupon_codes)

        recalculate_order(order)
        if shipping_method_ids:
            methods = [get_shipping_method(order, int(mid)) for mid in shipping_method_ids]
            replace_shipping_methods(order, methods)

        after = totals_snapshot(order)
        price_change = after["total_with_tax"] - before["total_with_tax"]

        if dry_run:
            preview = ModificationPreview(order.to_dict(), price_change)
            db.session.rollback()
            return preview

        if price_change > 0 and not payment_method_code and payment_id is None:
            raise PaymentMethodMissingError()
        if price_change < 0 and not (refund and refund.get("payment_id")):
            raise RefundPaymentIdMissingError()

        modification.price_change_cents = price_change
        for line_id, qty in deltas.items():
            db.session.add(OrderModificationLine(
                modification_id=modification.id, order_line_id=line_id, quantity=qty
            ))

        # Revenue delta first: the settlement below moves AR the other way.
        post_revenue_delta(
            order,
            before,
            after,
            source_type=SOURCE_ORDER_MODIFICATION,
            source_id=modification.id,
            memo=f"Order {order.code} modification {modification.id}",
        )

        if price_change > 0:
            _settle_increase(
                order, modification, price_change,
                payment_method_code=payment_method_code,
                payment_id=payment_id,
                actor_user_id=actor_user_id,
                settings=settings,
            )
        elif price_change < 0:
            _settle_decrease(
                order, modification, price_change, refund=refund, actor_user_id=actor_user_id, settings=settings
            )
        else:
            modification.is_settled = True
        order.updated_at = utcnow()

        append_audit_event(
            channel_id=order.channel_id,
            event_type="ORDER_MODIFIED",
            event_category="orders",
            entity_type="order_modification",
            entity_id=modification.id,
            actor_user_id=actor_user_id,
            order_id=order.id,
            payment_id=modification.payment_id,
            note=note,
            payload={"price_change": price_change, "lines": {str(k): v for k, v in deltas.items()}},
        )
        db.session.commit()
        current_app.logger.info(
            "Order %s modified (modification=%s, price_change=%s)", order.code, modification.id, price_change
        )
        return order

    return run_mutation(_op)
