# Overview: Flask API routes for orders; building, state transitions, cancellation, modification and fulfillment.

# backend/orderledger/routes/orders.py
"""
Order API Routes

DESIGN:
- Typed business errors come back as HTTP 200 with a "__typename"
  discriminator; clients match on it exactly like on the success type.
- Generic input problems (OrderError, ValidationError) are 400, unknown
  orders are 404, anything else is logged and returned as 500.
- Request bodies use camelCase keys; services take snake_case keywords.

SECURITY:
- Every route needs an actor (X-User-Id)
- Reversal is manager-only: it reverses recognized revenue
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..extensions import db
from ..models import Fulfillment, Order
from ..decorators import require_actor, require_role, ROLE_MANAGER
from ..services import fulfillment_service, modification_service, order_service, order_state_service
from ..services.cashier_service import CashierSessionError
from ..services.ledger_service import list_entries
from ..services.order_state_service import OrderError
from ..services.settings_service import get_channel_settings
from ..validation import parse_bool, parse_id_list, parse_int, parse_line_selection


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


def _order_or_404(order_id: int):
    order = db.session.get(Order, order_id)
    if not order:
        return None, (jsonify({"error": "Order not found"}), 404)
    return order, None


# =============================================================================
# ACTIVE ORDER
# =============================================================================

@orders_bp.post("")
@require_actor
def create_order_route():
    """
    Request body:
    {
        "channelId": 1,
        "customerId": 7  (optional)
    }
    """
    try:
        data = request.get_json() or {}
        order = order_service.create_order(
            channel_id=parse_int(data.get("channelId"), "channelId"),
            customer_id=parse_int(data.get("customerId"), "customerId", required=False),
            actor_user_id=g.actor_user_id,
        )
        return jsonify(order.to_dict()), 201

    except OrderError as e:
        return jsonify({"error": str(e)}), 400
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to create order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/<int:order_id>")
@require_actor
def get_order_route(order_id: int):
    order, not_found = _order_or_404(order_id)
    if not_found:
        return not_found
    payload = order.to_dict()
    payload["outstanding"] = str(order_state_service.outstanding_amount(order))
    return jsonify(payload), 200


@orders_bp.post("/<int:order_id>/items")
@require_actor
def add_item_route(order_id: int):
    """
    Request body:
    {
        "productVariantId": 3,
        "quantity": 2
    }
    """
    try:
        order, not_found = _order_or_404(order_id)
        if not_found:
            return not_found
        data = request.get_json() or {}
        result = order_service.add_item_to_order(
            order_id,
            parse_int(data.get("productVariantId"), "productVariantId"),
            parse_int(data.get("quantity"), "quantity"),
            settings=get_channel_settings(order.channel_id),
        )
        return jsonify(result.to_dict()), 200

    except OrderError as e:
        return jsonify({"error": str(e)}), 400
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to add item to order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.patch("/<int:order_id>/lines/<int:line_id>")
@require_actor
def adjust_line_route(order_id: int, line_id: int):
    try:
        order, not_found = _order_or_404(order_id)
        if not_found:
            return not_found
        data = request.get_json() or {}
        result = order_service.adjust_order_line(
            order_id,
            line_id,
            parse_int(data.get("quantity"), "quantity"),
            settings=get_channel_settings(order.channel_id),
        )
        return jsonify(result.to_dict()), 200

    except OrderError as e:
        return jsonify({"error": str(e)}), 400
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to adjust order line")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.delete("/<int:order_id>/lines/<int:line_id>")
@require_actor
def remove_line_route(order_id: int, line_id: int):
    try:
        result = order_service.remove_order_line(order_id, line_id)
        return jsonify(result.to_dict()), 200

    except OrderError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to remove order line")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.put("/<int:order_id>/shipping-method")
@require_actor
def set_shipping_method_route(order_id: int):
    try:
        data = request.get_json() or {}
        result = order_service.set_order_shipping_method(
            order_id, parse_int(data.get("shippingMethodId"), "shippingMethodId")
        )
        return jsonify(result.to_dict()), 200

    except OrderError as e:
        return jsonify({"error": str(e)}), 400
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to set shipping method")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<int:order_id>/coupons")
@require_actor
def apply_coupon_route(order_id: int):
    try:
        data = request.get_json() or {}
        code = (data.get("couponCode") or "").strip()
        if not code:
            return jsonify({"error": "couponCode required"}), 400
        result = order_service.apply_coupon_code(order_id, code)
        return jsonify(result.to_dict()), 200

    except OrderError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to apply coupon")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.delete("/<int:order_id>/coupons/<string:coupon_code>")
@require_actor
def remove_coupon_route(order_id: int, coupon_code: str):
    try:
        result = order_service.remove_coupon_code(order_id, coupon_code)
        return jsonify(result.to_dict()), 200

    except OrderError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to remove coupon")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.put("/<int:order_id>/shipping-address")
@require_actor
def set_shipping_address_route(order_id: int):
    try:
        result = order_service.set_order_shipping_address(order_id, request.get_json() or {})
        return jsonify(result.to_dict()), 200

    except OrderError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to set shipping address")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.put("/<int:order_id>/billing-address")
@require_actor
def set_billing_address_route(order_id: int):
    try:
        result = order_service.set_order_billing_address(order_id, request.get_json() or {})
        return jsonify(result.to_dict()), 200

    except OrderError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to set billing address")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# STATE MACHINE
# =============================================================================

@orders_bp.post("/<int:order_id>/transition")
@require_actor
def transition_order_route(order_id: int):
    """
    Request body:
    {
        "state": "ArrangingPayment"
    }

    Returns Order or OrderStateTransitionError (both HTTP 200).
    """
    try:
        order, not_found = _order_or_404(order_id)
        if not_found:
            return not_found
        data = request.get_json() or {}
        state = data.get("state")
        if not state:
            return jsonify({"error": "state required"}), 400
        result = order_state_service.transition_order_to_state(order_id, state, actor_user_id=g.actor_user_id)
        return jsonify(result.to_dict()), 200

    except OrderError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to transition order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<int:order_id>/cancel")
@require_actor
def cancel_order_route(order_id: int):
    """
    Request body (all optional):
    {
        "lines": [{"orderLineId": 4, "quantity": 1}],  // omit to cancel everything
        "reason": "Customer changed their mind",
        "cancelShipping": true
    }
    """
    try:
        order, not_found = _order_or_404(order_id)
        if not_found:
            return not_found
        data = request.get_json() or {}
        result = order_service.cancel_order(
            order_id,
            lines=parse_line_selection(data.get("lines")),
            reason=data.get("reason"),
            cancel_shipping=parse_bool(data.get("cancelShipping")),
            actor_user_id=g.actor_user_id,
        )
        return jsonify(result.to_dict()), 200

    except OrderError as e:
        return jsonify({"error": str(e)}), 400
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to cancel order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<int:order_id>/reverse")
@require_actor
@require_role(ROLE_MANAGER)
def reverse_order_route(order_id: int):
    """
    Reverse a placed order's revenue and cancel it.

    Settled payments are NOT refunded; "hadPayments" tells the caller a
    manual refund is still owed.
    """
    try:
        order, not_found = _order_or_404(order_id)
        if not_found:
            return not_found
        data = request.get_json() or {}
        result = order_service.reverse_order(order_id, reason=data.get("reason"), actor_user_id=g.actor_user_id)
        return jsonify(result.to_dict()), 200

    except OrderError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to reverse order")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# MODIFICATION
# =============================================================================

def _parse_modify_input(data: dict) -> dict:
    add_items = data.get("addItems")
    if add_items is not None:
        add_items = [
            {
                "product_variant_id": parse_int(item.get("productVariantId"), "productVariantId"),
                "quantity": parse_int(item.get("quantity"), "quantity"),
            }
            for item in add_items
        ]
    surcharges = data.get("surcharges")
    if surcharges is not None:
        surcharges = [
            {
                "description": item.get("description"),
                "sku": item.get("sku"),
                "price": parse_int(item.get("price"), "price"),
                "tax_rate_bps": parse_int(item.get("taxRateBps"), "taxRateBps", required=False) or 0,
            }
            for item in surcharges
        ]
    refund = data.get("refund")
    if refund is not None:
        refund = {
            "payment_id": parse_int(refund.get("paymentId"), "paymentId", required=False),
            "reason": refund.get("reason"),
        }
    return {
        "dry_run": parse_bool(data.get("dryRun")),
        "add_items": add_items,
        "adjust_order_lines": parse_line_selection(data.get("adjustOrderLines"), "adjustOrderLines"),
        "surcharges": surcharges,
        "update_shipping_address": data.get("updateShippingAddress"),
        "update_billing_address": data.get("updateBillingAddress"),
        "shipping_method_ids": parse_id_list(data.get("shippingMethodIds"), "shippingMethodIds"),
        "coupon_codes": data.get("couponCodes"),
        "note": data.get("note"),
        "payment_method_code": data.get("paymentMethodCode"),
        "payment_id": parse_int(data.get("paymentId"), "paymentId", required=False),
        "refund": refund,
    }


@orders_bp.post("/<int:order_id>/modify")
@require_actor
def modify_order_route(order_id: int):
    """
    Apply (or preview with "dryRun": true) a batch of changes to an order
    in the Modifying state.

    Request body: addItems, adjustOrderLines, surcharges,
    updateShippingAddress, updateBillingAddress, shippingMethodIds,
    couponCodes, note, paymentMethodCode | paymentId, refund{paymentId, reason}
    """
    try:
        order, not_found = _order_or_404(order_id)
        if not_found:
            return not_found
        kwargs = _parse_modify_input(request.get_json() or {})
        result = modification_service.modify_order(
            order_id,
            actor_user_id=g.actor_user_id,
            settings=get_channel_settings(order.channel_id),
            **kwargs,
        )
        return jsonify(result.to_dict()), 200

    except (OrderError, CashierSessionError) as e:
        return jsonify({"error": str(e)}), 400
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to modify order")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# FULFILLMENT
# =============================================================================

@orders_bp.post("/<int:order_id>/fulfillments")
@require_actor
def add_fulfillment_route(order_id: int):
    """
    Request body:
    {
        "lines": [{"orderLineId": 4, "quantity": 1}],
        "method": "courier",
        "trackingCode": "TRK-123"  (optional)
    }
    """
    try:
        order, not_found = _order_or_404(order_id)
        if not_found:
            return not_found
        data = request.get_json() or {}
        result = fulfillment_service.add_fulfillment_to_order(
            order_id,
            lines=parse_line_selection(data.get("lines")) or [],
            method=data.get("method"),
            tracking_code=data.get("trackingCode"),
            actor_user_id=g.actor_user_id,
        )
        return jsonify(result.to_dict()), 200

    except OrderError as e:
        return jsonify({"error": str(e)}), 400
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to create fulfillment")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/fulfillments/<int:fulfillment_id>/transition")
@require_actor
def transition_fulfillment_route(fulfillment_id: int):
    try:
        if not db.session.get(Fulfillment, fulfillment_id):
            return jsonify({"error": "Fulfillment not found"}), 404
        data = request.get_json() or {}
        state = data.get("state")
        if not state:
            return jsonify({"error": "state required"}), 400
        result = fulfillment_service.transition_fulfillment_to_state(
            fulfillment_id, state, actor_user_id=g.actor_user_id
        )
        return jsonify(result.to_dict()), 200

    except OrderError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to transition fulfillment")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# LEDGER VIEW
# =============================================================================

@orders_bp.get("/<int:order_id>/journal")
@require_actor
def order_journal_route(order_id: int):
    order, not_found = _order_or_404(order_id)
    if not_found:
        return not_found
    entries = list_entries(channel_id=order.channel_id, order_id=order.id)
    return jsonify({"entries": [entry.to_dict() for entry in entries]}), 200
