# Overview: Flask API routes for payments, refunds, bulk allocations and supplier purchases.

# backend/orderledger/routes/payments.py
"""
Payment & Refund API Routes

DESIGN:
- Checkout payments (order in ArrangingPayment) and manual payments
  (ArrangingPayment / ArrangingAdditionalPayment)
- Payment state changes go through the handler registry
- Refunds against one settled payment, itemized or by amount
- Bulk allocation of a customer's lump-sum payment across their orders,
  and of a payment to a supplier across unpaid credit purchases

SECURITY:
- Every route needs an actor (X-User-Id)
- Supplier payments and purchases are manager-only
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..extensions import db
from ..models import Customer, Order, Payment, Refund
from ..decorators import require_actor, require_role, ROLE_MANAGER
from ..services import allocation_service, payment_service, refund_service, supplier_service
from ..services.allocation_service import AllocationError
from ..services.cashier_service import CashierSessionError
from ..services.order_state_service import OrderError
from ..services.payment_service import PaymentError
from ..services.refund_service import RefundError
from ..services.settings_service import get_channel_settings
from ..services.supplier_service import SupplierError
from ..validation import parse_bool, parse_cents, parse_id_list, parse_int, parse_line_selection


payments_bp = Blueprint("payments", __name__, url_prefix="/api/payments")


# =============================================================================
# PAYMENT CREATION
# =============================================================================

@payments_bp.post("/orders/<int:order_id>")
@require_actor
def add_payment_route(order_id: int):
    """
    Add a checkout payment to an order.

    Request body:
    {
        "method": "cash",
        "amount": 10000,  (optional, defaults to the outstanding amount)
        "metadata": {...}  (optional)
    }

    Returns Payment | OrderPaymentStateError | IneligiblePaymentMethodError |
    PaymentDeclinedError | PaymentFailedError (HTTP 200).
    """
    try:
        order = db.session.get(Order, order_id)
        if not order:
            return jsonify({"error": "Order not found"}), 404
        data = request.get_json() or {}
        method = data.get("method")
        if not method:
            return jsonify({"error": "method required"}), 400

        result = payment_service.add_payment_to_order(
            order_id,
            method_code=method,
            amount=parse_cents(data.get("amount"), "amount", required=False),
            metadata=data.get("metadata"),
            actor_user_id=g.actor_user_id,
            settings=get_channel_settings(order.channel_id),
        )
        return jsonify(result.to_dict()), 200

    except (PaymentError, OrderError, CashierSessionError) as e:
        return jsonify({"error": str(e)}), 400
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to add payment")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.post("/orders/<int:order_id>/manual")
@require_actor
def add_manual_payment_route(order_id: int):
    """
    Record a payment taken outside the system (covers the outstanding amount).

    Request body:
    {
        "method": "card",
        "transactionId": "EXT-991",  (optional)
        "metadata": {...}  (optional)
    }
    """
    try:
        order = db.session.get(Order, order_id)
        if not order:
            return jsonify({"error": "Order not found"}), 404
        data = request.get_json() or {}
        method = data.get("method")
        if not method:
            return jsonify({"error": "method required"}), 400

        result = payment_service.add_manual_payment_to_order(
            order_id,
            method_code=method,
            transaction_id=data.get("transactionId"),
            metadata=data.get("metadata"),
            actor_user_id=g.actor_user_id,
            settings=get_channel_settings(order.channel_id),
        )
        return jsonify(result.to_dict()), 200

    except (PaymentError, OrderError, CashierSessionError) as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to add manual payment")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# PAYMENT STATE
# =============================================================================

def _payment_or_404(payment_id: int):
    payment = db.session.get(Payment, payment_id)
    if not payment:
        return None, (jsonify({"error": "Payment not found"}), 404)
    return payment, None


@payments_bp.get("/<int:payment_id>")
@require_actor
def get_payment_route(payment_id: int):
    payment, not_found = _payment_or_404(payment_id)
    if not_found:
        return not_found
    return jsonify(payment.to_dict()), 200


@payments_bp.post("/<int:payment_id>/settle")
@require_actor
def settle_payment_route(payment_id: int):
    try:
        payment, not_found = _payment_or_404(payment_id)
        if not_found:
            return not_found
        result = payment_service.settle_payment(
            payment_id,
            actor_user_id=g.actor_user_id,
            settings=get_channel_settings(payment.order.channel_id),
        )
        return jsonify(result.to_dict()), 200

    except (PaymentError, OrderError) as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to settle payment")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.post("/<int:payment_id>/cancel")
@require_actor
def cancel_payment_route(payment_id: int):
    try:
        payment, not_found = _payment_or_404(payment_id)
        if not_found:
            return not_found
        result = payment_service.cancel_payment(payment_id, actor_user_id=g.actor_user_id)
        return jsonify(result.to_dict()), 200

    except (PaymentError, OrderError) as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to cancel payment")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.post("/<int:payment_id>/transition")
@require_actor
def transition_payment_route(payment_id: int):
    try:
        payment, not_found = _payment_or_404(payment_id)
        if not_found:
            return not_found
        state = (request.get_json() or {}).get("state")
        if not state:
            return jsonify({"error": "state required"}), 400
        result = payment_service.transition_payment_to_state(
            payment_id,
            state,
            actor_user_id=g.actor_user_id,
            settings=get_channel_settings(payment.order.channel_id),
        )
        return jsonify(result.to_dict()), 200

    except (PaymentError, OrderError) as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to transition payment")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# REFUNDS
# =============================================================================

@payments_bp.post("/refunds")
@require_actor
def refund_order_route():
    """
    Request body:
    {
        "paymentId": 12,
        "lines": [{"orderLineId": 4, "quantity": 1}],  (optional)
        "shipping": 500,  (optional)
        "adjustment": 0,  (optional)
        "amount": 1500,  (optional; overrides the itemized total)
        "reason": "Damaged"
    }
    """
    try:
        data = request.get_json() or {}
        payment_id = parse_int(data.get("paymentId"), "paymentId")
        payment, not_found = _payment_or_404(payment_id)
        if not_found:
            return not_found

        result = refund_service.refund_order(
            payment_id=payment_id,
            amount=parse_cents(data.get("amount"), "amount", required=False),
            reason=data.get("reason"),
            lines=parse_line_selection(data.get("lines")),
            shipping=parse_cents(data.get("shipping"), "shipping", required=False) or 0,
            adjustment=parse_cents(data.get("adjustment"), "adjustment", required=False, allow_negative=True) or 0,
            actor_user_id=g.actor_user_id,
            settings=get_channel_settings(payment.order.channel_id),
        )
        return jsonify(result.to_dict()), 200

    except (RefundError, PaymentError, CashierSessionError) as e:
        return jsonify({"error": str(e)}), 400
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to refund order")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.post("/refunds/<int:refund_id>/settle")
@require_actor
def settle_refund_route(refund_id: int):
    try:
        refund = db.session.get(Refund, refund_id)
        if not refund:
            return jsonify({"error": "Refund not found"}), 404
        data = request.get_json() or {}
        result = refund_service.settle_refund(
            refund_id,
            transaction_id=data.get("transactionId"),
            actor_user_id=g.actor_user_id,
            settings=get_channel_settings(refund.payment.order.channel_id),
        )
        return jsonify(result.to_dict()), 200

    except (RefundError, CashierSessionError) as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to settle refund")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# BULK ALLOCATION
# =============================================================================

@payments_bp.post("/allocations")
@require_actor
def allocate_bulk_payment_route():
    """
    Spread one customer payment across their outstanding orders.

    Request body:
    {
        "customerId": 7,
        "paymentAmount": "25000",
        "orderIds": [3, 5],  (optional; otherwise oldest first)
        "paymentMethodCode": "cash",  (optional)
        "debitAccountCode": "BANK_MAIN"  (optional)
    }
    """
    try:
        data = request.get_json() or {}
        customer_id = parse_int(data.get("customerId"), "customerId")
        customer = db.session.get(Customer, customer_id)
        if not customer:
            return jsonify({"error": "Customer not found"}), 404

        result = allocation_service.allocate_bulk_payment(
            customer_id=customer_id,
            payment_amount=parse_cents(data.get("paymentAmount"), "paymentAmount"),
            order_ids=parse_id_list(data.get("orderIds"), "orderIds"),
            payment_method_code=data.get("paymentMethodCode") or "cash",
            debit_account_code=data.get("debitAccountCode"),
            actor_user_id=g.actor_user_id,
            settings=get_channel_settings(customer.channel_id),
        )
        return jsonify(result.to_dict()), 200

    except AllocationError as e:
        return jsonify({"error": str(e)}), 400
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to allocate payment")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.post("/supplier-allocations")
@require_actor
@require_role(ROLE_MANAGER)
def allocate_bulk_supplier_payment_route():
    """
    Request body:
    {
        "supplierId": 2,
        "paymentAmount": "40000",
        "purchaseIds": [1, 4],  (optional; otherwise oldest first)
        "debitAccountCode": "BANK_MAIN"  (optional)
    }
    """
    try:
        data = request.get_json() or {}
        result = supplier_service.allocate_bulk_supplier_payment(
            supplier_id=parse_int(data.get("supplierId"), "supplierId"),
            payment_amount=parse_cents(data.get("paymentAmount"), "paymentAmount"),
            purchase_ids=parse_id_list(data.get("purchaseIds"), "purchaseIds"),
            debit_account_code=data.get("debitAccountCode"),
            actor_user_id=g.actor_user_id,
        )
        return jsonify(result.to_dict()), 200

    except SupplierError as e:
        return jsonify({"error": str(e)}), 400
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to allocate supplier payment")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.post("/purchases")
@require_actor
@require_role(ROLE_MANAGER)
def record_purchase_route():
    """
    Request body:
    {
        "supplierId": 2,
        "reference": "INV-2201",
        "totalCents": "30000",
        "isCreditPurchase": true,
        "paidFromAccount": "CASH_ON_HAND"  (cash purchases only)
    }
    """
    try:
        data = request.get_json() or {}
        purchase = supplier_service.record_purchase(
            supplier_id=parse_int(data.get("supplierId"), "supplierId"),
            reference=data.get("reference") or "",
            total_cents=parse_cents(data.get("totalCents"), "totalCents"),
            is_credit_purchase=parse_bool(data.get("isCreditPurchase"), default=True),
            paid_from_account=data.get("paidFromAccount"),
            actor_user_id=g.actor_user_id,
        )
        return jsonify({"purchase": purchase.to_dict()}), 201

    except SupplierError as e:
        return jsonify({"error": str(e)}), 400
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to record purchase")
        return jsonify({"error": "Internal server error"}), 500
