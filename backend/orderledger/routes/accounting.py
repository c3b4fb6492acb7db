# Overview: Flask API routes for the ledger, reconciliations and accounting period close.

# backend/orderledger/routes/accounting.py
"""
Accounting API Routes

DESIGN:
- Read-only views of journal entries and account balances
- Reconciliations: create, verify, flag, list, period status
- Period end close: blocked until every required reconciliation for the
  period is verified

SECURITY:
- Every route needs an actor (X-User-Id)
- Creating/verifying/flagging reconciliations and closing periods is
  manager-only
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..extensions import db
from ..models import CashierSession, Reconciliation
from ..decorators import require_actor, require_role, ROLE_MANAGER
from ..services import period_service, reconciliation_service
from ..services.ledger_service import account_balance, get_account, list_entries
from ..services.period_service import PeriodError
from ..services.reconciliation_service import ReconciliationError
from ..validation import parse_account_amounts, parse_bool, parse_cents, parse_date, parse_int


accounting_bp = Blueprint("accounting", __name__, url_prefix="/api/accounting")


# =============================================================================
# LEDGER
# =============================================================================

@accounting_bp.get("/journal")
@require_actor
def list_journal_route():
    """
    Query params:
    - channelId (required)
    - orderId, sourceType (optional filters)
    """
    try:
        entries = list_entries(
            channel_id=parse_int(request.args.get("channelId"), "channelId"),
            order_id=parse_int(request.args.get("orderId"), "orderId", required=False),
            source_type=request.args.get("sourceType"),
        )
        return jsonify({"entries": [e.to_dict() for e in entries]}), 200
    except ValueError as e:
        return jsonify({"error": str(e)}), 400


@accounting_bp.get("/accounts/<string:account_code>/balance")
@require_actor
def account_balance_route(account_code: str):
    try:
        channel_id = parse_int(request.args.get("channelId"), "channelId")
        if not get_account(channel_id, account_code):
            return jsonify({"error": "Account not found"}), 404
        balance = account_balance(
            channel_id,
            account_code,
            start=parse_date(request.args.get("start"), "start", required=False),
            end=parse_date(request.args.get("end"), "end", required=False),
        )
        return jsonify({"accountCode": account_code, "balance": str(balance)}), 200
    except ValueError as e:
        return jsonify({"error": str(e)}), 400


# =============================================================================
# RECONCILIATIONS
# =============================================================================

@accounting_bp.post("/reconciliations")
@require_actor
@require_role(ROLE_MANAGER)
def create_reconciliation_route():
    """
    Request body:
    {
        "channelId": 1,
        "scope": "method",  // cash-session | method | bank | inventory | manual
        "scopeRefId": "card",
        "rangeStart": "2026-01-01",
        "rangeEnd": "2026-01-31",
        "declaredAmounts": [{"accountCode": "CLEARING_CARD", "amountCents": "52000"}],
        "actualBalance": "52000",  (optional, defaults to the declared sum)
        "notes": "..."  (optional)
    }
    """
    try:
        data = request.get_json() or {}
        rec = reconciliation_service.create_reconciliation(
            channel_id=parse_int(data.get("channelId"), "channelId"),
            scope=data.get("scope"),
            scope_ref_id=data.get("scopeRefId"),
            range_start=parse_date(data.get("rangeStart"), "rangeStart"),
            range_end=parse_date(data.get("rangeEnd"), "rangeEnd"),
            declared_amounts=parse_account_amounts(data.get("declaredAmounts"), "declaredAmounts"),
            actual_balance=parse_cents(data.get("actualBalance"), "actualBalance", required=False, allow_negative=True),
            notes=data.get("notes"),
            actor_user_id=g.actor_user_id,
        )
        return jsonify(rec.to_dict()), 201

    except ReconciliationError as e:
        return jsonify({"error": str(e)}), 400
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to create reconciliation")
        return jsonify({"error": "Internal server error"}), 500


@accounting_bp.post("/reconciliations/cashier-sessions/<int:session_id>")
@require_actor
@require_role(ROLE_MANAGER)
def create_session_reconciliation_route(session_id: int):
    try:
        if not db.session.get(CashierSession, session_id):
            return jsonify({"error": "Session not found"}), 404
        rec = reconciliation_service.create_cashier_session_reconciliation(
            session_id=session_id,
            notes=(request.get_json(silent=True) or {}).get("notes"),
            actor_user_id=g.actor_user_id,
        )
        return jsonify(rec.to_dict()), 200

    except ReconciliationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to create session reconciliation")
        return jsonify({"error": "Internal server error"}), 500


@accounting_bp.post("/reconciliations/<int:reconciliation_id>/verify")
@require_actor
@require_role(ROLE_MANAGER)
def verify_reconciliation_route(reconciliation_id: int):
    try:
        if not db.session.get(Reconciliation, reconciliation_id):
            return jsonify({"error": "Reconciliation not found"}), 404
        rec = reconciliation_service.verify_reconciliation(
            reconciliation_id=reconciliation_id,
            actor_user_id=g.actor_user_id,
            notes=(request.get_json(silent=True) or {}).get("notes"),
        )
        return jsonify(rec.to_dict()), 200

    except ReconciliationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to verify reconciliation")
        return jsonify({"error": "Internal server error"}), 500


@accounting_bp.post("/reconciliations/<int:reconciliation_id>/flag")
@require_actor
@require_role(ROLE_MANAGER)
def flag_reconciliation_route(reconciliation_id: int):
    try:
        if not db.session.get(Reconciliation, reconciliation_id):
            return jsonify({"error": "Reconciliation not found"}), 404
        rec = reconciliation_service.flag_reconciliation(
            reconciliation_id=reconciliation_id,
            actor_user_id=g.actor_user_id,
            notes=(request.get_json(silent=True) or {}).get("notes"),
        )
        return jsonify(rec.to_dict()), 200

    except ReconciliationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to flag reconciliation")
        return jsonify({"error": "Internal server error"}), 500


@accounting_bp.get("/reconciliations")
@require_actor
def list_reconciliations_route():
    """
    Query params:
    - channelId (required)
    - scope, hasVariance (optional)
    """
    try:
        has_variance = request.args.get("hasVariance")
        recs = reconciliation_service.list_reconciliations(
            channel_id=parse_int(request.args.get("channelId"), "channelId"),
            scope=request.args.get("scope"),
            has_variance=None if has_variance is None else parse_bool(has_variance),
        )
        return jsonify({"reconciliations": [r.to_dict() for r in recs]}), 200
    except ValueError as e:
        return jsonify({"error": str(e)}), 400


@accounting_bp.get("/reconciliation-status")
@require_actor
def reconciliation_status_route():
    try:
        status = reconciliation_service.get_reconciliation_status(
            channel_id=parse_int(request.args.get("channelId"), "channelId"),
            period_end_date=parse_date(request.args.get("periodEndDate"), "periodEndDate"),
        )
        return jsonify(status), 200
    except ValueError as e:
        return jsonify({"error": str(e)}), 400


# =============================================================================
# PERIOD CLOSE
# =============================================================================

@accounting_bp.get("/periods/status")
@require_actor
def period_status_route():
    try:
        status = period_service.get_period_status(
            channel_id=parse_int(request.args.get("channelId"), "channelId"),
            period_end_date=parse_date(request.args.get("periodEndDate"), "periodEndDate"),
        )
        return jsonify(status.to_dict()), 200
    except PeriodError as e:
        return jsonify({"error": str(e)}), 400
    except ValueError as e:
        return jsonify({"error": str(e)}), 400


@accounting_bp.post("/periods/close")
@require_actor
@require_role(ROLE_MANAGER)
def close_period_route():
    """
    Request body:
    {
        "channelId": 1,
        "periodEndDate": "2026-01-31"
    }

    Returns PeriodEndCloseResult; success is false (HTTP 200) while
    reconciliations are missing.
    """
    try:
        data = request.get_json() or {}
        result = period_service.close_accounting_period(
            channel_id=parse_int(data.get("channelId"), "channelId"),
            period_end_date=parse_date(data.get("periodEndDate"), "periodEndDate"),
            closed_by_user_id=g.actor_user_id,
        )
        return jsonify(result.to_dict()), 200

    except PeriodError as e:
        return jsonify({"error": str(e)}), 400
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to close accounting period")
        return jsonify({"error": "Internal server error"}), 500
