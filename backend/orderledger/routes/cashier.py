# Overview: Flask API routes for cashier sessions; opening, cash counts, variance review and closing.

# backend/orderledger/routes/cashier.py
"""
Cashier Session API Routes

DESIGN:
- One open session per channel; payments on cashier-controlled accounts are
  tagged with it
- Cash counts compare declared cash with the ledger; cashiers may be shown
  a blind count (variance withheld) depending on channel settings
- Closing declares every cashier-controlled account and creates the
  session reconciliation

SECURITY:
- Every route needs an actor (X-User-Id, X-User-Role)
- Variance review and the pending-review queue are manager-only
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..extensions import db
from ..models import CashDrawerCount, CashierSession
from ..decorators import require_actor, require_role, ROLE_CASHIER, ROLE_MANAGER
from ..services import cashier_service
from ..services.cashier_service import CashierSessionError
from ..services.settings_service import SettingsError, get_channel_settings
from ..validation import parse_account_amounts, parse_cents, parse_int


cashier_bp = Blueprint("cashier", __name__, url_prefix="/api/cashier-sessions")


def _hide_variance(channel_id: int) -> bool:
    settings = get_channel_settings(channel_id)
    return g.actor_role == ROLE_CASHIER and settings.hide_variance_from_cashier


# =============================================================================
# OPEN / QUERY
# =============================================================================

@cashier_bp.post("")
@require_actor
def open_session_route():
    """
    Request body:
    {
        "channelId": 1,
        "openingBalances": [{"accountCode": "CASH_ON_HAND", "amountCents": "10000"}],
        "notes": "Morning shift"  (optional)
    }
    """
    try:
        data = request.get_json() or {}
        channel_id = parse_int(data.get("channelId"), "channelId")
        session = cashier_service.open_cashier_session(
            channel_id=channel_id,
            cashier_user_id=g.actor_user_id,
            opening_balances=parse_account_amounts(data.get("openingBalances"), "openingBalances"),
            notes=data.get("notes"),
            settings=get_channel_settings(channel_id),
        )
        return jsonify({"session": session.to_dict()}), 201

    except SettingsError as e:
        return jsonify({"error": str(e)}), 404
    except CashierSessionError as e:
        return jsonify({"error": str(e)}), 400
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to open cashier session")
        return jsonify({"error": "Internal server error"}), 500


@cashier_bp.get("")
@require_actor
def list_sessions_route():
    try:
        channel_id = parse_int(request.args.get("channelId"), "channelId")
        sessions = cashier_service.list_sessions(channel_id=channel_id, status=request.args.get("status"))
        return jsonify({"sessions": [s.to_dict() for s in sessions]}), 200
    except ValueError as e:
        return jsonify({"error": str(e)}), 400


@cashier_bp.get("/current")
@require_actor
def current_session_route():
    try:
        channel_id = parse_int(request.args.get("channelId"), "channelId")
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    session = cashier_service.get_current_session(channel_id)
    if not session:
        return jsonify({"error": "No open cashier session"}), 404
    return jsonify({"session": session.to_dict()}), 200


@cashier_bp.get("/<int:session_id>")
@require_actor
def session_summary_route(session_id: int):
    if not db.session.get(CashierSession, session_id):
        return jsonify({"error": "Session not found"}), 404
    summary = cashier_service.get_session_summary(session_id)
    return jsonify(summary.to_dict()), 200


# =============================================================================
# CASH COUNTS
# =============================================================================

@cashier_bp.post("/<int:session_id>/counts")
@require_actor
def record_count_route(session_id: int):
    """
    Request body:
    {
        "countType": "interim",  // opening | interim | closing
        "declaredCash": "12500",
        "varianceReason": "Short change given"  (optional)
    }
    """
    try:
        session = db.session.get(CashierSession, session_id)
        if not session:
            return jsonify({"error": "Session not found"}), 404
        data = request.get_json() or {}
        result = cashier_service.record_cash_count(
            session_id=session_id,
            count_type=data.get("countType") or "interim",
            declared_cash=parse_cents(data.get("declaredCash"), "declaredCash"),
            variance_reason=data.get("varianceReason"),
            actor_user_id=g.actor_user_id,
            actor_role=g.actor_role,
            settings=get_channel_settings(session.channel_id),
        )
        return jsonify(result.to_dict()), 201

    except CashierSessionError as e:
        return jsonify({"error": str(e)}), 400
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to record cash count")
        return jsonify({"error": "Internal server error"}), 500


@cashier_bp.get("/<int:session_id>/counts")
@require_actor
def list_counts_route(session_id: int):
    session = db.session.get(CashierSession, session_id)
    if not session:
        return jsonify({"error": "Session not found"}), 404
    hide = _hide_variance(session.channel_id)
    counts = cashier_service.get_session_cash_counts(session_id)
    return jsonify({"counts": [c.to_dict(hide_variance=hide) for c in counts]}), 200


@cashier_bp.post("/counts/<int:count_id>/explain")
@require_actor
def explain_variance_route(count_id: int):
    try:
        count = db.session.get(CashDrawerCount, count_id)
        if not count:
            return jsonify({"error": "Cash count not found"}), 404
        reason = ((request.get_json() or {}).get("reason") or "").strip()
        if not reason:
            return jsonify({"error": "reason required"}), 400
        count = cashier_service.explain_variance(count_id=count_id, reason=reason, actor_user_id=g.actor_user_id)
        return jsonify({"count": count.to_dict(hide_variance=_hide_variance(count.channel_id))}), 200

    except CashierSessionError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to explain variance")
        return jsonify({"error": "Internal server error"}), 500


@cashier_bp.post("/counts/<int:count_id>/review")
@require_actor
@require_role(ROLE_MANAGER)
def review_count_route(count_id: int):
    try:
        if not db.session.get(CashDrawerCount, count_id):
            return jsonify({"error": "Cash count not found"}), 404
        notes = (request.get_json() or {}).get("notes")
        count = cashier_service.review_cash_count(count_id=count_id, notes=notes, actor_user_id=g.actor_user_id)
        return jsonify({"count": count.to_dict()}), 200

    except CashierSessionError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to review cash count")
        return jsonify({"error": "Internal server error"}), 500


@cashier_bp.get("/variance-reviews")
@require_actor
@require_role(ROLE_MANAGER)
def pending_reviews_route():
    try:
        channel_id = parse_int(request.args.get("channelId"), "channelId")
        counts = cashier_service.get_pending_variance_reviews(
            channel_id=channel_id, settings=get_channel_settings(channel_id)
        )
        return jsonify({"counts": [c.to_dict() for c in counts]}), 200

    except SettingsError as e:
        return jsonify({"error": str(e)}), 404
    except ValueError as e:
        return jsonify({"error": str(e)}), 400


# =============================================================================
# CLOSE
# =============================================================================

@cashier_bp.post("/<int:session_id>/close")
@require_actor
def close_session_route(session_id: int):
    """
    Request body:
    {
        "closingBalances": [{"accountCode": "CASH_ON_HAND", "amountCents": "12500"}],
        "notes": "..."  (optional)
    }

    Returns CashierSessionSummary. The session becomes immutable.
    """
    try:
        session = db.session.get(CashierSession, session_id)
        if not session:
            return jsonify({"error": "Session not found"}), 404
        data = request.get_json() or {}
        summary = cashier_service.close_cashier_session(
            session_id=session_id,
            closing_balances=parse_account_amounts(data.get("closingBalances"), "closingBalances"),
            notes=data.get("notes"),
            actor_user_id=g.actor_user_id,
            actor_role=g.actor_role,
            settings=get_channel_settings(session.channel_id),
        )
        return jsonify(summary.to_dict()), 200

    except CashierSessionError as e:
        return jsonify({"error": str(e)}), 400
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to close cashier session")
        return jsonify({"error": "Internal server error"}), 500
