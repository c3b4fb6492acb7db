# backend/orderledger/routes/system.py
"""
System health and channel endpoints.

Health checks the database and the journal's balance invariant; channels
are listed so clients can resolve their channel id and settings.
"""

import time
from flask import Blueprint, current_app, jsonify
from ..extensions import db
from ..models import Channel, JournalEntry
from ..services.ledger_service import find_unbalanced_entries
from ..services.settings_service import get_channel_settings
from orderledger.time_utils import to_utc_z, utcnow

system_bp = Blueprint("system", __name__, url_prefix="/api/system")


def check_database_health() -> dict:
    start_time = time.time()
    try:
        channel_count = db.session.query(Channel).count()
        entry_count = db.session.query(JournalEntry).count()
        elapsed_ms = (time.time() - start_time) * 1000
        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {"channels": channel_count, "journal_entries": entry_count},
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error",
        }


def check_ledger_health() -> dict:
    """Every journal entry must balance; anything else is a bug."""
    try:
        unbalanced = find_unbalanced_entries()
    except Exception:
        current_app.logger.exception("Ledger health check failed")
        return {"status": "unhealthy", "error": "Ledger query failed"}
    if unbalanced:
        current_app.logger.error("Unbalanced journal entries: %s", unbalanced)
        return {"status": "unhealthy", "unbalanced_entry_ids": unbalanced}
    return {"status": "healthy"}


@system_bp.get("/health")
def health():
    checks = {
        "database": check_database_health(),
        "ledger": check_ledger_health(),
    }
    healthy = all(c["status"] == "healthy" for c in checks.values())
    return jsonify({
        "status": "healthy" if healthy else "unhealthy",
        "timestamp": to_utc_z(utcnow()),
        "checks": checks,
    }), 200 if healthy else 503


@system_bp.get("/channels")
def list_channels():
    channels = db.session.query(Channel).order_by(Channel.id.asc()).all()
    payload = []
    for channel in channels:
        data = channel.to_dict()
        settings = get_channel_settings(channel.id)
        data["settings"] = {
            "cash_control_enabled": settings.cash_control_enabled,
            "require_opening_count": settings.require_opening_count,
            "variance_notification_threshold": str(settings.variance_notification_threshold_cents),
            "hide_variance_from_cashier": settings.hide_variance_from_cashier,
            "order_item_limit": settings.order_item_limit,
        }
        payload.append(data)
    return jsonify({"channels": payload}), 200
