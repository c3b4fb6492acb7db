# Overview: Service-layer reconciliations; declared vs ledger-expected balances and manager sign-off.

"""
Reconciliation Service

WHY: Before an accounting period can close, someone has to compare what was
actually counted or banked with what the ledger expects, and sign it off.

RULES:
- expected (per account) = ledger balance of the account within
  [range_start, range_end]; cash-session reconciliations use the lines
  tagged with the session instead.
- variance = actual - expected. actual defaults to the sum of the declared
  amounts.
- Status: pending -> verified | flagged; flagged may later be verified.
  Verification is a sign-off only and never recomputes.
"""

from __future__ import annotations

from datetime import date

from flask import current_app

from ..extensions import db
from ..models import CashierSession, Reconciliation, ReconciliationAccount
from orderledger.time_utils import utcnow
from .audit_service import append_audit_event
from .concurrency import lock_for_update, run_with_retry
from .ledger_service import account_balance, get_account


class ReconciliationError(Exception):
    """Raised for reconciliation input and state errors."""
    pass


SCOPE_CASH_SESSION = "cash-session"
SCOPE_METHOD = "method"
SCOPE_BANK = "bank"
SCOPE_INVENTORY = "inventory"
SCOPE_MANUAL = "manual"
SCOPES = (SCOPE_CASH_SESSION, SCOPE_METHOD, SCOPE_BANK, SCOPE_INVENTORY, SCOPE_MANUAL)

STATUS_PENDING = "pending"
STATUS_VERIFIED = "verified"
STATUS_FLAGGED = "flagged"


def _run(func):
    try:
        return run_with_retry(func)
    except Exception:
        db.session.rollback()
        raise


def _parse_declared(channel_id: int, declared_amounts: list[dict] | None) -> dict[str, int]:
    parsed: dict[str, int] = {}
    for item in declared_amounts or []:
        code = (item.get("account_code") or "").strip()
        if not code:
            raise ReconciliationError("account_code is required for every declared amount")
        if code in parsed:
            raise ReconciliationError(f"Duplicate declared amount for account {code}")
        if not get_account(channel_id, code):
            raise ReconciliationError(f"Unknown account {code}")
        parsed[code] = int(item.get("amount_cents"))
    return parsed


def _get_reconciliation_locked(reconciliation_id: int) -> Reconciliation:
    rec = lock_for_update(db.session.query(Reconciliation).filter_by(id=reconciliation_id)).first()
    if not rec:
        raise ReconciliationError(f"Reconciliation {reconciliation_id} not found")
    return rec


def find_reconciliation(channel_id: int, scope: str, scope_ref_id) -> Reconciliation | None:
    return (
        db.session.query(Reconciliation)
        .filter_by(channel_id=channel_id, scope=scope, scope_ref_id=str(scope_ref_id))
        .order_by(Reconciliation.id.desc())
        .first()
    )


# =============================================================================
# CREATE
# =============================================================================

def create_reconciliation(
    *,
    channel_id: int,
    scope: str,
    scope_ref_id,
    range_start: date,
    range_end: date,
    declared_amounts: list[dict],
    actual_balance: int | None = None,
    notes: str | None = None,
    actor_user_id: int | None = None,
) -> Reconciliation:
    """
    Raises:
        ReconciliationError: unknown scope/account, inverted range, no declared amounts
    """
    if scope not in SCOPES:
        raise ReconciliationError(f"Invalid scope '{scope}'. Must be one of: {', '.join(SCOPES)}")
    if range_start > range_end:
        raise ReconciliationError("range_start must be on or before range_end")
    if scope_ref_id is None or str(scope_ref_id).strip() == "":
        raise ReconciliationError("scope_ref_id is required")

    def _op():
        declared = _parse_declared(channel_id, declared_amounts)
        if not declared:
            raise ReconciliationError("At least one declared amount is required")

        rec = Reconciliation(
            channel_id=channel_id,
            scope=scope,
            scope_ref_id=str(scope_ref_id),
            range_start=range_start,
            range_end=range_end,
            status=STATUS_PENDING,
            notes=notes,
            created_by_user_id=actor_user_id,
        )
        db.session.add(rec)
        db.session.flush()

        expected_total = 0
        for code, amount in declared.items():
            expected = account_balance(channel_id, code, start=range_start, end=range_end)
            expected_total += expected
            db.session.add(ReconciliationAccount(
                reconciliation=rec,
                account_code=code,
                declared_amount_cents=amount,
                expected_amount_cents=expected,
            ))

        actual = int(actual_balance) if actual_balance is not None else sum(declared.values())
        rec.expected_balance_cents = expected_total
        rec.actual_balance_cents = actual
        rec.variance_amount_cents = actual - expected_total

        append_audit_event(
            channel_id=channel_id,
            event_type="RECONCILIATION_CREATED",
            event_category="accounting",
            entity_type="reconciliation",
            entity_id=rec.id,
            actor_user_id=actor_user_id,
            payload={"scope": scope, "scope_ref_id": str(scope_ref_id), "variance": rec.variance_amount_cents},
        )
        db.session.commit()
        return rec

    return _run(_op)


def build_cashier_session_reconciliation(
    session: CashierSession,
    *,
    notes: str | None = None,
    actor_user_id: int | None = None,
) -> Reconciliation:
    """
    Create (or return the existing) reconciliation for a closed session.
    Flushes only; the caller commits.
    """
    from .cashier_service import session_movements

    existing = find_reconciliation(session.channel_id, SCOPE_CASH_SESSION, session.id)
    if existing:
        return existing

    opening = session.opening_balances()
    closing = session.closing_balances()
    movements = session_movements(session.id, include_adjustments=False)

    rec = Reconciliation(
        channel_id=session.channel_id,
        scope=SCOPE_CASH_SESSION,
        scope_ref_id=str(session.id),
        range_start=session.opened_at.date(),
        range_end=(session.closed_at or utcnow()).date(),
        status=STATUS_PENDING,
        notes=notes,
        created_by_user_id=actor_user_id,
    )
    db.session.add(rec)
    db.session.flush()

    expected_total = 0
    for code in sorted(closing):
        expected = opening.get(code, 0) + movements.get(code, 0)
        expected_total += expected
        db.session.add(ReconciliationAccount(
            reconciliation=rec,
            account_code=code,
            declared_amount_cents=closing[code],
            expected_amount_cents=expected,
        ))

    rec.expected_balance_cents = expected_total
    rec.actual_balance_cents = sum(closing.values())
    rec.variance_amount_cents = rec.actual_balance_cents - expected_total
    db.session.flush()
    return rec


def create_cashier_session_reconciliation(
    *,
    session_id: int,
    notes: str | None = None,
    actor_user_id: int | None = None,
) -> Reconciliation:
    def _op():
        session = db.session.get(CashierSession, session_id)
        if not session:
            raise ReconciliationError(f"Cashier session {session_id} not found")
        if session.status != "Closed":
            raise ReconciliationError(f"Cashier session {session_id} must be closed before reconciliation")
        rec = build_cashier_session_reconciliation(session, notes=notes, actor_user_id=actor_user_id)
        db.session.commit()
        return rec

    return _run(_op)


# =============================================================================
# SIGN-OFF
# =============================================================================

def verify_reconciliation(*, reconciliation_id: int, actor_user_id: int, notes: str | None = None) -> Reconciliation:
    """pending/flagged -> verified. Verifying twice is a no-op."""
    def _op():
        rec = _get_reconciliation_locked(reconciliation_id)
        if rec.status == STATUS_VERIFIED:
            return rec
        rec.status = STATUS_VERIFIED
        rec.reviewed_by_user_id = actor_user_id
        rec.reviewed_at = utcnow()
        if notes:
            rec.notes = notes
        append_audit_event(
            channel_id=rec.channel_id,
            event_type="RECONCILIATION_VERIFIED",
            event_category="accounting",
            entity_type="reconciliation",
            entity_id=rec.id,
            actor_user_id=actor_user_id,
            note=notes,
        )
        db.session.commit()
        current_app.logger.info("Reconciliation %s (%s %s) verified", rec.id, rec.scope, rec.scope_ref_id)
        return rec

    return _run(_op)


def flag_reconciliation(*, reconciliation_id: int, actor_user_id: int, notes: str | None = None) -> Reconciliation:
    def _op():
        rec = _get_reconciliation_locked(reconciliation_id)
        if rec.status == STATUS_VERIFIED:
            raise ReconciliationError(f"Reconciliation {reconciliation_id} is already verified")
        rec.status = STATUS_FLAGGED
        rec.reviewed_by_user_id = actor_user_id
        rec.reviewed_at = utcnow()
        if notes:
            rec.notes = notes
        append_audit_event(
            channel_id=rec.channel_id,
            event_type="RECONCILIATION_FLAGGED",
            event_category="accounting",
            entity_type="reconciliation",
            entity_id=rec.id,
            actor_user_id=actor_user_id,
            note=notes,
        )
        db.session.commit()
        return rec

    return _run(_op)


# =============================================================================
# QUERIES
# =============================================================================

def list_reconciliations(
    *,
    channel_id: int,
    scope: str | None = None,
    has_variance: bool | None = None,
) -> list[Reconciliation]:
    query = db.session.query(Reconciliation).filter_by(channel_id=channel_id)
    if scope:
        query = query.filter_by(scope=scope)
    if has_variance is True:
        query = query.filter(Reconciliation.variance_amount_cents != 0)
    elif has_variance is False:
        query = query.filter(Reconciliation.variance_amount_cents == 0)
    return query.order_by(Reconciliation.range_end.desc(), Reconciliation.id.desc()).all()


def overlapping_reconciliations(channel_id: int, start: date, end: date) -> list[Reconciliation]:
    return (
        db.session.query(Reconciliation)
        .filter(
            Reconciliation.channel_id == channel_id,
            Reconciliation.range_start <= end,
            Reconciliation.range_end >= start,
        )
        .order_by(Reconciliation.id.asc())
        .all()
    )


def summarize_scopes(channel_id: int, start: date, end: date, missing: list[dict]) -> list[dict]:
    """Per-scope counts for a period plus the refs still blocking it."""
    summary = {}
    for rec in overlapping_reconciliations(channel_id, start, end):
        row = summary.setdefault(rec.scope, {"scope": rec.scope, "verified": 0, "pending": 0, "flagged": 0, "missing": []})
        row[rec.status] = row.get(rec.status, 0) + 1
    for item in missing:
        row = summary.setdefault(item["scope"], {"scope": item["scope"], "verified": 0, "pending": 0, "flagged": 0, "missing": []})
        row["missing"].append(item["scopeRefId"])
    return [summary[scope] for scope in SCOPES if scope in summary]


def get_reconciliation_status(*, channel_id: int, period_end_date: date) -> dict:
    from .period_service import get_period_status

    status = get_period_status(channel_id=channel_id, period_end_date=period_end_date)
    period = status.current_period
    return {
        "periodStartDate": period.start_date.isoformat(),
        "periodEndDate": period_end_date.isoformat(),
        "scopes": summarize_scopes(channel_id, period.start_date, period.end_date, status.missing_reconciliations),
        "missingReconciliations": status.missing_reconciliations,
        "canClose": status.can_close,
    }
