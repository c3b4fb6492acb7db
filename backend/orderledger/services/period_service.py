# Overview: Service-layer accounting periods; reconciliation gate and period close.

"""
Accounting Period Service

WHY: Closing a period freezes its ledger. That is only safe once every
money flow in it has been reconciled and signed off.

PERIOD BOUNDARIES:
- A period runs from the day after the last closed period (or, for the
  first period, the earliest journal entry) up to period_end_date.

REQUIRED RECONCILIATIONS (missingReconciliations):
- cash-session: every cashier session overlapping the period. Sessions
  still open are always missing.
- method: every enabled payment method whose handler requires method
  reconciliation and whose account moved inside the period; covered by a
  reconciliation with scope_ref_id = method code whose range contains
  period_end_date.
- any other reconciliation overlapping the period that is not verified.

A required item counts as done only when its reconciliation is verified.
Closed periods reject postings dated inside them (ledger_service).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, timedelta

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..models import AccountingPeriod, CashierSession, JournalEntry, JournalLine, PaymentMethod, Reconciliation
from orderledger.time_utils import utcnow
from .audit_service import append_audit_event
from .concurrency import lock_for_update, run_with_retry
from .payment_handlers import get_handler
from .reconciliation_service import (
    SCOPE_CASH_SESSION,
    SCOPE_METHOD,
    STATUS_VERIFIED,
    find_reconciliation,
    overlapping_reconciliations,
    summarize_scopes,
)


class PeriodError(Exception):
    """Raised for accounting period input errors."""
    pass


PERIOD_OPEN = "open"
PERIOD_CLOSED = "closed"


@dataclass
class PeriodStatus:
    current_period: AccountingPeriod
    is_locked: bool
    lock_end_date: date | None
    can_close: bool
    missing_reconciliations: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "__typename": "PeriodStatus",
            "currentPeriod": self.current_period.to_dict(),
            "isLocked": self.is_locked,
            "lockEndDate": self.lock_end_date.isoformat() if self.lock_end_date else None,
            "canClose": self.can_close,
            "missingReconciliations": self.missing_reconciliations,
        }


@dataclass
class PeriodEndCloseResult:
    success: bool
    period: AccountingPeriod
    period_end_date: date
    scopes: list[dict] = field(default_factory=list)
    missing_reconciliations: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "__typename": "PeriodEndCloseResult",
            "success": self.success,
            "period": self.period.to_dict(),
            "reconciliationSummary": {
                "periodEndDate": self.period_end_date.isoformat(),
                "scopes": self.scopes,
                "missingReconciliations": self.missing_reconciliations,
            },
        }


# =============================================================================
# BOUNDARIES
# =============================================================================

def last_closed_period(channel_id: int) -> AccountingPeriod | None:
    return (
        db.session.query(AccountingPeriod)
        .filter_by(channel_id=channel_id, status=PERIOD_CLOSED)
        .order_by(AccountingPeriod.end_date.desc())
        .first()
    )


def _open_period_row(channel_id: int, period_end_date: date) -> AccountingPeriod | None:
    return (
        db.session.query(AccountingPeriod)
        .filter_by(channel_id=channel_id, end_date=period_end_date)
        .first()
    )


def resolve_period_start(channel_id: int, period_end_date: date) -> date:
    last = last_closed_period(channel_id)
    if last:
        return last.end_date + timedelta(days=1)
    row = _open_period_row(channel_id, period_end_date)
    if row:
        return row.start_date
    earliest = (
        db.session.query(func.min(JournalEntry.entry_date))
        .filter(JournalEntry.channel_id == channel_id)
        .scalar()
    )
    if earliest and earliest < period_end_date:
        return earliest
    return period_end_date


# =============================================================================
# REQUIRED RECONCILIATIONS
# =============================================================================

def _missing(scope: str, ref, reason: str) -> dict:
    return {"scope": scope, "scopeRefId": str(ref), "reason": reason}


def _account_moved(channel_id: int, account_code: str, start: date, end: date) -> bool:
    return (
        db.session.query(JournalLine.id)
        .join(JournalEntry, JournalEntry.id == JournalLine.entry_id)
        .filter(
            JournalLine.channel_id == channel_id,
            JournalLine.account_code == account_code,
            JournalEntry.entry_date >= start,
            JournalEntry.entry_date <= end,
        )
        .first()
        is not None
    )


def find_missing_reconciliations(channel_id: int, start: date, end: date) -> list[dict]:
    missing: list[dict] = []
    seen: set[tuple[str, str]] = set()

    def add(item):
        key = (item["scope"], item["scopeRefId"])
        if key not in seen:
            seen.add(key)
            missing.append(item)

    sessions = (
        db.session.query(CashierSession)
        .filter(CashierSession.channel_id == channel_id)
        .order_by(CashierSession.id.asc())
        .all()
    )
    for session in sessions:
        opened = session.opened_at.date()
        closed = session.closed_at.date() if session.closed_at else None
        if opened > end or (closed is not None and closed < start):
            continue
        if session.status != "Closed":
            add(_missing(SCOPE_CASH_SESSION, session.id, "session still open"))
            continue
        rec = find_reconciliation(channel_id, SCOPE_CASH_SESSION, session.id)
        if not rec:
            add(_missing(SCOPE_CASH_SESSION, session.id, "not reconciled"))
        elif rec.status != STATUS_VERIFIED:
            add(_missing(SCOPE_CASH_SESSION, session.id, f"reconciliation {rec.status}"))

    methods = (
        db.session.query(PaymentMethod)
        .filter_by(channel_id=channel_id, enabled=True)
        .order_by(PaymentMethod.id.asc())
        .all()
    )
    for method in methods:
        handler = get_handler(method.handler)
        if not handler.requires_method_reconciliation or not handler.account_code:
            continue
        if not _account_moved(channel_id, handler.account_code, start, end):
            continue
        covering = (
            db.session.query(Reconciliation)
            .filter(
                Reconciliation.channel_id == channel_id,
                Reconciliation.scope == SCOPE_METHOD,
                Reconciliation.scope_ref_id == method.code,
                Reconciliation.range_start <= end,
                Reconciliation.range_end >= end,
            )
            .order_by(Reconciliation.id.desc())
            .all()
        )
        if not covering:
            add(_missing(SCOPE_METHOD, method.code, "not reconciled"))
        elif not any(r.status == STATUS_VERIFIED for r in covering):
            add(_missing(SCOPE_METHOD, method.code, f"reconciliation {covering[0].status}"))

    for rec in overlapping_reconciliations(channel_id, start, end):
        if rec.status != STATUS_VERIFIED:
            add(_missing(rec.scope, rec.scope_ref_id, f"reconciliation {rec.status}"))

    return missing


# =============================================================================
# STATUS / CLOSE
# =============================================================================

def get_period_status(*, channel_id: int, period_end_date: date) -> PeriodStatus:
    last = last_closed_period(channel_id)
    lock_end = last.end_date if last else None
    is_locked = lock_end is not None and period_end_date <= lock_end

    period = _open_period_row(channel_id, period_end_date)
    if period is None:
        # Transient view of the period; persisted on the first close attempt.
        period = AccountingPeriod(
            channel_id=channel_id,
            start_date=resolve_period_start(channel_id, period_end_date),
            end_date=period_end_date,
            status=PERIOD_OPEN,
        )

    missing = [] if is_locked else find_missing_reconciliations(channel_id, period.start_date, period_end_date)
    return PeriodStatus(
        current_period=period,
        is_locked=is_locked,
        lock_end_date=lock_end,
        can_close=not is_locked and not missing,
        missing_reconciliations=missing,
    )


def close_accounting_period(
    *,
    channel_id: int,
    period_end_date: date,
    closed_by_user_id: int | None = None,
) -> PeriodEndCloseResult:
    """
    Close the period ending on period_end_date.

    success is False (and nothing closes) while any required reconciliation
    is missing or unverified, or when the date is already locked.
    """
    def _op():
        period = lock_for_update(
            db.session.query(AccountingPeriod).filter_by(channel_id=channel_id, end_date=period_end_date)
        ).first()
        last = last_closed_period(channel_id)
        if last and period_end_date <= last.end_date:
            locked = period or last
            return PeriodEndCloseResult(
                success=False,
                period=locked,
                period_end_date=period_end_date,
                missing_reconciliations=[],
            )

        if period is None:
            period = AccountingPeriod(
                channel_id=channel_id,
                start_date=resolve_period_start(channel_id, period_end_date),
                end_date=period_end_date,
                status=PERIOD_OPEN,
            )
            db.session.add(period)
            db.session.flush()

        missing = find_missing_reconciliations(channel_id, period.start_date, period_end_date)
        scopes = summarize_scopes(channel_id, period.start_date, period_end_date, missing)

        if missing:
            db.session.commit()
            current_app.logger.info(
                "Period close for channel %s ending %s blocked by %d reconciliation(s)",
                channel_id, period_end_date.isoformat(), len(missing),
            )
            return PeriodEndCloseResult(
                success=False,
                period=period,
                period_end_date=period_end_date,
                scopes=scopes,
                missing_reconciliations=missing,
            )

        period.status = PERIOD_CLOSED
        period.closed_at = utcnow()
        period.closed_by_user_id = closed_by_user_id
        append_audit_event(
            channel_id=channel_id,
            event_type="ACCOUNTING_PERIOD_CLOSED",
            event_category="accounting",
            entity_type="accounting_period",
            entity_id=period.id,
            actor_user_id=closed_by_user_id,
            payload={"start": period.start_date.isoformat(), "end": period_end_date.isoformat()},
        )
        db.session.commit()
        current_app.logger.info(
            "Accounting period %s..%s closed for channel %s",
            period.start_date.isoformat(), period_end_date.isoformat(), channel_id,
        )
        return PeriodEndCloseResult(
            success=True,
            period=period,
            period_end_date=period_end_date,
            scopes=scopes,
        )

    try:
        return run_with_retry(_op)
    except Exception:
        db.session.rollback()
        raise
