# Overview: Service-layer cashier sessions; drawer open/close, cash counts and variance review.

"""
Cashier Session Service

WHY: Money that passes through a cashier has to be accounted for per
drawer period. A session bounds that period; counts compare the drawer
with what the ledger says should be in it.

LIFECYCLE:
    Open --(record_cash_count)*--> Closed (close_cashier_session, terminal)

RULES:
- One Open session per channel.
- Opening/closing balances may only name cashier-controlled accounts;
  closing balances must cover all of them (and opening ones too when the
  channel sets require_opening_count).
- expected cash = opening CASH_ON_HAND + net CASH_ON_HAND lines tagged with
  the session. Count variances are posted (CASH_OVER_SHORT), so each count
  measures from the previous one.
- has_variance  = |variance| > channel threshold
- variance_hidden = has_variance and the actor is a cashier on a channel
  that hides variances (blind count). Managers always see the numbers.
- explain/review only annotate a count; declared cash and the ledger never change.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..models import CashDrawerCount, CashierSession, CashierSessionBalance, JournalEntry, JournalLine
from orderledger.time_utils import to_utc_z, utcnow
from .audit_service import append_audit_event
from .channel_service import cashier_controlled_accounts
from .concurrency import lock_for_update, run_with_retry
from .ledger_service import ACCOUNT_CASH_ON_HAND
from .posting_service import SOURCE_CASH_COUNT, post_cash_count_variance
from .settings_service import ChannelSettings


class CashierSessionError(Exception):
    """Raised for cashier session and cash count errors."""
    pass


SESSION_OPEN = "Open"
SESSION_CLOSED = "Closed"

COUNT_OPENING = "opening"
COUNT_INTERIM = "interim"
COUNT_CLOSING = "closing"
COUNT_TYPES = (COUNT_OPENING, COUNT_INTERIM, COUNT_CLOSING)

ROLE_CASHIER = "cashier"


def _run(func):
    try:
        return run_with_retry(func)
    except Exception:
        db.session.rollback()
        raise


# =============================================================================
# RESULT TYPES
# =============================================================================

@dataclass
class CashCountResult:
    count: CashDrawerCount
    has_variance: bool
    variance_hidden: bool

    def to_dict(self) -> dict:
        return {
            "__typename": "CashCountResult",
            "count": self.count.to_dict(hide_variance=self.variance_hidden),
            "hasVariance": self.has_variance,
            "varianceHidden": self.variance_hidden,
        }


@dataclass
class CashierSessionSummary:
    session_id: int
    cashier_user_id: int
    opened_at: datetime
    closed_at: datetime | None
    status: str
    opening_float: int
    closing_declared: int | None
    cash_total: int
    total_collected: int
    totals_by_account: dict[str, int] = field(default_factory=dict)
    variance: int | None = None

    def to_dict(self) -> dict:
        return {
            "__typename": "CashierSessionSummary",
            "sessionId": self.session_id,
            "cashierUserId": self.cashier_user_id,
            "openedAt": to_utc_z(self.opened_at),
            "closedAt": to_utc_z(self.closed_at) if self.closed_at else None,
            "status": self.status,
            "openingFloat": str(self.opening_float),
            "closingDeclared": None if self.closing_declared is None else str(self.closing_declared),
            "ledgerTotals": {
                "cashTotal": str(self.cash_total),
                "totalsByAccount": [
                    {"accountCode": code, "amountCents": str(amount)}
                    for code, amount in sorted(self.totals_by_account.items())
                ],
                "totalCollected": str(self.total_collected),
            },
            "variance": None if self.variance is None else str(self.variance),
        }


# =============================================================================
# HELPERS
# =============================================================================

def _parse_balances(balances: list[dict] | None, allowed: list[str]) -> dict[str, int]:
    """[{"account_code", "amount_cents"}] -> {code: cents}, validated."""
    parsed: dict[str, int] = {}
    for item in balances or []:
        code = (item.get("account_code") or "").strip()
        if not code:
            raise CashierSessionError("account_code is required for every balance")
        if code in parsed:
            raise CashierSessionError(f"Duplicate balance for account {code}")
        if code not in allowed:
            raise CashierSessionError(f"Account {code} is not cashier-controlled")
        amount = int(item.get("amount_cents"))
        if amount < 0:
            raise CashierSessionError(f"Balance for {code} cannot be negative")
        parsed[code] = amount
    return parsed


def _get_session_locked(session_id: int) -> CashierSession:
    session = lock_for_update(db.session.query(CashierSession).filter_by(id=session_id)).first()
    if not session:
        raise CashierSessionError(f"Cashier session {session_id} not found")
    return session


def get_session(session_id: int) -> CashierSession:
    session = db.session.get(CashierSession, session_id)
    if not session:
        raise CashierSessionError(f"Cashier session {session_id} not found")
    return session


def session_movements(session_id: int, *, include_adjustments: bool = True) -> dict[str, int]:
    """
    Net (debit - credit) of the ledger lines tagged with a session, per account.

    include_adjustments=False leaves out cash count variance postings, giving
    what was actually collected.
    """
    query = (
        db.session.query(
            JournalLine.account_code,
            func.coalesce(func.sum(JournalLine.debit_cents), 0),
            func.coalesce(func.sum(JournalLine.credit_cents), 0),
        )
        .join(JournalEntry, JournalEntry.id == JournalLine.entry_id)
        .filter(JournalLine.cashier_session_id == session_id)
    )
    if not include_adjustments:
        query = query.filter(JournalEntry.source_type != SOURCE_CASH_COUNT)
    rows = query.group_by(JournalLine.account_code).all()
    return {code: int(d) - int(c) for code, d, c in rows}


def expected_cash(session: CashierSession) -> int:
    opening = session.opening_balances().get(ACCOUNT_CASH_ON_HAND, 0)
    return opening + session_movements(session.id).get(ACCOUNT_CASH_ON_HAND, 0)


# =============================================================================
# SESSION LOOKUPS
# =============================================================================

def get_current_session(channel_id: int) -> CashierSession | None:
    return (
        db.session.query(CashierSession)
        .filter_by(channel_id=channel_id, status=SESSION_OPEN)
        .order_by(CashierSession.id.desc())
        .first()
    )


def require_open_session(channel_id: int) -> CashierSession:
    """Session gate for cash-controlled operations."""
    session = get_current_session(channel_id)
    if not session:
        raise CashierSessionError(f"No open cashier session for channel {channel_id}")
    return session


def list_sessions(*, channel_id: int, status: str | None = None) -> list[CashierSession]:
    query = db.session.query(CashierSession).filter_by(channel_id=channel_id)
    if status:
        query = query.filter_by(status=status)
    return query.order_by(CashierSession.opened_at.desc(), CashierSession.id.desc()).all()


# =============================================================================
# OPEN
# =============================================================================

def open_cashier_session(
    *,
    channel_id: int,
    cashier_user_id: int,
    opening_balances: list[dict] | None,
    notes: str | None = None,
    settings: ChannelSettings,
) -> CashierSession:
    """
    Open a drawer session.

    Raises:
        CashierSessionError: another session is open, or the balances are invalid
    """
    def _op():
        existing = lock_for_update(
            db.session.query(CashierSession).filter_by(channel_id=channel_id, status=SESSION_OPEN)
        ).first()
        if existing:
            raise CashierSessionError(
                f"Cashier session {existing.id} is already open for channel {channel_id}"
            )

        allowed = cashier_controlled_accounts(channel_id)
        balances = _parse_balances(opening_balances, allowed)
        if settings.require_opening_count:
            missing = [code for code in allowed if code not in balances]
            if missing:
                raise CashierSessionError(f"Opening balances required for: {', '.join(missing)}")

        session = CashierSession(
            channel_id=channel_id,
            cashier_user_id=cashier_user_id,
            status=SESSION_OPEN,
            opened_at=utcnow(),
            notes=notes,
        )
        db.session.add(session)
        db.session.flush()
        for code, amount in balances.items():
            db.session.add(CashierSessionBalance(
                session=session, account_code=code, kind="opening", amount_cents=amount
            ))

        append_audit_event(
            channel_id=channel_id,
            event_type="CASHIER_SESSION_OPENED",
            event_category="cashier",
            entity_type="cashier_session",
            entity_id=session.id,
            actor_user_id=cashier_user_id,
            cashier_session_id=session.id,
            payload={code: amount for code, amount in balances.items()},
        )
        db.session.commit()
        current_app.logger.info(
            "Cashier session %s opened on channel %s by user %s", session.id, channel_id, cashier_user_id
        )
        return session

    return _run(_op)


# =============================================================================
# CASH COUNTS
# =============================================================================

def _take_count(
    session: CashierSession,
    *,
    count_type: str,
    declared_cash: int,
    variance_reason: str | None,
    actor_user_id: int | None,
    actor_role: str,
    settings: ChannelSettings,
) -> CashCountResult:
    if count_type not in COUNT_TYPES:
        raise CashierSessionError(f"Invalid count type '{count_type}'")
    if declared_cash < 0:
        raise CashierSessionError("Declared cash cannot be negative")

    expected = expected_cash(session)
    variance = declared_cash - expected
    count = CashDrawerCount(
        channel_id=session.channel_id,
        session=session,
        count_type=count_type,
        declared_cash_cents=declared_cash,
        expected_cash_cents=expected,
        variance_cents=variance,
        variance_reason=variance_reason,
        counted_by_user_id=actor_user_id,
        taken_at=utcnow(),
    )
    db.session.add(count)
    db.session.flush()
    post_cash_count_variance(count)

    has_variance = abs(variance) > settings.variance_notification_threshold_cents
    variance_hidden = (
        has_variance and actor_role == ROLE_CASHIER and settings.hide_variance_from_cashier
    )
    if has_variance:
        current_app.logger.warning(
            "Cash variance %s on session %s (%s count, threshold %s)",
            variance, session.id, count_type, settings.variance_notification_threshold_cents,
        )

    append_audit_event(
        channel_id=session.channel_id,
        event_type="CASH_COUNT_RECORDED",
        event_category="cashier",
        entity_type="cash_count",
        entity_id=count.id,
        actor_user_id=actor_user_id,
        cashier_session_id=session.id,
        payload={"count_type": count_type, "declared": declared_cash, "expected": expected, "variance": variance},
    )
    return CashCountResult(count=count, has_variance=has_variance, variance_hidden=variance_hidden)


def record_cash_count(
    *,
    session_id: int,
    count_type: str,
    declared_cash: int,
    variance_reason: str | None = None,
    actor_user_id: int | None = None,
    actor_role: str = ROLE_CASHIER,
    settings: ChannelSettings,
) -> CashCountResult:
    def _op():
        session = _get_session_locked(session_id)
        if session.status != SESSION_OPEN:
            raise CashierSessionError(f"Cashier session {session_id} is not open")
        result = _take_count(
            session,
            count_type=count_type,
            declared_cash=declared_cash,
            variance_reason=variance_reason,
            actor_user_id=actor_user_id,
            actor_role=actor_role,
            settings=settings,
        )
        db.session.commit()
        return result

    return _run(_op)


def _get_count(count_id: int) -> CashDrawerCount:
    count = db.session.get(CashDrawerCount, count_id)
    if not count:
        raise CashierSessionError(f"Cash count {count_id} not found")
    return count


def explain_variance(*, count_id: int, reason: str, actor_user_id: int | None = None) -> CashDrawerCount:
    def _op():
        count = _get_count(count_id)
        if not (reason or "").strip():
            raise CashierSessionError("A variance reason is required")
        count.variance_reason = reason.strip()
        append_audit_event(
            channel_id=count.channel_id,
            event_type="CASH_VARIANCE_EXPLAINED",
            event_category="cashier",
            entity_type="cash_count",
            entity_id=count.id,
            actor_user_id=actor_user_id,
            cashier_session_id=count.session_id,
            note=count.variance_reason,
        )
        db.session.commit()
        return count

    return _run(_op)


def review_cash_count(*, count_id: int, notes: str | None = None, actor_user_id: int) -> CashDrawerCount:
    def _op():
        count = _get_count(count_id)
        count.reviewed_by_user_id = actor_user_id
        count.reviewed_at = utcnow()
        count.review_notes = notes
        append_audit_event(
            channel_id=count.channel_id,
            event_type="CASH_COUNT_REVIEWED",
            event_category="cashier",
            entity_type="cash_count",
            entity_id=count.id,
            actor_user_id=actor_user_id,
            cashier_session_id=count.session_id,
            note=notes,
        )
        db.session.commit()
        return count

    return _run(_op)


def get_pending_variance_reviews(*, channel_id: int, settings: ChannelSettings) -> list[CashDrawerCount]:
    """Counts over the threshold that no manager has reviewed yet."""
    counts = (
        db.session.query(CashDrawerCount)
        .filter(CashDrawerCount.channel_id == channel_id, CashDrawerCount.reviewed_at.is_(None))
        .order_by(CashDrawerCount.taken_at.asc(), CashDrawerCount.id.asc())
        .all()
    )
    threshold = settings.variance_notification_threshold_cents
    return [c for c in counts if abs(c.variance_cents) > threshold]


def get_session_cash_counts(session_id: int) -> list[CashDrawerCount]:
    get_session(session_id)
    return (
        db.session.query(CashDrawerCount)
        .filter_by(session_id=session_id)
        .order_by(CashDrawerCount.taken_at.asc(), CashDrawerCount.id.asc())
        .all()
    )


# =============================================================================
# CLOSE
# =============================================================================

def close_cashier_session(
    *,
    session_id: int,
    closing_balances: list[dict],
    notes: str | None = None,
    actor_user_id: int | None = None,
    actor_role: str = ROLE_CASHIER,
    settings: ChannelSettings,
) -> CashierSessionSummary:
    """
    Close a session: declare closing balances, take the closing count and
    create the session reconciliation.

    Raises:
        CashierSessionError: session not open, or balances do not cover every
            cashier-controlled account
    """
    # Local import: reconciliation_service reads session movements from here.
    from .reconciliation_service import build_cashier_session_reconciliation

    def _op():
        session = _get_session_locked(session_id)
        if session.status != SESSION_OPEN:
            raise CashierSessionError(f"Cashier session {session_id} is not open")

        required = cashier_controlled_accounts(session.channel_id)
        balances = _parse_balances(closing_balances, required)
        missing = [code for code in required if code not in balances]
        if missing:
            raise CashierSessionError(f"Closing balances required for: {', '.join(missing)}")

        for code, amount in balances.items():
            db.session.add(CashierSessionBalance(
                session=session, account_code=code, kind="closing", amount_cents=amount
            ))

        _take_count(
            session,
            count_type=COUNT_CLOSING,
            declared_cash=balances[ACCOUNT_CASH_ON_HAND],
            variance_reason=None,
            actor_user_id=actor_user_id,
            actor_role=actor_role,
            settings=settings,
        )

        session.status = SESSION_CLOSED
        session.closed_at = utcnow()
        session.closing_declared_cents = sum(balances.values())
        if notes:
            session.notes = notes
        db.session.flush()

        build_cashier_session_reconciliation(session, notes=notes, actor_user_id=actor_user_id)

        append_audit_event(
            channel_id=session.channel_id,
            event_type="CASHIER_SESSION_CLOSED",
            event_category="cashier",
            entity_type="cashier_session",
            entity_id=session.id,
            actor_user_id=actor_user_id,
            cashier_session_id=session.id,
            payload={code: amount for code, amount in balances.items()},
        )
        db.session.commit()
        current_app.logger.info(
            "Cashier session %s closed (declared=%s)", session.id, session.closing_declared_cents
        )
        return session.id

    closed_id = _run(_op)
    return get_session_summary(closed_id)


# =============================================================================
# SUMMARY
# =============================================================================

def get_session_summary(session_id: int) -> CashierSessionSummary:
    session = get_session(session_id)
    opening = session.opening_balances()
    totals = session_movements(session.id, include_adjustments=False)
    total_collected = sum(totals.values())

    variance = None
    if session.closing_declared_cents is not None:
        variance = session.closing_declared_cents - (sum(opening.values()) + total_collected)

    return CashierSessionSummary(
        session_id=session.id,
        cashier_user_id=session.cashier_user_id,
        opened_at=session.opened_at,
        closed_at=session.closed_at,
        status=session.status,
        opening_float=opening.get(ACCOUNT_CASH_ON_HAND, 0),
        closing_declared=session.closing_declared_cents,
        cash_total=totals.get(ACCOUNT_CASH_ON_HAND, 0),
        total_collected=total_collected,
        totals_by_account=totals,
        variance=variance,
    )
