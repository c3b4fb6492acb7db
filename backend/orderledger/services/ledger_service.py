# Overview: Service-layer operations for the double-entry ledger; chart of accounts, posting, balances.

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Iterable, Optional

from sqlalchemy import func

from ..extensions import db
from ..models import Account, AccountingPeriod, JournalEntry, JournalLine
from orderledger.time_utils import utcnow
"""
Ledger invariants (authoritative)

- Append-only: journal entries and lines are never updated or deleted.
- Every entry balances: sum(debit) == sum(credit), all amounts integer cents.
- Posting is idempotent per (channel, source_type, source_id).
- Entries are written inside the same DB transaction as the business change
  that caused them; nothing here commits.
- No posting may be dated inside a closed accounting period.
"""


class LedgerIntegrityError(Exception):
    """
    Cross-aggregate invariant violation (unbalanced entry, closed period,
    unknown account). Never a business outcome: the enclosing transaction
    must roll back and surface as an internal error.
    """
    pass


# =============================================================================
# CHART OF ACCOUNTS
# =============================================================================

ACCOUNT_CASH_ON_HAND = "CASH_ON_HAND"
ACCOUNT_CLEARING_CARD = "CLEARING_CARD"
ACCOUNT_CLEARING_MPESA = "CLEARING_MPESA"
ACCOUNT_CLEARING_CREDIT = "CLEARING_CREDIT"
ACCOUNT_BANK_MAIN = "BANK_MAIN"
ACCOUNT_RECEIVABLE = "ACCOUNTS_RECEIVABLE"
ACCOUNT_PAYABLE = "ACCOUNTS_PAYABLE"
ACCOUNT_SALES = "SALES"
ACCOUNT_SALES_RETURNS = "SALES_RETURNS"
ACCOUNT_TAX_PAYABLE = "TAX_PAYABLE"
ACCOUNT_SHIPPING_INCOME = "SHIPPING_INCOME"
ACCOUNT_PURCHASES = "PURCHASES"
ACCOUNT_CASH_OVER_SHORT = "CASH_OVER_SHORT"
ACCOUNT_OPENING_FLOAT = "OPENING_FLOAT"

DEFAULT_CHART = [
    (ACCOUNT_CASH_ON_HAND, "Cash on Hand", "asset"),
    (ACCOUNT_CLEARING_CARD, "Card Clearing", "asset"),
    (ACCOUNT_CLEARING_MPESA, "M-Pesa Clearing", "asset"),
    (ACCOUNT_CLEARING_CREDIT, "Credit Clearing", "asset"),
    (ACCOUNT_BANK_MAIN, "Main Bank Account", "asset"),
    (ACCOUNT_RECEIVABLE, "Accounts Receivable", "asset"),
    (ACCOUNT_PAYABLE, "Accounts Payable", "liability"),
    (ACCOUNT_TAX_PAYABLE, "Tax Payable", "liability"),
    (ACCOUNT_OPENING_FLOAT, "Opening Float", "equity"),
    (ACCOUNT_SALES, "Sales", "income"),
    (ACCOUNT_SHIPPING_INCOME, "Shipping Income", "income"),
    (ACCOUNT_SALES_RETURNS, "Sales Returns", "expense"),
    (ACCOUNT_PURCHASES, "Purchases", "expense"),
    (ACCOUNT_CASH_OVER_SHORT, "Cash Over/Short", "expense"),
]


def ensure_chart_of_accounts(channel_id: int) -> list[Account]:
    """
    Ensure a channel has every default account.

    Safe to call repeatedly (idempotent).
    """
    existing = {
        a.code: a for a in db.session.query(Account).filter_by(channel_id=channel_id).all()
    }
    for code, name, account_type in DEFAULT_CHART:
        if code in existing:
            continue
        account = Account(channel_id=channel_id, code=code, name=name, type=account_type)
        db.session.add(account)
        existing[code] = account
    db.session.flush()
    return list(existing.values())


def get_account(channel_id: int, code: str) -> Optional[Account]:
    return db.session.query(Account).filter_by(channel_id=channel_id, code=code).first()


# =============================================================================
# POSTING
# =============================================================================

@dataclass
class Posting:
    """One requested journal line. Exactly one of debit/credit is non-zero."""
    account_code: str
    debit: int = 0
    credit: int = 0
    cashier_session_id: int | None = None
    meta: dict | None = None


def debit(account_code: str, amount: int, **kwargs) -> Posting:
    return Posting(account_code=account_code, debit=amount, **kwargs)


def credit(account_code: str, amount: int, **kwargs) -> Posting:
    return Posting(account_code=account_code, credit=amount, **kwargs)


def signed(account_code: str, amount: int, **kwargs) -> Posting:
    """Positive amount debits the account, negative credits it."""
    if amount >= 0:
        return debit(account_code, amount, **kwargs)
    return credit(account_code, -amount, **kwargs)


def find_closed_period(channel_id: int, on_date: date) -> Optional[AccountingPeriod]:
    return (
        db.session.query(AccountingPeriod)
        .filter(
            AccountingPeriod.channel_id == channel_id,
            AccountingPeriod.status == "closed",
            AccountingPeriod.start_date <= on_date,
            AccountingPeriod.end_date >= on_date,
        )
        .first()
    )


def find_entry(channel_id: int, source_type: str, source_id) -> Optional[JournalEntry]:
    return (
        db.session.query(JournalEntry)
        .filter_by(channel_id=channel_id, source_type=source_type, source_id=str(source_id))
        .first()
    )


def post_journal_entry(
    *,
    channel_id: int,
    source_type: str,
    source_id,
    lines: Iterable[Posting],
    entry_date: date | None = None,
    order_id: int | None = None,
    memo: str | None = None,
    reversal_of_id: int | None = None,
) -> Optional[JournalEntry]:
    """
    Post a balanced journal entry in the current transaction.

    - Re-posting the same (source_type, source_id) returns the existing entry.
    - Zero lines are dropped; if nothing remains, nothing is posted (None).

    Raises:
        LedgerIntegrityError: unbalanced lines, negative amounts, unknown
            account, or entry_date inside a closed period
    """
    existing = find_entry(channel_id, source_type, source_id)
    if existing:
        return existing

    postings = [p for p in lines if p.debit or p.credit]
    if not postings:
        return None

    for p in postings:
        if not isinstance(p.debit, int) or not isinstance(p.credit, int):
            raise LedgerIntegrityError(f"Journal amounts must be integer cents ({p.account_code})")
        if p.debit < 0 or p.credit < 0:
            raise LedgerIntegrityError(f"Journal amounts cannot be negative ({p.account_code})")
        if p.debit and p.credit:
            raise LedgerIntegrityError(f"Journal line cannot both debit and credit {p.account_code}")

    total_debit = sum(p.debit for p in postings)
    total_credit = sum(p.credit for p in postings)
    if total_debit != total_credit:
        raise LedgerIntegrityError(
            f"Unbalanced journal entry {source_type}:{source_id} "
            f"(debit {total_debit} != credit {total_credit})"
        )

    known_codes = {
        code for (code,) in db.session.query(Account.code).filter_by(channel_id=channel_id).all()
    }
    for p in postings:
        if p.account_code not in known_codes:
            raise LedgerIntegrityError(f"Unknown account {p.account_code} for channel {channel_id}")

    entry_date = entry_date or utcnow().date()
    closed = find_closed_period(channel_id, entry_date)
    if closed:
        raise LedgerIntegrityError(
            f"Cannot post into closed accounting period "
            f"{closed.start_date.isoformat()}..{closed.end_date.isoformat()}"
        )

    entry = JournalEntry(
        channel_id=channel_id,
        entry_date=entry_date,
        source_type=source_type,
        source_id=str(source_id),
        order_id=order_id,
        memo=memo[:255] if memo else None,
        reversal_of_id=reversal_of_id,
        posted_at=utcnow(),
    )
    db.session.add(entry)
    db.session.flush()

    for p in postings:
        db.session.add(JournalLine(
            entry_id=entry.id,
            channel_id=channel_id,
            account_code=p.account_code,
            debit_cents=p.debit,
            credit_cents=p.credit,
            cashier_session_id=p.cashier_session_id,
            meta=p.meta,
        ))
    db.session.flush()
    return entry


def reverse_entry(entry: JournalEntry, *, memo: str | None = None) -> JournalEntry:
    """Post the mirror image of an entry (debits and credits swapped)."""
    mirrored = [
        Posting(
            account_code=l.account_code,
            debit=l.credit_cents,
            credit=l.debit_cents,
            cashier_session_id=l.cashier_session_id,
            meta=l.meta,
        )
        for l in entry.lines
    ]
    return post_journal_entry(
        channel_id=entry.channel_id,
        source_type="reversal",
        source_id=entry.id,
        lines=mirrored,
        order_id=entry.order_id,
        memo=memo or f"Reversal of entry {entry.id}",
        reversal_of_id=entry.id,
    )


def is_reversed(entry: JournalEntry) -> bool:
    return db.session.query(JournalEntry.id).filter_by(reversal_of_id=entry.id).first() is not None


# =============================================================================
# QUERIES
# =============================================================================

def account_balance(
    channel_id: int,
    account_code: str,
    *,
    start: date | None = None,
    end: date | None = None,
) -> int:
    """Net balance (debit - credit) of an account, optionally within [start, end]."""
    query = (
        db.session.query(
            func.coalesce(func.sum(JournalLine.debit_cents), 0),
            func.coalesce(func.sum(JournalLine.credit_cents), 0),
        )
        .join(JournalEntry, JournalEntry.id == JournalLine.entry_id)
        .filter(JournalLine.channel_id == channel_id, JournalLine.account_code == account_code)
    )
    if start is not None:
        query = query.filter(JournalEntry.entry_date >= start)
    if end is not None:
        query = query.filter(JournalEntry.entry_date <= end)
    total_debit, total_credit = query.one()
    return int(total_debit) - int(total_credit)


def list_entries(
    *,
    channel_id: int,
    order_id: int | None = None,
    source_type: str | None = None,
    limit: int = 200,
) -> list[JournalEntry]:
    query = db.session.query(JournalEntry).filter_by(channel_id=channel_id)
    if order_id is not None:
        query = query.filter_by(order_id=order_id)
    if source_type:
        query = query.filter_by(source_type=source_type)
    return query.order_by(JournalEntry.id.asc()).limit(limit).all()


def find_unbalanced_entries(channel_id: int | None = None) -> list[int]:
    """Return ids of entries whose lines do not balance (should always be empty)."""
    query = (
        db.session.query(
            JournalLine.entry_id,
            func.sum(JournalLine.debit_cents),
            func.sum(JournalLine.credit_cents),
        )
        .group_by(JournalLine.entry_id)
    )
    if channel_id is not None:
        query = query.filter(JournalLine.channel_id == channel_id)
    return [entry_id for entry_id, d, c in query.all() if int(d or 0) != int(c or 0)]
