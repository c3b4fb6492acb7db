from __future__ import annotations

from ..extensions import db
from orderledger.time_utils import to_iso_date, to_utc_z


class JournalEntry(db.Model):
    """
    Double-entry journal entry (append-only).

    INVARIANTS:
    - sum(debit) == sum(credit) over its lines (checked before insert)
    - never updated or deleted; corrections are reversal entries
    - (channel_id, source_type, source_id) is unique, which makes posting
      idempotent per business event
    - entry_date never falls inside a closed AccountingPeriod
    """
    __tablename__ = "journal_entries"
    __table_args__ = (
        db.UniqueConstraint("channel_id", "source_type", "source_id", name="uq_journal_entries_source"),
        db.Index("ix_journal_entries_channel_date", "channel_id", "entry_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    channel_id = db.Column(db.Integer, db.ForeignKey("channels.id"), nullable=False, index=True)
    entry_date = db.Column(db.Date, nullable=False)
    source_type = db.Column(db.String(32), nullable=False, index=True)
    source_id = db.Column(db.String(64), nullable=False)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)
    memo = db.Column(db.String(255), nullable=True)
    reversal_of_id = db.Column(db.Integer, db.ForeignKey("journal_entries.id"), nullable=True)

    posted_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    lines = db.relationship("JournalLine", backref="entry", lazy=True, order_by="JournalLine.id")

    @property
    def total_debit_cents(self) -> int:
        return sum(l.debit_cents for l in self.lines)

    @property
    def total_credit_cents(self) -> int:
        return sum(l.credit_cents for l in self.lines)

    def to_dict(self) -> dict:
        return {
            "__typename": "JournalEntry",
            "id": self.id,
            "channel_id": self.channel_id,
            "entry_date": to_iso_date(self.entry_date),
            "source_type": self.source_type,
            "source_id": self.source_id,
            "order_id": self.order_id,
            "memo": self.memo,
            "reversal_of_id": self.reversal_of_id,
            "posted_at": to_utc_z(self.posted_at),
            "lines": [l.to_dict() for l in self.lines],
        }


class JournalLine(db.Model):
    """One side of a journal entry. Exactly one of debit/credit is non-zero."""
    __tablename__ = "journal_lines"
    __table_args__ = (
        db.Index("ix_journal_lines_channel_account", "channel_id", "account_code"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    entry_id = db.Column(db.Integer, db.ForeignKey("journal_entries.id"), nullable=False, index=True)
    channel_id = db.Column(db.Integer, db.ForeignKey("channels.id"), nullable=False)
    account_code = db.Column(db.String(64), nullable=False)
    debit_cents = db.Column(db.Integer, nullable=False, default=0)
    credit_cents = db.Column(db.Integer, nullable=False, default=0)
    cashier_session_id = db.Column(db.Integer, db.ForeignKey("cashier_sessions.id"), nullable=True, index=True)
    meta = db.Column(db.JSON, nullable=True)

    def to_dict(self) -> dict:
        return {
            "account_code": self.account_code,
            "debit": str(self.debit_cents),
            "credit": str(self.credit_cents),
            "cashier_session_id": self.cashier_session_id,
            "meta": self.meta,
        }


class Reconciliation(db.Model):
    """
    Declared vs ledger-expected balances for a scope over a date range.

    SCOPES: cash-session, method, bank, inventory, manual
    STATUS: pending -> verified | flagged (flagged may later be verified)

    variance = actual - expected. Verification is a human sign-off and
    never recomputes anything.
    """
    __tablename__ = "reconciliations"
    __table_args__ = (
        db.Index("ix_reconciliations_channel_scope", "channel_id", "scope", "scope_ref_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    channel_id = db.Column(db.Integer, db.ForeignKey("channels.id"), nullable=False, index=True)
    scope = db.Column(db.String(32), nullable=False)
    scope_ref_id = db.Column(db.String(64), nullable=False)
    range_start = db.Column(db.Date, nullable=False)
    range_end = db.Column(db.Date, nullable=False)
    status = db.Column(db.String(16), nullable=False, default="pending", index=True)

    expected_balance_cents = db.Column(db.Integer, nullable=False, default=0)
    actual_balance_cents = db.Column(db.Integer, nullable=False, default=0)
    variance_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    notes = db.Column(db.Text, nullable=True)

    created_by_user_id = db.Column(db.Integer, nullable=True)
    reviewed_by_user_id = db.Column(db.Integer, nullable=True)
    reviewed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    accounts = db.relationship("ReconciliationAccount", backref="reconciliation", lazy=True)

    def to_dict(self) -> dict:
        return {
            "__typename": "Reconciliation",
            "id": self.id,
            "channel_id": self.channel_id,
            "scope": self.scope,
            "scope_ref_id": self.scope_ref_id,
            "range_start": to_iso_date(self.range_start),
            "range_end": to_iso_date(self.range_end),
            "status": self.status,
            "expected_balance": str(self.expected_balance_cents),
            "actual_balance": str(self.actual_balance_cents),
            "variance_amount": str(self.variance_amount_cents),
            "notes": self.notes,
            "created_by_user_id": self.created_by_user_id,
            "reviewed_by_user_id": self.reviewed_by_user_id,
            "reviewed_at": to_utc_z(self.reviewed_at) if self.reviewed_at else None,
            "accounts": [a.to_dict() for a in self.accounts],
            "created_at": to_utc_z(self.created_at),
        }


class ReconciliationAccount(db.Model):
    __tablename__ = "reconciliation_accounts"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    reconciliation_id = db.Column(db.Integer, db.ForeignKey("reconciliations.id"), nullable=False, index=True)
    account_code = db.Column(db.String(64), nullable=False)
    declared_amount_cents = db.Column(db.Integer, nullable=False)
    expected_amount_cents = db.Column(db.Integer, nullable=False)

    @property
    def variance_cents(self) -> int:
        return self.declared_amount_cents - self.expected_amount_cents

    def to_dict(self) -> dict:
        return {
            "account_code": self.account_code,
            "declared_amount": str(self.declared_amount_cents),
            "expected_amount": str(self.expected_amount_cents),
            "variance": str(self.variance_cents),
        }


class AccountingPeriod(db.Model):
    """
    Channel accounting period [start_date, end_date].

    Once closed it is immutable and rejects postings dated inside it.
    """
    __tablename__ = "accounting_periods"
    __table_args__ = (
        db.UniqueConstraint("channel_id", "end_date", name="uq_accounting_periods_channel_end"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    channel_id = db.Column(db.Integer, db.ForeignKey("channels.id"), nullable=False, index=True)
    start_date = db.Column(db.Date, nullable=False)
    end_date = db.Column(db.Date, nullable=False)
    status = db.Column(db.String(16), nullable=False, default="open", index=True)  # open, closed
    closed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    closed_by_user_id = db.Column(db.Integer, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "channel_id": self.channel_id,
            "start_date": to_iso_date(self.start_date),
            "end_date": to_iso_date(self.end_date),
            "status": self.status,
            "closed_at": to_utc_z(self.closed_at) if self.closed_at else None,
            "closed_by_user_id": self.closed_by_user_id,
        }
