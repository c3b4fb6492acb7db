from __future__ import annotations

from ..extensions import db
from orderledger.time_utils import to_utc_z


def _cents_str(value: int | None) -> str | None:
    return None if value is None else str(value)


class CashierSession(db.Model):
    """
    One cashier's drawer period within a channel.

    LIFECYCLE:
    - Open: payments on cashier-controlled accounts are tagged with the session
    - Closed: closing balances declared, closing count taken, reconciliation
      created; never reopened

    At most one Open session per channel.
    """
    __tablename__ = "cashier_sessions"
    __table_args__ = (
        db.Index("ix_cashier_sessions_channel_status", "channel_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    channel_id = db.Column(db.Integer, db.ForeignKey("channels.id"), nullable=False, index=True)
    cashier_user_id = db.Column(db.Integer, nullable=False, index=True)

    status = db.Column(db.String(16), nullable=False, default="Open", index=True)  # Open, Closed

    opened_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)
    closed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    closing_declared_cents = db.Column(db.Integer, nullable=True)
    notes = db.Column(db.Text, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version_id}

    balances = db.relationship("CashierSessionBalance", backref="session", lazy=True)

    def opening_balances(self) -> dict[str, int]:
        return {b.account_code: b.amount_cents for b in self.balances if b.kind == "opening"}

    def closing_balances(self) -> dict[str, int]:
        return {b.account_code: b.amount_cents for b in self.balances if b.kind == "closing"}

    def to_dict(self) -> dict:
        return {
            "__typename": "CashierSession",
            "id": self.id,
            "channel_id": self.channel_id,
            "cashier_user_id": self.cashier_user_id,
            "status": self.status,
            "opened_at": to_utc_z(self.opened_at),
            "closed_at": to_utc_z(self.closed_at) if self.closed_at else None,
            "closing_declared": _cents_str(self.closing_declared_cents),
            "opening_balances": [
                {"account_code": code, "amount_cents": str(amount)}
                for code, amount in sorted(self.opening_balances().items())
            ],
            "closing_balances": [
                {"account_code": code, "amount_cents": str(amount)}
                for code, amount in sorted(self.closing_balances().items())
            ],
            "notes": self.notes,
        }


class CashierSessionBalance(db.Model):
    """Declared per-account balance at session open or close."""
    __tablename__ = "cashier_session_balances"
    __table_args__ = (
        db.UniqueConstraint("session_id", "account_code", "kind", name="uq_session_balances_account_kind"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(db.Integer, db.ForeignKey("cashier_sessions.id"), nullable=False, index=True)
    account_code = db.Column(db.String(64), nullable=False)
    kind = db.Column(db.String(16), nullable=False)  # opening, closing
    amount_cents = db.Column(db.Integer, nullable=False)


class CashDrawerCount(db.Model):
    """
    Point-in-time cash count within a session.

    variance = declared - expected. Review fields are annotative only; they
    never change declared cash or the ledger.

    COUNT TYPES: opening, interim, closing
    """
    __tablename__ = "cash_drawer_counts"
    __table_args__ = (
        db.Index("ix_cash_counts_session_taken", "session_id", "taken_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    channel_id = db.Column(db.Integer, db.ForeignKey("channels.id"), nullable=False, index=True)
    session_id = db.Column(db.Integer, db.ForeignKey("cashier_sessions.id"), nullable=False, index=True)
    count_type = db.Column(db.String(16), nullable=False)

    declared_cash_cents = db.Column(db.Integer, nullable=False)
    expected_cash_cents = db.Column(db.Integer, nullable=False)
    variance_cents = db.Column(db.Integer, nullable=False)
    variance_reason = db.Column(db.Text, nullable=True)

    counted_by_user_id = db.Column(db.Integer, nullable=True)
    reviewed_by_user_id = db.Column(db.Integer, nullable=True)
    reviewed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    review_notes = db.Column(db.Text, nullable=True)

    taken_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    session = db.relationship("CashierSession", backref=db.backref("cash_counts", lazy=True))

    def to_dict(self, hide_variance: bool = False) -> dict:
        """hide_variance withholds expected cash and variance (blind count)."""
        return {
            "id": self.id,
            "channel_id": self.channel_id,
            "session_id": self.session_id,
            "count_type": self.count_type,
            "taken_at": to_utc_z(self.taken_at),
            "declared_cash": str(self.declared_cash_cents),
            "expected_cash": None if hide_variance else str(self.expected_cash_cents),
            "variance": None if hide_variance else str(self.variance_cents),
            "variance_reason": self.variance_reason,
            "counted_by_user_id": self.counted_by_user_id,
            "reviewed_by_user_id": self.reviewed_by_user_id,
            "reviewed_at": to_utc_z(self.reviewed_at) if self.reviewed_at else None,
            "review_notes": self.review_notes,
        }
