from __future__ import annotations

from ..extensions import db
from ..states import REFUND_FAILED, next_payment_states
from orderledger.time_utils import to_utc_z


class Payment(db.Model):
    """
    Payment attached to one order.

    STATES: Created, Authorized, Settled, Declined, Cancelled, Error
    (transitions in orderledger.states.PAYMENT_TRANSITIONS).

    metadata is opaque pass-through; nothing in the core reads it.
    """
    __tablename__ = "payments"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)

    method = db.Column(db.String(64), nullable=False)
    handler = db.Column(db.String(32), nullable=False)
    amount_cents = db.Column(db.Integer, nullable=False)
    state = db.Column(db.String(16), nullable=False, default="Created", index=True)

    transaction_id = db.Column(db.String(128), nullable=True)
    error_message = db.Column(db.Text, nullable=True)
    payment_metadata = db.Column("metadata", db.JSON, nullable=True)
    # Account the money landed in (handler default or an allocation override)
    ledger_account_code = db.Column(db.String(64), nullable=True)

    cashier_session_id = db.Column(db.Integer, db.ForeignKey("cashier_sessions.id"), nullable=True, index=True)
    created_by_user_id = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    settled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version_id}

    refunds = db.relationship("Refund", backref="payment", lazy=True, order_by="Refund.id")

    @property
    def refunded_cents(self) -> int:
        """Sum of every refund that has not failed."""
        return sum(r.total_cents for r in self.refunds if r.state != REFUND_FAILED)

    def to_dict(self) -> dict:
        return {
            "__typename": "Payment",
            "id": self.id,
            "order_id": self.order_id,
            "method": self.method,
            "handler": self.handler,
            "amount": self.amount_cents,
            "state": self.state,
            "next_states": next_payment_states(self.state),
            "transaction_id": self.transaction_id,
            "error_message": self.error_message,
            "metadata": self.payment_metadata,
            "cashier_session_id": self.cashier_session_id,
            "refunds": [r.to_dict() for r in self.refunds],
            "created_at": to_utc_z(self.created_at),
            "settled_at": to_utc_z(self.settled_at),
        }


class Refund(db.Model):
    """
    Refund against one payment.

    total = items + shipping + adjustment (cents).
    STATES: Pending -> Settled | Failed.

    debit_account_code is the account charged when the refund settles:
    SALES_RETURNS for ordinary refunds, ACCOUNTS_RECEIVABLE for refunds created
    by an order modification (whose revenue delta is already posted).
    """
    __tablename__ = "refunds"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    payment_id = db.Column(db.Integer, db.ForeignKey("payments.id"), nullable=False, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)

    items_cents = db.Column(db.Integer, nullable=False, default=0)
    shipping_cents = db.Column(db.Integer, nullable=False, default=0)
    adjustment_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False)

    state = db.Column(db.String(16), nullable=False, default="Pending", index=True)
    reason = db.Column(db.Text, nullable=True)
    method = db.Column(db.String(64), nullable=False)
    transaction_id = db.Column(db.String(128), nullable=True)
    debit_account_code = db.Column(db.String(64), nullable=False, default="SALES_RETURNS")

    cashier_session_id = db.Column(db.Integer, db.ForeignKey("cashier_sessions.id"), nullable=True, index=True)
    created_by_user_id = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    settled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    lines = db.relationship("RefundLine", backref="refund", lazy=True)

    def to_dict(self) -> dict:
        return {
            "__typename": "Refund",
            "id": self.id,
            "payment_id": self.payment_id,
            "order_id": self.order_id,
            "items": self.items_cents,
            "shipping": self.shipping_cents,
            "adjustment": self.adjustment_cents,
            "total": self.total_cents,
            "state": self.state,
            "reason": self.reason,
            "method": self.method,
            "transaction_id": self.transaction_id,
            "lines": [{"order_line_id": l.order_line_id, "quantity": l.quantity} for l in self.lines],
            "created_at": to_utc_z(self.created_at),
            "settled_at": to_utc_z(self.settled_at),
        }


class RefundLine(db.Model):
    __tablename__ = "refund_lines"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    refund_id = db.Column(db.Integer, db.ForeignKey("refunds.id"), nullable=False, index=True)
    order_line_id = db.Column(db.Integer, db.ForeignKey("order_lines.id"), nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False)
