from __future__ import annotations

from ..extensions import db
from orderledger.time_utils import to_utc_z


class Customer(db.Model):
    """
    Customer (credit customers carry outstanding order balances).

    version_id doubles as the allocation lock token: every bulk allocation
    touches last_allocation_at, so two concurrent allocations for the same
    customer cannot both commit.
    """
    __tablename__ = "customers"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    channel_id = db.Column(db.Integer, db.ForeignKey("channels.id"), nullable=False, index=True)
    first_name = db.Column(db.String(128), nullable=False)
    last_name = db.Column(db.String(128), nullable=True)
    email = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    last_allocation_at = db.Column(db.DateTime(timezone=True), nullable=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "channel_id": self.channel_id,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "email": self.email,
            "created_at": to_utc_z(self.created_at),
            "last_allocation_at": to_utc_z(self.last_allocation_at),
        }


class Supplier(db.Model):
    """Supplier we buy stock from on credit."""
    __tablename__ = "suppliers"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    channel_id = db.Column(db.Integer, db.ForeignKey("channels.id"), nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    last_allocation_at = db.Column(db.DateTime(timezone=True), nullable=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "channel_id": self.channel_id,
            "name": self.name,
            "created_at": to_utc_z(self.created_at),
        }


class Purchase(db.Model):
    """
    Stock purchase from a supplier.

    PAYMENT STATUS:
    - pending: nothing paid
    - partial: some paid
    - paid: fully paid
    """
    __tablename__ = "purchases"
    __table_args__ = (
        db.Index("ix_purchases_supplier_created", "supplier_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    channel_id = db.Column(db.Integer, db.ForeignKey("channels.id"), nullable=False, index=True)
    supplier_id = db.Column(db.Integer, db.ForeignKey("suppliers.id"), nullable=False, index=True)
    reference = db.Column(db.String(64), nullable=False)
    total_cents = db.Column(db.Integer, nullable=False)
    is_credit_purchase = db.Column(db.Boolean, nullable=False, default=True)
    payment_status = db.Column(db.String(16), nullable=False, default="pending", index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    supplier = db.relationship("Supplier", backref=db.backref("purchases", lazy=True))

    @property
    def paid_cents(self) -> int:
        return sum(p.amount_cents for p in self.payments)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "channel_id": self.channel_id,
            "supplier_id": self.supplier_id,
            "reference": self.reference,
            "total_cents": str(self.total_cents),
            "paid_cents": str(self.paid_cents),
            "is_credit_purchase": self.is_credit_purchase,
            "payment_status": self.payment_status,
            "created_at": to_utc_z(self.created_at),
        }


class PurchasePayment(db.Model):
    """Single source of truth for how much has been paid on each purchase."""
    __tablename__ = "purchase_payments"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    channel_id = db.Column(db.Integer, db.ForeignKey("channels.id"), nullable=False, index=True)
    purchase_id = db.Column(db.Integer, db.ForeignKey("purchases.id"), nullable=False, index=True)
    supplier_id = db.Column(db.Integer, db.ForeignKey("suppliers.id"), nullable=False, index=True)
    amount_cents = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    purchase = db.relationship("Purchase", backref=db.backref("payments", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "purchase_id": self.purchase_id,
            "supplier_id": self.supplier_id,
            "amount_cents": str(self.amount_cents),
            "created_at": to_utc_z(self.created_at),
        }
