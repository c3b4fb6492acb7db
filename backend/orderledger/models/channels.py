from __future__ import annotations

from ..extensions import db
from orderledger.time_utils import to_utc_z


class Channel(db.Model):
    """
    Sales channel (tenant root for orders, ledger and cashier sessions).

    WHY: Every order, journal entry and cashier session belongs to exactly one
    channel. Channel-scoped cash-control settings live here and are resolved
    into an explicit ChannelSettings value by settings_service.

    NULL settings fall back to the application Config defaults.
    """
    __tablename__ = "channels"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(64), nullable=False, unique=True)
    name = db.Column(db.String(128), nullable=False)
    currency_code = db.Column(db.String(3), nullable=False, default="USD")

    # Cash control
    cash_control_enabled = db.Column(db.Boolean, nullable=False, default=False)
    require_opening_count = db.Column(db.Boolean, nullable=False, default=False)
    variance_notification_threshold_cents = db.Column(db.Integer, nullable=True)
    hide_variance_from_cashier = db.Column(db.Boolean, nullable=False, default=True)

    # Maximum total item quantity per order
    order_item_limit = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "currency_code": self.currency_code,
            "cash_control_enabled": self.cash_control_enabled,
            "require_opening_count": self.require_opening_count,
            "variance_notification_threshold_cents": self.variance_notification_threshold_cents,
            "hide_variance_from_cashier": self.hide_variance_from_cashier,
            "order_item_limit": self.order_item_limit,
            "created_at": to_utc_z(self.created_at),
        }


class Account(db.Model):
    """
    Chart-of-accounts entry. Journal lines reference accounts by code.

    TYPES: asset, liability, equity, income, expense
    """
    __tablename__ = "accounts"
    __table_args__ = (
        db.UniqueConstraint("channel_id", "code", name="uq_accounts_channel_code"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    channel_id = db.Column(db.Integer, db.ForeignKey("channels.id"), nullable=False, index=True)
    code = db.Column(db.String(64), nullable=False)
    name = db.Column(db.String(128), nullable=False)
    type = db.Column(db.String(16), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    channel = db.relationship("Channel", backref=db.backref("accounts", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "channel_id": self.channel_id,
            "code": self.code,
            "name": self.name,
            "type": self.type,
            "is_active": self.is_active,
        }


class PaymentMethod(db.Model):
    """
    Channel payment method.

    The handler code (cash, card, mpesa, credit) selects the payment handler,
    the ledger account money lands in, and the reconciliation the method needs.
    """
    __tablename__ = "payment_methods"
    __table_args__ = (
        db.UniqueConstraint("channel_id", "code", name="uq_payment_methods_channel_code"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    channel_id = db.Column(db.Integer, db.ForeignKey("channels.id"), nullable=False, index=True)
    code = db.Column(db.String(64), nullable=False)
    name = db.Column(db.String(128), nullable=False)
    handler = db.Column(db.String(32), nullable=False)
    enabled = db.Column(db.Boolean, nullable=False, default=True)

    channel = db.relationship("Channel", backref=db.backref("payment_methods", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "channel_id": self.channel_id,
            "code": self.code,
            "name": self.name,
            "handler": self.handler,
            "enabled": self.enabled,
        }
