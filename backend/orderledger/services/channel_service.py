# Overview: Service-layer operations for channels and their payment methods.

from __future__ import annotations

from ..extensions import db
from ..models import Channel, PaymentMethod
from .audit_service import append_audit_event
from .ledger_service import ACCOUNT_CASH_ON_HAND, ensure_chart_of_accounts
from .payment_handlers import get_handler


class ChannelError(Exception):
    """Raised for channel and payment-method errors."""
    pass


DEFAULT_PAYMENT_METHODS = [
    ("cash", "Cash", "cash"),
    ("card", "Card", "card"),
    ("mpesa", "M-Pesa", "mpesa"),
    ("credit", "Customer Credit", "credit"),
]


def create_channel(
    *,
    code: str,
    name: str,
    currency_code: str = "USD",
    cash_control_enabled: bool = False,
    require_opening_count: bool = False,
    variance_notification_threshold_cents: int | None = None,
    hide_variance_from_cashier: bool = True,
    order_item_limit: int | None = None,
    with_default_payment_methods: bool = True,
) -> Channel:
    """
    Create a channel with its chart of accounts and default payment methods.

    Flushes but does not commit; callers own the transaction.
    """
    code = (code or "").strip()
    if not code:
        raise ChannelError("Channel code is required")
    if db.session.query(Channel).filter_by(code=code).first():
        raise ChannelError(f"Channel code '{code}' already exists")

    channel = Channel(
        code=code,
        name=name or code,
        currency_code=currency_code,
        cash_control_enabled=cash_control_enabled,
        require_opening_count=require_opening_count,
        variance_notification_threshold_cents=variance_notification_threshold_cents,
        hide_variance_from_cashier=hide_variance_from_cashier,
        order_item_limit=order_item_limit,
    )
    db.session.add(channel)
    db.session.flush()

    ensure_chart_of_accounts(channel.id)
    if with_default_payment_methods:
        for method_code, method_name, handler in DEFAULT_PAYMENT_METHODS:
            create_payment_method(channel_id=channel.id, code=method_code, name=method_name, handler=handler)

    append_audit_event(
        channel_id=channel.id,
        event_type="CHANNEL_CREATED",
        event_category="system",
        entity_type="channel",
        entity_id=channel.id,
        note=f"Channel {code} created",
    )
    return channel


def create_payment_method(*, channel_id: int, code: str, name: str, handler: str, enabled: bool = True) -> PaymentMethod:
    get_handler(handler)  # unknown handler codes fail fast
    if db.session.query(PaymentMethod).filter_by(channel_id=channel_id, code=code).first():
        raise ChannelError(f"Payment method '{code}' already exists")
    method = PaymentMethod(channel_id=channel_id, code=code, name=name, handler=handler, enabled=enabled)
    db.session.add(method)
    db.session.flush()
    return method


def get_payment_method(channel_id: int, code: str) -> PaymentMethod | None:
    return db.session.query(PaymentMethod).filter_by(channel_id=channel_id, code=code).first()


def cashier_controlled_accounts(channel_id: int) -> list[str]:
    """
    Accounts a cashier must declare at session open/close.

    CASH_ON_HAND always; plus the account of every enabled method whose
    handler is cashier-controlled.
    """
    codes = [ACCOUNT_CASH_ON_HAND]
    methods = (
        db.session.query(PaymentMethod)
        .filter_by(channel_id=channel_id, enabled=True)
        .order_by(PaymentMethod.id.asc())
        .all()
    )
    for method in methods:
        handler = get_handler(method.handler)
        if handler.cashier_controlled and handler.account_code and handler.account_code not in codes:
            codes.append(handler.account_code)
    return codes
