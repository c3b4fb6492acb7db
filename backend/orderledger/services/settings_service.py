# Overview: Service-layer resolution of channel-scoped settings into explicit values.

"""
Channel settings

WHY: Cash-control behaviour (variance threshold, blind counts, opening-count
requirement) and the order item limit are configured per channel. Services
never read them from global state: callers resolve a ChannelSettings value
once and pass it in (settings=...), so tests can vary a threshold per call.

RESOLUTION:
- Channel row value when set
- otherwise the application Config default
"""

from __future__ import annotations

from dataclasses import dataclass, replace

from flask import current_app

from ..extensions import db
from ..models import Channel


class SettingsError(Exception):
    """Raised for settings lookup errors."""
    pass


@dataclass(frozen=True)
class ChannelSettings:
    channel_id: int
    currency_code: str = "USD"
    cash_control_enabled: bool = False
    require_opening_count: bool = False
    variance_notification_threshold_cents: int = 100
    hide_variance_from_cashier: bool = True
    order_item_limit: int = 999
    allocation_order_policy: str = "oldest_first"

    def with_overrides(self, **changes) -> "ChannelSettings":
        return replace(self, **changes)


def get_channel_settings(channel_id: int) -> ChannelSettings:
    channel = db.session.get(Channel, channel_id)
    if not channel:
        raise SettingsError(f"Channel {channel_id} not found")

    config = current_app.config
    threshold = channel.variance_notification_threshold_cents
    if threshold is None:
        threshold = config.get("DEFAULT_VARIANCE_NOTIFICATION_THRESHOLD_CENTS", 100)
    item_limit = channel.order_item_limit
    if item_limit is None:
        item_limit = config.get("DEFAULT_ORDER_ITEM_LIMIT", 999)

    return ChannelSettings(
        channel_id=channel.id,
        currency_code=channel.currency_code or config.get("DEFAULT_CURRENCY_CODE", "USD"),
        cash_control_enabled=bool(channel.cash_control_enabled),
        require_opening_count=bool(channel.require_opening_count),
        variance_notification_threshold_cents=int(threshold),
        hide_variance_from_cashier=bool(channel.hide_variance_from_cashier),
        order_item_limit=int(item_limit),
        allocation_order_policy=config.get("ALLOCATION_ORDER_POLICY", "oldest_first"),
    )
