from __future__ import annotations

from ..extensions import db
from orderledger.time_utils import to_utc_z


def cents_to_money(cents: int | None) -> float | None:
    """Catalog prices are exposed as Money (major units)."""
    if cents is None:
        return None
    return cents / 100


class ProductVariant(db.Model):
    """
    Sellable variant (read-only reference data for the order core).

    Prices are stored in cents excluding tax. Available stock is
    stock_on_hand - stock_allocated.
    """
    __tablename__ = "product_variants"
    __table_args__ = (
        db.UniqueConstraint("channel_id", "sku", name="uq_variants_channel_sku"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    channel_id = db.Column(db.Integer, db.ForeignKey("channels.id"), nullable=False, index=True)
    sku = db.Column(db.String(64), nullable=False)
    name = db.Column(db.String(255), nullable=False)

    price_cents = db.Column(db.Integer, nullable=False)
    tax_rate_bps = db.Column(db.Integer, nullable=False, default=0)

    track_inventory = db.Column(db.Boolean, nullable=False, default=True)
    stock_on_hand = db.Column(db.Integer, nullable=False, default=0)
    stock_allocated = db.Column(db.Integer, nullable=False, default=0)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def stock_available(self) -> int:
        return self.stock_on_hand - self.stock_allocated

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "channel_id": self.channel_id,
            "sku": self.sku,
            "name": self.name,
            "price": cents_to_money(self.price_cents),
            "tax_rate_bps": self.tax_rate_bps,
            "track_inventory": self.track_inventory,
            "stock_on_hand": self.stock_on_hand,
            "stock_allocated": self.stock_allocated,
        }


class ShippingMethod(db.Model):
    """
    Shipping method with a simple eligibility checker.

    ELIGIBILITY:
    - enabled
    - order sub total (with tax) >= min_order_subtotal_cents, when set
    - shipping address country in eligible_countries (comma separated), when set
    """
    __tablename__ = "shipping_methods"
    __table_args__ = (
        db.UniqueConstraint("channel_id", "code", name="uq_shipping_methods_channel_code"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    channel_id = db.Column(db.Integer, db.ForeignKey("channels.id"), nullable=False, index=True)
    code = db.Column(db.String(64), nullable=False)
    name = db.Column(db.String(128), nullable=False)
    price_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_rate_bps = db.Column(db.Integer, nullable=False, default=0)
    enabled = db.Column(db.Boolean, nullable=False, default=True)
    min_order_subtotal_cents = db.Column(db.Integer, nullable=True)
    eligible_countries = db.Column(db.String(255), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "channel_id": self.channel_id,
            "code": self.code,
            "name": self.name,
            "price": cents_to_money(self.price_cents),
            "tax_rate_bps": self.tax_rate_bps,
            "enabled": self.enabled,
            "min_order_subtotal_cents": self.min_order_subtotal_cents,
            "eligible_countries": self.eligible_countries,
        }


class Promotion(db.Model):
    """
    Coupon-driven order-level promotion.

    Exactly one of percent_off_bps / amount_off_cents is expected to be set.
    usage_limit counts placed orders that used the coupon.
    """
    __tablename__ = "promotions"
    __table_args__ = (
        db.UniqueConstraint("channel_id", "coupon_code", name="uq_promotions_channel_coupon"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    channel_id = db.Column(db.Integer, db.ForeignKey("channels.id"), nullable=False, index=True)
    name = db.Column(db.String(128), nullable=False)
    coupon_code = db.Column(db.String(64), nullable=False)
    enabled = db.Column(db.Boolean, nullable=False, default=True)

    starts_at = db.Column(db.DateTime(timezone=True), nullable=True)
    ends_at = db.Column(db.DateTime(timezone=True), nullable=True)
    usage_limit = db.Column(db.Integer, nullable=True)

    percent_off_bps = db.Column(db.Integer, nullable=True)
    amount_off_cents = db.Column(db.Integer, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "channel_id": self.channel_id,
            "name": self.name,
            "coupon_code": self.coupon_code,
            "enabled": self.enabled,
            "starts_at": to_utc_z(self.starts_at),
            "ends_at": to_utc_z(self.ends_at),
            "usage_limit": self.usage_limit,
            "percent_off_bps": self.percent_off_bps,
            "amount_off_cents": self.amount_off_cents,
        }
