from __future__ import annotations

from ..extensions import db
from ..states import (
    FULFILLMENT_CANCELLED,
    next_fulfillment_states,
    next_order_states,
)
from orderledger.time_utils import to_utc_z


class Order(db.Model):
    """
    Order aggregate.

    LIFECYCLE:
    - Created in AddingItems (active=True); contents mutable only there.
    - Placed when it first reaches PaymentAuthorized/PaymentSettled
      (order_placed_at set, stock allocated, sale recognized in the ledger).
    - After placement, contents change only through modify_order.

    TOTALS (integer cents):
    - sub_total / sub_total_with_tax include prorated lines and surcharges.
    - total and total_with_tax are derived, so
      total == sub_total + shipping and
      total_with_tax == sub_total_with_tax + shipping_with_tax always hold.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.Index("ix_orders_customer_placed", "customer_id", "order_placed_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    channel_id = db.Column(db.Integer, db.ForeignKey("channels.id"), nullable=False, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True, index=True)

    code = db.Column(db.String(32), nullable=False, unique=True)
    state = db.Column(db.String(32), nullable=False, default="AddingItems", index=True)
    active = db.Column(db.Boolean, nullable=False, default=True)
    currency_code = db.Column(db.String(3), nullable=False, default="USD")

    shipping_address = db.Column(db.JSON, nullable=True)
    billing_address = db.Column(db.JSON, nullable=True)

    sub_total_cents = db.Column(db.Integer, nullable=False, default=0)
    sub_total_with_tax_cents = db.Column(db.Integer, nullable=False, default=0)
    shipping_cents = db.Column(db.Integer, nullable=False, default=0)
    shipping_with_tax_cents = db.Column(db.Integer, nullable=False, default=0)

    order_placed_at = db.Column(db.DateTime(timezone=True), nullable=True, index=True)
    cancel_reason = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version_id}

    lines = db.relationship(
        "OrderLine", backref="order", lazy=True, order_by="OrderLine.id", cascade="all, delete-orphan"
    )
    shipping_lines = db.relationship(
        "ShippingLine", backref="order", lazy=True, order_by="ShippingLine.id", cascade="all, delete-orphan"
    )
    surcharges = db.relationship(
        "Surcharge", backref="order", lazy=True, order_by="Surcharge.id", cascade="all, delete-orphan"
    )
    applied_coupons = db.relationship(
        "AppliedCoupon", backref="order", lazy=True, order_by="AppliedCoupon.id", cascade="all, delete-orphan"
    )
    modifications = db.relationship(
        "OrderModification", backref="order", lazy=True, order_by="OrderModification.id"
    )
    fulfillments = db.relationship("Fulfillment", backref="order", lazy=True, order_by="Fulfillment.id")
    payments = db.relationship("Payment", backref="order", lazy=True, order_by="Payment.id")

    @property
    def total_cents(self) -> int:
        return self.sub_total_cents + self.shipping_cents

    @property
    def total_with_tax_cents(self) -> int:
        return self.sub_total_with_tax_cents + self.shipping_with_tax_cents

    @property
    def tax_cents(self) -> int:
        return self.total_with_tax_cents - self.total_cents

    @property
    def coupon_codes(self) -> list[str]:
        return [c.coupon_code for c in self.applied_coupons]

    @property
    def total_quantity(self) -> int:
        return sum(line.quantity for line in self.lines)

    def to_dict(self) -> dict:
        return {
            "__typename": "Order",
            "id": self.id,
            "code": self.code,
            "channel_id": self.channel_id,
            "customer_id": self.customer_id,
            "state": self.state,
            "next_states": next_order_states(self.state),
            "active": self.active,
            "currency_code": self.currency_code,
            "order_placed_at": to_utc_z(self.order_placed_at),
            "shipping_address": self.shipping_address,
            "billing_address": self.billing_address,
            "sub_total": self.sub_total_cents,
            "sub_total_with_tax": self.sub_total_with_tax_cents,
            "shipping": self.shipping_cents,
            "shipping_with_tax": self.shipping_with_tax_cents,
            "total": self.total_cents,
            "total_with_tax": self.total_with_tax_cents,
            "coupon_codes": self.coupon_codes,
            "lines": [line.to_dict() for line in self.lines],
            "shipping_lines": [s.to_dict() for s in self.shipping_lines],
            "surcharges": [s.to_dict() for s in self.surcharges],
            "payments": [p.to_dict() for p in self.payments],
            "modifications": [m.to_dict() for m in self.modifications],
            "fulfillments": [f.to_dict() for f in self.fulfillments],
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class OrderLine(db.Model):
    """
    One product variant / quantity entry within an order.

    PRICING (cents, computed by pricing_service.recalculate_order):
    - line_price = unit_price * quantity
    - discounted_unit_price: unit price after line-level promotions (none today)
    - prorated_line_price: line price after the order-level discount share
      (authoritative for tax and refund math)
    - line_tax = round-half-up(prorated_line_price * tax_rate_bps / 10000)
    """
    __tablename__ = "order_lines"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    product_variant_id = db.Column(db.Integer, db.ForeignKey("product_variants.id"), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False)
    cancelled_quantity = db.Column(db.Integer, nullable=False, default=0)

    unit_price_cents = db.Column(db.Integer, nullable=False)
    tax_rate_bps = db.Column(db.Integer, nullable=False, default=0)
    discounted_unit_price_cents = db.Column(db.Integer, nullable=False, default=0)
    prorated_unit_price_cents = db.Column(db.Integer, nullable=False, default=0)
    prorated_line_price_cents = db.Column(db.Integer, nullable=False, default=0)
    line_tax_cents = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    product_variant = db.relationship("ProductVariant")

    @property
    def line_price_cents(self) -> int:
        return self.unit_price_cents * self.quantity

    @property
    def prorated_line_price_with_tax_cents(self) -> int:
        return self.prorated_line_price_cents + self.line_tax_cents

    @property
    def fulfilled_quantity(self) -> int:
        return sum(
            fl.quantity
            for fl in self.fulfillment_lines
            if fl.fulfillment.state != FULFILLMENT_CANCELLED
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "product_variant_id": self.product_variant_id,
            "sku": self.product_variant.sku if self.product_variant else None,
            "quantity": self.quantity,
            "cancelled_quantity": self.cancelled_quantity,
            "fulfilled_quantity": self.fulfilled_quantity,
            "unit_price": self.unit_price_cents,
            "tax_rate_bps": self.tax_rate_bps,
            "discounted_unit_price": self.discounted_unit_price_cents,
            "prorated_unit_price": self.prorated_unit_price_cents,
            "line_price": self.line_price_cents,
            "prorated_line_price": self.prorated_line_price_cents,
            "prorated_line_price_with_tax": self.prorated_line_price_with_tax_cents,
            "line_tax": self.line_tax_cents,
        }


class ShippingLine(db.Model):
    __tablename__ = "shipping_lines"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    shipping_method_id = db.Column(db.Integer, db.ForeignKey("shipping_methods.id"), nullable=False)
    price_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_rate_bps = db.Column(db.Integer, nullable=False, default=0)
    price_with_tax_cents = db.Column(db.Integer, nullable=False, default=0)

    shipping_method = db.relationship("ShippingMethod")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "shipping_method_id": self.shipping_method_id,
            "shipping_method_code": self.shipping_method.code if self.shipping_method else None,
            "price": self.price_cents,
            "price_with_tax": self.price_with_tax_cents,
            "tax_rate_bps": self.tax_rate_bps,
        }


class Surcharge(db.Model):
    """Order-level surcharge (may be negative). Counted in sub_total."""
    __tablename__ = "surcharges"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    order_modification_id = db.Column(db.Integer, db.ForeignKey("order_modifications.id"), nullable=True)
    description = db.Column(db.String(255), nullable=False)
    sku = db.Column(db.String(64), nullable=True)
    price_cents = db.Column(db.Integer, nullable=False)
    tax_rate_bps = db.Column(db.Integer, nullable=False, default=0)
    price_with_tax_cents = db.Column(db.Integer, nullable=False, default=0)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "description": self.description,
            "sku": self.sku,
            "price": self.price_cents,
            "price_with_tax": self.price_with_tax_cents,
            "tax_rate_bps": self.tax_rate_bps,
            "order_modification_id": self.order_modification_id,
        }


class AppliedCoupon(db.Model):
    """Coupon usage on an order (drives Promotion.usage_limit checks)."""
    __tablename__ = "applied_coupons"
    __table_args__ = (
        db.UniqueConstraint("order_id", "coupon_code", name="uq_applied_coupons_order_code"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    promotion_id = db.Column(db.Integer, db.ForeignKey("promotions.id"), nullable=False, index=True)
    coupon_code = db.Column(db.String(64), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    promotion = db.relationship("Promotion")


class OrderModification(db.Model):
    """
    Immutable record of one successful modify_order call.

    price_change = new total_with_tax - old total_with_tax (signed cents).
    Positive changes link a settled Payment, negative ones a Refund.
    is_settled flips to True once the linked payment/refund is settled.
    """
    __tablename__ = "order_modifications"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    price_change_cents = db.Column(db.Integer, nullable=False, default=0)
    note = db.Column(db.Text, nullable=True)
    is_settled = db.Column(db.Boolean, nullable=False, default=False)

    payment_id = db.Column(db.Integer, db.ForeignKey("payments.id"), nullable=True)
    refund_id = db.Column(db.Integer, db.ForeignKey("refunds.id"), nullable=True)

    shipping_address_change = db.Column(db.JSON, nullable=True)
    billing_address_change = db.Column(db.JSON, nullable=True)

    created_by_user_id = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    lines = db.relationship("OrderModificationLine", backref="modification", lazy=True)
    surcharges = db.relationship("Surcharge", lazy=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "price_change": self.price_change_cents,
            "note": self.note,
            "is_settled": self.is_settled,
            "payment_id": self.payment_id,
            "refund_id": self.refund_id,
            "shipping_address_change": self.shipping_address_change,
            "billing_address_change": self.billing_address_change,
            "lines": [l.to_dict() for l in self.lines],
            "surcharge_ids": [s.id for s in self.surcharges],
            "created_at": to_utc_z(self.created_at),
        }


class OrderModificationLine(db.Model):
    """Quantity delta applied to one order line by a modification."""
    __tablename__ = "order_modification_lines"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    modification_id = db.Column(db.Integer, db.ForeignKey("order_modifications.id"), nullable=False, index=True)
    order_line_id = db.Column(db.Integer, db.ForeignKey("order_lines.id"), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)

    def to_dict(self) -> dict:
        return {"order_line_id": self.order_line_id, "quantity": self.quantity}


class Fulfillment(db.Model):
    """
    Shipment of order lines.

    STATES: Pending -> Shipped -> Delivered, or Cancelled (stock restored).
    """
    __tablename__ = "fulfillments"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    method = db.Column(db.String(64), nullable=False)
    tracking_code = db.Column(db.String(128), nullable=True)
    state = db.Column(db.String(16), nullable=False, default="Pending")

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    lines = db.relationship("FulfillmentLine", backref="fulfillment", lazy=True)

    def to_dict(self) -> dict:
        return {
            "__typename": "Fulfillment",
            "id": self.id,
            "order_id": self.order_id,
            "method": self.method,
            "tracking_code": self.tracking_code,
            "state": self.state,
            "next_states": next_fulfillment_states(self.state),
            "lines": [{"order_line_id": l.order_line_id, "quantity": l.quantity} for l in self.lines],
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class FulfillmentLine(db.Model):
    __tablename__ = "fulfillment_lines"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    fulfillment_id = db.Column(db.Integer, db.ForeignKey("fulfillments.id"), nullable=False, index=True)
    order_line_id = db.Column(db.Integer, db.ForeignKey("order_lines.id"), nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False)

    order_line = db.relationship("OrderLine", backref=db.backref("fulfillment_lines", lazy=True))
