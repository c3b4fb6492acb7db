# Overview: Service-layer order pricing; integer-cent tax, discount proration and totals.

"""
Order pricing

RULES (all integer cents, no floats anywhere):
- line_price = unit_price * quantity
- order-level coupon discounts are distributed across lines in proportion to
  line_price using the largest-remainder method, so the shares always sum
  exactly to the discount
- tax = round-half-up(prorated_line_price * tax_rate_bps / 10000)
- surcharges count towards sub_total
- Order.total / total_with_tax are derived from sub_total + shipping
"""

from __future__ import annotations

from datetime import datetime

from ..errors import CouponCodeExpiredError, CouponCodeInvalidError, CouponCodeLimitError
from ..extensions import db
from ..models import AppliedCoupon, Order, Promotion, ShippingMethod
from ..states import ORDER_CANCELLED
from orderledger.time_utils import utcnow


BPS_DENOMINATOR = 10_000


# =============================================================================
# INTEGER ARITHMETIC
# =============================================================================

def round_half_up_div(numerator: int, denominator: int) -> int:
    """numerator / denominator rounded half away from zero."""
    if denominator <= 0:
        raise ValueError("denominator must be positive")
    sign = -1 if numerator < 0 else 1
    return sign * ((2 * abs(numerator) + denominator) // (2 * denominator))


def tax_for(amount_cents: int, tax_rate_bps: int) -> int:
    return round_half_up_div(amount_cents * (tax_rate_bps or 0), BPS_DENOMINATOR)


def prorate(total_cents: int, weights: list[int]) -> list[int]:
    """
    Split total_cents across weights with the largest-remainder method.

    Ties on the remainder go to the earlier weight.
    """
    weight_sum = sum(weights)
    if weight_sum <= 0 or total_cents == 0:
        return [0 for _ in weights]

    shares = [total_cents * w // weight_sum for w in weights]
    remainders = [total_cents * w % weight_sum for w in weights]
    leftover = total_cents - sum(shares)
    order = sorted(range(len(weights)), key=lambda i: (-remainders[i], i))
    for i in order[:leftover]:
        shares[i] += 1
    return shares


# =============================================================================
# PROMOTIONS
# =============================================================================

def promotion_discount(promotion: Promotion, base_cents: int) -> int:
    if base_cents <= 0:
        return 0
    if promotion.percent_off_bps:
        discount = round_half_up_div(base_cents * promotion.percent_off_bps, BPS_DENOMINATOR)
    else:
        discount = promotion.amount_off_cents or 0
    return max(0, min(discount, base_cents))


def validate_coupon(order: Order, coupon_code: str, *, now: datetime | None = None) -> Promotion:
    """
    Resolve a coupon for an order.

    Raises:
        CouponCodeInvalidError: unknown, disabled or not yet started
        CouponCodeExpiredError: past ends_at
        CouponCodeLimitError: usage_limit reached by other placed orders
    """
    promotion = (
        db.session.query(Promotion)
        .filter_by(channel_id=order.channel_id, coupon_code=coupon_code)
        .first()
    )
    if not promotion or not promotion.enabled:
        raise CouponCodeInvalidError(coupon_code)

    now = now or utcnow()
    if promotion.starts_at and promotion.starts_at > now:
        raise CouponCodeInvalidError(coupon_code)
    if promotion.ends_at and promotion.ends_at < now:
        raise CouponCodeExpiredError(coupon_code)

    if promotion.usage_limit is not None:
        used = (
            db.session.query(AppliedCoupon)
            .join(Order, Order.id == AppliedCoupon.order_id)
            .filter(
                AppliedCoupon.promotion_id == promotion.id,
                Order.id != order.id,
                Order.order_placed_at.isnot(None),
                Order.state != ORDER_CANCELLED,
            )
            .count()
        )
        if used >= promotion.usage_limit:
            raise CouponCodeLimitError(coupon_code, promotion.usage_limit)

    return promotion


def apply_coupon(order: Order, coupon_code: str) -> None:
    """Attach a validated coupon (no-op when already applied)."""
    if coupon_code in order.coupon_codes:
        return
    promotion = validate_coupon(order, coupon_code)
    order.applied_coupons.append(AppliedCoupon(promotion=promotion, coupon_code=coupon_code))


def remove_coupon(order: Order, coupon_code: str) -> bool:
    for applied in list(order.applied_coupons):
        if applied.coupon_code == coupon_code:
            order.applied_coupons.remove(applied)
            return True
    return False


# =============================================================================
# SHIPPING
# =============================================================================

def is_shipping_method_eligible(order: Order, method: ShippingMethod) -> bool:
    """Checks enabled flag, minimum sub total (with tax) and destination country."""
    if not method.enabled:
        return False
    if method.min_order_subtotal_cents is not None and order.sub_total_with_tax_cents < method.min_order_subtotal_cents:
        return False
    if method.eligible_countries:
        allowed = {c.strip().upper() for c in method.eligible_countries.split(",") if c.strip()}
        address = order.shipping_address or {}
        country = address.get("countryCode") or address.get("country_code")
        if not country or country.upper() not in allowed:
            return False
    return True


# =============================================================================
# TOTALS
# =============================================================================

def recalculate_order(order: Order) -> None:
    """Recompute every line, surcharge and shipping price and the order totals in place."""
    lines = list(order.lines)
    weights = [line.line_price_cents for line in lines]
    base = sum(weights)

    remaining = base
    for applied in order.applied_coupons:
        promotion = applied.promotion or db.session.get(Promotion, applied.promotion_id)
        if promotion is None:
            continue
        remaining -= promotion_discount(promotion, remaining)
    shares = prorate(base - remaining, weights)

    sub_total = 0
    sub_total_with_tax = 0
    for line, share in zip(lines, shares):
        line.discounted_unit_price_cents = line.unit_price_cents
        line.prorated_line_price_cents = line.line_price_cents - share
        line.prorated_unit_price_cents = (
            round_half_up_div(line.prorated_line_price_cents, line.quantity) if line.quantity else 0
        )
        line.line_tax_cents = tax_for(line.prorated_line_price_cents, line.tax_rate_bps)
        sub_total += line.prorated_line_price_cents
        sub_total_with_tax += line.prorated_line_price_cents + line.line_tax_cents

    for surcharge in order.surcharges:
        surcharge.price_with_tax_cents = surcharge.price_cents + tax_for(surcharge.price_cents, surcharge.tax_rate_bps)
        sub_total += surcharge.price_cents
        sub_total_with_tax += surcharge.price_with_tax_cents

    shipping = 0
    shipping_with_tax = 0
    for shipping_line in order.shipping_lines:
        shipping_line.price_with_tax_cents = shipping_line.price_cents + tax_for(
            shipping_line.price_cents, shipping_line.tax_rate_bps
        )
        shipping += shipping_line.price_cents
        shipping_with_tax += shipping_line.price_with_tax_cents

    order.sub_total_cents = sub_total
    order.sub_total_with_tax_cents = sub_total_with_tax
    order.shipping_cents = shipping
    order.shipping_with_tax_cents = shipping_with_tax
    order.updated_at = utcnow()


def totals_snapshot(order: Order) -> dict:
    return {
        "sub_total": order.sub_total_cents,
        "sub_total_with_tax": order.sub_total_with_tax_cents,
        "shipping": order.shipping_cents,
        "shipping_with_tax": order.shipping_with_tax_cents,
        "total": order.total_cents,
        "total_with_tax": order.total_with_tax_cents,
        "tax": order.tax_cents,
    }
