"""Coupon and CouponUsage aggregates (CQRS).

A Coupon is a discount definition read by the coupon validator. Checkout
never edits a coupon's rules; it only counts redemptions once a session
completes. Every redemption is also recorded as a CouponUsage so per-shopper
limits can be enforced for both customers and guests.
"""

from enum import Enum

from protean import invariant
from protean.exceptions import ValidationError
from protean.fields import Boolean, DateTime, Float, Identifier, Integer, List, String

from checkout.domain import checkout
from checkout.utils.clock import as_utc, utcnow


class CouponType(Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"
    SHIPPING = "shipping"


@checkout.aggregate
class Coupon:
    code = String(required=True, max_length=20, unique=True)
    coupon_type = String(required=True, choices=CouponType)
    value = Float(required=True, min_value=0.0)
    description = String(max_length=500)
    min_order_value = Float(default=0.0, min_value=0.0)
    max_discount = Float(min_value=0.0)  # Caps percentage coupons; None = uncapped
    applicable_products = List(content_type=String(max_length=100))
    applicable_categories = List(content_type=String(max_length=100))
    excluded_products = List(content_type=String(max_length=100))
    excluded_categories = List(content_type=String(max_length=100))
    stackable = Boolean(default=False)
    exclude_discounted_items = Boolean(default=False)
    usage_limit = Integer(min_value=0)  # None = unlimited
    usage_count = Integer(default=0, min_value=0)
    user_usage_limit = Integer(default=1, min_value=0)  # 0 = unlimited per shopper
    valid_from = DateTime(required=True)
    valid_until = DateTime(required=True)
    is_active = Boolean(default=True)
    created_at = DateTime()
    updated_at = DateTime()

    @invariant.post
    def validity_window_must_be_ordered(self):
        if self.valid_from and self.valid_until and as_utc(self.valid_until) <= as_utc(self.valid_from):
            raise ValidationError({"valid_until": ["Coupon must end after it starts"]})

    @invariant.post
    def percentage_must_not_exceed_hundred(self):
        if self.coupon_type == CouponType.PERCENTAGE.value and self.value > 100:
            raise ValidationError({"value": ["Percentage discount cannot exceed 100"]})

    # -------------------------------------------------------------------
    # Factory
    # -------------------------------------------------------------------
    @classmethod
    def define(cls, code, coupon_type, value, valid_from, valid_until, **rules):
        now = utcnow()
        return cls(
            code=code.strip().upper(),
            coupon_type=coupon_type,
            value=value,
            valid_from=valid_from,
            valid_until=valid_until,
            created_at=now,
            updated_at=now,
            **rules,
        )

    # -------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------
    def is_redeemable_at(self, now=None) -> bool:
        now = now or utcnow()
        return bool(self.is_active) and as_utc(self.valid_from) <= now <= as_utc(self.valid_until)

    def has_capacity(self) -> bool:
        return self.usage_limit is None or (self.usage_count or 0) < self.usage_limit

    # -------------------------------------------------------------------
    # Redemption
    # -------------------------------------------------------------------
    def record_redemption(self):
        """Count one completed checkout against the global usage limit."""
        self.usage_count = (self.usage_count or 0) + 1
        self.updated_at = utcnow()


@checkout.aggregate
class CouponUsage:
    coupon_id = Identifier(required=True)
    coupon_code = String(required=True, max_length=20)
    customer_id = Identifier()
    guest_tracking_id = String(max_length=100)
    session_id = String(required=True, max_length=100)
    discount_amount = Float(default=0.0)
    order_total = Float(default=0.0)
    used_at = DateTime()
