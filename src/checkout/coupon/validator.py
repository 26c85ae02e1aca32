"""Coupon validator — code + order items → discount or rejection reason.

Stateless with respect to checkout sessions: the session handlers call it on
every mutation that can change a discount (apply, item quantity change,
payment validation) and store whatever it returns.

Rules are applied in this order and the first failure wins:

1. code format (3-20 letters or digits, compared upper-cased)
2. the coupon exists
3. it is active and inside its valid_from..valid_until window
4. global usage limit
5. per-shopper usage limit (customer id or guest tracking id)
6. minimum order value, measured over *eligible* items only
7. product / category include and exclude lists, plus the discount-stacking
   exclusion for items already selling below list price; an order with no
   eligible item is rejected

Discounts:

- percentage: eligible total x value%, capped by ``max_discount``
- fixed: ``value``, capped at the eligible total
- shipping: a flat ``shipping_discount`` credit, no item discount

The item discount is spread over eligible lines in proportion to their line
totals (key ``"<product_id>-<size>"``); the last line absorbs rounding.
"""

import json
import re
from dataclasses import dataclass, field

from protean.utils.globals import current_domain

from checkout.coupon.coupon import Coupon, CouponType, CouponUsage
from checkout.utils.clock import utcnow

_CODE_PATTERN = re.compile(r"^[A-Z0-9]{3,20}$")


def normalize_code(code: str | None) -> str:
    return (code or "").strip().upper()


def is_valid_format(code: str | None) -> bool:
    return bool(_CODE_PATTERN.match(normalize_code(code)))


def _money(value: float) -> float:
    return round(value + 0.0, 2)


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class CouponItem:
    """The slice of an order line the validator needs."""

    product_id: str
    size: str
    quantity: int
    price: float
    category_id: str | None = None
    is_discounted: bool = False

    @property
    def key(self) -> str:
        return f"{self.product_id}-{self.size}"

    @property
    def line_total(self) -> float:
        return self.price * self.quantity


@dataclass(frozen=True)
class CouponDiscount:
    discount_amount: float = 0.0
    shipping_discount: float = 0.0
    item_discounts: dict = field(default_factory=dict)
    eligible_items: list = field(default_factory=list)


@dataclass(frozen=True)
class CouponValidation:
    is_valid: bool
    error: str | None = None
    coupon: dict | None = None
    discount: CouponDiscount | None = None

    @classmethod
    def reject(cls, error: str) -> "CouponValidation":
        return cls(is_valid=False, error=error)

    def to_applied_coupon(self, applied_at=None) -> dict:
        """Shape a successful validation as AppliedCoupon keyword arguments."""
        return {
            "coupon_id": self.coupon["id"],
            "code": self.coupon["code"],
            "coupon_type": self.coupon["type"],
            "value": self.coupon["value"],
            "description": self.coupon["description"],
            "discount_amount": self.discount.discount_amount,
            "shipping_discount": self.discount.shipping_discount,
            "item_discounts": json.dumps(self.discount.item_discounts),
            "eligible_items": json.dumps(self.discount.eligible_items),
            "applied_at": applied_at or utcnow(),
        }


# ---------------------------------------------------------------------------
# Validator
# ---------------------------------------------------------------------------
class CouponValidator:
    """Validate a coupon against an order and compute its discount."""

    def validate_and_calculate(
        self,
        code: str,
        items: list[CouponItem],
        customer_id: str | None = None,
        guest_tracking_id: str | None = None,
        now=None,
    ) -> CouponValidation:
        now = now or utcnow()
        code = normalize_code(code)

        if not _CODE_PATTERN.match(code):
            return CouponValidation.reject("Coupon code must be 3-20 letters or digits")

        coupon = self.find_coupon(code)
        if coupon is None:
            return CouponValidation.reject("Invalid coupon code")

        if not coupon.is_redeemable_at(now):
            return CouponValidation.reject("Coupon has expired or is not active")

        if not coupon.has_capacity():
            return CouponValidation.reject("Coupon usage limit exceeded")

        if coupon.user_usage_limit and (customer_id or guest_tracking_id):
            used = self.usage_count_for(coupon, customer_id, guest_tracking_id)
            if used >= coupon.user_usage_limit:
                return CouponValidation.reject("You have already used this coupon")

        eligible = [item for item in items if self._is_eligible(coupon, item)]
        eligible_total = sum(item.line_total for item in eligible)

        if coupon.min_order_value and eligible_total < coupon.min_order_value:
            return CouponValidation.reject(
                f"Minimum order value of {coupon.min_order_value:.2f} on eligible items required for this coupon"
            )

        if not eligible:
            return CouponValidation.reject("Coupon is not applicable to any items in your order")

        discount = self._calculate(coupon, eligible, eligible_total)
        return CouponValidation(
            is_valid=True,
            coupon={
                "id": str(coupon.id),
                "code": coupon.code,
                "type": coupon.coupon_type,
                "value": coupon.value,
                "description": coupon.description or "",
            },
            discount=discount,
        )

    # -------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------
    def find_coupon(self, code: str) -> Coupon | None:
        results = current_domain.repository_for(Coupon)._dao.query.filter(code=normalize_code(code)).all().items
        return results[0] if results else None

    def usage_count_for(self, coupon: Coupon, customer_id=None, guest_tracking_id=None) -> int:
        dao = current_domain.repository_for(CouponUsage)._dao
        if customer_id:
            query = dao.query.filter(coupon_id=str(coupon.id), customer_id=str(customer_id))
        else:
            query = dao.query.filter(coupon_id=str(coupon.id), guest_tracking_id=guest_tracking_id)
        return query.all().total

    # -------------------------------------------------------------------
    # Eligibility and amounts
    # -------------------------------------------------------------------
    @staticmethod
    def _is_eligible(coupon: Coupon, item: CouponItem) -> bool:
        if coupon.exclude_discounted_items and item.is_discounted:
            return False
        if item.product_id in (coupon.excluded_products or []):
            return False
        if item.category_id and item.category_id in (coupon.excluded_categories or []):
            return False

        applicable_products = coupon.applicable_products or []
        applicable_categories = coupon.applicable_categories or []
        if applicable_products or applicable_categories:
            return item.product_id in applicable_products or (
                item.category_id is not None and item.category_id in applicable_categories
            )
        return True

    @staticmethod
    def _calculate(coupon: Coupon, eligible: list[CouponItem], eligible_total: float) -> CouponDiscount:
        coupon_type = CouponType(coupon.coupon_type)
        eligible_keys = [item.key for item in eligible]

        if coupon_type == CouponType.SHIPPING:
            return CouponDiscount(
                discount_amount=0.0,
                shipping_discount=_money(coupon.value),
                item_discounts={},
                eligible_items=eligible_keys,
            )

        if coupon_type == CouponType.PERCENTAGE:
            amount = eligible_total * coupon.value / 100
            if coupon.max_discount is not None:
                amount = min(amount, coupon.max_discount)
        else:
            amount = min(coupon.value, eligible_total)

        amount = _money(amount)

        item_discounts = {}
        distributed = 0.0
        for index, item in enumerate(eligible):
            if index == len(eligible) - 1:
                share = _money(amount - distributed)
            else:
                share = _money(amount * item.line_total / eligible_total) if eligible_total else 0.0
                distributed += share
            item_discounts[item.key] = share

        return CouponDiscount(
            discount_amount=amount,
            shipping_discount=0.0,
            item_discounts=item_discounts,
            eligible_items=eligible_keys,
        )
