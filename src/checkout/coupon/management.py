"""Coupon definitions and redemption bookkeeping — commands and handlers."""

import structlog
from protean import handle
from protean.exceptions import ValidationError
from protean.fields import Boolean, DateTime, Float, Identifier, Integer, List, String
from protean.utils.globals import current_domain

from checkout.coupon.coupon import Coupon, CouponType, CouponUsage
from checkout.coupon.validator import is_valid_format, normalize_code
from checkout.domain import checkout
from checkout.utils.clock import utcnow

logger = structlog.get_logger(__name__)


@checkout.command(part_of="Coupon")
class DefineCoupon:
    """Register a coupon definition."""

    code = String(required=True, max_length=20)
    coupon_type = String(required=True, choices=CouponType)
    value = Float(required=True, min_value=0.0)
    description = String(max_length=500)
    min_order_value = Float(default=0.0)
    max_discount = Float()
    applicable_products = List(content_type=String(max_length=100))
    applicable_categories = List(content_type=String(max_length=100))
    excluded_products = List(content_type=String(max_length=100))
    excluded_categories = List(content_type=String(max_length=100))
    stackable = Boolean(default=False)
    exclude_discounted_items = Boolean(default=False)
    usage_limit = Integer()
    user_usage_limit = Integer(default=1)
    valid_from = DateTime(required=True)
    valid_until = DateTime(required=True)
    is_active = Boolean(default=True)


@checkout.command(part_of="Coupon")
class RecordCouponUsage:
    """Count a completed checkout against a coupon's limits."""

    coupon_id = Identifier(required=True)
    session_id = String(required=True, max_length=100)
    customer_id = Identifier()
    guest_tracking_id = String(max_length=100)
    discount_amount = Float(default=0.0)
    order_total = Float(default=0.0)


@checkout.command_handler(part_of=Coupon)
class CouponCommandHandler:
    @handle(DefineCoupon)
    def define_coupon(self, command):
        if not is_valid_format(command.code):
            raise ValidationError({"code": ["Coupon code must be 3-20 letters or digits"]})

        code = normalize_code(command.code)
        repo = current_domain.repository_for(Coupon)
        if repo._dao.query.filter(code=code).all().total:
            raise ValidationError({"code": [f"Coupon {code} already exists"]})

        coupon = Coupon.define(
            code=code,
            coupon_type=command.coupon_type,
            value=command.value,
            valid_from=command.valid_from,
            valid_until=command.valid_until,
            description=command.description,
            min_order_value=command.min_order_value or 0.0,
            max_discount=command.max_discount,
            applicable_products=command.applicable_products or [],
            applicable_categories=command.applicable_categories or [],
            excluded_products=command.excluded_products or [],
            excluded_categories=command.excluded_categories or [],
            stackable=command.stackable,
            exclude_discounted_items=command.exclude_discounted_items,
            usage_limit=command.usage_limit,
            user_usage_limit=command.user_usage_limit,
            is_active=command.is_active,
        )
        repo.add(coupon)
        return str(coupon.id)

    @handle(RecordCouponUsage)
    def record_usage(self, command):
        repo = current_domain.repository_for(Coupon)
        coupon = repo.get(command.coupon_id)
        coupon.record_redemption()
        repo.add(coupon)

        current_domain.repository_for(CouponUsage).add(
            CouponUsage(
                coupon_id=str(coupon.id),
                coupon_code=coupon.code,
                customer_id=command.customer_id,
                guest_tracking_id=command.guest_tracking_id,
                session_id=command.session_id,
                discount_amount=command.discount_amount,
                order_total=command.order_total,
                used_at=utcnow(),
            )
        )

        logger.info(
            "Coupon redemption recorded",
            coupon_code=coupon.code,
            session_id=command.session_id,
            usage_count=coupon.usage_count,
        )
