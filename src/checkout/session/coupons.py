"""Session coupon management — commands and handlers."""

import structlog
from protean import handle
from protean.fields import Identifier, String
from protean.utils.globals import current_domain

from checkout.coupon.validator import CouponValidator
from checkout.domain import checkout
from checkout.session.queries import load_session
from checkout.session.session import CheckoutSession
from checkout.utils.clock import utcnow

logger = structlog.get_logger(__name__)


def validate_session_coupon(session: CheckoutSession, code: str, now=None):
    """Run the coupon validator against the session's current items."""
    return CouponValidator().validate_and_calculate(
        code,
        session.coupon_items(),
        customer_id=str(session.customer_id) if session.customer_id else None,
        guest_tracking_id=session.guest_tracking_id,
        now=now,
    )


def revalidate_session_coupon(session: CheckoutSession, now=None):
    """Reprice or drop the applied coupon after the order changed."""
    if session.applied_coupon is None:
        return None

    code = session.applied_coupon.code
    validation = validate_session_coupon(session, code, now)
    session.revalidate_coupon(validation, now)
    if not validation.is_valid:
        logger.info(
            "Applied coupon no longer qualifies",
            session_id=str(session.id),
            coupon_code=code,
            reason=validation.error,
        )
    return validation


@checkout.command(part_of="CheckoutSession")
class ApplyCouponToSession:
    session_id = Identifier(required=True)
    coupon_code = String(required=True, max_length=100)
    customer_id = Identifier()
    guest_tracking_id = String(max_length=100)


@checkout.command(part_of="CheckoutSession")
class RemoveCouponFromSession:
    session_id = Identifier(required=True)
    customer_id = Identifier()
    guest_tracking_id = String(max_length=100)


@checkout.command_handler(part_of=CheckoutSession)
class SessionCouponHandler:
    @handle(ApplyCouponToSession)
    def apply_coupon(self, command):
        now = utcnow()
        session = load_session(command.session_id, command.customer_id, command.guest_tracking_id)

        validation = validate_session_coupon(session, command.coupon_code, now)
        if not validation.is_valid:
            logger.info(
                "Coupon rejected",
                session_id=str(session.id),
                coupon_code=command.coupon_code,
                reason=validation.error,
            )
        session.apply_coupon(validation, now)

        current_domain.repository_for(CheckoutSession).add(session)
        logger.info(
            "Coupon applied",
            session_id=str(session.id),
            coupon_code=session.applied_coupon.code,
            discount_amount=session.applied_coupon.discount_amount,
        )

    @handle(RemoveCouponFromSession)
    def remove_coupon(self, command):
        session = load_session(command.session_id, command.customer_id, command.guest_tracking_id)
        if session.remove_coupon(utcnow()):
            current_domain.repository_for(CheckoutSession).add(session)
