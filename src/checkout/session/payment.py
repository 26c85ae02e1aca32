"""Payment preparation — validation, price lock and provider order.

Paying for a session is a three step exchange with the client:

1. ``ValidateForPayment`` re-checks the session right before payment: its
   holds still cover every line, catalog prices have not moved beyond the
   tolerance and the applied coupon still qualifies.
2. ``LockForPayment`` (within the validation window) freezes the totals,
   extends a session that is about to lapse together with its reservations,
   and creates the provider order for the locked amount.
3. The payment outcome arrives through ``VerifyPayment`` or the provider
   webhook (see ``checkout.session.finalization`` and ``.webhook``).

``UnlockTotals`` releases a lock explicitly so the shopper can edit the order
again; a failed payment unlocks automatically.
"""

import json

import structlog
from protean import handle
from protean.exceptions import InvalidOperationError
from protean.fields import Identifier, String, Text
from protean.utils.globals import current_domain

from checkout.catalog import get_catalog
from checkout.domain import checkout
from checkout.errors import NotFoundError
from checkout.gateway import get_gateway
from checkout.session.coupons import revalidate_session_coupon
from checkout.session.queries import load_session
from checkout.session.session import CheckoutSession
from checkout.stock.reservation import extend_for_session, load_ledger
from checkout.utils.clock import utcnow
from checkout.utils.settings import setting

logger = structlog.get_logger(__name__)


@checkout.command(part_of="CheckoutSession")
class ValidateForPayment:
    session_id = Identifier(required=True)
    customer_id = Identifier()
    guest_tracking_id = String(max_length=100)
    address = Text()  # JSON: shipping address dict


@checkout.command(part_of="CheckoutSession")
class LockForPayment:
    session_id = Identifier(required=True)
    customer_id = Identifier()
    guest_tracking_id = String(max_length=100)


@checkout.command(part_of="CheckoutSession")
class UnlockTotals:
    session_id = Identifier(required=True)
    customer_id = Identifier()
    guest_tracking_id = String(max_length=100)
    reason = String(max_length=500, default="Unlocked by shopper")


@checkout.command_handler(part_of=CheckoutSession)
class PaymentPreparationHandler:
    @handle(ValidateForPayment)
    def validate_for_payment(self, command):
        now = utcnow()
        session = load_session(command.session_id, command.customer_id, command.guest_tracking_id)
        session.ensure_open(now)
        session.ensure_unlocked()

        catalog = get_catalog()
        tolerance = setting("price_change_tolerance")
        stock_issues = []
        price_changes = []

        for item in session.items:
            ledger = load_ledger(str(item.product_id), item.size)
            held = ledger.held_for_session(str(session.id), now) if ledger else 0
            if held < item.quantity:
                stock_issues.append(
                    {
                        "product_id": str(item.product_id),
                        "size": item.size,
                        "requested": item.quantity,
                        "held": held,
                        "error": "Reservation no longer covers this item",
                    }
                )

            try:
                info = catalog.get_size_info(str(item.product_id), item.size)
            except NotFoundError:
                stock_issues.append(
                    {
                        "product_id": str(item.product_id),
                        "size": item.size,
                        "requested": item.quantity,
                        "held": held,
                        "error": "Product is no longer sold",
                    }
                )
                continue

            if abs(info.price - item.unit_price) > tolerance:
                price_changes.append(
                    {
                        "product_id": str(item.product_id),
                        "size": item.size,
                        "name": item.name,
                        "previous_price": item.unit_price,
                        "current_price": info.price,
                    }
                )

        had_coupon = session.applied_coupon is not None
        coupon_error = None
        if had_coupon:
            validation = revalidate_session_coupon(session, now)
            if not validation.is_valid:
                coupon_error = validation.error

        is_valid = not (stock_issues or price_changes or coupon_error)
        if is_valid:
            address = json.loads(command.address) if command.address else None
            session.record_validation(address, now)
            changed = True
        else:
            # A failed re-check must not leave an older validation to lock against
            changed = session.discard_validation(now)

        if changed or had_coupon:
            current_domain.repository_for(CheckoutSession).add(session)

        logger.info(
            "Session validated for payment",
            session_id=str(session.id),
            valid=is_valid,
            stock_issues=len(stock_issues),
            price_changes=len(price_changes),
            coupon_error=coupon_error,
        )
        return {
            "valid": is_valid,
            "stock_issues": stock_issues,
            "price_changes": price_changes,
            "coupon_error": coupon_error,
            "totals": session.calculate_totals().to_dict(),
        }

    @handle(LockForPayment)
    def lock_for_payment(self, command):
        now = utcnow()
        session = load_session(command.session_id, command.customer_id, command.guest_tracking_id)
        session.ensure_open(now)

        if not session.is_validation_fresh(setting("validation_window_minutes"), now):
            raise InvalidOperationError("Validate the session for payment before paying")

        locked = session.lock_totals(currency=setting("currency"), now=now)

        new_expiry = session.extend_for_payment(
            low_water_minutes=setting("payment_low_water_minutes"),
            extension_minutes=setting("payment_extension_minutes"),
            now=now,
        )
        if new_expiry:
            extend_for_session(str(session.id), session.stock_keys(), new_expiry, now)
            logger.info("Session extended for payment", session_id=str(session.id), expires_at=new_expiry.isoformat())

        order = get_gateway().create_order(
            amount=locked.amount_minor,
            currency=locked.currency,
            reference=f"{session.id}_{int(now.timestamp())}",
        )
        session.record_gateway_order(order.gateway_order_id, now)

        current_domain.repository_for(CheckoutSession).add(session)
        logger.info(
            "Payment order created",
            session_id=str(session.id),
            gateway_order_id=order.gateway_order_id,
            amount=order.amount,
            currency=order.currency,
        )
        return {
            "gateway_order_id": order.gateway_order_id,
            "amount": order.amount,
            "currency": order.currency,
            "final_total": locked.final_total,
            "expires_at": session.expires_at,
        }

    @handle(UnlockTotals)
    def unlock_totals(self, command):
        session = load_session(command.session_id, command.customer_id, command.guest_tracking_id)
        if session.unlock_totals(reason=command.reason, now=utcnow()):
            current_domain.repository_for(CheckoutSession).add(session)
            logger.info("Session totals unlocked", session_id=str(session.id), reason=command.reason)
