"""Payment status check — shopper-triggered recovery.

When the client-side verify never arrives (closed tab, dropped connection,
a signature check that failed in transit) the shopper can ask checkout to
look the payment up with the provider. A captured or authorized payment for
exactly the locked amount finalizes the session through ``settle``, the same
path the verify step and the webhook take, so a late webhook stays a no-op.
"""

import structlog
from protean import handle
from protean.exceptions import InvalidOperationError
from protean.fields import Identifier, String

from checkout.domain import checkout
from checkout.gateway import get_gateway
from checkout.session.finalization import settle
from checkout.session.queries import load_session
from checkout.session.session import CheckoutSession, SessionStatus

logger = structlog.get_logger(__name__)

SETTLED_PAYMENT_STATUSES = ("captured", "authorized")


@checkout.command(part_of="CheckoutSession")
class CheckPaymentStatus:
    session_id = Identifier(required=True)
    customer_id = Identifier()
    guest_tracking_id = String(max_length=100)


@checkout.command_handler(part_of=CheckoutSession)
class PaymentRecoveryHandler:
    @handle(CheckPaymentStatus)
    def check_payment_status(self, command):
        session = load_session(command.session_id, command.customer_id, command.guest_tracking_id)
        if SessionStatus(session.status) != SessionStatus.ACTIVE:
            return session.status

        if not session.gateway_order_id:
            raise InvalidOperationError("No payment has been started for this session")

        payments = get_gateway().fetch_payments(session.gateway_order_id)
        payment = next((p for p in payments if p.status in SETTLED_PAYMENT_STATUSES), None)
        if payment is None:
            logger.info(
                "No completed payment found",
                session_id=str(session.id),
                gateway_order_id=session.gateway_order_id,
                attempts=len(payments),
            )
            return "pending"

        locked = session.locked_totals
        if locked is None or payment.amount != locked.amount_minor:
            logger.error(
                "Orphaned payment: captured amount does not match locked totals",
                session_id=str(session.id),
                gateway_order_id=session.gateway_order_id,
                payment_id=payment.payment_id,
                captured=payment.amount,
                expected=locked.amount_minor if locked else None,
            )
            return "mismatch"

        settle(session, SessionStatus.COMPLETED.value, payment_reference=payment.payment_id)
        logger.info(
            "Payment recovered from provider",
            session_id=str(session.id),
            payment_id=payment.payment_id,
            status=session.status,
        )
        return session.status
