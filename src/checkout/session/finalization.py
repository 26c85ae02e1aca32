"""Session finalization — terminal outcomes and payment verification.

Every path that ends a session (owner close, client-side payment verify,
provider webhook, expiry janitor) goes through ``settle``, which applies the
outcome to the session and closes its reservations to the matching status in
the same unit of work.

The first durable outcome wins. A late, different outcome is logged and
dropped; when the late outcome is a completed payment the money has been
taken for a session that no longer holds stock, so it is logged as an
orphaned payment for reconciliation.
"""

import structlog
from protean import handle
from protean.fields import Identifier, String
from protean.utils.globals import current_domain

from checkout.domain import checkout
from checkout.errors import FinalizeConflict, ValidationError
from checkout.gateway import get_gateway
from checkout.session.queries import load_session
from checkout.session.session import RESERVATION_OUTCOME, CheckoutSession, SessionStatus
from checkout.stock.reservation import release_for_session
from checkout.utils.clock import utcnow

logger = structlog.get_logger(__name__)


def settle(session: CheckoutSession, outcome, payment_reference=None, reason=None, now=None) -> bool:
    """Finalize ``session`` and close its reservations. Returns True on change."""
    now = now or utcnow()
    stored_status = session.status

    try:
        changed = session.finalize(outcome, payment_reference=payment_reference, reason=reason, now=now)
    except FinalizeConflict as exc:
        changed = False
        logger.warning(
            "Conflicting session outcome ignored",
            session_id=exc.session_id,
            current=exc.current,
            attempted=exc.attempted,
        )
        if exc.attempted == SessionStatus.COMPLETED.value:
            logger.error(
                "Orphaned payment on a closed session",
                session_id=exc.session_id,
                status=exc.current,
                payment_reference=payment_reference,
            )

    status = SessionStatus(session.status)
    if status in RESERVATION_OUTCOME:
        release_for_session(str(session.id), session.stock_keys(), RESERVATION_OUTCOME[status], now)

    if session.status != stored_status:
        current_domain.repository_for(CheckoutSession).add(session)
        logger.info(
            "Checkout session finalized",
            session_id=str(session.id),
            status=session.status,
            reason=session.terminal_reason,
        )
    return changed


@checkout.command(part_of="CheckoutSession")
class FinalizeCheckoutSession:
    """Record a terminal outcome reported from outside the session's owner."""

    session_id = Identifier(required=True)
    outcome = String(required=True, choices=SessionStatus)
    payment_reference = String(max_length=100)
    reason = String(max_length=255)


@checkout.command(part_of="CheckoutSession")
class VerifyPayment:
    """Client-side confirmation of a payment, signed by the provider."""

    session_id = Identifier(required=True)
    gateway_order_id = String(required=True, max_length=100)
    payment_id = String(required=True, max_length=100)
    signature = String(required=True, max_length=255)
    customer_id = Identifier()
    guest_tracking_id = String(max_length=100)


@checkout.command_handler(part_of=CheckoutSession)
class FinalizationHandler:
    @handle(FinalizeCheckoutSession)
    def finalize_session(self, command):
        session = load_session(command.session_id, check_owner=False)
        settle(session, command.outcome, command.payment_reference, command.reason)
        return session.status

    @handle(VerifyPayment)
    def verify_payment(self, command):
        session = load_session(command.session_id, command.customer_id, command.guest_tracking_id)

        if not session.gateway_order_id or session.gateway_order_id != command.gateway_order_id:
            raise ValidationError({"gateway_order_id": ["Payment order does not belong to this session"]})

        if not get_gateway().verify_signature(command.gateway_order_id, command.payment_id, command.signature):
            logger.warning(
                "Payment signature rejected",
                session_id=str(session.id),
                gateway_order_id=command.gateway_order_id,
            )
            raise ValidationError({"signature": ["Payment signature is invalid"]})

        settle(session, SessionStatus.COMPLETED.value, payment_reference=command.payment_id)
        return session.status
