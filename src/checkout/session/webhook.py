"""Payment provider webhook — command and handler.

The provider reports ``payment.captured`` and ``payment.failed`` for the order
created at payment lock. A capture finalizes the session through the same
``settle`` path as the client-side verify, so whichever arrives second is a
no-op. A capture whose amount differs from the locked totals, or that names
an order no session knows, is logged as an orphaned payment and left for
reconciliation.
"""

import structlog
from protean import handle
from protean.fields import Integer, String
from protean.utils.globals import current_domain

from checkout.domain import checkout
from checkout.session.finalization import settle
from checkout.session.queries import find_by_gateway_order
from checkout.session.session import CheckoutSession, SessionStatus
from checkout.utils.clock import utcnow

logger = structlog.get_logger(__name__)

PAYMENT_CAPTURED = "payment.captured"
PAYMENT_FAILED = "payment.failed"


@checkout.command(part_of="CheckoutSession")
class ProcessGatewayWebhook:
    event_type = String(required=True, max_length=100)
    gateway_order_id = String(required=True, max_length=100)
    payment_id = String(max_length=100)
    amount = Integer()  # minor units
    currency = String(max_length=3)
    reason = String(max_length=500)


@checkout.command_handler(part_of=CheckoutSession)
class GatewayWebhookHandler:
    @handle(ProcessGatewayWebhook)
    def process_webhook(self, command):
        if command.event_type not in (PAYMENT_CAPTURED, PAYMENT_FAILED):
            logger.info("Ignoring gateway event", event_type=command.event_type)
            return "ignored"

        session = find_by_gateway_order(command.gateway_order_id)
        if session is None:
            if command.event_type == PAYMENT_CAPTURED:
                logger.error(
                    "Orphaned payment for unknown order",
                    gateway_order_id=command.gateway_order_id,
                    payment_id=command.payment_id,
                    amount=command.amount,
                )
            else:
                logger.warning("Gateway event for unknown order", gateway_order_id=command.gateway_order_id)
            return "ignored"

        if command.event_type == PAYMENT_FAILED:
            if session.record_payment_failure(command.payment_id, command.reason or "", utcnow()):
                current_domain.repository_for(CheckoutSession).add(session)
                logger.info(
                    "Payment attempt failed",
                    session_id=str(session.id),
                    gateway_order_id=command.gateway_order_id,
                    reason=command.reason,
                )
            return session.status

        locked = session.locked_totals
        if SessionStatus(session.status) == SessionStatus.ACTIVE and (
            locked is None or (command.amount is not None and command.amount != locked.amount_minor)
        ):
            logger.error(
                "Orphaned payment: captured amount does not match locked totals",
                session_id=str(session.id),
                gateway_order_id=command.gateway_order_id,
                payment_id=command.payment_id,
                captured=command.amount,
                expected=locked.amount_minor if locked else None,
            )
            return "mismatch"

        settle(session, SessionStatus.COMPLETED.value, payment_reference=command.payment_id)
        return session.status
