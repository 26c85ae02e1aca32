"""Closing a checkout session — command and handler.

Closing is idempotent: an already-closed session is returned as it is and a
lapsed one is recorded as expired rather than cancelled.
"""

from protean import handle
from protean.fields import Identifier, String

from checkout.domain import checkout
from checkout.session.finalization import settle
from checkout.session.queries import load_session
from checkout.session.session import CheckoutSession, SessionStatus


@checkout.command(part_of="CheckoutSession")
class CloseCheckoutSession:
    session_id = Identifier(required=True)
    customer_id = Identifier()
    guest_tracking_id = String(max_length=100)
    reason = String(max_length=255, default="Closed by shopper")


@checkout.command_handler(part_of=CheckoutSession)
class CloseCheckoutSessionHandler:
    @handle(CloseCheckoutSession)
    def close_checkout_session(self, command):
        session = load_session(command.session_id, command.customer_id, command.guest_tracking_id)
        if SessionStatus(session.status) != SessionStatus.ACTIVE:
            return session.status

        settle(session, SessionStatus.CANCELLED.value, reason=command.reason)
        return session.status
