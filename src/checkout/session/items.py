"""Session item quantity changes — command and handler.

The line's stock hold is resized on its ledger and the applied coupon is
re-run against the new order in the same unit of work, so a session never
carries a discount computed for different items.
"""

import structlog
from protean import handle
from protean.fields import Identifier, Integer, String
from protean.utils.globals import current_domain

from checkout.domain import checkout
from checkout.session.coupons import revalidate_session_coupon
from checkout.session.queries import load_session
from checkout.session.session import CheckoutSession
from checkout.stock.reservation import resize_for_session
from checkout.utils.clock import utcnow
from checkout.utils.settings import setting

logger = structlog.get_logger(__name__)


@checkout.command(part_of="CheckoutSession")
class UpdateSessionItemQuantity:
    session_id = Identifier(required=True)
    product_id = Identifier(required=True)
    size = String(required=True, max_length=50)
    quantity = Integer(required=True)
    customer_id = Identifier()
    guest_tracking_id = String(max_length=100)


@checkout.command_handler(part_of=CheckoutSession)
class UpdateSessionItemQuantityHandler:
    @handle(UpdateSessionItemQuantity)
    def update_item_quantity(self, command):
        now = utcnow()
        session = load_session(command.session_id, command.customer_id, command.guest_tracking_id)

        previous = session.update_item_quantity(
            command.product_id,
            command.size,
            command.quantity,
            max_quantity=setting("max_item_quantity"),
            now=now,
        )
        if previous == command.quantity:
            return previous

        resize_for_session(str(session.id), str(command.product_id), command.size, command.quantity, now)
        revalidate_session_coupon(session, now)

        current_domain.repository_for(CheckoutSession).add(session)
        logger.info(
            "Session item quantity changed",
            session_id=str(session.id),
            product_id=str(command.product_id),
            size=command.size,
            previous_quantity=previous,
            new_quantity=command.quantity,
        )
        return previous
