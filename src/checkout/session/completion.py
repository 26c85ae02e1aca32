"""Completed checkout side effects — event handler.

Runs after the session's completion has committed: each sold line is
reported to the catalog, which moves units from configured to sold, and a
redeemed coupon is counted against its usage limits.
"""

import json

import structlog
from protean.utils.globals import current_domain
from protean.utils.mixins import handle

from checkout.catalog import get_catalog
from checkout.coupon.management import RecordCouponUsage
from checkout.domain import checkout
from checkout.session.events import CheckoutSessionCompleted
from checkout.session.session import CheckoutSession

logger = structlog.get_logger(__name__)


@checkout.event_handler(part_of=CheckoutSession)
class CheckoutCompletionEventHandler:
    """Commits a completed session's sale to the catalog and coupon ledger."""

    @handle(CheckoutSessionCompleted)
    def on_checkout_completed(self, event: CheckoutSessionCompleted) -> None:
        items = json.loads(event.items) if isinstance(event.items, str) else event.items

        catalog = get_catalog()
        for item in items:
            catalog.record_sale(item["product_id"], item["size"], item["quantity"])

        logger.info(
            "Sale recorded for completed checkout",
            session_id=str(event.session_id),
            payment_reference=event.payment_reference,
            lines=len(items),
        )

        if event.coupon_id:
            current_domain.process(
                RecordCouponUsage(
                    coupon_id=str(event.coupon_id),
                    session_id=str(event.session_id),
                    customer_id=str(event.customer_id) if event.customer_id else None,
                    guest_tracking_id=event.guest_tracking_id,
                    discount_amount=event.discount_amount or 0.0,
                    order_total=event.final_total,
                ),
                asynchronous=False,
            )
