"""Checkout session creation — command and handler.

Creating a session is all-or-nothing: every line is screened against live
availability first, so a shopper sees every shortfall at once, and then each
line is reserved on its stock ledger. A reservation that loses a race raises
StockUnavailableError, the unit of work rolls back and no hold or session is
left behind.

The handler only updates stock ledgers that already exist. Callers go through
``open_checkout_session``, which opens any missing ledger in a unit of work of
its own before the command is processed.
"""

import json

import structlog
from protean import handle
from protean.exceptions import ValidationError
from protean.fields import Identifier, String, Text
from protean.utils.globals import current_domain

from checkout.catalog import get_catalog
from checkout.domain import checkout
from checkout.errors import StockUnavailableError
from checkout.session.session import CheckoutSession, SessionType, generate_guest_tracking_id
from checkout.stock.ledger import ReservationStatus
from checkout.stock.reservation import check_availability, open_ledgers, release_for_session, reserve
from checkout.utils.clock import utcnow
from checkout.utils.settings import setting

logger = structlog.get_logger(__name__)


@checkout.command(part_of="CheckoutSession")
class CreateCheckoutSession:
    """Open a checkout session and hold stock for its items."""

    session_type = String(required=True, choices=SessionType)
    items = Text(required=True)  # JSON: list of {product_id, size, quantity}
    customer_id = Identifier()
    guest_tracking_id = String(max_length=100)


def merge_lines(items: list[dict]) -> list[dict]:
    """Collapse repeated (product, size) lines into one, summing quantities."""
    merged: dict[tuple[str, str], dict] = {}
    for item in items:
        try:
            key = (str(item["product_id"]), str(item["size"]))
            quantity = int(item["quantity"])
        except (KeyError, TypeError, ValueError) as exc:
            raise ValidationError({"items": ["Each item needs product_id, size and an integer quantity"]}) from exc

        if key in merged:
            merged[key]["quantity"] += quantity
        else:
            merged[key] = {"product_id": key[0], "size": key[1], "quantity": quantity}
    return list(merged.values())


def open_checkout_session(command: CreateCheckoutSession) -> str:
    """Open the stock ledgers a session needs, then create the session."""
    raw_items = json.loads(command.items) if isinstance(command.items, str) else command.items
    if raw_items:
        open_ledgers((line["product_id"], line["size"]) for line in merge_lines(raw_items))
    return current_domain.process(command, asynchronous=False)


@checkout.command_handler(part_of=CheckoutSession)
class CreateCheckoutSessionHandler:
    @handle(CreateCheckoutSession)
    def create_checkout_session(self, command):
        raw_items = json.loads(command.items) if isinstance(command.items, str) else command.items
        if not raw_items:
            raise ValidationError({"items": ["A checkout session needs at least one item"]})

        lines = merge_lines(raw_items)
        max_quantity = setting("max_item_quantity")
        for line in lines:
            if line["quantity"] < 1 or line["quantity"] > max_quantity:
                raise ValidationError({"quantity": [f"Quantity must be between 1 and {max_quantity}"]})

        now = utcnow()
        ledgers = {}

        # Phase 1: report every shortfall before holding anything
        shortfalls = []
        for line in lines:
            shortfall = check_availability(line["product_id"], line["size"], line["quantity"], now, ledgers)
            if shortfall:
                shortfalls.append(shortfall)
        if shortfalls:
            logger.info(
                "Checkout refused for unavailable stock",
                customer_id=str(command.customer_id) if command.customer_id else None,
                shortfalls=len(shortfalls),
            )
            raise StockUnavailableError(shortfalls)

        catalog = get_catalog()
        priced_items = []
        for line in lines:
            info = catalog.get_size_info(line["product_id"], line["size"])
            priced_items.append(
                {
                    "product_id": line["product_id"],
                    "size": line["size"],
                    "quantity": line["quantity"],
                    "unit_price": info.price,
                    "name": info.name,
                    "image": info.image,
                    "slug": info.slug,
                    "category_id": info.category_id,
                    "is_discounted": info.is_discounted,
                }
            )

        guest_tracking_id = None
        if not command.customer_id:
            guest_tracking_id = command.guest_tracking_id or generate_guest_tracking_id(command.session_type)

        session = CheckoutSession.create(
            session_type=command.session_type,
            items=priced_items,
            customer_id=command.customer_id,
            guest_tracking_id=guest_tracking_id,
            ttl_minutes=setting("session_ttl_minutes"),
            now=now,
        )

        # Phase 2: hold each line; a lost race aborts the whole unit of work
        try:
            for item in session.items:
                reserve(
                    session_id=str(session.id),
                    product_id=str(item.product_id),
                    size=item.size,
                    quantity=item.quantity,
                    expires_at=session.expires_at,
                    now=now,
                    ledgers=ledgers,
                )
        except StockUnavailableError as exc:
            release_for_session(str(session.id), session.stock_keys(), ReservationStatus.RELEASED, now, ledgers)
            logger.warning(
                "Checkout creation rolled back",
                session_id=str(session.id),
                shortfalls=exc.shortfalls,
            )
            raise

        current_domain.repository_for(CheckoutSession).add(session)

        logger.info(
            "Checkout session created",
            session_id=str(session.id),
            session_type=session.session_type,
            items=len(session.items),
            expires_at=session.expires_at.isoformat(),
        )
        return str(session.id)
