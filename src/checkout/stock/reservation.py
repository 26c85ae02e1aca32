"""Stock reservation operations over the ledger repository.

These functions are the Stock Reservation Ledger as the checkout session
handlers see it. They run inside the caller's unit of work: ledgers loaded
here are saved back with ``repo.add`` and only become durable, version-checked
and all together, when that unit of work commits.

Ledgers are opened by ``open_ledgers`` in units of work of their own, before
the unit of work that reserves against them starts. A reservation is then
always a version-checked update of an existing ledger, never a first insert
that two writers could both commit. ``ledgers`` is an optional
per-unit-of-work cache so a handler touching the same size twice
mutates one in-memory ledger instead of two stale copies.
"""

import threading
from datetime import datetime

import structlog
from protean import UnitOfWork
from protean.exceptions import InvalidOperationError, ObjectNotFoundError, TransactionError
from protean.utils.globals import current_domain, current_uow

from checkout.catalog import get_catalog
from checkout.errors import NotFoundError
from checkout.stock.ledger import ReservationStatus, StockLedger
from checkout.utils.clock import utcnow

logger = structlog.get_logger(__name__)

# Serializes ledger inserts within this process
_ledger_opening = threading.Lock()


def load_ledger(product_id, size, ledgers: dict | None = None) -> StockLedger | None:
    """Return the ledger for a size, or None if nothing was ever reserved."""
    ledger_id = StockLedger.ledger_id(product_id, size)
    if ledgers is not None and ledger_id in ledgers:
        return ledgers[ledger_id]

    try:
        ledger = current_domain.repository_for(StockLedger).get(ledger_id)
    except ObjectNotFoundError:
        return None

    if ledgers is not None:
        ledgers[ledger_id] = ledger
    return ledger


def open_ledgers(stock_keys) -> list[str]:
    """Persist an empty ledger for every catalog size that has none yet.

    Each new ledger commits in its own unit of work, so this must run before
    the unit of work that reserves stock. Sizes the catalog does not know are
    skipped; creation reports them as shortfalls. A ledger another process
    inserted first counts as open. Returns the ids of the ledgers created.
    """
    if current_uow and current_uow.in_progress:
        raise InvalidOperationError("Stock ledgers must be opened outside a unit of work")

    catalog = get_catalog()
    opened = []
    for product_id, size in _unique(stock_keys):
        try:
            catalog.get_size_info(product_id, size)
        except NotFoundError:
            continue

        with _ledger_opening:
            if load_ledger(product_id, size) is not None:
                continue
            try:
                with UnitOfWork():
                    current_domain.repository_for(StockLedger).add(StockLedger.open(product_id, size))
            except TransactionError:
                if load_ledger(product_id, size) is None:
                    raise
                continue
        opened.append(StockLedger.ledger_id(product_id, size))

    if opened:
        logger.info("Stock ledgers opened", ledgers=opened)
    return opened


def available_qty(product_id, size, configured_qty: int, sold_qty: int, now=None, ledgers: dict | None = None) -> int:
    """Availability Calculator: configured - sold - live reservations, floored at 0."""
    ledger = load_ledger(product_id, size, ledgers)
    if ledger is None:
        return max(0, configured_qty - sold_qty)
    return ledger.available(configured_qty, sold_qty, now)


def size_availability(product_id, now=None) -> list[dict]:
    """Live availability of every size of a product, for the storefront."""
    return [
        {
            "size": info.size,
            "available_qty": available_qty(product_id, info.size, info.configured_qty, info.sold_qty, now),
        }
        for info in get_catalog().list_sizes(product_id)
    ]


def check_availability(product_id, size, quantity: int, now=None, ledgers: dict | None = None) -> dict | None:
    """Screen one requested item. Returns a shortfall dict, or None if it fits."""
    try:
        info = get_catalog().get_size_info(product_id, size)
    except NotFoundError as exc:
        missing = (exc.extra_info or {}).get("missing", "product")
        error = "Size not available" if missing == "size" else "Product not found"
        return {
            "product_id": str(product_id),
            "size": size,
            "product_name": None,
            "requested": quantity,
            "available": 0,
            "error": error,
        }

    available = available_qty(product_id, size, info.configured_qty, info.sold_qty, now, ledgers)
    if quantity > available:
        return {
            "product_id": str(product_id),
            "size": size,
            "product_name": info.name,
            "requested": quantity,
            "available": available,
            "error": "Insufficient stock",
        }
    return None


def reserve(session_id, product_id, size, quantity: int, expires_at: datetime, now=None, ledgers: dict | None = None):
    """Compare-and-reserve ``quantity`` units of a size for a session.

    The availability check and the new reservation land on the same ledger
    aggregate and are persisted as one versioned write.
    """
    info = get_catalog().get_size_info(product_id, size)
    ledger = load_ledger(product_id, size, ledgers)
    if ledger is None:
        raise InvalidOperationError(f"Stock ledger for product {product_id} size {size} has not been opened")
    reservation = ledger.reserve(
        session_id=session_id,
        quantity=quantity,
        expires_at=expires_at,
        configured_qty=info.configured_qty,
        sold_qty=info.sold_qty,
        now=now,
    )
    current_domain.repository_for(StockLedger).add(ledger)

    logger.info(
        "Stock reserved",
        session_id=str(session_id),
        product_id=str(product_id),
        size=size,
        quantity=quantity,
        reservation_id=reservation.reservation_id,
    )
    return reservation


def resize_for_session(session_id, product_id, size, quantity: int, now=None, ledgers: dict | None = None) -> int:
    """Change a session's hold on one size; returns the previously held quantity."""
    info = get_catalog().get_size_info(product_id, size)
    ledger = load_ledger(product_id, size, ledgers)
    if ledger is None:
        raise NotFoundError(f"No stock ledger for product {product_id} size {size}")

    previous = ledger.resize_for_session(session_id, quantity, info.configured_qty, info.sold_qty, now)
    current_domain.repository_for(StockLedger).add(ledger)
    return previous


def release_for_session(session_id, stock_keys, terminal_status: ReservationStatus | str, now=None, ledgers: dict | None = None) -> int:
    """Move a session's Active reservations to a terminal status. Idempotent."""
    now = now or utcnow()
    repo = current_domain.repository_for(StockLedger)
    moved = 0
    for product_id, size in _unique(stock_keys):
        ledger = load_ledger(product_id, size, ledgers)
        if ledger is None:
            continue
        count = ledger.release_for_session(session_id, terminal_status, now)
        if count:
            repo.add(ledger)
            moved += count

    if moved:
        logger.info(
            "Reservations closed",
            session_id=str(session_id),
            status=ReservationStatus(terminal_status).value,
            count=moved,
        )
    return moved


def extend_for_session(session_id, stock_keys, expires_at: datetime, now=None, ledgers: dict | None = None) -> int:
    """Push a session's reservations out to ``expires_at``; ExpiredError if lapsed."""
    repo = current_domain.repository_for(StockLedger)
    extended = 0
    for product_id, size in _unique(stock_keys):
        ledger = load_ledger(product_id, size, ledgers)
        if ledger is None:
            raise NotFoundError(f"No stock ledger for product {product_id} size {size}")
        extended += ledger.extend_for_session(session_id, expires_at, now)
        repo.add(ledger)
    return extended


def _unique(stock_keys):
    seen = []
    for key in stock_keys:
        key = (str(key[0]), str(key[1]))
        if key not in seen:
            seen.append(key)
    return seen
