"""Stock Ledger aggregate (CQRS) — time-bounded holds on one product size.

There is exactly one ledger per (product, size), identified by
``"<product_id>::<size>"``. Every reservation for that size is an entity
inside the ledger, so the availability check and the write of a new
reservation are a single versioned save of one aggregate: compare-and-reserve.
Two writers racing for the last unit both load the same ledger version; the
second commit fails the optimistic version check and is re-run from fresh
state, where the availability check now fails.

Availability is derived, never stored:

    available = configured_qty - sold_qty - live reserved qty

A reservation is live while its status is Active *and* its ``expires_at`` is
in the future. Lapsed reservations stop counting the moment they lapse, even
if nothing has rewritten their status yet.

Every mutation stamps ``updated_at`` on the root so that changes confined to
child reservations still advance the ledger version.
"""

from datetime import datetime
from enum import Enum

from protean.exceptions import ValidationError
from protean.fields import DateTime, HasMany, Identifier, Integer, String

from checkout.domain import checkout
from checkout.errors import ExpiredError, StockUnavailableError
from checkout.utils.clock import as_utc, utcnow


class ReservationStatus(Enum):
    ACTIVE = "Active"
    RELEASED = "Released"
    EXPIRED = "Expired"
    COMPLETED = "Completed"


_TERMINAL_RESERVATION_STATES = {
    ReservationStatus.RELEASED,
    ReservationStatus.EXPIRED,
    ReservationStatus.COMPLETED,
}


@checkout.entity(part_of="StockLedger")
class StockReservation:
    """A hold of ``reserved_qty`` units for one checkout session.

    Reservations are never deleted. When the owning session ends they move to
    Released, Expired or Completed and stay on the ledger for audit.
    """

    session_id = String(required=True, max_length=100)
    product_id = Identifier(required=True)
    size = String(required=True, max_length=50)
    reserved_qty = Integer(required=True, min_value=1)
    status = String(choices=ReservationStatus, default=ReservationStatus.ACTIVE.value)
    created_at = DateTime()
    expires_at = DateTime(required=True)
    closed_at = DateTime()

    @property
    def reservation_id(self) -> str:
        return str(self.id)

    def is_live(self, now: datetime) -> bool:
        return ReservationStatus(self.status) == ReservationStatus.ACTIVE and as_utc(self.expires_at) > now


@checkout.aggregate
class StockLedger:
    product_id = Identifier(required=True)
    size = String(required=True, max_length=50)
    reservations = HasMany(StockReservation)
    updated_at = DateTime()

    # -------------------------------------------------------------------
    # Factory
    # -------------------------------------------------------------------
    @staticmethod
    def ledger_id(product_id, size) -> str:
        return f"{product_id}::{size}"

    @classmethod
    def open(cls, product_id, size):
        """Start an empty ledger for a size that has never been reserved."""
        return cls(
            id=cls.ledger_id(product_id, size),
            product_id=product_id,
            size=size,
            updated_at=utcnow(),
        )

    # -------------------------------------------------------------------
    # Availability
    # -------------------------------------------------------------------
    def _live(self, now=None):
        now = now or utcnow()
        return [r for r in self.reservations if r.is_live(now)]

    def active_reserved_qty(self, now=None) -> int:
        """Units held by live (active, unexpired) reservations."""
        return sum(r.reserved_qty for r in self._live(now))

    def available(self, configured_qty: int, sold_qty: int, now=None) -> int:
        """Purchasable units right now, floored at zero."""
        return max(0, configured_qty - sold_qty - self.active_reserved_qty(now))

    def held_for_session(self, session_id, now=None) -> int:
        return sum(r.reserved_qty for r in self._live(now) if r.session_id == str(session_id))

    def reservations_for_session(self, session_id):
        return [r for r in self.reservations if r.session_id == str(session_id)]

    # -------------------------------------------------------------------
    # Holds
    # -------------------------------------------------------------------
    def reserve(self, session_id, quantity, expires_at, configured_qty, sold_qty, now=None):
        """Hold ``quantity`` units for a session if they are available.

        Raises StockUnavailableError carrying the requested and available
        quantities when the hold does not fit.
        """
        now = now or utcnow()
        if quantity < 1:
            raise ValidationError({"quantity": ["Quantity must be at least 1"]})

        available = self.available(configured_qty, sold_qty, now)
        if quantity > available:
            raise StockUnavailableError(
                [
                    {
                        "product_id": str(self.product_id),
                        "size": self.size,
                        "requested": quantity,
                        "available": available,
                        "error": "Insufficient stock",
                    }
                ]
            )

        reservation = StockReservation(
            session_id=str(session_id),
            product_id=self.product_id,
            size=self.size,
            reserved_qty=quantity,
            status=ReservationStatus.ACTIVE.value,
            created_at=now,
            expires_at=expires_at,
        )
        self.add_reservations(reservation)
        self.updated_at = now
        return reservation

    def resize_for_session(self, session_id, quantity, configured_qty, sold_qty, now=None) -> int:
        """Change a session's live hold on this size to exactly ``quantity``.

        Growing the hold is checked against availability exactly like a new
        reservation. Returns the previous held quantity.
        """
        now = now or utcnow()
        live = [r for r in self._live(now) if r.session_id == str(session_id)]
        if not live:
            raise ExpiredError(f"No active reservation for session {session_id} on {self.ledger_id(self.product_id, self.size)}")

        held = sum(r.reserved_qty for r in live)
        if quantity == held:
            return held

        if quantity > held:
            extra = quantity - held
            available = self.available(configured_qty, sold_qty, now)
            if extra > available:
                raise StockUnavailableError(
                    [
                        {
                            "product_id": str(self.product_id),
                            "size": self.size,
                            "requested": quantity,
                            "available": available + held,
                            "error": "Insufficient stock",
                        }
                    ]
                )

        # Collapse the session's holds on this size into the first one
        primary, *rest = live
        primary.reserved_qty = quantity
        for reservation in rest:
            reservation.status = ReservationStatus.RELEASED.value
            reservation.closed_at = now
        self.updated_at = now
        return held

    def release_for_session(self, session_id, terminal_status: ReservationStatus | str, now=None) -> int:
        """Move every Active reservation of a session to ``terminal_status``.

        Idempotent: reservations already in a terminal state are left as they
        are, so a repeated call changes nothing. Returns the number moved.
        """
        terminal_status = ReservationStatus(terminal_status)
        if terminal_status not in _TERMINAL_RESERVATION_STATES:
            raise ValidationError({"status": [f"{terminal_status.value} is not a terminal reservation status"]})

        now = now or utcnow()
        moved = 0
        for reservation in self.reservations_for_session(session_id):
            if ReservationStatus(reservation.status) == ReservationStatus.ACTIVE:
                reservation.status = terminal_status.value
                reservation.closed_at = now
                moved += 1

        if moved:
            self.updated_at = now
        return moved

    def extend_for_session(self, session_id, expires_at, now=None) -> int:
        """Push ``expires_at`` forward on a session's active reservations.

        Fails with ExpiredError once any of them has lapsed; a lapsed hold may
        already have been handed to another shopper and cannot be revived.
        """
        now = now or utcnow()
        active = [
            r
            for r in self.reservations_for_session(session_id)
            if ReservationStatus(r.status) == ReservationStatus.ACTIVE
        ]
        if not active or any(as_utc(r.expires_at) <= now for r in active):
            raise ExpiredError(f"Reservations for session {session_id} have expired")

        for reservation in active:
            if as_utc(reservation.expires_at) < expires_at:
                reservation.expires_at = expires_at
        self.updated_at = now
        return len(active)

    def expire_lapsed(self, now=None) -> int:
        """Rewrite the status of lapsed Active reservations to Expired."""
        now = now or utcnow()
        expired = 0
        for reservation in self.reservations:
            if ReservationStatus(reservation.status) == ReservationStatus.ACTIVE and as_utc(reservation.expires_at) <= now:
                reservation.status = ReservationStatus.EXPIRED.value
                reservation.closed_at = now
                expired += 1

        if expired:
            self.updated_at = now
        return expired
