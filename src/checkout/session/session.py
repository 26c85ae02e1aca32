"""Checkout Session aggregate (CQRS) — one in-flight purchase attempt.

A session is opened for a buy-now click or a cart checkout. Creating it holds
stock for every line (see ``checkout.stock``); the session then carries an
optional coupon, a price lock for the payment attempt and the provider's order
id, until it reaches exactly one terminal outcome.

State machine:
    ACTIVE → ACTIVE      extend_for_payment (less than 5 minutes left)
    ACTIVE → CANCELLED   close by the owner
    ACTIVE → COMPLETED   payment confirmed (client verify or webhook)
    ACTIVE → EXPIRED     lapsed past expires_at

Expiry is lazy. A session whose ``expires_at`` has passed is treated as
expired by every read and write, whether or not its stored status has been
rewritten yet.

``finalize`` is the only way into a terminal state and the first durable
outcome wins: repeating it is a no-op, a different outcome raises
FinalizeConflict for the caller to log and leaves the status untouched.

Once totals are locked for payment the order cannot change (items, coupon)
until ``unlock_totals`` is called explicitly.
"""

import json
import secrets
import string
import time
from dataclasses import asdict, dataclass, field
from datetime import timedelta
from enum import Enum

from protean import invariant
from protean.exceptions import InvalidStateError, ValidationError
from protean.fields import (
    Boolean,
    DateTime,
    Float,
    HasMany,
    Identifier,
    Integer,
    String,
    Text,
    ValueObject,
)

from checkout.coupon.coupon import CouponType
from checkout.coupon.validator import CouponItem
from checkout.domain import checkout
from checkout.errors import CouponError, ExpiredError, FinalizeConflict
from checkout.session.events import (
    CheckoutSessionCancelled,
    CheckoutSessionCompleted,
    CheckoutSessionCreated,
    CheckoutSessionExpired,
    CouponApplied,
    CouponInvalidated,
    CouponRemoved,
    PaymentAttemptFailed,
    PaymentInitiated,
    PaymentValidated,
    SessionExtended,
    SessionItemQuantityChanged,
    TotalsLocked,
    TotalsUnlocked,
)
from checkout.stock.ledger import ReservationStatus
from checkout.utils.clock import as_utc, utcnow


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class SessionType(Enum):
    BUY_NOW = "buy_now"
    CART = "cart"


class SessionStatus(Enum):
    ACTIVE = "Active"
    CANCELLED = "Cancelled"
    COMPLETED = "Completed"
    EXPIRED = "Expired"


TERMINAL_STATES = {SessionStatus.CANCELLED, SessionStatus.COMPLETED, SessionStatus.EXPIRED}

# What each terminal outcome does to the session's reservations
RESERVATION_OUTCOME = {
    SessionStatus.CANCELLED: ReservationStatus.RELEASED,
    SessionStatus.COMPLETED: ReservationStatus.COMPLETED,
    SessionStatus.EXPIRED: ReservationStatus.EXPIRED,
}

_BASE36 = string.digits + string.ascii_lowercase


def generate_session_id() -> str:
    suffix = "".join(secrets.choice(_BASE36) for _ in range(9))
    return f"cs_{int(time.time() * 1000)}_{suffix}"


def generate_guest_tracking_id(session_type) -> str:
    prefix = "buy" if SessionType(session_type) == SessionType.BUY_NOW else "cart"
    return f"{prefix}_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


def _money(value: float) -> float:
    return round(value + 0.0, 2)


@dataclass(frozen=True)
class Totals:
    """Price breakdown of a session, as computed by ``calculate_totals``."""

    subtotal: float
    total_items: int
    discount_amount: float
    shipping_discount: float
    final_total: float
    item_discounts: dict = field(default_factory=dict)
    savings: float = 0.0

    def to_dict(self) -> dict:
        return asdict(self)


# ---------------------------------------------------------------------------
# Value Objects
# ---------------------------------------------------------------------------
@checkout.value_object(part_of="CheckoutSession")
class AppliedCoupon:
    """The coupon on a session together with the discount it was worth.

    Recomputed whenever the order changes, so the stored amounts always
    describe the current items.
    """

    coupon_id = Identifier(required=True)
    code = String(required=True, max_length=20)
    coupon_type = String(required=True, choices=CouponType)
    value = Float(required=True)
    description = String(max_length=500)
    discount_amount = Float(default=0.0)
    shipping_discount = Float(default=0.0)
    item_discounts = Text()  # JSON: {"<product_id>-<size>": amount}
    eligible_items = Text()  # JSON: ["<product_id>-<size>", ...]
    applied_at = DateTime()


@checkout.value_object(part_of="CheckoutSession")
class LockedTotals:
    """Totals frozen for one payment attempt; the amount the gateway charges."""

    subtotal = Float(required=True)
    total_items = Integer(required=True)
    discount_amount = Float(default=0.0)
    shipping_discount = Float(default=0.0)
    final_total = Float(required=True)
    currency = String(required=True, max_length=3)
    locked_at = DateTime(required=True)

    @property
    def amount_minor(self) -> int:
        """Final total in the currency's minor unit (paise for INR)."""
        return int(round(self.final_total * 100))


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------
@checkout.entity(part_of="CheckoutSession")
class SessionItem:
    """One line of the session with its price snapshot from creation time."""

    product_id = Identifier(required=True)
    size = String(required=True, max_length=50)
    quantity = Integer(required=True, min_value=1)
    unit_price = Float(required=True, min_value=0.0)
    name = String(max_length=255)
    image = String(max_length=1000)
    slug = String(max_length=255)
    category_id = Identifier()
    is_discounted = Boolean(default=False)

    @property
    def key(self) -> str:
        return f"{self.product_id}-{self.size}"


# ---------------------------------------------------------------------------
# Aggregate Root
# ---------------------------------------------------------------------------
@checkout.aggregate
class CheckoutSession:
    session_type = String(required=True, choices=SessionType)
    items = HasMany(SessionItem)
    customer_id = Identifier()
    guest_tracking_id = String(max_length=100)
    applied_coupon = ValueObject(AppliedCoupon)
    status = String(choices=SessionStatus, default=SessionStatus.ACTIVE.value)
    expires_at = DateTime(required=True)
    locked_totals = ValueObject(LockedTotals)
    validated_at = DateTime()
    validated_address = Text()  # JSON address captured at payment validation
    payment_initiated_at = DateTime()
    gateway_order_id = String(max_length=100)
    payment_reference = String(max_length=100)
    terminal_reason = String(max_length=255)
    created_at = DateTime()
    updated_at = DateTime()

    @invariant.post
    def must_have_exactly_one_owner(self):
        if bool(self.customer_id) == bool(self.guest_tracking_id):
            raise ValidationError({"owner": ["A session belongs to exactly one customer or guest"]})

    # -------------------------------------------------------------------
    # Factory
    # -------------------------------------------------------------------
    @classmethod
    def create(cls, session_type, items, customer_id=None, guest_tracking_id=None, ttl_minutes=15, session_id=None, now=None):
        """Open a session for priced items.

        Args:
            items: List of dicts with product_id, size, quantity, unit_price and
                optionally name, image, slug, category_id, is_discounted.
        """
        if not items:
            raise ValidationError({"items": ["A checkout session needs at least one item"]})

        now = now or utcnow()
        session = cls(
            id=session_id or generate_session_id(),
            session_type=SessionType(session_type).value,
            items=[SessionItem(**item) for item in items],
            customer_id=customer_id,
            guest_tracking_id=guest_tracking_id,
            status=SessionStatus.ACTIVE.value,
            expires_at=now + timedelta(minutes=ttl_minutes),
            created_at=now,
            updated_at=now,
        )

        session.raise_(
            CheckoutSessionCreated(
                session_id=str(session.id),
                session_type=session.session_type,
                customer_id=str(customer_id) if customer_id else None,
                guest_tracking_id=guest_tracking_id,
                items=json.dumps(
                    [
                        {
                            "product_id": str(item.product_id),
                            "size": item.size,
                            "quantity": item.quantity,
                            "unit_price": item.unit_price,
                        }
                        for item in session.items
                    ]
                ),
                expires_at=session.expires_at,
            )
        )
        return session

    # -------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------
    def is_expired(self, now=None) -> bool:
        return as_utc(self.expires_at) <= (now or utcnow())

    def effective_status(self, now=None) -> SessionStatus:
        """Stored status, with a lapsed Active session reported as Expired."""
        status = SessionStatus(self.status)
        if status == SessionStatus.ACTIVE and self.is_expired(now):
            return SessionStatus.EXPIRED
        return status

    def is_open(self, now=None) -> bool:
        return self.effective_status(now) == SessionStatus.ACTIVE

    def owned_by(self, customer_id=None, guest_tracking_id=None) -> bool:
        if self.customer_id:
            return customer_id is not None and str(customer_id) == str(self.customer_id)
        return guest_tracking_id is not None and guest_tracking_id == self.guest_tracking_id

    def find_item(self, product_id, size):
        return next(
            (i for i in self.items if str(i.product_id) == str(product_id) and i.size == size),
            None,
        )

    def stock_keys(self) -> list[tuple[str, str]]:
        return [(str(item.product_id), item.size) for item in self.items]

    def coupon_items(self) -> list[CouponItem]:
        return [
            CouponItem(
                product_id=str(item.product_id),
                size=item.size,
                quantity=item.quantity,
                price=item.unit_price,
                category_id=str(item.category_id) if item.category_id else None,
                is_discounted=bool(item.is_discounted),
            )
            for item in self.items
        ]

    def calculate_totals(self) -> Totals:
        """Price breakdown of the current items and coupon. Pure."""
        subtotal = sum(item.unit_price * item.quantity for item in self.items)
        total_items = sum(item.quantity for item in self.items)

        coupon = self.applied_coupon
        discount = (coupon.discount_amount or 0.0) if coupon else 0.0
        shipping = (coupon.shipping_discount or 0.0) if coupon else 0.0
        item_discounts = json.loads(coupon.item_discounts) if coupon and coupon.item_discounts else {}

        return Totals(
            subtotal=_money(subtotal),
            total_items=total_items,
            discount_amount=_money(discount),
            shipping_discount=_money(shipping),
            final_total=_money(max(0.0, subtotal - discount - shipping)),
            item_discounts=item_discounts,
            savings=_money(discount + shipping),
        )

    def is_validation_fresh(self, window_minutes, now=None) -> bool:
        if self.validated_at is None:
            return False
        return (now or utcnow()) - as_utc(self.validated_at) <= timedelta(minutes=window_minutes)

    # -------------------------------------------------------------------
    # Guards
    # -------------------------------------------------------------------
    def ensure_open(self, now=None):
        status = SessionStatus(self.status)
        if status != SessionStatus.ACTIVE:
            raise InvalidStateError(f"Checkout session is {status.value.lower()}")
        if self.is_expired(now):
            raise ExpiredError("Checkout session has expired")

    def ensure_unlocked(self):
        if self.locked_totals is not None:
            raise InvalidStateError("Totals are locked for payment; unlock them before changing the order")

    # -------------------------------------------------------------------
    # Coupons
    # -------------------------------------------------------------------
    def apply_coupon(self, validation, now=None):
        """Store a validated coupon. ``validation`` is a CouponValidation."""
        now = now or utcnow()
        self.ensure_open(now)
        self.ensure_unlocked()
        if not validation.is_valid:
            raise CouponError(validation.error or "Invalid coupon")

        self.applied_coupon = AppliedCoupon(**validation.to_applied_coupon(now))
        self.updated_at = now

        self.raise_(
            CouponApplied(
                session_id=str(self.id),
                coupon_id=str(self.applied_coupon.coupon_id),
                code=self.applied_coupon.code,
                discount_amount=self.applied_coupon.discount_amount,
                shipping_discount=self.applied_coupon.shipping_discount,
            )
        )

    def remove_coupon(self, now=None) -> bool:
        """Clear the applied coupon. Returns False when there was none."""
        now = now or utcnow()
        self.ensure_open(now)
        self.ensure_unlocked()
        if self.applied_coupon is None:
            return False

        code = self.applied_coupon.code
        self.applied_coupon = None
        self.updated_at = now

        self.raise_(CouponRemoved(session_id=str(self.id), code=code))
        return True

    def revalidate_coupon(self, validation, now=None):
        """Reprice the applied coupon after an order change, or drop it."""
        if self.applied_coupon is None:
            return

        now = now or utcnow()
        if validation.is_valid:
            applied_at = self.applied_coupon.applied_at
            self.applied_coupon = AppliedCoupon(**validation.to_applied_coupon(applied_at or now))
            self.updated_at = now
            return

        code = self.applied_coupon.code
        self.applied_coupon = None
        self.updated_at = now
        self.raise_(CouponInvalidated(session_id=str(self.id), code=code, reason=validation.error))

    # -------------------------------------------------------------------
    # Items
    # -------------------------------------------------------------------
    def update_item_quantity(self, product_id, size, quantity, max_quantity=10, now=None) -> int:
        """Change one line's quantity. Returns the previous quantity."""
        now = now or utcnow()
        self.ensure_open(now)
        self.ensure_unlocked()
        if quantity < 1 or quantity > max_quantity:
            raise ValidationError({"quantity": [f"Quantity must be between 1 and {max_quantity}"]})

        item = self.find_item(product_id, size)
        if item is None:
            raise ValidationError({"item": [f"{product_id} ({size}) is not part of this session"]})

        previous_quantity = item.quantity
        if previous_quantity == quantity:
            return previous_quantity

        item.quantity = quantity
        # Any earlier payment validation no longer describes this order
        self.validated_at = None
        self.updated_at = now

        self.raise_(
            SessionItemQuantityChanged(
                session_id=str(self.id),
                product_id=str(product_id),
                size=size,
                previous_quantity=previous_quantity,
                new_quantity=quantity,
            )
        )
        return previous_quantity

    # -------------------------------------------------------------------
    # Payment
    # -------------------------------------------------------------------
    def record_validation(self, address=None, now=None):
        """Mark the order as re-checked for payment at ``now``."""
        now = now or utcnow()
        self.ensure_open(now)
        self.ensure_unlocked()

        self.validated_at = now
        self.validated_address = json.dumps(address) if address else None
        self.updated_at = now

        self.raise_(PaymentValidated(session_id=str(self.id), validated_at=now))

    def discard_validation(self, now=None) -> bool:
        """Forget an earlier payment validation after a failed re-check."""
        if self.validated_at is None:
            return False
        self.validated_at = None
        self.updated_at = now or utcnow()
        return True

    def lock_totals(self, currency="INR", now=None) -> LockedTotals:
        """Freeze the current totals for one payment attempt.

        Locking twice is refused; call ``unlock_totals`` first.
        """
        now = now or utcnow()
        self.ensure_open(now)
        if self.locked_totals is not None:
            raise InvalidStateError("Totals are already locked; unlock them before locking again")

        totals = self.calculate_totals()
        self.locked_totals = LockedTotals(
            subtotal=totals.subtotal,
            total_items=totals.total_items,
            discount_amount=totals.discount_amount,
            shipping_discount=totals.shipping_discount,
            final_total=totals.final_total,
            currency=currency,
            locked_at=now,
        )
        self.updated_at = now

        self.raise_(
            TotalsLocked(
                session_id=str(self.id),
                final_total=totals.final_total,
                currency=currency,
                locked_at=now,
            )
        )
        return self.locked_totals

    def unlock_totals(self, reason="", now=None) -> bool:
        """Release locked totals and the provider order tied to them."""
        now = now or utcnow()
        if SessionStatus(self.status) != SessionStatus.ACTIVE:
            raise InvalidStateError(f"Checkout session is {SessionStatus(self.status).value.lower()}")
        if self.locked_totals is None:
            return False

        self.locked_totals = None
        self.gateway_order_id = None
        self.payment_initiated_at = None
        self.updated_at = now

        self.raise_(TotalsUnlocked(session_id=str(self.id), reason=reason))
        return True

    def extend_for_payment(self, low_water_minutes=5, extension_minutes=30, now=None):
        """Extend a session about to lapse so it outlives the payment detour.

        Returns the new ``expires_at``, or None when enough time is left.
        A session that has already lapsed is never revived.
        """
        now = now or utcnow()
        self.ensure_open(now)

        remaining = as_utc(self.expires_at) - now
        if remaining >= timedelta(minutes=low_water_minutes):
            return None

        self.expires_at = now + timedelta(minutes=extension_minutes)
        self.updated_at = now

        self.raise_(SessionExtended(session_id=str(self.id), expires_at=self.expires_at))
        return self.expires_at

    def record_gateway_order(self, gateway_order_id, now=None):
        now = now or utcnow()
        self.ensure_open(now)
        if self.locked_totals is None:
            raise InvalidStateError("Totals must be locked before a payment order is created")

        self.gateway_order_id = gateway_order_id
        self.payment_initiated_at = now
        self.updated_at = now

        self.raise_(
            PaymentInitiated(
                session_id=str(self.id),
                gateway_order_id=gateway_order_id,
                amount=self.locked_totals.amount_minor,
                currency=self.locked_totals.currency,
            )
        )

    def record_payment_failure(self, payment_reference=None, reason="", now=None) -> bool:
        """Note a failed payment and unlock so the shopper can try again."""
        now = now or utcnow()
        if not self.is_open(now):
            return False

        self.raise_(
            PaymentAttemptFailed(
                session_id=str(self.id),
                gateway_order_id=self.gateway_order_id,
                payment_reference=payment_reference,
                reason=reason,
            )
        )
        self.unlock_totals(reason=f"Payment failed: {reason}" if reason else "Payment failed", now=now)
        self.updated_at = now
        return True

    # -------------------------------------------------------------------
    # Terminal transitions
    # -------------------------------------------------------------------
    def finalize(self, outcome, payment_reference=None, reason=None, now=None) -> bool:
        """Move to a terminal outcome; the first durable outcome wins.

        Returns True when the status changed and False when the session was
        already in ``outcome``. Raises FinalizeConflict when it already holds a
        different terminal outcome. A session found lapsed is first recorded
        as Expired, so a late completion conflicts with that expiry.
        """
        now = now or utcnow()
        outcome = SessionStatus(outcome)
        if outcome not in TERMINAL_STATES:
            raise ValidationError({"outcome": [f"{outcome.value} is not a terminal outcome"]})

        current = SessionStatus(self.status)
        if current == SessionStatus.ACTIVE and outcome != SessionStatus.EXPIRED and self.is_expired(now):
            self._close(SessionStatus.EXPIRED, now, reason="Lapsed before it could be finalized")
            current = SessionStatus.EXPIRED

        if current == outcome:
            return False
        if current != SessionStatus.ACTIVE:
            raise FinalizeConflict(str(self.id), current.value, outcome.value)

        self._close(outcome, now, payment_reference=payment_reference, reason=reason)
        return True

    def _close(self, outcome, now, payment_reference=None, reason=None):
        self.status = outcome.value
        self.terminal_reason = reason
        self.updated_at = now

        if outcome == SessionStatus.CANCELLED:
            self.raise_(CheckoutSessionCancelled(session_id=str(self.id), reason=reason, cancelled_at=now))
        elif outcome == SessionStatus.EXPIRED:
            self.raise_(CheckoutSessionExpired(session_id=str(self.id), expired_at=now))
        else:
            self.payment_reference = payment_reference
            final_total = self.locked_totals.final_total if self.locked_totals else self.calculate_totals().final_total
            coupon = self.applied_coupon
            self.raise_(
                CheckoutSessionCompleted(
                    session_id=str(self.id),
                    payment_reference=payment_reference,
                    customer_id=str(self.customer_id) if self.customer_id else None,
                    guest_tracking_id=self.guest_tracking_id,
                    items=json.dumps(
                        [
                            {"product_id": str(item.product_id), "size": item.size, "quantity": item.quantity}
                            for item in self.items
                        ]
                    ),
                    coupon_id=str(coupon.coupon_id) if coupon else None,
                    coupon_code=coupon.code if coupon else None,
                    discount_amount=coupon.discount_amount if coupon else 0.0,
                    final_total=final_total,
                    completed_at=now,
                )
            )
