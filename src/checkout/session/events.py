"""Domain events for the CheckoutSession aggregate."""

from protean.fields import DateTime, Float, Identifier, Integer, String, Text

from checkout.domain import checkout


@checkout.event(part_of="CheckoutSession")
class CheckoutSessionCreated:
    """A checkout session was opened and its stock reserved."""

    __version__ = 1

    session_id = Identifier(required=True)
    session_type = String(required=True)
    customer_id = Identifier()
    guest_tracking_id = String()
    items = Text(required=True)  # JSON: list of {product_id, size, quantity, unit_price}
    expires_at = DateTime(required=True)


@checkout.event(part_of="CheckoutSession")
class CouponApplied:
    """A coupon was validated and applied to the session."""

    __version__ = 1

    session_id = Identifier(required=True)
    coupon_id = Identifier(required=True)
    code = String(required=True)
    discount_amount = Float(required=True)
    shipping_discount = Float(default=0.0)


@checkout.event(part_of="CheckoutSession")
class CouponRemoved:
    """The shopper removed the applied coupon."""

    __version__ = 1

    session_id = Identifier(required=True)
    code = String(required=True)


@checkout.event(part_of="CheckoutSession")
class CouponInvalidated:
    """An applied coupon stopped qualifying after the order changed."""

    __version__ = 1

    session_id = Identifier(required=True)
    code = String(required=True)
    reason = String(max_length=500)


@checkout.event(part_of="CheckoutSession")
class SessionItemQuantityChanged:
    """The quantity of one session line was changed and its hold resized."""

    __version__ = 1

    session_id = Identifier(required=True)
    product_id = Identifier(required=True)
    size = String(required=True)
    previous_quantity = Integer(required=True)
    new_quantity = Integer(required=True)


@checkout.event(part_of="CheckoutSession")
class PaymentValidated:
    """Stock, prices and coupon were re-checked right before payment."""

    __version__ = 1

    session_id = Identifier(required=True)
    validated_at = DateTime(required=True)


@checkout.event(part_of="CheckoutSession")
class TotalsLocked:
    """The price breakdown was frozen for a payment attempt."""

    __version__ = 1

    session_id = Identifier(required=True)
    final_total = Float(required=True)
    currency = String(required=True)
    locked_at = DateTime(required=True)


@checkout.event(part_of="CheckoutSession")
class TotalsUnlocked:
    """Locked totals were explicitly released so the session can change again."""

    __version__ = 1

    session_id = Identifier(required=True)
    reason = String(max_length=500)


@checkout.event(part_of="CheckoutSession")
class SessionExtended:
    """The session and its reservations were extended to cover payment."""

    __version__ = 1

    session_id = Identifier(required=True)
    expires_at = DateTime(required=True)


@checkout.event(part_of="CheckoutSession")
class PaymentInitiated:
    """A provider order was created for the locked total."""

    __version__ = 1

    session_id = Identifier(required=True)
    gateway_order_id = String(required=True)
    amount = Integer(required=True)  # minor units
    currency = String(required=True)


@checkout.event(part_of="CheckoutSession")
class PaymentAttemptFailed:
    """The provider reported a failed payment; the session stays open."""

    __version__ = 1

    session_id = Identifier(required=True)
    gateway_order_id = String()
    payment_reference = String()
    reason = String(max_length=500)


@checkout.event(part_of="CheckoutSession")
class CheckoutSessionCancelled:
    """The session was closed before payment completed."""

    __version__ = 1

    session_id = Identifier(required=True)
    reason = String(max_length=255)
    cancelled_at = DateTime(required=True)


@checkout.event(part_of="CheckoutSession")
class CheckoutSessionExpired:
    """The session lapsed without a payment."""

    __version__ = 1

    session_id = Identifier(required=True)
    expired_at = DateTime(required=True)


@checkout.event(part_of="CheckoutSession")
class CheckoutSessionCompleted:
    """Payment was confirmed and the reserved stock is sold."""

    __version__ = 1

    session_id = Identifier(required=True)
    payment_reference = String()
    customer_id = Identifier()
    guest_tracking_id = String()
    items = Text(required=True)  # JSON: list of {product_id, size, quantity}
    coupon_id = Identifier()
    coupon_code = String()
    discount_amount = Float(default=0.0)
    final_total = Float(required=True)
    completed_at = DateTime(required=True)
