"""FastAPI routes for checkout sessions.

The acting shopper is identified by the ``X-Customer-Id`` header (an
authenticated customer) or ``X-Guest-Tracking-Id`` (an anonymous shopper).
Authentication itself happens upstream.
"""

import json

import structlog
from fastapi import APIRouter, Header, Request
from protean.exceptions import ValidationError
from protean.utils.globals import current_domain

from checkout.api.schemas import (
    ApplyCouponRequest,
    CheckoutSessionResponse,
    CloseSessionRequest,
    CreateCheckoutSessionRequest,
    ExpiredSessionsResponse,
    ExpireSessionsRequest,
    PaymentOrderResponse,
    StatusResponse,
    StockAvailabilityResponse,
    TotalsResponse,
    UnlockTotalsRequest,
    UpdateSessionItemRequest,
    ValidateForPaymentRequest,
    ValidationResponse,
    VerifyPaymentRequest,
)
from checkout.gateway import get_gateway
from checkout.session.closing import CloseCheckoutSession
from checkout.session.coupons import ApplyCouponToSession, RemoveCouponFromSession
from checkout.session.creation import CreateCheckoutSession, open_checkout_session
from checkout.session.expiry import ExpireLapsedSessions
from checkout.session.finalization import VerifyPayment
from checkout.session.items import UpdateSessionItemQuantity
from checkout.session.payment import LockForPayment, UnlockTotals, ValidateForPayment
from checkout.session.queries import get_session, load_session
from checkout.session.recovery import CheckPaymentStatus
from checkout.session.session import CheckoutSession
from checkout.session.webhook import ProcessGatewayWebhook
from checkout.stock.reservation import size_availability

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/checkout-sessions", tags=["checkout"])


def session_snapshot(session: CheckoutSession) -> CheckoutSessionResponse:
    coupon = session.applied_coupon
    locked = session.locked_totals
    return CheckoutSessionResponse(
        session_id=str(session.id),
        session_type=session.session_type,
        status=session.status,
        customer_id=str(session.customer_id) if session.customer_id else None,
        guest_tracking_id=session.guest_tracking_id,
        items=[
            {
                "product_id": str(item.product_id),
                "size": item.size,
                "quantity": item.quantity,
                "unit_price": item.unit_price,
                "name": item.name,
                "image": item.image,
                "slug": item.slug,
            }
            for item in session.items
        ],
        applied_coupon=(
            {
                "coupon_id": str(coupon.coupon_id),
                "code": coupon.code,
                "coupon_type": coupon.coupon_type,
                "value": coupon.value,
                "description": coupon.description,
                "discount_amount": coupon.discount_amount,
                "shipping_discount": coupon.shipping_discount,
                "applied_at": coupon.applied_at,
            }
            if coupon
            else None
        ),
        totals=session.calculate_totals().to_dict(),
        locked_totals=locked.to_dict() if locked else None,
        expires_at=session.expires_at,
        validated_at=session.validated_at,
        gateway_order_id=session.gateway_order_id,
    )


def _totals(session_id, customer_id, guest_tracking_id) -> TotalsResponse:
    session = load_session(session_id, customer_id, guest_tracking_id)
    return TotalsResponse(**session.calculate_totals().to_dict())


# ---------------------------------------------------------------------------
# Session lifecycle
# ---------------------------------------------------------------------------
@router.post("", status_code=201, response_model=CheckoutSessionResponse)
async def create_checkout_session(
    body: CreateCheckoutSessionRequest,
    x_customer_id: str | None = Header(default=None),
    x_guest_tracking_id: str | None = Header(default=None),
) -> CheckoutSessionResponse:
    """Open a checkout session and reserve stock for its items."""
    command = CreateCheckoutSession(
        session_type=body.session_type,
        items=json.dumps([item.model_dump() for item in body.items]),
        customer_id=x_customer_id,
        guest_tracking_id=None if x_customer_id else (x_guest_tracking_id or body.guest_tracking_id),
    )
    session_id = open_checkout_session(command)
    session = load_session(session_id, check_owner=False)
    return session_snapshot(session)


@router.get("/stock/{product_id}", response_model=StockAvailabilityResponse)
async def read_stock_availability(product_id: str) -> StockAvailabilityResponse:
    """Live per-size availability: configured minus sold minus active holds."""
    return StockAvailabilityResponse(product_id=product_id, sizes=size_availability(product_id))


@router.get("/{session_id}", response_model=CheckoutSessionResponse)
async def read_checkout_session(
    session_id: str,
    x_customer_id: str | None = Header(default=None),
    x_guest_tracking_id: str | None = Header(default=None),
) -> CheckoutSessionResponse:
    session = get_session(session_id, x_customer_id, x_guest_tracking_id)
    return session_snapshot(session)


@router.post("/{session_id}/close", response_model=StatusResponse)
async def close_checkout_session(
    session_id: str,
    body: CloseSessionRequest | None = None,
    x_customer_id: str | None = Header(default=None),
    x_guest_tracking_id: str | None = Header(default=None),
) -> StatusResponse:
    """Release the session's stock. Closing twice is harmless."""
    kwargs = {"reason": body.reason} if body and body.reason else {}
    status = current_domain.process(
        CloseCheckoutSession(
            session_id=session_id,
            customer_id=x_customer_id,
            guest_tracking_id=x_guest_tracking_id,
            **kwargs,
        ),
        asynchronous=False,
    )
    return StatusResponse(status=status)


# ---------------------------------------------------------------------------
# Coupons and items
# ---------------------------------------------------------------------------
@router.post("/{session_id}/coupon", response_model=TotalsResponse)
async def apply_coupon(
    session_id: str,
    body: ApplyCouponRequest,
    x_customer_id: str | None = Header(default=None),
    x_guest_tracking_id: str | None = Header(default=None),
) -> TotalsResponse:
    current_domain.process(
        ApplyCouponToSession(
            session_id=session_id,
            coupon_code=body.coupon_code,
            customer_id=x_customer_id,
            guest_tracking_id=x_guest_tracking_id,
        ),
        asynchronous=False,
    )
    return _totals(session_id, x_customer_id, x_guest_tracking_id)


@router.delete("/{session_id}/coupon", response_model=TotalsResponse)
async def remove_coupon(
    session_id: str,
    x_customer_id: str | None = Header(default=None),
    x_guest_tracking_id: str | None = Header(default=None),
) -> TotalsResponse:
    current_domain.process(
        RemoveCouponFromSession(
            session_id=session_id,
            customer_id=x_customer_id,
            guest_tracking_id=x_guest_tracking_id,
        ),
        asynchronous=False,
    )
    return _totals(session_id, x_customer_id, x_guest_tracking_id)


@router.patch("/{session_id}/items", response_model=TotalsResponse)
async def update_item_quantity(
    session_id: str,
    body: UpdateSessionItemRequest,
    x_customer_id: str | None = Header(default=None),
    x_guest_tracking_id: str | None = Header(default=None),
) -> TotalsResponse:
    current_domain.process(
        UpdateSessionItemQuantity(
            session_id=session_id,
            product_id=body.product_id,
            size=body.size,
            quantity=body.quantity,
            customer_id=x_customer_id,
            guest_tracking_id=x_guest_tracking_id,
        ),
        asynchronous=False,
    )
    return _totals(session_id, x_customer_id, x_guest_tracking_id)


# ---------------------------------------------------------------------------
# Payment
# ---------------------------------------------------------------------------
@router.post("/{session_id}/validate", response_model=ValidationResponse)
async def validate_for_payment(
    session_id: str,
    body: ValidateForPaymentRequest | None = None,
    x_customer_id: str | None = Header(default=None),
    x_guest_tracking_id: str | None = Header(default=None),
) -> ValidationResponse:
    address = body.address.model_dump() if body and body.address else None
    result = current_domain.process(
        ValidateForPayment(
            session_id=session_id,
            customer_id=x_customer_id,
            guest_tracking_id=x_guest_tracking_id,
            address=json.dumps(address) if address else None,
        ),
        asynchronous=False,
    )
    return ValidationResponse(**result)


@router.post("/{session_id}/payment", response_model=PaymentOrderResponse)
async def lock_for_payment(
    session_id: str,
    x_customer_id: str | None = Header(default=None),
    x_guest_tracking_id: str | None = Header(default=None),
) -> PaymentOrderResponse:
    """Lock totals and create the provider order the client pays against."""
    result = current_domain.process(
        LockForPayment(
            session_id=session_id,
            customer_id=x_customer_id,
            guest_tracking_id=x_guest_tracking_id,
        ),
        asynchronous=False,
    )
    session = load_session(session_id, x_customer_id, x_guest_tracking_id)
    return PaymentOrderResponse(
        session_id=session_id,
        gateway_order_id=result["gateway_order_id"],
        amount=result["amount"],
        currency=result["currency"],
        key_id=getattr(current_domain, "razorpay_key_id", None) or None,
        expires_at=result["expires_at"],
        locked_totals=session.locked_totals.to_dict(),
    )


@router.post("/{session_id}/unlock", response_model=TotalsResponse)
async def unlock_totals(
    session_id: str,
    body: UnlockTotalsRequest | None = None,
    x_customer_id: str | None = Header(default=None),
    x_guest_tracking_id: str | None = Header(default=None),
) -> TotalsResponse:
    kwargs = {"reason": body.reason} if body and body.reason else {}
    current_domain.process(
        UnlockTotals(
            session_id=session_id,
            customer_id=x_customer_id,
            guest_tracking_id=x_guest_tracking_id,
            **kwargs,
        ),
        asynchronous=False,
    )
    return _totals(session_id, x_customer_id, x_guest_tracking_id)


@router.post("/{session_id}/verify", response_model=StatusResponse)
async def verify_payment(
    session_id: str,
    body: VerifyPaymentRequest,
    x_customer_id: str | None = Header(default=None),
    x_guest_tracking_id: str | None = Header(default=None),
) -> StatusResponse:
    """Confirm a payment with the signature returned by the checkout widget."""
    status = current_domain.process(
        VerifyPayment(
            session_id=session_id,
            gateway_order_id=body.gateway_order_id,
            payment_id=body.payment_id,
            signature=body.signature,
            customer_id=x_customer_id,
            guest_tracking_id=x_guest_tracking_id,
        ),
        asynchronous=False,
    )
    return StatusResponse(status=status)


@router.post("/{session_id}/payment-status", response_model=StatusResponse)
async def check_payment_status(
    session_id: str,
    x_customer_id: str | None = Header(default=None),
    x_guest_tracking_id: str | None = Header(default=None),
) -> StatusResponse:
    """Look the payment up with the provider when the verify step never arrived."""
    status = current_domain.process(
        CheckPaymentStatus(
            session_id=session_id,
            customer_id=x_customer_id,
            guest_tracking_id=x_guest_tracking_id,
        ),
        asynchronous=False,
    )
    return StatusResponse(status=status)


@router.post("/webhooks/razorpay", response_model=StatusResponse)
async def razorpay_webhook(
    request: Request,
    x_razorpay_signature: str = Header(default=""),
) -> StatusResponse:
    """Acknowledge every provider callback; failures are logged for reconciliation."""
    payload = await request.body()
    if not get_gateway().verify_webhook_signature(payload, x_razorpay_signature):
        logger.warning("Rejected webhook with an invalid signature")
        return StatusResponse(status="ignored")

    try:
        event = json.loads(payload)
        entity = event["payload"]["payment"]["entity"]
        command = ProcessGatewayWebhook(
            event_type=event["event"],
            gateway_order_id=entity["order_id"],
            payment_id=entity.get("id"),
            amount=entity.get("amount"),
            currency=entity.get("currency"),
            reason=entity.get("error_description"),
        )
    except (ValueError, KeyError, TypeError, ValidationError) as exc:
        logger.warning("Malformed webhook payload", error=str(exc))
        return StatusResponse(status="ignored")

    try:
        result = current_domain.process(command, asynchronous=False)
    except Exception:  # noqa: BLE001
        logger.exception(
            "Webhook processing failed",
            event_type=command.event_type,
            gateway_order_id=command.gateway_order_id,
        )
        return StatusResponse(status="failed")
    return StatusResponse(status=result)


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------
@router.post("/maintenance/expire", response_model=ExpiredSessionsResponse)
async def expire_lapsed_sessions(body: ExpireSessionsRequest | None = None) -> ExpiredSessionsResponse:
    """Write down lapsed sessions and free their holds; safe to run on a schedule."""
    command = ExpireLapsedSessions(as_of=body.as_of) if body and body.as_of else ExpireLapsedSessions()
    expired_count = current_domain.process(command, asynchronous=False)
    return ExpiredSessionsResponse(expired_count=expired_count)
