"""Pydantic request/response schemas for the Checkout API.

These are external contracts (anti-corruption layer) — separate from
internal Protean commands.
"""

from datetime import datetime

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Shared sub-models
# ---------------------------------------------------------------------------
class SessionItemSchema(BaseModel):
    product_id: str
    size: str
    quantity: int = Field(ge=1)


class AddressSchema(BaseModel):
    name: str
    line1: str
    line2: str | None = None
    city: str
    state: str | None = None
    postal_code: str
    country: str = "IN"
    phone: str | None = None


# ---------------------------------------------------------------------------
# Request Schemas
# ---------------------------------------------------------------------------
class CreateCheckoutSessionRequest(BaseModel):
    session_type: str = Field(pattern="^(buy_now|cart)$")
    items: list[SessionItemSchema] = Field(min_length=1)
    guest_tracking_id: str | None = None

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "session_type": "buy_now",
                    "items": [{"product_id": "prod-001", "size": "M", "quantity": 1}],
                }
            ]
        }
    }


class ApplyCouponRequest(BaseModel):
    coupon_code: str


class UpdateSessionItemRequest(BaseModel):
    product_id: str
    size: str
    quantity: int = Field(ge=1)


class CloseSessionRequest(BaseModel):
    reason: str | None = None


class ValidateForPaymentRequest(BaseModel):
    address: AddressSchema | None = None


class UnlockTotalsRequest(BaseModel):
    reason: str | None = None


class VerifyPaymentRequest(BaseModel):
    gateway_order_id: str
    payment_id: str
    signature: str


class ExpireSessionsRequest(BaseModel):
    as_of: datetime | None = None


# ---------------------------------------------------------------------------
# Response Schemas
# ---------------------------------------------------------------------------
class SessionItemResponse(BaseModel):
    product_id: str
    size: str
    quantity: int
    unit_price: float
    name: str | None = None
    image: str | None = None
    slug: str | None = None


class TotalsResponse(BaseModel):
    subtotal: float
    total_items: int
    discount_amount: float
    shipping_discount: float
    final_total: float
    item_discounts: dict[str, float] = {}
    savings: float = 0.0


class AppliedCouponResponse(BaseModel):
    coupon_id: str
    code: str
    coupon_type: str
    value: float
    description: str | None = None
    discount_amount: float
    shipping_discount: float
    applied_at: datetime | None = None


class LockedTotalsResponse(BaseModel):
    subtotal: float
    total_items: int
    discount_amount: float
    shipping_discount: float
    final_total: float
    currency: str
    locked_at: datetime


class CheckoutSessionResponse(BaseModel):
    session_id: str
    session_type: str
    status: str
    customer_id: str | None = None
    guest_tracking_id: str | None = None
    items: list[SessionItemResponse]
    applied_coupon: AppliedCouponResponse | None = None
    totals: TotalsResponse
    locked_totals: LockedTotalsResponse | None = None
    expires_at: datetime
    validated_at: datetime | None = None
    gateway_order_id: str | None = None


class ValidationResponse(BaseModel):
    valid: bool
    stock_issues: list[dict] = []
    price_changes: list[dict] = []
    coupon_error: str | None = None
    totals: TotalsResponse


class PaymentOrderResponse(BaseModel):
    session_id: str
    gateway_order_id: str
    amount: int
    currency: str
    key_id: str | None = None
    expires_at: datetime
    locked_totals: LockedTotalsResponse


class StatusResponse(BaseModel):
    status: str


class ExpiredSessionsResponse(BaseModel):
    expired_count: int


class SizeAvailabilityResponse(BaseModel):
    size: str
    available_qty: int


class StockAvailabilityResponse(BaseModel):
    product_id: str
    sizes: list[SizeAvailabilityResponse]
