"""Application tests for the payment handshake: validate, lock, verify and webhooks."""

from datetime import timedelta

import pytest
from checkout.coupon.coupon import Coupon
from checkout.errors import ExpiredError, GatewayError
from checkout.gateway.fake_adapter import VALID_SIGNATURE
from checkout.session.closing import CloseCheckoutSession
from checkout.session.coupons import ApplyCouponToSession
from checkout.session.finalization import VerifyPayment
from checkout.session.payment import LockForPayment, UnlockTotals, ValidateForPayment
from checkout.session.recovery import CheckPaymentStatus
from checkout.session.session import CheckoutSession, SessionStatus
from checkout.session.webhook import ProcessGatewayWebhook
from checkout.stock.ledger import ReservationStatus, StockLedger
from checkout.utils.clock import utcnow
from protean import current_domain
from protean.exceptions import InvalidOperationError, InvalidStateError, ValidationError


def _session(session_id):
    return current_domain.repository_for(CheckoutSession).get(session_id)


def _validate(session_id, customer_id="cust-001", address=None):
    return current_domain.process(
        ValidateForPayment(session_id=session_id, customer_id=customer_id, address=address),
        asynchronous=False,
    )


def _lock(session_id, customer_id="cust-001"):
    return current_domain.process(
        LockForPayment(session_id=session_id, customer_id=customer_id),
        asynchronous=False,
    )


def _ready_to_pay(open_session, items=None):
    session_id = open_session(items)
    _validate(session_id)
    order = _lock(session_id)
    return session_id, order


def _check_status(session_id, customer_id="cust-001"):
    return current_domain.process(
        CheckPaymentStatus(session_id=session_id, customer_id=customer_id),
        asynchronous=False,
    )


def _webhook(event_type, gateway_order_id, amount=None, payment_id="pay_001", reason=None):
    return current_domain.process(
        ProcessGatewayWebhook(
            event_type=event_type,
            gateway_order_id=gateway_order_id,
            payment_id=payment_id,
            amount=amount,
            currency="INR",
            reason=reason,
        ),
        asynchronous=False,
    )


class TestValidateForPayment:
    def test_valid_session(self, open_session):
        session_id = open_session()
        result = _validate(session_id, address='{"city": "Pune"}')

        assert result["valid"] is True
        assert result["stock_issues"] == []
        assert result["totals"]["final_total"] == 500.0
        session = _session(session_id)
        assert session.validated_at is not None
        assert session.validated_address == '{"city": "Pune"}'

    def test_price_change_reported(self, open_session, catalog):
        session_id = open_session()
        catalog.set_price("prod-tee", 550.0)

        result = _validate(session_id)

        assert result["valid"] is False
        assert result["price_changes"][0]["current_price"] == 550.0
        assert _session(session_id).validated_at is None

    def test_failed_revalidation_withdraws_earlier_validation(self, open_session, catalog):
        session_id = open_session()
        assert _validate(session_id)["valid"] is True
        catalog.set_price("prod-tee", 550.0)

        assert _validate(session_id)["valid"] is False
        assert _session(session_id).validated_at is None
        with pytest.raises(InvalidOperationError):
            _lock(session_id)
        assert _session(session_id).locked_totals is None

    def test_price_drift_within_tolerance_is_ignored(self, open_session, catalog):
        session_id = open_session()
        catalog.set_price("prod-tee", 500.005)
        assert _validate(session_id)["valid"] is True

    def test_coupon_that_stopped_qualifying_is_dropped(self, open_session, define_coupon):
        coupon_id = define_coupon("SAVE10")
        session_id = open_session()
        current_domain.process(
            ApplyCouponToSession(session_id=session_id, coupon_code="SAVE10", customer_id="cust-001"),
            asynchronous=False,
        )
        repo = current_domain.repository_for(Coupon)
        coupon = repo.get(coupon_id)
        coupon.is_active = False
        repo.add(coupon)

        result = _validate(session_id)

        assert result["valid"] is False
        assert result["coupon_error"] == "Coupon has expired or is not active"
        assert _session(session_id).applied_coupon is None

    def test_lapsed_session_cannot_be_validated(self, open_session, lapse):
        session_id = open_session()
        lapse(session_id)
        with pytest.raises(ExpiredError):
            _validate(session_id)


class TestLockForPayment:
    def test_lock_requires_recent_validation(self, open_session):
        session_id = open_session()
        with pytest.raises(InvalidOperationError):
            _lock(session_id)

    def test_lock_creates_gateway_order(self, open_session, gateway):
        session_id, order = _ready_to_pay(open_session, [{"product_id": "prod-tee", "size": "M", "quantity": 2}])

        assert order["amount"] == 100000
        assert order["currency"] == "INR"
        assert order["gateway_order_id"].startswith("order_fake_")
        assert gateway.calls[0]["amount"] == 100000
        assert gateway.calls[0]["reference"].startswith(f"{session_id}_")

        session = _session(session_id)
        assert session.locked_totals.final_total == 1000.0
        assert session.gateway_order_id == order["gateway_order_id"]

    def test_second_lock_refused(self, open_session):
        session_id, _ = _ready_to_pay(open_session)
        with pytest.raises(InvalidStateError):
            _lock(session_id)

    def test_gateway_failure_leaves_session_unlocked(self, open_session, gateway):
        gateway.configure(should_succeed=False, failure_reason="Gateway timeout")
        session_id = open_session()
        _validate(session_id)

        with pytest.raises(GatewayError):
            _lock(session_id)

        assert _session(session_id).locked_totals is None

    def test_session_close_to_lapsing_is_extended(self, open_session):
        session_id = open_session()
        soon = utcnow() + timedelta(minutes=2)

        session_repo = current_domain.repository_for(CheckoutSession)
        session = session_repo.get(session_id)
        session.expires_at = soon
        session_repo.add(session)
        ledger_repo = current_domain.repository_for(StockLedger)
        ledger = ledger_repo.get(StockLedger.ledger_id("prod-tee", "M"))
        ledger.reservations_for_session(session_id)[0].expires_at = soon
        ledger.updated_at = utcnow()
        ledger_repo.add(ledger)

        _validate(session_id)
        order = _lock(session_id)

        assert order["expires_at"] > utcnow() + timedelta(minutes=25)
        ledger = ledger_repo.get(StockLedger.ledger_id("prod-tee", "M"))
        assert ledger.reservations_for_session(session_id)[0].expires_at == order["expires_at"]

    def test_unlock_allows_changes_again(self, open_session):
        session_id, _ = _ready_to_pay(open_session)
        current_domain.process(UnlockTotals(session_id=session_id, customer_id="cust-001"), asynchronous=False)

        session = _session(session_id)
        assert session.locked_totals is None
        assert session.gateway_order_id is None


class TestVerifyPayment:
    def test_verified_payment_completes_session(self, open_session, catalog):
        session_id, order = _ready_to_pay(open_session)
        status = current_domain.process(
            VerifyPayment(
                session_id=session_id,
                gateway_order_id=order["gateway_order_id"],
                payment_id="pay_001",
                signature=VALID_SIGNATURE,
                customer_id="cust-001",
            ),
            asynchronous=False,
        )

        assert status == SessionStatus.COMPLETED.value
        assert _session(session_id).payment_reference == "pay_001"
        assert len(catalog.sales) == 1

    def test_bad_signature_rejected(self, open_session):
        session_id, order = _ready_to_pay(open_session)
        with pytest.raises(ValidationError):
            current_domain.process(
                VerifyPayment(
                    session_id=session_id,
                    gateway_order_id=order["gateway_order_id"],
                    payment_id="pay_001",
                    signature="forged",
                    customer_id="cust-001",
                ),
                asynchronous=False,
            )
        assert _session(session_id).status == SessionStatus.ACTIVE.value

    def test_order_of_another_session_rejected(self, open_session):
        session_id, _ = _ready_to_pay(open_session)
        with pytest.raises(ValidationError):
            current_domain.process(
                VerifyPayment(
                    session_id=session_id,
                    gateway_order_id="order_someone_else",
                    payment_id="pay_001",
                    signature=VALID_SIGNATURE,
                    customer_id="cust-001",
                ),
                asynchronous=False,
            )


class TestGatewayWebhook:
    def test_capture_completes_session(self, open_session):
        session_id, order = _ready_to_pay(open_session)
        status = _webhook("payment.captured", order["gateway_order_id"], amount=order["amount"])

        assert status == SessionStatus.COMPLETED.value
        ledger = current_domain.repository_for(StockLedger).get(StockLedger.ledger_id("prod-tee", "M"))
        assert ledger.reservations_for_session(session_id)[0].status == ReservationStatus.COMPLETED.value

    def test_capture_after_verify_is_a_no_op(self, open_session, catalog):
        session_id, order = _ready_to_pay(open_session)
        current_domain.process(
            VerifyPayment(
                session_id=session_id,
                gateway_order_id=order["gateway_order_id"],
                payment_id="pay_001",
                signature=VALID_SIGNATURE,
                customer_id="cust-001",
            ),
            asynchronous=False,
        )
        assert _webhook("payment.captured", order["gateway_order_id"], amount=order["amount"]) == "Completed"
        assert len(catalog.sales) == 1

    def test_amount_mismatch_is_not_completed(self, open_session):
        session_id, order = _ready_to_pay(open_session)
        assert _webhook("payment.captured", order["gateway_order_id"], amount=1) == "mismatch"
        assert _session(session_id).status == SessionStatus.ACTIVE.value

    def test_failed_payment_unlocks_session(self, open_session):
        session_id, order = _ready_to_pay(open_session)
        status = _webhook("payment.failed", order["gateway_order_id"], reason="Card declined")

        assert status == SessionStatus.ACTIVE.value
        session = _session(session_id)
        assert session.locked_totals is None
        assert session.gateway_order_id is None

    def test_unknown_order_ignored(self):
        assert _webhook("payment.captured", "order_unknown", amount=100) == "ignored"

    def test_unhandled_event_ignored(self, open_session):
        _, order = _ready_to_pay(open_session)
        assert _webhook("refund.created", order["gateway_order_id"]) == "ignored"

    def test_capture_for_cancelled_session_stays_cancelled(self, open_session, catalog):
        session_id, order = _ready_to_pay(open_session)
        current_domain.process(
            CloseCheckoutSession(session_id=session_id, customer_id="cust-001"),
            asynchronous=False,
        )

        assert _webhook("payment.captured", order["gateway_order_id"], amount=order["amount"]) == "Cancelled"
        assert catalog.sales == []


class TestPaymentStatusCheck:
    def test_captured_payment_completes_session(self, open_session, gateway, catalog):
        session_id, order = _ready_to_pay(open_session)
        gateway.record_payment(order["gateway_order_id"], "pay_late", order["amount"])

        assert _check_status(session_id) == SessionStatus.COMPLETED.value
        assert _session(session_id).payment_reference == "pay_late"
        assert len(catalog.sales) == 1

    def test_authorized_payment_counts(self, open_session, gateway):
        session_id, order = _ready_to_pay(open_session)
        gateway.record_payment(order["gateway_order_id"], "pay_failed", order["amount"], status="failed")
        gateway.record_payment(order["gateway_order_id"], "pay_auth", order["amount"], status="authorized")

        assert _check_status(session_id) == SessionStatus.COMPLETED.value
        assert _session(session_id).payment_reference == "pay_auth"

    def test_no_completed_payment_is_pending(self, open_session, gateway):
        session_id, order = _ready_to_pay(open_session)
        gateway.record_payment(order["gateway_order_id"], "pay_failed", order["amount"], status="failed")

        assert _check_status(session_id) == "pending"
        assert _session(session_id).status == SessionStatus.ACTIVE.value

    def test_amount_mismatch_is_not_completed(self, open_session, gateway, catalog):
        session_id, order = _ready_to_pay(open_session)
        gateway.record_payment(order["gateway_order_id"], "pay_short", order["amount"] - 100)

        assert _check_status(session_id) == "mismatch"
        assert _session(session_id).status == SessionStatus.ACTIVE.value
        assert catalog.sales == []

    def test_gateway_failure_raises(self, open_session, gateway):
        session_id, _ = _ready_to_pay(open_session)
        gateway.configure(should_succeed=False, failure_reason="Gateway timeout")

        with pytest.raises(GatewayError):
            _check_status(session_id)
        assert _session(session_id).status == SessionStatus.ACTIVE.value

    def test_session_without_payment_order_refused(self, open_session):
        session_id = open_session()
        with pytest.raises(InvalidOperationError):
            _check_status(session_id)

    def test_finished_session_is_left_alone(self, open_session, gateway, catalog):
        session_id, order = _ready_to_pay(open_session)
        _webhook("payment.captured", order["gateway_order_id"], amount=order["amount"])
        gateway.record_payment(order["gateway_order_id"], "pay_001", order["amount"])

        assert _check_status(session_id) == SessionStatus.COMPLETED.value
        assert len(catalog.sales) == 1
        assert not any(call["method"] == "fetch_payments" for call in gateway.calls)


class TestCompletionSideEffects:
    def test_coupon_usage_recorded_on_completion(self, open_session, define_coupon):
        coupon_id = define_coupon("SAVE10")
        session_id = open_session([{"product_id": "prod-tee", "size": "M", "quantity": 2}])
        current_domain.process(
            ApplyCouponToSession(session_id=session_id, coupon_code="SAVE10", customer_id="cust-001"),
            asynchronous=False,
        )
        _validate(session_id)
        order = _lock(session_id)
        assert order["amount"] == 92000

        _webhook("payment.captured", order["gateway_order_id"], amount=order["amount"])

        coupon = current_domain.repository_for(Coupon).get(coupon_id)
        assert coupon.usage_count == 1
