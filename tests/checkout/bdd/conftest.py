"""Shared BDD fixtures and step definitions for checkout sessions."""

import json

import pytest
from checkout.errors import CouponError, StockUnavailableError
from checkout.session.coupons import ApplyCouponToSession
from checkout.session.creation import CreateCheckoutSession, open_checkout_session
from checkout.session.payment import LockForPayment, ValidateForPayment
from checkout.session.session import CheckoutSession
from checkout.session.webhook import ProcessGatewayWebhook
from checkout.stock.reservation import available_qty
from protean import current_domain
from pytest_bdd import given, parsers, then, when


@pytest.fixture()
def state():
    """What the scenario has done so far: the session, shopper, order and error."""
    return {"session_id": None, "customer_id": None, "order": None, "error": None}


def _open(state, customer_id, quantity, product_id, size):
    state["customer_id"] = customer_id
    try:
        state["session_id"] = open_checkout_session(
            CreateCheckoutSession(
                session_type="buy_now",
                items=json.dumps([{"product_id": product_id, "size": size, "quantity": quantity}]),
                customer_id=customer_id,
            )
        )
    except StockUnavailableError as exc:
        state["error"] = exc


def _create_payment_order(state):
    current_domain.process(
        ValidateForPayment(session_id=state["session_id"], customer_id=state["customer_id"]),
        asynchronous=False,
    )
    state["order"] = current_domain.process(
        LockForPayment(session_id=state["session_id"], customer_id=state["customer_id"]),
        asynchronous=False,
    )


# ---------------------------------------------------------------------------
# Given steps
# ---------------------------------------------------------------------------
@given(parsers.cfparse('product "{product_id}" size "{size}" has {configured:d} configured and {sold:d} sold at {price:f}'))
def product_in_catalog(catalog, product_id, size, configured, sold, price):
    catalog.add_product(product_id, price=price, sizes={size: configured}, sold={size: sold}, name=product_id)


@given(parsers.cfparse('a "{coupon_type}" coupon "{code}" worth {value:d} capped at {cap:f}'))
def coupon_defined(define_coupon, coupon_type, code, value, cap):
    define_coupon(code, coupon_type, float(value), max_discount=cap)


@given(parsers.cfparse('customer "{customer_id}" holds {quantity:d} of "{product_id}" size "{size}"'))
def customer_holds(state, customer_id, quantity, product_id, size):
    _open(state, customer_id, quantity, product_id, size)
    assert state["error"] is None


@given("the session has lapsed")
def session_lapsed(state, lapse):
    lapse(state["session_id"])


@given("the payment order for the session is created")
def payment_order_created(state):
    _create_payment_order(state)


# ---------------------------------------------------------------------------
# Steps shared by Given and When
# ---------------------------------------------------------------------------
@given(parsers.cfparse('coupon "{code}" is applied to the session'))
@when(parsers.cfparse('coupon "{code}" is applied to the session'))
def apply_coupon(state, code):
    try:
        current_domain.process(
            ApplyCouponToSession(session_id=state["session_id"], coupon_code=code, customer_id=state["customer_id"]),
            asynchronous=False,
        )
    except CouponError as exc:
        state["error"] = exc


@when(parsers.cfparse('customer "{customer_id}" opens a buy-now session for {quantity:d} of "{product_id}" size "{size}"'))
def open_buy_now_session(state, customer_id, quantity, product_id, size):
    _open(state, customer_id, quantity, product_id, size)


@when("the payment for the session is captured")
def payment_captured(state):
    if state["order"] is None:
        _create_payment_order(state)
    current_domain.process(
        ProcessGatewayWebhook(
            event_type="payment.captured",
            gateway_order_id=state["order"]["gateway_order_id"],
            payment_id="pay_bdd_001",
            amount=state["order"]["amount"],
            currency=state["order"]["currency"],
        ),
        asynchronous=False,
    )


# ---------------------------------------------------------------------------
# Then steps
# ---------------------------------------------------------------------------
@then(parsers.cfparse('the session is "{status}"'))
def session_status(state, status):
    assert state["error"] is None
    session = current_domain.repository_for(CheckoutSession).get(state["session_id"])
    assert session.status == status


@then(parsers.cfparse('{quantity:d} units of "{product_id}" size "{size}" are available'))
def units_available(catalog, quantity, product_id, size):
    info = catalog.get_size_info(product_id, size)
    assert available_qty(product_id, size, info.configured_qty, info.sold_qty) == quantity


@then(parsers.cfparse('{quantity:d} units of "{product_id}" size "{size}" are sold'))
def units_sold(catalog, quantity, product_id, size):
    assert catalog.get_size_info(product_id, size).sold_qty == quantity


@then(parsers.cfparse("the discount is {discount:f} and the final total is {final_total:f}"))
def session_totals(state, discount, final_total):
    totals = current_domain.repository_for(CheckoutSession).get(state["session_id"]).calculate_totals()
    assert totals.discount_amount == discount
    assert totals.final_total == final_total
