"""Tests for the StockLedger aggregate: availability and reservation lifecycle."""

from datetime import timedelta

import pytest
from checkout.errors import ExpiredError, StockUnavailableError
from checkout.stock.ledger import ReservationStatus, StockLedger
from checkout.utils.clock import utcnow
from protean.exceptions import ValidationError


@pytest.fixture()
def ledger():
    return StockLedger.open("prod-tee", "M")


def _in(minutes):
    return utcnow() + timedelta(minutes=minutes)


class TestLedgerIdentity:
    def test_ledger_id_combines_product_and_size(self):
        assert StockLedger.ledger_id("prod-tee", "M") == "prod-tee::M"

    def test_open_starts_empty(self, ledger):
        assert ledger.id == "prod-tee::M"
        assert len(ledger.reservations) == 0


class TestAvailability:
    def test_available_without_reservations(self, ledger):
        assert ledger.available(configured_qty=5, sold_qty=2) == 3

    def test_live_reservations_reduce_availability(self, ledger):
        ledger.reserve("cs_1", 2, _in(15), configured_qty=5, sold_qty=2)
        assert ledger.available(5, 2) == 1
        assert ledger.active_reserved_qty() == 2

    def test_lapsed_reservation_stops_counting(self, ledger):
        now = utcnow()
        ledger.reserve("cs_1", 2, now + timedelta(minutes=15), 5, 2, now=now)
        later = now + timedelta(minutes=16)
        assert ledger.available(5, 2, now=later) == 3

    def test_reservation_expiring_exactly_now_is_not_live(self, ledger):
        now = utcnow()
        ledger.reserve("cs_1", 1, now + timedelta(minutes=1), 5, 0, now=now)
        assert ledger.active_reserved_qty(now + timedelta(minutes=1)) == 0

    def test_available_is_floored_at_zero(self, ledger):
        assert ledger.available(configured_qty=2, sold_qty=5) == 0


class TestReserve:
    def test_reserve_creates_active_hold(self, ledger):
        reservation = ledger.reserve("cs_1", 3, _in(15), 5, 2)
        assert reservation.status == ReservationStatus.ACTIVE.value
        assert reservation.reserved_qty == 3
        assert reservation.session_id == "cs_1"
        assert ledger.held_for_session("cs_1") == 3

    def test_reserve_beyond_availability_fails(self, ledger):
        ledger.reserve("cs_1", 2, _in(15), 5, 2)
        with pytest.raises(StockUnavailableError) as exc:
            ledger.reserve("cs_2", 2, _in(15), 5, 2)

        shortfall = exc.value.shortfalls[0]
        assert shortfall["requested"] == 2
        assert shortfall["available"] == 1
        assert len(ledger.reservations) == 1

    def test_reserve_requires_positive_quantity(self, ledger):
        with pytest.raises(ValidationError):
            ledger.reserve("cs_1", 0, _in(15), 5, 0)


class TestResize:
    def test_shrink_hold(self, ledger):
        ledger.reserve("cs_1", 3, _in(15), 5, 2)
        previous = ledger.resize_for_session("cs_1", 1, 5, 2)
        assert previous == 3
        assert ledger.held_for_session("cs_1") == 1
        assert ledger.available(5, 2) == 2

    def test_grow_hold_counts_own_units(self, ledger):
        ledger.reserve("cs_1", 1, _in(15), 5, 2)
        ledger.resize_for_session("cs_1", 3, 5, 2)
        assert ledger.held_for_session("cs_1") == 3

    def test_grow_hold_beyond_availability_fails(self, ledger):
        ledger.reserve("cs_1", 1, _in(15), 5, 2)
        ledger.reserve("cs_2", 2, _in(15), 5, 2)
        with pytest.raises(StockUnavailableError) as exc:
            ledger.resize_for_session("cs_1", 2, 5, 2)
        assert exc.value.shortfalls[0]["available"] == 1
        assert ledger.held_for_session("cs_1") == 1

    def test_resize_without_live_hold_fails(self, ledger):
        with pytest.raises(ExpiredError):
            ledger.resize_for_session("cs_1", 1, 5, 2)


class TestReleaseAndExtend:
    def test_release_moves_to_terminal_status(self, ledger):
        ledger.reserve("cs_1", 2, _in(15), 5, 2)
        assert ledger.release_for_session("cs_1", ReservationStatus.RELEASED) == 1

        reservation = ledger.reservations_for_session("cs_1")[0]
        assert reservation.status == ReservationStatus.RELEASED.value
        assert reservation.closed_at is not None
        assert ledger.available(5, 2) == 3

    def test_release_is_idempotent(self, ledger):
        ledger.reserve("cs_1", 2, _in(15), 5, 2)
        ledger.release_for_session("cs_1", ReservationStatus.COMPLETED)
        assert ledger.release_for_session("cs_1", ReservationStatus.RELEASED) == 0
        assert ledger.reservations_for_session("cs_1")[0].status == ReservationStatus.COMPLETED.value

    def test_release_rejects_active_as_target(self, ledger):
        with pytest.raises(ValidationError):
            ledger.release_for_session("cs_1", ReservationStatus.ACTIVE)

    def test_release_leaves_other_sessions_alone(self, ledger):
        ledger.reserve("cs_1", 1, _in(15), 5, 2)
        ledger.reserve("cs_2", 1, _in(15), 5, 2)
        ledger.release_for_session("cs_1", "Released")
        assert ledger.held_for_session("cs_2") == 1

    def test_extend_pushes_expiry(self, ledger):
        ledger.reserve("cs_1", 1, _in(3), 5, 2)
        target = _in(30)
        assert ledger.extend_for_session("cs_1", target) == 1
        assert ledger.reservations_for_session("cs_1")[0].expires_at == target

    def test_extend_lapsed_hold_fails(self, ledger):
        now = utcnow()
        ledger.reserve("cs_1", 1, now + timedelta(minutes=1), 5, 2, now=now)
        with pytest.raises(ExpiredError):
            ledger.extend_for_session("cs_1", now + timedelta(minutes=30), now=now + timedelta(minutes=2))

    def test_expire_lapsed_rewrites_status(self, ledger):
        now = utcnow()
        ledger.reserve("cs_1", 1, now + timedelta(minutes=1), 5, 2, now=now)
        ledger.reserve("cs_2", 1, now + timedelta(minutes=15), 5, 2, now=now)

        assert ledger.expire_lapsed(now + timedelta(minutes=2)) == 1
        assert ledger.reservations_for_session("cs_1")[0].status == ReservationStatus.EXPIRED.value
        assert ledger.reservations_for_session("cs_2")[0].status == ReservationStatus.ACTIVE.value
