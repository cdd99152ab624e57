"""Tests for the canonical Booking record and its normalization step."""

from __future__ import annotations

from datetime import date, timedelta
from decimal import Decimal

import pytest
from pydantic import ValidationError

from app.schemas import Booking, BookingStatus, ExchangeRates, normalize_booking_payload

from .factories import (
    CLIENT_ID,
    NOW,
    OWNER_ID,
    START_DATE,
    booking_payload,
    make_booking,
    payload_in,
)


class TestNormalization:
    def test_camel_and_snake_keys_land_on_the_same_field(self):
        booking = make_booking()
        assert booking.start_date == START_DATE
        assert booking.price_per_day == Decimal("350.00")
        assert booking.total_price == Decimal("1050.00")
        assert booking.deposit_amount == Decimal("2000")

    def test_nested_party_keys_are_normalized(self):
        booking = make_booking()
        assert booking.client.first_name == "Sara"
        assert booking.owner.first_name == "Youssef"

    def test_first_non_null_spelling_wins(self):
        data = normalize_booking_payload({"totalPrice": None, "total_price": "10.00"})
        assert data["total_price"] == "10.00"

    def test_iso_timestamps_collapse_to_utc_dates(self):
        booking = Booking.model_validate(
            booking_payload(
                startDate="2026-06-02T23:30:00-02:00",
                end_date="2026-06-06T00:00:00.000Z",
            )
        )
        assert booking.start_date == date(2026, 6, 3)
        assert booking.end_date == date(2026, 6, 6)

    def test_party_ids_fall_back_to_nested_objects(self):
        payload = booking_payload()
        del payload["client_id"]
        del payload["ownerId"]
        booking = Booking.model_validate(payload)
        assert booking.client_id == str(CLIENT_ID)
        assert booking.owner_id == str(OWNER_ID)

    def test_naive_deadline_is_read_as_utc(self):
        naive = (NOW + timedelta(hours=3)).replace(tzinfo=None).isoformat()
        booking = Booking.model_validate(booking_payload(ownerResponseDeadline=naive))
        assert booking.owner_response_deadline == NOW + timedelta(hours=3)


class TestDeadlineInvariant:
    @pytest.mark.parametrize("status", list(BookingStatus))
    def test_at_most_one_deadline_and_only_in_its_state(self, status):
        payload = payload_in(
            status,
            ownerResponseDeadline=(NOW + timedelta(hours=3)).isoformat(),
            paymentDeadline=(NOW + timedelta(hours=1)).isoformat(),
        )
        booking = Booking.model_validate(payload)

        deadlines = [booking.owner_response_deadline, booking.payment_deadline]
        assert sum(d is not None for d in deadlines) <= 1
        if booking.owner_response_deadline is not None:
            assert booking.status == BookingStatus.PENDING_OWNER
        if booking.payment_deadline is not None:
            assert booking.status == BookingStatus.WAITING_PAYMENT

    def test_pending_owner_requires_a_response_deadline(self):
        with pytest.raises(ValidationError):
            Booking.model_validate(booking_payload(ownerResponseDeadline=None))

    def test_waiting_payment_requires_a_payment_deadline(self):
        with pytest.raises(ValidationError):
            Booking.model_validate(payload_in("waiting_payment", paymentDeadline=None))

    def test_deadline_property_follows_status(self):
        assert make_booking("pending_owner").deadline == NOW + timedelta(hours=3)
        assert make_booking("waiting_payment").deadline == NOW + timedelta(hours=1)
        assert make_booking("confirmed").deadline is None


class TestBookingInvariants:
    def test_end_must_follow_start(self):
        with pytest.raises(ValidationError):
            Booking.model_validate(booking_payload(end_date=START_DATE.isoformat()))

    def test_owner_share_cannot_exceed_total(self):
        with pytest.raises(ValidationError):
            Booking.model_validate(booking_payload(owner_payment_amount="2000.00"))

    def test_negative_amounts_rejected(self):
        with pytest.raises(ValidationError):
            Booking.model_validate(booking_payload(delivery_fee="-1"))

    def test_booking_is_immutable(self):
        booking = make_booking()
        with pytest.raises(ValidationError):
            booking.status = BookingStatus.CANCELLED

    def test_evolve_returns_validated_copy(self):
        booking = make_booking()
        cancelled = booking.evolve(status=BookingStatus.CANCELLED)
        assert booking.status == BookingStatus.PENDING_OWNER
        assert cancelled.status == BookingStatus.CANCELLED
        assert cancelled.owner_response_deadline is None

    def test_rental_days(self):
        assert make_booking().rental_days == 3

    def test_terminal_flag(self):
        assert make_booking("rejected").is_terminal
        assert not make_booking("confirmed").is_terminal


class TestExchangeRates:
    def test_unknown_currencies_are_dropped(self):
        rates = ExchangeRates.model_validate(
            {"rates": {"USD": "10.60", "GBP": "12.80"}, "margin": 0.02}
        )
        assert set(rates.rates) == {"USD"}
        assert rates.rates["USD"] == Decimal("10.60")
