"""Tests for BookingScope values and descriptions."""

from app.scopes import BOOKING_SCOPE_DESCRIPTIONS, BookingScope


class TestBookingScopeValues:
    def test_client_read_scope(self):
        assert BookingScope.READ == "bookings:read"

    def test_client_cancel_scope(self):
        assert BookingScope.CANCEL == "bookings:cancel"

    def test_owner_manage_scope(self):
        assert BookingScope.MANAGE == "bookings:manage"

    def test_admin_super_scope(self):
        assert BookingScope.ADMIN == "admin:bookings"

    def test_admin_read_scope(self):
        assert BookingScope.ADMIN_READ == "admin:bookings:read"

    def test_scope_set(self):
        assert set(BookingScope) == {
            "bookings:read",
            "bookings:cancel",
            "bookings:manage",
            "admin:bookings",
            "admin:bookings:read",
        }

    def test_all_scopes_are_strings(self):
        for scope in BookingScope:
            assert isinstance(scope, str)


class TestBookingScopeDescriptions:
    def test_every_scope_has_a_description(self):
        for scope in BookingScope:
            assert scope in BOOKING_SCOPE_DESCRIPTIONS

    def test_all_description_values_are_non_empty_strings(self):
        for key, value in BOOKING_SCOPE_DESCRIPTIONS.items():
            assert isinstance(key, str)
            assert isinstance(value, str)
            assert len(value) > 0
