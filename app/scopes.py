from enum import StrEnum


class BookingScope(StrEnum):
    # Client scopes
    READ = "bookings:read"  # view own bookings
    CANCEL = "bookings:cancel"  # cancel own pending / unpaid booking

    # Owner scopes
    MANAGE = "bookings:manage"  # accept / reject / validate delivery code on own cars

    # Admin scopes
    ADMIN = "admin:bookings"
    ADMIN_READ = "admin:bookings:read"


BOOKING_SCOPE_DESCRIPTIONS: dict[str, str] = {
    BookingScope.READ: "View your own bookings.",
    BookingScope.CANCEL: "Cancel your own booking before it is paid.",
    BookingScope.MANAGE: "Accept, reject and hand over bookings for your cars.",
    BookingScope.ADMIN: "Full access to every booking (admin).",
    BookingScope.ADMIN_READ: "Read any booking regardless of party (admin).",
}
