from enum import StrEnum


class BookingScope(StrEnum):
    # Customer scopes
    READ = "bookings:read"  # view own bookings
    WRITE = "bookings:write"  # open payment orders and confirm paid bookings
    CANCEL = "bookings:cancel"  # cancel own booking
    MODIFY = "bookings:modify"  # change dates/location/notes of own booking

    # Admin scopes
    ADMIN = "admin:bookings"
    ADMIN_READ = "admin:bookings:read"
    ADMIN_WRITE = "admin:bookings:write"


BOOKING_SCOPE_DESCRIPTIONS: dict[str, str] = {
    BookingScope.READ: "View your own bookings.",
    BookingScope.WRITE: "Pay for and confirm a new vehicle booking.",
    BookingScope.CANCEL: "Cancel your own booking before pickup.",
    BookingScope.MODIFY: "Change the dates or details of your own booking.",
    BookingScope.ADMIN_READ: "Read any booking regardless of owner (admin).",
    BookingScope.ADMIN_WRITE: "Move any booking through its status lifecycle (admin).",
}
