"""
Delivery code handoff protocol.

The code is an 11-character string shaped `LLL-DDD-LLL` (uppercase letters and
digits), issued once when a booking is confirmed. Whether a well-formed code is
the right one is decided by the authority; locally we only enforce its shape,
that the rental has started, and that it has not already been accepted.
"""

import re
import secrets
import string
from datetime import datetime, timezone

from loguru import logger

from app.errors import AlreadyUsed, EarlyDeliveryAttempt, MalformedCode
from app.schemas import Booking, BookingStatus

CODE_PATTERN = re.compile(r"^[A-Z]{3}-[0-9]{3}-[A-Z]{3}$")
CODE_LENGTH = 11

# Once the code has been accepted the booking has moved past `confirmed`
_USED_STATUSES = frozenset({BookingStatus.IN_PROGRESS, BookingStatus.COMPLETED})


def generate_code() -> str:
    letters = string.ascii_uppercase
    head = "".join(secrets.choice(letters) for _ in range(3))
    middle = "".join(secrets.choice(string.digits) for _ in range(3))
    tail = "".join(secrets.choice(letters) for _ in range(3))
    return f"{head}-{middle}-{tail}"


def is_well_formed(value: str) -> bool:
    return len(value) == CODE_LENGTH and CODE_PATTERN.match(value) is not None


class DeliveryCodeProtocol:
    """Shape, timing and single-use guards for delivery codes."""

    def __init__(self) -> None:
        self._used: set[str] = set()

    def issue(self, booking: Booking) -> str:
        """Return the booking's code, generating one only if it never had one."""
        if booking.delivery_code:
            return booking.delivery_code
        return generate_code()

    def check_format(self, value: str) -> str:
        if not isinstance(value, str) or not is_well_formed(value):
            raise MalformedCode(str(value))
        return value

    def is_used(self, booking: Booking) -> bool:
        return (
            booking.id in self._used
            or booking.delivery_code_validated_at is not None
            or booking.status in _USED_STATUSES
        )

    def is_open(self, booking: Booking, now: datetime | None = None) -> bool:
        """True once the rental's start date (UTC) has been reached."""
        now = now or datetime.now(timezone.utc)
        return now.astimezone(timezone.utc).date() >= booking.start_date

    def can_submit(self, booking: Booking, now: datetime | None = None) -> bool:
        return self.is_open(booking, now) and not self.is_used(booking)

    def check_handoff(self, booking: Booking, now: datetime | None = None) -> None:
        """Single-use and not-before-start guards."""
        if self.is_used(booking):
            raise AlreadyUsed(booking.id)
        if not self.is_open(booking, now):
            raise EarlyDeliveryAttempt(booking.start_date)

    def validate(self, booking: Booking, value: str, now: datetime | None = None) -> str:
        """
        Run every local guard and return the code ready for submission.

        Raises MalformedCode, AlreadyUsed or EarlyDeliveryAttempt without
        contacting anything.
        """
        code = self.check_format(value)
        self.check_handoff(booking, now)
        return code

    def mark_used(self, booking_id: str) -> None:
        logger.debug("Delivery code consumed: booking_id={}", booking_id)
        self._used.add(booking_id)
