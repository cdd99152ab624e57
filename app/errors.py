"""
Error taxonomy for the booking lifecycle.

Three families, each handled differently by the lifecycle coordinator:
  - BookingValidationError: decided locally, raised before any network call.
  - AuthorityError: reported by the authoritative booking service.
  - TransportError: the request never got a usable answer (network, timeout).

Authority and transport errors always trigger a re-fetch of the booking.
"""

from datetime import date
from enum import StrEnum


class ErrorCode(StrEnum):
    MALFORMED_CODE = "MALFORMED_CODE"
    EARLY_DELIVERY_ATTEMPT = "EARLY_DELIVERY_ATTEMPT"
    ALREADY_USED = "ALREADY_USED"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    UNAUTHORIZED_ACTION = "UNAUTHORIZED_ACTION"
    DEADLINE_ELAPSED = "DEADLINE_ELAPSED"
    CODE_REJECTED = "CODE_REJECTED"
    BOOKING_NOT_FOUND = "BOOKING_NOT_FOUND"
    AUTHORITY_ERROR = "AUTHORITY_ERROR"
    TRANSPORT_ERROR = "TRANSPORT_ERROR"


class BookingError(Exception):
    """Base error with a stable code and a user-safe message."""

    code: ErrorCode = ErrorCode.AUTHORITY_ERROR

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


# ---------------------------------------------------------------------------
# Local validation errors
# ---------------------------------------------------------------------------


class BookingValidationError(BookingError):
    """Resolved entirely locally; no request was sent."""


class MalformedCode(BookingValidationError):
    code = ErrorCode.MALFORMED_CODE

    def __init__(self, value: str) -> None:
        super().__init__("Delivery code must match the format ABC-123-XYZ")
        self.value = value


class EarlyDeliveryAttempt(BookingValidationError):
    code = ErrorCode.EARLY_DELIVERY_ATTEMPT

    def __init__(self, start_date: date) -> None:
        super().__init__(
            f"Delivery code cannot be used before the rental starts ({start_date.isoformat()})"
        )
        self.start_date = start_date


class AlreadyUsed(BookingValidationError):
    code = ErrorCode.ALREADY_USED

    def __init__(self, booking_id: str) -> None:
        super().__init__("Delivery code has already been used for this booking")
        self.booking_id = booking_id


class InvalidTransition(BookingValidationError):
    """
    Raised when an edge of the state machine cannot be taken.

    `authoritative` is True when the authority refused the edge (e.g. the
    other party already moved the booking), False when the local guard did.
    """

    code = ErrorCode.INVALID_TRANSITION

    def __init__(
        self,
        from_status: str,
        trigger: str,
        reason: str,
        authoritative: bool = False,
    ) -> None:
        super().__init__(f"Cannot {trigger} a booking in '{from_status}': {reason}")
        self.from_status = from_status
        self.trigger = trigger
        self.reason = reason
        self.authoritative = authoritative


class UnauthorizedAction(BookingValidationError):
    code = ErrorCode.UNAUTHORIZED_ACTION

    def __init__(self, action: str, role: str, status: str) -> None:
        super().__init__(f"Role '{role}' may not '{action}' a booking in '{status}'")
        self.action = action
        self.role = role
        self.status = status


# ---------------------------------------------------------------------------
# Authority-reported errors
# ---------------------------------------------------------------------------


class AuthorityError(BookingError):
    """The authoritative booking service refused the request."""

    code = ErrorCode.AUTHORITY_ERROR

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code


class DeadlineElapsed(AuthorityError):
    code = ErrorCode.DEADLINE_ELAPSED


class CodeRejected(AuthorityError):
    code = ErrorCode.CODE_REJECTED


class BookingNotFound(AuthorityError):
    code = ErrorCode.BOOKING_NOT_FOUND


# ---------------------------------------------------------------------------
# Transport errors
# ---------------------------------------------------------------------------


class TransportError(BookingError):
    """Network failure or timeout while talking to the authority."""

    code = ErrorCode.TRANSPORT_ERROR

    def __init__(self, message: str, timeout: bool = False) -> None:
        super().__init__(message)
        self.timeout = timeout
