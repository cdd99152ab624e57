"""
Booking lifecycle state machine.

`transition()` is pure: it never mutates the record it is given and returns the
booking as it looks after the edge. The lifecycle coordinator only uses
`ensure_allowed()` before calling the authority and `reconcile()` after, so the
local record never runs ahead of what the authority confirmed.
"""

from collections import deque
from datetime import datetime, timedelta, timezone
from enum import StrEnum

from loguru import logger

from app import settings
from app.delivery_code import DeliveryCodeProtocol
from app.errors import BookingValidationError, InvalidTransition
from app.schemas import TERMINAL_STATUSES, Booking, BookingStatus


class Trigger(StrEnum):
    ACCEPT = "accept"
    REJECT = "reject"
    CANCEL = "cancel"
    EXPIRE = "expire"
    SETTLE_PAYMENT = "settle_payment"
    VALIDATE_DELIVERY_CODE = "validate_delivery_code"
    COMPLETE_RETURN = "complete_return"


_TRANSITIONS: dict[tuple[BookingStatus, Trigger], BookingStatus] = {
    (BookingStatus.PENDING_OWNER, Trigger.ACCEPT): BookingStatus.WAITING_PAYMENT,
    (BookingStatus.PENDING_OWNER, Trigger.REJECT): BookingStatus.REJECTED,
    (BookingStatus.PENDING_OWNER, Trigger.CANCEL): BookingStatus.CANCELLED,
    (BookingStatus.PENDING_OWNER, Trigger.EXPIRE): BookingStatus.EXPIRED_OWNER,
    (BookingStatus.WAITING_PAYMENT, Trigger.SETTLE_PAYMENT): BookingStatus.CONFIRMED,
    (BookingStatus.WAITING_PAYMENT, Trigger.CANCEL): BookingStatus.CANCELLED,
    (BookingStatus.WAITING_PAYMENT, Trigger.EXPIRE): BookingStatus.EXPIRED_PAYMENT,
    (BookingStatus.CONFIRMED, Trigger.VALIDATE_DELIVERY_CODE): BookingStatus.IN_PROGRESS,
    (BookingStatus.IN_PROGRESS, Trigger.COMPLETE_RETURN): BookingStatus.COMPLETED,
}

# Triggers that must happen while the SLA deadline is still running
_WITHIN_DEADLINE = frozenset({Trigger.ACCEPT, Trigger.REJECT, Trigger.SETTLE_PAYMENT})


def _successors(status: BookingStatus) -> set[BookingStatus]:
    return {to for (frm, _), to in _TRANSITIONS.items() if frm == status}


def is_reachable(origin: BookingStatus, target: BookingStatus) -> bool:
    """True if `target` can follow `origin` through zero or more legal edges."""
    seen = {origin}
    queue = deque([origin])
    while queue:
        current = queue.popleft()
        if current == target:
            return True
        for nxt in _successors(current) - seen:
            seen.add(nxt)
            queue.append(nxt)
    return False


def target_of(status: BookingStatus, trigger: Trigger) -> BookingStatus | None:
    return _TRANSITIONS.get((status, trigger))


class BookingStateMachine:
    def __init__(
        self,
        protocol: DeliveryCodeProtocol | None = None,
        owner_response_window: timedelta | None = None,
        payment_window: timedelta | None = None,
    ) -> None:
        self.protocol = protocol or DeliveryCodeProtocol()
        self.owner_response_window = owner_response_window or timedelta(
            hours=settings.OWNER_RESPONSE_WINDOW_HOURS
        )
        self.payment_window = payment_window or timedelta(
            hours=settings.PAYMENT_WINDOW_HOURS
        )

    # -----------------------------------------------------------------------
    # Guards
    # -----------------------------------------------------------------------

    def ensure_allowed(
        self,
        booking: Booking,
        trigger: Trigger,
        now: datetime | None = None,
    ) -> BookingStatus:
        """
        Raise InvalidTransition if `trigger` cannot be applied right now.
        Returns the status the booking would move to.

        The delivery-code timing and single-use guards are raised by the
        protocol itself (EarlyDeliveryAttempt / AlreadyUsed).
        """
        now = now or datetime.now(timezone.utc)
        status = booking.status

        if status in TERMINAL_STATUSES:
            raise InvalidTransition(status, trigger, "booking is in a terminal state")

        target = target_of(status, trigger)
        if target is None:
            raise InvalidTransition(status, trigger, "no such transition")

        deadline = booking.deadline
        if trigger in _WITHIN_DEADLINE and deadline is not None and now > deadline:
            raise InvalidTransition(status, trigger, "the deadline has elapsed")

        if trigger == Trigger.EXPIRE and (deadline is None or now <= deadline):
            raise InvalidTransition(status, trigger, "the deadline has not elapsed")

        if trigger == Trigger.VALIDATE_DELIVERY_CODE:
            self.protocol.check_handoff(booking, now)

        return target

    def allowed_triggers(
        self, booking: Booking, now: datetime | None = None
    ) -> list[Trigger]:
        allowed = []
        for trigger in Trigger:
            try:
                self.ensure_allowed(booking, trigger, now)
            except BookingValidationError:
                continue
            allowed.append(trigger)
        return allowed

    # -----------------------------------------------------------------------
    # Transitions
    # -----------------------------------------------------------------------

    def open_deadline(self, created_at: datetime) -> datetime:
        """Owner response deadline for a booking created at `created_at`."""
        return created_at + self.owner_response_window

    def transition(
        self,
        booking: Booking,
        trigger: Trigger,
        now: datetime | None = None,
    ) -> Booking:
        now = now or datetime.now(timezone.utc)
        target = self.ensure_allowed(booking, trigger, now)

        changes: dict = {
            "status": target,
            "owner_response_deadline": None,
            "payment_deadline": None,
            "updated_at": now,
        }

        if trigger == Trigger.ACCEPT:
            changes["payment_deadline"] = now + self.payment_window

        elif trigger == Trigger.SETTLE_PAYMENT:
            changes["delivery_code"] = self.protocol.issue(booking)
            changes["confirmed_at"] = now

        elif trigger == Trigger.VALIDATE_DELIVERY_CODE:
            changes["delivery_code_validated_at"] = now

        updated = booking.evolve(**changes)
        if trigger == Trigger.VALIDATE_DELIVERY_CODE:
            self.protocol.mark_used(booking.id)

        logger.debug(
            "Booking {} transition {} -> {} via {}",
            booking.id,
            booking.status,
            updated.status,
            trigger,
        )
        return updated

    def reconcile(self, current: Booking | None, fresh: Booking) -> Booking:
        """
        Adopt the authority's record. The authority always wins; an
        unreachable jump is only logged since it means our view was stale.
        """
        if current is None or current.status == fresh.status:
            return fresh
        if is_reachable(current.status, fresh.status):
            logger.info(
                "Booking {} moved {} -> {} (authority)",
                fresh.id,
                current.status,
                fresh.status,
            )
        else:
            logger.warning(
                "Booking {} jumped {} -> {} outside the lifecycle graph",
                fresh.id,
                current.status,
                fresh.status,
            )
        if fresh.delivery_code_validated_at is not None:
            self.protocol.mark_used(fresh.id)
        return fresh
