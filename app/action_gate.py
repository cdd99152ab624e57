"""
Action gate: which actions a role may take on a booking, and which of its
fields that role may see.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from app.currency import CurrencyPresentationEngine, DisplayContext
from app.delivery_code import DeliveryCodeProtocol
from app.errors import UnauthorizedAction
from app.schemas import (
    DISCLOSED_STATUSES,
    STATUS_LABELS,
    STATUS_TONES,
    Action,
    Booking,
    BookingStatus,
    CountdownView,
    LifecycleView,
    Role,
)

_ENGAGED = frozenset(
    {BookingStatus.CONFIRMED, BookingStatus.IN_PROGRESS, BookingStatus.COMPLETED}
)
_DEAD_ENDS = frozenset(
    {
        BookingStatus.REJECTED,
        BookingStatus.CANCELLED,
        BookingStatus.EXPIRED_OWNER,
        BookingStatus.EXPIRED_PAYMENT,
    }
)
_CANCELLABLE = frozenset({BookingStatus.PENDING_OWNER, BookingStatus.WAITING_PAYMENT})

# Canonical MAD figures each role is allowed to see
FINANCIAL_FIELDS: dict[Role, tuple[str, ...]] = {
    Role.CLIENT: (
        "price_per_day",
        "total_price",
        "deposit_amount",
        "delivery_fee",
        "online_payment_amount",
        "owner_payment_amount",
    ),
    Role.OWNER: (
        "price_per_day",
        "total_price",
        "deposit_amount",
        "delivery_fee",
        "owner_payment_amount",
    ),
    Role.ADMIN: (
        "price_per_day",
        "total_price",
        "deposit_amount",
        "delivery_fee",
        "online_payment_amount",
        "owner_payment_amount",
        "commission_amount",
    ),
}


@dataclass(frozen=True)
class GateContext:
    """
    Who is asking, and the externally checked facts the gate cannot derive
    from the booking itself.
    """

    role: Role
    now: datetime | None = None
    review_eligible: bool = False
    invoice_available: bool = False


def resolve_actions(
    status: BookingStatus,
    role: Role,
    review_eligible: bool = False,
    invoice_available: bool = False,
    handoff_open: bool = False,
) -> list[Action]:
    """The (status, role) matrix. Order follows the Action enum."""
    if status in _DEAD_ENDS:
        return [Action.NONE]

    is_client = role == Role.CLIENT
    is_owner = role == Role.OWNER
    is_party = is_client or is_owner

    allowed: list[Action] = []
    if is_owner and status == BookingStatus.PENDING_OWNER:
        allowed += [Action.ACCEPT, Action.REJECT]
    if is_client and status == BookingStatus.WAITING_PAYMENT:
        allowed.append(Action.PAY)
    if is_client and status in _CANCELLABLE:
        allowed.append(Action.CANCEL)
    if is_party and status in _ENGAGED:
        allowed.append(Action.MESSAGE)
    if is_client and status == BookingStatus.COMPLETED and review_eligible:
        allowed.append(Action.LEAVE_REVIEW)
    if status in _ENGAGED and invoice_available:
        # admins may fetch invoices too
        allowed.append(Action.DOWNLOAD_INVOICE)
    if is_owner and status == BookingStatus.CONFIRMED and handoff_open:
        allowed.append(Action.VALIDATE_DELIVERY_CODE)

    return allowed or [Action.NONE]


class ActionGate:
    def __init__(
        self,
        protocol: DeliveryCodeProtocol | None = None,
        engine: CurrencyPresentationEngine | None = None,
    ) -> None:
        self.protocol = protocol or DeliveryCodeProtocol()
        self.engine = engine or CurrencyPresentationEngine()

    def actions(self, booking: Booking, ctx: GateContext) -> list[Action]:
        return resolve_actions(
            booking.status,
            ctx.role,
            review_eligible=ctx.review_eligible,
            invoice_available=ctx.invoice_available,
            handoff_open=self.protocol.can_submit(booking, ctx.now),
        )

    def require(self, action: Action, booking: Booking, role: Role) -> None:
        """
        Raise UnauthorizedAction unless `role` may ever take `action` in the
        booking's current status. External eligibility and the delivery-code
        guards are checked separately so they can report their own errors.
        """
        permitted = resolve_actions(
            booking.status,
            role,
            review_eligible=True,
            invoice_available=True,
            handoff_open=True,
        )
        if action not in permitted:
            raise UnauthorizedAction(action, role, booking.status)

    # -----------------------------------------------------------------------
    # Visibility
    # -----------------------------------------------------------------------

    def visible_amounts(self, booking: Booking, role: Role) -> dict[str, Decimal]:
        return {name: getattr(booking, name) for name in FINANCIAL_FIELDS[role]}

    def owner_visible(self, booking: Booking, role: Role) -> bool:
        return role != Role.CLIENT or booking.status in DISCLOSED_STATUSES

    def code_visible(self, booking: Booking, role: Role) -> bool:
        if role == Role.ADMIN:
            return True
        return role == Role.CLIENT and booking.status == BookingStatus.CONFIRMED

    def view(
        self,
        booking: Booking,
        ctx: GateContext,
        display: DisplayContext,
        countdown: CountdownView | None = None,
    ) -> LifecycleView:
        """Redacted, display-ready projection of `booking` for `ctx.role`."""
        role = ctx.role
        display = DisplayContext(role=role, currency=display.currency, rates=display.rates)
        return LifecycleView(
            id=booking.id,
            status=booking.status,
            status_label=STATUS_LABELS[booking.status],
            status_tone=STATUS_TONES[booking.status],
            role=role,
            currency=self.engine.effective_currency(display),
            start_date=booking.start_date,
            end_date=booking.end_date,
            rental_days=booking.rental_days,
            car=booking.car,
            client=booking.client,
            owner=booking.owner if self.owner_visible(booking, role) else None,
            delivery_code=booking.delivery_code if self.code_visible(booking, role) else None,
            financials=self.engine.display_all(
                self.visible_amounts(booking, role), display
            ),
            actions=self.actions(booking, ctx),
            countdown=countdown,
        )
