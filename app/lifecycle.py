"""
Per-booking lifecycle coordinator.

Owns the local copy of one booking, the SLA tracker running against it, and
the sequence every mutation goes through:

    gate check -> local guard -> authority call -> adopt result -> re-fetch

The local copy is advisory. It is only ever replaced by what the authority
returns, never advanced on our own.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime

from loguru import logger

from app.action_gate import ActionGate, GateContext
from app.currency import DisplayContext
from app.delivery_code import DeliveryCodeProtocol
from app.deps import BookingServiceClient, CurrentUser
from app.errors import (
    AlreadyUsed,
    AuthorityError,
    BookingError,
    InvalidTransition,
    TransportError,
    UnauthorizedAction,
)
from app.schemas import (
    Action,
    Booking,
    BookingStatus,
    CountdownView,
    Currency,
    ExchangeRates,
    LifecycleView,
    Role,
)
from app.sla import Clock, SLADeadlineTracker, utcnow
from app.state_machine import BookingStateMachine, Trigger

_INVOICE_STATUSES = frozenset(
    {BookingStatus.CONFIRMED, BookingStatus.IN_PROGRESS, BookingStatus.COMPLETED}
)


class BookingLifecycle:
    def __init__(
        self,
        booking_id: str,
        user: CurrentUser,
        client: BookingServiceClient,
        clock: Clock = utcnow,
        track: bool = True,
        tick_interval: float | None = None,
    ) -> None:
        self.booking_id = booking_id
        self.user = user
        self.client = client
        self.protocol = DeliveryCodeProtocol()
        self.machine = BookingStateMachine(self.protocol)
        self.gate = ActionGate(self.protocol)
        self.tracker = SLADeadlineTracker(
            on_expire=self._on_deadline_expired, clock=clock, interval=tick_interval
        )
        self.booking: Booking | None = None

        self._clock = clock
        self._track = track
        self._resync: asyncio.Task | None = None
        self._closed = False

    async def __aenter__(self) -> "BookingLifecycle":
        await self.refresh()
        return self

    async def __aexit__(self, *exc_info) -> None:
        # Let an error-triggered re-sync land before tearing down
        await self.settle()
        self.close()

    def close(self) -> None:
        """Stop the countdown and any pending re-sync. Idempotent."""
        self._closed = True
        self.tracker.stop()
        task, self._resync = self._resync, None
        if task is not None and not task.done():
            task.cancel()

    # -----------------------------------------------------------------------
    # Sync with the authority
    # -----------------------------------------------------------------------

    def _now(self) -> datetime:
        return self._clock()

    def _loaded(self) -> Booking:
        if self.booking is None:
            raise RuntimeError("Booking not loaded; call refresh() first")
        return self.booking

    async def refresh(self) -> Booking:
        fresh = await self.client.fetch_booking(self.booking_id, self.user)
        return self._adopt(fresh)

    def _adopt(self, fresh: Booking) -> Booking:
        self.booking = self.machine.reconcile(self.booking, fresh)
        self._sync_tracker()
        return self.booking

    def _sync_tracker(self) -> None:
        deadline = self._loaded().deadline
        if deadline is None:
            self.tracker.stop()
            self.tracker.reset(None)
        elif deadline == self.tracker.deadline and self.tracker.expired:
            # Expiry already signalled for this deadline; wait for the authority
            return
        elif self._track and not self._closed:
            self.tracker.start(deadline)
        else:
            self.tracker.reset(deadline)

    async def _on_deadline_expired(self) -> None:
        logger.info("Deadline elapsed for booking {}, re-fetching", self.booking_id)
        await self._resync_logged()

    async def _resync_logged(self) -> None:
        try:
            await self.refresh()
        except BookingError as exc:
            logger.warning("Re-sync of booking {} failed: {}", self.booking_id, exc)

    def _schedule_resync(self) -> None:
        if self._closed:
            return
        if self._resync is not None and not self._resync.done():
            return
        self._resync = asyncio.get_running_loop().create_task(self._resync_logged())

    async def settle(self) -> None:
        """Wait for a background re-sync, if one is running."""
        if self._resync is not None:
            await self._resync

    # -----------------------------------------------------------------------
    # Roles
    # -----------------------------------------------------------------------

    @property
    def role(self) -> Role:
        """The caller's role on this particular booking."""
        booking = self._loaded()
        if self.user.is_admin:
            return Role.ADMIN
        uid = str(self.user.id)
        if booking.owner_id == uid:
            return Role.OWNER
        if booking.client_id == uid:
            return Role.CLIENT
        if booking.owner_id is None and booking.client_id is None:
            # Authority scoped the fetch already and returned no party ids
            return self.user.role
        raise UnauthorizedAction("view", self.user.role, booking.status)

    # -----------------------------------------------------------------------
    # Mutations
    # -----------------------------------------------------------------------

    async def _mutate(
        self,
        action: Action,
        trigger: Trigger,
        call: Callable[[], Awaitable[Booking]],
    ) -> Booking:
        booking = self._loaded()
        self.gate.require(action, booking, self.role)
        self.machine.ensure_allowed(booking, trigger, self._now())

        try:
            returned = await call()
        except AuthorityError as exc:
            logger.warning(
                "Authority refused {} on booking {}: {}", trigger, booking.id, exc
            )
            self._schedule_resync()
            if exc.status_code == 409:
                raise InvalidTransition(
                    booking.status, trigger, exc.message, authoritative=True
                ) from exc
            raise
        except TransportError as exc:
            # Never re-issue a mutation blindly; re-read the booking instead
            logger.warning(
                "Transport failure on {} for booking {}: {}", trigger, booking.id, exc
            )
            self._schedule_resync()
            raise

        self._adopt(returned)
        try:
            return await self.refresh()
        except BookingError as exc:
            # The mutation went through; keep what the authority returned
            logger.warning(
                "Re-fetch after {} on booking {} failed: {}", trigger, booking.id, exc
            )
            self._schedule_resync()
            return self._loaded()

    async def accept(self) -> Booking:
        return await self._mutate(
            Action.ACCEPT,
            Trigger.ACCEPT,
            lambda: self.client.accept_booking(self.booking_id, self.user),
        )

    async def reject(self) -> Booking:
        return await self._mutate(
            Action.REJECT,
            Trigger.REJECT,
            lambda: self.client.reject_booking(self.booking_id, self.user),
        )

    async def cancel(self) -> Booking:
        return await self._mutate(
            Action.CANCEL,
            Trigger.CANCEL,
            lambda: self.client.cancel_booking(self.booking_id, self.user),
        )

    async def validate_delivery_code(self, code: str) -> Booking:
        booking = self._loaded()
        role = self.role
        if role == Role.OWNER and self.protocol.is_used(booking):
            raise AlreadyUsed(booking.id)
        self.gate.require(Action.VALIDATE_DELIVERY_CODE, booking, role)
        code = self.protocol.validate(booking, code, self._now())

        async def submit() -> Booking:
            returned = await self.client.validate_delivery_code(
                self.booking_id, code, self.user
            )
            self.protocol.mark_used(booking.id)
            return returned

        return await self._mutate(
            Action.VALIDATE_DELIVERY_CODE, Trigger.VALIDATE_DELIVERY_CODE, submit
        )

    async def fetch_delivery_code(self) -> str:
        booking = self._loaded()
        role = self.role
        if role == Role.OWNER or booking.status != BookingStatus.CONFIRMED:
            raise UnauthorizedAction("viewDeliveryCode", role, booking.status)
        try:
            return await self.client.fetch_delivery_code(self.booking_id, self.user)
        except (AuthorityError, TransportError):
            self._schedule_resync()
            raise

    # -----------------------------------------------------------------------
    # Presentation
    # -----------------------------------------------------------------------

    def countdown(self) -> CountdownView | None:
        return self.tracker.snapshot()

    async def gate_context(self) -> GateContext:
        booking = self._loaded()
        role = self.role

        review_eligible = False
        invoice_available = False
        if role == Role.CLIENT and booking.status == BookingStatus.COMPLETED:
            review_eligible = await self.client.check_review_eligibility(
                booking.id, self.user
            )
        if booking.status in _INVOICE_STATUSES:
            invoice_available = await self.client.check_invoice_availability(
                booking.id, self.user
            )

        return GateContext(
            role=role,
            now=self._now(),
            review_eligible=review_eligible,
            invoice_available=invoice_available,
        )

    async def view(
        self,
        currency: Currency = Currency.MAD,
        rates: ExchangeRates | None = None,
    ) -> LifecycleView:
        ctx = await self.gate_context()
        display = DisplayContext(role=ctx.role, currency=currency, rates=rates)
        return self.gate.view(self._loaded(), ctx, display, countdown=self.countdown())
