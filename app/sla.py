"""
SLA deadline tracker.

Counts down to the deadline attached to the booking's current status on a
periodic asyncio task. The tracker only *detects* expiry: when the countdown
first hits zero it fires `on_expire` once, and the owner of the tracker is
expected to re-fetch the booking from the authority.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone

from loguru import logger

from app import settings
from app.schemas import CountdownView

Clock = Callable[[], datetime]

_ZERO = timedelta(0)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def remaining_until(deadline: datetime, now: datetime) -> timedelta:
    return max(deadline - now, _ZERO)


def format_remaining(remaining: timedelta) -> str:
    total = int(remaining.total_seconds())
    hours, rest = divmod(total, 3600)
    minutes, seconds = divmod(rest, 60)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}"


class SLADeadlineTracker:
    def __init__(
        self,
        on_expire: Callable[[], Awaitable[None]] | None = None,
        on_tick: Callable[[timedelta], None] | None = None,
        clock: Clock = utcnow,
        interval: float | None = None,
        urgency: timedelta | None = None,
    ) -> None:
        self._on_expire = on_expire
        self._on_tick = on_tick
        self._clock = clock
        self._interval = interval if interval is not None else settings.SLA_TICK_SECONDS
        self.urgency = urgency or timedelta(minutes=settings.SLA_URGENCY_MINUTES)

        self._deadline: datetime | None = None
        self._last: timedelta | None = None
        self._expired = False
        self._task: asyncio.Task | None = None
        self._handler: asyncio.Task | None = None

    @property
    def deadline(self) -> datetime | None:
        return self._deadline

    @property
    def expired(self) -> bool:
        return self._expired

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    # -----------------------------------------------------------------------
    # Countdown
    # -----------------------------------------------------------------------

    def reset(self, deadline: datetime | None) -> None:
        """Forget everything derived from the previous deadline."""
        self._deadline = deadline
        self._last = None
        self._expired = False

    def remaining(self) -> timedelta:
        """
        Time left before the deadline, never negative and never larger than
        the previous reading for the same deadline (clock skew is absorbed).
        """
        if self._deadline is None:
            return _ZERO
        value = remaining_until(self._deadline, self._clock())
        if self._last is not None and value > self._last:
            value = self._last
        self._last = value
        return value

    def is_urgent(self) -> bool:
        return self._deadline is not None and self.remaining() < self.urgency

    def tick(self) -> bool:
        """
        Recompute the countdown. Returns True exactly once: on the first
        reading that reaches zero.
        """
        left = self.remaining()
        if self._on_tick is not None:
            self._on_tick(left)
        if left > _ZERO or self._expired or self._deadline is None:
            return False
        self._expired = True
        return True

    def snapshot(self) -> CountdownView | None:
        if self._deadline is None:
            return None
        left = self.remaining()
        return CountdownView(
            deadline=self._deadline,
            remaining_seconds=int(left.total_seconds()),
            is_urgent=left < self.urgency,
            is_expired=left == _ZERO,
            label=format_remaining(left),
        )

    # -----------------------------------------------------------------------
    # Periodic task
    # -----------------------------------------------------------------------

    def start(self, deadline: datetime) -> None:
        """(Re)start counting down to `deadline`. Must run inside an event loop."""
        self.stop()
        self.reset(deadline)
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.debug("SLA tracker started: deadline={}", deadline.isoformat())

    def stop(self) -> None:
        """
        Cancel the periodic task and a running expiry handler. Safe to call
        any number of times, including from inside the handler itself.
        """
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            logger.debug("SLA tracker stopped")

        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        handler = self._handler
        if handler is not None and handler is not current and not handler.done():
            self._handler = None
            handler.cancel()
            logger.debug("SLA expiry handler cancelled")

    async def _run(self) -> None:
        while True:
            if self.tick():
                # Detach first so the expiry handler may restart or stop us
                self._task = None
                logger.info("SLA deadline reached: deadline={}", self._deadline)
                if self._on_expire is not None:
                    self._handler = asyncio.current_task()
                    try:
                        await self._on_expire()
                    finally:
                        if self._handler is asyncio.current_task():
                            self._handler = None
                return
            await asyncio.sleep(self._interval)
