"""Tests for SLADeadlineTracker: countdown maths and the periodic task."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from app.sla import SLADeadlineTracker, format_remaining, remaining_until

from .factories import NOW, FakeClock


class TestCountdown:
    def test_remaining_never_negative(self):
        assert remaining_until(NOW, NOW + timedelta(minutes=5)) == timedelta(0)

    def test_remaining_before_deadline(self):
        clock = FakeClock()
        tracker = SLADeadlineTracker(clock=clock)
        tracker.reset(NOW + timedelta(hours=1))
        assert tracker.remaining() == timedelta(hours=1)
        clock.advance(minutes=15)
        assert tracker.remaining() == timedelta(minutes=45)

    def test_remaining_is_monotonic_under_clock_skew(self):
        clock = FakeClock()
        tracker = SLADeadlineTracker(clock=clock)
        tracker.reset(NOW + timedelta(hours=1))
        clock.advance(minutes=30)
        assert tracker.remaining() == timedelta(minutes=30)
        clock.advance(minutes=-10)  # wall clock jumps back
        assert tracker.remaining() == timedelta(minutes=30)

    def test_reset_forgets_previous_readings(self):
        clock = FakeClock()
        tracker = SLADeadlineTracker(clock=clock)
        tracker.reset(NOW + timedelta(minutes=5))
        tracker.remaining()
        tracker.reset(NOW + timedelta(hours=1))
        assert tracker.remaining() == timedelta(hours=1)

    def test_urgency_threshold(self):
        clock = FakeClock()
        tracker = SLADeadlineTracker(clock=clock)
        tracker.reset(NOW + timedelta(minutes=10))
        assert not tracker.is_urgent()
        clock.advance(seconds=1)
        assert tracker.is_urgent()

    def test_no_deadline_means_nothing_to_track(self):
        tracker = SLADeadlineTracker(clock=FakeClock())
        assert tracker.remaining() == timedelta(0)
        assert not tracker.is_urgent()
        assert tracker.snapshot() is None
        assert tracker.tick() is False

    def test_tick_reports_expiry_exactly_once(self):
        clock = FakeClock()
        seen = []
        tracker = SLADeadlineTracker(clock=clock, on_tick=seen.append)
        tracker.reset(NOW + timedelta(seconds=2))
        assert tracker.tick() is False
        clock.advance(seconds=2)
        assert tracker.tick() is True
        clock.advance(seconds=1)
        assert tracker.tick() is False
        assert tracker.expired
        assert seen == [timedelta(seconds=2), timedelta(0), timedelta(0)]

    def test_snapshot(self):
        clock = FakeClock()
        tracker = SLADeadlineTracker(clock=clock)
        tracker.reset(NOW + timedelta(hours=1, minutes=2, seconds=3))
        view = tracker.snapshot()
        assert view.remaining_seconds == 3723
        assert view.label == "01:02:03"
        assert not view.is_urgent
        assert not view.is_expired

    def test_format_remaining(self):
        assert format_remaining(timedelta(0)) == "00:00:00"
        assert format_remaining(timedelta(hours=3)) == "03:00:00"


class TestPeriodicTask:
    @pytest.mark.asyncio
    async def test_expiry_fires_once_and_task_stops(self):
        clock = FakeClock()
        fired = []

        async def on_expire():
            fired.append(clock())

        tracker = SLADeadlineTracker(on_expire=on_expire, clock=clock, interval=0.01)
        tracker.start(NOW + timedelta(seconds=1))
        assert tracker.running

        clock.advance(seconds=1)
        for _ in range(50):
            if fired:
                break
            await asyncio.sleep(0.01)
        await asyncio.sleep(0.05)

        assert len(fired) == 1
        assert not tracker.running
        assert tracker.expired

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self):
        tracker = SLADeadlineTracker(clock=FakeClock(), interval=0.01)
        tracker.start(NOW + timedelta(hours=1))
        tracker.stop()
        tracker.stop()
        assert not tracker.running

    def test_stop_without_start(self):
        SLADeadlineTracker(clock=FakeClock()).stop()

    @pytest.mark.asyncio
    async def test_restart_resets_from_fresh_deadline(self):
        clock = FakeClock()
        tracker = SLADeadlineTracker(clock=clock, interval=0.01)
        tracker.start(NOW + timedelta(minutes=1))
        clock.advance(seconds=50)
        await asyncio.sleep(0.03)
        assert tracker.remaining() == timedelta(seconds=10)

        tracker.start(NOW + timedelta(hours=2))
        assert tracker.remaining() == timedelta(hours=1, minutes=59, seconds=10)
        assert not tracker.expired
        tracker.stop()

    @pytest.mark.asyncio
    async def test_expiry_handler_may_restart_tracker(self):
        clock = FakeClock()
        restarted = asyncio.Event()

        async def on_expire():
            tracker.start(clock() + timedelta(hours=1))
            restarted.set()

        tracker = SLADeadlineTracker(on_expire=on_expire, clock=clock, interval=0.01)
        tracker.start(NOW)
        await asyncio.wait_for(restarted.wait(), timeout=1)
        await asyncio.sleep(0.02)

        assert tracker.running
        assert not tracker.expired
        tracker.stop()

    @pytest.mark.asyncio
    async def test_stop_cancels_a_running_expiry_handler(self):
        clock = FakeClock()
        handling = asyncio.Event()
        release = asyncio.Event()
        finished = []

        async def on_expire():
            handling.set()
            await release.wait()
            tracker.start(clock() + timedelta(hours=1))
            finished.append(True)

        tracker = SLADeadlineTracker(on_expire=on_expire, clock=clock, interval=0.01)
        tracker.start(NOW)
        await asyncio.wait_for(handling.wait(), timeout=1)

        tracker.stop()
        release.set()
        await asyncio.sleep(0.02)

        assert not tracker.running
        assert finished == []
