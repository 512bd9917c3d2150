"""Tests for the asyncio countdown."""
import asyncio

import pytest

from fakes import wait_until
from quizmaster.timer import CountdownTimer


class TestCountdownTimer:

    @pytest.mark.asyncio
    async def test_ticks_down_and_expires_once(self):
        ticks = []
        expiries = []
        timer = CountdownTimer(3, on_tick=ticks.append, on_expire=lambda: expiries.append(True), interval=0.01)
        timer.start()
        assert timer.running

        await wait_until(lambda: timer.expired)
        await asyncio.sleep(0.05)

        assert ticks == [2, 1, 0]
        assert expiries == [True]
        assert timer.remaining == 0
        assert not timer.running

    @pytest.mark.asyncio
    async def test_cancel_stops_ticks_and_expiry(self):
        ticks = []
        expiries = []
        timer = CountdownTimer(50, on_tick=ticks.append, on_expire=lambda: expiries.append(True), interval=0.01)
        timer.start()
        await wait_until(lambda: len(ticks) >= 2)

        timer.cancel()
        seen = len(ticks)
        await asyncio.sleep(0.1)

        assert len(ticks) == seen
        assert expiries == []
        assert not timer.running

    @pytest.mark.asyncio
    async def test_cancel_from_tick_handler(self):
        expiries = []
        timer = None

        def on_tick(remaining):
            if remaining == 1:
                timer.cancel()

        timer = CountdownTimer(2, on_tick=on_tick, on_expire=lambda: expiries.append(True), interval=0.01)
        timer.start()
        await asyncio.sleep(0.1)

        assert timer.remaining == 1
        assert expiries == []

    @pytest.mark.asyncio
    async def test_cannot_start_twice(self):
        timer = CountdownTimer(5, interval=0.01)
        timer.start()
        with pytest.raises(RuntimeError):
            timer.start()
        timer.cancel()

    @pytest.mark.asyncio
    async def test_cancelled_timer_cannot_restart(self):
        timer = CountdownTimer(5, interval=0.01)
        timer.cancel()
        with pytest.raises(RuntimeError):
            timer.start()

    def test_needs_positive_budget(self):
        with pytest.raises(ValueError):
            CountdownTimer(0)
