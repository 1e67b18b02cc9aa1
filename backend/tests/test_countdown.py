"""
Tests for the session countdown (display ticker + deadline timer)
"""

import asyncio

import pytest

from telehealth.services.countdown import Countdown


class TestCountdown:
    """Test countdown expiry and cancellation"""

    @pytest.mark.asyncio
    async def test_expires_once_after_duration(self):
        """on_expire fires exactly once when the deadline passes"""
        calls = []

        async def on_expire():
            calls.append("expired")

        countdown = Countdown(0.05, on_expire=on_expire, tick_interval=0.01)
        countdown.start()
        await asyncio.sleep(0.2)

        assert calls == ["expired"]
        assert countdown.expired is True
        assert countdown.remaining == 0
        assert countdown.active is False

    @pytest.mark.asyncio
    async def test_cancel_before_deadline_never_fires(self):
        """A cancelled countdown never calls on_expire"""
        calls = []

        async def on_expire():
            calls.append("expired")

        countdown = Countdown(0.05, on_expire=on_expire)
        countdown.start()
        countdown.cancel()
        await asyncio.sleep(0.15)

        assert calls == []
        assert countdown.expired is False
        assert countdown.active is False

    @pytest.mark.asyncio
    async def test_ticks_count_down_whole_seconds(self):
        """The ticker decrements the displayed seconds once per interval"""
        ticks = []

        async def on_expire():
            pass

        countdown = Countdown(3, on_expire=on_expire, on_tick=ticks.append, tick_interval=0.01)
        countdown.start()
        await asyncio.sleep(0.15)
        countdown.cancel()

        assert ticks == [2, 1, 0]
        assert countdown.expired is False

    @pytest.mark.asyncio
    async def test_fractional_duration_rounds_up_for_display(self):
        """remaining starts at the ceiling of the duration"""

        async def on_expire():
            pass

        countdown = Countdown(2.2, on_expire=on_expire)
        assert countdown.remaining == 3

    @pytest.mark.asyncio
    async def test_cancel_from_inside_on_expire(self):
        """on_expire may cancel its own countdown and still run to completion"""
        finished = []

        async def on_expire():
            countdown.cancel()
            await asyncio.sleep(0)
            finished.append(True)

        countdown = Countdown(0.01, on_expire=on_expire)
        countdown.start()
        await asyncio.sleep(0.1)

        assert finished == [True]

    @pytest.mark.asyncio
    async def test_start_and_cancel_are_idempotent(self):
        """Repeated start/cancel calls are no-ops"""
        calls = []

        async def on_expire():
            calls.append("expired")

        countdown = Countdown(0.03, on_expire=on_expire)
        countdown.start()
        countdown.start()
        await asyncio.sleep(0.1)
        countdown.cancel()
        countdown.cancel()

        assert calls == ["expired"]
        assert countdown.started is True

    def test_cancel_without_running_loop(self):
        """cancel() on a never-started countdown works outside a loop"""

        async def on_expire():
            pass

        countdown = Countdown(1, on_expire=on_expire)
        countdown.cancel()
        assert countdown.active is False

    @pytest.mark.asyncio
    async def test_tick_listener_errors_do_not_stop_ticker(self):
        """A failing on_tick is logged and the countdown keeps going"""
        seen = []

        def on_tick(remaining):
            seen.append(remaining)
            raise RuntimeError("listener failed")

        async def on_expire():
            pass

        countdown = Countdown(2, on_expire=on_expire, on_tick=on_tick, tick_interval=0.01)
        countdown.start()
        await asyncio.sleep(0.1)
        countdown.cancel()

        assert seen == [1, 0]
