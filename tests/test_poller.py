"""
Tests for the Poller: cadence, failure resilience and non-overlapping ticks.
"""

import asyncio

import pytest

from poller import Poller


class TestPollerResilience:

    @pytest.mark.asyncio
    async def test_failed_tick_is_recorded_then_cleared(self):
        calls = []

        async def callback():
            calls.append(len(calls))
            if len(calls) == 1:
                raise ConnectionError("store unreachable")

        poller = Poller("test")
        poller.start(callback, interval=60, run_immediately=False)
        try:
            await poller.poll_now()
            assert isinstance(poller.error, ConnectionError)
            assert poller.last_polled is None
            assert poller.tick_count == 0

            await poller.poll_now()
            assert poller.error is None
            assert poller.last_polled is not None
            assert poller.tick_count == 1
        finally:
            poller.stop()
            await poller.wait_closed()

    @pytest.mark.asyncio
    async def test_next_tick_runs_after_a_failure(self, wait_until):
        calls = []

        async def callback():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("first tick fails")

        poller = Poller("test")
        poller.start(callback, interval=0.01)
        try:
            await wait_until(lambda: poller.tick_count >= 1)
            assert len(calls) >= 2
            assert poller.error is None
            assert poller.is_polling
        finally:
            poller.stop()
            await poller.wait_closed()
        assert not poller.is_polling

    def test_interval_must_be_positive(self):
        poller = Poller("test")

        async def callback():
            pass

        with pytest.raises(ValueError):
            poller.start(callback, interval=0)


class TestPollerScheduling:

    @pytest.mark.asyncio
    async def test_ticks_never_overlap(self):
        running = 0
        peak = 0

        async def callback():
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.02)
            running -= 1

        poller = Poller("test")
        poller.start(callback, interval=0.005)
        try:
            await asyncio.gather(poller.poll_now(), poller.poll_now(), asyncio.sleep(0.1))
        finally:
            poller.stop()
            await poller.wait_closed()
        assert peak == 1

    @pytest.mark.asyncio
    async def test_stop_lets_the_running_tick_finish(self):
        release = asyncio.Event()
        entered = asyncio.Event()
        finished = []

        async def callback():
            entered.set()
            await release.wait()
            finished.append(True)

        poller = Poller("test")
        poller.start(callback, interval=0.01)
        await entered.wait()
        poller.stop()
        release.set()
        await poller.wait_closed()

        assert finished == [True]
        assert poller.tick_count == 1
        await asyncio.sleep(0.05)
        assert poller.tick_count == 1

    @pytest.mark.asyncio
    async def test_restart_replaces_the_callback(self, wait_until):
        seen = []

        async def first():
            seen.append("first")

        async def second():
            seen.append("second")

        poller = Poller("test")
        poller.start(first, interval=60)
        await wait_until(lambda: "first" in seen)
        poller.start(second, interval=60)
        try:
            await wait_until(lambda: "second" in seen)
        finally:
            poller.stop()
            await poller.wait_closed()
        assert seen == ["first", "second"]

    @pytest.mark.asyncio
    async def test_poll_now_without_callback_is_a_no_op(self):
        poller = Poller("test")
        await poller.poll_now()
        assert poller.tick_count == 0
