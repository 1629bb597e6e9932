"""Tests for the background retry poller."""

from __future__ import annotations

import asyncio

import pytest

from hookrelay.webhooks import RetryPoller


async def wait_for(predicate, timeout: float = 2.0) -> None:
    """Poll ``predicate`` until it holds or the timeout passes."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


class TestRetryPoller:
    """Tests for RetryPoller."""

    async def test_ticks_until_stopped(self):
        calls = 0

        async def tick() -> int:
            nonlocal calls
            calls += 1
            return 0

        poller = RetryPoller(tick, interval=0.01)
        poller.start()
        assert poller.is_running

        await wait_for(lambda: calls >= 3)
        await poller.stop()

        assert not poller.is_running
        stopped_at = calls
        await asyncio.sleep(0.05)
        assert calls == stopped_at

    async def test_failing_tick_does_not_stop_loop(self):
        calls = 0

        async def tick() -> int:
            nonlocal calls
            calls += 1
            if calls == 1:
                raise RuntimeError("store unavailable")
            return 1

        poller = RetryPoller(tick, interval=0.01)
        poller.start()
        await wait_for(lambda: calls >= 3)
        await poller.stop()

        assert poller.ticks >= 3

    async def test_start_twice_is_noop(self):
        async def tick() -> int:
            return 0

        poller = RetryPoller(tick, interval=0.01)
        poller.start()
        first = poller._task
        poller.start()
        assert poller._task is first
        await poller.stop()

    async def test_stop_without_start(self):
        async def tick() -> int:
            return 0

        poller = RetryPoller(tick)
        await poller.stop()
        assert not poller.is_running

    @pytest.mark.parametrize("interval", [0, -1.0])
    def test_interval_must_be_positive(self, interval):
        async def tick() -> int:
            return 0

        with pytest.raises(ValueError):
            RetryPoller(tick, interval=interval)
