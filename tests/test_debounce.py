"""Tests for debounce module."""

import asyncio

import pytest

from src.dirsettle.debounce import DebounceScheduler


class TestDebounceScheduler:
    """Tests for DebounceScheduler class."""

    @pytest.mark.asyncio
    async def test_fires_after_window(self):
        fired = []
        scheduler = DebounceScheduler(fired.append)

        scheduler.signal("w1", 0.05)
        assert scheduler.is_pending("w1")
        assert fired == []

        await asyncio.sleep(0.15)
        assert fired == ["w1"]
        assert not scheduler.is_pending("w1")

    @pytest.mark.asyncio
    async def test_burst_fires_once(self):
        fired = []
        scheduler = DebounceScheduler(fired.append)

        for _ in range(5):
            scheduler.signal("w1", 0.1)
            await asyncio.sleep(0.02)

        assert fired == []
        await asyncio.sleep(0.2)
        assert fired == ["w1"]

    @pytest.mark.asyncio
    async def test_signal_restarts_window(self):
        fired = []
        scheduler = DebounceScheduler(fired.append)

        scheduler.signal("w1", 0.2)
        await asyncio.sleep(0.12)
        scheduler.signal("w1", 0.2)
        await asyncio.sleep(0.12)

        # Past the first window, still inside the second
        assert fired == []
        await asyncio.sleep(0.2)
        assert fired == ["w1"]

    @pytest.mark.asyncio
    async def test_watchers_are_independent(self):
        fired = []
        scheduler = DebounceScheduler(fired.append)

        scheduler.signal("slow", 0.2)
        scheduler.signal("fast", 0.02)
        await asyncio.sleep(0.08)
        assert fired == ["fast"]
        assert scheduler.is_pending("slow")

        await asyncio.sleep(0.2)
        assert fired == ["fast", "slow"]

    @pytest.mark.asyncio
    async def test_cancel(self):
        fired = []
        scheduler = DebounceScheduler(fired.append)

        scheduler.signal("w1", 0.05)
        assert scheduler.cancel("w1") is True
        assert scheduler.cancel("w1") is False

        await asyncio.sleep(0.1)
        assert fired == []

    @pytest.mark.asyncio
    async def test_cancel_all(self):
        fired = []
        scheduler = DebounceScheduler(fired.append)

        scheduler.signal("w1", 0.05)
        scheduler.signal("w2", 0.05)
        assert len(scheduler) == 2

        assert scheduler.cancel_all() == 2
        assert len(scheduler) == 0
        await asyncio.sleep(0.1)
        assert fired == []
