"""Tests for the single-token fill guard."""

import asyncio

import pytest

from makerpoints.strategy.fill_guard import FillGuard


class TestFillGuard:
    """Tests for FillGuard."""

    def test_second_acquire_is_refused(self):
        guard = FillGuard()
        assert guard.try_acquire("order-1")
        assert guard.locked
        assert guard.holder == "order-1"

        assert not guard.try_acquire("order-2")
        assert guard.holder == "order-1"

    def test_release_allows_next(self):
        guard = FillGuard()
        guard.try_acquire("order-1")
        guard.release()

        assert not guard.locked
        assert guard.holder is None
        assert guard.try_acquire("order-2")

    @pytest.mark.asyncio
    async def test_wait_released(self):
        guard = FillGuard()
        assert await guard.wait_released(timeout=0.01)

        guard.try_acquire("order-1")
        assert not await guard.wait_released(timeout=0.01)

        asyncio.get_running_loop().call_later(0.01, guard.release)
        assert await guard.wait_released(timeout=1.0)
