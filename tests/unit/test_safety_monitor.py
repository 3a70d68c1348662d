"""Tests for the periodic position safety monitor."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from makerpoints.strategy.controller import PositionCheck
from makerpoints.strategy.safety_monitor import PositionSafetyMonitor


@pytest.fixture
def controller():
    controller = MagicMock()
    controller.running = True
    controller.submit = AsyncMock()
    return controller


class TestPositionSafetyMonitor:
    """Tests for PositionSafetyMonitor."""

    @pytest.mark.asyncio
    async def test_run_submits_check(self, controller):
        monitor = PositionSafetyMonitor(controller)

        await monitor.run()

        controller.submit.assert_awaited_once_with(PositionCheck(trigger="safety_monitor"))
        assert monitor.checks == 1

    @pytest.mark.asyncio
    async def test_idle_while_controller_stopped(self, controller):
        controller.running = False
        monitor = PositionSafetyMonitor(controller)

        await monitor.run()

        controller.submit.assert_not_awaited()
        assert monitor.checks == 0

    @pytest.mark.asyncio
    async def test_periodic(self, controller):
        monitor = PositionSafetyMonitor(controller)

        await monitor.start_periodic(interval_seconds=0.01)
        assert monitor.is_running
        await asyncio.sleep(0.05)
        await monitor.stop()

        assert not monitor.is_running
        assert controller.submit.await_count >= 2
