"""
Periodic position safety check.

Fills can be missed (dropped while another fill is handled, lost during a
reconnect, partial fills). The monitor asks the controller to compare its
position with the venue's on a fixed interval; a non-zero venue position
is flattened by the controller.
"""

import asyncio
import time

from makerpoints.infrastructure.logging import get_logger
from makerpoints.strategy.controller import PositionCheck, QuotingController

logger = get_logger(__name__)


class PositionSafetyMonitor:
    """
    Background position cross-check.

    Usage:
        monitor = PositionSafetyMonitor(controller)
        await monitor.start_periodic(interval_seconds=15)
        ...
        await monitor.stop()
    """

    def __init__(self, controller: QuotingController):
        self.controller = controller
        self._running = False
        self._task: asyncio.Task | None = None
        self._checks = 0
        self._last_check: float | None = None

    async def run(self) -> None:
        """Queue one position check with the controller."""
        if not self.controller.running:
            return
        self._checks += 1
        self._last_check = time.time()
        await self.controller.submit(PositionCheck(trigger="safety_monitor"))

    async def start_periodic(self, interval_seconds: float = 15.0) -> None:
        if self._running:
            logger.warning("Safety monitor already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop(interval_seconds))
        logger.info("Started position safety monitor", interval_seconds=interval_seconds)

    async def stop(self) -> None:
        self._running = False

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        logger.info("Stopped position safety monitor", checks=self._checks)

    async def _run_loop(self, interval: float) -> None:
        while self._running:
            await asyncio.sleep(interval)
            await self.run()

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def checks(self) -> int:
        return self._checks
