"""Single-token guard that admits one fill procedure at a time."""

import asyncio

from makerpoints.infrastructure.logging import get_logger

logger = get_logger(__name__)


class FillGuard:
    """
    Structural mutual exclusion for fill handling.

    Unlike a lock, a second caller is never queued: try_acquire() either
    takes the only token or returns False, so a duplicate fill
    notification is dropped rather than replayed later.

    Usage:
        if not guard.try_acquire(order_id):
            return  # another fill is being handled
        try:
            ...
        finally:
            guard.release()
    """

    def __init__(self) -> None:
        self._holder: str | None = None
        self._released = asyncio.Event()
        self._released.set()

    @property
    def locked(self) -> bool:
        return self._holder is not None

    @property
    def holder(self) -> str | None:
        return self._holder

    def try_acquire(self, holder: str) -> bool:
        if self._holder is not None:
            logger.warning("Fill guard busy, dropping", holder=holder, current=self._holder)
            return False
        self._holder = holder
        self._released.clear()
        return True

    def release(self) -> None:
        self._holder = None
        self._released.set()

    async def wait_released(self, timeout: float | None = None) -> bool:
        """Wait for the token to come back; False on timeout."""
        try:
            await asyncio.wait_for(self._released.wait(), timeout)
            return True
        except asyncio.TimeoutError:
            return False
