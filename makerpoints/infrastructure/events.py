"""
Domain events for observers of the quoting controller.

The controller is the only writer of trading state. It announces what
happened by dropping immutable events into the bus queue; observers
(notifier, metrics, state API) consume them from the bus task, so a slow
observer never stalls the control loop.
"""

import asyncio
import inspect
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Coroutine

from makerpoints.infrastructure.logging import get_logger

logger = get_logger(__name__)


class EventType(Enum):
    """Types of domain events."""

    # Lifecycle
    STARTED = "started"
    STOPPED = "stopped"
    HALTED = "halted"
    STATE_CHANGED = "state_changed"

    # Orders and fills
    ORDER_PLACED = "order_placed"
    ORDER_REPLACED = "order_replaced"
    TRADE_EXECUTED = "trade_executed"
    POSITION_UPDATED = "position_updated"
    POSITION_FLATTENED = "position_flattened"

    # Market conditions
    VOLATILITY_PAUSED = "volatility_paused"
    VOLATILITY_RESUMED = "volatility_resumed"

    # Feed connectivity
    FEED_RECONNECTING = "feed_reconnecting"
    FEED_RECONNECTED = "feed_reconnected"
    MAX_RECONNECT_REACHED = "max_reconnect_reached"


@dataclass(frozen=True)
class DomainEvent:
    """Immutable event record."""

    event_type: EventType
    payload: dict[str, Any] = field(default_factory=dict)
    source: str = "controller"
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def age_ms(self) -> float:
        """Age of event in milliseconds."""
        return (datetime.now(timezone.utc) - self.timestamp).total_seconds() * 1000


EventHandler = Callable[[DomainEvent], Coroutine[Any, Any, None]]
SyncEventHandler = Callable[[DomainEvent], None]


class EventBus:
    """
    Broadcast channel from the controller to its observers.

    Usage:
        bus = EventBus()

        async def on_trade(event: DomainEvent):
            print(event.payload["qty"])

        bus.subscribe(EventType.TRADE_EXECUTED, on_trade)
        task = asyncio.create_task(bus.run())

        bus.publish_nowait(DomainEvent(EventType.TRADE_EXECUTED, {"qty": 0.1}))
    """

    def __init__(self, max_queue_size: int = 1000):
        self._handlers: dict[EventType, list[EventHandler | SyncEventHandler]] = defaultdict(list)
        self._all_handlers: list[EventHandler | SyncEventHandler] = []
        self._queue: asyncio.Queue[DomainEvent] = asyncio.Queue(maxsize=max_queue_size)
        self._running = False
        self._processed_count = 0
        self._error_count = 0
        self._dropped_count = 0

    def subscribe(
        self,
        event_type: EventType,
        handler: EventHandler | SyncEventHandler,
    ) -> None:
        """Subscribe to a specific event type."""
        self._handlers[event_type].append(handler)
        logger.debug("Event handler subscribed", event_type=event_type.value)

    def subscribe_all(self, handler: EventHandler | SyncEventHandler) -> None:
        """Subscribe to all events."""
        self._all_handlers.append(handler)

    def unsubscribe(
        self,
        event_type: EventType,
        handler: EventHandler | SyncEventHandler,
    ) -> None:
        """Unsubscribe from an event type."""
        if handler in self._handlers[event_type]:
            self._handlers[event_type].remove(handler)

    async def publish(self, event: DomainEvent) -> None:
        """Deliver an event to all subscribers right away."""
        handlers = list(self._handlers[event.event_type]) + list(self._all_handlers)

        for handler in handlers:
            try:
                if inspect.iscoroutinefunction(handler):
                    await handler(event)
                else:
                    handler(event)
            except Exception as e:
                self._error_count += 1
                logger.error(
                    "Event handler error",
                    event_type=event.event_type.value,
                    error=str(e),
                )

        self._processed_count += 1

    def publish_nowait(self, event: DomainEvent) -> None:
        """
        Queue an event for delivery by the bus task.

        Never blocks; a full queue drops the event.
        """
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self._dropped_count += 1
            logger.warning("Event queue full, dropping event", event_type=event.event_type.value)

    async def drain(self) -> None:
        """Deliver every queued event. Used on shutdown and in tests."""
        while not self._queue.empty():
            try:
                event = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            await self.publish(event)

    async def run(self) -> None:
        """Run event delivery loop."""
        self._running = True
        logger.info("Event bus started")

        while self._running:
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=1.0)
                await self.publish(event)
            except asyncio.TimeoutError:
                continue

    def stop(self) -> None:
        """Stop the event bus."""
        self._running = False

    @property
    def stats(self) -> dict[str, int]:
        """Get event bus statistics."""
        return {
            "processed": self._processed_count,
            "errors": self._error_count,
            "dropped": self._dropped_count,
            "queue_size": self._queue.qsize(),
            "handlers": sum(len(h) for h in self._handlers.values()) + len(self._all_handlers),
        }


class EventLogger:
    """Logs every event for the audit trail."""

    def __init__(self, log_level: str = "debug"):
        self.log_level = log_level
        self._event_counts: dict[EventType, int] = defaultdict(int)

    async def handle(self, event: DomainEvent) -> None:
        self._event_counts[event.event_type] += 1

        log_fn = getattr(logger, self.log_level, logger.debug)
        log_fn(
            "Domain event",
            event_type=event.event_type.value,
            source=event.source,
            payload=event.payload,
        )

    def get_counts(self) -> dict[str, int]:
        """Get event counts by type."""
        return {k.value: v for k, v in self._event_counts.items()}
