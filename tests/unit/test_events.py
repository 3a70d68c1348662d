"""Tests for event bus behavior."""

import pytest

from makerpoints.infrastructure.events import DomainEvent, EventBus, EventLogger, EventType


def test_event_bus_tracks_dropped_events():
    bus = EventBus(max_queue_size=1)
    e1 = DomainEvent(event_type=EventType.STATE_CHANGED)
    e2 = DomainEvent(event_type=EventType.STATE_CHANGED)

    bus.publish_nowait(e1)
    bus.publish_nowait(e2)

    stats = bus.stats
    assert stats["queue_size"] == 1
    assert stats["dropped"] == 1


@pytest.mark.asyncio
async def test_drain_delivers_in_order_to_sync_and_async_handlers():
    bus = EventBus()
    seen: list[EventType] = []
    trades: list[dict] = []

    async def on_trade(event: DomainEvent):
        trades.append(event.payload)

    bus.subscribe_all(lambda event: seen.append(event.event_type))
    bus.subscribe(EventType.TRADE_EXECUTED, on_trade)

    bus.publish_nowait(DomainEvent(EventType.ORDER_PLACED, {"side": "buy"}))
    bus.publish_nowait(DomainEvent(EventType.TRADE_EXECUTED, {"qty": 0.1}))
    await bus.drain()

    assert seen == [EventType.ORDER_PLACED, EventType.TRADE_EXECUTED]
    assert trades == [{"qty": 0.1}]
    assert bus.stats["processed"] == 2
    assert bus.stats["queue_size"] == 0


@pytest.mark.asyncio
async def test_failing_handler_does_not_block_others():
    bus = EventBus()
    seen = []

    def broken(event: DomainEvent):
        raise RuntimeError("boom")

    bus.subscribe_all(broken)
    bus.subscribe_all(seen.append)

    await bus.publish(DomainEvent(EventType.HALTED))

    assert len(seen) == 1
    assert bus.stats["errors"] == 1


@pytest.mark.asyncio
async def test_unsubscribe():
    bus = EventBus()
    seen = []
    bus.subscribe(EventType.STOPPED, seen.append)
    bus.unsubscribe(EventType.STOPPED, seen.append)

    await bus.publish(DomainEvent(EventType.STOPPED))

    assert seen == []


@pytest.mark.asyncio
async def test_event_logger_counts():
    event_logger = EventLogger()
    await event_logger.handle(DomainEvent(EventType.ORDER_PLACED))
    await event_logger.handle(DomainEvent(EventType.ORDER_PLACED))
    await event_logger.handle(DomainEvent(EventType.STOPPED))

    assert event_logger.get_counts() == {"order_placed": 2, "stopped": 1}
