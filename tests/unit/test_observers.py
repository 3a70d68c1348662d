"""Tests for the event-bus observers (alerts and metrics)."""

from unittest.mock import AsyncMock

import pytest
from prometheus_client import REGISTRY

from makerpoints.infrastructure.alerts import Alert, AlertLevel, TelegramAlerter
from makerpoints.infrastructure.events import DomainEvent, EventBus, EventType
from makerpoints.infrastructure.metrics import MetricsCollector


def sample(name: str, labels: dict | None = None) -> float:
    return REGISTRY.get_sample_value(name, labels or {}) or 0.0


class TestTelegramAlerter:
    """Tests for alert formatting and routing."""

    def test_disabled_without_credentials(self):
        assert not TelegramAlerter(enabled=True).enabled
        assert not TelegramAlerter(bot_token="t", chat_id="c", enabled=False).enabled
        assert TelegramAlerter(bot_token="t", chat_id="c").enabled

    @pytest.mark.asyncio
    async def test_send_when_disabled(self):
        alerter = TelegramAlerter()
        assert not await alerter.send(Alert(AlertLevel.INFO, "t", "m"))

    def test_halt_alert(self):
        alert = TelegramAlerter.alert_for(
            DomainEvent(EventType.HALTED, {"reason": "close_failed", "detail": "sell 0.1"})
        )
        assert alert.level is AlertLevel.CRITICAL
        assert "close_failed" in alert.format()

    def test_fill_alert(self):
        alert = TelegramAlerter.alert_for(
            DomainEvent(EventType.TRADE_EXECUTED, {"side": "buy", "qty": 0.1, "price": 89820.0})
        )
        assert "BUY 0.1 @ $89820.0" in alert.message

    def test_volatility_alert(self):
        alert = TelegramAlerter.alert_for(DomainEvent(EventType.VOLATILITY_PAUSED, {"gap_bp": 22.222}))
        assert "22.22 bp" in alert.message

    def test_quiet_events(self):
        assert TelegramAlerter.alert_for(DomainEvent(EventType.STATE_CHANGED)) is None
        assert TelegramAlerter.alert_for(DomainEvent(EventType.ORDER_PLACED)) is None

    @pytest.mark.asyncio
    async def test_attach_routes_selected_events(self):
        alerter = TelegramAlerter(bot_token="t", chat_id="c")
        alerter.send = AsyncMock(return_value=True)
        bus = EventBus()
        alerter.attach(bus)

        bus.publish_nowait(DomainEvent(EventType.ORDER_PLACED, {"side": "buy"}))
        bus.publish_nowait(DomainEvent(EventType.MAX_RECONNECT_REACHED, {"attempts": 30}))
        await bus.drain()

        alerter.send.assert_awaited_once()
        alert = alerter.send.await_args.args[0]
        assert alert.title == "Feed Lost"


class TestMetricsCollector:
    """Tests for event-driven metrics."""

    @pytest.mark.asyncio
    async def test_counts_from_events(self):
        bus = EventBus()
        collector = MetricsCollector()
        collector.attach(bus)

        placed = sample("makerpoints_orders_placed_total", {"side": "sell"})
        replaced = sample("makerpoints_orders_replaced_total", {"side": "buy", "reason": "too_close"})
        halts = sample("makerpoints_halts_total", {"reason": "close_failed"})

        bus.publish_nowait(DomainEvent(EventType.ORDER_PLACED, {"side": "sell"}))
        bus.publish_nowait(DomainEvent(EventType.ORDER_REPLACED, {"side": "buy", "reason": "too_close"}))
        bus.publish_nowait(DomainEvent(EventType.HALTED, {"reason": "close_failed"}))
        bus.publish_nowait(DomainEvent(EventType.POSITION_UPDATED, {"position": -0.1}))
        bus.publish_nowait(
            DomainEvent(
                EventType.STATE_CHANGED,
                {"mark_price": 90000.0, "paused_for_volatility": True, "running": True},
            )
        )
        await bus.drain()

        assert sample("makerpoints_orders_placed_total", {"side": "sell"}) == placed + 1
        assert sample("makerpoints_orders_replaced_total", {"side": "buy", "reason": "too_close"}) == replaced + 1
        assert sample("makerpoints_halts_total", {"reason": "close_failed"}) == halts + 1
        assert sample("makerpoints_position") == -0.1
        assert sample("makerpoints_mark_price") == 90000.0
        assert sample("makerpoints_volatility_paused") == 1.0
        assert sample("makerpoints_running") == 1.0
