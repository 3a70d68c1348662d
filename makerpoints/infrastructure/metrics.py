"""
Prometheus metrics for observability.

Exposes metrics on /metrics endpoint for Prometheus scraping.

The collector is an event-bus observer: it never touches controller
state, it only counts what the controller announces.
"""

import time

from prometheus_client import (
    Counter,
    Gauge,
    Info,
    start_http_server,
)

from makerpoints.infrastructure.events import DomainEvent, EventBus, EventType
from makerpoints.infrastructure.logging import get_logger

logger = get_logger(__name__)


# =============================================================================
# Order Metrics
# =============================================================================

ORDERS_PLACED = Counter(
    "makerpoints_orders_placed_total",
    "Total resting orders placed",
    ["side"],
)

ORDERS_REPLACED = Counter(
    "makerpoints_orders_replaced_total",
    "Total cancel-and-replace cycles",
    ["side", "reason"],
)

ORDERS_FILLED = Counter(
    "makerpoints_orders_filled_total",
    "Total resting orders filled",
    ["side"],
)

FLATTENS = Counter(
    "makerpoints_flattens_total",
    "Positions force-closed outside the fill path",
    ["trigger"],
)

# =============================================================================
# State Metrics
# =============================================================================

POSITION = Gauge(
    "makerpoints_position",
    "Locally tracked signed position",
)

MARK_PRICE = Gauge(
    "makerpoints_mark_price",
    "Last accepted mark price",
)

VOLATILITY_PAUSED = Gauge(
    "makerpoints_volatility_paused",
    "1 while quoting is paused for volatility",
)

RUNNING = Gauge(
    "makerpoints_running",
    "1 while the controller is running",
)

# =============================================================================
# System Metrics
# =============================================================================

FEED_RECONNECTS = Counter(
    "makerpoints_feed_reconnects_total",
    "Feed reconnect attempts",
)

HALTS = Counter(
    "makerpoints_halts_total",
    "Fatal halts",
    ["reason"],
)

BOT_INFO = Info(
    "makerpoints_bot",
    "Bot information",
)

UPTIME_SECONDS = Gauge(
    "makerpoints_uptime_seconds",
    "Bot uptime in seconds",
)


class MetricsCollector:
    """
    Collects and exposes Prometheus metrics.

    Usage:
        collector = MetricsCollector()
        collector.start_server(port=9091)
        collector.attach(event_bus)
    """

    def __init__(self):
        self._start_time = time.time()

    def start_server(self, port: int = 9091) -> None:
        """Start the Prometheus metrics HTTP server."""
        try:
            start_http_server(port)
            logger.info("Metrics server started", port=port)
        except OSError as e:
            logger.error("Failed to start metrics server", error=str(e))

    def set_bot_info(self, version: str, environment: str, symbol: str) -> None:
        BOT_INFO.info({
            "version": version,
            "environment": environment,
            "symbol": symbol,
        })

    def attach(self, bus: EventBus) -> None:
        bus.subscribe_all(self.handle_event)

    def handle_event(self, event: DomainEvent) -> None:
        """Update metrics from one controller event."""
        p = event.payload
        t = event.event_type
        UPTIME_SECONDS.set(time.time() - self._start_time)

        if t is EventType.ORDER_PLACED:
            ORDERS_PLACED.labels(side=p.get("side", "")).inc()
        elif t is EventType.ORDER_REPLACED:
            ORDERS_REPLACED.labels(side=p.get("side", ""), reason=p.get("reason", "")).inc()
        elif t is EventType.TRADE_EXECUTED:
            ORDERS_FILLED.labels(side=p.get("side", "")).inc()
        elif t is EventType.POSITION_FLATTENED:
            FLATTENS.labels(trigger=p.get("trigger", "")).inc()
        elif t is EventType.POSITION_UPDATED:
            POSITION.set(p.get("position", 0.0))
        elif t is EventType.STATE_CHANGED:
            MARK_PRICE.set(p.get("mark_price") or 0.0)
            VOLATILITY_PAUSED.set(1 if p.get("paused_for_volatility") else 0)
            RUNNING.set(1 if p.get("running") else 0)
        elif t is EventType.FEED_RECONNECTING:
            FEED_RECONNECTS.inc()
        elif t is EventType.HALTED:
            HALTS.labels(reason=p.get("reason", "")).inc()
