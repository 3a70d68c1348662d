"""
Streaming market/user feed with automatic reconnection.

Features:
- Exponential backoff capped at a maximum delay and attempt count
- Automatic resubscription of every channel after a reconnect
- Typed records (snapshots, order and position updates) for subscribers
- Connectivity events (connected, disconnected, reconnecting,
  reconnected, exhausted)
"""

import asyncio
import json
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Coroutine

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from makerpoints.infrastructure.logging import get_logger
from makerpoints.ingestion.normalization import FeedRecord, normalize_message

logger = get_logger(__name__)


class ConnectionState(Enum):
    """Feed connection states."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


class FeedEventType(Enum):
    """Connectivity events emitted alongside data records."""
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    RECONNECTING = "reconnecting"
    RECONNECTED = "reconnected"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class FeedEvent:
    """Connectivity change."""
    kind: FeedEventType
    attempt: int = 0
    delay_s: float = 0.0
    reason: str = ""


class FeedExhaustedError(Exception):
    """Raised when the feed cannot connect within the allowed attempts."""


@dataclass
class ReconnectPolicy:
    """Exponential backoff configuration."""
    base_delay_ms: int = 1000
    max_delay_ms: int = 30000
    multiplier: float = 2.0
    jitter_pct: float = 0.0
    max_attempts: int = 30

    def get_delay(self, attempt: int) -> float:
        """Delay in seconds before reconnect attempt number `attempt` (0-based)."""
        base_delay = self.base_delay_ms * (self.multiplier ** attempt)
        capped_delay = min(base_delay, self.max_delay_ms)
        jitter = capped_delay * self.jitter_pct * (random.random() * 2 - 1)
        return max(0.0, capped_delay + jitter) / 1000.0


FeedHandler = Callable[[FeedRecord | FeedEvent], Coroutine[Any, Any, None]]
Connector = Callable[[str], Awaitable[Any]]


class PriceFeed:
    """
    Venue stream client with automatic reconnection.

    Usage:
        feed = PriceFeed(url="wss://perps.standx.com/ws-stream/v1")
        feed.on(handle_record)
        feed.subscribe("BTC-USD")
        feed.subscribe_user(auth.get_token)
        await feed.connect()
    """

    def __init__(
        self,
        url: str,
        reconnect_policy: ReconnectPolicy | None = None,
        connector: Connector | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        ping_interval_s: float = 20.0,
    ):
        self.url = url
        self.reconnect_policy = reconnect_policy or ReconnectPolicy()
        self._connector = connector or self._default_connector
        self._sleep = sleep
        self._ping_interval_s = ping_interval_s

        self._ws: Any = None
        self._state = ConnectionState.DISCONNECTED
        self._handlers: list[FeedHandler] = []
        self._symbols: list[str] = []
        self._token_provider: Callable[[], str] | None = None
        self._attempt = 0
        self._stopping = False
        self._ever_connected = False
        self._exhausted = False
        self._last_message_time: float = 0
        self._run_task: asyncio.Task | None = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    @property
    def attempt(self) -> int:
        return self._attempt

    @property
    def last_message_age_seconds(self) -> float:
        """Time since last message received."""
        if self._last_message_time == 0:
            return float("inf")
        return time.time() - self._last_message_time

    def on(self, handler: FeedHandler) -> None:
        """Register handler for records and connectivity events."""
        self._handlers.append(handler)

    def subscribe(self, symbol: str) -> None:
        """Subscribe to the price channel; re-sent after every reconnect."""
        if symbol not in self._symbols:
            self._symbols.append(symbol)

    def subscribe_user(self, token_provider: Callable[[], str]) -> None:
        """Subscribe to the authenticated order and position streams."""
        self._token_provider = token_provider

    async def _default_connector(self, url: str) -> Any:
        return await websockets.connect(
            url,
            ping_interval=self._ping_interval_s,
            ping_timeout=10,
            close_timeout=5,
        )

    async def connect(self) -> None:
        """
        Establish the first connection, retrying with backoff.

        Raises:
            FeedExhaustedError: If every allowed attempt fails
        """
        if self._run_task is not None:
            logger.warning("Feed already running")
            return

        self._stopping = False
        if not await self._open():
            if not await self._reconnect():
                raise FeedExhaustedError(
                    f"Failed to connect after {self._attempt} attempts"
                )

        self._run_task = asyncio.create_task(self._run())

    async def _open(self) -> bool:
        """Single connection attempt; resubscribes before announcing success."""
        self._state = ConnectionState.CONNECTING
        try:
            logger.info("Connecting feed", url=self.url, attempt=self._attempt)
            self._ws = await self._connector(self.url)
            await self._send_subscriptions()
        except (OSError, WebSocketException, asyncio.TimeoutError) as e:
            logger.warning("Feed connection failed", error=str(e), attempt=self._attempt)
            self._ws = None
            self._state = ConnectionState.DISCONNECTED
            return False

        self._state = ConnectionState.CONNECTED
        self._attempt = 0
        self._last_message_time = time.time()

        if self._ever_connected:
            logger.info("Feed reconnected", url=self.url)
            await self._emit(FeedEvent(FeedEventType.RECONNECTED))
        else:
            self._ever_connected = True
            logger.info("Feed connected", url=self.url)
            await self._emit(FeedEvent(FeedEventType.CONNECTED))
        return True

    async def _reconnect(self) -> bool:
        """Back off and retry until connected, stopped or out of attempts."""
        policy = self.reconnect_policy
        while not self._stopping:
            if self._attempt >= policy.max_attempts:
                self._state = ConnectionState.CLOSED
                if not self._exhausted:
                    self._exhausted = True
                    logger.error("Feed reconnect attempts exhausted", attempts=self._attempt)
                    await self._emit(FeedEvent(FeedEventType.EXHAUSTED, attempt=self._attempt))
                return False

            delay = policy.get_delay(self._attempt)
            self._attempt += 1
            self._state = ConnectionState.RECONNECTING
            logger.warning("Feed reconnecting", attempt=self._attempt, delay_s=delay)
            await self._emit(FeedEvent(FeedEventType.RECONNECTING, attempt=self._attempt, delay_s=delay))

            await self._sleep(delay)
            if self._stopping:
                return False
            if await self._open():
                return True
        return False

    async def _run(self) -> None:
        """Receive until the connection drops, then reconnect."""
        while not self._stopping:
            reason = await self._receive_loop()
            if self._stopping:
                break

            self._state = ConnectionState.DISCONNECTED
            self._ws = None
            logger.warning("Feed disconnected", reason=reason)
            await self._emit(FeedEvent(FeedEventType.DISCONNECTED, reason=reason))

            if not await self._reconnect():
                break

    async def _receive_loop(self) -> str:
        """Main loop for receiving messages. Returns why it ended."""
        try:
            async for raw in self._ws:
                self._last_message_time = time.time()
                await self._handle_message(raw)
        except ConnectionClosed as e:
            return f"closed: {e}"
        except (OSError, WebSocketException) as e:
            logger.error("Feed receive error", error=str(e))
            return f"error: {e}"
        return "closed"

    async def _handle_message(self, raw: str | bytes) -> None:
        """Parse and dispatch one message; bad input is dropped."""
        try:
            message = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError, TypeError) as e:
            logger.warning("Invalid JSON feed message", error=str(e))
            return

        record = normalize_message(message)
        if record is None:
            logger.debug("Feed message ignored", channel=message.get("channel") if isinstance(message, dict) else None)
            return

        await self._emit(record)

    async def _emit(self, item: FeedRecord | FeedEvent) -> None:
        for handler in self._handlers:
            try:
                await handler(item)
            except Exception as e:
                logger.error("Feed handler error", item=type(item).__name__, error=str(e))

    async def _send_subscriptions(self) -> None:
        for symbol in self._symbols:
            await self._ws.send(json.dumps({
                "subscribe": {"channel": "price", "symbol": symbol}
            }))
            logger.info("Subscribed to price channel", symbol=symbol)

        if self._token_provider is not None:
            await self._ws.send(json.dumps({
                "auth": {
                    "token": self._token_provider(),
                    "streams": [{"channel": "order"}, {"channel": "position"}],
                }
            }))
            logger.info("Subscribed to order and position streams")

    async def stop(self) -> None:
        """Close the feed and suppress all further reconnects."""
        self._stopping = True
        self._state = ConnectionState.CLOSED

        if self._ws is not None:
            try:
                await self._ws.close()
            except (OSError, WebSocketException) as e:
                logger.debug("Error closing feed socket", error=str(e))
            self._ws = None

        if self._run_task is not None:
            self._run_task.cancel()
            try:
                await self._run_task
            except asyncio.CancelledError:
                pass
            self._run_task = None

        logger.info("Feed closed")

    async def health_check(self, max_silence_s: float = 60.0) -> bool:
        """Connected and receiving messages."""
        if not self.is_connected:
            return False
        return self.last_message_age_seconds < max_silence_s
