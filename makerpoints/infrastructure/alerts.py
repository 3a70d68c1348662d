"""
Telegram alerts for controller events.

Sends notifications for:
- Startup and shutdown
- Fills and the closes that follow them
- Volatility pauses
- Feed reconnects
- Halts that need an operator
"""

from dataclasses import dataclass
from enum import Enum

import aiohttp

from makerpoints.infrastructure.events import DomainEvent, EventBus, EventType
from makerpoints.infrastructure.logging import get_logger

logger = get_logger(__name__)


class AlertLevel(Enum):
    """Alert severity levels."""
    INFO = "ℹ️"
    WARNING = "⚠️"
    CRITICAL = "🚨"
    SUCCESS = "✅"


@dataclass
class Alert:
    """Alert message."""
    level: AlertLevel
    title: str
    message: str

    def format(self) -> str:
        return f"{self.level.value} *{self.title}*\n\n{self.message}"


class TelegramAlerter:
    """
    Sends alerts to Telegram.

    Usage:
        alerter = TelegramAlerter(bot_token, chat_id)
        alerter.attach(event_bus)
    """

    def __init__(
        self,
        bot_token: str = "",
        chat_id: str = "",
        enabled: bool = True,
        api_base: str = "https://api.telegram.org",
    ):
        self.enabled = enabled and bool(bot_token and chat_id)
        self._bot_token = bot_token
        self._chat_id = chat_id
        self._api_base = api_base
        self._session: aiohttp.ClientSession | None = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    async def send(self, alert: Alert) -> bool:
        """
        Send an alert to Telegram.

        Returns:
            True if sent successfully
        """
        if not self.enabled:
            logger.debug("Telegram alerts disabled", title=alert.title)
            return False

        try:
            session = await self._get_session()
            url = f"{self._api_base}/bot{self._bot_token}/sendMessage"

            payload = {
                "chat_id": self._chat_id,
                "text": alert.format(),
                "parse_mode": "Markdown",
            }

            async with session.post(url, json=payload) as resp:
                if resp.status == 200:
                    logger.debug("Telegram alert sent", title=alert.title)
                    return True
                logger.warning("Telegram send failed", status=resp.status)
                return False

        except aiohttp.ClientError as e:
            logger.error("Telegram error", error=str(e))
            return False

    def attach(self, bus: EventBus) -> None:
        """Subscribe to the events worth a phone notification."""
        for event_type in (
            EventType.STARTED,
            EventType.STOPPED,
            EventType.HALTED,
            EventType.TRADE_EXECUTED,
            EventType.POSITION_FLATTENED,
            EventType.VOLATILITY_PAUSED,
            EventType.VOLATILITY_RESUMED,
            EventType.FEED_RECONNECTING,
            EventType.FEED_RECONNECTED,
            EventType.MAX_RECONNECT_REACHED,
        ):
            bus.subscribe(event_type, self.handle_event)

    async def handle_event(self, event: DomainEvent) -> None:
        alert = self.alert_for(event)
        if alert is not None:
            await self.send(alert)

    @staticmethod
    def alert_for(event: DomainEvent) -> Alert | None:
        """Map a domain event to the alert text, or None to stay quiet."""
        p = event.payload
        t = event.event_type

        if t is EventType.STARTED:
            return Alert(AlertLevel.SUCCESS, "Bot Started", f"Quoting {p.get('symbol', '')} ({p.get('mode', '')})")
        if t is EventType.STOPPED:
            return Alert(AlertLevel.INFO, "Bot Stopped", "All orders canceled")
        if t is EventType.HALTED:
            return Alert(
                AlertLevel.CRITICAL,
                "HALTED - Manual intervention required",
                f"{p.get('reason', 'unknown')}\n\n`{p.get('detail', '')}`",
            )
        if t is EventType.TRADE_EXECUTED:
            return Alert(
                AlertLevel.WARNING,
                "Order Filled",
                f"{str(p.get('side', '')).upper()} {p.get('qty')} @ ${p.get('price')}\nPosition closed",
            )
        if t is EventType.POSITION_FLATTENED:
            return Alert(AlertLevel.WARNING, "Position Flattened", f"Closed {p.get('position')} ({p.get('trigger')})")
        if t is EventType.VOLATILITY_PAUSED:
            return Alert(AlertLevel.WARNING, "High Volatility", f"Last/mark gap {p.get('gap_bp', 0):.2f} bp. Orders paused.")
        if t is EventType.VOLATILITY_RESUMED:
            return Alert(AlertLevel.INFO, "Volatility Normalized", f"Gap {p.get('gap_bp', 0):.2f} bp. Resuming orders.")
        if t is EventType.FEED_RECONNECTING:
            return Alert(AlertLevel.WARNING, "Feed Reconnecting", f"Attempt {p.get('attempt')} in {p.get('delay_s', 0):.1f}s")
        if t is EventType.FEED_RECONNECTED:
            return Alert(AlertLevel.INFO, "Feed Reconnected", "Subscriptions restored, orders re-quoted")
        if t is EventType.MAX_RECONNECT_REACHED:
            return Alert(AlertLevel.CRITICAL, "Feed Lost", f"Gave up after {p.get('attempts')} reconnect attempts")
        return None
