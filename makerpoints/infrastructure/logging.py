"""
Structured logging configuration.

Provides:
- JSON logging for production (easy to aggregate)
- Text logging for development (human readable)
- Clean one-line logging for watching the bot in a terminal
- Context injection for tracing
"""

import logging
import sys
from datetime import datetime, timezone
from typing import Any

import structlog
from structlog import DropEvent
from structlog.types import EventDict, Processor


# Per-tick chatter that the clean renderer hides
NOISE_EVENTS = [
    "Mark price updated",
    "Order in valid range",
    "Skipping evaluation",
    "Still paused for volatility",
    "Feed message",
    "Position check",
]


def filter_noise(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Filter out noise events."""
    if method_name == "debug":
        raise DropEvent

    event = event_dict.get("event", "")
    for noise in NOISE_EVENTS:
        if noise in event:
            raise DropEvent
    return event_dict


def add_timestamp(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Add ISO timestamp to log entry."""
    event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()
    return event_dict


def add_log_level(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Add log level to event dict."""
    event_dict["level"] = method_name.upper()
    return event_dict


def censor_secrets(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Remove sensitive data from logs."""
    sensitive_keys = {
        "private_key", "signing_key", "access_token", "authorization",
        "password", "token", "secret", "signature",
    }

    def _censor(obj: Any) -> Any:
        if isinstance(obj, dict):
            return {
                k: "[REDACTED]" if any(s in k.lower() for s in sensitive_keys) else _censor(v)
                for k, v in obj.items()
            }
        elif isinstance(obj, list):
            return [_censor(item) for item in obj]
        return obj

    return _censor(event_dict)


def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """
    Configure structured logging.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Output format ("json", "text", or "clean")
    """
    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_timestamp,
        add_log_level,
        censor_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if log_format == "json":
        processors = shared_processors + [
            structlog.processors.JSONRenderer()
        ]
    elif log_format == "clean":
        processors = shared_processors + [
            filter_noise,
            CleanConsoleRenderer()
        ]
    else:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=True)
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(log_level.upper())
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=logging.getLevelName(log_level.upper()),
    )

    # Silence noisy HTTP libraries
    for noisy_logger in [
        "aiohttp", "aiohttp.client", "aiohttp.access",
        "websockets", "websockets.client", "uvicorn.access",
    ]:
        logging.getLogger(noisy_logger).setLevel(logging.WARNING)


class CleanConsoleRenderer:
    """
    Console renderer for human readability.

    Turns the bot's lifecycle events into short emoji-coded one-liners.
    """

    EMOJIS = {
        "startup": "🚀",
        "shutdown": "🛑",
        "order_placed": "📌",
        "order_replaced": "🔁",
        "fill": "⚡",
        "flatten": "🧯",
        "pause": "🌪️",
        "resume": "🌤️",
        "feed": "📡",
        "halt": "🚨",
        "error": "❌",
    }

    def __call__(
        self,
        logger: logging.Logger,
        method_name: str,
        event_dict: EventDict,
    ) -> str:
        """Render log entry as simplified human text."""
        level = event_dict.get("level", "INFO").upper()
        event = event_dict.get("event", "")

        message = ""
        emoji = "ℹ️"

        if "Order placed" in event:
            emoji = self.EMOJIS["order_placed"]
            side = str(event_dict.get("side", "")).upper()
            price = event_dict.get("price", "")
            qty = event_dict.get("qty", "")
            message = f"{side} {qty} @ {price}"

        elif "Order replaced" in event:
            emoji = self.EMOJIS["order_replaced"]
            side = str(event_dict.get("side", "")).upper()
            reason = event_dict.get("reason", "")
            message = f"Replaced {side} order ({reason})"

        elif "ORDER FILLED" in event:
            emoji = self.EMOJIS["fill"]
            side = str(event_dict.get("side", "")).upper()
            qty = event_dict.get("qty", "")
            price = event_dict.get("price", "")
            message = f"FILLED {side} {qty} @ {price}, closing now"

        elif "Flatten" in event or "Position closed" in event:
            emoji = self.EMOJIS["flatten"]
            message = event

        elif "Volatility pause" in event:
            emoji = self.EMOJIS["pause"]
            gap = event_dict.get("gap_bp", "")
            message = f"Paused: last/mark gap {gap} bp"

        elif "Volatility normalized" in event:
            emoji = self.EMOJIS["resume"]
            gap = event_dict.get("gap_bp", "")
            message = f"Resumed: last/mark gap {gap} bp"

        elif "Feed" in event:
            emoji = self.EMOJIS["feed"]
            message = event

        elif "HALT" in event:
            emoji = self.EMOJIS["halt"]
            reason = event_dict.get("reason", "")
            message = f"{event}: {reason}"

        elif "Controller started" in event:
            emoji = self.EMOJIS["startup"]
            message = "Quoting started"

        elif "Controller stopped" in event:
            emoji = self.EMOJIS["shutdown"]
            message = "Quoting stopped"

        elif level == "ERROR" or "error" in event.lower():
            emoji = self.EMOJIS["error"]
            error_msg = event_dict.get("error", event)
            message = f"Error: {error_msg}"

        if not message:
            emoji = "📝" if level == "INFO" else "⚠️"
            message = event

        time_str = datetime.now().strftime("%H:%M:%S")

        return f"\033[90m[{time_str}]\033[0m {emoji} {message}"


def get_logger(name: str) -> structlog.BoundLogger:
    """
    Get a logger instance with the given name.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Bound logger instance
    """
    return structlog.get_logger(name)


def bind_context(**context: Any) -> None:
    """Bind context variables for the current async context."""
    structlog.contextvars.bind_contextvars(**context)


def unbind_context(*keys: str) -> None:
    """Unbind context variables."""
    structlog.contextvars.unbind_contextvars(*keys)
