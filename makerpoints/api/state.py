from dataclasses import dataclass
from typing import Any

from makerpoints.infrastructure.events import EventBus


@dataclass
class BotState:
    """Handles the API reads from. Only the controller writes trading state."""
    controller: Any | None = None  # QuotingController
    feed: Any | None = None  # PriceFeed
    event_bus: EventBus | None = None
    is_live: bool = False  # True if sending real orders
    version: str = ""


# Global singleton instance
_state = BotState()


def get_state() -> BotState:
    """Get the global bot state."""
    return _state


def reset_state() -> BotState:
    """Replace the singleton (used on startup and in tests)."""
    global _state
    _state = BotState()
    return _state
