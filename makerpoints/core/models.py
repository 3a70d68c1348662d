"""
Shared trading types.

Feed messages (snapshots, order and position updates) are frozen: each
new message supersedes the previous one rather than mutating it. Orders
are mutable because the controller caches the latest venue status on the
order it owns.
"""

import time
from dataclasses import dataclass, field
from enum import Enum


class OrderSide(str, Enum):
    """Order side."""

    BUY = "buy"
    SELL = "sell"

    @property
    def opposite(self) -> "OrderSide":
        return OrderSide.SELL if self is OrderSide.BUY else OrderSide.BUY

    @property
    def sign(self) -> int:
        """Position change per unit filled."""
        return 1 if self is OrderSide.BUY else -1


class OrderStatus(str, Enum):
    """Order lifecycle states."""

    PENDING = "PENDING"    # Sent, not yet acknowledged
    OPEN = "OPEN"          # Resting on the book
    FILLED = "FILLED"
    CANCELED = "CANCELED"
    REJECTED = "REJECTED"

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.FILLED, OrderStatus.CANCELED, OrderStatus.REJECTED)


@dataclass(frozen=True)
class PriceSnapshot:
    """Point-in-time market reference data for one instrument."""

    mark_price: float
    last_price: float | None = None
    best_bid: float | None = None
    best_ask: float | None = None
    observed_at: float = field(default_factory=time.time)

    @property
    def has_spread(self) -> bool:
        return self.best_bid is not None and self.best_ask is not None

    @property
    def age_seconds(self) -> float:
        return time.time() - self.observed_at


@dataclass
class Order:
    """A resting maker order as the controller knows it."""

    side: OrderSide
    client_order_id: str
    price: float
    quantity: float
    venue_order_id: str | None = None
    filled_quantity: float = 0.0
    status: OrderStatus = OrderStatus.PENDING
    created_at: float = field(default_factory=time.time)

    @property
    def is_open(self) -> bool:
        return self.status is OrderStatus.OPEN

    @property
    def cancel_id(self) -> str:
        """Identifier the venue accepts for cancellation."""
        return self.venue_order_id or self.client_order_id

    def matches(self, order_id: str | None) -> bool:
        if not order_id:
            return False
        return order_id in (self.client_order_id, self.venue_order_id)


@dataclass(frozen=True)
class OrderUpdate:
    """Order status change pushed by the user stream."""

    order_id: str
    status: OrderStatus
    side: OrderSide
    client_order_id: str | None = None
    symbol: str = ""
    price: float = 0.0
    quantity: float = 0.0
    filled_quantity: float = 0.0
    avg_fill_price: float | None = None
    received_at: float = field(default_factory=time.time)

    @property
    def fill_price(self) -> float:
        return self.avg_fill_price or self.price


@dataclass(frozen=True)
class PositionUpdate:
    """Position change pushed by the user stream."""

    quantity: float
    symbol: str = ""
    entry_price: float | None = None
    unrealized_pnl: float | None = None
    received_at: float = field(default_factory=time.time)
