"""
Core types shared by the feed, the gateway and the controller.

Contains:
- models: Order, snapshots and stream updates
"""

from makerpoints.core.models import (
    Order,
    OrderSide,
    OrderStatus,
    OrderUpdate,
    PositionUpdate,
    PriceSnapshot,
)

__all__ = [
    "Order",
    "OrderSide",
    "OrderStatus",
    "OrderUpdate",
    "PositionUpdate",
    "PriceSnapshot",
]
