"""Feed message normalization.

Turns decoded venue stream messages into typed snapshots and updates.

These functions are pure (no I/O) and never raise on bad input: anything
that cannot be turned into a valid record is logged and returned as None,
so malformed messages stop at this boundary.
"""

from __future__ import annotations

import time
from typing import Any

from makerpoints.core.models import (
    OrderSide,
    OrderStatus,
    OrderUpdate,
    PositionUpdate,
    PriceSnapshot,
)
from makerpoints.infrastructure.logging import get_logger

logger = get_logger(__name__)

PRICE_CHANNELS = frozenset({"price", "ticker", "symbol_price"})

# Venue status strings mapped onto our lifecycle
_STATUS_MAP = {
    "NEW": OrderStatus.OPEN,
    "OPEN": OrderStatus.OPEN,
    "PARTIALLY_FILLED": OrderStatus.OPEN,
    "PENDING": OrderStatus.PENDING,
    "FILLED": OrderStatus.FILLED,
    "CANCELED": OrderStatus.CANCELED,
    "CANCELLED": OrderStatus.CANCELED,
    "EXPIRED": OrderStatus.CANCELED,
    "REJECTED": OrderStatus.REJECTED,
}

FeedRecord = PriceSnapshot | OrderUpdate | PositionUpdate


def _pick(data: dict[str, Any], *keys: str) -> Any:
    """First non-empty value among snake_case / camelCase aliases."""
    for key in keys:
        value = data.get(key)
        if value is not None and value != "":
            return value
    return None


def parse_float(value: Any) -> float | None:
    """Parse a numeric field sent as number or string."""
    if value is None or isinstance(value, bool):
        return None
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return None
    if parsed != parsed or parsed in (float("inf"), float("-inf")):
        return None
    return parsed


def parse_timestamp(value: Any) -> float:
    """Venue timestamps arrive in ms or s; fall back to receipt time."""
    ts = parse_float(value)
    if ts is None or ts <= 0:
        return time.time()
    if ts > 1e12:
        return ts / 1000.0
    return ts


def parse_price_snapshot(data: dict[str, Any]) -> PriceSnapshot | None:
    """Build a snapshot from a price channel payload."""
    mark = parse_float(_pick(data, "mark_price", "markPrice"))
    if mark is None or mark <= 0:
        logger.warning("Dropping price message without valid mark price", data=data)
        return None

    last = parse_float(_pick(data, "last_price", "lastPrice"))
    if last is not None and last <= 0:
        last = None

    bid = ask = None
    spread = data.get("spread")
    if isinstance(spread, (list, tuple)) and len(spread) >= 2:
        bid = parse_float(spread[0])
        ask = parse_float(spread[1])
    else:
        bid = parse_float(_pick(data, "spread_bid", "best_bid", "bid"))
        ask = parse_float(_pick(data, "spread_ask", "best_ask", "ask"))

    if bid is None or ask is None or bid <= 0 or ask <= 0 or bid > ask:
        bid = ask = None

    return PriceSnapshot(
        mark_price=mark,
        last_price=last,
        best_bid=bid,
        best_ask=ask,
        observed_at=parse_timestamp(_pick(data, "timestamp", "time")),
    )


def parse_order_update(data: dict[str, Any]) -> OrderUpdate | None:
    """Build an order update from an order channel payload."""
    order_id = _pick(data, "id", "order_id", "orderId")
    client_id = _pick(data, "cl_ord_id", "clientOrderId")
    if order_id is None and client_id is None:
        logger.warning("Dropping order message without id", data=data)
        return None

    raw_status = str(data.get("status") or "OPEN").upper()
    status = _STATUS_MAP.get(raw_status)
    if status is None:
        logger.warning("Dropping order message with unknown status", status=raw_status)
        return None

    try:
        side = OrderSide(str(data.get("side", "")).lower())
    except ValueError:
        logger.warning("Dropping order message with unknown side", side=data.get("side"))
        return None

    return OrderUpdate(
        order_id=str(order_id if order_id is not None else client_id),
        client_order_id=str(client_id) if client_id is not None else None,
        status=status,
        side=side,
        symbol=str(data.get("symbol", "")),
        price=parse_float(data.get("price")) or 0.0,
        quantity=parse_float(data.get("qty")) or 0.0,
        filled_quantity=parse_float(_pick(data, "fill_qty", "fillQty")) or 0.0,
        avg_fill_price=parse_float(_pick(data, "avg_fill_price", "avgFillPrice")),
    )


def parse_position_update(data: dict[str, Any]) -> PositionUpdate | None:
    """Build a position update from a position channel payload."""
    qty = parse_float(_pick(data, "position_amt", "positionAmt", "qty"))
    if qty is None:
        logger.warning("Dropping position message without quantity", data=data)
        return None

    return PositionUpdate(
        quantity=qty,
        symbol=str(data.get("symbol", "")),
        entry_price=parse_float(data.get("entry_price")),
        unrealized_pnl=parse_float(data.get("unrealized_pnl")),
    )


def normalize_message(message: Any) -> FeedRecord | None:
    """
    Route a decoded stream message to the matching parser.

    Returns None for control frames, unknown channels and malformed
    payloads.
    """
    if not isinstance(message, dict):
        logger.warning("Dropping non-object feed message", kind=type(message).__name__)
        return None

    channel = message.get("channel")
    data = message.get("data")
    if data is None:
        data = message
    if not isinstance(data, dict):
        logger.warning("Dropping feed message with non-object data", channel=channel)
        return None

    if channel in PRICE_CHANNELS:
        return parse_price_snapshot(data)
    if channel == "order":
        return parse_order_update(data)
    if channel == "position":
        return parse_position_update(data)

    # Acks, pings and channels we never subscribed to
    return None
