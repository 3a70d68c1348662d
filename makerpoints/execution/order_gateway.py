"""
Order gateway for a single instrument.

Turns controller intents (quote this side, cancel that order, close this
quantity) into venue requests with venue precision applied. Query
failures propagate as VenueError; order entry failures are logged and
reported through the return value so a bad request never stops the loop.
"""

import time
import uuid
from decimal import ROUND_DOWN, ROUND_HALF_UP, ROUND_UP, Decimal
from typing import Iterable

from makerpoints.core.models import Order, OrderSide, OrderStatus, PriceSnapshot
from makerpoints.execution.auth import AuthenticationError
from makerpoints.execution.venue_client import VenueClient, VenueError
from makerpoints.infrastructure.logging import get_logger
from makerpoints.ingestion.normalization import parse_float, parse_price_snapshot

logger = get_logger(__name__)


def round_to_tick(price: float, tick: float, side: OrderSide) -> float:
    """
    Snap a price onto the tick grid.

    BUY rounds down and SELL rounds up, so rounding only ever moves a
    quote away from the mark.
    """
    rounding = ROUND_UP if side is OrderSide.SELL else ROUND_DOWN
    tick_d = Decimal(str(tick))
    # Strip float noise (89820.00000000001) before the directional rounding
    raw = (Decimal(str(price)) / tick_d).quantize(Decimal("0.000001"), rounding=ROUND_HALF_UP)
    steps = raw.quantize(Decimal("1"), rounding=rounding)
    return float(steps * tick_d)


def round_quantity(qty: float, step: float, rounding: str = ROUND_DOWN) -> float:
    step_d = Decimal(str(step))
    steps = (Decimal(str(qty)) / step_d).quantize(Decimal("1"), rounding=rounding)
    return float(steps * step_d)


def calculate_order_price(side: OrderSide, mark_price: float, distance_bp: float, tick: float) -> float:
    """Quote price `distance_bp` away from the mark on the passive side."""
    offset = distance_bp / 10000
    if side is OrderSide.BUY:
        return round_to_tick(mark_price * (1 - offset), tick, side)
    return round_to_tick(mark_price * (1 + offset), tick, side)


def generate_client_order_id(side: OrderSide, prefix: str = "mp") -> str:
    """
    Client order ID.

    Format: {prefix}_{side_initial}_{timestamp_ms}_{nonce}
    """
    timestamp_ms = int(time.time() * 1000)
    nonce = uuid.uuid4().hex[:6]
    return f"{prefix}_{side.value[0]}_{timestamp_ms}_{nonce}"


class OrderGateway:
    """
    Order entry and queries for one symbol.

    Usage:
        gateway = OrderGateway(client, symbol="BTC-USD")
        order = await gateway.place_order(OrderSide.BUY, 0.1, 89820.0)
        await gateway.cancel_order(order.cancel_id)
    """

    def __init__(
        self,
        client: VenueClient,
        symbol: str,
        price_tick: float = 0.01,
        qty_step: float = 0.0001,
        close_slippage_bp: float = 50.0,
    ):
        self.client = client
        self.symbol = symbol
        self.price_tick = price_tick
        self.qty_step = qty_step
        self.close_slippage_bp = close_slippage_bp

    async def place_order(self, side: OrderSide, qty: float, price: float) -> Order | None:
        """
        Place a post-only resting limit order.

        Returns:
            The acknowledged order, or None if it was not accepted
        """
        qty = round_quantity(qty, self.qty_step)
        price = round_to_tick(price, self.price_tick, side)
        if qty <= 0 or price <= 0:
            logger.warning("Refusing order with non-positive size or price", side=side.value, qty=qty, price=price)
            return None

        client_id = generate_client_order_id(side)
        try:
            response = await self.client.new_order(
                symbol=self.symbol,
                side=side.value,
                qty=qty,
                price=price,
                order_type="limit",
                time_in_force="alo",
                cl_ord_id=client_id,
            )
        except (VenueError, AuthenticationError) as e:
            logger.warning("Order placement failed", side=side.value, price=price, error=str(e))
            return None

        if not response.success:
            logger.info(
                "Order rejected",
                side=side.value,
                price=price,
                code=response.error_code,
                error=response.error_message,
            )
            return None

        logger.info("Order placed", side=side.value, price=price, qty=qty, order_id=response.order_id)
        return Order(
            side=side,
            client_order_id=client_id,
            price=price,
            quantity=qty,
            venue_order_id=response.order_id,
            status=OrderStatus.OPEN,
        )

    async def cancel_order(self, order_id: str) -> bool:
        """Cancel one order. Failure is informational; the order may already be gone."""
        is_client_id = not str(order_id).isdigit() and not str(order_id).startswith("dry_run_")
        try:
            if is_client_id:
                response = await self.client.cancel_order(cl_ord_id=order_id)
            else:
                response = await self.client.cancel_order(order_id=order_id)
        except (VenueError, AuthenticationError) as e:
            logger.info("Cancel failed", order_id=order_id, error=str(e))
            return False

        if not response.success:
            logger.info("Cancel not confirmed", order_id=order_id, error=response.error_message)
        return response.success

    async def cancel_all_orders(self, known_ids: Iterable[str] = ()) -> int:
        """
        Cancel every resting order: the ones we know plus whatever the
        venue still lists (e.g. left over from a previous run).

        Returns:
            Number of confirmed cancels
        """
        order_ids = [order_id for order_id in known_ids if order_id]
        try:
            for raw in await self.client.query_open_orders(self.symbol):
                order_id = raw.get("id") or raw.get("order_id") or raw.get("cl_ord_id")
                if order_id is not None and str(order_id) not in order_ids:
                    order_ids.append(str(order_id))
        except (VenueError, AuthenticationError) as e:
            logger.warning("Open order query failed, canceling known orders only", error=str(e))

        canceled = 0
        for order_id in order_ids:
            if await self.cancel_order(order_id):
                canceled += 1

        if order_ids:
            logger.info("Canceled all orders", requested=len(order_ids), canceled=canceled)
        return canceled

    async def get_position(self) -> float:
        """
        Signed venue position for the symbol.

        Raises:
            VenueError: If the position cannot be fetched
        """
        total = 0.0
        for raw in await self.client.query_positions(self.symbol):
            if raw.get("symbol") not in (None, "", self.symbol):
                continue
            qty = parse_float(raw.get("position_amt", raw.get("qty")))
            if qty is not None:
                total += qty
        logger.debug("Position check", position=total)
        return total

    async def get_price_snapshot(self) -> PriceSnapshot:
        """
        Fresh REST snapshot.

        Raises:
            VenueError: If the venue returns no usable mark price
        """
        data = await self.client.query_symbol_price(self.symbol)
        snapshot = parse_price_snapshot(data)
        if snapshot is None:
            raise VenueError(f"No valid mark price for {self.symbol}")
        return snapshot

    async def get_mark_price(self) -> float:
        snapshot = await self.get_price_snapshot()
        return snapshot.mark_price

    async def get_best_bid_ask(self) -> tuple[float | None, float | None]:
        snapshot = await self.get_price_snapshot()
        return snapshot.best_bid, snapshot.best_ask

    def aggressive_price(
        self,
        side: OrderSide,
        best_bid: float | None,
        best_ask: float | None,
        mark_price: float,
    ) -> float:
        """Limit price that crosses the book by `close_slippage_bp`."""
        slippage = self.close_slippage_bp / 10000
        if side is OrderSide.BUY:
            reference = best_ask if best_ask else mark_price
            return round_to_tick(reference * (1 + slippage), self.price_tick, OrderSide.SELL)
        reference = best_bid if best_bid else mark_price
        return round_to_tick(reference * (1 - slippage), self.price_tick, OrderSide.BUY)

    async def close_position(self, qty: float, side: OrderSide) -> bool:
        """
        Reduce-only order on `side` for `qty`, priced to fill immediately.

        Returns:
            True if the venue accepted the close
        """
        qty = round_quantity(abs(qty), self.qty_step, rounding=ROUND_HALF_UP)
        if qty <= 0:
            # Below one qty step the venue cannot take the order and the position stays open
            logger.error("Position below order size step, cannot close", side=side.value, step=self.qty_step)
            return False

        try:
            snapshot = await self.get_price_snapshot()
            price = self.aggressive_price(side, snapshot.best_bid, snapshot.best_ask, snapshot.mark_price)
            response = await self.client.new_order(
                symbol=self.symbol,
                side=side.value,
                qty=qty,
                price=price,
                order_type="limit",
                time_in_force="ioc",
                reduce_only=True,
                cl_ord_id=generate_client_order_id(side, prefix="close"),
            )
        except (VenueError, AuthenticationError) as e:
            logger.error("Close order failed", side=side.value, qty=qty, error=str(e))
            return False

        if not response.success:
            logger.error(
                "Close order rejected",
                side=side.value,
                qty=qty,
                code=response.error_code,
                error=response.error_message,
            )
            return False

        logger.info("Position closed", side=side.value, qty=qty, price=price)
        return True
