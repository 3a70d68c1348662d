"""
Two-sided quoting controller.

Keeps one resting buy and one resting sell a target distance from the
mark price and hedges any fill immediately.

Concurrency model:
- One controller task consumes the inbox (snapshots, order and position
  updates, feed events, position checks).
- Every procedure that touches the venue holds the action lock, so cancel
  always completes before place and no two mutations interleave.
- Fill and flatten procedures run as their own task holding the single
  FillGuard token. While it is held, snapshots are skipped and duplicate
  fills are dropped. Cooldowns are spent outside the action lock.
- Handlers without awaits (order bookkeeping) run directly in the loop.
"""

import asyncio
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Coroutine

from makerpoints.core.models import (
    Order,
    OrderSide,
    OrderStatus,
    OrderUpdate,
    PositionUpdate,
    PriceSnapshot,
)
from makerpoints.execution.auth import AuthenticationError, Authenticator
from makerpoints.execution.order_gateway import OrderGateway, calculate_order_price
from makerpoints.execution.venue_client import VenueError
from makerpoints.infrastructure.config import AppConfig
from makerpoints.infrastructure.events import DomainEvent, EventBus, EventType
from makerpoints.infrastructure.logging import get_logger
from makerpoints.ingestion.ws_client import (
    FeedEvent,
    FeedEventType,
    FeedExhaustedError,
    PriceFeed,
)
from makerpoints.strategy.fill_guard import FillGuard
from makerpoints.strategy.quoting import (
    GateDecision,
    ReplaceReason,
    VolatilityGate,
    band_violation,
    crosses_spread,
    distance_bp,
)

logger = get_logger(__name__)

# Orders whose cancel failed stay matchable for late fills this long
RETIRED_ORDER_TTL_S = 60.0


class StartupError(Exception):
    """A start precondition could not be met."""


class ControllerPhase(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    QUOTING = "quoting"
    PAUSED_VOLATILITY = "paused_volatility"


@dataclass(frozen=True)
class PositionCheck:
    """Inbox command: confirm the venue position and flatten if needed."""
    trigger: str


@dataclass(frozen=True)
class _SnapshotReady:
    """Inbox marker: the latest snapshot is waiting to be evaluated."""


@dataclass
class ControllerStats:
    orders_placed: int = 0
    orders_canceled: int = 0
    orders_filled: int = 0
    orders_replaced: int = 0
    flattens: int = 0


@dataclass(frozen=True)
class ControllerSnapshot:
    """Read-only copy of the controller state for observers."""

    phase: ControllerPhase
    running: bool
    paused_for_volatility: bool
    fill_in_progress: bool
    symbol: str
    mode: str
    position: float
    mark_price: float | None
    last_price: float | None
    gap_bp: float | None
    buy_order: Order | None
    sell_order: Order | None
    stats: dict[str, int]
    started_at: float | None
    halt_reason: str | None

    @property
    def uptime_seconds(self) -> float:
        if self.started_at is None:
            return 0.0
        return time.time() - self.started_at

    def to_dict(self) -> dict[str, Any]:
        def order_dict(order: Order | None) -> dict[str, Any] | None:
            if order is None:
                return None
            return {
                "side": order.side.value,
                "client_order_id": order.client_order_id,
                "venue_order_id": order.venue_order_id,
                "price": order.price,
                "quantity": order.quantity,
                "filled_quantity": order.filled_quantity,
                "status": order.status.value,
            }

        return {
            "phase": self.phase.value,
            "running": self.running,
            "paused_for_volatility": self.paused_for_volatility,
            "fill_in_progress": self.fill_in_progress,
            "symbol": self.symbol,
            "mode": self.mode,
            "position": self.position,
            "mark_price": self.mark_price,
            "last_price": self.last_price,
            "gap_bp": self.gap_bp,
            "buy_order": order_dict(self.buy_order),
            "sell_order": order_dict(self.sell_order),
            "stats": dict(self.stats),
            "uptime_seconds": round(self.uptime_seconds, 1),
            "halt_reason": self.halt_reason,
        }


@dataclass
class _RetiredOrder:
    order: Order
    retired_at: float = field(default_factory=time.time)


class QuotingController:
    """
    Order lifecycle controller for one symbol.

    Usage:
        controller = QuotingController(config, gateway, feed, bus, auth)
        await controller.start()
        ...
        await controller.stop()
    """

    def __init__(
        self,
        config: AppConfig,
        gateway: OrderGateway,
        feed: PriceFeed,
        bus: EventBus,
        authenticator: Authenticator | None = None,
    ):
        self.config = config
        self.trading = config.trading
        self.safety = config.safety
        self.gateway = gateway
        self.feed = feed
        self.bus = bus
        self.authenticator = authenticator

        self._phase = ControllerPhase.STOPPED
        self._running = False
        self._stopping = False
        self._halt_reason: str | None = None
        self._started_at: float | None = None

        self._snapshot: PriceSnapshot | None = None
        self._latest_snapshot: PriceSnapshot | None = None
        self._snapshot_queued = False
        self._first_snapshot = asyncio.Event()
        self._requote_pending = False

        self._orders: dict[OrderSide, Order | None] = {OrderSide.BUY: None, OrderSide.SELL: None}
        self._retired: dict[str, _RetiredOrder] = {}
        self._position = 0.0
        self._stats = ControllerStats()

        self._gate = VolatilityGate(
            threshold_bp=self.trading.order_distance_bp,
            resume_ratio=self.trading.resume_ratio,
        )
        self._fill_guard = FillGuard()
        self._lock = asyncio.Lock()
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._stop_event = asyncio.Event()
        self._done = asyncio.Event()

        self._loop_task: asyncio.Task | None = None
        self._guarded_task: asyncio.Task | None = None

        self._feed_subscribed = False

    # =========================================================================
    # Read-only accessors
    # =========================================================================

    @property
    def phase(self) -> ControllerPhase:
        return self._phase

    @property
    def running(self) -> bool:
        return self._running

    @property
    def position(self) -> float:
        return self._position

    @property
    def fill_guard(self) -> FillGuard:
        return self._fill_guard

    def order(self, side: OrderSide) -> Order | None:
        return self._orders[side]

    def get_state(self) -> ControllerSnapshot:
        snapshot = self._snapshot
        buy = self._orders[OrderSide.BUY]
        sell = self._orders[OrderSide.SELL]
        return ControllerSnapshot(
            phase=self._phase,
            running=self._running,
            paused_for_volatility=self._gate.paused,
            fill_in_progress=self._fill_guard.locked,
            symbol=self.trading.symbol,
            mode=self.trading.mode.value,
            position=self._position,
            mark_price=snapshot.mark_price if snapshot else None,
            last_price=snapshot.last_price if snapshot else None,
            gap_bp=self._gate.last_gap_bp,
            buy_order=replace(buy) if buy else None,
            sell_order=replace(sell) if sell else None,
            stats=dict(vars(self._stats)),
            started_at=self._started_at,
            halt_reason=self._halt_reason,
        )

    async def wait_done(self) -> None:
        """Block until the controller stops or halts."""
        await self._done.wait()

    async def wait_idle(self) -> None:
        """Wait for the current fill/flatten procedure, if any, to finish."""
        task = self._guarded_task
        if task is not None and not task.done():
            await asyncio.shield(task)

    async def drain_inbox(self) -> None:
        """Wait until every queued feed message has been handled."""
        await self._inbox.join()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """
        Connect, validate preconditions and place the initial quotes.

        Raises:
            StartupError: If authentication, the first snapshot or the
                initial flat position cannot be established
        """
        if self._phase is not ControllerPhase.STOPPED:
            logger.warning("Controller already started", phase=self._phase.value)
            return

        logger.info(
            "Starting controller",
            symbol=self.trading.symbol,
            mode=self.trading.mode.value,
            distance_bp=self.trading.order_distance_bp,
        )
        self._set_phase(ControllerPhase.STARTING)
        self._stopping = False
        self._halt_reason = None
        self._stop_event.clear()
        self._done.clear()
        self._reset_market_state()

        try:
            if self.authenticator is not None:
                self.authenticator.get_token()

            self._loop_task = asyncio.create_task(self._run())

            if not self._feed_subscribed:
                self.feed.on(self.submit)
                self.feed.subscribe(self.trading.symbol)
                if self.authenticator is not None:
                    self.feed.subscribe_user(self.authenticator.get_token)
                self._feed_subscribed = True
            await self.feed.connect()

            await asyncio.wait_for(
                self._first_snapshot.wait(),
                timeout=self.config.feed.first_snapshot_timeout_s,
            )
            logger.info("Initial mark price received", mark_price=self._snapshot.mark_price)

            async with self._lock:
                await self._cancel_all_locked()
                await self._ensure_flat_on_start()

                self._running = True
                self._started_at = time.time()
                self._set_phase(ControllerPhase.QUOTING)
                await self._place_both_locked(self._snapshot.mark_price)

        except AuthenticationError as e:
            await self._abort_start("Not authenticated")
            raise StartupError(f"Not authenticated: {e}") from e
        except FeedExhaustedError as e:
            await self._abort_start("Feed unavailable")
            raise StartupError(f"Feed unavailable: {e}") from e
        except asyncio.TimeoutError as e:
            await self._abort_start("No mark price")
            raise StartupError("Timed out waiting for the first mark price") from e
        except (VenueError, StartupError) as e:
            await self._abort_start(str(e))
            if isinstance(e, StartupError):
                raise
            raise StartupError(f"Venue error during start: {e}") from e

        self._publish(EventType.STARTED, {"symbol": self.trading.symbol, "mode": self.trading.mode.value})
        self._publish_state()
        logger.info("Controller started", symbol=self.trading.symbol)

    def _reset_market_state(self) -> None:
        """Forget the previous run's market view so a restart quotes from fresh prices."""
        self._snapshot = None
        self._latest_snapshot = None
        self._snapshot_queued = False
        self._requote_pending = False
        self._inbox = asyncio.Queue()
        self._first_snapshot.clear()
        self._gate.reset()

    async def _ensure_flat_on_start(self) -> None:
        position = await self.gateway.get_position()
        if abs(position) <= self.safety.position_epsilon:
            return

        logger.warning("Existing position detected at startup", position=position)
        closed = await self.gateway.close_position(abs(position), self._closing_side(position))
        if not closed:
            raise StartupError(f"Failed to close existing position {position}")
        self._position = 0.0
        self._stats.flattens += 1
        self._publish(EventType.POSITION_FLATTENED, {"position": position, "trigger": "startup"})

    async def _abort_start(self, reason: str) -> None:
        logger.error("Controller start failed", reason=reason)
        self._stopping = True
        self._stop_event.set()
        await self.feed.stop()
        await self._cancel_loop()
        self._running = False
        self._set_phase(ControllerPhase.STOPPED)
        self._done.set()

    async def stop(self) -> None:
        """Cancel all orders and stop consuming the feed."""
        if self._phase is ControllerPhase.STOPPED and self._loop_task is None:
            return

        logger.info("Stopping controller")
        self._stopping = True
        self._stop_event.set()

        # A procedure already past its stop check finishes its close first
        if self._guarded_task is not None and not self._guarded_task.done():
            await asyncio.gather(self._guarded_task, return_exceptions=True)

        async with self._lock:
            await self._cancel_all_locked()
            self._running = False
            self._set_phase(ControllerPhase.STOPPED)

        await self.feed.stop()
        await self._cancel_loop()

        self._publish(EventType.STOPPED, {"symbol": self.trading.symbol})
        self._publish_state()
        self._done.set()
        logger.info("Controller stopped", stats=vars(self._stats))

    async def _cancel_loop(self) -> None:
        task = self._loop_task
        self._loop_task = None
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _halt_locked(self, reason: str, detail: str = "") -> None:
        """
        Fatal stop: no orders, no retries, operator required.

        Caller holds the action lock.
        """
        logger.critical("HALT - manual intervention required", reason=reason, detail=detail)
        self._halt_reason = reason
        self._stopping = True
        self._stop_event.set()
        self._running = False
        self._set_phase(ControllerPhase.STOPPED)

        await self._cancel_all_locked()

        self._publish(EventType.HALTED, {"reason": reason, "detail": detail, "position": self._position})
        self._publish_state()
        self._done.set()

    # =========================================================================
    # Inbox
    # =========================================================================

    async def submit(self, item: Any) -> None:
        """
        Feed handler: enqueue for the controller task.

        Snapshots are coalesced so the loop always evaluates the newest one.
        """
        if isinstance(item, PriceSnapshot):
            self._latest_snapshot = item
            if not self._snapshot_queued:
                self._snapshot_queued = True
                self._inbox.put_nowait(_SnapshotReady())
            return
        if isinstance(item, FeedEvent) and item.kind is FeedEventType.RECONNECTED:
            # Snapshots already queued must not be evaluated against pre-disconnect orders
            self._requote_pending = True
        self._inbox.put_nowait(item)

    async def _run(self) -> None:
        logger.debug("Controller loop started")
        while True:
            item = await self._inbox.get()
            if isinstance(item, _SnapshotReady):
                self._snapshot_queued = False
                item = self._latest_snapshot
            try:
                await self.handle(item)
            except (VenueError, AuthenticationError) as e:
                logger.warning("Venue error while handling message", item=type(item).__name__, error=str(e))
            except Exception as e:
                logger.error("Error handling message", item=type(item).__name__, error=str(e), exc_info=True)
            finally:
                self._inbox.task_done()

    async def handle(self, item: Any) -> None:
        """Process one inbox message."""
        if isinstance(item, PriceSnapshot):
            await self._on_snapshot(item)
        elif isinstance(item, OrderUpdate):
            self._on_order_update(item)
        elif isinstance(item, PositionUpdate):
            self._on_position_update(item)
        elif isinstance(item, FeedEvent):
            await self._on_feed_event(item)
        elif isinstance(item, PositionCheck):
            self.request_position_check(item.trigger)
        else:
            logger.warning("Unknown inbox message", kind=type(item).__name__)

    # =========================================================================
    # Snapshot evaluation
    # =========================================================================

    async def _on_snapshot(self, snapshot: PriceSnapshot) -> None:
        self._snapshot = snapshot
        self._first_snapshot.set()
        logger.debug("Mark price updated", mark_price=snapshot.mark_price, last_price=snapshot.last_price)

        if not self._accepting():
            return
        await self.evaluate(snapshot)
        self._publish_state()

    async def evaluate(self, snapshot: PriceSnapshot) -> None:
        """
        Decide what to do with the resting orders for one snapshot.

        Checks run in priority order and the first one that acts returns:
        fill in progress, venue position, volatility gate, spread
        crossing, distance band.
        """
        if self._fill_guard.locked:
            logger.debug("Skipping evaluation, fill in progress")
            return
        if self._requote_pending:
            logger.debug("Skipping evaluation, re-quote after reconnect pending")
            return

        async with self._lock:
            if not self._accepting() or self._fill_guard.locked or self._requote_pending:
                return

            position = await self._fetch_position()
            if position is None:
                return
            if abs(position) > self.safety.position_epsilon:
                logger.error("Non-zero position detected during evaluation", position=position)
                self._spawn_guarded("position_guard", self._flatten_procedure(position, "position_guard"))
                return

            decision = self._gate.update(snapshot)
            if decision is GateDecision.PAUSE:
                await self._pause_locked(snapshot)
                return
            if decision is GateDecision.HOLD:
                logger.debug("Still paused for volatility", gap_bp=self._gate.last_gap_bp)
                return
            if decision is GateDecision.RESUME:
                await self._resume_locked(snapshot)
                return

            for side in (OrderSide.BUY, OrderSide.SELL):
                order = self._orders[side]
                if order is not None and order.is_open and crosses_spread(order, snapshot.best_bid, snapshot.best_ask):
                    logger.warning(
                        "Order at or through the touch",
                        side=side.value,
                        price=order.price,
                        best_bid=snapshot.best_bid,
                        best_ask=snapshot.best_ask,
                    )
                    await self._replace_locked(side, ReplaceReason.SPREAD_CROSS, snapshot.mark_price)
                    return

            for side in (OrderSide.BUY, OrderSide.SELL):
                if self._stopping:
                    return
                if not self.trading.mode.quotes(side.value):
                    continue

                order = self._orders[side]
                if order is None:
                    await self._replace_locked(side, ReplaceReason.MISSING, snapshot.mark_price)
                    continue
                if not order.is_open:
                    continue

                distance = distance_bp(snapshot.mark_price, order.price)
                reason = band_violation(distance, self.trading.min_distance_bp, self.trading.max_distance_bp)
                if reason is None:
                    logger.debug("Order in valid range", side=side.value, distance_bp=round(distance, 2))
                    continue

                logger.info(
                    "Order outside distance band",
                    side=side.value,
                    distance_bp=round(distance, 2),
                    reason=reason.value,
                )
                await self._replace_locked(side, reason, snapshot.mark_price)

    async def _pause_locked(self, snapshot: PriceSnapshot) -> None:
        gap = self._gate.last_gap_bp
        logger.warning(
            "Volatility pause",
            gap_bp=gap,
            threshold_bp=self._gate.threshold_bp,
            mark_price=snapshot.mark_price,
            last_price=snapshot.last_price,
        )
        self._set_phase(ControllerPhase.PAUSED_VOLATILITY)
        await self._cancel_all_locked()
        self._publish(EventType.VOLATILITY_PAUSED, {"gap_bp": gap, "mark_price": snapshot.mark_price})

    async def _resume_locked(self, snapshot: PriceSnapshot) -> None:
        gap = self._gate.last_gap_bp
        logger.info("Volatility normalized", gap_bp=gap, resume_below_bp=self._gate.resume_below_bp)
        self._set_phase(ControllerPhase.QUOTING)
        self._publish(EventType.VOLATILITY_RESUMED, {"gap_bp": gap, "mark_price": snapshot.mark_price})
        await self._place_both_locked(snapshot.mark_price)

    # =========================================================================
    # Order placement
    # =========================================================================

    async def _place_side_locked(self, side: OrderSide, mark_price: float) -> Order | None:
        if not self.trading.mode.quotes(side.value) or self._stopping:
            return None

        price = calculate_order_price(side, mark_price, self.trading.order_distance_bp, self.trading.price_tick)
        order = await self.gateway.place_order(side, self.trading.order_size, price)
        if order is None:
            return None

        self._orders[side] = order
        self._stats.orders_placed += 1
        self._publish(
            EventType.ORDER_PLACED,
            {"side": side.value, "price": order.price, "qty": order.quantity, "mark_price": mark_price},
        )
        return order

    async def _place_both_locked(self, mark_price: float) -> None:
        for side in (OrderSide.BUY, OrderSide.SELL):
            if self._stopping:
                return
            await self._place_side_locked(side, mark_price)

    async def _replace_locked(self, side: OrderSide, reason: ReplaceReason, mark_price: float) -> None:
        """Cancel then place one side. A failed cancel is informational."""
        if self._stopping:
            return

        old = self._orders[side]
        if old is not None:
            canceled = await self.gateway.cancel_order(old.cancel_id)
            self._orders[side] = None
            if canceled:
                self._stats.orders_canceled += 1
                old.status = OrderStatus.CANCELED
            else:
                logger.info("Cancel failed, order may already be filled", side=side.value, order_id=old.cancel_id)
                self._retire(old)
                if self._fill_guard.locked:
                    return

        new = await self._place_side_locked(side, mark_price)
        if old is not None:
            self._stats.orders_replaced += 1
        self._publish(
            EventType.ORDER_REPLACED,
            {
                "side": side.value,
                "reason": reason.value,
                "old_price": old.price if old else None,
                "new_price": new.price if new else None,
            },
        )
        logger.info(
            "Order replaced",
            side=side.value,
            reason=reason.value,
            old_price=old.price if old else None,
            new_price=new.price if new else None,
        )

    async def _cancel_all_locked(self) -> None:
        known = [order.cancel_id for order in self._orders.values() if order is not None]
        canceled = await self.gateway.cancel_all_orders(known)
        self._stats.orders_canceled += canceled
        for side in (OrderSide.BUY, OrderSide.SELL):
            self._orders[side] = None

    def _retire(self, order: Order) -> None:
        now = time.time()
        for key in [k for k, v in self._retired.items() if now - v.retired_at > RETIRED_ORDER_TTL_S]:
            del self._retired[key]
        self._retired[order.client_order_id] = _RetiredOrder(order)

    # =========================================================================
    # Order and position updates
    # =========================================================================

    def _find_order(self, update: OrderUpdate) -> Order | None:
        for order in self._orders.values():
            if order is not None and (order.matches(update.order_id) or order.matches(update.client_order_id)):
                return order
        for retired in self._retired.values():
            if retired.order.matches(update.order_id) or retired.order.matches(update.client_order_id):
                return retired.order
        return None

    def _on_order_update(self, update: OrderUpdate) -> None:
        order = self._find_order(update)
        if order is None:
            if update.status is OrderStatus.FILLED:
                logger.warning(
                    "Fill for untracked order, leaving it to the position check",
                    order_id=update.order_id,
                    side=update.side.value,
                )
            return

        if order.status is OrderStatus.FILLED and update.status is OrderStatus.FILLED:
            logger.warning("Duplicate fill notification dropped", order_id=update.order_id)
            return

        order.filled_quantity = update.filled_quantity or order.filled_quantity
        if update.status is not OrderStatus.FILLED:
            order.status = update.status
            if update.status.is_terminal and self._orders[order.side] is order:
                logger.info("Order closed by venue", side=order.side.value, status=update.status.value)
                self._orders[order.side] = None
            return

        # Never treat a filled order as resting again, even if the fill is dropped
        order.status = OrderStatus.FILLED
        if not self._fill_guard.try_acquire(order.client_order_id):
            logger.warning("Fill dropped, another procedure is running", order_id=update.order_id)
            return

        self._guarded_task = asyncio.create_task(self._run_guarded(self._fill_procedure(update, order)))

    def _on_position_update(self, update: PositionUpdate) -> None:
        self._publish(EventType.POSITION_UPDATED, {"position": update.quantity, "source": "stream"})
        if abs(update.quantity) <= self.safety.position_epsilon:
            return
        if self._fill_guard.locked or not self._accepting():
            return
        logger.warning("Position detected on user stream", position=update.quantity)
        self.request_position_check("position_stream")

    def request_position_check(self, trigger: str) -> None:
        """Confirm the venue position and flatten it if non-zero."""
        if not self._accepting():
            return
        self._spawn_guarded(trigger, self._position_check_procedure(trigger))

    # =========================================================================
    # Fill and flatten procedures (run under the FillGuard token)
    # =========================================================================

    def _spawn_guarded(self, holder: str, procedure: Coroutine[Any, Any, None]) -> bool:
        if not self._fill_guard.try_acquire(holder):
            procedure.close()
            return False
        self._guarded_task = asyncio.create_task(self._run_guarded(procedure))
        return True

    async def _run_guarded(self, procedure: Coroutine[Any, Any, None]) -> None:
        try:
            await procedure
        except (VenueError, AuthenticationError) as e:
            logger.error("Guarded procedure failed", error=str(e))
        finally:
            self._fill_guard.release()

    async def _fill_procedure(self, update: OrderUpdate, order: Order) -> None:
        """Hedge one fill, cool down, then re-quote the filled side."""
        if self._stopping:
            logger.warning("Stop requested, fill not handled", order_id=update.order_id)
            return

        side = order.side
        qty = update.filled_quantity or order.quantity
        price = update.fill_price or order.price

        async with self._lock:
            self._position += side.sign * qty
            self._stats.orders_filled += 1
            logger.warning("ORDER FILLED", side=side.value, qty=qty, price=price, position=self._position)
            self._publish(EventType.TRADE_EXECUTED, {"side": side.value, "qty": qty, "price": price})
            self._publish(EventType.POSITION_UPDATED, {"position": self._position, "source": "fill"})

            await self._cancel_all_locked()

            closed = await self.gateway.close_position(qty, side.opposite)
            if not closed:
                await self._halt_locked("close_failed", f"{side.opposite.value} {qty} after {side.value} fill @ {price}")
                return

            self._position = 0.0
            self._retired.pop(order.client_order_id, None)
            self._publish(EventType.POSITION_UPDATED, {"position": 0.0, "source": "close"})

        logger.info("Cooling down before re-quote", side=side.value, seconds=self.safety.fill_cooldown_s)
        if await self._wait_for_stop(self.safety.fill_cooldown_s):
            logger.info("Stop requested during cooldown, not re-quoting")
            return

        async with self._lock:
            if not self._accepting():
                return
            position = await self._fetch_position()
            if position is None:
                return
            self._retired.clear()
            if abs(position) <= self.safety.position_epsilon:
                if self._gate.paused:
                    logger.info("Paused for volatility, not re-quoting after fill")
                    return
                mark = await self._fresh_mark_price()
                await self._replace_locked(side, ReplaceReason.FILLED, mark)
                self._publish_state()
                return

        logger.error("Non-zero position after fill handling", position=position)
        await self._flatten_procedure(position, "post_fill")

    async def _position_check_procedure(self, trigger: str) -> None:
        async with self._lock:
            if not self._accepting():
                return
            position = await self._fetch_position()
        logger.debug("Position check", trigger=trigger, position=position, local=self._position)
        if position is None or abs(position) <= self.safety.position_epsilon:
            return
        await self._flatten_procedure(position, trigger)

    async def _flatten_procedure(self, observed: float, trigger: str) -> None:
        """Cancel everything, close `observed`, then re-quote both sides."""
        if self._stopping:
            return

        async with self._lock:
            if not self._accepting():
                return
            logger.warning("Flatten", position=observed, trigger=trigger)
            await self._cancel_all_locked()

            closed = await self.gateway.close_position(abs(observed), self._closing_side(observed))
            if not closed:
                await self._halt_locked("flatten_failed", f"position {observed} ({trigger})")
                return

            self._position = 0.0
            self._retired.clear()
            self._stats.flattens += 1
            self._publish(EventType.POSITION_FLATTENED, {"position": observed, "trigger": trigger})
            self._publish(EventType.POSITION_UPDATED, {"position": 0.0, "source": "flatten"})

        if await self._wait_for_stop(self.safety.flatten_requote_delay_s):
            return

        async with self._lock:
            if not self._accepting() or self._gate.paused:
                return
            mark = await self._fresh_mark_price()
            await self._place_both_locked(mark)
            self._publish_state()

    # =========================================================================
    # Feed events
    # =========================================================================

    async def _on_feed_event(self, event: FeedEvent) -> None:
        if event.kind is FeedEventType.RECONNECTING:
            self._publish(EventType.FEED_RECONNECTING, {"attempt": event.attempt, "delay_s": event.delay_s})
        elif event.kind is FeedEventType.DISCONNECTED:
            logger.warning("Feed disconnected", reason=event.reason)
        elif event.kind is FeedEventType.RECONNECTED:
            self._publish(EventType.FEED_RECONNECTED, {})
            await self.requote_all()
        elif event.kind is FeedEventType.EXHAUSTED:
            self._publish(EventType.MAX_RECONNECT_REACHED, {"attempts": event.attempt})
            async with self._lock:
                if self._phase is not ControllerPhase.STOPPED:
                    await self._halt_locked("feed_exhausted", f"gave up after {event.attempt} attempts")

    async def requote_all(self) -> None:
        """
        Drop all cached order state and quote both sides from a fresh mark.

        Evaluation stays suspended from the RECONNECTED message until this
        returns.
        """
        try:
            if self._fill_guard.locked:
                logger.info("Re-quote deferred to the running fill procedure")
                return

            async with self._lock:
                if not self._accepting() or self._fill_guard.locked:
                    return
                logger.info("Re-quoting after reconnect")
                await self._cancel_all_locked()
                if self._gate.paused:
                    return
                mark = await self._fresh_mark_price()
                await self._place_both_locked(mark)
        finally:
            self._requote_pending = False
        self._publish_state()

    # =========================================================================
    # Helpers
    # =========================================================================

    def _accepting(self) -> bool:
        return self._running and not self._stopping and self._phase in (
            ControllerPhase.QUOTING,
            ControllerPhase.PAUSED_VOLATILITY,
        )

    @staticmethod
    def _closing_side(position: float) -> OrderSide:
        return OrderSide.SELL if position > 0 else OrderSide.BUY

    async def _fetch_position(self) -> float | None:
        try:
            return await self.gateway.get_position()
        except (VenueError, AuthenticationError) as e:
            logger.warning("Position query failed, skipping", error=str(e))
            return None

    async def _fresh_mark_price(self) -> float:
        """REST mark price, falling back to the last snapshot."""
        try:
            mark = await self.gateway.get_mark_price()
            logger.info("Fresh mark price", mark_price=mark)
            return mark
        except (VenueError, AuthenticationError) as e:
            cached = self._snapshot.mark_price
            logger.warning("Fresh mark price unavailable, using cached", cached=cached, error=str(e))
            return cached

    async def _wait_for_stop(self, delay: float) -> bool:
        """Sleep `delay` seconds; True if a stop was requested meanwhile."""
        if self._stopping:
            return True
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
            return True
        except asyncio.TimeoutError:
            return self._stopping

    def _set_phase(self, phase: ControllerPhase) -> None:
        if phase is self._phase:
            return
        logger.info("Phase changed", previous=self._phase.value, phase=phase.value)
        self._phase = phase
        self._publish_state()

    def _publish(self, event_type: EventType, payload: dict[str, Any]) -> None:
        self.bus.publish_nowait(DomainEvent(event_type=event_type, payload=payload))

    def _publish_state(self) -> None:
        snapshot = self._snapshot
        self._publish(
            EventType.STATE_CHANGED,
            {
                "phase": self._phase.value,
                "running": self._running,
                "paused_for_volatility": self._gate.paused,
                "mark_price": snapshot.mark_price if snapshot else None,
                "position": self._position,
            },
        )
