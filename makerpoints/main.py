"""
StandX Maker Points Bot - Main Entry Point

Usage:
    python -m makerpoints.main --config config/default.yaml
    python -m makerpoints.main --config config/production.yaml --live
"""

# Load .env FIRST before any other imports
from dotenv import load_dotenv
load_dotenv()

import argparse
import asyncio
import signal
import sys

import uvicorn

from makerpoints import __version__
from makerpoints.api.server import app
from makerpoints.api.state import get_state
from makerpoints.execution.auth import AuthenticationError, Authenticator
from makerpoints.execution.order_gateway import OrderGateway
from makerpoints.execution.venue_client import VenueClient
from makerpoints.infrastructure.alerts import TelegramAlerter
from makerpoints.infrastructure.config import AppConfig, load_config, load_secrets
from makerpoints.infrastructure.events import EventBus, EventLogger
from makerpoints.infrastructure.logging import bind_context, configure_logging, get_logger
from makerpoints.infrastructure.metrics import MetricsCollector
from makerpoints.ingestion.ws_client import PriceFeed, ReconnectPolicy
from makerpoints.strategy.controller import QuotingController, StartupError
from makerpoints.strategy.safety_monitor import PositionSafetyMonitor


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="StandX Maker Points Bot"
    )
    parser.add_argument(
        "--config",
        type=str,
        default="config/default.yaml",
        help="Path to configuration file",
    )
    parser.add_argument(
        "--live",
        action="store_true",
        help="Send real orders (default is dry run)",
    )
    parser.add_argument(
        "--clean",
        action="store_true",
        help="Use clean, minimal log format for easier terminal reading",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose/debug logging",
    )
    return parser.parse_args(argv)


def build_gateway(config: AppConfig, authenticator: Authenticator) -> OrderGateway:
    client = VenueClient(
        base_url=config.api.rest_base_url,
        authenticator=authenticator,
        dry_run=config.dry_run,
        timeout_s=config.api.request_timeout_s,
    )
    return OrderGateway(
        client,
        symbol=config.trading.symbol,
        price_tick=config.trading.price_tick,
        qty_step=config.trading.qty_step,
        close_slippage_bp=config.trading.close_slippage_bp,
    )


async def cancel_open_orders(gateway: OrderGateway) -> int:
    """
    Cancel every resting order on the symbol, then re-query the venue.

    Returns:
        Number of orders still open afterwards
    """
    logger = get_logger(__name__)
    canceled = await gateway.cancel_all_orders()
    remaining = await gateway.client.query_open_orders(gateway.symbol)
    if remaining:
        logger.warning("Some orders could not be canceled", canceled=canceled, remaining=len(remaining))
    else:
        logger.info("All orders canceled", canceled=canceled)
    return len(remaining)


def build_controller(config: AppConfig, bus: EventBus, authenticator: Authenticator) -> QuotingController:
    """Wire the venue client, gateway and feed into a controller."""
    gateway = build_gateway(config, authenticator)
    feed = PriceFeed(
        url=config.api.ws_url,
        reconnect_policy=ReconnectPolicy(
            base_delay_ms=config.feed.reconnect_base_delay_ms,
            max_delay_ms=config.feed.reconnect_max_delay_ms,
            max_attempts=config.feed.reconnect_max_attempts,
        ),
        ping_interval_s=config.feed.ping_interval_s,
    )
    return QuotingController(
        config,
        gateway,
        feed,
        bus,
        authenticator=authenticator if authenticator.is_authenticated else None,
    )


async def async_main(argv: list[str] | None = None) -> int:
    """Async entry point. Returns the process exit code."""
    args = parse_args(argv)

    overrides = {"dry_run": not args.live}
    config = load_config(args.config, overrides=overrides)
    secrets = load_secrets()

    # Safety check for production
    if config.is_production and not args.live:
        print("ERROR: Production config requires --live flag")
        print("This is a safety measure to prevent accidental live trading")
        return 1

    log_format = "clean" if args.clean else config.observability.log_format
    log_level = "DEBUG" if args.verbose else config.observability.log_level
    configure_logging(log_level=log_level, log_format=log_format)

    logger = get_logger(__name__)
    bind_context(symbol=config.trading.symbol)
    logger.info(
        "Maker points bot starting",
        environment=config.environment,
        dry_run=config.dry_run,
        config_file=args.config,
        overrides=config.diff_from_defaults(),
    )

    try:
        authenticator = Authenticator(
            access_token=secrets.standx_access_token,
            signing_key_hex=secrets.standx_signing_key,
        )
    except AuthenticationError as e:
        logger.error("Invalid credentials", error=str(e))
        return 1

    if not config.dry_run and not authenticator.is_authenticated:
        logger.error("Live trading requires STANDX_ACCESS_TOKEN")
        return 1

    # Observers
    bus = EventBus()
    event_logger = EventLogger()
    bus.subscribe_all(event_logger.handle)

    metrics = MetricsCollector()
    metrics.set_bot_info(__version__, config.environment, config.trading.symbol)
    metrics.attach(bus)
    metrics.start_server(config.observability.metrics_port)

    alerter = TelegramAlerter(
        bot_token=secrets.telegram_bot_token,
        chat_id=secrets.telegram_chat_id,
        enabled=config.observability.telegram_enabled,
    )
    alerter.attach(bus)

    controller = build_controller(config, bus, authenticator)
    monitor = PositionSafetyMonitor(controller)

    state = get_state()
    state.controller = controller
    state.feed = controller.feed
    state.event_bus = bus
    state.is_live = not config.dry_run
    state.version = __version__

    api_config = uvicorn.Config(app, host="127.0.0.1", port=config.observability.api_port, log_level="error")
    server = uvicorn.Server(api_config)
    api_task = asyncio.create_task(server.serve())
    bus_task = asyncio.create_task(bus.run())

    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, shutdown.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            pass

    print("\n" + "=" * 60)
    print(f"MAKER POINTS BOT - {'LIVE TRADING' if args.live else 'DRY RUN'}")
    print("=" * 60)
    print(f"{'Symbol':<20} | {config.trading.symbol}")
    print(f"{'Mode':<20} | {config.trading.mode.value}")
    print(f"{'Order size':<20} | {config.trading.order_size}")
    print(f"{'Distance (bp)':<20} | {config.trading.order_distance_bp} "
          f"[{config.trading.min_distance_bp}-{config.trading.max_distance_bp}]")
    print("=" * 60 + "\n")

    exit_code = 0
    try:
        await controller.start()
        await monitor.start_periodic(interval_seconds=config.safety.monitor_interval_s)

        done_task = asyncio.create_task(controller.wait_done())
        shutdown_task = asyncio.create_task(shutdown.wait())
        done, pending = await asyncio.wait(
            [done_task, shutdown_task],
            return_when=asyncio.FIRST_COMPLETED,
        )
        for task in pending:
            task.cancel()

        if done_task in done:
            snapshot = controller.get_state()
            if snapshot.halt_reason:
                logger.critical("Controller halted", reason=snapshot.halt_reason)
                exit_code = 2
        else:
            logger.info("Shutdown signal received")

    except StartupError as e:
        logger.error("Startup failed", error=str(e))
        exit_code = 1
    except asyncio.CancelledError:
        logger.info("Main loop cancelled")
    finally:
        await monitor.stop()
        await controller.stop()
        await controller.gateway.client.close()

        await bus.drain()
        bus.stop()
        await alerter.close()

        server.should_exit = True
        for task in (api_task, bus_task):
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    return exit_code


def main() -> None:
    """Synchronous entry point."""
    try:
        sys.exit(asyncio.run(async_main()))
    except KeyboardInterrupt:
        print("\nInterrupted by user")
        sys.exit(0)


if __name__ == "__main__":
    main()
