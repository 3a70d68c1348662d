"""
Cancel every open order on the configured symbol.

Run this after a HALT before restarting the bot:
    python cancel_all_orders.py --config config/default.yaml
"""

import argparse
import asyncio
import sys

from dotenv import load_dotenv

# Load environment variables
load_dotenv()

from makerpoints.execution.auth import AuthenticationError, Authenticator
from makerpoints.infrastructure.config import load_config, load_secrets
from makerpoints.infrastructure.logging import configure_logging
from makerpoints.main import build_gateway, cancel_open_orders


async def main() -> int:
    parser = argparse.ArgumentParser(description="Cancel all open StandX orders")
    parser.add_argument("--config", default="config/default.yaml", help="Path to configuration file")
    args = parser.parse_args()

    # Always live: a dry-run client would report success without touching the venue
    config = load_config(args.config, overrides={"dry_run": False})
    secrets = load_secrets()
    configure_logging(log_level="INFO", log_format="clean")

    print("=" * 60)
    print(f"[+] CANCEL ALL ORDERS - {config.trading.symbol}")
    print("=" * 60)

    try:
        authenticator = Authenticator(
            access_token=secrets.standx_access_token,
            signing_key_hex=secrets.standx_signing_key,
        )
    except AuthenticationError as e:
        print(f"  [FAIL] Invalid credentials: {e}")
        return 1
    if not authenticator.is_authenticated:
        print("  [FAIL] STANDX_ACCESS_TOKEN: NOT SET")
        return 1

    gateway = build_gateway(config, authenticator)
    try:
        remaining = await cancel_open_orders(gateway)
    finally:
        await gateway.client.close()

    if remaining:
        print(f"  [WARN] {remaining} orders still open")
        return 1
    print("  [OK] No open orders left")
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
