"""
REST client for the StandX perpetuals API.

Wraps aiohttp with:
- Request signing
- Rate limiting
- Error classification (transient vs. rejected)
- Dry-run mode
"""

import asyncio
import json
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

import aiohttp

from makerpoints.execution.auth import AuthenticationError, Authenticator
from makerpoints.execution.rate_limiter import RateLimiter
from makerpoints.infrastructure.logging import get_logger

logger = get_logger(__name__)


class VenueError(Exception):
    """Base error for venue API failures."""


class TransientVenueError(VenueError):
    """Timeout, throttling or server error; safe to retry on the next trigger."""


class VenueRejectedError(VenueError):
    """The venue understood the request and refused it."""

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.code = code


@dataclass
class OrderResponse:
    """Response from order submission."""

    success: bool
    order_id: str | None = None
    client_order_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    timestamp: float = 0.0


@dataclass
class CancelResponse:
    """Response from order cancellation."""

    success: bool
    error_message: str | None = None


def format_decimal(value: float) -> str:
    """Plain decimal string, never scientific notation (5e-05 -> 0.00005)."""
    return format(Decimal(str(value)), "f")


class VenueClient:
    """
    Async client for the venue REST API.

    Usage:
        client = VenueClient(base_url, authenticator, dry_run=True)
        price = await client.query_symbol_price("BTC-USD")
        response = await client.new_order(
            symbol="BTC-USD", side="buy", qty=0.1, price=89820.0,
            order_type="limit", time_in_force="alo", cl_ord_id="mp_b_...",
        )
        await client.close()
    """

    def __init__(
        self,
        base_url: str,
        authenticator: Authenticator,
        rate_limiter: RateLimiter | None = None,
        dry_run: bool = True,
        timeout_s: float = 10.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.auth = authenticator
        self.rate_limiter = rate_limiter or RateLimiter()
        self.dry_run = dry_run
        self._timeout = aiohttp.ClientTimeout(total=timeout_s)
        self._session: aiohttp.ClientSession | None = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        body: dict[str, Any] | None = None,
        signed: bool = False,
    ) -> Any:
        """
        Send one request and return the decoded `data` (or whole) payload.

        Raises:
            TransientVenueError: Timeouts, connection errors, 429 and 5xx
            VenueRejectedError: Any other non-success answer
            AuthenticationError: 401/403 or no session for a signed call
        """
        if method == "GET":
            await self.rate_limiter.acquire_query()
        else:
            await self.rate_limiter.acquire_order()

        payload = json.dumps(body, separators=(",", ":")) if body is not None else ""
        headers = {"Content-Type": "application/json"}
        if signed:
            headers.update(self.auth.sign(payload))

        url = f"{self.base_url}{path}"
        session = await self._get_session()
        try:
            async with session.request(
                method,
                url,
                params=params,
                data=payload or None,
                headers=headers,
            ) as resp:
                text = await resp.text()
                status = resp.status
        except asyncio.TimeoutError as e:
            raise TransientVenueError(f"{method} {path} timed out") from e
        except aiohttp.ClientError as e:
            raise TransientVenueError(f"{method} {path} failed: {e}") from e

        if status == 429 or status >= 500:
            raise TransientVenueError(f"{method} {path} returned HTTP {status}: {text[:200]}")
        if status in (401, 403):
            raise AuthenticationError(f"{method} {path} unauthorized (HTTP {status})")

        try:
            data = json.loads(text) if text else {}
        except json.JSONDecodeError as e:
            raise TransientVenueError(f"{method} {path} returned invalid JSON") from e

        if status >= 400:
            message = data.get("message", text[:200]) if isinstance(data, dict) else text[:200]
            raise VenueRejectedError(message, code=str(status))

        if isinstance(data, dict):
            code = data.get("code")
            if code not in (None, 0, "0"):
                raise VenueRejectedError(str(data.get("message", data)), code=str(code))
            if "result" in data:
                return data["result"]
        return data

    # =========================================================================
    # Queries
    # =========================================================================

    async def query_symbol_price(self, symbol: str) -> dict[str, Any]:
        """Mark, last and top-of-book prices for one symbol."""
        data = await self._request("GET", "/api/query_symbol_price", params={"symbol": symbol})
        if not isinstance(data, dict):
            raise VenueRejectedError(f"Unexpected price payload: {data!r}")
        return data

    async def query_positions(self, symbol: str) -> list[dict[str, Any]]:
        if self.dry_run and not self.auth.is_authenticated:
            return []
        data = await self._request("GET", "/api/query_positions", params={"symbol": symbol}, signed=True)
        return data if isinstance(data, list) else [data] if data else []

    async def query_open_orders(self, symbol: str) -> list[dict[str, Any]]:
        if self.dry_run and not self.auth.is_authenticated:
            return []
        data = await self._request("GET", "/api/query_open_orders", params={"symbol": symbol}, signed=True)
        if isinstance(data, dict):
            data = data.get("list", [])
        return data if isinstance(data, list) else []

    # =========================================================================
    # Order entry
    # =========================================================================

    async def new_order(
        self,
        symbol: str,
        side: str,
        qty: float,
        price: float | None,
        order_type: str = "limit",
        time_in_force: str = "alo",
        reduce_only: bool = False,
        cl_ord_id: str | None = None,
    ) -> OrderResponse:
        """
        Submit an order.

        Rejections come back as an unsuccessful OrderResponse; transient
        failures raise TransientVenueError.
        """
        body: dict[str, Any] = {
            "symbol": symbol,
            "side": side,
            "order_type": order_type,
            "qty": format_decimal(qty),
            "time_in_force": time_in_force,
            "reduce_only": reduce_only,
        }
        if price is not None:
            body["price"] = format_decimal(price)
        if cl_ord_id:
            body["cl_ord_id"] = cl_ord_id

        if self.dry_run:
            logger.info("DRY RUN: Place order", **body)
            return OrderResponse(
                success=True,
                order_id=f"dry_run_{cl_ord_id or int(time.time() * 1000)}",
                client_order_id=cl_ord_id,
                timestamp=time.time(),
            )

        try:
            data = await self._request("POST", "/api/new_order", body=body, signed=True)
        except VenueRejectedError as e:
            return OrderResponse(
                success=False,
                client_order_id=cl_ord_id,
                error_code=e.code,
                error_message=str(e),
            )

        order_id = None
        if isinstance(data, dict):
            order_id = data.get("order_id") or data.get("id")
        return OrderResponse(
            success=True,
            order_id=str(order_id) if order_id is not None else None,
            client_order_id=cl_ord_id,
            timestamp=time.time(),
        )

    async def cancel_order(
        self,
        order_id: str | None = None,
        cl_ord_id: str | None = None,
    ) -> CancelResponse:
        """Cancel by venue id or client id."""
        body: dict[str, Any] = {}
        if order_id is not None:
            body["order_id"] = int(order_id) if str(order_id).isdigit() else order_id
        if cl_ord_id is not None:
            body["cl_ord_id"] = cl_ord_id

        if self.dry_run:
            logger.info("DRY RUN: Cancel order", **body)
            return CancelResponse(success=True)

        try:
            await self._request("POST", "/api/cancel_order", body=body, signed=True)
        except VenueRejectedError as e:
            return CancelResponse(success=False, error_message=str(e))
        return CancelResponse(success=True)
