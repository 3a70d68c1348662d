"""
Token bucket rate limiter for the venue REST API.

Order entry (new/cancel) and read-only queries draw from separate
buckets so a burst of position checks never delays a close order.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any

from makerpoints.infrastructure.logging import get_logger

logger = get_logger(__name__)


@dataclass
class RateLimitConfig:
    """Rate limit configuration for an endpoint group."""

    name: str
    tokens_per_second: float  # Refill rate
    bucket_size: int  # Max burst capacity

    @classmethod
    def for_orders(cls) -> "RateLimitConfig":
        return cls(name="orders", tokens_per_second=10, bucket_size=20)

    @classmethod
    def for_queries(cls) -> "RateLimitConfig":
        return cls(name="queries", tokens_per_second=20, bucket_size=40)


class TokenBucket:
    """
    Token bucket rate limiter.

    Tokens are added at a constant rate up to a maximum bucket size.
    Requests consume tokens. If no tokens available, request must wait.
    """

    def __init__(self, tokens_per_second: float, bucket_size: int):
        self.tokens_per_second = tokens_per_second
        self.bucket_size = bucket_size

        self._tokens = float(bucket_size)  # Start full
        self._last_update = time.monotonic()
        self._lock = asyncio.Lock()

        self._total_acquired = 0
        self._total_waited = 0

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self._last_update
        self._last_update = now
        self._tokens = min(self.bucket_size, self._tokens + elapsed * self.tokens_per_second)

    @property
    def available_tokens(self) -> float:
        elapsed = time.monotonic() - self._last_update
        return min(self.bucket_size, self._tokens + elapsed * self.tokens_per_second)

    def try_acquire(self, tokens: int = 1) -> bool:
        """Take tokens without waiting; False if the bucket is short."""
        self._refill()
        if self._tokens >= tokens:
            self._tokens -= tokens
            self._total_acquired += tokens
            return True
        return False

    async def acquire(self, tokens: int = 1) -> float:
        """
        Acquire tokens, waiting if necessary.

        Returns:
            Time waited in seconds
        """
        async with self._lock:
            self._refill()

            if self._tokens >= tokens:
                self._tokens -= tokens
                self._total_acquired += tokens
                return 0.0

            wait_time = (tokens - self._tokens) / self.tokens_per_second
            self._total_waited += 1
            logger.debug("Rate limit wait", wait_seconds=wait_time)

            await asyncio.sleep(wait_time)

            self._refill()
            self._tokens -= tokens
            self._total_acquired += tokens
            return wait_time

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "available_tokens": round(self.available_tokens, 1),
            "bucket_size": self.bucket_size,
            "total_acquired": self._total_acquired,
            "total_waited": self._total_waited,
        }


class RateLimiter:
    """
    Per-endpoint-group rate limiter.

    Usage:
        limiter = RateLimiter()
        await limiter.acquire_order()
    """

    def __init__(
        self,
        order_config: RateLimitConfig | None = None,
        query_config: RateLimitConfig | None = None,
    ):
        order_cfg = order_config or RateLimitConfig.for_orders()
        query_cfg = query_config or RateLimitConfig.for_queries()

        self._buckets: dict[str, TokenBucket] = {
            "orders": TokenBucket(order_cfg.tokens_per_second, order_cfg.bucket_size),
            "queries": TokenBucket(query_cfg.tokens_per_second, query_cfg.bucket_size),
        }

    async def acquire_order(self, count: int = 1) -> float:
        return await self._buckets["orders"].acquire(count)

    async def acquire_query(self, count: int = 1) -> float:
        return await self._buckets["queries"].acquire(count)

    def stats(self) -> dict[str, dict[str, Any]]:
        return {name: bucket.stats for name, bucket in self._buckets.items()}
