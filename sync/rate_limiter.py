"""
Per-tenant token bucket.

Every upstream request of a tenant takes one token from that tenant's bucket.
A caller waits for a token up to a bounded time; if the bucket cannot refill
in time the wait is converted into ``RateLimitedError`` instead of hanging.
"""

import asyncio
import logging
import time
from typing import Callable, Dict, Optional

from core.exceptions import RateLimitedError

logger = logging.getLogger(__name__)


class TokenBucket:
    """
    Classic token bucket: ``burst`` tokens max, refilled continuously at
    ``refill_rate`` tokens per second.
    """

    def __init__(
        self,
        burst: int,
        refill_rate: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], "asyncio.Future"] = asyncio.sleep,
        name: str = "",
    ):
        if burst < 1:
            raise ValueError("burst must be >= 1")
        if refill_rate <= 0:
            raise ValueError("refill_rate must be > 0")
        self.burst = burst
        self.refill_rate = refill_rate
        self.name = name
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(burst)
        self._updated = clock()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._updated)
        self._tokens = min(float(self.burst), self._tokens + elapsed * self.refill_rate)
        self._updated = now

    @property
    def available(self) -> float:
        self._refill()
        return self._tokens

    async def acquire(self, max_wait: float) -> float:
        """
        Take one token, sleeping while the bucket refills.

        Returns:
            Seconds spent waiting

        Raises:
            RateLimitedError: If a token cannot be granted within max_wait
        """
        waited = 0.0
        async with self._lock:
            while True:
                self._refill()
                if self._tokens >= 1.0:
                    self._tokens -= 1.0
                    return waited

                needed = (1.0 - self._tokens) / self.refill_rate
                if waited + needed > max_wait:
                    raise RateLimitedError(
                        "Token bucket wait exceeded bound",
                        context={
                            "bucket": self.name,
                            "max_wait_seconds": max_wait,
                            "needed_seconds": round(needed, 3),
                        }
                    )
                await self._sleep(needed)
                waited += needed

    def observe_quota(self, used: int, limit: int) -> None:
        """
        Align the bucket with the quota reported by the upstream API.

        Available tokens are capped at the remaining upstream quota so that a
        bucket shared with other API consumers does not overdraw it.
        """
        remaining = max(0, limit - used)
        self._refill()
        if self._tokens > remaining:
            logger.debug(f"Bucket {self.name}: upstream quota {used}/{limit}, draining to {remaining}")
            self._tokens = float(remaining)


class RateLimiterRegistry:
    """One bucket per tenant, created on first use"""

    def __init__(self, clock: Callable[[], float] = time.monotonic, sleep=asyncio.sleep):
        self._buckets: Dict[str, TokenBucket] = {}
        self._clock = clock
        self._sleep = sleep

    def get(self, tenant_id: str, burst: int, refill_rate: float) -> TokenBucket:
        bucket = self._buckets.get(tenant_id)
        if bucket is None or bucket.burst != burst or bucket.refill_rate != refill_rate:
            bucket = TokenBucket(burst, refill_rate, clock=self._clock, sleep=self._sleep, name=tenant_id)
            self._buckets[tenant_id] = bucket
        return bucket

    def for_tenant(self, tenant) -> TokenBucket:
        return self.get(tenant.tenant_id, tenant.rate_limit_burst, tenant.rate_limit_refill_per_second)

    def drop(self, tenant_id: str) -> Optional[TokenBucket]:
        return self._buckets.pop(tenant_id, None)


# Process-wide registry; buckets are keyed by tenant so tenants never share one
rate_limiters = RateLimiterRegistry()


def parse_quota_header(value: Optional[str]):
    """Parse ``"32/40"`` into ``(32, 40)``; None when absent or malformed."""
    if not value or "/" not in value:
        return None
    used, _, limit = value.partition("/")
    try:
        return int(used.strip()), int(limit.strip())
    except ValueError:
        return None
