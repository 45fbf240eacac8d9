"""
Exponential backoff shared by the API client, the raw store and run-level
retry scheduling.
"""

import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional


def compute_backoff(
    attempt: int,
    base_delay: float,
    max_delay: float,
    jitter: float = 0.0,
    rand: Callable[[float, float], float] = random.uniform,
) -> float:
    """
    Delay in seconds before retry number ``attempt`` (0-based).

    ``min(max_delay, base_delay * 2**attempt + jitter)`` where jitter is drawn
    uniformly from ``[0, jitter]``.
    """
    if attempt < 0:
        raise ValueError("attempt must be >= 0")
    extra = rand(0.0, jitter) if jitter > 0 else 0.0
    return min(max_delay, base_delay * (2 ** attempt) + extra)


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff parameters plus an attempt budget"""

    base_delay: float
    max_delay: float
    jitter: float = 0.0
    max_attempts: int = 3

    def delay(self, attempt: int) -> float:
        return compute_backoff(attempt, self.base_delay, self.max_delay, self.jitter)

    def next_retry_at(self, attempt: int, now: datetime) -> datetime:
        return now + timedelta(seconds=self.delay(attempt))

    def exhausted(self, attempts_made: int) -> bool:
        return attempts_made >= self.max_attempts

    @classmethod
    def for_requests(cls, tenant) -> "RetryPolicy":
        return cls(
            base_delay=tenant.retry_base_delay_seconds,
            max_delay=tenant.retry_max_delay_seconds,
            jitter=tenant.retry_jitter_seconds,
            max_attempts=tenant.max_request_attempts,
        )

    @classmethod
    def for_records(cls, tenant, jitter: Optional[float] = None) -> "RetryPolicy":
        return cls(
            base_delay=tenant.record_retry_base_delay_seconds,
            max_delay=tenant.record_retry_max_delay_seconds,
            jitter=tenant.retry_jitter_seconds if jitter is None else jitter,
            max_attempts=tenant.max_retries,
        )
