"""Token bucket rate limiting for the rate_limit guardrail."""

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass
class RateLimitResult:
    """Outcome of a rate limit check."""

    allowed: bool
    limit: int
    remaining: int
    retry_after: float | None = None


class TokenBucketLimiter:
    """
    Token bucket rate limiter.

    Tokens refill at ``requests_per_second`` up to ``burst_size`` and each
    request consumes one. Buckets are keyed (per app or per caller) and live
    for the lifetime of the limiter, so limits span executions.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._buckets: dict[str, dict[str, float]] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def check(
        self,
        key: str,
        requests_per_second: float = 1.0,
        burst_size: int = 10,
        cost: int = 1,
    ) -> RateLimitResult:
        """Consume ``cost`` tokens from the bucket for ``key`` if available."""
        now = self._clock()

        with self._lock:
            bucket = self._get_or_create_bucket(key, burst_size, now)

            # Refill for the time since the last request
            time_passed = now - bucket["last_update"]
            bucket["tokens"] = min(
                float(burst_size),
                bucket["tokens"] + time_passed * requests_per_second,
            )
            bucket["last_update"] = now

            if bucket["tokens"] >= cost:
                bucket["tokens"] -= cost
                return RateLimitResult(
                    allowed=True,
                    limit=burst_size,
                    remaining=int(bucket["tokens"]),
                )

            tokens_needed = cost - bucket["tokens"]
            retry_after = tokens_needed / requests_per_second if requests_per_second > 0 else None
            logger.debug(f"Rate limit hit for {key}; retry after {retry_after}s")
            return RateLimitResult(
                allowed=False,
                limit=burst_size,
                remaining=0,
                retry_after=retry_after,
            )

    def reset(self, key: str | None = None) -> None:
        """Forget one bucket, or all of them."""
        with self._lock:
            if key is None:
                self._buckets.clear()
            else:
                self._buckets.pop(key, None)

    def _get_or_create_bucket(self, key: str, burst_size: int, now: float) -> dict[str, float]:
        if key not in self._buckets:
            self._buckets[key] = {
                "tokens": float(burst_size),
                "last_update": now,
            }
        return self._buckets[key]
