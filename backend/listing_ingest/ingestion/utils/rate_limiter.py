"""Token bucket rate limiter for per-source rate limiting."""

import asyncio
import time
from typing import Awaitable, Callable, Dict, Optional

import structlog

from listing_ingest.config import RateLimitSettings


logger = structlog.get_logger(__name__)

Clock = Callable[[], float]
Sleeper = Callable[[float], Awaitable[None]]

# Float slack so a bucket refilled to 0.9999999 tokens is not re-slept forever
_EPSILON = 1e-9


class TokenBucket:
    """Token bucket algorithm implementation for rate limiting.

    The bucket starts full and refills lazily from elapsed clock time on
    every acquire/peek; there is no background timer. Each request consumes
    ``cost`` tokens. If not enough tokens are available, the caller waits
    while holding the bucket lock, so concurrent acquires against one
    bucket are served one at a time and never drive the count negative.
    """

    def __init__(
        self,
        rate: float,
        capacity: float,
        clock: Optional[Clock] = None,
        sleep: Optional[Sleeper] = None,
    ):
        """Initialize token bucket.

        Args:
            rate: Tokens per second (e.g., 1.67 = ~100 RPM)
            capacity: Maximum tokens in bucket (burst capacity)
            clock: Monotonic clock in seconds (defaults to time.monotonic)
            sleep: Awaitable sleep (defaults to asyncio.sleep)
        """
        if rate <= 0 or capacity <= 0:
            raise ValueError("rate and capacity must be positive")
        self.rate = rate  # tokens per second
        self.capacity = capacity
        self._clock = clock or time.monotonic
        self._sleep = sleep or asyncio.sleep
        self.tokens = capacity
        self.last_refill = self._clock()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        """Refill tokens based on elapsed time since last refill."""
        now = self._clock()
        elapsed = max(0.0, now - self.last_refill)
        self.tokens = min(self.capacity, self.tokens + elapsed * self.rate)
        self.last_refill = now

    def available(self) -> float:
        """Current token count after a lazy refill. Never blocks."""
        self._refill()
        return self.tokens

    async def acquire(self, tokens: float = 1.0) -> None:
        """Acquire tokens from the bucket, waiting if necessary.

        Args:
            tokens: Number of tokens to acquire (default 1.0)

        Raises:
            ValueError: If more tokens are requested than the bucket can hold
        """
        if tokens <= 0:
            return
        if tokens > self.capacity:
            raise ValueError(f"cost {tokens} exceeds bucket capacity {self.capacity}")

        async with self._lock:
            while True:
                self._refill()
                if self.tokens + _EPSILON >= tokens:
                    self.tokens = max(0.0, self.tokens - tokens)
                    return
                # Calculate wait time until we have enough tokens
                wait_time = (tokens - self.tokens) / self.rate
                await self._sleep(wait_time)


class SourceRateLimiter:
    """Per-source rate limiter using token bucket algorithm.

    Each source gets its own token bucket with a configured capacity and
    refill rate. Exhausting one source's budget never blocks another source.
    """

    # Used for sources without explicit configuration (10 RPM, burst of 2)
    DEFAULT_LIMIT = RateLimitSettings(capacity=2.0, refill_per_second=10 / 60)

    def __init__(self, clock: Optional[Clock] = None, sleep: Optional[Sleeper] = None):
        """Initialize rate limiter with empty bucket dictionary.

        Args:
            clock: Clock shared by all buckets (injectable for tests)
            sleep: Sleep shared by all buckets (injectable for tests)
        """
        self._clock = clock
        self._sleep = sleep
        self._buckets: Dict[str, TokenBucket] = {}

    def configure(self, source: str, limit: RateLimitSettings) -> None:
        """Set the limit for a source.

        Note:
            If a bucket already exists for this source, it will be replaced.
        """
        self._buckets[source] = TokenBucket(
            rate=limit.refill_per_second,
            capacity=limit.capacity,
            clock=self._clock,
            sleep=self._sleep,
        )
        logger.debug(
            "rate_limit_configured",
            source=source,
            capacity=limit.capacity,
            refill_per_second=limit.refill_per_second,
        )

    def _get_bucket(self, source: str) -> TokenBucket:
        """Get or create token bucket for a source."""
        if source not in self._buckets:
            logger.warning("rate_limit_defaulted", source=source)
            self.configure(source, self.DEFAULT_LIMIT)
        return self._buckets[source]

    async def acquire(self, source: str, cost: float = 1.0) -> None:
        """Acquire rate limit tokens for a source.

        This method will block until rate limit allows the request.

        Args:
            source: Source (adapter) name to rate limit
            cost: Number of tokens to acquire (default 1.0)
        """
        bucket = self._get_bucket(source)
        await bucket.acquire(cost)

    def available_tokens(self, source: str) -> float:
        """Non-blocking peek at a source's token count, for diagnostics."""
        return self._get_bucket(source).available()

    def get_current_rate(self, source: str) -> float:
        """Get the current refill rate (requests per minute) for a source."""
        return self._get_bucket(source).rate * 60.0
