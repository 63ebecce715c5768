"""Token bucket rate limiting for outbound API calls.

Two buckets are used by the pipeline:
- ms_graph: 10 requests per second (Microsoft Graph reads, sync callers)
- claude_api: 2 requests per second (Claude classification calls, async callers)

The fallback stage may run several senders concurrently; both buckets keep
the combined request rate under the upstream limits regardless of pool size.
"""

import asyncio
import threading
import time

from sender_categorizer.core.errors import RateLimitExceeded
from sender_categorizer.core.logging import get_logger

logger = get_logger(__name__)

# Longest wait we will block for before giving up
MAX_WAIT_SECONDS = 20.0


class TokenBucket:
    """Token bucket rate limiter.

    Tokens are added at a fixed rate and each request consumes one. When the
    bucket is empty the caller waits for a refill.

    Example:
        limiter = TokenBucket(rate=2.0, capacity=2)
        await limiter.consume()
    """

    def __init__(
        self,
        rate: float = 1.0,
        capacity: int = 1,
        initial_tokens: int | None = None,
    ):
        """Initialize a token bucket rate limiter.

        Args:
            rate: Token refill rate per second
            capacity: Maximum number of tokens in the bucket
            initial_tokens: Initial number of tokens in the bucket (defaults to capacity)
        """
        self.rate = rate
        self.capacity = capacity
        self.tokens: float = capacity if initial_tokens is None else initial_tokens
        self.last_refill = time.monotonic()
        self.lock = asyncio.Lock()
        self.sync_lock = threading.Lock()

    def _check_capacity(self, tokens: int) -> None:
        if tokens > self.capacity:
            logger.error(
                "rate_limit_capacity_exceeded",
                tokens=tokens,
                capacity=self.capacity,
            )
            raise RateLimitExceeded(
                f"Requested tokens ({tokens}) exceed bucket capacity ({self.capacity})"
            )

    def _reserve(self, tokens: int) -> float:
        """Take tokens if available, otherwise return the wait time needed.

        Must be called with a lock held.
        """
        self._refill()
        if self.tokens >= tokens:
            self.tokens -= tokens
            return 0.0

        wait_time = (tokens - self.tokens) / self.rate
        if wait_time > MAX_WAIT_SECONDS:
            logger.warning("rate_limit_excessive_wait", wait_time=wait_time)
            raise RateLimitExceeded(f"Rate limit exceeded, would require {wait_time:.2f}s wait")
        return wait_time

    async def consume(self, tokens: int = 1) -> bool:
        """Consume tokens from the bucket, waiting if needed.

        Waiters hold the lock while sleeping, so concurrent callers are served
        one at a time in arrival order.

        Args:
            tokens: Number of tokens to consume

        Returns:
            True if tokens were consumed

        Raises:
            RateLimitExceeded: If the wait for a refill would be excessive
        """
        self._check_capacity(tokens)

        async with self.lock:
            wait_time = self._reserve(tokens)
            while wait_time > 0.0:
                logger.debug("rate_limit_wait", wait_time=wait_time)
                await asyncio.sleep(wait_time)
                wait_time = self._reserve(tokens)
            return True

    def consume_sync(self, tokens: int = 1) -> bool:
        """Thread-safe synchronous version of consume().

        Used by GraphClient.request(), which runs in a worker thread.
        """
        self._check_capacity(tokens)

        with self.sync_lock:
            wait_time = self._reserve(tokens)
            while wait_time > 0.0:
                logger.debug("rate_limit_wait_sync", wait_time=wait_time)
                time.sleep(wait_time)
                wait_time = self._reserve(tokens)
            return True

    def _refill(self) -> None:
        """Refill tokens based on elapsed time."""
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.capacity, self.tokens + elapsed * self.rate)
        self.last_refill = now


_buckets: dict[str, TokenBucket] = {}


def get_bucket(name: str = "default", rate: float = 1.0, capacity: int = 1) -> TokenBucket:
    """Get or create a named token bucket.

    Args:
        name: Bucket name/identifier
        rate: Token refill rate if creating a new bucket
        capacity: Token capacity if creating a new bucket

    Returns:
        TokenBucket instance
    """
    if name not in _buckets:
        _buckets[name] = TokenBucket(rate=rate, capacity=capacity)

    return _buckets[name]


def reset_buckets() -> None:
    """Drop all named buckets. Primarily for testing."""
    _buckets.clear()
