"""Per-API-key request rate limiting.

Token bucket limiter used by the API authentication dependency. Each API key
gets its own bucket; a request that finds the bucket empty is rejected with
RateLimitExceeded instead of waiting, since the caller is an HTTP client that
can back off on a 429.

Usage:
    from mailrelay.core.rate_limiter import KeyedRateLimiter

    limiter = KeyedRateLimiter(rate=10.0, capacity=20)
    limiter.check("key_abc123")  # raises RateLimitExceeded when exhausted
"""

import threading
import time

from mailrelay.core.errors import RateLimitExceeded
from mailrelay.core.logging import get_logger

logger = get_logger(__name__)


class TokenBucket:
    """Token bucket rate limiter implementation.

    Tokens are added at a fixed rate up to capacity, and each request
    consumes one.

    Example:
        bucket = TokenBucket(rate=1.0, capacity=5)
        if not bucket.try_consume():
            ...  # reject
    """

    def __init__(
        self,
        rate: float = 1.0,
        capacity: int = 1,
        initial_tokens: float | None = None,
    ):
        """Initialize a token bucket.

        Args:
            rate: Token refill rate per second
            capacity: Maximum number of tokens in the bucket
            initial_tokens: Initial number of tokens (defaults to capacity)
        """
        self.rate = rate
        self.capacity = capacity
        self.tokens = float(capacity if initial_tokens is None else initial_tokens)
        self.last_refill = time.monotonic()
        self._lock = threading.Lock()

    def try_consume(self, tokens: int = 1) -> bool:
        """Consume tokens if available, without waiting.

        Args:
            tokens: Number of tokens to consume

        Returns:
            True if the tokens were consumed, False if the bucket is short
        """
        with self._lock:
            self._refill()
            if self.tokens >= tokens:
                self.tokens -= tokens
                return True
            return False

    def retry_after(self, tokens: int = 1) -> float:
        """Seconds until `tokens` would be available."""
        with self._lock:
            self._refill()
            missing = tokens - self.tokens
            return max(0.0, missing / self.rate) if self.rate > 0 else float("inf")

    def _refill(self) -> None:
        """Refill tokens based on elapsed time."""
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.capacity, self.tokens + elapsed * self.rate)
        self.last_refill = now


class KeyedRateLimiter:
    """A set of token buckets, one per key, sharing the same limits.

    Owned by the web application (created in the lifespan), not a module
    global, so each app instance and each test gets independent buckets.
    """

    def __init__(self, rate: float, capacity: int, enabled: bool = True):
        self.rate = rate
        self.capacity = capacity
        self.enabled = enabled
        self._buckets: dict[str, TokenBucket] = {}
        self._lock = threading.Lock()

    def _bucket(self, key: str) -> TokenBucket:
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = TokenBucket(rate=self.rate, capacity=self.capacity)
                self._buckets[key] = bucket
            return bucket

    def check(self, key: str) -> None:
        """Consume one request for `key`.

        Raises:
            RateLimitExceeded: If the key's bucket is empty
        """
        if not self.enabled:
            return

        bucket = self._bucket(key)
        if not bucket.try_consume():
            wait = bucket.retry_after()
            logger.warning("rate_limit_exceeded", key_id=key, retry_after=round(wait, 2))
            raise RateLimitExceeded(
                f"Rate limit exceeded for this API key, retry after {wait:.1f}s"
            )
