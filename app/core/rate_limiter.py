"""Simple in-memory rate limiter for report generation."""

import time
from collections import defaultdict

from fastapi import HTTPException

from app.core.config import get_settings
from app.core.logging import get_logger

logger = get_logger(__name__)


class RateLimiter:
    """
    Simple token bucket rate limiter.

    Tracks requests per key (e.g., client id) and enforces limits.
    Uses in-memory storage, so limits are per process.
    """

    def __init__(self, requests_per_hour: int = 10, burst_size: int | None = None):
        """
        Initialize rate limiter.

        Args:
            requests_per_hour: Sustained rate limit
            burst_size: Maximum burst size (defaults to the hourly limit)
        """
        self.requests_per_hour = requests_per_hour
        self.burst_size = burst_size or requests_per_hour
        self.refill_rate = requests_per_hour / 3600.0  # tokens per second

        # Storage: key -> (tokens, last_refill_time)
        self._buckets: dict[str, tuple[float, float]] = defaultdict(
            lambda: (float(self.burst_size), time.time())
        )
        self._request_counts: dict[str, int] = defaultdict(int)

    def _refill_bucket(self, key: str) -> None:
        current_tokens, last_refill = self._buckets[key]
        now = time.time()
        new_tokens = min(self.burst_size, current_tokens + (now - last_refill) * self.refill_rate)
        self._buckets[key] = (new_tokens, now)

    def check_limit(self, key: str, cost: float = 1.0) -> bool:
        """
        Check if request is allowed under rate limit.

        Args:
            key: Rate limit key
            cost: Token cost for this request (default 1.0)

        Returns:
            True if allowed

        Raises:
            HTTPException: 429 if rate limited
        """
        self._refill_bucket(key)
        current_tokens, last_refill = self._buckets[key]

        if current_tokens >= cost:
            self._buckets[key] = (current_tokens - cost, last_refill)
            self._request_counts[key] += 1
            return True

        retry_after = int((cost - current_tokens) / self.refill_rate) + 1
        logger.warning(
            f"Rate limit exceeded for key: {key}, "
            f"tokens: {current_tokens:.2f}/{self.burst_size}, "
            f"retry after: {retry_after}s"
        )
        raise HTTPException(
            status_code=429,
            detail=f"Rate limit exceeded. Try again in {retry_after} seconds.",
            headers={"Retry-After": str(retry_after)},
        )

    def get_stats(self, key: str) -> dict[str, int]:
        self._refill_bucket(key)
        current_tokens, _ = self._buckets[key]
        return {
            "tokens_remaining": int(current_tokens),
            "burst_size": self.burst_size,
            "requests_per_hour": self.requests_per_hour,
            "total_requests": self._request_counts.get(key, 0),
        }

    def reset(self, key: str | None = None) -> None:
        """Reset one key, or every key when none is given."""
        if key is None:
            self._buckets.clear()
            self._request_counts.clear()
            return
        self._buckets.pop(key, None)
        self._request_counts.pop(key, None)
        logger.info(f"Rate limit reset for key: {key}")


def _generation_limit() -> int:
    settings = get_settings()
    if settings.ENGINE_ENV == "prod":
        return settings.GENERATION_RATE_LIMIT_PER_HOUR
    return settings.DEV_GENERATION_RATE_LIMIT_PER_HOUR


generation_rate_limiter = RateLimiter(requests_per_hour=_generation_limit())


def check_generation_rate_limit(client_key: str) -> None:
    """
    Check rate limit for report generation.

    Raises:
        HTTPException: 429 if rate limited
    """
    generation_rate_limiter.check_limit(f"generate:{client_key}")


def get_generation_rate_limit_stats(client_key: str) -> dict[str, int]:
    """
    Get rate limit stats for report generation.

    Args:
        client_key: Client the limit is tracked for

    Returns:
        Rate limit stats
    """
    return generation_rate_limiter.get_stats(f"generate:{client_key}")
