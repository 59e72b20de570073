"""
Per-caller rate limiting.

One token bucket per token subject, held in process memory, so limits apply
per API instance.
"""

import logging
import math
import time
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse, Response

from visitqueue.api.auth import decode_token
from visitqueue.config import get_settings
from visitqueue.types.api import ErrorResponse

logger = logging.getLogger(__name__)

ANONYMOUS_KEY = "anonymous"

# Probes and scrapes are never limited
EXEMPT_PATHS = frozenset({"/health", "/ready", "/live", "/metrics", "/docs", "/openapi.json"})


@dataclass
class TokenBucket:
    """Refills continuously at `refill_rate` tokens per second up to `capacity`."""

    capacity: float
    tokens: float
    refill_rate: float
    last_refill: float = field(default_factory=time.monotonic)

    def _refill(self) -> None:
        now = time.monotonic()
        self.tokens = min(self.capacity, self.tokens + (now - self.last_refill) * self.refill_rate)
        self.last_refill = now

    def consume(self, tokens: float = 1.0) -> bool:
        """Take `tokens` if available. Returns False when the caller is limited."""
        self._refill()
        if self.tokens < tokens:
            return False
        self.tokens -= tokens
        return True

    @property
    def wait_time(self) -> float:
        """Seconds until at least one token is available."""
        return max(0.0, (1 - self.tokens) / self.refill_rate)


class RateLimiter:
    """Token buckets keyed by caller."""

    def __init__(
        self,
        requests_per_minute: int = 100,
        burst_capacity: int | None = None,
    ):
        """
        Args:
            requests_per_minute: Sustained requests per minute per caller.
            burst_capacity: Maximum burst size. Defaults to twice the rate.
        """
        self._refill_rate = requests_per_minute / 60.0
        self._capacity = burst_capacity or (requests_per_minute * 2)
        self._buckets: dict[str, TokenBucket] = defaultdict(
            lambda: TokenBucket(self._capacity, self._capacity, self._refill_rate)
        )

    def check(self, key: str, tokens: float = 1.0) -> tuple[bool, float]:
        """
        Consume from the caller's bucket.

        Returns:
            Tuple of (allowed, wait_time_seconds).
        """
        bucket = self._buckets[key]
        allowed = bucket.consume(tokens)
        return allowed, bucket.wait_time

    def reset(self, key: str) -> None:
        self._buckets.pop(key, None)


_rate_limiter: RateLimiter | None = None


def get_rate_limiter() -> RateLimiter:
    """Get or create the process-wide limiter."""
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimiter(
            requests_per_minute=get_settings().rate_limit_requests_per_minute
        )
    return _rate_limiter


def rate_limit_key(request: Request) -> str:
    """
    Identify the caller for rate limiting.

    Uses the bearer token subject; requests without a valid token share
    the anonymous bucket and are rejected later by authentication.
    """
    scheme, _, token = request.headers.get("Authorization", "").partition(" ")
    if scheme.lower() != "bearer" or not token:
        return ANONYMOUS_KEY
    try:
        return decode_token(token).subject
    except HTTPException:
        return ANONYMOUS_KEY


def rate_limited_response(wait_time: float) -> JSONResponse:
    """429 in the same shape as queue service errors."""
    body = ErrorResponse(
        error="rate_limited",
        detail=f"Rate limit exceeded. Retry after {wait_time:.1f} seconds",
        retryable=True,
    )
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content=body.model_dump(),
        headers={"Retry-After": str(math.ceil(wait_time) or 1)},
    )


def create_rate_limit_middleware(
    limiter: RateLimiter | None = None,
) -> Callable[[Request, Callable[[Request], Awaitable[Response]]], Awaitable[Response]]:
    """
    Create rate limiting middleware for FastAPI.

    Args:
        limiter: Limiter to use. Defaults to the process-wide one.

    Returns:
        The middleware dispatch function.
    """

    async def rate_limit_middleware(
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        if request.url.path in EXEMPT_PATHS:
            return await call_next(request)

        key = rate_limit_key(request)
        allowed, wait_time = (limiter or get_rate_limiter()).check(key)
        if not allowed:
            logger.warning("Rate limit exceeded", extra={"key": key, "path": request.url.path})
            return rate_limited_response(wait_time)

        return await call_next(request)

    return rate_limit_middleware
