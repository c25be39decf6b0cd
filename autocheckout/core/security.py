"""
Security utilities for the auto-checkout HTTP surface.

Provides optional API key authentication for service callers and an
in-memory sliding-window rate limiter. Position updates arrive from
phones every few seconds, so they are the main thing being limited.
"""

import secrets
import threading
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import APIKeyHeader

from autocheckout.core.config import get_settings
from autocheckout.core.logging import get_logger

logger = get_logger(__name__)

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def verify_api_key(
    api_key: Annotated[str | None, Depends(api_key_header)],
) -> None:
    """
    Verify the X-API-Key header.

    Authentication is disabled entirely when no API key is configured.

    Raises:
        HTTPException: If API key is missing or invalid.
    """
    settings = get_settings()
    if not settings.api_key:
        return

    if api_key is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="API key required",
        )

    if not secrets.compare_digest(api_key, settings.api_key):
        logger.warning("api_key_invalid", reason="key_mismatch")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
        )


@dataclass
class RateLimiter:
    """
    In-memory rate limiter using sliding window algorithm.

    Attributes:
        requests_per_window: Maximum requests allowed per window.
        window_seconds: Size of the sliding window in seconds.
    """

    requests_per_window: int
    window_seconds: int
    _requests: dict[str, list[float]] = field(default_factory=lambda: defaultdict(list))
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def is_allowed(self, key: str) -> bool:
        """
        Check if a request is allowed for the given key, recording it if so.

        Args:
            key: Unique identifier for the client (user ID or IP).

        Returns:
            bool: True if request is allowed, False if rate limit exceeded.
        """
        now = time.time()
        window_start = now - self.window_seconds

        with self._lock:
            recent = [t for t in self._requests[key] if t > window_start]
            if len(recent) < self.requests_per_window:
                recent.append(now)
                self._requests[key] = recent
                return True
            self._requests[key] = recent
            return False

    def get_remaining(self, key: str) -> int:
        """Number of requests still allowed for the key in the current window."""
        window_start = time.time() - self.window_seconds
        with self._lock:
            current = [t for t in self._requests.get(key, []) if t > window_start]
        return max(0, self.requests_per_window - len(current))


_rate_limiter: RateLimiter | None = None


def get_rate_limiter() -> RateLimiter:
    """Get or create the process-wide rate limiter."""
    global _rate_limiter
    if _rate_limiter is None:
        settings = get_settings()
        _rate_limiter = RateLimiter(
            requests_per_window=settings.rate_limit_requests,
            window_seconds=settings.rate_limit_window_seconds,
        )
    return _rate_limiter


async def check_rate_limit(request: Request) -> None:
    """
    Rate limiting dependency for FastAPI routes.

    Keys on the X-User-ID header when present, the client IP otherwise.

    Raises:
        HTTPException: If rate limit is exceeded.
    """
    rate_limiter = get_rate_limiter()
    key = request.headers.get("X-User-ID") or (
        request.client.host if request.client else "unknown"
    )

    if not rate_limiter.is_allowed(key):
        logger.warning("rate_limit_exceeded", client=key)
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Rate limit exceeded. Please try again later.",
            headers={
                "Retry-After": str(rate_limiter.window_seconds),
                "X-RateLimit-Remaining": "0",
            },
        )
