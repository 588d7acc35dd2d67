# bulksend/infra/rate_limiter.py
from __future__ import annotations
import time
from collections import defaultdict
from threading import Lock
from typing import Optional

from fastapi import Request, HTTPException, status

from bulksend.infra.logging_config import get_logger

logger = get_logger(__name__)


class InMemoryRateLimiter:
    """
    Simple in-memory rate limiter using sliding window.

    NOT horizontally scalable: each process holds its own window,
    so with N replicas the effective limit is N × max_requests.
    """

    def __init__(self, max_requests: int, window_seconds: int = 60):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._requests: dict[str, list[float]] = defaultdict(list)
        self._lock = Lock()

    def is_allowed(self, key: str) -> tuple[bool, Optional[int]]:
        """
        Check if request is allowed for the given key.

        Returns:
            (allowed, retry_after_seconds)
        """
        now = time.time()
        cutoff = now - self.window_seconds

        with self._lock:
            self._requests[key] = [
                ts for ts in self._requests[key] if ts > cutoff
            ]

            request_count = len(self._requests[key])

            if request_count >= self.max_requests:
                oldest = min(self._requests[key])
                retry_after = int(oldest + self.window_seconds - now) + 1

                masked = key[:4] + "***" if len(key) > 4 else "***"
                logger.warning(
                    "Rate limit exceeded for key=%s", masked,
                    extra={
                        "key_masked": masked,
                        "count": request_count,
                        "limit": self.max_requests,
                        "retry_after": retry_after,
                    }
                )
                return False, retry_after

            self._requests[key].append(now)
            return True, None

    def get_usage(self, key: str) -> dict:
        """Get current usage stats for a key"""
        now = time.time()
        cutoff = now - self.window_seconds

        with self._lock:
            recent = [ts for ts in self._requests[key] if ts > cutoff]
            return {
                "count": len(recent),
                "limit": self.max_requests,
                "window_seconds": self.window_seconds,
                "remaining": max(0, self.max_requests - len(recent)),
            }


def client_ip(request: Request) -> str:
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


class RateLimitDependency:
    """
    FastAPI dependency for rate limiting.

    Keyed by the caller's user id when the gateway sent one, by client
    IP otherwise.
    """

    def __init__(self, limiter: InMemoryRateLimiter, *, scope: str = "global"):
        self.limiter = limiter
        self.scope = scope

    async def __call__(self, request: Request) -> None:
        if request.url.path in ["/health", "/ready"]:
            return

        user_id = request.headers.get("X-User-Id")
        key = f"{self.scope}:user:{user_id}" if user_id else f"{self.scope}:ip:{client_ip(request)}"

        allowed, retry_after = self.limiter.is_allowed(key)

        if not allowed:
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Rate limit exceeded",
                headers={"Retry-After": str(retry_after)} if retry_after else None,
            )
