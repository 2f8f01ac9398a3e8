"""
Fixed-window request rate limiting.

Counters live in an injected store so the limiter can be unit tested and
swapped for a shared store when several processes serve the API. The
bundled ``InMemoryRateLimitStore`` is per process and therefore only
approximate across workers.
"""
import logging
import math
import threading
import time
from typing import Callable, Optional, Protocol, Tuple

from fastapi import HTTPException, Request, Response, status

import config

logger = logging.getLogger(__name__)


class RateLimitStore(Protocol):
    def hit(self, key: str, window_seconds: float, now: float) -> Tuple[int, float]:
        """Count one request for ``key``; return (count in window, window reset time)."""
        ...

    def sweep(self, now: float) -> int:
        """Drop expired windows; return how many were removed."""
        ...


class InMemoryRateLimitStore:
    def __init__(self, cleanup_interval: float = config.RATE_LIMIT_CLEANUP_SECONDS):
        self._lock = threading.Lock()
        self._entries = {}
        self._cleanup_interval = cleanup_interval
        self._next_cleanup = 0.0

    def hit(self, key: str, window_seconds: float, now: float) -> Tuple[int, float]:
        with self._lock:
            if now >= self._next_cleanup:
                self._sweep_locked(now)
                self._next_cleanup = now + self._cleanup_interval

            entry = self._entries.get(key)
            if entry is None or entry[1] <= now:
                entry = [0, now + window_seconds]
                self._entries[key] = entry
            entry[0] += 1
            return entry[0], entry[1]

    def sweep(self, now: float) -> int:
        with self._lock:
            return self._sweep_locked(now)

    def _sweep_locked(self, now: float) -> int:
        expired = [key for key, (_, reset_at) in self._entries.items() if reset_at <= now]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self):
        with self._lock:
            return len(self._entries)


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


class RateLimiter:
    """FastAPI dependency enforcing ``max_requests`` per ``window_seconds`` per key."""

    def __init__(
        self,
        store: RateLimitStore,
        *,
        max_requests: int,
        window_seconds: float,
        key_func: Optional[Callable[[Request], str]] = None,
        message: str = "Too many requests, please try again later",
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.key_func = key_func or client_ip
        self.message = message
        self.clock = clock

    def check(self, key: str) -> Tuple[bool, int, float]:
        """Register a hit; return (allowed, remaining, reset_at)."""
        now = self.clock()
        count, reset_at = self.store.hit(key, self.window_seconds, now)
        remaining = max(0, self.max_requests - count)
        return count <= self.max_requests, remaining, reset_at

    async def __call__(self, request: Request, response: Response) -> None:
        key = await self._key(request)
        allowed, remaining, reset_at = self.check(key)
        headers = {
            "X-RateLimit-Limit": str(self.max_requests),
            "X-RateLimit-Remaining": str(remaining),
            "X-RateLimit-Reset": str(int(reset_at)),
        }
        if not allowed:
            retry_after = max(1, math.ceil(reset_at - self.clock()))
            headers["Retry-After"] = str(retry_after)
            logger.warning("Rate limit exceeded key=%s", key)
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail=self.message,
                headers=headers,
            )
        response.headers.update(headers)

    async def _key(self, request: Request) -> str:
        result = self.key_func(request)
        if hasattr(result, "__await__"):
            result = await result
        return result


async def ip_and_email_key(request: Request) -> str:
    """Per client address and submitted email, so users behind one NAT get separate limits."""
    ip = client_ip(request)
    email = ""
    content_type = request.headers.get("content-type", "")
    try:
        if "application/json" in content_type:
            body = await request.json()
            if isinstance(body, dict):
                email = str(body.get("email") or "")
        elif "form" in content_type:
            form = await request.form()
            email = str(form.get("username") or form.get("email") or "")
    except ValueError:
        email = ""
    return f"{ip}:{email}".lower() if email else ip


def auth_rate_limiter(store: RateLimitStore) -> RateLimiter:
    return RateLimiter(
        store,
        max_requests=20,
        window_seconds=15 * 60,
        key_func=ip_and_email_key,
        message="Too many sign-in or sign-up attempts. Try again in 15 minutes.",
    )


def upload_rate_limiter(store: RateLimitStore) -> RateLimiter:
    return RateLimiter(
        store,
        max_requests=10,
        window_seconds=15 * 60,
        message="Too many upload attempts. Try again in 15 minutes.",
    )


def password_reset_rate_limiter(store: RateLimitStore) -> RateLimiter:
    return RateLimiter(
        store,
        max_requests=3,
        window_seconds=60 * 60,
        message="Too many password reset attempts. Try again in an hour.",
    )
