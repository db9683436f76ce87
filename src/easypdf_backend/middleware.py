import time
from abc import ABC, abstractmethod
from threading import Lock
from typing import Callable, Dict, Optional, Tuple

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from .errors import RateLimited


class RateLimiter(ABC):
    @abstractmethod
    def allow(self, key: str) -> bool:
        """Record one request for ``key`` and report whether it is within the limit."""


class InMemoryRateLimiter(RateLimiter):
    """
    Simple in-memory rate limiter using a fixed window algorithm.
    Tracks requests per key (``{ip}:{route}``) within a time window.

    State is per process; deployments with several workers should inject a
    limiter backed by a shared store instead.
    """

    def __init__(self, limit: int = 60, window_seconds: float = 60, clock: Callable[[], float] = time.time):
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        # key -> (count, window_start_time)
        self.requests: Dict[str, Tuple[int, float]] = {}
        self._lock = Lock()

    def allow(self, key: str) -> bool:
        now = self._clock()
        with self._lock:
            count, start_time = self.requests.get(key, (0, now))

            if now - start_time >= self.window_seconds:
                # New window
                self.requests[key] = (1, now)
                return True

            if count >= self.limit:
                return False

            self.requests[key] = (count + 1, start_time)
            return True

    def cleanup(self) -> int:
        """Drop expired windows to keep the map bounded."""
        now = self._clock()
        with self._lock:
            expired = [k for k, (_, start) in self.requests.items() if now - start >= self.window_seconds]
            for k in expired:
                del self.requests[k]
        return len(expired)


RateLimiterFactory = Callable[[str, int, float], RateLimiter]


def in_memory_factory(route: str, limit: int, window_seconds: float) -> RateLimiter:
    return InMemoryRateLimiter(limit=limit, window_seconds=window_seconds)


def client_ip(request: Request) -> str:
    """First hop of X-Forwarded-For, then X-Real-IP, then the socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else "unknown"


class RateLimitGuard:
    """
    Route-group rate limiting as a FastAPI dependency.

    ``Depends(RateLimitGuard("pdf"))`` looks up the limiter for that group on
    ``app.state.rate_limiters`` at request time, so tests can swap limiters.
    """

    def __init__(self, route: str):
        self.route = route

    def __call__(self, request: Request) -> None:
        limiters: Dict[str, RateLimiter] = getattr(request.app.state, "rate_limiters", {})
        limiter: Optional[RateLimiter] = limiters.get(self.route)
        if limiter is None:
            return
        if not limiter.allow(f"{client_ip(request)}:{self.route}"):
            raise RateLimited("Too many requests. Please try again later.")


SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "strict-origin-when-cross-origin",
}


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Adds standard hardening headers to every HTTP response."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        for header, value in SECURITY_HEADERS.items():
            response.headers.setdefault(header, value)
        return response
