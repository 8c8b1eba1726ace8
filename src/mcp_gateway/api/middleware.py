"""
API middleware for MCP Gateway.

Provides rate limiting, security headers, request logging, and error handling.
"""

import hashlib
import time
from collections import deque
from typing import Callable, Dict, Optional

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from mcp_gateway.utils.logging import get_logger

logger = get_logger(__name__)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Sliding-window rate limiting per client.

    Requests are counted against the presented API key only once that key
    has been accepted. Rejected and anonymous requests count against the
    client address, so rotating bogus keys cannot dodge the limit.
    """

    def __init__(self, app, requests_per_minute: int = 120, requests_per_hour: int = 5000):
        """Initialize rate limiter."""
        super().__init__(app)
        self.requests_per_minute = requests_per_minute
        self.requests_per_hour = requests_per_hour

        # Request timestamps per client
        self._minute_windows: Dict[str, deque] = {}
        self._hour_windows: Dict[str, deque] = {}
        self._last_sweep = time.time()

        logger.info("Rate limiting middleware initialized", extra={
            "requests_per_minute": requests_per_minute,
            "requests_per_hour": requests_per_hour
        })

    def _get_address_id(self, request: Request) -> str:
        """Client address, honoring a forwarding proxy."""
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            return f"ip:{forwarded_for.split(',')[0].strip()}"

        return f"ip:{getattr(request.client, 'host', 'unknown')}"

    def _get_token_id(self, request: Request) -> Optional[str]:
        """Digest of the presented bearer token, if any."""
        auth_header = request.headers.get("Authorization", "")
        if auth_header.lower().startswith("bearer "):
            digest = hashlib.sha256(auth_header[7:].strip().encode()).hexdigest()
            return f"token:{digest[:16]}"
        return None

    def _cleanup_old_requests(self, request_times: deque, window_seconds: int):
        """Remove requests older than window."""
        cutoff = time.time() - window_seconds
        while request_times and request_times[0] < cutoff:
            request_times.popleft()

    def _forget_if_idle(self, client_id: str) -> None:
        if not self._minute_windows.get(client_id) and not self._hour_windows.get(client_id):
            self._minute_windows.pop(client_id, None)
            self._hour_windows.pop(client_id, None)

    def _sweep(self) -> None:
        """Drop clients with no requests left in either window."""
        now = time.time()
        if now - self._last_sweep < 60:
            return
        self._last_sweep = now
        for client_id in list(self._hour_windows):
            self._cleanup_old_requests(self._minute_windows.get(client_id, deque()), 60)
            self._cleanup_old_requests(self._hour_windows[client_id], 3600)
            self._forget_if_idle(client_id)

    def _check_rate_limit(self, client_id: str) -> Optional[Dict[str, int]]:
        """Check if client exceeds rate limits."""
        if client_id not in self._hour_windows:
            return None

        now = time.time()

        minute_requests = self._minute_windows[client_id]
        hour_requests = self._hour_windows[client_id]

        self._cleanup_old_requests(minute_requests, 60)
        self._cleanup_old_requests(hour_requests, 3600)

        if len(minute_requests) >= self.requests_per_minute:
            retry_after = 60 - (now - minute_requests[0])
            return {
                "limit_type": "minute",
                "limit": self.requests_per_minute,
                "current": len(minute_requests),
                "retry_after": max(1, int(retry_after))
            }

        if len(hour_requests) >= self.requests_per_hour:
            retry_after = 3600 - (now - hour_requests[0])
            return {
                "limit_type": "hour",
                "limit": self.requests_per_hour,
                "current": len(hour_requests),
                "retry_after": max(1, int(retry_after))
            }

        self._forget_if_idle(client_id)
        return None

    def _record(self, client_id: str) -> None:
        now = time.time()
        self._minute_windows.setdefault(client_id, deque()).append(now)
        self._hour_windows.setdefault(client_id, deque()).append(now)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Process request with rate limiting."""
        if request.url.path == "/health":
            return await call_next(request)

        self._sweep()
        address_id = self._get_address_id(request)
        token_id = self._get_token_id(request)

        for client_id in (address_id, token_id):
            if client_id is None:
                continue
            limit_info = self._check_rate_limit(client_id)
            if limit_info:
                logger.warning("Rate limit exceeded", extra={
                    "client_id": client_id,
                    "limit_type": limit_info["limit_type"],
                    "current_requests": limit_info["current"],
                    "limit": limit_info["limit"]
                })

                return JSONResponse(
                    status_code=429,
                    content={"error": f"Rate limit exceeded: {limit_info['limit']} requests per {limit_info['limit_type']}"},
                    headers={"Retry-After": str(limit_info["retry_after"])}
                )

        response = await call_next(request)

        # Only an accepted key gets a bucket of its own
        client_id = token_id if token_id and response.status_code != 401 else address_id
        self._record(client_id)

        minute_requests = len(self._minute_windows[client_id])
        hour_requests = len(self._hour_windows[client_id])

        response.headers["X-RateLimit-Minute-Limit"] = str(self.requests_per_minute)
        response.headers["X-RateLimit-Minute-Remaining"] = str(max(0, self.requests_per_minute - minute_requests))
        response.headers["X-RateLimit-Hour-Limit"] = str(self.requests_per_hour)
        response.headers["X-RateLimit-Hour-Remaining"] = str(max(0, self.requests_per_hour - hour_requests))

        return response


class SecurityMiddleware(BaseHTTPMiddleware):
    """Security headers middleware."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Add security headers to response."""
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        # Descriptors carry decrypted secrets
        response.headers["Cache-Control"] = "no-store"

        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Request/response logging middleware."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Log request and response details."""
        start_time = time.time()

        # Query strings only; headers carry the bearer token
        logger.debug("API request started", extra={
            "method": request.method,
            "path": request.url.path,
            "client_ip": getattr(request.client, "host", "unknown"),
            "user_agent": request.headers.get("User-Agent", "unknown"),
        })

        try:
            response = await call_next(request)
        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            logger.error("API request failed", extra={
                "method": request.method,
                "path": request.url.path,
                "duration_ms": round(duration_ms, 2),
                "error_type": type(e).__name__
            })
            raise

        duration_ms = (time.time() - start_time) * 1000
        logger.info("API request completed", extra={
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "duration_ms": round(duration_ms, 2),
        })

        response.headers["X-Response-Time"] = f"{duration_ms:.2f}ms"
        return response


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Global error handling middleware."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Turn uncaught exceptions into a generic 500."""
        try:
            return await call_next(request)
        except Exception as e:
            logger.error("Unhandled API error", extra={
                "method": request.method,
                "path": request.url.path,
                "error": str(e),
                "error_type": type(e).__name__
            }, exc_info=True)

            return JSONResponse(status_code=500, content={"error": "Internal server error"})
