from __future__ import annotations

import asyncio
import time
import uuid
from typing import Dict, Tuple

import structlog
from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from feedback_aggregator.config import settings
from feedback_aggregator.exceptions import RateLimitError

log = structlog.get_logger(__name__)


def client_ip(request: Request) -> str:
    for header in settings.TRUSTED_PROXY_HEADERS:
        forwarded = request.headers.get(header)
        if forwarded:
            return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


class FixedWindowLimiter:
    """Per-client request counter; windows older than two periods are purged."""

    PURGE_EVERY = 300.0

    def __init__(self, limit: int, window: float):
        self.limit = limit
        self.window = window
        self._lock = asyncio.Lock()
        self._windows: Dict[str, Tuple[float, int]] = {}
        self._last_purge = 0.0

    async def hit(self, client: str, now: float) -> Tuple[int, float]:
        """Count one request; returns (count in window, seconds until reset)."""
        async with self._lock:
            if now - self._last_purge > self.PURGE_EVERY:
                self._windows = {
                    ip: w for ip, w in self._windows.items() if now - w[0] <= self.window * 2
                }
                self._last_purge = now

            started, count = self._windows.get(client, (now, 0))
            if now - started > self.window:
                started, count = now, 0
            count += 1
            self._windows[client] = (started, count)
        return count, max(0.0, started + self.window - now)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Throttles the public webhook paths only; API routes sit behind the key."""

    def __init__(self, app, limiter: FixedWindowLimiter | None = None):
        super().__init__(app)
        self.limiter = limiter or FixedWindowLimiter(
            settings.RATE_LIMIT_REQUESTS, settings.RATE_LIMIT_WINDOW_SECONDS
        )

    async def dispatch(self, request: Request, call_next):
        if not request.url.path.startswith(tuple(settings.RATE_LIMIT_PATH_PREFIXES)):
            return await call_next(request)

        count, reset_in = await self.limiter.hit(client_ip(request), time.monotonic())
        if count > self.limiter.limit:
            exc = RateLimitError(
                f"Too many requests. Limit: {self.limiter.limit} per {int(self.limiter.window)}s"
            )
            log.warning("http.rate_limited", path=request.url.path, client=client_ip(request))
            return JSONResponse(
                status_code=exc.status_code,
                content=exc.to_body(),
                headers={"Retry-After": str(int(reset_in))},
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(self.limiter.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.limiter.limit - count))
        return response


class LoggingMiddleware(BaseHTTPMiddleware):
    """One ``http.request`` line per request, tagged with a request id."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-Id") or uuid.uuid4().hex
        structlog.contextvars.bind_contextvars(request_id=request_id)
        started = time.monotonic()
        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.unbind_contextvars("request_id")

        log.info(
            "http.request",
            method=request.method,
            path=request.url.path,
            status=response.status_code,
            duration_ms=int((time.monotonic() - started) * 1000),
            request_id=request_id,
            client=client_ip(request),
        )
        response.headers["X-Request-Id"] = request_id
        return response
