"""Error types raised across the sync engine and how the API renders them."""
from __future__ import annotations
from typing import Any, Dict, Optional
from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse


class AppError(Exception):
    """Carries an HTTP status, a stable machine code and structured context."""
    status_code: int = 500
    error_code: str = "INTERNAL_ERROR"

    def __init__(self, detail: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(detail)
        self.detail = detail
        self.context = context or {}

    def to_body(self) -> Dict[str, Any]:
        return {"error": self.error_code, "detail": self.detail, "context": self.context}


class AuthenticationError(AppError):
    status_code = 401
    error_code = "UNAUTHORIZED"


class AuthorizationError(AppError):
    status_code = 403
    error_code = "FORBIDDEN"


class NotFoundError(AppError):
    status_code = 404
    error_code = "NOT_FOUND"


class InvalidPayloadError(AppError):
    status_code = 400
    error_code = "INVALID_PAYLOAD"


class ConfigurationError(AppError):
    """Integration config is missing or still holds placeholder values."""
    status_code = 422
    error_code = "INTEGRATION_MISCONFIGURED"


class RateLimitError(AppError):
    status_code = 429
    error_code = "RATE_LIMIT_EXCEEDED"


class UpstreamError(AppError):
    """Source API answered with a non-2xx status or could not be reached."""
    status_code = 502
    error_code = "UPSTREAM_FETCH_FAILED"


class UpstreamRateLimitError(UpstreamError):
    error_code = "UPSTREAM_RATE_LIMITED"


class CacheError(AppError):
    """Redis unavailable; cache helpers swallow it, so it never reaches a client."""
    status_code = 503
    error_code = "CACHE_UNAVAILABLE"


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_body())


async def http_error_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": "HTTP_ERROR", "detail": exc.detail},
        headers=getattr(exc, "headers", None),
    )
