"""
Request identity.

Every non-public route needs the shared ``X-API-Key``. User-scoped routes also
need ``X-User-Id``, the id of the user the call acts for; integrations,
feedback and sync logs are filtered by it.
"""
from __future__ import annotations
import hmac
from fastapi import Security
from fastapi.security import APIKeyHeader
from feedback_aggregator.config import settings
from feedback_aggregator.exceptions import AuthenticationError

_api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)
_caller_header = APIKeyHeader(name="X-User-Id", auto_error=False)


async def require_api_key(key: str | None = Security(_api_key_header)) -> str:
    if not key or not hmac.compare_digest(key.encode(), settings.API_KEY.encode()):
        raise AuthenticationError("Invalid or missing API key")
    return key


async def require_caller(user_id: str | None = Security(_caller_header)) -> str:
    caller = (user_id or "").strip()
    if not caller:
        raise AuthenticationError("Missing caller identity (X-User-Id)")
    return caller
