"""
Redis-backed stale-while-revalidate cache for per-user read models.

Each logical entry is stored under two keys:

    <key>          payload (JSON), kept for ttl + CACHE_STALE_GRACE
    <key>:fresh    sentinel, expires after ttl

A payload without its sentinel is stale: callers serve it and refresh in the
background. Redis being down is never an error for callers; every helper here
degrades to a miss or a no-op and logs a warning.
"""
from __future__ import annotations

import hashlib
import json
import re
from typing import Any, Optional, Tuple

import structlog
from redis.asyncio import ConnectionPool, Redis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import RedisError

from feedback_aggregator.config import settings
from feedback_aggregator.exceptions import CacheError

log = structlog.get_logger(__name__)

KEY_PREFIX = "fbagg:v1"
FRESH_SUFFIX = ":fresh"
_GLOB_SPECIAL = re.compile(r"([*?\[\]\\])")

_pool: Optional[ConnectionPool] = None


async def init_redis_pool() -> None:
    global _pool
    _pool = ConnectionPool.from_url(
        settings.REDIS_URL,
        max_connections=settings.REDIS_POOL_SIZE,
        socket_timeout=settings.REDIS_SOCKET_TIMEOUT,
        socket_connect_timeout=settings.REDIS_CONNECT_TIMEOUT,
        decode_responses=True,
        retry=Retry(ExponentialBackoff(), retries=2),
        retry_on_error=[RedisError],
    )
    log.info("redis.pool.initialized", url=f"{settings.REDIS_HOST}:{settings.REDIS_PORT}")


async def close_redis_pool() -> None:
    global _pool
    if _pool is not None:
        await _pool.aclose()
        _pool = None
        log.info("redis.pool.closed")


def get_redis() -> Redis:
    if _pool is None:
        raise CacheError("Redis pool not initialized")
    return Redis(connection_pool=_pool)


async def ping_redis() -> bool:
    try:
        return bool(await get_redis().ping())
    except (RedisError, CacheError):
        return False


def build_key(name: str, *parts: Any) -> str:
    """``fbagg:v1:<digest>:<name>:<parts...>``; the owner id goes last."""
    raw = ":".join(str(p) for p in (name, *parts))
    digest = hashlib.sha256(raw.encode()).hexdigest()[:12]
    return f"{KEY_PREFIX}:{digest}:{raw.replace(' ', '_')}"


def owner_pattern(user_id: str) -> str:
    """Glob matching every entry whose key ends with ``user_id``."""
    owner = _GLOB_SPECIAL.sub(r"\\\1", user_id.replace(" ", "_"))
    return f"{KEY_PREFIX}:*:*:{owner}"


async def cache_get(key: str) -> Tuple[Optional[Any], bool]:
    """(value, is_stale); value is None on a miss."""
    try:
        payload, fresh = await get_redis().mget(key, key + FRESH_SUFFIX)
    except (RedisError, CacheError) as exc:
        log.warning("cache.get.error", key=key, error=str(exc))
        return None, False

    if payload is None:
        return None, False
    return json.loads(payload), fresh is None


async def cache_set(key: str, value: Any, ttl: int) -> None:
    try:
        pipe = get_redis().pipeline()
        pipe.set(key, json.dumps(value, default=str), ex=ttl + settings.CACHE_STALE_GRACE)
        pipe.set(key + FRESH_SUFFIX, "1", ex=ttl)
        await pipe.execute()
    except (RedisError, CacheError) as exc:
        log.warning("cache.set.error", key=key, error=str(exc))


async def invalidate_pattern(pattern: str) -> int:
    """Drop every entry matching ``pattern`` (SCAN, never KEYS). Returns the key count."""
    try:
        r = get_redis()
        keys = [key async for key in r.scan_iter(match=pattern, count=100)]
        if keys:
            await r.delete(*keys, *(k + FRESH_SUFFIX for k in keys if not k.endswith(FRESH_SUFFIX)))
            log.info("cache.invalidated", pattern=pattern, count=len(keys))
        return len(keys)
    except (RedisError, CacheError) as exc:
        log.warning("cache.invalidate.error", pattern=pattern, error=str(exc))
        return 0
