from __future__ import annotations
from fastapi import APIRouter, Depends
import sqlalchemy

from feedback_aggregator.auth import require_api_key
from feedback_aggregator.cache import KEY_PREFIX, invalidate_pattern, ping_redis
from feedback_aggregator.config import settings
from feedback_aggregator.database import engine
from feedback_aggregator.dependencies import get_sync_scheduler
from feedback_aggregator.schemas import HealthResponse, SchedulerTickResponse
from feedback_aggregator.services.scheduler import SyncScheduler, timer_running

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/health", response_model=HealthResponse)
async def health():
    """Health check is intentionally unauthenticated for load balancer probes."""
    redis_ok = await ping_redis()
    try:
        async with engine.connect() as conn:
            await conn.execute(sqlalchemy.text("SELECT 1"))
        db_status = "ok"
    except Exception:
        db_status = "error"

    return HealthResponse(
        status="ok" if (redis_ok and db_status == "ok") else "degraded",
        database=db_status,
        redis="ok" if redis_ok else "error",
        scheduler="running" if timer_running() else "stopped",
        version=settings.APP_VERSION,
    )


@router.post(
    "/scheduler/tick",
    response_model=SchedulerTickResponse,
    dependencies=[Depends(require_api_key)],
)
async def scheduler_tick(sync_scheduler: SyncScheduler = Depends(get_sync_scheduler)):
    """Run one evaluation pass now; due runs continue in the background."""
    return await sync_scheduler.tick()


@router.delete("/cache", status_code=204, dependencies=[Depends(require_api_key)])
async def bust_cache():
    await invalidate_pattern(f"{KEY_PREFIX}:*")
