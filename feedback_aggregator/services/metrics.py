from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional, Tuple

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from feedback_aggregator.cache import build_key, cache_get, cache_set
from feedback_aggregator.config import settings
from feedback_aggregator.models import FeedbackPriority
from feedback_aggregator.repositories.feedback import FeedbackRepository
from feedback_aggregator.schemas import MetricValue, MetricsResponse

log = structlog.get_logger(__name__)

WINDOW_DAYS = 30

# Strong refs so background revalidations are not garbage-collected mid-flight
_background: set = set()


def percent_change(current: float, previous: float) -> float:
    if previous == 0:
        return 100.0 if current > 0 else 0.0
    if current == previous:
        return 0.0
    return (current - previous) / previous * 100


def _summarize(rows: Iterable[Tuple[Optional[dict], Optional[str]]]) -> Tuple[int, float, int]:
    rows = list(rows)
    total = len(rows)
    positive = sum(1 for analysis, _ in rows if (analysis or {}).get("sentiment") == "positive")
    critical = sum(1 for _, priority in rows if priority == FeedbackPriority.CRITICAL.value)
    return total, (positive / total * 100 if total else 0.0), critical


async def compute_metrics(
    db: AsyncSession, user_id: str, now: Optional[datetime] = None
) -> MetricsResponse:
    """Last 30 days against the 30 days before, both anchored on start of today (UTC)."""
    now = now or datetime.now(timezone.utc)
    today = now.replace(hour=0, minute=0, second=0, microsecond=0)
    current_start = today - timedelta(days=WINDOW_DAYS)
    previous_start = today - timedelta(days=2 * WINDOW_DAYS)

    repo = FeedbackRepository(db)
    total, positive_pct, critical = _summarize(
        await repo.signals_between(user_id, current_start)
    )
    prev_total, prev_positive_pct, prev_critical = _summarize(
        await repo.signals_between(user_id, previous_start, current_start)
    )

    return MetricsResponse(
        total_items=MetricValue(value=total, change=percent_change(total, prev_total)),
        positive_sentiment=MetricValue(
            value=positive_pct, change=positive_pct - prev_positive_pct
        ),
        critical_issues=MetricValue(
            value=critical, change=percent_change(critical, prev_critical)
        ),
        computed_at=now,
        cache_status="MISS",
    )


async def _revalidate(key: str, user_id: str, session_factory: async_sessionmaker) -> None:
    """Background revalidation for stale metrics entries."""
    try:
        async with session_factory() as db:
            response = await compute_metrics(db, user_id)
        await cache_set(key, response.model_dump(mode="json"), settings.CACHE_TTL_METRICS)
        log.info("cache.revalidated", key=key)
    except Exception as exc:
        log.error("cache.revalidation.failed", key=key, error=str(exc))


async def get_feedback_metrics(
    db: AsyncSession, user_id: str, session_factory: async_sessionmaker
) -> MetricsResponse:
    key = build_key("metrics", user_id)
    value, is_stale = await cache_get(key)

    if value and not is_stale:
        value["cache_status"] = "HIT"
        return MetricsResponse(**value)

    if value and is_stale:
        log.info("cache.stale_hit", key=key)
        task = asyncio.create_task(_revalidate(key, user_id, session_factory))
        _background.add(task)
        task.add_done_callback(_background.discard)
        value["cache_status"] = "STALE"
        return MetricsResponse(**value)

    response = await compute_metrics(db, user_id)
    await cache_set(key, response.model_dump(mode="json"), settings.CACHE_TTL_METRICS)
    return response
