from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Set

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.ext.asyncio import async_sessionmaker

from feedback_aggregator.config import settings
from feedback_aggregator.connectors.base import as_utc
from feedback_aggregator.connectors.registry import get_connector
from feedback_aggregator.exceptions import AppError
from feedback_aggregator.models import Integration, SyncFrequency
from feedback_aggregator.repositories.integrations import IntegrationRepository
from feedback_aggregator.repositories.sync_logs import SyncLogRepository
from feedback_aggregator.schemas import SchedulerTickResponse
from feedback_aggregator.services.orchestrator import SyncOrchestrator
from feedback_aggregator.services.tracker import SyncRunTracker

log = structlog.get_logger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# manual has no entry: never due
FREQUENCY_THRESHOLDS: Dict[str, timedelta] = {
    SyncFrequency.HOURLY.value: timedelta(hours=1),
    SyncFrequency.TWICE_DAILY.value: timedelta(hours=12),
    SyncFrequency.DAILY.value: timedelta(hours=24),
}


def is_due(integration: Integration, now: datetime) -> bool:
    threshold = FREQUENCY_THRESHOLDS.get(integration.sync_frequency)
    if threshold is None or not integration.is_active:
        return False
    last = as_utc(integration.last_synced_at) or EPOCH
    return now - last > threshold


class SyncScheduler:
    """
    Evaluates every active integration on each tick and dispatches the due
    ones to a bounded pool of background runs.

    An integration with a run still queued or running in this process is
    skipped until that run finishes. Across processes nothing is shared, so
    two processes ticking at once can start the same integration twice.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        orchestrator: SyncOrchestrator,
        max_concurrency: int = settings.SYNC_CONCURRENCY,
    ):
        self.session_factory = session_factory
        self.orchestrator = orchestrator
        self._slots = asyncio.Semaphore(max_concurrency)
        self._tasks: Set[asyncio.Task] = set()
        self._active_ids: Set[str] = set()

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def tick(self, now: Optional[datetime] = None) -> SchedulerTickResponse:
        now = now or datetime.now(timezone.utc)

        async with self.session_factory() as db:
            reclaimed = await SyncRunTracker(SyncLogRepository(db)).reclaim_stale(
                settings.STALE_RUN_MINUTES
            )
            active = await IntegrationRepository(db).list_active()

        triggered = []
        for integration in active:
            if not is_due(integration, now):
                continue
            if integration.id in self._active_ids:
                log.info("scheduler.skip.in_flight", integration_id=integration.id)
                continue
            connector = get_connector(integration.source)
            if not connector.pollable:
                continue
            if not connector.is_runnable(integration.config or {}):
                log.warning(
                    "scheduler.skip.misconfigured",
                    integration_id=integration.id, source=integration.source,
                )
                continue
            log.info(
                "scheduler.trigger",
                integration_id=integration.id, name=integration.name, source=integration.source,
            )
            self._dispatch(integration.id)
            triggered.append(integration.id)

        log.info("scheduler.tick.done", evaluated=len(active), triggered=len(triggered))
        return SchedulerTickResponse(
            evaluated=len(active), triggered=triggered, reclaimed=reclaimed
        )

    def _dispatch(self, integration_id: str) -> None:
        task = asyncio.create_task(self._run(integration_id), name=f"sync:{integration_id}")
        self._tasks.add(task)
        self._active_ids.add(integration_id)

        def _finished(done: asyncio.Task) -> None:
            self._tasks.discard(done)
            self._active_ids.discard(integration_id)

        task.add_done_callback(_finished)

    async def _run(self, integration_id: str) -> None:
        async with self._slots:
            try:
                result = await self.orchestrator.run(integration_id)
                log.info(
                    "scheduler.run.done",
                    integration_id=integration_id,
                    status=result.status.value,
                    created=result.items_created,
                    updated=result.items_updated,
                )
            except AppError as exc:
                log.warning("scheduler.run.failed", integration_id=integration_id, error=exc.detail)
            except Exception as exc:
                log.exception("scheduler.run.crashed", integration_id=integration_id, error=str(exc))

    async def drain(self) -> None:
        """Wait for every dispatched run; used on shutdown and in tests."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


# ── Periodic timer ────────────────────────────────────────────────────────────

_timer: AsyncIOScheduler | None = None


def timer_running() -> bool:
    return bool(_timer and _timer.running)


def start_timer(sync_scheduler: SyncScheduler) -> None:
    global _timer
    if not settings.SCHEDULER_ENABLED:
        log.info("scheduler.disabled")
        return

    _timer = AsyncIOScheduler()
    _timer.add_job(
        sync_scheduler.tick,
        trigger=IntervalTrigger(minutes=settings.SCHEDULER_TICK_MINUTES),
        id="sync_tick",
        replace_existing=True,
        max_instances=1,
    )
    _timer.start()
    log.info("scheduler.started", interval_minutes=settings.SCHEDULER_TICK_MINUTES)


def stop_timer() -> None:
    global _timer
    if _timer and _timer.running:
        _timer.shutdown(wait=False)
        log.info("scheduler.stopped")
    _timer = None
