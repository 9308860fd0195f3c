from __future__ import annotations

from datetime import datetime, timedelta, timezone

import structlog

from feedback_aggregator.models import SyncStatus
from feedback_aggregator.repositories.sync_logs import SyncLogRepository

log = structlog.get_logger(__name__)


class SyncRunTracker:
    """Owns the running -> success | error lifecycle of SyncLog rows."""

    def __init__(self, repo: SyncLogRepository):
        self.repo = repo
        self.db = repo.db

    async def begin(self, integration_id: str) -> str:
        entry = await self.repo.open(integration_id)
        log_id = entry.id
        await self.db.commit()
        log.info("sync.run.started", integration_id=integration_id, sync_log_id=log_id)
        return log_id

    async def complete_success(
        self, log_id: str, processed: int, created: int, updated: int
    ) -> None:
        await self.repo.close(
            log_id, SyncStatus.SUCCESS,
            items_processed=processed, items_created=created, items_updated=updated,
        )
        await self.db.commit()

    async def complete_error(
        self,
        log_id: str,
        message: str,
        processed: int = 0,
        created: int = 0,
        updated: int = 0,
    ) -> None:
        await self.repo.close(
            log_id, SyncStatus.ERROR,
            items_processed=processed, items_created=created, items_updated=updated,
            error_message=message,
        )
        await self.db.commit()

    async def reclaim_stale(self, max_age_minutes: int) -> int:
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=max_age_minutes)
        reclaimed = await self.repo.reclaim_stale(
            cutoff,
            f"Sync run abandoned: no completion recorded within {max_age_minutes} minutes",
        )
        await self.db.commit()
        if reclaimed:
            log.warning("sync.run.reclaimed", count=reclaimed, max_age_minutes=max_age_minutes)
        return reclaimed
