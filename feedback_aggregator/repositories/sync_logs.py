from __future__ import annotations
from datetime import datetime, timezone
from typing import List, Optional
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from feedback_aggregator.models import Integration, SyncLog, SyncStatus


class SyncLogRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def open(self, integration_id: str) -> SyncLog:
        entry = SyncLog(
            integration_id=integration_id,
            status=SyncStatus.RUNNING.value,
            started_at=datetime.now(timezone.utc),
        )
        self.db.add(entry)
        await self.db.flush()
        return entry

    async def close(
        self,
        log_id: str,
        status: SyncStatus,
        items_processed: int = 0,
        items_created: int = 0,
        items_updated: int = 0,
        error_message: str | None = None,
    ) -> bool:
        """Apply the terminal transition; a row that already left ``running`` is untouched."""
        result = await self.db.execute(
            update(SyncLog)
            .where(SyncLog.id == log_id, SyncLog.status == SyncStatus.RUNNING.value)
            .values(
                status=status.value,
                items_processed=items_processed,
                items_created=items_created,
                items_updated=items_updated,
                error_message=error_message,
                completed_at=datetime.now(timezone.utc),
            )
        )
        return result.rowcount > 0

    async def reclaim_stale(self, started_before: datetime, message: str) -> int:
        result = await self.db.execute(
            update(SyncLog)
            .where(
                SyncLog.status == SyncStatus.RUNNING.value,
                SyncLog.started_at < started_before,
            )
            .values(
                status=SyncStatus.ERROR.value,
                error_message=message,
                completed_at=datetime.now(timezone.utc),
            )
        )
        return result.rowcount

    async def get(self, log_id: str) -> Optional[SyncLog]:
        return await self.db.get(SyncLog, log_id)

    async def recent(
        self,
        owner_id: str,
        integration_id: str | None = None,
        limit: int = 50,
    ) -> List[SyncLog]:
        q = (
            select(SyncLog)
            .join(Integration, Integration.id == SyncLog.integration_id)
            .where(Integration.user_id == owner_id)
        )
        if integration_id is not None:
            q = q.where(SyncLog.integration_id == integration_id)
        rows = await self.db.execute(
            q.order_by(SyncLog.started_at.desc()).limit(limit)
        )
        return list(rows.scalars().all())
