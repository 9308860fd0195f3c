from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import select, func, update
from sqlalchemy.ext.asyncio import AsyncSession

from feedback_aggregator.models import Feedback

# Columns a sync pass owns; everything else (analysis, timestamps) is left alone.
MAPPED_COLUMNS = (
    "user_id", "integration_id", "source", "external_id", "title", "description",
    "priority", "status", "tags", "source_metadata", "customer_name",
    "interviewee_name", "conversation_at", "external_created_at", "external_updated_at",
)


class FeedbackRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    def _mapped(self, row: Dict[str, Any]) -> Dict[str, Any]:
        return {k: row.get(k) for k in MAPPED_COLUMNS}

    async def find(
        self, source: str, external_id: str, owner_id: str
    ) -> Optional[Feedback]:
        rows = await self.db.execute(
            select(Feedback)
            .where(
                Feedback.source == source,
                Feedback.external_id == external_id,
                Feedback.user_id == owner_id,
            )
            .order_by(Feedback.created_at)
            .limit(1)
        )
        return rows.scalars().first()

    async def insert(self, row: Dict[str, Any]) -> Feedback:
        record = Feedback(**self._mapped(row))
        self.db.add(record)
        await self.db.flush()
        return record

    async def update(self, feedback_id: str, row: Dict[str, Any]) -> bool:
        """Full overwrite of the mapped columns; cleared source fields stay cleared."""
        result = await self.db.execute(
            update(Feedback)
            .where(Feedback.id == feedback_id)
            .values(**self._mapped(row), updated_at=func.now())
        )
        return result.rowcount > 0

    async def insert_many(self, rows: Sequence[Dict[str, Any]]) -> int:
        self.db.add_all(Feedback(**self._mapped(r)) for r in rows)
        await self.db.flush()
        return len(rows)

    def _dialect_insert(self):
        dialect = self.db.bind.dialect.name
        if dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert
        elif dialect == "sqlite":
            from sqlalchemy.dialects.sqlite import insert
        else:
            raise NotImplementedError(f"Batch upsert is not supported on {dialect}")
        return insert

    async def upsert_batch(
        self, rows: Sequence[Dict[str, Any]], conflict_key: Sequence[str]
    ) -> List[str]:
        """
        Insert-or-overwrite in one statement, keyed by a unique index.

        Rows whose conflict columns contain NULL never conflict and are
        always inserted.
        """
        if not rows:
            return []
        insert = self._dialect_insert()
        values = [{"id": str(uuid.uuid4()), **self._mapped(r)} for r in rows]
        stmt = insert(Feedback.__table__).values(values)
        overwrite = {
            col: getattr(stmt.excluded, col)
            for col in MAPPED_COLUMNS
            if col not in conflict_key and col != "user_id"
        }
        overwrite["updated_at"] = func.now()
        stmt = stmt.on_conflict_do_update(
            index_elements=list(conflict_key), set_=overwrite
        ).returning(Feedback.__table__.c.id)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def get(self, feedback_id: str, owner_id: Optional[str] = None) -> Optional[Feedback]:
        q = select(Feedback).where(Feedback.id == feedback_id)
        if owner_id is not None:
            q = q.where(Feedback.user_id == owner_id)
        return (await self.db.execute(q)).scalars().first()

    async def get_paginated(
        self,
        owner_id: str,
        page: int,
        page_size: int,
        filters: Optional[Dict[str, Any]] = None,
    ) -> Tuple[int, List[Feedback]]:
        conditions = [Feedback.user_id == owner_id]
        for column, value in (filters or {}).items():
            if value is not None:
                conditions.append(getattr(Feedback, column) == value)

        total = (
            await self.db.execute(select(func.count(Feedback.id)).where(*conditions))
        ).scalar_one()
        rows = (
            await self.db.execute(
                select(Feedback)
                .where(*conditions)
                .order_by(Feedback.created_at.desc(), Feedback.id)
                .offset((page - 1) * page_size)
                .limit(page_size)
            )
        ).scalars().all()
        return total, list(rows)

    async def count(self, owner_id: str, **filters: Any) -> int:
        q = select(func.count(Feedback.id)).where(Feedback.user_id == owner_id)
        for column, value in filters.items():
            q = q.where(getattr(Feedback, column) == value)
        return (await self.db.execute(q)).scalar_one()

    async def set_analysis(self, feedback_id: str, analysis: Dict[str, Any]) -> bool:
        result = await self.db.execute(
            update(Feedback)
            .where(Feedback.id == feedback_id)
            .values(analysis=analysis, updated_at=func.now())
        )
        return result.rowcount > 0

    async def pending_analysis(
        self, limit: int, owner_id: Optional[str] = None
    ) -> List[Tuple[str, str, Optional[str]]]:
        q = (
            select(Feedback.id, Feedback.title, Feedback.description)
            .where(Feedback.analysis.is_(None))
            .order_by(Feedback.created_at)
            .limit(limit)
        )
        if owner_id is not None:
            q = q.where(Feedback.user_id == owner_id)
        return [tuple(r) for r in (await self.db.execute(q)).all()]

    async def signals_between(
        self, owner_id: str, start: datetime, end: Optional[datetime] = None
    ) -> List[Tuple[Optional[dict], Optional[str]]]:
        """(analysis, priority) pairs for rows created in [start, end)."""
        q = select(Feedback.analysis, Feedback.priority).where(
            Feedback.user_id == owner_id, Feedback.created_at >= start
        )
        if end is not None:
            q = q.where(Feedback.created_at < end)
        return [tuple(r) for r in (await self.db.execute(q)).all()]
