from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import structlog
from sqlalchemy.exc import SQLAlchemyError

from feedback_aggregator.repositories.feedback import FeedbackRepository
from feedback_aggregator.schemas import CanonicalFeedback

log = structlog.get_logger(__name__)


@dataclass
class ReconcileResult:
    items_processed: int = 0
    items_created: int = 0
    items_updated: int = 0
    failed: List[str] = field(default_factory=list)

    @property
    def items_failed(self) -> int:
        return len(self.failed)


class Reconciler:
    """
    Insert-or-update a batch of canonical records, one committed write per item.

    Existing rows are matched on (external_id, source, owner) and fully
    overwritten. A failing item is rolled back and skipped; the batch is not
    atomic, re-running it converges on the same rows.
    """

    def __init__(self, repo: FeedbackRepository):
        self.repo = repo
        self.db = repo.db

    async def reconcile(
        self,
        records: Sequence[CanonicalFeedback],
        user_id: str,
        integration_id: Optional[str],
    ) -> ReconcileResult:
        result = ReconcileResult()

        for record in records:
            result.items_processed += 1
            row = record.to_row(user_id, integration_id)
            try:
                existing_id = None
                if record.external_id is not None:
                    existing = await self.repo.find(record.source, record.external_id, user_id)
                    existing_id = existing.id if existing else None

                if existing_id:
                    await self.repo.update(existing_id, row)
                else:
                    await self.repo.insert(row)
                await self.db.commit()
            except SQLAlchemyError as exc:
                await self.db.rollback()
                result.failed.append(record.external_id or record.title)
                log.error(
                    "reconcile.item.failed",
                    integration_id=integration_id,
                    external_id=record.external_id,
                    error=str(exc),
                )
                continue

            if existing_id:
                result.items_updated += 1
            else:
                result.items_created += 1

        log.info(
            "reconcile.done",
            integration_id=integration_id,
            processed=result.items_processed,
            created=result.items_created,
            updated=result.items_updated,
            failed=result.items_failed,
        )
        return result
