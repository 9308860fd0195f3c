from __future__ import annotations

from typing import Any, Dict, List, Sequence

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from feedback_aggregator.cache import invalidate_pattern, owner_pattern
from feedback_aggregator.connectors.base import IntegrationContext
from feedback_aggregator.connectors.registry import get_connector
from feedback_aggregator.exceptions import ConfigurationError, InvalidPayloadError, NotFoundError
from feedback_aggregator.models import FeedbackSource
from feedback_aggregator.repositories.feedback import FeedbackRepository
from feedback_aggregator.repositories.integrations import IntegrationRepository
from feedback_aggregator.schemas import ManualFeedbackIn, ZapierFeedbackIn

log = structlog.get_logger(__name__)

WEBHOOK_CONFLICT_KEY = ("integration_id", "external_id")


def _last_per_external_id(rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    # one statement may not touch the same conflict row twice
    keyed: Dict[str, Dict[str, Any]] = {}
    anonymous = []
    for row in rows:
        if row.get("external_id") is None:
            anonymous.append(row)
        else:
            keyed.pop(row["external_id"], None)
            keyed[row["external_id"]] = row
    return anonymous + list(keyed.values())


async def ingest_webhook(
    db: AsyncSession, integration_id: str, payloads: Sequence[ZapierFeedbackIn]
) -> int:
    """Bulk upsert of pushed rows; a repeated external_id overwrites its row."""
    row = await IntegrationRepository(db).get(integration_id)
    if row is None:
        raise NotFoundError(f"Integration {integration_id} not found")
    if row.source != FeedbackSource.ZAPIER.value:
        raise ConfigurationError(
            f"Integration {integration_id} is a {row.source} integration, not a webhook target"
        )
    integration = IntegrationContext.from_row(row)

    connector = get_connector(FeedbackSource.ZAPIER)
    records = connector.map_items((p.model_dump() for p in payloads), integration)
    rows = _last_per_external_id(
        [r.to_row(integration.user_id, integration.id) for r in records]
    )

    ids = await FeedbackRepository(db).upsert_batch(rows, WEBHOOK_CONFLICT_KEY)
    await db.commit()
    await invalidate_pattern(owner_pattern(integration.user_id))
    log.info("webhook.ingested", integration_id=integration.id, received=len(payloads), saved=len(ids))
    return len(ids)


async def import_manual(
    db: AsyncSession, user_id: str, rows: Sequence[ManualFeedbackIn]
) -> int:
    """Always inserts; imported rows carry no external identity to reconcile on."""
    if not rows:
        raise InvalidPayloadError("No feedback rows supplied")

    connector = get_connector(FeedbackSource.MANUAL)
    records = connector.map_items((r.model_dump() for r in rows), None)
    count = await FeedbackRepository(db).insert_many(
        [r.to_row(user_id, None) for r in records]
    )
    await db.commit()
    await invalidate_pattern(owner_pattern(user_id))
    log.info("manual.imported", user_id=user_id, count=count)
    return count
