from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from feedback_aggregator.database import get_db
from feedback_aggregator.schemas import ImportResponse, ZapierPayload
from feedback_aggregator.services.ingestion import ingest_webhook

# Public: the integration id in the path is the only credential Zapier carries.
router = APIRouter(tags=["webhooks"])


@router.post("/zapier-sync/{integration_id}", response_model=ImportResponse)
async def zapier_sync(
    integration_id: str,
    body: ZapierPayload,
    db: AsyncSession = Depends(get_db),
):
    count = await ingest_webhook(db, integration_id, body.feedbacks)
    return ImportResponse(message=f"Synced {count} feedback items", count=count)
