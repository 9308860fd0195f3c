from __future__ import annotations
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from feedback_aggregator.auth import require_api_key, require_caller
from feedback_aggregator.cache import invalidate_pattern, owner_pattern
from feedback_aggregator.database import get_db, get_session_factory
from feedback_aggregator.exceptions import NotFoundError
from feedback_aggregator.models import FeedbackPriority, FeedbackSource, FeedbackStatus
from feedback_aggregator.repositories.feedback import FeedbackRepository
from feedback_aggregator.schemas import (
    AnalysisIn, FeedbackOut, ImportResponse, ManualImportRequest,
    MetricsResponse, PaginatedFeedback,
)
from feedback_aggregator.services.enrichment import save_analysis
from feedback_aggregator.services.ingestion import import_manual
from feedback_aggregator.services.metrics import get_feedback_metrics

router = APIRouter(prefix="/api/v1", tags=["feedback"], dependencies=[Depends(require_api_key)])


@router.get("/feedback", response_model=PaginatedFeedback)
async def list_feedback(
    source: Optional[FeedbackSource] = Query(None),
    status: Optional[FeedbackStatus] = Query(None),
    priority: Optional[FeedbackPriority] = Query(None),
    integration_id: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    caller: str = Depends(require_caller),
    db: AsyncSession = Depends(get_db),
):
    filters = {
        "source": source.value if source else None,
        "status": status.value if status else None,
        "priority": priority.value if priority else None,
        "integration_id": integration_id,
    }
    total, rows = await FeedbackRepository(db).get_paginated(caller, page, page_size, filters)
    return PaginatedFeedback(
        total=total, page=page, page_size=page_size,
        items=[FeedbackOut.model_validate(r) for r in rows],
    )


@router.get("/feedback/{feedback_id}", response_model=FeedbackOut)
async def get_feedback(
    feedback_id: str,
    caller: str = Depends(require_caller),
    db: AsyncSession = Depends(get_db),
):
    row = await FeedbackRepository(db).get(feedback_id, caller)
    if row is None:
        raise NotFoundError(f"Feedback {feedback_id} not found")
    return FeedbackOut.model_validate(row)


@router.post("/feedback/import", response_model=ImportResponse, status_code=201)
async def import_feedback(
    body: ManualImportRequest,
    caller: str = Depends(require_caller),
    db: AsyncSession = Depends(get_db),
):
    count = await import_manual(db, caller, body.feedbacks)
    return ImportResponse(message=f"Imported {count} feedback items", count=count)


@router.put("/feedback/{feedback_id}/analysis", status_code=204)
async def put_analysis(
    feedback_id: str,
    body: AnalysisIn,
    caller: str = Depends(require_caller),
    db: AsyncSession = Depends(get_db),
):
    await save_analysis(db, feedback_id, body, owner_id=caller)
    await invalidate_pattern(owner_pattern(caller))


@router.get("/metrics", response_model=MetricsResponse)
async def feedback_metrics(
    caller: str = Depends(require_caller),
    db: AsyncSession = Depends(get_db),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    return await get_feedback_metrics(db, caller, session_factory)
