from __future__ import annotations

from typing import Any, Dict, Optional, Protocol

import structlog
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from feedback_aggregator.exceptions import NotFoundError
from feedback_aggregator.repositories.feedback import FeedbackRepository
from feedback_aggregator.schemas import AnalysisIn

log = structlog.get_logger(__name__)


class Analyzer(Protocol):
    async def analyze(self, title: str, description: str) -> Dict[str, Any]:
        ...


async def save_analysis(
    db: AsyncSession, feedback_id: str, analysis: AnalysisIn, owner_id: Optional[str] = None
) -> None:
    repo = FeedbackRepository(db)
    if await repo.get(feedback_id, owner_id) is None:
        raise NotFoundError(f"Feedback {feedback_id} not found")
    await repo.set_analysis(feedback_id, analysis.model_dump())
    await db.commit()


async def enrich_pending(
    db: AsyncSession,
    analyzer: Analyzer,
    limit: int = 20,
    owner_id: Optional[str] = None,
) -> int:
    """
    Run ``analyzer`` over feedback that has no analysis yet.

    Analyzer output that does not match the expected shape is logged and the
    row stays unanalyzed for the next pass.
    """
    repo = FeedbackRepository(db)
    analyzed = 0
    for feedback_id, title, description in await repo.pending_analysis(limit, owner_id):
        raw = await analyzer.analyze(title, description or "")
        try:
            analysis = AnalysisIn.model_validate(raw)
        except ValidationError as exc:
            log.warning("enrichment.invalid_output", feedback_id=feedback_id, error=str(exc))
            continue
        await repo.set_analysis(feedback_id, analysis.model_dump())
        await db.commit()
        analyzed += 1

    log.info("enrichment.done", analyzed=analyzed)
    return analyzed
