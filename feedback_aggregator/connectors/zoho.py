from __future__ import annotations

from typing import List, Optional

import httpx
import structlog

from feedback_aggregator.config import settings
from feedback_aggregator.connectors.base import (
    IntegrationContext, RawItem, SourceConnector, parse_timestamp, request_json,
)
from feedback_aggregator.models import FeedbackPriority, FeedbackSource, FeedbackStatus
from feedback_aggregator.schemas import CanonicalFeedback

log = structlog.get_logger(__name__)

PRIORITY_MAP = {
    "Low": FeedbackPriority.LOW,
    "Medium": FeedbackPriority.MEDIUM,
    "High": FeedbackPriority.HIGH,
    "Urgent": FeedbackPriority.CRITICAL,
    "Critical": FeedbackPriority.CRITICAL,
}

STATUS_MAP = {
    "Open": FeedbackStatus.NEW,
    "In Progress": FeedbackStatus.IN_PROGRESS,
    "On Hold": FeedbackStatus.IN_PROGRESS,
    "Closed": FeedbackStatus.CLOSED,
    "Resolved": FeedbackStatus.RESOLVED,
}


def map_priority(name: Optional[str]) -> FeedbackPriority:
    return PRIORITY_MAP.get(name or "", FeedbackPriority.MEDIUM)


def map_status(name: Optional[str]) -> FeedbackStatus:
    return STATUS_MAP.get(name or "", FeedbackStatus.NEW)


class ZohoDeskConnector(SourceConnector):
    """Zoho Desk tickets of one department, first page only."""

    source = FeedbackSource.ZOHO
    label = "Zoho"
    required_config = ("accessToken", "orgId", "departmentId")

    async def fetch(
        self, client: httpx.AsyncClient, integration: IntegrationContext
    ) -> List[RawItem]:
        cfg = integration.config
        data = await request_json(
            client,
            "GET",
            f"{settings.ZOHO_DESK_URL}/tickets",
            self.label,
            params={
                "departmentId": cfg["departmentId"],
                "sortBy": "modifiedTime",
                "limit": settings.ZOHO_PAGE_LIMIT,
            },
            headers={
                "Authorization": f"Zoho-oauthtoken {cfg['accessToken']}",
                "orgId": str(cfg["orgId"]),
            },
        )
        tickets = (data or {}).get("data") or []
        log.info("zoho.fetch.ok", integration_id=integration.id, tickets=len(tickets))
        return tickets

    def map_to_feedback(
        self, raw: RawItem, integration: Optional[IntegrationContext]
    ) -> CanonicalFeedback:
        return CanonicalFeedback(
            source=FeedbackSource.ZOHO,
            external_id=str(raw["id"]),
            title=raw["subject"],
            description=raw.get("description") or "",
            priority=map_priority(raw.get("priority")),
            status=map_status(raw.get("status")),
            tags=raw.get("tags") or [],
            metadata={
                "zoho_id": raw["id"],
                "zoho_category": raw.get("category"),
                "zoho_status": raw.get("status"),
                "zoho_priority": raw.get("priority"),
            },
            external_created_at=parse_timestamp(raw.get("createdTime")),
            external_updated_at=parse_timestamp(raw.get("modifiedTime")),
        )
