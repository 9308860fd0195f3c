"""Sources that hand us pre-shaped rows instead of being polled."""
from __future__ import annotations

from typing import Optional

from feedback_aggregator.connectors.base import (
    IntegrationContext, RawItem, SourceConnector, parse_timestamp,
)
from feedback_aggregator.models import FeedbackSource, FeedbackStatus
from feedback_aggregator.schemas import CanonicalFeedback


class ZapierConnector(SourceConnector):
    source = FeedbackSource.ZAPIER
    label = "Zapier"
    pollable = False

    def map_to_feedback(
        self, raw: RawItem, integration: Optional[IntegrationContext]
    ) -> CanonicalFeedback:
        return CanonicalFeedback(
            source=FeedbackSource.ZAPIER,
            external_id=raw.get("external_id"),
            title=raw["title"],
            description=raw.get("description"),
            status=FeedbackStatus.NEW,
            tags=raw.get("tags") or [],
            customer_name=raw.get("customer_name"),
            external_created_at=parse_timestamp(raw.get("created_at")),
        )


class ManualImportConnector(SourceConnector):
    source = FeedbackSource.MANUAL
    label = "Manual import"
    pollable = False

    def map_to_feedback(
        self, raw: RawItem, integration: Optional[IntegrationContext]
    ) -> CanonicalFeedback:
        return CanonicalFeedback(
            source=FeedbackSource.MANUAL,
            title=raw["title"],
            description=raw.get("description"),
            status=FeedbackStatus.NEW,
            customer_name=raw.get("customer_name"),
            interviewee_name=raw.get("interviewee_name"),
            conversation_at=parse_timestamp(raw.get("conversation_at")),
        )
