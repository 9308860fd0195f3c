"""
Jira Cloud connector.

Pulls issues through ``/rest/api/2/search`` using a JQL filter that is
narrowed to recently updated issues once the integration has synced before.
Only the first result page is read; see DESIGN.md for why.
"""
from __future__ import annotations

import base64
import re
from datetime import datetime, timedelta, timezone
from typing import List, Optional
from urllib.parse import quote

import httpx
import structlog

from feedback_aggregator.config import settings
from feedback_aggregator.connectors.base import (
    IntegrationContext, RawItem, SourceConnector, parse_timestamp, request_json,
)
from feedback_aggregator.models import FeedbackPriority, FeedbackSource, FeedbackStatus
from feedback_aggregator.schemas import CanonicalFeedback

log = structlog.get_logger(__name__)

DEFAULT_JQL = "project IS NOT EMPTY"

PRIORITY_MAP = {
    "Lowest": FeedbackPriority.LOW,
    "Low": FeedbackPriority.LOW,
    "Medium": FeedbackPriority.MEDIUM,
    "High": FeedbackPriority.HIGH,
    "Highest": FeedbackPriority.CRITICAL,
    "Critical": FeedbackPriority.CRITICAL,
}

STATUS_MAP = {
    "To Do": FeedbackStatus.NEW,
    "Open": FeedbackStatus.NEW,
    "In Progress": FeedbackStatus.IN_PROGRESS,
    "Done": FeedbackStatus.RESOLVED,
    "Resolved": FeedbackStatus.RESOLVED,
    "Closed": FeedbackStatus.CLOSED,
}

_ORDER_BY = re.compile(r"\s*\border\s+by\b", re.IGNORECASE)

# encodeURIComponent leaves these unescaped
_URI_COMPONENT_SAFE = "-_.!~*'()"


def map_priority(name: Optional[str]) -> FeedbackPriority:
    return PRIORITY_MAP.get(name or "", FeedbackPriority.MEDIUM)


def map_status(name: Optional[str]) -> FeedbackStatus:
    return STATUS_MAP.get(name or "", FeedbackStatus.NEW)


def build_jql(jql: Optional[str], last_synced_at: Optional[datetime]) -> str:
    """
    Combine the user's filter with the incremental cursor.

    Any ORDER BY the user wrote is dropped; results always come back
    most-recently-updated first.
    """
    base = _ORDER_BY.split(jql or "", maxsplit=1)[0].strip() or DEFAULT_JQL
    final = base

    if last_synced_at is not None:
        since = last_synced_at - timedelta(minutes=settings.JIRA_SKEW_MINUTES)
        if since.tzinfo is not None:
            since = since.astimezone(timezone.utc)
        final = f'({base}) AND updated >= "{since.strftime("%Y-%m-%d %H:%M")}"'

    return f"{final} ORDER BY updated DESC"


def basic_auth(email: str, api_token: str) -> str:
    token = base64.b64encode(f"{email}:{api_token}".encode()).decode()
    return f"Basic {token}"


class JiraConnector(SourceConnector):
    source = FeedbackSource.JIRA
    label = "Jira"
    required_config = ("jiraUrl", "email", "apiToken")

    def search_url(self, integration: IntegrationContext) -> str:
        cfg = integration.config
        jql = build_jql(cfg.get("jql"), integration.last_synced_at)
        return (
            f"{cfg['jiraUrl'].rstrip('/')}/rest/api/2/search"
            f"?jql={quote(jql, safe=_URI_COMPONENT_SAFE)}"
        )

    async def fetch(
        self, client: httpx.AsyncClient, integration: IntegrationContext
    ) -> List[RawItem]:
        cfg = integration.config
        data = await request_json(
            client,
            "GET",
            self.search_url(integration),
            self.label,
            headers={
                "Authorization": basic_auth(cfg["email"], cfg["apiToken"]),
                "Accept": "application/json",
            },
        )
        issues = (data or {}).get("issues") or []
        total = (data or {}).get("total")
        if isinstance(total, int) and total > len(issues):
            log.warning(
                "jira.results.truncated",
                integration_id=integration.id,
                returned=len(issues),
                total=total,
            )
        log.info("jira.fetch.ok", integration_id=integration.id, issues=len(issues))
        return issues

    def map_to_feedback(
        self, raw: RawItem, integration: Optional[IntegrationContext]
    ) -> CanonicalFeedback:
        fields = raw["fields"]
        priority_name = (fields.get("priority") or {}).get("name")
        status_name = (fields.get("status") or {}).get("name")
        return CanonicalFeedback(
            source=FeedbackSource.JIRA,
            external_id=raw["key"],
            title=fields["summary"],
            description=fields.get("description") or "",
            priority=map_priority(priority_name),
            status=map_status(status_name),
            tags=fields.get("labels") or [],
            metadata={
                "jira_id": raw.get("id"),
                "jira_key": raw["key"],
                "jira_status": status_name,
                "jira_priority": priority_name,
            },
            external_created_at=parse_timestamp(fields.get("created")),
            external_updated_at=parse_timestamp(fields.get("updated")),
        )
