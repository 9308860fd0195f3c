"""
Notion database connector.

Reads every page of a database query (cursor pagination) and pulls title,
description, priority, status and tags out of the page properties. Priority,
status and tag properties are found by substring match on the property name.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional, Set

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
    "Critical": FeedbackPriority.CRITICAL,
}

STATUS_MAP = {
    "New": FeedbackStatus.NEW,
    "To Do": FeedbackStatus.NEW,
    "In Progress": FeedbackStatus.IN_PROGRESS,
    "Done": FeedbackStatus.RESOLVED,
    "Closed": FeedbackStatus.CLOSED,
}

Properties = Dict[str, Any]


def _plain_text(parts: Optional[List[dict]]) -> List[str]:
    return [p.get("plain_text", "") for p in parts or [] if isinstance(p, dict)]


def extract_title(properties: Properties, preferred: Optional[str] = None) -> str:
    prop = properties.get(preferred) if preferred else None
    if isinstance(prop, dict) and prop.get("type") == "title":
        text = _plain_text(prop.get("title"))
        if text and text[0]:
            return text[0]

    for prop in properties.values():
        if isinstance(prop, dict) and prop.get("type") == "title":
            text = _plain_text(prop.get("title"))
            if text and text[0]:
                return text[0]
    return ""


def extract_description(properties: Properties, preferred: Optional[str] = None) -> str:
    prop = properties.get(preferred) if preferred else None
    if isinstance(prop, dict) and prop.get("type") == "rich_text" and prop.get("rich_text") is not None:
        return "\n".join(_plain_text(prop["rich_text"]))

    for prop in properties.values():
        if isinstance(prop, dict) and prop.get("type") == "rich_text" and prop.get("rich_text") is not None:
            return "\n".join(_plain_text(prop["rich_text"]))
    return ""


def _select_by_key(properties: Properties, needle: str) -> Optional[str]:
    for key, prop in properties.items():
        if needle in key.lower() and isinstance(prop, dict) and "select" in prop:
            select = prop["select"]
            if select and select.get("name"):
                return select["name"]
    return None


def extract_priority(properties: Properties) -> FeedbackPriority:
    name = _select_by_key(properties, "priority")
    return PRIORITY_MAP.get(name or "", FeedbackPriority.MEDIUM)


def extract_status(properties: Properties) -> FeedbackStatus:
    name = _select_by_key(properties, "status")
    return STATUS_MAP.get(name or "", FeedbackStatus.NEW)


def extract_tags(properties: Properties) -> List[str]:
    for key, prop in properties.items():
        if "tag" in key.lower() and isinstance(prop, dict) and "multi_select" in prop:
            options = prop["multi_select"]
            if isinstance(options, list):
                return [o.get("name") for o in options if isinstance(o, dict) and o.get("name")]
    return []


def notion_headers(api_token: str) -> Dict[str, str]:
    return {
        "Authorization": f"Bearer {api_token}",
        "Content-Type": "application/json",
        "Notion-Version": settings.NOTION_VERSION,
    }


class NotionConnector(SourceConnector):
    source = FeedbackSource.NOTION
    label = "Notion"
    required_config = ("apiToken", "databaseId")

    async def fetch(
        self, client: httpx.AsyncClient, integration: IntegrationContext
    ) -> List[RawItem]:
        cfg = integration.config
        url = f"{settings.NOTION_API_URL}/databases/{cfg['databaseId']}/query"
        pages: List[RawItem] = []
        cursor: Optional[str] = None
        seen: Set[str] = set()

        while True:
            body: Dict[str, Any] = {
                "page_size": settings.NOTION_PAGE_SIZE,
                "sorts": [{"property": "last_edited_time", "direction": "descending"}],
            }
            if cursor:
                body["start_cursor"] = cursor

            data = await request_json(
                client, "POST", url, self.label,
                headers=notion_headers(cfg["apiToken"]), json=body,
            ) or {}
            pages.extend(data.get("results") or [])

            cursor = data.get("next_cursor")
            if not data.get("has_more") or not cursor:
                break
            if cursor in seen:
                log.warning("notion.cursor.repeated", integration_id=integration.id, cursor=cursor)
                break
            seen.add(cursor)

        log.info("notion.fetch.ok", integration_id=integration.id, pages=len(pages))
        return pages

    async def database_properties(
        self, client: httpx.AsyncClient, api_token: str, database_id: str
    ) -> Dict[str, Any]:
        """Property schema of a database, used to pick title/description fields."""
        data = await request_json(
            client, "GET", f"{settings.NOTION_API_URL}/databases/{database_id}", self.label,
            headers={
                "Authorization": f"Bearer {api_token}",
                "Notion-Version": settings.NOTION_VERSION,
            },
        )
        return (data or {}).get("properties") or {}

    def map_to_feedback(
        self, raw: RawItem, integration: Optional[IntegrationContext]
    ) -> CanonicalFeedback:
        cfg = integration.config if integration else {}
        properties = raw.get("properties") or {}
        page_id = raw["id"]
        return CanonicalFeedback(
            source=FeedbackSource.NOTION,
            external_id=page_id,
            title=extract_title(properties, cfg.get("titleProperty")) or "Untitled",
            description=extract_description(properties, cfg.get("descriptionProperty")),
            priority=extract_priority(properties),
            status=extract_status(properties),
            tags=extract_tags(properties),
            metadata={
                "notion_id": page_id,
                "notion_url": f"https://notion.so/{page_id.replace('-', '')}",
            },
            external_created_at=parse_timestamp(raw.get("created_time")),
            external_updated_at=parse_timestamp(raw.get("last_edited_time")),
        )
