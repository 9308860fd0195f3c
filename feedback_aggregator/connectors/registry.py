from __future__ import annotations

from typing import Dict

from feedback_aggregator.connectors.base import SourceConnector
from feedback_aggregator.connectors.jira import JiraConnector
from feedback_aggregator.connectors.notion import NotionConnector
from feedback_aggregator.connectors.push import ManualImportConnector, ZapierConnector
from feedback_aggregator.connectors.zoho import ZohoDeskConnector
from feedback_aggregator.exceptions import ConfigurationError
from feedback_aggregator.models import FeedbackSource

CONNECTORS: Dict[str, SourceConnector] = {
    FeedbackSource.JIRA.value: JiraConnector(),
    FeedbackSource.NOTION.value: NotionConnector(),
    FeedbackSource.ZOHO.value: ZohoDeskConnector(),
    FeedbackSource.ZAPIER.value: ZapierConnector(),
    FeedbackSource.MANUAL.value: ManualImportConnector(),
}


def get_connector(source: str) -> SourceConnector:
    try:
        return CONNECTORS[getattr(source, "value", source)]
    except KeyError:
        raise ConfigurationError(f"No connector registered for source '{source}'") from None
