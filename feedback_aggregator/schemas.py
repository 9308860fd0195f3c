from __future__ import annotations
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_serializer

from feedback_aggregator.models import (
    FeedbackPriority, FeedbackSource, FeedbackStatus, SyncFrequency, SyncStatus,
)


# Config keys holding credentials; never echoed back to clients
SECRET_CONFIG_KEYS = frozenset({"apiToken", "accessToken", "refreshToken", "clientSecret"})
SECRET_MASK = "********"


# ── Canonical record ──────────────────────────────────────────────────────────

class CanonicalFeedback(BaseModel):
    """Normalized shape every connector maps its raw items into."""
    model_config = ConfigDict(use_enum_values=True)

    source: FeedbackSource
    external_id: Optional[str] = None
    title: str
    description: Optional[str] = ""
    priority: Optional[FeedbackPriority] = None
    status: Optional[FeedbackStatus] = FeedbackStatus.NEW
    tags: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    customer_name: Optional[str] = None
    interviewee_name: Optional[str] = None
    conversation_at: Optional[datetime] = None
    external_created_at: Optional[datetime] = None
    external_updated_at: Optional[datetime] = None

    def to_row(self, user_id: str, integration_id: Optional[str]) -> Dict[str, Any]:
        """Column values for a full overwrite of the stored row."""
        row = self.model_dump(exclude={"metadata"})
        row["source_metadata"] = self.metadata
        row["user_id"] = user_id
        row["integration_id"] = integration_id
        return row


class AnalysisIn(BaseModel):
    sentiment: Literal["positive", "negative", "neutral"]
    summary: str
    tags: List[str] = Field(default_factory=list, max_length=5)


# ── Feedback ──────────────────────────────────────────────────────────────────

class FeedbackOut(BaseModel):
    id: str
    user_id: str
    integration_id: Optional[str]
    source: str
    external_id: Optional[str]
    title: str
    description: Optional[str]
    priority: Optional[str]
    status: Optional[str]
    tags: List[str]
    metadata: Optional[Dict[str, Any]] = Field(
        default=None, validation_alias=AliasChoices("source_metadata", "metadata"),
    )
    analysis: Optional[Dict[str, Any]]
    customer_name: Optional[str]
    interviewee_name: Optional[str]
    conversation_at: Optional[datetime]
    external_created_at: Optional[datetime]
    external_updated_at: Optional[datetime]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]
    model_config = {"from_attributes": True}


class PaginatedFeedback(BaseModel):
    total: int
    page: int
    page_size: int
    items: List[FeedbackOut]


class ManualFeedbackIn(BaseModel):
    title: str = Field(min_length=1)
    description: Optional[str] = None
    customer_name: Optional[str] = None
    interviewee_name: Optional[str] = None
    conversation_at: Optional[datetime] = None


class ManualImportRequest(BaseModel):
    feedbacks: List[ManualFeedbackIn]


class ZapierFeedbackIn(BaseModel):
    external_id: Optional[str] = None
    title: str = Field(min_length=1)
    description: Optional[str] = None
    customer_name: Optional[str] = None
    tags: Optional[List[str]] = None
    created_at: Optional[datetime] = None


class ZapierPayload(BaseModel):
    feedbacks: List[ZapierFeedbackIn]


class ImportResponse(BaseModel):
    message: str
    count: int


# ── Integrations ──────────────────────────────────────────────────────────────

class IntegrationCreate(BaseModel):
    source: FeedbackSource
    name: str = Field(min_length=1, max_length=200)
    config: Dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True
    sync_frequency: SyncFrequency = SyncFrequency.MANUAL


class IntegrationUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    config: Optional[Dict[str, Any]] = None
    is_active: Optional[bool] = None
    sync_frequency: Optional[SyncFrequency] = None


class IntegrationOut(BaseModel):
    id: str
    source: str
    name: str
    config: Dict[str, Any]
    is_active: bool
    sync_frequency: str
    last_synced_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    runnable: bool = True
    model_config = {"from_attributes": True}

    @field_serializer("config")
    def _mask_secrets(self, config: Dict[str, Any]) -> Dict[str, Any]:
        return {
            key: SECRET_MASK if key in SECRET_CONFIG_KEYS and value else value
            for key, value in config.items()
        }


class NotionPropertiesRequest(BaseModel):
    api_token: str = Field(alias="apiToken", min_length=1)
    database_id: str = Field(alias="databaseId", min_length=1)


# ── Sync runs ─────────────────────────────────────────────────────────────────

class SyncLogOut(BaseModel):
    id: str
    integration_id: str
    status: SyncStatus
    items_processed: int
    items_created: int
    items_updated: int
    error_message: Optional[str]
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    model_config = {"from_attributes": True}


class SyncRunResponse(BaseModel):
    integration_id: str
    sync_log_id: str
    status: SyncStatus
    items_processed: int
    items_created: int
    items_updated: int
    items_failed: int = 0
    error_message: Optional[str] = None


class SchedulerTickResponse(BaseModel):
    evaluated: int
    triggered: List[str]
    reclaimed: int = 0


# ── Metrics / admin ───────────────────────────────────────────────────────────

class MetricValue(BaseModel):
    value: float
    change: float


class MetricsResponse(BaseModel):
    total_items: MetricValue
    positive_sentiment: MetricValue
    critical_issues: MetricValue
    computed_at: datetime
    cache_status: Optional[str] = None     # HIT | MISS | STALE


class HealthResponse(BaseModel):
    status: str
    database: str
    redis: str
    scheduler: str
    version: str
