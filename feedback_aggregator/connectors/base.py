from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, ClassVar, Dict, Iterable, List, Mapping, Optional, Tuple

import httpx
import structlog
from tenacity import (
    retry, stop_after_attempt, wait_exponential,
    retry_if_exception_type,
)

from feedback_aggregator.config import settings
from feedback_aggregator.exceptions import (
    ConfigurationError, UpstreamError, UpstreamRateLimitError,
)
from feedback_aggregator.models import FeedbackSource
from feedback_aggregator.schemas import CanonicalFeedback

log = structlog.get_logger(__name__)

RawItem = Dict[str, Any]

_PLACEHOLDER = re.compile(
    r"^(<.*>|your[\s_-].*|.*yourcompany.*|changeme|placeholder|todo|x{3,}|\*+)$",
    re.IGNORECASE,
)
_COMPACT_OFFSET = re.compile(r"([+-]\d{2})(\d{2})$")


# ── Value helpers ─────────────────────────────────────────────────────────────

def is_placeholder(value: Any) -> bool:
    return isinstance(value, str) and bool(_PLACEHOLDER.match(value.strip()))


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse the ISO-8601 variants the sources emit (``Z``, ``+0000``, ``+00:00``)."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    text = _COMPACT_OFFSET.sub(r"\1:\2", text)
    return as_utc(datetime.fromisoformat(text))


# ── Integration snapshot ──────────────────────────────────────────────────────

@dataclass(frozen=True)
class IntegrationContext:
    """Detached copy of an integration row, safe to use across commits/rollbacks."""
    id: str
    user_id: str
    source: str
    name: str
    config: Dict[str, Any] = field(default_factory=dict)
    last_synced_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Any) -> "IntegrationContext":
        return cls(
            id=row.id,
            user_id=row.user_id,
            source=row.source,
            name=row.name,
            config=dict(row.config or {}),
            last_synced_at=as_utc(row.last_synced_at),
        )


# ── HTTP ──────────────────────────────────────────────────────────────────────

@retry(
    retry=retry_if_exception_type(
        (httpx.TimeoutException, httpx.ConnectError, UpstreamRateLimitError)
    ),
    stop=stop_after_attempt(settings.MAX_RETRIES),
    wait=wait_exponential(multiplier=1, min=1, max=8),
    reraise=True,
)
async def _send(
    client: httpx.AsyncClient, method: str, url: str, label: str, **kwargs: Any
) -> httpx.Response:
    resp = await client.request(method, url, timeout=settings.HTTP_TIMEOUT, **kwargs)
    if resp.status_code == 429:
        log.warning("connector.rate_limited", source=label, retry_after=resp.headers.get("Retry-After"))
        raise UpstreamRateLimitError(
            f"{label} API error: 429 {resp.reason_phrase}", context={"status": 429}
        )
    if not resp.is_success:
        log.error("connector.upstream.error", source=label, status=resp.status_code, body=resp.text[:500])
        raise UpstreamError(
            f"{label} API error: {resp.status_code} {resp.reason_phrase}",
            context={"status": resp.status_code},
        )
    return resp


async def request_json(
    client: httpx.AsyncClient, method: str, url: str, label: str, **kwargs: Any
) -> Any:
    """Send one request; any non-2xx or network failure becomes ``UpstreamError``."""
    try:
        resp = await _send(client, method, url, label, **kwargs)
    except httpx.HTTPError as exc:
        log.error("connector.unreachable", source=label, url=url, error=str(exc))
        raise UpstreamError(f"{label} API unreachable: {exc}") from exc
    if resp.status_code == 204 or not resp.content:
        return None
    return resp.json()


# ── Connector contract ────────────────────────────────────────────────────────

class SourceConnector(ABC):
    source: ClassVar[FeedbackSource]
    label: ClassVar[str]
    required_config: ClassVar[Tuple[str, ...]] = ()
    pollable: ClassVar[bool] = True

    def validate_config(self, config: Mapping[str, Any]) -> None:
        missing = [
            k for k in self.required_config
            if not isinstance(config.get(k), str) or not config[k].strip()
        ]
        placeholders = [
            k for k in self.required_config
            if k not in missing and is_placeholder(config[k])
        ]
        if missing or placeholders:
            raise ConfigurationError(
                f"{self.label} integration is not configured: "
                f"set {', '.join(missing + placeholders)}",
                context={"missing": missing, "placeholder": placeholders},
            )

    def is_runnable(self, config: Mapping[str, Any]) -> bool:
        try:
            self.validate_config(config)
        except ConfigurationError:
            return False
        return True

    async def fetch(
        self, client: httpx.AsyncClient, integration: IntegrationContext
    ) -> List[RawItem]:
        raise ConfigurationError(
            f"{self.label} integrations receive pushed data and cannot be polled"
        )

    @abstractmethod
    def map_to_feedback(
        self, raw: RawItem, integration: Optional[IntegrationContext]
    ) -> CanonicalFeedback:
        ...

    def map_items(
        self, raw_items: Iterable[RawItem], integration: Optional[IntegrationContext]
    ) -> List[CanonicalFeedback]:
        """Map a batch; malformed items are logged and dropped."""
        records = []
        for position, raw in enumerate(raw_items):
            try:
                records.append(self.map_to_feedback(raw, integration))
            except (KeyError, TypeError, ValueError, AttributeError) as exc:
                log.warning(
                    "connector.item.skipped",
                    source=self.label,
                    position=position,
                    integration_id=integration.id if integration else None,
                    error=str(exc),
                )
        return records
