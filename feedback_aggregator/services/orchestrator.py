"""
One sync run for one integration: resolve, validate, fetch, map, reconcile,
record the outcome, advance the cursor.
"""
from __future__ import annotations

import contextlib
from datetime import datetime, timezone
from typing import AsyncIterator, Optional

import httpx
import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from feedback_aggregator.cache import invalidate_pattern, owner_pattern
from feedback_aggregator.config import settings
from feedback_aggregator.connectors.base import IntegrationContext
from feedback_aggregator.connectors.registry import get_connector
from feedback_aggregator.exceptions import AuthorizationError, ConfigurationError, NotFoundError
from feedback_aggregator.models import Integration, SyncStatus
from feedback_aggregator.repositories.feedback import FeedbackRepository
from feedback_aggregator.repositories.integrations import IntegrationRepository
from feedback_aggregator.repositories.sync_logs import SyncLogRepository
from feedback_aggregator.schemas import SyncRunResponse
from feedback_aggregator.services.reconciler import Reconciler
from feedback_aggregator.services.tracker import SyncRunTracker

log = structlog.get_logger(__name__)


async def resolve_integration(
    repo: IntegrationRepository, integration_id: str, caller_id: Optional[str]
) -> Integration:
    """Callers only see their own integrations; the scheduler (no caller) sees all."""
    if caller_id is None:
        integration = await repo.get(integration_id)
        if integration is None:
            raise NotFoundError(f"Integration {integration_id} not found")
        return integration

    integration = await repo.get_owned(integration_id, caller_id)
    if integration is None:
        if await repo.get(integration_id) is not None:
            raise AuthorizationError("Integration not found or permission denied")
        raise NotFoundError(f"Integration {integration_id} not found")
    return integration


class SyncOrchestrator:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.session_factory = session_factory
        self.http_client = http_client

    @contextlib.asynccontextmanager
    async def _http(self) -> AsyncIterator[httpx.AsyncClient]:
        if self.http_client is not None:
            yield self.http_client
            return
        async with httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT) as client:
            yield client

    async def run(self, integration_id: str, caller_id: Optional[str] = None) -> SyncRunResponse:
        async with self.session_factory() as db:
            return await self._run(db, integration_id, caller_id)

    async def _run(
        self, db: AsyncSession, integration_id: str, caller_id: Optional[str]
    ) -> SyncRunResponse:
        integrations = IntegrationRepository(db)
        row = await resolve_integration(integrations, integration_id, caller_id)
        integration = IntegrationContext.from_row(row)

        connector = get_connector(integration.source)
        if not connector.pollable:
            raise ConfigurationError(
                f"{connector.label} integrations receive pushed data and cannot be synced"
            )
        connector.validate_config(integration.config)

        tracker = SyncRunTracker(SyncLogRepository(db))
        log_id = await tracker.begin(integration.id)
        bound = log.bind(integration_id=integration.id, sync_log_id=log_id, source=integration.source)

        try:
            async with self._http() as client:
                raw_items = await connector.fetch(client, integration)
            records = connector.map_items(raw_items, integration)
            outcome = await Reconciler(FeedbackRepository(db)).reconcile(
                records, integration.user_id, integration.id
            )
        except Exception as exc:
            await db.rollback()
            await tracker.complete_error(log_id, str(exc))
            bound.error("sync.run.failed", error=str(exc))
            raise

        processed = len(raw_items)
        response = SyncRunResponse(
            integration_id=integration.id,
            sync_log_id=log_id,
            status=SyncStatus.SUCCESS,
            items_processed=processed,
            items_created=outcome.items_created,
            items_updated=outcome.items_updated,
            items_failed=outcome.items_failed,
        )

        if outcome.failed:
            message = (
                f"{outcome.items_failed} of {processed} items failed to save: "
                f"{', '.join(outcome.failed[:10])}"
            )
            await tracker.complete_error(
                log_id, message, processed, outcome.items_created, outcome.items_updated
            )
            response.status = SyncStatus.ERROR
            response.error_message = message
            bound.warning("sync.run.partial", failed=outcome.items_failed)
        else:
            await tracker.complete_success(
                log_id, processed, outcome.items_created, outcome.items_updated
            )
            await integrations.stamp_synced(integration.id, datetime.now(timezone.utc))
            await db.commit()
            bound.info(
                "sync.run.completed",
                processed=processed,
                created=outcome.items_created,
                updated=outcome.items_updated,
            )

        await invalidate_pattern(owner_pattern(integration.user_id))
        return response
