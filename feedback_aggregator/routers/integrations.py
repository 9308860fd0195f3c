from __future__ import annotations
from typing import List, Optional

import httpx
from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.ext.asyncio import AsyncSession

from feedback_aggregator.auth import require_api_key, require_caller
from feedback_aggregator.config import settings
from feedback_aggregator.connectors.notion import NotionConnector
from feedback_aggregator.connectors.registry import get_connector
from feedback_aggregator.database import get_db
from feedback_aggregator.dependencies import get_orchestrator
from feedback_aggregator.exceptions import NotFoundError
from feedback_aggregator.models import Integration
from feedback_aggregator.repositories.integrations import IntegrationRepository
from feedback_aggregator.repositories.sync_logs import SyncLogRepository
from feedback_aggregator.schemas import (
    SECRET_MASK, IntegrationCreate, IntegrationOut, IntegrationUpdate,
    NotionPropertiesRequest, SyncLogOut, SyncRunResponse,
)
from feedback_aggregator.services.orchestrator import SyncOrchestrator

router = APIRouter(prefix="/api/v1", tags=["integrations"], dependencies=[Depends(require_api_key)])


def _out(integration: Integration) -> IntegrationOut:
    out = IntegrationOut.model_validate(integration)
    out.runnable = get_connector(integration.source).is_runnable(integration.config or {})
    return out


async def _owned_or_404(db: AsyncSession, integration_id: str, caller: str) -> Integration:
    integration = await IntegrationRepository(db).get_owned(integration_id, caller)
    if integration is None:
        raise NotFoundError(f"Integration {integration_id} not found")
    return integration


@router.get("/integrations", response_model=List[IntegrationOut])
async def list_integrations(
    caller: str = Depends(require_caller), db: AsyncSession = Depends(get_db)
):
    return [_out(i) for i in await IntegrationRepository(db).list_for_owner(caller)]


@router.post("/integrations", response_model=IntegrationOut, status_code=201)
async def create_integration(
    body: IntegrationCreate,
    caller: str = Depends(require_caller),
    db: AsyncSession = Depends(get_db),
):
    integration = await IntegrationRepository(db).create(
        caller,
        source=body.source.value,
        name=body.name,
        config=body.config,
        is_active=body.is_active,
        sync_frequency=body.sync_frequency.value,
    )
    await db.commit()
    return _out(integration)


@router.post("/integrations/notion/properties")
async def notion_properties(body: NotionPropertiesRequest):
    """Property names of a Notion database, for picking title/description fields."""
    async with httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT) as client:
        properties = await NotionConnector().database_properties(
            client, body.api_token, body.database_id
        )
    return {
        "properties": [
            {"name": name, "type": (prop or {}).get("type")}
            for name, prop in properties.items()
        ]
    }


@router.get("/integrations/{integration_id}", response_model=IntegrationOut)
async def get_integration(
    integration_id: str,
    caller: str = Depends(require_caller),
    db: AsyncSession = Depends(get_db),
):
    return _out(await _owned_or_404(db, integration_id, caller))


@router.patch("/integrations/{integration_id}", response_model=IntegrationOut)
async def update_integration(
    integration_id: str,
    body: IntegrationUpdate,
    caller: str = Depends(require_caller),
    db: AsyncSession = Depends(get_db),
):
    integration = await _owned_or_404(db, integration_id, caller)
    changes = body.model_dump(exclude_unset=True, mode="json")
    if changes.get("config"):
        # a masked secret echoed back by the client keeps the stored value
        stored = integration.config or {}
        changes["config"] = {
            key: stored.get(key, value) if value == SECRET_MASK else value
            for key, value in changes["config"].items()
        }
    integration = await IntegrationRepository(db).apply_changes(integration, changes)
    await db.commit()
    await db.refresh(integration)
    return _out(integration)


@router.delete("/integrations/{integration_id}", status_code=204)
async def delete_integration(
    integration_id: str,
    caller: str = Depends(require_caller),
    db: AsyncSession = Depends(get_db),
):
    integration = await _owned_or_404(db, integration_id, caller)
    await IntegrationRepository(db).delete(integration)
    await db.commit()
    return Response(status_code=204)


@router.post("/integrations/{integration_id}/sync", response_model=SyncRunResponse)
async def sync_integration(
    integration_id: str,
    caller: str = Depends(require_caller),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """Blocking sync run; awaits completion and returns the run outcome."""
    return await orchestrator.run(integration_id, caller_id=caller)


@router.get("/integrations/{integration_id}/logs", response_model=List[SyncLogOut])
async def integration_logs(
    integration_id: str,
    limit: int = Query(50, ge=1, le=500),
    caller: str = Depends(require_caller),
    db: AsyncSession = Depends(get_db),
):
    await _owned_or_404(db, integration_id, caller)
    rows = await SyncLogRepository(db).recent(caller, integration_id, limit)
    return [SyncLogOut.model_validate(r) for r in rows]


@router.get("/sync-logs", response_model=List[SyncLogOut])
async def sync_logs(
    integration_id: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    caller: str = Depends(require_caller),
    db: AsyncSession = Depends(get_db),
):
    rows = await SyncLogRepository(db).recent(caller, integration_id, limit)
    return [SyncLogOut.model_validate(r) for r in rows]
