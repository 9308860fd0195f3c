from __future__ import annotations
from typing import Optional

import httpx
from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import async_sessionmaker

from feedback_aggregator.database import get_session_factory
from feedback_aggregator.services.orchestrator import SyncOrchestrator
from feedback_aggregator.services.scheduler import SyncScheduler


def get_http_client() -> Optional[httpx.AsyncClient]:
    """None lets each sync run open (and close) its own client."""
    return None


def get_orchestrator(
    session_factory: async_sessionmaker = Depends(get_session_factory),
    http_client: Optional[httpx.AsyncClient] = Depends(get_http_client),
) -> SyncOrchestrator:
    return SyncOrchestrator(session_factory, http_client=http_client)


def get_sync_scheduler(request: Request) -> SyncScheduler:
    return request.app.state.sync_scheduler
