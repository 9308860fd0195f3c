import os

# Set required env vars BEFORE any app imports trigger Settings()
os.environ.setdefault("API_KEY", "test-api-key-for-testing")
os.environ.setdefault("DB_USER", "test")
os.environ.setdefault("DB_PASSWORD", "test")
os.environ.setdefault("SCHEDULER_ENABLED", "false")

import httpx
import pytest
import pytest_asyncio
from unittest.mock import AsyncMock, MagicMock, patch
from httpx import AsyncClient, ASGITransport

from feedback_aggregator.main import app
from feedback_aggregator.database import (
    create_schema, get_db, get_session_factory, make_engine, make_session_factory,
)
from feedback_aggregator.dependencies import get_http_client
from feedback_aggregator.models import Integration
from feedback_aggregator.services.orchestrator import SyncOrchestrator
from feedback_aggregator.services.scheduler import SyncScheduler

TEST_API_KEY = "test-api-key-for-testing"
OWNER = "user-1"

JIRA_CONFIG = {
    "jiraUrl": "https://acme.atlassian.net",
    "email": "ops@acme.io",
    "apiToken": "jira-token-123",
}


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    # File-backed so every session sees the same database
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await create_schema(engine)
    yield make_session_factory(engine)
    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def make_integration(session_factory):
    async def _make(**fields) -> Integration:
        values = {
            "user_id": OWNER,
            "source": "jira",
            "name": "Support board",
            "config": dict(JIRA_CONFIG),
            "is_active": True,
            "sync_frequency": "manual",
        }
        values.update(fields)
        async with session_factory() as session:
            integration = Integration(**values)
            session.add(integration)
            await session.commit()
            await session.refresh(integration)
            return integration

    return _make


def mock_client(handler) -> httpx.AsyncClient:
    """HTTP client whose requests are answered by ``handler(request)``."""
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def jira_issue(key="PROJ-1", summary="Login fails", priority="Highest", status="To Do", **fields):
    return {
        "id": f"1000{key.rsplit('-', 1)[-1]}",
        "key": key,
        "fields": {
            "summary": summary,
            "description": fields.pop("description", "Steps to reproduce"),
            "priority": {"name": priority} if priority else None,
            "status": {"name": status} if status else None,
            "labels": fields.pop("labels", []),
            "created": "2024-03-01T10:00:00.000+0000",
            "updated": "2024-03-02T11:30:00.000+0000",
            **fields,
        },
    }


class AsyncIterEmpty:
    """Async iterator that yields nothing (for scan_iter mock)."""
    def __aiter__(self):
        return self

    async def __anext__(self):
        raise StopAsyncIteration


class Upstream:
    """Stand-in for the source APIs; tests swap `handler` per scenario."""

    def __init__(self):
        self.handler = lambda request: httpx.Response(200, json={"issues": []})
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)


@pytest.fixture
def upstream():
    return Upstream()


@pytest_asyncio.fixture
async def client(session_factory, upstream):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    http_client = mock_client(upstream)

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_http_client] = lambda: http_client
    app.state.sync_scheduler = SyncScheduler(
        session_factory, SyncOrchestrator(session_factory, http_client=http_client)
    )

    # Mock Redis so route tests don't need a live Redis
    with patch("feedback_aggregator.cache._pool", new=True), \
         patch("feedback_aggregator.cache.get_redis") as mock_redis:
        # pipeline() and its queued commands are synchronous; only execute() is awaited
        mock_pipe = MagicMock()
        mock_pipe.execute = AsyncMock(return_value=[True, True])

        mock_r = AsyncMock()
        mock_r.ping = AsyncMock(return_value=True)
        mock_r.mget = AsyncMock(return_value=[None, None])
        mock_r.delete = AsyncMock(return_value=1)
        mock_r.pipeline = MagicMock(return_value=mock_pipe)
        mock_r.scan_iter = MagicMock(return_value=AsyncIterEmpty())

        mock_redis.return_value = mock_r

        async with AsyncClient(
            transport=ASGITransport(app=app),
            base_url="http://test",
            headers={"X-API-Key": TEST_API_KEY, "X-User-Id": OWNER},
        ) as c:
            yield c

    await app.state.sync_scheduler.drain()
    await http_client.aclose()
    app.dependency_overrides.clear()
