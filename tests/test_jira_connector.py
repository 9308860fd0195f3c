import base64
from datetime import datetime, timedelta, timezone
from urllib.parse import unquote

import httpx
import pytest

from conftest import JIRA_CONFIG, jira_issue, mock_client
from feedback_aggregator.connectors.base import IntegrationContext
from feedback_aggregator.connectors.jira import JiraConnector, build_jql, map_priority, map_status
from feedback_aggregator.exceptions import ConfigurationError, UpstreamError


def _ctx(config=None, last_synced_at=None):
    return IntegrationContext(
        id="int-1", user_id="user-1", source="jira", name="Support",
        config=dict(config or JIRA_CONFIG), last_synced_at=last_synced_at,
    )


def test_build_jql_first_sync_uses_default_filter():
    assert build_jql(None, None) == "project IS NOT EMPTY ORDER BY updated DESC"


def test_build_jql_strips_user_order_by():
    jql = build_jql("project = PROJ order by created ASC", None)
    assert jql == "project = PROJ ORDER BY updated DESC"


def test_build_jql_incremental_cursor_applies_skew():
    last = datetime(2024, 3, 10, 12, 0, tzinfo=timezone.utc)
    jql = build_jql("project = PROJ", last)
    assert jql == '(project = PROJ) AND updated >= "2024-03-10 11:55" ORDER BY updated DESC'


def test_build_jql_cursor_with_user_order_by():
    last = datetime(2024, 3, 10, 14, 0, tzinfo=timezone(timedelta(hours=2)))
    jql = build_jql("project = PROJ AND labels = bug ORDER BY priority DESC", last)
    assert jql == (
        '(project = PROJ AND labels = bug) AND updated >= "2024-03-10 11:55" ORDER BY updated DESC'
    )


PRIORITY_CASES = [
    ("Lowest", "low"),
    ("Low", "low"),
    ("Medium", "medium"),
    ("High", "high"),
    ("Highest", "critical"),
    ("Critical", "critical"),
    ("Blocker", "medium"),
    (None, "medium"),
]

STATUS_CASES = [
    ("To Do", "new"),
    ("Open", "new"),
    ("In Progress", "in_progress"),
    ("Done", "resolved"),
    ("Resolved", "resolved"),
    ("Closed", "closed"),
    ("Triage", "new"),
    (None, "new"),
]


@pytest.mark.parametrize("name, expected", PRIORITY_CASES)
def test_priority_table(name, expected):
    assert map_priority(name).value == expected


@pytest.mark.parametrize("name, expected", STATUS_CASES)
def test_status_table(name, expected):
    assert map_status(name).value == expected


def test_map_new_issue():
    record = JiraConnector().map_to_feedback(jira_issue(), _ctx())
    assert record.external_id == "PROJ-1"
    assert record.priority == "critical"
    assert record.status == "new"
    assert record.metadata["jira_key"] == "PROJ-1"
    assert record.external_updated_at == datetime(2024, 3, 2, 11, 30, tzinfo=timezone.utc)


def test_map_items_skips_malformed_without_aborting():
    broken = {"key": "PROJ-2"}  # no fields
    records = JiraConnector().map_items([jira_issue(), broken, jira_issue("PROJ-3")], _ctx())
    assert [r.external_id for r in records] == ["PROJ-1", "PROJ-3"]


def test_map_missing_priority_and_status():
    record = JiraConnector().map_to_feedback(jira_issue(priority=None, status=None), _ctx())
    assert record.priority == "medium"
    assert record.status == "new"


def test_validate_config_rejects_placeholders():
    config = dict(JIRA_CONFIG, jiraUrl="https://yourcompany.atlassian.net")
    with pytest.raises(ConfigurationError) as exc:
        JiraConnector().validate_config(config)
    assert exc.value.context["placeholder"] == ["jiraUrl"]
    assert not JiraConnector().is_runnable({"jiraUrl": "https://acme.atlassian.net"})


@pytest.mark.asyncio
async def test_fetch_sends_basic_auth_and_encoded_jql():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["request"] = request
        return httpx.Response(200, json={"issues": [jira_issue()], "total": 1})

    async with mock_client(handler) as client:
        issues = await JiraConnector().fetch(client, _ctx())

    request = seen["request"]
    assert len(issues) == 1
    assert request.url.path == "/rest/api/2/search"
    assert unquote(request.url.query.decode()) == "jql=project IS NOT EMPTY ORDER BY updated DESC"
    expected = base64.b64encode(b"ops@acme.io:jira-token-123").decode()
    assert request.headers["Authorization"] == f"Basic {expected}"


@pytest.mark.asyncio
async def test_fetch_non_2xx_raises_upstream_error():
    async with mock_client(lambda r: httpx.Response(401, text="nope")) as client:
        with pytest.raises(UpstreamError) as exc:
            await JiraConnector().fetch(client, _ctx())
    assert exc.value.detail == "Jira API error: 401 Unauthorized"
