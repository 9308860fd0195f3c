import json

import httpx
import pytest

from conftest import mock_client
from feedback_aggregator.connectors.base import IntegrationContext
from feedback_aggregator.connectors.notion import (
    NotionConnector, extract_description, extract_priority, extract_status,
    extract_tags, extract_title,
)


def _ctx(**config):
    cfg = {"apiToken": "secret_abc", "databaseId": "db-123", **config}
    return IntegrationContext(id="int-2", user_id="user-1", source="notion", name="Research", config=cfg)


def _page(page_id="1a2b-3c4d", title="Export is slow"):
    return {
        "id": page_id,
        "created_time": "2024-03-01T09:00:00.000Z",
        "last_edited_time": "2024-03-05T09:00:00.000Z",
        "properties": {
            "Name": {"type": "title", "title": [{"plain_text": title}]},
            "Notes": {"type": "rich_text", "rich_text": [{"plain_text": "line one"}, {"plain_text": "line two"}]},
            "Customer Priority": {"type": "select", "select": {"name": "High"}},
            "Status": {"type": "select", "select": {"name": "In Progress"}},
            "Tags": {"type": "multi_select", "multi_select": [{"name": "export"}, {"name": "perf"}]},
        },
    }


def test_extract_fields_by_type_and_name():
    props = _page()["properties"]
    assert extract_title(props) == "Export is slow"
    assert extract_description(props) == "line one\nline two"
    assert extract_priority(props).value == "high"
    assert extract_status(props).value == "in_progress"
    assert extract_tags(props) == ["export", "perf"]


@pytest.mark.parametrize("name, expected", [
    ("Low", "low"),
    ("Medium", "medium"),
    ("High", "high"),
    ("Critical", "critical"),
    ("P0", "medium"),
])
def test_priority_table(name, expected):
    props = {"Priority": {"type": "select", "select": {"name": name}}}
    assert extract_priority(props).value == expected


@pytest.mark.parametrize("name, expected", [
    ("New", "new"),
    ("To Do", "new"),
    ("In Progress", "in_progress"),
    ("Done", "resolved"),
    ("Closed", "closed"),
    ("Blocked", "new"),
])
def test_status_table(name, expected):
    props = {"Ticket Status": {"type": "select", "select": {"name": name}}}
    assert extract_status(props).value == expected


def test_missing_select_uses_defaults():
    props = {"Priority": {"type": "select", "select": None}}
    assert extract_priority(props).value == "medium"
    assert extract_status({}).value == "new"


def test_preferred_title_property_wins():
    props = {
        "Summary": {"type": "title", "title": [{"plain_text": "From summary"}]},
        "Name": {"type": "title", "title": [{"plain_text": "From name"}]},
    }
    assert extract_title(props, "Name") == "From name"


def test_empty_page_maps_to_defaults():
    record = NotionConnector().map_to_feedback({"id": "abc-def", "properties": {}}, _ctx())
    assert record.title == "Untitled"
    assert record.priority == "medium"
    assert record.status == "new"
    assert record.tags == []
    assert record.metadata["notion_url"] == "https://notion.so/abcdef"


@pytest.mark.asyncio
async def test_fetch_follows_cursor_until_exhausted():
    bodies = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        bodies.append(body)
        if "start_cursor" not in body:
            return httpx.Response(200, json={"results": [_page("p1")], "has_more": True, "next_cursor": "c2"})
        return httpx.Response(200, json={"results": [_page("p2")], "has_more": False, "next_cursor": None})

    async with mock_client(handler) as client:
        pages = await NotionConnector().fetch(client, _ctx())

    assert [p["id"] for p in pages] == ["p1", "p2"]
    assert bodies[1]["start_cursor"] == "c2"
    assert bodies[0]["page_size"] == 100
    assert bodies[0]["sorts"] == [{"property": "last_edited_time", "direction": "descending"}]


@pytest.mark.asyncio
async def test_fetch_stops_when_cursor_repeats():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(json.loads(request.content).get("start_cursor"))
        return httpx.Response(200, json={"results": [_page(f"p{len(calls)}")], "has_more": True, "next_cursor": "stuck"})

    async with mock_client(handler) as client:
        pages = await NotionConnector().fetch(client, _ctx())

    assert calls == [None, "stuck"]
    assert [p["id"] for p in pages] == ["p1", "p2"]

@pytest.mark.asyncio
async def test_fetch_sends_notion_headers():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["request"] = request
        return httpx.Response(200, json={"results": [], "has_more": False})

    async with mock_client(handler) as client:
        await NotionConnector().fetch(client, _ctx())

    request = seen["request"]
    assert request.url.path == "/v1/databases/db-123/query"
    assert request.headers["Authorization"] == "Bearer secret_abc"
    assert request.headers["Notion-Version"] == "2022-06-28"


@pytest.mark.asyncio
async def test_database_properties_probe():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "GET"
        assert request.url.path == "/v1/databases/db-123"
        return httpx.Response(200, json={"properties": {"Name": {"type": "title"}}})

    async with mock_client(handler) as client:
        props = await NotionConnector().database_properties(client, "secret_abc", "db-123")
    assert props == {"Name": {"type": "title"}}
