import json
from fnmatch import fnmatchcase

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from feedback_aggregator.cache import (
    build_key, cache_get, cache_set, invalidate_pattern, owner_pattern,
)


def test_build_key_deterministic():
    k1 = build_key("metrics", "user-1")
    k2 = build_key("metrics", "user-1")
    assert k1 == k2


def test_build_key_prefix():
    k = build_key("test")
    assert k.startswith("fbagg:v1:")


def test_build_key_different_inputs():
    k1 = build_key("metrics", "user-1")
    k2 = build_key("metrics", "user-2")
    assert k1 != k2


def test_owner_pattern_matches_owner_keys():
    assert fnmatchcase(build_key("metrics", "user-1"), owner_pattern("user-1"))
    assert not fnmatchcase(build_key("metrics", "user-2"), owner_pattern("user-1"))


def test_owner_pattern_escapes_glob_characters():
    assert owner_pattern("team*") == r"fbagg:v1:*:*:team\*"
    assert owner_pattern("a?[b]") == r"fbagg:v1:*:*:a\?\[b\]"


@pytest.mark.asyncio
async def test_cache_get_reports_stale_entry():
    redis = MagicMock(mget=AsyncMock(return_value=[json.dumps({"a": 1}), None]))
    with patch("feedback_aggregator.cache.get_redis", return_value=redis):
        value, is_stale = await cache_get("k")
    assert value == {"a": 1}
    assert is_stale


@pytest.mark.asyncio
async def test_cache_without_pool_degrades_to_miss():
    assert await cache_get("k") == (None, False)
    await cache_set("k", {"a": 1}, 60)
    assert await invalidate_pattern("fbagg:v1:*") == 0


@pytest.mark.asyncio
async def test_cache_set_writes_payload_and_sentinel():
    pipe = MagicMock(execute=AsyncMock(return_value=[True, True]))
    redis = MagicMock(pipeline=MagicMock(return_value=pipe))
    with patch("feedback_aggregator.cache.get_redis", return_value=redis):
        await cache_set("k", {"a": 1}, 300)

    (payload_call, fresh_call) = pipe.set.call_args_list
    assert payload_call.args == ("k", '{"a": 1}')
    assert payload_call.kwargs["ex"] == 360
    assert fresh_call.args == ("k:fresh", "1")
    assert fresh_call.kwargs["ex"] == 300
