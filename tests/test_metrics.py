from datetime import datetime, timedelta, timezone

import pytest
from unittest.mock import AsyncMock, patch

from feedback_aggregator.models import Feedback
from feedback_aggregator.services.metrics import compute_metrics, get_feedback_metrics, percent_change

NOW = datetime.now(timezone.utc)


def test_percent_change_rules():
    assert percent_change(5, 0) == 100.0
    assert percent_change(0, 0) == 0.0
    assert percent_change(4, 4) == 0.0
    assert percent_change(3, 4) == -25.0
    assert percent_change(6, 4) == 50.0


async def _seed(db, days_ago, sentiment=None, priority="medium", owner="user-1"):
    db.add(Feedback(
        user_id=owner, source="manual", title="t", tags=[], priority=priority,
        analysis={"sentiment": sentiment, "summary": "", "tags": []} if sentiment else None,
        created_at=NOW - timedelta(days=days_ago),
    ))


@pytest.mark.asyncio
async def test_compute_metrics_compares_windows(db):
    # current window: 4 items, 2 positive, 1 critical
    await _seed(db, 2, "positive", "critical")
    await _seed(db, 3, "positive")
    await _seed(db, 5, "negative")
    await _seed(db, 10)
    # previous window: 2 items, 1 positive, 1 critical
    await _seed(db, 40, "positive", "critical")
    await _seed(db, 45)
    # another owner's feedback is ignored
    await _seed(db, 2, "positive", "critical", owner="user-2")
    await db.commit()

    metrics = await compute_metrics(db, "user-1", NOW)

    assert metrics.total_items.value == 4
    assert metrics.total_items.change == 100.0
    assert metrics.positive_sentiment.value == 50.0
    assert metrics.positive_sentiment.change == 0.0
    assert metrics.critical_issues.value == 1
    assert metrics.critical_issues.change == 0.0
    assert metrics.cache_status == "MISS"


@pytest.mark.asyncio
async def test_empty_account_has_zero_metrics(db):
    metrics = await compute_metrics(db, "nobody", NOW)
    assert metrics.total_items.value == 0
    assert metrics.positive_sentiment.value == 0.0
    assert metrics.critical_issues.change == 0.0


@pytest.mark.asyncio
async def test_fresh_cache_entry_is_served(db, session_factory):
    cached = (await compute_metrics(db, "user-1", NOW)).model_dump(mode="json")
    with patch("feedback_aggregator.services.metrics.cache_get",
               new=AsyncMock(return_value=(cached, False))), \
         patch("feedback_aggregator.services.metrics.compute_metrics", new=AsyncMock()) as compute:
        metrics = await get_feedback_metrics(db, "user-1", session_factory)

    assert metrics.cache_status == "HIT"
    compute.assert_not_awaited()


@pytest.mark.asyncio
async def test_cache_outage_falls_back_to_database(db, session_factory):
    # no Redis pool: every cache call degrades to a miss
    metrics = await get_feedback_metrics(db, "user-1", session_factory)
    assert metrics.cache_status == "MISS"
    assert metrics.total_items.value == 0
