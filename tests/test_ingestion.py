import pytest
from sqlalchemy import select

from feedback_aggregator.exceptions import ConfigurationError, InvalidPayloadError, NotFoundError
from feedback_aggregator.models import Feedback
from feedback_aggregator.schemas import ManualFeedbackIn, ZapierFeedbackIn
from feedback_aggregator.services.ingestion import import_manual, ingest_webhook


async def _rows(db):
    db.expire_all()
    return (await db.execute(select(Feedback).order_by(Feedback.title))).scalars().all()


@pytest.mark.asyncio
async def test_webhook_upsert_by_external_id(db, make_integration):
    integration = await make_integration(source="zapier", config={})
    payload = [
        ZapierFeedbackIn(external_id="z-1", title="Dark mode please", tags=["ui"]),
        ZapierFeedbackIn(external_id="z-2", title="CSV export broken"),
    ]
    assert await ingest_webhook(db, integration.id, payload) == 2

    payload[0] = ZapierFeedbackIn(external_id="z-1", title="Dark mode please!!", tags=[])
    assert await ingest_webhook(db, integration.id, payload) == 2

    rows = await _rows(db)
    assert len(rows) == 2
    updated = next(r for r in rows if r.external_id == "z-1")
    assert updated.title == "Dark mode please!!"
    assert updated.tags == []
    assert updated.source == "zapier"
    assert updated.user_id == "user-1"


@pytest.mark.asyncio
async def test_webhook_batch_repeating_external_id_keeps_last(db, make_integration):
    integration = await make_integration(source="zapier", config={})
    payload = [
        ZapierFeedbackIn(external_id="z-1", title="First draft"),
        ZapierFeedbackIn(title="Anonymous note"),
        ZapierFeedbackIn(external_id="z-1", title="Final wording"),
    ]
    assert await ingest_webhook(db, integration.id, payload) == 2

    rows = await _rows(db)
    assert sorted(r.title for r in rows) == ["Anonymous note", "Final wording"]

@pytest.mark.asyncio
async def test_webhook_rows_without_external_id_always_insert(db, make_integration):
    integration = await make_integration(source="zapier", config={})
    payload = [ZapierFeedbackIn(title="Anonymous note")]
    await ingest_webhook(db, integration.id, payload)
    await ingest_webhook(db, integration.id, payload)
    assert len(await _rows(db)) == 2


@pytest.mark.asyncio
async def test_webhook_rejects_unknown_or_non_zapier_target(db, make_integration):
    jira = await make_integration()
    with pytest.raises(NotFoundError):
        await ingest_webhook(db, "does-not-exist", [ZapierFeedbackIn(title="x")])
    with pytest.raises(ConfigurationError):
        await ingest_webhook(db, jira.id, [ZapierFeedbackIn(title="x")])


@pytest.mark.asyncio
async def test_manual_import_always_inserts(db):
    rows = [
        ManualFeedbackIn(title="Interview: onboarding", interviewee_name="Dana"),
        ManualFeedbackIn(title="Interview: pricing", customer_name="Acme"),
    ]
    assert await import_manual(db, "user-1", rows) == 2
    assert await import_manual(db, "user-1", rows) == 2

    stored = await _rows(db)
    assert len(stored) == 4
    assert {r.source for r in stored} == {"manual"}
    assert all(r.integration_id is None and r.status == "new" for r in stored)


@pytest.mark.asyncio
async def test_manual_import_requires_rows(db):
    with pytest.raises(InvalidPayloadError):
        await import_manual(db, "user-1", [])
