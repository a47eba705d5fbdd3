import datetime as dt
import uuid

import httpx
import pytest
import sqlalchemy as sa

from app.domain.guides import service as guides_service
from app.domain.guides.db_models import GUIDE_KIND_EXTERNAL, Guide
from app.domain.outbox import service as outbox_service
from app.domain.outbox.db_models import OUTBOX_DEAD, OUTBOX_RETRY, OUTBOX_SENT, OutboxEvent
from app.domain.outbox.service import OutboxAdapters
from app.infra.logging import LOG_CONTEXT
from app.infra.org_context import get_current_org_id, org_id_context
from app.jobs import run as jobs_run
from app.jobs.guides import run_ephemeral_guide_archive
from app.jobs.outbox import run_outbox_delivery
from app.settings import settings
from tests.conftest import DEFAULT_ORG_ID
from tests.dispatch_seed import DISPATCH_DATE

WEBHOOK_URL = "https://hooks.example.com/dispatch"


async def _enqueue(async_session_maker, dedupe_key: str = "dispatch:test:1", kind: str = outbox_service.DISPATCH_COMPLETED) -> str:
    async with async_session_maker() as session:
        event = await outbox_service.enqueue_outbox_event(
            session,
            org_id=DEFAULT_ORG_ID,
            kind=kind,
            payload={"dispatch_date": DISPATCH_DATE.isoformat(), "guide_ids": ["guide-ana"]},
            dedupe_key=dedupe_key,
        )
        event.next_attempt_at = dt.datetime.now(tz=dt.timezone.utc) - dt.timedelta(minutes=1)
        await session.commit()
        return event.event_id


async def _event(async_session_maker, event_id: str) -> OutboxEvent:
    async with async_session_maker() as session:
        return await session.get(OutboxEvent, event_id)


def _adapters(status_code: int, seen: list[dict] | None = None) -> OutboxAdapters:
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append({"url": str(request.url)})
        return httpx.Response(status_code)

    return OutboxAdapters(event_transport=httpx.MockTransport(handler), webhook_url=WEBHOOK_URL)


@pytest.mark.anyio
async def test_outbox_delivery_sends_due_events(async_session_maker):
    event_id = await _enqueue(async_session_maker)
    seen: list[dict] = []

    async with async_session_maker() as session:
        result = await run_outbox_delivery(session, _adapters(200, seen))
    async with async_session_maker() as session:
        second = await run_outbox_delivery(session, _adapters(200, seen))

    assert result == {"sent": 1, "dead": 0, "pending": 1}
    assert second == {"sent": 0, "dead": 0, "pending": 0}
    assert seen == [{"url": WEBHOOK_URL}]
    event = await _event(async_session_maker, event_id)
    assert event.status == OUTBOX_SENT
    assert event.delivered_at is not None


@pytest.mark.anyio
async def test_outbox_retries_then_gives_up(async_session_maker):
    settings.outbox_max_attempts = 2
    event_id = await _enqueue(async_session_maker)

    async with async_session_maker() as session:
        await run_outbox_delivery(session, _adapters(500))
    event = await _event(async_session_maker, event_id)
    assert event.status == OUTBOX_RETRY
    assert event.last_error == "status_500"
    assert event.next_attempt_at is not None

    async with async_session_maker() as session:
        await session.execute(
            sa.update(OutboxEvent)
            .where(OutboxEvent.event_id == event_id)
            .values(next_attempt_at=dt.datetime.now(tz=dt.timezone.utc) - dt.timedelta(seconds=1))
        )
        await session.commit()
        result = await run_outbox_delivery(session, _adapters(500))

    assert result["dead"] == 1
    event = await _event(async_session_maker, event_id)
    assert event.status == OUTBOX_DEAD
    assert event.attempts == 2


@pytest.mark.anyio
async def test_outbox_skips_without_webhook_and_kills_unknown_kinds(async_session_maker):
    skipped_id = await _enqueue(async_session_maker)
    unknown_id = await _enqueue(async_session_maker, dedupe_key="other:1", kind="booking.created")

    async with async_session_maker() as session:
        result = await run_outbox_delivery(session, OutboxAdapters(webhook_url=None))

    assert result == {"sent": 1, "dead": 1, "pending": 2}
    assert (await _event(async_session_maker, skipped_id)).status == "skipped"
    unknown = await _event(async_session_maker, unknown_id)
    assert unknown.status == OUTBOX_DEAD
    assert unknown.last_error == "unknown_kind"


@pytest.mark.anyio
async def test_enqueue_reuses_dedupe_key(async_session_maker):
    first = await _enqueue(async_session_maker)
    second = await _enqueue(async_session_maker)

    assert first == second


@pytest.mark.anyio
async def test_ephemeral_guide_archive_job(async_session_maker):
    async with async_session_maker() as session:
        await guides_service.create_ephemeral_guide(
            session, DEFAULT_ORG_ID, kind=GUIDE_KIND_EXTERNAL, valid_on=DISPATCH_DATE, first_name="Peak Shuttles"
        )
        await guides_service.create_ephemeral_guide(
            session,
            DEFAULT_ORG_ID,
            kind=GUIDE_KIND_EXTERNAL,
            valid_on=DISPATCH_DATE + dt.timedelta(days=2),
            first_name="Valley Vans",
        )
        await session.commit()

    async with async_session_maker() as session:
        result = await run_ephemeral_guide_archive(
            session, DEFAULT_ORG_ID, today=DISPATCH_DATE + dt.timedelta(days=1)
        )

    assert result == {"archived": 1}
    async with async_session_maker() as session:
        active = (
            await session.execute(sa.select(Guide.first_name).where(Guide.archived_at.is_(None)))
        ).scalars().all()
    assert active == ["Valley Vans"]


def test_org_scope_tags_logs_and_restores():
    org_id = uuid.uuid4()
    before = get_current_org_id()

    with org_id_context(org_id) as scoped:
        assert scoped == org_id
        assert get_current_org_id() == org_id
        assert LOG_CONTEXT.get({})["org_id"] == str(org_id)

    assert get_current_org_id() == before
    assert LOG_CONTEXT.get({}).get("org_id") != str(org_id)


@pytest.mark.anyio
async def test_job_runner_runs_selected_job_once(async_session_maker, monkeypatch):
    calls: list[str] = []

    async def fake_archive(session, org_id, *, today=None):
        calls.append(str(org_id))
        return {"archived": 0}

    monkeypatch.setattr(jobs_run, "get_session_factory", lambda: async_session_maker)
    monkeypatch.setattr(jobs_run.guides, "run_ephemeral_guide_archive", fake_archive)

    await jobs_run.main(["--job", "ephemeral-guide-archive", "--once"])

    assert calls == [str(settings.default_org_id)]


@pytest.mark.anyio
async def test_job_runner_logs_and_continues_on_failure(async_session_maker, monkeypatch):
    async def broken(session, adapters=None, *, limit=50):
        raise RuntimeError("boom")

    monkeypatch.setattr(jobs_run, "get_session_factory", lambda: async_session_maker)
    monkeypatch.setattr(jobs_run.outbox, "run_outbox_delivery", broken)

    await jobs_run.main(["--job", "outbox-delivery", "--once"])
