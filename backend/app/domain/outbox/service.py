from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Iterable

import httpx
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.outbox.db_models import (
    OUTBOX_DEAD,
    OUTBOX_PENDING,
    OUTBOX_RETRY,
    OUTBOX_SENT,
    OUTBOX_SKIPPED,
    OutboxEvent,
)
from app.infra.metrics import metrics
from app.settings import settings

logger = logging.getLogger(__name__)

PENDING_STATUSES = {OUTBOX_PENDING, OUTBOX_RETRY}
DISPATCH_COMPLETED = "dispatch.completed"


class OutboxAdapters:
    def __init__(
        self,
        *,
        event_transport: httpx.AsyncBaseTransport | None = None,
        webhook_url: str | None = None,
    ) -> None:
        self.event_transport = event_transport
        self.webhook_url = webhook_url if webhook_url is not None else settings.dispatch_event_webhook_url


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _backoff_delay(attempt: int) -> timedelta:
    delay = settings.outbox_base_backoff_seconds * max(1, 2 ** max(0, attempt - 1))
    return timedelta(seconds=delay)


def _next_attempt(attempt: int) -> datetime:
    return _now() + _backoff_delay(attempt)


async def enqueue_outbox_event(
    session: AsyncSession,
    *,
    org_id,
    kind: str,
    payload: dict,
    dedupe_key: str,
) -> OutboxEvent:
    """Stage an event in the caller's transaction; duplicates by dedupe key are reused."""

    existing = await session.scalar(
        select(OutboxEvent).where(OutboxEvent.org_id == org_id, OutboxEvent.dedupe_key == dedupe_key)
    )
    if existing is not None:
        return existing
    event = OutboxEvent(
        org_id=org_id,
        kind=kind,
        payload_json=payload,
        dedupe_key=dedupe_key,
        status=OUTBOX_PENDING,
        attempts=0,
        next_attempt_at=_now(),
        last_error=None,
    )
    session.add(event)
    await session.flush()
    return event


async def get_outbox_event(session: AsyncSession, event_id: str) -> OutboxEvent:
    event = await session.get(OutboxEvent, event_id, populate_existing=True)
    if event is None:
        raise LookupError(f"outbox_event_not_found:{event_id}")
    return event


async def _deliver_webhook(adapters: OutboxAdapters, event: OutboxEvent) -> tuple[bool, str | None]:
    body = {"event_id": event.event_id, "kind": event.kind, "payload": event.payload_json}
    try:
        async with httpx.AsyncClient(
            timeout=settings.dispatch_event_timeout_seconds, transport=adapters.event_transport
        ) as client:
            response = await client.post(adapters.webhook_url, json=body)
        if 200 <= response.status_code < 300:
            return True, None
        return False, f"status_{response.status_code}"
    except httpx.HTTPError as exc:
        return False, type(exc).__name__


async def deliver_outbox_event(
    session: AsyncSession, event: OutboxEvent, adapters: OutboxAdapters
) -> tuple[bool, str | None]:
    if event.kind != DISPATCH_COMPLETED:
        event.status = OUTBOX_DEAD
        event.last_error = "unknown_kind"
        event.next_attempt_at = None
        await session.flush()
        return False, event.last_error

    if not adapters.webhook_url:
        logger.info(
            "outbox_delivery_skipped",
            extra={"extra": {"event_id": event.event_id, "kind": event.kind, "reason": "no_webhook_url"}},
        )
        event.status = OUTBOX_SKIPPED
        event.next_attempt_at = None
        await session.flush()
        return True, None

    attempts = (event.attempts or 0) + 1
    event.attempts = attempts
    delivered, error = await _deliver_webhook(adapters, event)
    if delivered:
        event.status = OUTBOX_SENT
        event.next_attempt_at = None
        event.last_error = None
        event.delivered_at = _now()
    else:
        event.last_error = error or "failed"
        if attempts >= settings.outbox_max_attempts:
            event.status = OUTBOX_DEAD
            event.next_attempt_at = None
        else:
            event.status = OUTBOX_RETRY
            event.next_attempt_at = _next_attempt(attempts)
    await session.flush()
    return delivered, event.last_error


async def process_outbox(session: AsyncSession, adapters: OutboxAdapters, *, limit: int = 50) -> dict[str, int]:
    now = _now()
    result = await session.execute(
        select(OutboxEvent)
        .where(OutboxEvent.status.in_(PENDING_STATUSES), OutboxEvent.next_attempt_at <= now)
        .order_by(OutboxEvent.created_at)
        .limit(limit)
    )
    events = result.scalars().all()
    sent = 0
    dead = 0
    for event in events:
        delivered, _ = await deliver_outbox_event(session, event, adapters)
        if delivered:
            sent += 1
        elif event.status == OUTBOX_DEAD:
            dead += 1
    if events:
        await session.commit()
    await _record_outbox_depth(session)
    return {"sent": sent, "dead": dead, "pending": len(events)}


async def outbox_counts_by_status(session: AsyncSession, statuses: Iterable[str]) -> dict[str, int]:
    counts: dict[str, int] = {status: 0 for status in statuses}
    result = await session.execute(
        select(OutboxEvent.status, func.count()).where(OutboxEvent.status.in_(counts.keys())).group_by(OutboxEvent.status)
    )
    for status, count in result.all():
        counts[status] = int(count)
    return counts


async def _record_outbox_depth(session: AsyncSession) -> None:
    counts = await outbox_counts_by_status(session, (OUTBOX_PENDING, OUTBOX_RETRY, OUTBOX_DEAD))
    for status, count in counts.items():
        metrics.set_outbox_depth(status, count)
