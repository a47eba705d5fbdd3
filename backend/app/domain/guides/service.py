from __future__ import annotations

import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.dispatch.clock import parse_hhmm, time_to_minutes
from app.domain.dispatch.db_models import GuideAssignment
from app.domain.errors import NotFoundError, ValidationError
from app.domain.guides.db_models import (
    EPHEMERAL_GUIDE_KINDS,
    GUIDE_KIND_EXTERNAL,
    GUIDE_KIND_TEMPORARY,
    Guide,
)
from app.settings import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AvailableGuide:
    guide_id: str
    name: str
    kind: str
    vehicle_capacity: int
    windows: tuple[tuple[int, int], ...]
    qualified_tour_ids: frozenset[str] = frozenset()
    base_zone: str | None = None
    preferred_zones: tuple[str, ...] = ()
    current_assignments: tuple[str, ...] = field(default_factory=tuple)

    @property
    def available_from(self) -> int:
        return min(start for start, _ in self.windows)

    @property
    def available_to(self) -> int:
        return max(end for _, end in self.windows)

    def is_qualified_for(self, tour_id: str) -> bool:
        return self.kind in EPHEMERAL_GUIDE_KINDS or tour_id in self.qualified_tour_ids

    def covers(self, start_minutes: int, end_minutes: int) -> bool:
        return any(start <= start_minutes and end_minutes <= end for start, end in self.windows)


def _default_window() -> tuple[int, int]:
    return parse_hhmm(settings.dispatch_guide_day_start), parse_hhmm(settings.dispatch_guide_day_end)


def _window(start: time | None, end: time | None) -> tuple[int, int]:
    default_start, default_end = _default_window()
    return (
        time_to_minutes(start) if start is not None else default_start,
        time_to_minutes(end) if end is not None else default_end,
    )


def availability_windows(guide: Guide, target_date: date) -> tuple[tuple[int, int], ...]:
    """Working windows (minutes since midnight) for a guide on a date; empty means unavailable.

    A date override decides alone; otherwise every available weekly slot for the weekday counts.
    Ephemeral guides work only on the date they were created for.
    """

    if guide.status != "active" or guide.archived_at is not None:
        return ()
    if guide.is_ephemeral:
        if guide.valid_on != target_date:
            return ()
        return (_window(guide.available_from, guide.available_to),)

    override = next((item for item in guide.overrides if item.override_date == target_date), None)
    if override is not None:
        if not override.is_available:
            return ()
        if override.start_time is not None or override.end_time is not None:
            return (_window(override.start_time, override.end_time),)

    weekday = target_date.weekday()
    slots = sorted(
        (time_to_minutes(slot.start_time), time_to_minutes(slot.end_time))
        for slot in guide.weekly_availability
        if slot.day_of_week == weekday and slot.is_available
    )
    if slots:
        return tuple(slots)
    if override is not None:
        return (_default_window(),)
    return ()


def is_available_on_date(guide: Guide, target_date: date) -> bool:
    return bool(availability_windows(guide, target_date))


def is_available_for_window(guide: Guide, target_date: date, start_minutes: int, end_minutes: int) -> bool:
    return any(
        start <= start_minutes and end_minutes <= end
        for start, end in availability_windows(guide, target_date)
    )


def is_qualified(guide: Guide, tour_id: str) -> bool:
    if guide.is_ephemeral:
        return True
    return any(item.tour_id == tour_id for item in guide.qualifications)


def to_available_guide(guide: Guide, target_date: date, current_assignments: tuple[str, ...] = ()) -> AvailableGuide:
    return AvailableGuide(
        guide_id=guide.guide_id,
        name=guide.display_name,
        kind=guide.kind,
        vehicle_capacity=guide.vehicle_capacity,
        windows=availability_windows(guide, target_date),
        qualified_tour_ids=frozenset(item.tour_id for item in guide.qualifications),
        base_zone=guide.base_zone,
        preferred_zones=tuple(guide.preferred_zones or ()),
        current_assignments=current_assignments,
    )


async def list_guides(session: AsyncSession, org_id: uuid.UUID, *, include_inactive: bool = False) -> list[Guide]:
    stmt = select(Guide).where(Guide.org_id == org_id)
    if not include_inactive:
        stmt = stmt.where(Guide.status == "active")
    result = await session.execute(stmt.order_by(Guide.guide_id))
    return list(result.scalars().all())


async def get_guide(session: AsyncSession, org_id: uuid.UUID, guide_id: str) -> Guide:
    guide = await session.scalar(select(Guide).where(Guide.org_id == org_id, Guide.guide_id == guide_id))
    if guide is None:
        raise NotFoundError(
            detail=f"Guide {guide_id} not found",
            errors=[{"code": "guide_not_found", "guide_id": guide_id}],
        )
    return guide


async def get_available_guides(
    session: AsyncSession, org_id: uuid.UUID, target_date: date
) -> list[AvailableGuide]:
    """Guides schedulable on ``target_date`` with their capacity and windows.

    A guide may hold several runs on one date; run overlap is checked by the
    orchestrator, so existing assignments are reported rather than filtered.
    An organization without guides yields an empty list.
    """

    guides = await list_guides(session, org_id)
    result = await session.execute(
        select(GuideAssignment).where(
            GuideAssignment.org_id == org_id, GuideAssignment.dispatch_date == target_date
        )
    )
    runs_by_guide: dict[str, list[str]] = defaultdict(list)
    for assignment in result.scalars().all():
        runs_by_guide[assignment.guide_id].append(assignment.run_key)

    available: list[AvailableGuide] = []
    for guide in guides:
        if not is_available_on_date(guide, target_date):
            continue
        available.append(to_available_guide(guide, target_date, tuple(sorted(runs_by_guide[guide.guide_id]))))
    return available


def _validate_capacity(vehicle_capacity: int) -> None:
    if vehicle_capacity <= 0:
        raise ValidationError(
            detail="Vehicle capacity must be positive",
            errors=[{"code": "invalid_vehicle_capacity", "vehicle_capacity": vehicle_capacity}],
        )


async def create_ephemeral_guide(
    session: AsyncSession,
    org_id: uuid.UUID,
    *,
    kind: str,
    valid_on: date,
    first_name: str,
    last_name: str | None = None,
    phone: str | None = None,
    email: str | None = None,
    vehicle_capacity: int | None = None,
    available_from: str | None = None,
    available_to: str | None = None,
) -> Guide:
    if kind not in EPHEMERAL_GUIDE_KINDS:
        raise ValidationError(detail=f"Unsupported guide kind {kind}", errors=[{"code": "invalid_guide_kind"}])
    if not first_name or not first_name.strip():
        raise ValidationError(detail="Guide name is required", errors=[{"code": "guide_name_required"}])
    capacity = vehicle_capacity if vehicle_capacity is not None else settings.dispatch_default_vehicle_capacity
    _validate_capacity(capacity)
    try:
        start = parse_hhmm(available_from) if available_from else None
        end = parse_hhmm(available_to) if available_to else None
    except ValueError as exc:
        raise ValidationError(detail="Availability must use HH:MM", errors=[{"code": "invalid_time"}]) from exc
    if start is not None and end is not None and end <= start:
        raise ValidationError(detail="Availability must end after it starts", errors=[{"code": "invalid_window"}])

    guide = Guide(
        org_id=org_id,
        first_name=first_name.strip(),
        last_name=last_name,
        phone=phone,
        email=email,
        vehicle_capacity=capacity,
        kind=kind,
        valid_on=valid_on,
        available_from=time(start // 60, start % 60) if start is not None else None,
        available_to=time(end // 60, end % 60) if end is not None else None,
        preferred_zones=[],
        weekly_availability=[],
        overrides=[],
        qualifications=[],
    )
    session.add(guide)
    await session.flush()
    logger.info(
        "guide_ephemeral_created",
        extra={"extra": {"guide_id": guide.guide_id, "kind": kind, "valid_on": valid_on.isoformat()}},
    )
    return guide


async def archive_ephemeral_guides(session: AsyncSession, org_id: uuid.UUID, *, before: date) -> int:
    """Archive temporary and external guides whose date has passed."""

    result = await session.execute(
        update(Guide)
        .where(
            Guide.org_id == org_id,
            Guide.kind.in_((GUIDE_KIND_TEMPORARY, GUIDE_KIND_EXTERNAL)),
            Guide.valid_on < before,
            Guide.archived_at.is_(None),
        )
        .values(archived_at=datetime.now(tz=timezone.utc))
    )
    archived = result.rowcount or 0
    if archived:
        logger.info("guide_ephemeral_archived", extra={"extra": {"count": archived, "before": before.isoformat()}})
    return archived
