"""Tour command center: the per-date dispatch workflow.

Every mutation runs inside :func:`day_transaction`, which locks the date's
``dispatch_days`` row, checks the caller's version token, and commits or rolls
back the whole unit. The pickup ledger and the assignment engine never commit on
their own.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import AsyncIterator, Sequence

from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from app.domain.bookings import service as bookings_service
from app.domain.bookings.db_models import Booking
from app.domain.dispatch import board, pickup_ledger, schemas
from app.domain.dispatch.auto_assignment import RunProposal, plan_day, plan_run, runs_overlap
from app.domain.dispatch.board import DaySnapshot
from app.domain.dispatch.clock import add_minutes, normalize_hhmm, parse_hhmm
from app.domain.dispatch.db_models import (
    DAY_DISPATCHED,
    DAY_IN_PROGRESS,
    DAY_NOT_STARTED,
    TERMINAL_PICKUP_STATUSES,
    DispatchDay,
    DispatchWarningResolution,
    GuideAssignment,
    PickupAssignment,
)
from app.domain.errors import (
    BatchApplyError,
    CapacityError,
    ConflictError,
    DispatchLockedError,
    DomainError,
    NotFoundError,
    ValidationError,
    VersionConflictError,
)
from app.domain.guides import service as guides_service
from app.domain.guides.db_models import GUIDE_KIND_EXTERNAL, GUIDE_KIND_TEMPORARY, Guide
from app.domain.outbox import service as outbox_service
from app.domain.tours import service as tours_service
from app.domain.tours.service import TourRun
from app.infra.metrics import metrics
from app.settings import settings

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


async def _lock_day(session: AsyncSession, org_id: uuid.UUID, dispatch_date: date) -> DispatchDay:
    stmt = (
        select(DispatchDay)
        .where(DispatchDay.org_id == org_id, DispatchDay.dispatch_date == dispatch_date)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    day = await session.scalar(stmt)
    if day is not None:
        return day

    values = {"org_id": org_id, "dispatch_date": dispatch_date, "status": DAY_NOT_STARTED, "version": 0}
    bind = session.get_bind()
    if bind.dialect.name == "sqlite":
        insert_stmt = sqlite.insert(DispatchDay).values(**values).prefix_with("OR IGNORE")
    else:
        insert_stmt = postgresql.insert(DispatchDay).values(**values).on_conflict_do_nothing()
    await session.execute(insert_stmt)
    day = await session.scalar(stmt)
    if day is None:
        raise RuntimeError("dispatch day row could not be created")
    return day


async def _bump_version(session: AsyncSession, day: DispatchDay, seen: int) -> None:
    if day.status == DAY_NOT_STARTED:
        day.status = DAY_IN_PROGRESS
    await session.flush()
    result = await session.execute(
        update(DispatchDay)
        .where(DispatchDay.dispatch_day_id == day.dispatch_day_id, DispatchDay.version == seen)
        .values(version=seen + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.warning(
            "dispatch_version_conflict",
            extra={"extra": {"dispatch_date": day.dispatch_date.isoformat(), "seen_version": seen}},
        )
        raise VersionConflictError(
            detail="Dispatch day changed while this operation ran; reload and retry",
            errors=[{"code": "version_conflict", "expected_version": seen}],
        )
    set_committed_value(day, "version", seen + 1)


@asynccontextmanager
async def day_transaction(
    session: AsyncSession,
    org_id: uuid.UUID,
    dispatch_date: date,
    *,
    operation: str,
    expected_version: int | None = None,
    allow_dispatched: bool = False,
) -> AsyncIterator[DispatchDay]:
    """Serialize one mutation of a dispatch date and commit it atomically.

    The date row is locked for the whole unit of work and its version is
    checked-and-incremented before commit. Any exception rolls back everything
    the caller did inside the block.
    """

    try:
        day = await _lock_day(session, org_id, dispatch_date)
        if expected_version is not None and day.version != expected_version:
            raise VersionConflictError(
                detail=f"Dispatch day is at version {day.version}, expected {expected_version}",
                errors=[
                    {"code": "version_conflict", "expected_version": expected_version, "current_version": day.version}
                ],
            )
        if day.status == DAY_DISPATCHED and not allow_dispatched:
            raise DispatchLockedError(
                detail=f"{dispatch_date.isoformat()} has been dispatched; reopen it before changing assignments",
                errors=[{"code": "dispatch_locked", "dispatch_date": dispatch_date.isoformat()}],
            )
        seen = day.version
        yield day
        await _bump_version(session, day, seen)
        await session.commit()
    except Exception:
        await session.rollback()
        metrics.record_dispatch_operation(operation, "failed")
        raise
    metrics.record_dispatch_operation(operation, "ok")


async def _resolve_guide(session: AsyncSession, snapshot: DaySnapshot, guide_id: str) -> Guide:
    guide = snapshot.guides.get(guide_id)
    if guide is None:
        guide = await guides_service.get_guide(session, snapshot.org_id, guide_id)
        snapshot.guides[guide_id] = guide
    return guide


def _require_run(snapshot: DaySnapshot, booking: Booking) -> TourRun:
    run = snapshot.run_for_booking(booking.booking_id)
    if run is None:
        raise ValidationError(
            detail=f"Booking {booking.booking_id} is not scheduled on {snapshot.dispatch_date.isoformat()}",
            errors=[{"code": "booking_not_on_date", "booking_id": booking.booking_id}],
        )
    return run


def _check_guide_for_run(snapshot: DaySnapshot, guide: Guide, run: TourRun) -> None:
    if not guides_service.is_available_for_window(guide, snapshot.dispatch_date, run.start_minutes, run.end_minutes):
        raise ConflictError(
            detail=f"{guide.display_name} is not available for {run.tour_name} at {run.run_time}",
            errors=[{"code": "guide_unavailable", "guide_id": guide.guide_id, "run_key": run.run_key}],
        )
    for held in snapshot.assignments_of(guide.guide_id):
        if held.run_key == run.run_key:
            continue
        if runs_overlap(snapshot.span(held), (run.start_minutes, run.end_minutes), snapshot.config.run_buffer_minutes):
            raise ConflictError(
                detail=f"{guide.display_name} already runs {held.run_key} too close to {run.run_key}",
                errors=[
                    {
                        "code": "guide_conflict",
                        "guide_id": guide.guide_id,
                        "run_key": run.run_key,
                        "conflicting_run_key": held.run_key,
                    }
                ],
            )


async def _ensure_assignment(
    session: AsyncSession, snapshot: DaySnapshot, guide: Guide, run: TourRun
) -> GuideAssignment:
    existing = next(
        (item for item in snapshot.assignments_for(run) if item.guide_id == guide.guide_id),
        None,
    )
    if existing is not None:
        return existing
    _check_guide_for_run(snapshot, guide, run)
    assignment = GuideAssignment(
        org_id=snapshot.org_id,
        dispatch_date=snapshot.dispatch_date,
        tour_id=run.tour_id,
        run_time=run.run_time,
        guide_id=guide.guide_id,
        is_lead_guide=not snapshot.assignments_for(run),
        pickups=[],
    )
    session.add(assignment)
    await session.flush()
    snapshot.assignments.append(assignment)
    return assignment


async def _place(
    session: AsyncSession,
    snapshot: DaySnapshot,
    booking: Booking,
    guide: Guide,
    *,
    position: int | None = None,
) -> tuple[GuideAssignment, PickupAssignment]:
    run = _require_run(snapshot, booking)
    assignment = await _ensure_assignment(session, snapshot, guide, run)
    pickup = await pickup_ledger.assign(
        session,
        assignment=assignment,
        booking=booking,
        vehicle_capacity=guide.vehicle_capacity,
        matrix=snapshot.matrix,
        position=position,
        config=snapshot.config.route,
    )
    return assignment, pickup


async def _remove(
    session: AsyncSession, snapshot: DaySnapshot, pickup: PickupAssignment, assignment: GuideAssignment
) -> bool:
    """Drop a pickup; returns True when its guide assignment became empty and was deleted."""

    await pickup_ledger.unassign(
        session, assignment=assignment, pickup=pickup, matrix=snapshot.matrix, config=snapshot.config.route
    )
    if assignment.pickups:
        return False
    snapshot.assignments.remove(assignment)
    await session.delete(assignment)
    await session.flush()
    return True


def _assigned_pickup(snapshot: DaySnapshot, booking_id: str) -> tuple[PickupAssignment, GuideAssignment]:
    found = snapshot.pickups.get(booking_id)
    if found is None:
        raise ValidationError(
            detail=f"Booking {booking_id} has no guide assigned",
            errors=[{"code": "booking_not_assigned", "booking_id": booking_id}],
        )
    return found


def _ensure_movable(pickup: PickupAssignment) -> None:
    if pickup.status in TERMINAL_PICKUP_STATUSES:
        raise ConflictError(
            detail=f"Booking {pickup.booking_id} was already {pickup.status}",
            errors=[{"code": "pickup_terminal", "booking_id": pickup.booking_id, "status": pickup.status}],
        )


def _pickup_view(pickup: PickupAssignment) -> schemas.PickupView:
    return schemas.PickupView(
        pickup_id=pickup.pickup_id,
        guide_assignment_id=pickup.guide_assignment_id,
        booking_id=pickup.booking_id,
        position=pickup.position,
        passenger_count=pickup.passenger_count,
        pickup_time=pickup.calculated_pickup_time,
        drive_minutes=pickup.drive_time_minutes,
        time_overridden=pickup.time_overridden,
        status=pickup.status,
        actual_pickup_time=pickup.actual_pickup_time,
    )


def _proposal_response(proposal: RunProposal) -> schemas.RunProposalResponse:
    return schemas.RunProposalResponse(
        run_key=proposal.run_key,
        success=proposal.success,
        assignments=[
            schemas.ProposedGuideLoad(
                guide_id=load.guide_id,
                guide_name=load.guide_name,
                vehicle_capacity=load.vehicle_capacity,
                guests=load.guests,
                drive_minutes=load.drive_minutes,
                pickups=[
                    schemas.ProposedPickupView(
                        booking_id=item.stop.booking_id,
                        position=item.position,
                        guests=item.stop.guests,
                        pickup_time=item.pickup_time,
                        drive_minutes=item.drive_minutes,
                        is_new=item.stop.booking_id in load.added_booking_ids,
                    )
                    for item in load.pickups
                ],
            )
            for load in proposal.loads
        ],
        warnings=[
            schemas.ProposalFlag(type=flag.type, booking_ids=list(flag.booking_ids), message=flag.message)
            for flag in proposal.flags
        ],
        total_drive_minutes=proposal.stats.total_drive_minutes,
        vehicle_utilization=proposal.stats.vehicle_utilization,
        guide_balance=proposal.stats.guide_balance,
    )


# Read-only projections


async def get_dispatch_status(
    session: AsyncSession, org_id: uuid.UUID, dispatch_date: date
) -> schemas.DispatchStatusResponse:
    snapshot = await board.load_snapshot(session, org_id, dispatch_date)
    warnings = board.outstanding_warnings(snapshot)
    counts: dict[str, int] = {}
    for warning in warnings:
        counts[warning.type] = counts.get(warning.type, 0) + 1
    metrics.set_dispatch_warnings(counts)
    return board.day_status(snapshot, await board.get_day(session, org_id, dispatch_date), warnings)


async def get_tour_runs(session: AsyncSession, org_id: uuid.UUID, dispatch_date: date) -> schemas.TourRunsResponse:
    snapshot = await board.load_snapshot(session, org_id, dispatch_date)
    return schemas.TourRunsResponse(date=dispatch_date, runs=board.run_views(snapshot))


async def get_guide_timelines(
    session: AsyncSession, org_id: uuid.UUID, dispatch_date: date
) -> schemas.GuideTimelinesResponse:
    snapshot = await board.load_snapshot(session, org_id, dispatch_date)
    return schemas.GuideTimelinesResponse(date=dispatch_date, timelines=board.guide_timelines(snapshot))


async def get_dispatch_board(
    session: AsyncSession, org_id: uuid.UUID, dispatch_date: date
) -> schemas.DispatchBoardResponse:
    snapshot = await board.load_snapshot(session, org_id, dispatch_date)
    warnings = board.detect_warnings(snapshot)
    outstanding = [warning for warning in warnings if warning.warning_id not in snapshot.resolutions]
    return schemas.DispatchBoardResponse(
        status=board.day_status(snapshot, await board.get_day(session, org_id, dispatch_date), outstanding),
        runs=board.run_views(snapshot),
        timelines=board.guide_timelines(snapshot, warnings),
    )


async def get_available_guides(
    session: AsyncSession, org_id: uuid.UUID, dispatch_date: date
) -> schemas.AvailableGuidesResponse:
    guides = await guides_service.get_available_guides(session, org_id, dispatch_date)
    return schemas.AvailableGuidesResponse(
        date=dispatch_date, guides=[board.available_guide_view(guide) for guide in guides]
    )


async def get_manifest(session: AsyncSession, org_id: uuid.UUID, run_key: str) -> schemas.ManifestResponse:
    manifest = await tours_service.get_manifest(session, org_id, run_key)
    run = manifest.run
    return schemas.ManifestResponse(
        run_key=run.run_key,
        tour_name=run.tour_name,
        date=run.run_date,
        time=run.run_time,
        total_guests=run.total_guests,
        entries=[
            schemas.ManifestEntryView(
                booking_id=entry.booking_id,
                reference_number=entry.reference_number,
                customer_name=entry.customer_name,
                customer_phone=entry.customer_phone,
                adult_count=entry.adult_count,
                child_count=entry.child_count,
                infant_count=entry.infant_count,
                total_participants=entry.total_participants,
                is_private=entry.is_private,
                special_requests=entry.special_requests,
                pickup_location=entry.pickup_location,
                pickup_instructions=entry.pickup_instructions,
                guide_id=entry.guide_id,
                guide_name=entry.guide_name,
                pickup_position=entry.pickup_position,
                pickup_time=entry.pickup_time,
                pickup_status=entry.pickup_status,
                participants=[
                    schemas.ManifestParticipantView(
                        first_name=item.first_name,
                        last_name=item.last_name,
                        participant_type=item.participant_type,
                        dietary_requirements=item.dietary_requirements,
                        accessibility_needs=item.accessibility_needs,
                    )
                    for item in entry.participants
                ],
            )
            for entry in manifest.entries
        ],
    )


async def auto_assign_tour(session: AsyncSession, org_id: uuid.UUID, run_key: str) -> schemas.RunProposalResponse:
    """Proposal for one run's unassigned bookings; nothing is written."""

    key = tours_service.parse_run_key(run_key)
    snapshot = await board.load_snapshot(session, org_id, key.run_date)
    run = snapshot.run(str(key))
    if run is None:
        raise NotFoundError(
            detail=f"Tour run {key} not found", errors=[{"code": "tour_run_not_found", "run_key": str(key)}]
        )
    proposal = plan_run(
        board.run_input(snapshot, run),
        board.engine_guides(snapshot, skip_run_key=run.run_key),
        snapshot.matrix,
        snapshot.config,
    )
    return _proposal_response(proposal)


async def get_suggestions(session: AsyncSession, org_id: uuid.UUID, booking_id: str) -> schemas.SuggestionsResponse:
    booking = await bookings_service.get_booking(session, org_id, booking_id)
    snapshot = await board.load_snapshot(session, org_id, booking.booking_date)
    run = _require_run(snapshot, booking)
    return schemas.SuggestionsResponse(
        booking_id=booking_id,
        run_key=run.run_key,
        suggestions=board.suggest_guides(snapshot, run, booking),
    )


async def calculate_ghost_preview(
    session: AsyncSession,
    org_id: uuid.UUID,
    *,
    guide_assignment_id: str,
    booking_id: str,
    position: int | None = None,
) -> schemas.GhostPreviewResponse:
    assignment = await pickup_ledger.get_guide_assignment(session, org_id, guide_assignment_id)
    booking = await bookings_service.get_booking(session, org_id, booking_id)
    pickup_ledger.check_same_run(assignment, booking)
    guide = await guides_service.get_guide(session, org_id, assignment.guide_id)
    snapshot = await board.load_snapshot(session, org_id, assignment.dispatch_date)
    current = [
        pickup_ledger.stop_for_pickup(pickup, is_private=snapshot.is_private(pickup.booking_id))
        for pickup in assignment.pickups
    ]
    existing = await pickup_ledger.find_pickup_for_booking(session, org_id, assignment.dispatch_date, booking_id)
    moved_from = (
        existing.guide_assignment_id
        if existing is not None and existing.guide_assignment_id != assignment.assignment_id
        else None
    )
    preview = pickup_ledger.calculate_ghost_preview(
        current=current,
        candidate=pickup_ledger.stop_for_booking(booking),
        departure_minutes=parse_hhmm(assignment.run_time),
        vehicle_capacity=guide.vehicle_capacity,
        matrix=snapshot.matrix,
        position=position,
        config=snapshot.config.route,
        moved_from_assignment_id=moved_from,
    )
    return schemas.GhostPreviewResponse(
        valid=preview.valid,
        reason=preview.reason,
        stops=[
            schemas.GhostStopView(
                position=stop.position,
                booking_id=stop.booking_id,
                guests=stop.guests,
                pickup_time=stop.pickup_time,
                drive_minutes=stop.drive_minutes,
                is_new=stop.is_new,
            )
            for stop in preview.stops
        ],
        added_drive_minutes=preview.added_drive_minutes,
        new_capacity=schemas.CapacityView(
            current=preview.current_guests + (booking.total_participants if preview.valid else 0),
            max=preview.max_guests,
        ),
        is_efficient=preview.is_efficient,
        recommendation=preview.recommendation,
        moved_from_assignment_id=preview.moved_from_assignment_id,
    )


# Mutations


async def manual_assign(
    session: AsyncSession,
    org_id: uuid.UUID,
    *,
    booking_id: str,
    guide_id: str,
    position: int | None = None,
    expected_version: int | None = None,
) -> schemas.AssignmentResponse:
    booking = await bookings_service.get_booking(session, org_id, booking_id)
    async with day_transaction(
        session, org_id, booking.booking_date, operation="manual_assign", expected_version=expected_version
    ) as day:
        snapshot = await board.load_snapshot(session, org_id, booking.booking_date)
        guide = await _resolve_guide(session, snapshot, guide_id)
        assignment, _ = await _place(session, snapshot, booking, guide, position=position)
        assignment_id, run_key = assignment.assignment_id, assignment.run_key
        pickups = [_pickup_view(pickup) for pickup in assignment.pickups]
    return schemas.AssignmentResponse(
        date=booking.booking_date,
        version=day.version,
        guide_assignment_id=assignment_id,
        guide_id=guide_id,
        run_key=run_key,
        pickups=pickups,
    )


async def unassign(
    session: AsyncSession,
    org_id: uuid.UUID,
    *,
    booking_id: str,
    expected_version: int | None = None,
) -> schemas.UnassignResponse:
    booking = await bookings_service.get_booking(session, org_id, booking_id)
    async with day_transaction(
        session, org_id, booking.booking_date, operation="unassign", expected_version=expected_version
    ) as day:
        snapshot = await board.load_snapshot(session, org_id, booking.booking_date)
        pickup, assignment = _assigned_pickup(snapshot, booking_id)
        _ensure_movable(pickup)
        removed = await _remove(session, snapshot, pickup, assignment)
    return schemas.UnassignResponse(
        date=booking.booking_date, version=day.version, booking_id=booking_id, removed_guide_assignment=removed
    )


async def clear_run(
    session: AsyncSession,
    org_id: uuid.UUID,
    run_key: str,
    *,
    expected_version: int | None = None,
) -> schemas.RunClearedResponse:
    """Drop every guide assignment of a run so it can be planned again."""

    key = tours_service.parse_run_key(run_key)
    async with day_transaction(
        session, org_id, key.run_date, operation="clear_run", expected_version=expected_version
    ) as day:
        snapshot = await board.load_snapshot(session, org_id, key.run_date)
        run = snapshot.run(str(key))
        if run is None:
            raise NotFoundError(
                detail=f"Tour run {key} not found", errors=[{"code": "tour_run_not_found", "run_key": str(key)}]
            )
        assignments = snapshot.assignments_for(run)
        for assignment in assignments:
            for pickup in assignment.pickups:
                _ensure_movable(pickup)
        cleared: list[str] = []
        for assignment in assignments:
            cleared.extend(pickup.booking_id for pickup in assignment.pickups)
            snapshot.assignments.remove(assignment)
            await session.delete(assignment)
        await session.flush()

    logger.info(
        "dispatch_run_cleared",
        extra={"extra": {"run_key": str(key), "bookings": len(cleared), "version": day.version}},
    )
    return schemas.RunClearedResponse(run_key=str(key), version=day.version, cleared_booking_ids=cleared)


async def optimize(
    session: AsyncSession,
    org_id: uuid.UUID,
    dispatch_date: date,
    *,
    expected_version: int | None = None,
) -> schemas.OptimizeResponse:
    """Auto-assign every run with unassigned bookings; all runs commit together or not at all."""

    async with day_transaction(
        session, org_id, dispatch_date, operation="optimize", expected_version=expected_version
    ) as day:
        snapshot = await board.load_snapshot(session, org_id, dispatch_date)
        pickups = snapshot.pickups
        pending = [
            run for run in snapshot.runs if any(booking.booking_id not in pickups for booking in run.bookings)
        ]
        proposals = plan_day(
            [board.run_input(snapshot, run) for run in pending],
            board.engine_guides(snapshot),
            snapshot.matrix,
            snapshot.config,
        )
        bookings = snapshot.bookings
        for proposal in proposals:
            for load in proposal.loads:
                guide = snapshot.guides[load.guide_id]
                for booking_id in load.added_booking_ids:
                    await _place(session, snapshot, bookings[booking_id], guide)
        day.optimized_at = _now()
        guides_used = len({assignment.guide_id for assignment in snapshot.assignments})

    assigned = sum(len(proposal.assigned_booking_ids) for proposal in proposals)
    unassigned = sum(len(proposal.unassigned_booking_ids) for proposal in proposals)
    logger.info(
        "dispatch_optimized",
        extra={
            "extra": {
                "dispatch_date": dispatch_date.isoformat(),
                "runs": len(proposals),
                "assigned_bookings": assigned,
                "unassigned_bookings": unassigned,
                "version": day.version,
            }
        },
    )
    return schemas.OptimizeResponse(
        date=dispatch_date,
        version=day.version,
        runs=[_proposal_response(proposal) for proposal in proposals],
        assigned_bookings=assigned,
        unassigned_bookings=unassigned,
        guides_used=guides_used,
    )


# Batch changes


@dataclass
class _Simulation:
    """Where every booking of the date would sit after the changes seen so far."""

    snapshot: DaySnapshot
    placement: dict[str, tuple[str, str]]
    loads: dict[tuple[str, str], list[str]]
    spans: dict[str, tuple[int, int]]

    @classmethod
    def from_snapshot(cls, snapshot: DaySnapshot) -> "_Simulation":
        placement: dict[str, tuple[str, str]] = {}
        loads: dict[tuple[str, str], list[str]] = {}
        spans = {run.run_key: (run.start_minutes, run.end_minutes) for run in snapshot.runs}
        for assignment in snapshot.assignments:
            key = (assignment.guide_id, assignment.run_key)
            loads[key] = [pickup.booking_id for pickup in assignment.pickups]
            for booking_id in loads[key]:
                placement[booking_id] = key
            spans.setdefault(assignment.run_key, snapshot.span(assignment))
        return cls(snapshot=snapshot, placement=placement, loads=loads, spans=spans)

    def guests(self, key: tuple[str, str]) -> int:
        bookings = self.snapshot.bookings
        pickups = self.snapshot.pickups
        total = 0
        for booking_id in self.loads.get(key, []):
            booking = bookings.get(booking_id)
            if booking is not None:
                total += booking.total_participants
            elif booking_id in pickups:
                total += pickups[booking_id][0].passenger_count
        return total

    def remove(self, booking_id: str) -> None:
        key = self.placement.pop(booking_id)
        self.loads[key].remove(booking_id)
        if not self.loads[key]:
            del self.loads[key]

    def place(self, booking: Booking, guide: Guide, run: TourRun, position: int | None) -> None:
        key = (guide.guide_id, run.run_key)
        members = self.loads.get(key, [])
        if not members:
            self._check_guide(guide, run)
        if booking.is_private and members:
            raise ConflictError(
                detail=f"Private booking {booking.booking_id} needs its own guide",
                errors=[{"code": "private_requires_empty_guide", "booking_id": booking.booking_id, "guide_id": guide.guide_id}],
            )
        if any(self.snapshot.is_private(member) for member in members):
            raise ConflictError(
                detail=f"Guide {guide.guide_id} is carrying a private booking",
                errors=[{"code": "guide_has_private_booking", "booking_id": booking.booking_id, "guide_id": guide.guide_id}],
            )
        guests = self.guests(key) + booking.total_participants
        if guests > guide.vehicle_capacity:
            raise CapacityError(
                detail=f"{guide.display_name} would carry {guests} guests in a {guide.vehicle_capacity}-seat vehicle",
                errors=[
                    {
                        "code": "capacity_exceeded",
                        "booking_id": booking.booking_id,
                        "guide_id": guide.guide_id,
                        "guests": guests,
                        "vehicle_capacity": guide.vehicle_capacity,
                    }
                ],
            )
        if position is not None and position > len(members):
            raise ValidationError(
                detail=f"Position must be between 0 and {len(members)}",
                errors=[{"code": "invalid_position", "position": position, "max": len(members)}],
            )
        index = len(members) if position is None else position
        self.loads[key] = members[:index] + [booking.booking_id] + members[index:]
        self.placement[booking.booking_id] = key

    def _check_guide(self, guide: Guide, run: TourRun) -> None:
        snapshot = self.snapshot
        if not guides_service.is_available_for_window(guide, snapshot.dispatch_date, run.start_minutes, run.end_minutes):
            raise ConflictError(
                detail=f"{guide.display_name} is not available for {run.tour_name} at {run.run_time}",
                errors=[{"code": "guide_unavailable", "guide_id": guide.guide_id, "run_key": run.run_key}],
            )
        for guide_id, run_key in self.loads:
            if guide_id != guide.guide_id or run_key == run.run_key:
                continue
            if runs_overlap(self.spans[run_key], (run.start_minutes, run.end_minutes), snapshot.config.run_buffer_minutes):
                raise ConflictError(
                    detail=f"{guide.display_name} already runs {run_key} too close to {run.run_key}",
                    errors=[
                        {
                            "code": "guide_conflict",
                            "guide_id": guide.guide_id,
                            "run_key": run.run_key,
                            "conflicting_run_key": run_key,
                        }
                    ],
                )


def _batch_booking(snapshot: DaySnapshot, booking_id: str) -> tuple[Booking, TourRun]:
    run = snapshot.run_for_booking(booking_id)
    if run is None:
        raise ValidationError(
            detail=f"Booking {booking_id} is not on {snapshot.dispatch_date.isoformat()}",
            errors=[{"code": "unknown_booking", "booking_id": booking_id}],
        )
    return snapshot.bookings[booking_id], run


def _batch_guide(snapshot: DaySnapshot, guide_id: str) -> Guide:
    guide = snapshot.guides.get(guide_id)
    if guide is None:
        raise ValidationError(
            detail=f"Guide {guide_id} does not exist", errors=[{"code": "unknown_guide", "guide_id": guide_id}]
        )
    return guide


def _simulate_change(simulation: _Simulation, change: schemas.BatchChange) -> None:
    snapshot = simulation.snapshot
    booking, run = _batch_booking(snapshot, change.booking_id)
    persisted = snapshot.pickups.get(change.booking_id)
    if isinstance(change, schemas.AssignChange):
        if change.booking_id in simulation.placement:
            raise ConflictError(
                detail=f"Booking {change.booking_id} is already assigned; unassign it first",
                errors=[{"code": "booking_already_assigned", "booking_id": change.booking_id}],
            )
        simulation.place(booking, _batch_guide(snapshot, change.guide_id), run, change.position)
        return

    if change.booking_id not in simulation.placement:
        raise ValidationError(
            detail=f"Booking {change.booking_id} has no guide assigned",
            errors=[{"code": "booking_not_assigned", "booking_id": change.booking_id}],
        )
    if persisted is not None and simulation.placement[change.booking_id] == (
        persisted[1].guide_id,
        persisted[1].run_key,
    ):
        _ensure_movable(persisted[0])

    if isinstance(change, schemas.UnassignChange):
        simulation.remove(change.booking_id)
    elif isinstance(change, schemas.TimeShiftChange):
        if change.pickup_time is not None:
            try:
                normalize_hhmm(change.pickup_time)
            except ValueError as exc:
                raise ValidationError(
                    detail=f"Invalid pickup time {change.pickup_time!r}; expected HH:MM",
                    errors=[{"code": "invalid_time", "booking_id": change.booking_id}],
                ) from exc
    elif isinstance(change, schemas.ReassignChange):
        current_guide = simulation.placement[change.booking_id][0]
        if change.from_guide_id is not None and change.from_guide_id != current_guide:
            raise ValidationError(
                detail=f"Booking {change.booking_id} is with guide {current_guide}, not {change.from_guide_id}",
                errors=[
                    {
                        "code": "from_guide_mismatch",
                        "booking_id": change.booking_id,
                        "guide_id": change.from_guide_id,
                        "current_guide_id": current_guide,
                    }
                ],
            )
        if change.to_guide_id == current_guide:
            raise ValidationError(
                detail=f"Booking {change.booking_id} is already with guide {current_guide}",
                errors=[{"code": "same_guide", "booking_id": change.booking_id, "guide_id": current_guide}],
            )
        target = _batch_guide(snapshot, change.to_guide_id)
        simulation.remove(change.booking_id)
        simulation.place(booking, target, run, change.position)


def _validate_batch(snapshot: DaySnapshot, changes: Sequence[schemas.BatchChange]) -> None:
    simulation = _Simulation.from_snapshot(snapshot)
    for index, change in enumerate(changes):
        try:
            _simulate_change(simulation, change)
        except DomainError as exc:
            exc.detail = f"Change {index} ({change.type}): {exc.detail}"
            exc.errors = [{**item, "index": index} for item in (exc.errors or [{}])]
            raise


async def _apply_change(
    session: AsyncSession, snapshot: DaySnapshot, index: int, change: schemas.BatchChange
) -> schemas.AppliedChange:
    booking = snapshot.bookings[change.booking_id]
    if isinstance(change, schemas.AssignChange):
        guide = snapshot.guides[change.guide_id]
        await _place(session, snapshot, booking, guide, position=change.position)
        return schemas.AppliedChange(index=index, type=change.type, booking_id=change.booking_id, guide_id=guide.guide_id)

    pickup, assignment = _assigned_pickup(snapshot, change.booking_id)
    if isinstance(change, schemas.UnassignChange):
        await _remove(session, snapshot, pickup, assignment)
        return schemas.AppliedChange(
            index=index, type=change.type, booking_id=change.booking_id, guide_id=assignment.guide_id
        )
    if isinstance(change, schemas.ReassignChange):
        await _remove(session, snapshot, pickup, assignment)
        guide = snapshot.guides[change.to_guide_id]
        await _place(session, snapshot, booking, guide, position=change.position)
        return schemas.AppliedChange(index=index, type=change.type, booking_id=change.booking_id, guide_id=guide.guide_id)
    if isinstance(change, schemas.TimeShiftChange):
        if change.pickup_time is not None:
            new_time = change.pickup_time
        elif pickup.calculated_pickup_time is None:
            raise ValidationError(
                detail=f"Booking {change.booking_id} has no planned pickup time to shift",
                errors=[{"code": "no_pickup_time", "booking_id": change.booking_id, "index": index}],
            )
        else:
            new_time = add_minutes(pickup.calculated_pickup_time, change.shift_minutes)
        pickup_ledger.update_pickup_time(pickup, new_time)
        await session.flush()
        return schemas.AppliedChange(
            index=index,
            type=change.type,
            booking_id=change.booking_id,
            guide_id=assignment.guide_id,
            pickup_time=pickup.calculated_pickup_time,
        )
    raise ValidationError(detail=f"Unsupported change type {change.type}", errors=[{"code": "unsupported_change"}])


def _log_rollback(dispatch_date: date, applied: list[schemas.AppliedChange], failed_index: int, exc: Exception) -> None:
    for change in reversed(applied):
        logger.warning(
            "dispatch_batch_compensated",
            extra={
                "extra": {
                    "dispatch_date": dispatch_date.isoformat(),
                    "index": change.index,
                    "type": change.type,
                    "booking_id": change.booking_id,
                    "guide_id": change.guide_id,
                }
            },
        )
    logger.warning(
        "dispatch_batch_rolled_back",
        extra={
            "extra": {
                "dispatch_date": dispatch_date.isoformat(),
                "applied": len(applied),
                "failed_index": failed_index,
                "reason": type(exc).__name__,
            }
        },
    )


async def batch_apply_changes(
    session: AsyncSession,
    org_id: uuid.UUID,
    dispatch_date: date,
    changes: Sequence[schemas.BatchChange],
    *,
    expected_version: int | None = None,
) -> schemas.BatchApplyResponse:
    """Apply a list of changes as one unit.

    Phase one replays every change against an in-memory copy of the date and
    stops at the first invalid one, before anything is written. Phase two
    applies them in order; any failure rolls the whole transaction back.
    """

    async with day_transaction(
        session, org_id, dispatch_date, operation="batch_apply", expected_version=expected_version
    ) as day:
        snapshot = await board.load_snapshot(session, org_id, dispatch_date)
        _validate_batch(snapshot, changes)
        applied: list[schemas.AppliedChange] = []
        try:
            for index, change in enumerate(changes):
                applied.append(await _apply_change(session, snapshot, index, change))
        except DomainError as exc:
            _log_rollback(dispatch_date, applied, len(applied), exc)
            raise
        except SQLAlchemyError as exc:
            _log_rollback(dispatch_date, applied, len(applied), exc)
            raise BatchApplyError(
                detail=f"Change {len(applied)} could not be saved; no changes were applied",
                errors=[{"code": "batch_apply_failed", "index": len(applied), "reason": type(exc).__name__}],
            ) from exc

    logger.info(
        "dispatch_batch_applied",
        extra={"extra": {"dispatch_date": dispatch_date.isoformat(), "changes": len(applied), "version": day.version}},
    )
    return schemas.BatchApplyResponse(date=dispatch_date, version=day.version, applied=applied)


# Warnings


def _warning_assignment(snapshot: DaySnapshot, warning: schemas.DispatchWarning) -> GuideAssignment | None:
    return next(
        (
            assignment
            for assignment in snapshot.assignments
            if assignment.run_key == warning.run_key and assignment.guide_id in warning.guide_ids
        ),
        None,
    )


def _warning_targets(snapshot: DaySnapshot, warning: schemas.DispatchWarning) -> list[Booking]:
    """Bookings a guide-providing resolution should move or place."""

    bookings = snapshot.bookings
    assignment = _warning_assignment(snapshot, warning)
    if assignment is None:
        pickups = snapshot.pickups
        pending = [bookings[booking_id] for booking_id in warning.booking_ids if booking_id not in pickups]
        return sorted(pending, key=lambda booking: (-booking.total_participants, booking.booking_id))
    if warning.type == "capacity_exceeded":
        guide = snapshot.guides[assignment.guide_id]
        overflow = []
        guests = sum(pickup.passenger_count for pickup in assignment.pickups)
        for pickup in reversed(assignment.pickups):
            if guests <= guide.vehicle_capacity:
                break
            if pickup.status in TERMINAL_PICKUP_STATUSES or pickup.booking_id not in bookings:
                continue
            overflow.append(bookings[pickup.booking_id])
            guests -= pickup.passenger_count
        return overflow
    return [bookings[pickup.booking_id] for pickup in assignment.pickups if pickup.booking_id in bookings]


def _can_take(snapshot: DaySnapshot, guide: Guide, booking: Booking) -> bool:
    run = snapshot.run_for_booking(booking.booking_id)
    if run is None:
        return True
    assignment = next((item for item in snapshot.assignments_for(run) if item.guide_id == guide.guide_id), None)
    carried = [pickup for pickup in assignment.pickups if pickup.booking_id != booking.booking_id] if assignment else []
    if not carried:
        return booking.total_participants <= guide.vehicle_capacity
    if booking.is_private:
        return False
    if any(snapshot.is_private(pickup.booking_id) for pickup in carried):
        return False
    guests = sum(pickup.passenger_count for pickup in carried)
    return guests + booking.total_participants <= guide.vehicle_capacity


async def _give_to_guide(
    session: AsyncSession, snapshot: DaySnapshot, guide: Guide, targets: list[Booking]
) -> list[str]:
    """Move what ``guide`` can legally carry; the rest stays for the recomputed warning."""

    legal = [booking for booking in targets if _can_take(snapshot, guide, booking)]
    # Nothing fits: attempt the first target so the ledger reports why.
    if not legal:
        legal = targets[:1]
    moved = []
    for booking in legal:
        if moved and not _can_take(snapshot, guide, booking):
            continue
        found = snapshot.pickups.get(booking.booking_id)
        if found is not None:
            pickup, assignment = found
            _ensure_movable(pickup)
            await _remove(session, snapshot, pickup, assignment)
        await _place(session, snapshot, booking, guide)
        moved.append(booking.booking_id)
    return moved


async def _create_external_guide(
    session: AsyncSession,
    snapshot: DaySnapshot,
    *,
    name: str,
    contact: str | None,
    vehicle_capacity: int | None,
) -> Guide:
    contact = (contact or "").strip() or None
    guide = await guides_service.create_ephemeral_guide(
        session,
        snapshot.org_id,
        kind=GUIDE_KIND_EXTERNAL,
        valid_on=snapshot.dispatch_date,
        first_name=name,
        email=contact if contact and "@" in contact else None,
        phone=contact if contact and "@" not in contact else None,
        vehicle_capacity=vehicle_capacity,
    )
    snapshot.guides[guide.guide_id] = guide
    return guide


async def _apply_resolution(
    session: AsyncSession,
    snapshot: DaySnapshot,
    warning: schemas.DispatchWarning,
    request: schemas.WarningResolutionRequest,
) -> tuple[list[str], str | None]:
    if request.type == "acknowledge":
        return [], None

    if request.type == "cancel_tour":
        run = snapshot.run(warning.run_key) if warning.run_key else None
        if run is None:
            raise ValidationError(detail="Warning is not tied to a tour run", errors=[{"code": "no_run"}])
        for booking in run.bookings:
            found = snapshot.pickups.get(booking.booking_id)
            if found is not None:
                await _remove(session, snapshot, *found)
        cancelled = bookings_service.cancel_bookings(run.bookings, reason="cancel_tour")
        await session.flush()
        return cancelled, None

    targets = _warning_targets(snapshot, warning)
    if request.type == "assign_guide":
        guide = await _resolve_guide(session, snapshot, request.guide_id)
        if guide.guide_id in warning.guide_ids:
            raise ValidationError(
                detail=f"Pick a different guide than {guide.display_name}",
                errors=[{"code": "same_guide", "guide_id": guide.guide_id}],
            )
    else:
        needed = sum(booking.total_participants for booking in targets)
        guide = await _create_external_guide(
            session,
            snapshot,
            name=request.external_guide_name,
            contact=request.external_guide_contact,
            vehicle_capacity=request.vehicle_capacity
            or max(settings.dispatch_default_vehicle_capacity, needed),
        )
    return await _give_to_guide(session, snapshot, guide, targets), guide.guide_id


async def resolve_warning(
    session: AsyncSession,
    org_id: uuid.UUID,
    dispatch_date: date,
    warning_id: str,
    request: schemas.WarningResolutionRequest,
) -> schemas.WarningResolutionResponse:
    if request.type == "assign_guide" and not request.guide_id:
        raise ValidationError(
            detail="assign_guide needs a guide_id",
            errors=[{"code": "guide_id_required", "warning_id": warning_id}],
        )
    if request.type == "add_external" and not (request.external_guide_name or "").strip():
        raise ValidationError(
            detail="add_external needs an external_guide_name",
            errors=[{"code": "external_guide_name_required", "warning_id": warning_id}],
        )

    async with day_transaction(
        session, org_id, dispatch_date, operation="resolve_warning", expected_version=request.expected_version
    ) as day:
        snapshot = await board.load_snapshot(session, org_id, dispatch_date)
        if warning_id in snapshot.resolutions:
            raise ConflictError(
                detail=f"Warning {warning_id} was already resolved",
                errors=[{"code": "warning_already_resolved", "warning_id": warning_id}],
            )
        warning = next((item for item in board.detect_warnings(snapshot) if item.warning_id == warning_id), None)
        if warning is None:
            raise NotFoundError(
                detail=f"Warning {warning_id} is not outstanding on {dispatch_date.isoformat()}",
                errors=[{"code": "warning_not_found", "warning_id": warning_id}],
            )
        if request.type not in warning.resolutions:
            raise ValidationError(
                detail=f"{request.type} does not resolve a {warning.type} warning",
                errors=[
                    {
                        "code": "resolution_not_applicable",
                        "warning_id": warning_id,
                        "warning_type": warning.type,
                        "allowed": list(warning.resolutions),
                    }
                ],
            )
        affected, guide_id = await _apply_resolution(session, snapshot, warning, request)
        session.add(
            DispatchWarningResolution(
                org_id=org_id,
                dispatch_date=dispatch_date,
                warning_id=warning_id,
                warning_type=warning.type,
                action=request.type,
                details={"booking_ids": affected, "guide_id": guide_id, "note": request.note},
                resolved_by=request.resolved_by,
            )
        )
        await session.flush()

    logger.info(
        "dispatch_warning_resolved",
        extra={
            "extra": {
                "dispatch_date": dispatch_date.isoformat(),
                "warning_id": warning_id,
                "warning_type": warning.type,
                "action": request.type,
                "guide_id": guide_id,
            }
        },
    )
    return schemas.WarningResolutionResponse(
        warning_id=warning_id,
        action=request.type,
        version=day.version,
        guide_id=guide_id,
        affected_booking_ids=affected,
    )


# Dispatch lifecycle


async def _notify_dispatch(
    session: AsyncSession, event_id: str, adapters: outbox_service.OutboxAdapters | None
) -> list[str]:
    event = await outbox_service.get_outbox_event(session, event_id)
    try:
        delivered, error = await outbox_service.deliver_outbox_event(
            session, event, adapters or outbox_service.OutboxAdapters()
        )
        await session.commit()
    except Exception as exc:  # noqa: BLE001
        await session.rollback()
        logger.warning(
            "dispatch_notify_failed", extra={"extra": {"event_id": event_id, "reason": type(exc).__name__}}
        )
        return [type(exc).__name__]
    if not delivered:
        logger.warning("dispatch_notify_failed", extra={"extra": {"event_id": event_id, "reason": error}})
        return [error or "delivery_failed"]
    return []


async def dispatch(
    session: AsyncSession,
    org_id: uuid.UUID,
    dispatch_date: date,
    *,
    dispatched_by: str | None = None,
    expected_version: int | None = None,
    adapters: outbox_service.OutboxAdapters | None = None,
) -> schemas.DispatchResponse:
    """Lock the date and hand a ``dispatch.completed`` event to the notifier.

    The event is staged in the same transaction as the status change. Delivery
    happens after commit and its failure never undoes the dispatch.
    """

    async with day_transaction(
        session, org_id, dispatch_date, operation="dispatch", expected_version=expected_version
    ) as day:
        snapshot = await board.load_snapshot(session, org_id, dispatch_date)
        outstanding = board.outstanding_warnings(snapshot)
        if outstanding:
            raise ValidationError(
                detail=f"{len(outstanding)} warning(s) must be resolved or acknowledged before dispatch",
                errors=[
                    {"code": "outstanding_warnings", "warning_id": warning.warning_id, "type": warning.type}
                    for warning in outstanding
                ],
            )
        dispatched_at = _now()
        for assignment in snapshot.assignments:
            assignment.notified_at = dispatched_at
        guide_ids = sorted({assignment.guide_id for assignment in snapshot.assignments})
        day.status = DAY_DISPATCHED
        day.dispatched_at = dispatched_at
        day.dispatched_by = dispatched_by
        event = await outbox_service.enqueue_outbox_event(
            session,
            org_id=org_id,
            kind=outbox_service.DISPATCH_COMPLETED,
            payload={
                "org_id": str(org_id),
                "dispatch_date": dispatch_date.isoformat(),
                "dispatched_by": dispatched_by,
                "guide_ids": guide_ids,
            },
            dedupe_key=f"dispatch:{org_id}:{dispatch_date.isoformat()}:{day.version + 1}",
        )
        event_id = event.event_id

    logger.info(
        "dispatch_completed",
        extra={
            "extra": {
                "dispatch_date": dispatch_date.isoformat(),
                "guides": len(guide_ids),
                "dispatched_by": dispatched_by,
                "version": day.version,
            }
        },
    )
    version = day.version
    errors = await _notify_dispatch(session, event_id, adapters)
    return schemas.DispatchResponse(
        date=dispatch_date,
        version=version,
        dispatched_at=dispatched_at,
        guides_notified=len(guide_ids),
        notification_errors=errors,
    )


async def reopen(
    session: AsyncSession,
    org_id: uuid.UUID,
    dispatch_date: date,
    *,
    expected_version: int | None = None,
) -> schemas.DayStateResponse:
    async with day_transaction(
        session,
        org_id,
        dispatch_date,
        operation="reopen",
        expected_version=expected_version,
        allow_dispatched=True,
    ) as day:
        if day.status != DAY_DISPATCHED:
            raise ConflictError(
                detail=f"{dispatch_date.isoformat()} has not been dispatched",
                errors=[{"code": "not_dispatched", "dispatch_date": dispatch_date.isoformat()}],
            )
        day.status = DAY_IN_PROGRESS
        day.reopened_at = _now()
    logger.info("dispatch_reopened", extra={"extra": {"dispatch_date": dispatch_date.isoformat(), "version": day.version}})
    return schemas.DayStateResponse(date=dispatch_date, status=DAY_IN_PROGRESS, version=day.version)


# Ephemeral guides


async def _fill_guide(session: AsyncSession, snapshot: DaySnapshot, guide: Guide, run: TourRun) -> list[str]:
    pickups = snapshot.pickups
    pending = sorted(
        (booking for booking in run.bookings if booking.booking_id not in pickups),
        key=lambda booking: (-booking.total_participants, booking.booking_id),
    )
    placed: list[str] = []
    used = 0
    exclusive = False
    for booking in pending:
        if exclusive or used + booking.total_participants > guide.vehicle_capacity:
            continue
        if booking.is_private and placed:
            continue
        await _place(session, snapshot, booking, guide)
        placed.append(booking.booking_id)
        used += booking.total_participants
        exclusive = booking.is_private
    return placed


def _guide_created(guide: Guide, version: int, assigned: list[str]) -> schemas.GuideCreatedResponse:
    return schemas.GuideCreatedResponse(
        guide_id=guide.guide_id,
        name=guide.display_name,
        kind=guide.kind,
        valid_on=guide.valid_on,
        vehicle_capacity=guide.vehicle_capacity,
        version=version,
        assigned_booking_ids=assigned,
    )


async def add_outsourced_guide_to_run(
    session: AsyncSession,
    org_id: uuid.UUID,
    run_key: str,
    request: schemas.ExternalGuideRequest,
) -> schemas.GuideCreatedResponse:
    key = tours_service.parse_run_key(run_key)
    async with day_transaction(
        session, org_id, key.run_date, operation="add_external_guide", expected_version=request.expected_version
    ) as day:
        snapshot = await board.load_snapshot(session, org_id, key.run_date)
        run = snapshot.run(str(key))
        if run is None:
            raise NotFoundError(
                detail=f"Tour run {key} not found", errors=[{"code": "tour_run_not_found", "run_key": str(key)}]
            )
        guide = await _create_external_guide(
            session, snapshot, name=request.name, contact=request.contact, vehicle_capacity=request.vehicle_capacity
        )
        assigned = await _fill_guide(session, snapshot, guide, run) if request.assign_unassigned else []
    return _guide_created(guide, day.version, assigned)


async def create_temp_guide_for_date(
    session: AsyncSession,
    org_id: uuid.UUID,
    dispatch_date: date,
    request: schemas.TempGuideRequest,
) -> schemas.GuideCreatedResponse:
    async with day_transaction(
        session, org_id, dispatch_date, operation="create_temp_guide", expected_version=request.expected_version
    ) as day:
        guide = await guides_service.create_ephemeral_guide(
            session,
            org_id,
            kind=GUIDE_KIND_TEMPORARY,
            valid_on=dispatch_date,
            first_name=request.first_name,
            last_name=request.last_name,
            phone=request.phone,
            email=request.email,
            vehicle_capacity=request.vehicle_capacity,
            available_from=request.available_from,
            available_to=request.available_to,
        )
    return _guide_created(guide, day.version, [])


# Pickup order and check-in


async def reorder_pickups(
    session: AsyncSession,
    org_id: uuid.UUID,
    guide_assignment_id: str,
    booking_ids: Sequence[str],
    *,
    expected_version: int | None = None,
) -> schemas.ReorderResponse:
    assignment = await pickup_ledger.get_guide_assignment(session, org_id, guide_assignment_id)
    dispatch_date = assignment.dispatch_date
    async with day_transaction(
        session, org_id, dispatch_date, operation="reorder", expected_version=expected_version
    ) as day:
        snapshot = await board.load_snapshot(session, org_id, dispatch_date)
        pickups = await pickup_ledger.reorder(
            session,
            assignment=assignment,
            booking_ids=booking_ids,
            matrix=snapshot.matrix,
            config=snapshot.config.route,
        )
        views = [_pickup_view(pickup) for pickup in pickups]
    return schemas.ReorderResponse(guide_assignment_id=guide_assignment_id, version=day.version, pickups=views)


async def _check_in(
    session: AsyncSession,
    org_id: uuid.UUID,
    pickup_id: str,
    *,
    operation: str,
    expected_version: int | None,
    transition,
) -> schemas.PickupResponse:
    pickup = await pickup_ledger.get_pickup(session, org_id, pickup_id)
    async with day_transaction(
        session,
        org_id,
        pickup.dispatch_date,
        operation=operation,
        expected_version=expected_version,
        allow_dispatched=True,
    ) as day:
        transition(pickup)
        await session.flush()
        view = _pickup_view(pickup)
    return schemas.PickupResponse(version=day.version, pickup=view)


async def mark_picked_up(
    session: AsyncSession,
    org_id: uuid.UUID,
    pickup_id: str,
    *,
    at: datetime | None = None,
    expected_version: int | None = None,
) -> schemas.PickupResponse:
    return await _check_in(
        session,
        org_id,
        pickup_id,
        operation="mark_picked_up",
        expected_version=expected_version,
        transition=lambda pickup: pickup_ledger.mark_picked_up(pickup, at),
    )


async def mark_no_show(
    session: AsyncSession, org_id: uuid.UUID, pickup_id: str, *, expected_version: int | None = None
) -> schemas.PickupResponse:
    return await _check_in(
        session,
        org_id,
        pickup_id,
        operation="mark_no_show",
        expected_version=expected_version,
        transition=pickup_ledger.mark_no_show,
    )


async def update_pickup_time(
    session: AsyncSession,
    org_id: uuid.UUID,
    pickup_id: str,
    pickup_time: str,
    *,
    expected_version: int | None = None,
) -> schemas.PickupResponse:
    return await _check_in(
        session,
        org_id,
        pickup_id,
        operation="update_pickup_time",
        expected_version=expected_version,
        transition=lambda pickup: pickup_ledger.update_pickup_time(pickup, pickup_time),
    )
