"""Read-side projections for one dispatch date.

``load_snapshot`` pulls everything a date needs in a handful of queries; the rest
of the module derives runs, guide timelines and warnings from that snapshot
without further I/O.
"""

from __future__ import annotations

import hashlib
import uuid
from dataclasses import dataclass, field
from datetime import date
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.bookings.db_models import Booking
from app.domain.dispatch import schemas
from app.domain.dispatch.auto_assignment import (
    EngineConfig,
    ExistingLoad,
    GuideInput,
    RunInput,
    is_eligible,
    rank_guides,
    runs_overlap,
)
from app.domain.dispatch.clock import format_minutes, parse_hhmm
from app.domain.dispatch.db_models import (
    DAY_DISPATCHED,
    DAY_NOT_STARTED,
    DispatchDay,
    DispatchWarningResolution,
    GuideAssignment,
    PickupAssignment,
)
from app.domain.dispatch.pickup_ledger import stop_for_booking, stop_for_pickup
from app.domain.guides import service as guides_service
from app.domain.guides.db_models import Guide
from app.domain.pickups.service import load_travel_matrix
from app.domain.pickups.travel import TravelMatrix
from app.domain.tours import service as tours_service
from app.domain.tours.db_models import Tour
from app.domain.tours.service import TourRun
from app.settings import settings

MAX_SUGGESTED_GUIDES = 3

_SEVERITY = {
    "unassigned_bookings": "critical",
    "no_qualified_guide": "critical",
    "capacity_exceeded": "critical",
    "guide_unavailable": "critical",
    "guide_conflict": "warn",
    "insufficient_guides": "warn",
}


@dataclass
class DaySnapshot:
    org_id: uuid.UUID
    dispatch_date: date
    runs: list[TourRun]
    guides: dict[str, Guide]
    assignments: list[GuideAssignment]
    matrix: TravelMatrix
    durations: dict[str, int]
    resolutions: dict[str, DispatchWarningResolution] = field(default_factory=dict)
    config: EngineConfig = field(default_factory=EngineConfig.from_settings)

    @property
    def bookings(self) -> dict[str, Booking]:
        return {booking.booking_id: booking for run in self.runs for booking in run.bookings}

    @property
    def pickups(self) -> dict[str, tuple[PickupAssignment, GuideAssignment]]:
        return {
            pickup.booking_id: (pickup, assignment)
            for assignment in self.assignments
            for pickup in assignment.pickups
        }

    def run(self, run_key: str) -> TourRun | None:
        return next((run for run in self.runs if run.run_key == run_key), None)

    def run_for_booking(self, booking_id: str) -> TourRun | None:
        return next(
            (run for run in self.runs if any(booking.booking_id == booking_id for booking in run.bookings)),
            None,
        )

    def assignments_for(self, run: TourRun) -> list[GuideAssignment]:
        return [assignment for assignment in self.assignments if assignment.run_key == run.run_key]

    def assignments_of(self, guide_id: str) -> list[GuideAssignment]:
        return [assignment for assignment in self.assignments if assignment.guide_id == guide_id]

    def span(self, assignment: GuideAssignment) -> tuple[int, int]:
        start = parse_hhmm(assignment.run_time)
        duration = self.durations.get(assignment.tour_id) or settings.dispatch_default_tour_minutes
        return start, start + duration

    def is_private(self, booking_id: str) -> bool:
        booking = self.bookings.get(booking_id)
        return bool(booking and booking.is_private)


async def load_snapshot(session: AsyncSession, org_id: uuid.UUID, dispatch_date: date) -> DaySnapshot:
    runs = await tours_service.get_for_date(session, org_id, dispatch_date)
    guides = await guides_service.list_guides(session, org_id, include_inactive=True)
    result = await session.execute(
        select(GuideAssignment)
        .where(GuideAssignment.org_id == org_id, GuideAssignment.dispatch_date == dispatch_date)
        .order_by(GuideAssignment.run_time, GuideAssignment.tour_id, GuideAssignment.guide_id)
    )
    assignments = list(result.scalars().all())
    result = await session.execute(select(Tour.tour_id, Tour.duration_minutes).where(Tour.org_id == org_id))
    durations = {tour_id: minutes for tour_id, minutes in result.all() if minutes}
    result = await session.execute(
        select(DispatchWarningResolution).where(
            DispatchWarningResolution.org_id == org_id,
            DispatchWarningResolution.dispatch_date == dispatch_date,
        )
    )
    resolutions = {row.warning_id: row for row in result.scalars().all()}
    return DaySnapshot(
        org_id=org_id,
        dispatch_date=dispatch_date,
        runs=runs,
        guides={guide.guide_id: guide for guide in guides},
        assignments=assignments,
        matrix=await load_travel_matrix(session, org_id),
        durations=durations,
        resolutions=resolutions,
    )


async def get_day(session: AsyncSession, org_id: uuid.UUID, dispatch_date: date) -> DispatchDay | None:
    return await session.scalar(
        select(DispatchDay).where(DispatchDay.org_id == org_id, DispatchDay.dispatch_date == dispatch_date)
    )


def engine_guides(snapshot: DaySnapshot, *, skip_run_key: str | None = None) -> list[GuideInput]:
    """Schedulable guides as engine inputs, with their other runs as busy intervals."""

    inputs = []
    for guide_id in sorted(snapshot.guides):
        guide = snapshot.guides[guide_id]
        windows = guides_service.availability_windows(guide, snapshot.dispatch_date)
        if not windows:
            continue
        held = snapshot.assignments_of(guide_id)
        inputs.append(
            GuideInput(
                guide_id=guide_id,
                name=guide.display_name,
                vehicle_capacity=guide.vehicle_capacity,
                windows=windows,
                qualified_tour_ids=None
                if guide.is_ephemeral
                else frozenset(item.tour_id for item in guide.qualifications),
                preferred_zones=tuple(guide.preferred_zones or ()),
                base_zone=guide.base_zone,
                busy=tuple(snapshot.span(item) for item in held if item.run_key != skip_run_key),
                day_runs=len(held),
                day_guests=sum(pickup.passenger_count for item in held for pickup in item.pickups),
            )
        )
    return inputs


def run_input(snapshot: DaySnapshot, run: TourRun, *, exclude_booking_id: str | None = None) -> RunInput:
    pickups = snapshot.pickups
    existing = []
    for assignment in snapshot.assignments_for(run):
        stops = tuple(
            stop_for_pickup(pickup, is_private=snapshot.is_private(pickup.booking_id))
            for pickup in assignment.pickups
            if pickup.booking_id != exclude_booking_id
        )
        existing.append(ExistingLoad(guide_id=assignment.guide_id, stops=stops))
    return RunInput(
        run_key=run.run_key,
        tour_id=run.tour_id,
        start_minutes=run.start_minutes,
        end_minutes=run.end_minutes,
        bookings=tuple(
            stop_for_booking(booking)
            for booking in run.bookings
            if booking.booking_id not in pickups and booking.booking_id != exclude_booking_id
        ),
        existing=tuple(existing),
    )


def suggest_guides(
    snapshot: DaySnapshot, run: TourRun, booking: Booking, *, limit: int | None = None
) -> list[schemas.SuggestedGuide]:
    ranked = rank_guides(
        stop_for_booking(booking),
        run_input(snapshot, run, exclude_booking_id=booking.booking_id),
        engine_guides(snapshot, skip_run_key=run.run_key),
        snapshot.matrix,
        snapshot.config,
    )
    if limit is not None:
        ranked = ranked[:limit]
    return [
        schemas.SuggestedGuide(
            guide_id=item.guide_id,
            guide_name=item.guide_name,
            score=item.score,
            reasons=list(item.reasons),
            added_drive_minutes=item.added_drive_minutes,
            current_guests=item.current_guests,
            vehicle_capacity=item.vehicle_capacity,
        )
        for item in ranked
    ]


def warning_signature(warning_type: str, run_key: str | None, booking_ids: Iterable[str], guide_ids: Iterable[str]) -> str:
    signature = "|".join(
        [warning_type, run_key or "", ",".join(sorted(booking_ids)), ",".join(sorted(guide_ids))]
    )
    return hashlib.sha1(signature.encode("utf-8")).hexdigest()[:16]


def _make_warning(
    warning_type: str,
    message: str,
    *,
    run_key: str | None,
    resolutions: list[str],
    booking_ids: list[str] | None = None,
    guide_ids: list[str] | None = None,
    suggested: list[schemas.SuggestedGuide] | None = None,
) -> schemas.DispatchWarning:
    booking_ids = sorted(booking_ids or [])
    guide_ids = sorted(guide_ids or [])
    return schemas.DispatchWarning(
        warning_id=warning_signature(warning_type, run_key, booking_ids, guide_ids),
        type=warning_type,
        severity=_SEVERITY[warning_type],
        message=message,
        run_key=run_key,
        booking_ids=booking_ids,
        guide_ids=guide_ids,
        resolutions=resolutions,
        suggested_guides=suggested or [],
    )


def _run_warnings(snapshot: DaySnapshot, run: TourRun, guides: list[GuideInput]) -> list[schemas.DispatchWarning]:
    pickups = snapshot.pickups
    unassigned = [booking for booking in run.bookings if booking.booking_id not in pickups]
    if not unassigned:
        return []
    warnings = []
    unassigned_ids = [booking.booking_id for booking in unassigned]
    guests = sum(booking.total_participants for booking in unassigned)
    largest = min(unassigned, key=lambda booking: (-booking.total_participants, booking.booking_id))
    warnings.append(
        _make_warning(
            "unassigned_bookings",
            f"{len(unassigned)} booking(s) with {guests} guests have no guide on {run.tour_name} at {run.run_time}",
            run_key=run.run_key,
            booking_ids=unassigned_ids,
            resolutions=["assign_guide", "add_external", "cancel_tour", "acknowledge"],
            suggested=suggest_guides(snapshot, run, largest, limit=MAX_SUGGESTED_GUIDES),
        )
    )

    candidate = run_input(snapshot, run)
    assigned = {assignment.guide_id for assignment in snapshot.assignments_for(run)}
    staffable = assigned | {guide.guide_id for guide in guides if is_eligible(guide, candidate, snapshot.config)}
    if not staffable:
        warnings.append(
            _make_warning(
                "no_qualified_guide",
                f"No qualified guide is free for {run.tour_name} at {run.run_time}",
                run_key=run.run_key,
                booking_ids=unassigned_ids,
                resolutions=["add_external", "cancel_tour", "acknowledge"],
            )
        )
    elif len(staffable) < run.guides_required:
        warnings.append(
            _make_warning(
                "insufficient_guides",
                (
                    f"{run.tour_name} at {run.run_time} needs {run.guides_required} guides, "
                    f"{len(staffable)} can staff it"
                ),
                run_key=run.run_key,
                booking_ids=unassigned_ids,
                resolutions=["add_external", "cancel_tour", "acknowledge"],
            )
        )
    return warnings


def _assignment_warnings(snapshot: DaySnapshot, assignment: GuideAssignment) -> list[schemas.DispatchWarning]:
    guide = snapshot.guides.get(assignment.guide_id)
    if guide is None:
        return []
    warnings = []
    run_key = assignment.run_key
    booking_ids = [pickup.booking_id for pickup in assignment.pickups]
    guests = sum(pickup.passenger_count for pickup in assignment.pickups)
    start, end = snapshot.span(assignment)
    if guests > guide.vehicle_capacity:
        warnings.append(
            _make_warning(
                "capacity_exceeded",
                f"{guide.display_name} carries {guests} guests in a {guide.vehicle_capacity}-seat vehicle",
                run_key=run_key,
                booking_ids=booking_ids,
                guide_ids=[guide.guide_id],
                resolutions=["assign_guide", "acknowledge"],
            )
        )
    if not guides_service.is_available_for_window(guide, snapshot.dispatch_date, start, end):
        warnings.append(
            _make_warning(
                "guide_unavailable",
                f"{guide.display_name} is not available for {format_minutes(start)}-{format_minutes(end)}",
                run_key=run_key,
                booking_ids=booking_ids,
                guide_ids=[guide.guide_id],
                resolutions=["assign_guide", "add_external", "acknowledge"],
            )
        )
    if not guides_service.is_qualified(guide, assignment.tour_id):
        warnings.append(
            _make_warning(
                "no_qualified_guide",
                f"{guide.display_name} is not qualified for this tour",
                run_key=run_key,
                booking_ids=booking_ids,
                guide_ids=[guide.guide_id],
                resolutions=["assign_guide", "acknowledge"],
            )
        )
    return warnings


def _conflict_warnings(snapshot: DaySnapshot) -> list[schemas.DispatchWarning]:
    warnings = []
    buffer_minutes = snapshot.config.run_buffer_minutes
    for guide_id in sorted({assignment.guide_id for assignment in snapshot.assignments}):
        held = sorted(snapshot.assignments_of(guide_id), key=lambda item: (snapshot.span(item), item.run_key))
        guide = snapshot.guides.get(guide_id)
        for index, earlier in enumerate(held):
            for later in held[index + 1 :]:
                if not runs_overlap(snapshot.span(earlier), snapshot.span(later), buffer_minutes):
                    continue
                name = guide.display_name if guide else guide_id
                warnings.append(
                    _make_warning(
                        "guide_conflict",
                        f"{name} holds overlapping runs at {earlier.run_time} and {later.run_time}",
                        run_key=later.run_key,
                        booking_ids=[pickup.booking_id for pickup in later.pickups],
                        guide_ids=[guide_id],
                        resolutions=["assign_guide", "acknowledge"],
                    )
                )
    return warnings


def detect_warnings(snapshot: DaySnapshot) -> list[schemas.DispatchWarning]:
    """Every dispatch problem for the date, acknowledged or not."""

    warnings: list[schemas.DispatchWarning] = []
    for run in snapshot.runs:
        warnings.extend(_run_warnings(snapshot, run, engine_guides(snapshot, skip_run_key=run.run_key)))
    for assignment in snapshot.assignments:
        warnings.extend(_assignment_warnings(snapshot, assignment))
    warnings.extend(_conflict_warnings(snapshot))
    return warnings


def outstanding_warnings(snapshot: DaySnapshot) -> list[schemas.DispatchWarning]:
    return [warning for warning in detect_warnings(snapshot) if warning.warning_id not in snapshot.resolutions]


def _run_status(run: TourRun, assigned_bookings: int, guides_assigned: int) -> str:
    if assigned_bookings == 0:
        return "unassigned"
    if assigned_bookings < len(run.bookings):
        return "partial"
    if guides_assigned > run.guides_required:
        return "overstaffed"
    return "assigned"


def run_views(snapshot: DaySnapshot) -> list[schemas.TourRunView]:
    pickups = snapshot.pickups
    views = []
    for run in snapshot.runs:
        guide_ids = sorted({assignment.guide_id for assignment in snapshot.assignments_for(run)})
        bookings = []
        for booking in run.bookings:
            pickup, assignment = pickups.get(booking.booking_id, (None, None))
            bookings.append(
                schemas.RunBooking(
                    booking_id=booking.booking_id,
                    reference_number=booking.reference_number,
                    customer_name=booking.customer_name,
                    guests=booking.total_participants,
                    is_private=booking.is_private,
                    pickup_address_id=booking.pickup_address_id,
                    zone=snapshot.matrix.zone_of(booking.pickup_address_id),
                    guide_id=assignment.guide_id if assignment else None,
                    pickup_id=pickup.pickup_id if pickup else None,
                    pickup_position=pickup.position if pickup else None,
                    pickup_time=pickup.calculated_pickup_time if pickup else None,
                    pickup_status=pickup.status if pickup else None,
                )
            )
        assigned_bookings = sum(1 for item in bookings if item.guide_id is not None)
        views.append(
            schemas.TourRunView(
                run_key=run.run_key,
                tour_id=run.tour_id,
                tour_name=run.tour_name,
                date=run.run_date,
                time=run.run_time,
                end_time=run.end_time,
                total_guests=run.total_guests,
                guides_required=run.guides_required,
                guides_assigned=len(guide_ids),
                assigned_guide_ids=guide_ids,
                status=_run_status(run, assigned_bookings, len(guide_ids)),
                bookings=bookings,
            )
        )
    return views


def available_guide_view(guide: guides_service.AvailableGuide) -> schemas.AvailableGuideView:
    return schemas.AvailableGuideView(
        guide_id=guide.guide_id,
        name=guide.name,
        kind=guide.kind,
        vehicle_capacity=guide.vehicle_capacity,
        available_from=format_minutes(guide.available_from),
        available_to=format_minutes(guide.available_to),
        qualified_tour_ids=sorted(guide.qualified_tour_ids),
        base_zone=guide.base_zone,
        preferred_zones=list(guide.preferred_zones),
        current_assignments=list(guide.current_assignments),
    )


def _segments(snapshot: DaySnapshot, assignment: GuideAssignment, tour_name: str) -> list[schemas.TimelineSegment]:
    segments = []
    run_key = assignment.run_key
    for pickup in assignment.pickups:
        if pickup.calculated_pickup_time is None:
            continue
        pickup_start = parse_hhmm(pickup.calculated_pickup_time)
        if pickup.drive_time_minutes:
            segments.append(
                schemas.TimelineSegment(
                    type="drive",
                    start_time=format_minutes(pickup_start - pickup.drive_time_minutes),
                    end_time=format_minutes(pickup_start),
                    run_key=run_key,
                    booking_id=pickup.booking_id,
                    label=f"Drive {pickup.drive_time_minutes} min",
                )
            )
        boarding = snapshot.matrix.pickup_minutes(pickup.pickup_address_id, settings.dispatch_average_pickup_minutes)
        point = snapshot.matrix.point(pickup.pickup_address_id)
        segments.append(
            schemas.TimelineSegment(
                type="pickup",
                start_time=format_minutes(pickup_start),
                end_time=format_minutes(pickup_start + boarding),
                run_key=run_key,
                booking_id=pickup.booking_id,
                pickup_id=pickup.pickup_id,
                pickup_address_id=pickup.pickup_address_id,
                guests=pickup.passenger_count,
                status=pickup.status,
                label=point.name if point else "Pickup",
            )
        )
    start, end = snapshot.span(assignment)
    segments.append(
        schemas.TimelineSegment(
            type="tour",
            start_time=format_minutes(start),
            end_time=format_minutes(end),
            run_key=run_key,
            guests=sum(pickup.passenger_count for pickup in assignment.pickups),
            label=tour_name,
        )
    )
    return segments


def _confidence(utilization: int, problem: bool) -> str:
    if problem:
        return "problem"
    if utilization >= 80:
        return "optimal"
    if utilization >= 50:
        return "good"
    return "review"


def guide_timelines(snapshot: DaySnapshot, warnings: list[schemas.DispatchWarning] | None = None) -> list[schemas.GuideTimeline]:
    warnings = detect_warnings(snapshot) if warnings is None else warnings
    flagged = {
        guide_id
        for warning in warnings
        if warning.type in {"capacity_exceeded", "guide_unavailable", "guide_conflict"}
        for guide_id in warning.guide_ids
    }
    names = {run.run_key: run.tour_name for run in snapshot.runs}
    timelines = []
    for guide_id in sorted({assignment.guide_id for assignment in snapshot.assignments}):
        guide = snapshot.guides.get(guide_id)
        if guide is None:
            continue
        held = sorted(snapshot.assignments_of(guide_id), key=lambda item: (snapshot.span(item), item.run_key))
        loads = [sum(pickup.passenger_count for pickup in item.pickups) for item in held]
        peak = max(loads, default=0)
        utilization = round(100 * peak / guide.vehicle_capacity) if guide.vehicle_capacity else 0
        segments = []
        for assignment in held:
            segments.extend(_segments(snapshot, assignment, names.get(assignment.run_key, assignment.tour_id)))
        timelines.append(
            schemas.GuideTimeline(
                guide_id=guide_id,
                guide_name=guide.display_name,
                kind=guide.kind,
                vehicle_capacity=guide.vehicle_capacity,
                total_guests=sum(loads),
                utilization=utilization,
                confidence=_confidence(utilization, guide_id in flagged),
                segments=segments,
            )
        )
    return timelines


def day_status(
    snapshot: DaySnapshot,
    day: DispatchDay | None,
    warnings: list[schemas.DispatchWarning],
) -> schemas.DispatchStatusResponse:
    pickups = snapshot.pickups
    views = run_views(snapshot)
    status = day.status if day else DAY_NOT_STARTED
    available = [
        guide
        for guide in snapshot.guides.values()
        if guides_service.is_available_on_date(guide, snapshot.dispatch_date)
    ]
    return schemas.DispatchStatusResponse(
        date=snapshot.dispatch_date,
        status=status,
        version=day.version if day else 0,
        is_dispatched=status == DAY_DISPATCHED,
        dispatched_at=day.dispatched_at if day else None,
        dispatched_by=day.dispatched_by if day else None,
        total_runs=len(views),
        assigned_runs=sum(1 for view in views if view.status in {"assigned", "overstaffed"}),
        unassigned_runs=sum(1 for view in views if view.status in {"unassigned", "partial"}),
        total_guests=sum(run.total_guests for run in snapshot.runs),
        assigned_guests=sum(pickup.passenger_count for pickup, _ in pickups.values()),
        guides_available=len(available),
        guides_assigned=len({assignment.guide_id for assignment in snapshot.assignments}),
        warnings=warnings,
        can_dispatch=status != DAY_DISPATCHED and not warnings,
    )
