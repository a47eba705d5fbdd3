"""Persisted pickup order for each guide assignment.

Every structural change keeps positions contiguous (0..n-1) and recomputes the
planned pickup times of the guide assignment it touches. Nothing here commits;
the command center owns the transaction.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.bookings.db_models import Booking
from app.domain.dispatch.clock import format_minutes, normalize_hhmm, parse_hhmm
from app.domain.dispatch.db_models import (
    PICKUP_NO_SHOW,
    PICKUP_PENDING,
    PICKUP_PICKED_UP,
    TERMINAL_PICKUP_STATUSES,
    GuideAssignment,
    PickupAssignment,
)
from app.domain.dispatch.routing import RouteConfig, Stop, route_drive_minutes, schedule_pickups
from app.domain.errors import CapacityError, ConflictError, NotFoundError, ValidationError
from app.domain.pickups.travel import TravelMatrix
from app.domain.tours.service import run_key_for
from app.settings import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GhostStop:
    position: int
    booking_id: str
    guests: int
    pickup_time: str
    drive_minutes: int
    is_new: bool


@dataclass(frozen=True)
class GhostPreview:
    valid: bool
    reason: str | None
    stops: tuple[GhostStop, ...]
    added_drive_minutes: int
    current_guests: int
    max_guests: int
    is_efficient: bool
    recommendation: str
    moved_from_assignment_id: str | None = None


def stop_for_booking(booking: Booking) -> Stop:
    return Stop(
        booking_id=booking.booking_id,
        guests=booking.total_participants,
        pickup_address_id=booking.pickup_address_id,
        is_private=booking.is_private,
    )


def stop_for_pickup(pickup: PickupAssignment, is_private: bool = False) -> Stop:
    return Stop(
        booking_id=pickup.booking_id,
        guests=pickup.passenger_count,
        pickup_address_id=pickup.pickup_address_id,
        is_private=is_private,
    )


def assignment_guests(assignment: GuideAssignment) -> int:
    return sum(pickup.passenger_count for pickup in assignment.pickups)


def _renumber(assignment: GuideAssignment) -> None:
    for index, pickup in enumerate(assignment.pickups):
        pickup.position = index


def recalculate_times(assignment: GuideAssignment, matrix: TravelMatrix, config: RouteConfig | None = None) -> None:
    """Replan pickup times for every stop whose time was not set by hand."""

    config = config or RouteConfig.from_settings()
    stops = [stop_for_pickup(pickup) for pickup in assignment.pickups]
    scheduled = schedule_pickups(stops, parse_hhmm(assignment.run_time), matrix, config)
    for pickup, planned in zip(assignment.pickups, scheduled):
        pickup.drive_time_minutes = planned.drive_minutes
        if not pickup.time_overridden:
            pickup.calculated_pickup_time = planned.pickup_time


async def get_guide_assignment(session: AsyncSession, org_id: uuid.UUID, assignment_id: str) -> GuideAssignment:
    assignment = await session.scalar(
        select(GuideAssignment).where(
            GuideAssignment.org_id == org_id, GuideAssignment.assignment_id == assignment_id
        )
    )
    if assignment is None:
        raise NotFoundError(
            detail=f"Guide assignment {assignment_id} not found",
            errors=[{"code": "guide_assignment_not_found", "guide_assignment_id": assignment_id}],
        )
    return assignment


async def get_pickup(session: AsyncSession, org_id: uuid.UUID, pickup_id: str) -> PickupAssignment:
    pickup = await session.scalar(
        select(PickupAssignment)
        .where(PickupAssignment.org_id == org_id, PickupAssignment.pickup_id == pickup_id)
        .execution_options(populate_existing=True)
    )
    if pickup is None:
        raise NotFoundError(
            detail=f"Pickup assignment {pickup_id} not found",
            errors=[{"code": "pickup_not_found", "pickup_id": pickup_id}],
        )
    return pickup


async def find_pickup_for_booking(
    session: AsyncSession, org_id: uuid.UUID, dispatch_date: date, booking_id: str
) -> PickupAssignment | None:
    return await session.scalar(
        select(PickupAssignment).where(
            PickupAssignment.org_id == org_id,
            PickupAssignment.dispatch_date == dispatch_date,
            PickupAssignment.booking_id == booking_id,
        )
    )


async def private_booking_ids(session: AsyncSession, assignment: GuideAssignment) -> set[str]:
    booking_ids = [pickup.booking_id for pickup in assignment.pickups]
    if not booking_ids:
        return set()
    result = await session.execute(
        select(Booking.booking_id).where(Booking.booking_id.in_(booking_ids), Booking.is_private.is_(True))
    )
    return set(result.scalars().all())


def check_same_run(assignment: GuideAssignment, booking: Booking) -> None:
    key = run_key_for(booking)
    if (key.tour_id, key.run_date, key.run_time) != (
        assignment.tour_id,
        assignment.dispatch_date,
        assignment.run_time,
    ):
        raise ValidationError(
            detail=f"Booking {booking.booking_id} is not part of run {assignment.run_key}",
            errors=[
                {
                    "code": "booking_not_in_run",
                    "booking_id": booking.booking_id,
                    "run_key": assignment.run_key,
                }
            ],
        )


def check_capacity(assignment: GuideAssignment, guests: int, vehicle_capacity: int, booking_id: str) -> None:
    current = assignment_guests(assignment)
    if current + guests > vehicle_capacity:
        raise CapacityError(
            detail=(
                f"Adding booking {booking_id} ({guests} guests) would put guide {assignment.guide_id} "
                f"at {current + guests} of {vehicle_capacity} seats"
            ),
            errors=[
                {
                    "code": "capacity_exceeded",
                    "booking_id": booking_id,
                    "guide_id": assignment.guide_id,
                    "current": current,
                    "requested": guests,
                    "capacity": vehicle_capacity,
                }
            ],
        )


def check_private(assignment: GuideAssignment, booking: Booking, private_ids: set[str]) -> None:
    if booking.is_private and assignment.pickups:
        raise ConflictError(
            detail=f"Private booking {booking.booking_id} needs its own guide",
            errors=[{"code": "private_requires_empty_guide", "booking_id": booking.booking_id, "guide_id": assignment.guide_id}],
        )
    if private_ids:
        raise ConflictError(
            detail=f"Guide {assignment.guide_id} is carrying a private booking",
            errors=[{"code": "guide_has_private_booking", "booking_id": booking.booking_id, "guide_id": assignment.guide_id}],
        )


def _check_position(position: int | None, size: int) -> int:
    if position is None:
        return size
    if position < 0 or position > size:
        raise ValidationError(
            detail=f"Position must be between 0 and {size}",
            errors=[{"code": "invalid_position", "position": position, "max": size}],
        )
    return position


async def assign(
    session: AsyncSession,
    *,
    assignment: GuideAssignment,
    booking: Booking,
    vehicle_capacity: int,
    matrix: TravelMatrix,
    position: int | None = None,
    config: RouteConfig | None = None,
) -> PickupAssignment:
    check_same_run(assignment, booking)
    existing = await find_pickup_for_booking(session, assignment.org_id, assignment.dispatch_date, booking.booking_id)
    if existing is not None:
        raise ConflictError(
            detail=f"Booking {booking.booking_id} is already assigned; unassign it first",
            errors=[
                {
                    "code": "booking_already_assigned",
                    "booking_id": booking.booking_id,
                    "guide_assignment_id": existing.guide_assignment_id,
                }
            ],
        )
    check_private(assignment, booking, await private_booking_ids(session, assignment))
    check_capacity(assignment, booking.total_participants, vehicle_capacity, booking.booking_id)
    index = _check_position(position, len(assignment.pickups))

    pickup = PickupAssignment(
        org_id=assignment.org_id,
        dispatch_date=assignment.dispatch_date,
        booking_id=booking.booking_id,
        pickup_address_id=booking.pickup_address_id,
        position=index,
        passenger_count=booking.total_participants,
        status=PICKUP_PENDING,
        time_overridden=False,
    )
    assignment.pickups.insert(index, pickup)
    _renumber(assignment)
    recalculate_times(assignment, matrix, config)
    await session.flush()
    logger.info(
        "pickup_assigned",
        extra={
            "extra": {
                "booking_id": booking.booking_id,
                "guide_id": assignment.guide_id,
                "run_key": assignment.run_key,
                "position": pickup.position,
            }
        },
    )
    return pickup


async def unassign(
    session: AsyncSession,
    *,
    assignment: GuideAssignment,
    pickup: PickupAssignment,
    matrix: TravelMatrix,
    config: RouteConfig | None = None,
) -> None:
    assignment.pickups.remove(pickup)
    _renumber(assignment)
    recalculate_times(assignment, matrix, config)
    await session.flush()
    logger.info(
        "pickup_unassigned",
        extra={
            "extra": {
                "booking_id": pickup.booking_id,
                "guide_id": assignment.guide_id,
                "run_key": assignment.run_key,
            }
        },
    )


async def reorder(
    session: AsyncSession,
    *,
    assignment: GuideAssignment,
    booking_ids: Sequence[str],
    matrix: TravelMatrix,
    config: RouteConfig | None = None,
) -> list[PickupAssignment]:
    by_booking = {pickup.booking_id: pickup for pickup in assignment.pickups}
    if len(booking_ids) != len(set(booking_ids)) or set(booking_ids) != set(by_booking):
        raise ValidationError(
            detail="Pickup order must list every booking on this guide exactly once",
            errors=[
                {
                    "code": "pickup_order_mismatch",
                    "guide_assignment_id": assignment.assignment_id,
                    "expected": sorted(by_booking),
                    "received": list(booking_ids),
                }
            ],
        )
    for index, booking_id in enumerate(booking_ids):
        pickup = by_booking[booking_id]
        if pickup.status in TERMINAL_PICKUP_STATUSES and pickup.position != index:
            raise ConflictError(
                detail=f"Booking {booking_id} was already {pickup.status} and cannot be moved",
                errors=[{"code": "pickup_terminal", "booking_id": booking_id, "status": pickup.status}],
            )
    order = {booking_id: index for index, booking_id in enumerate(booking_ids)}
    assignment.pickups.sort(key=lambda pickup: order[pickup.booking_id])
    _renumber(assignment)
    recalculate_times(assignment, matrix, config)
    await session.flush()
    return list(assignment.pickups)


def _ensure_pending(pickup: PickupAssignment) -> None:
    if pickup.status in TERMINAL_PICKUP_STATUSES:
        raise ConflictError(
            detail=f"Pickup for booking {pickup.booking_id} is already {pickup.status}",
            errors=[{"code": "pickup_terminal", "booking_id": pickup.booking_id, "status": pickup.status}],
        )


def mark_picked_up(pickup: PickupAssignment, at: datetime | None = None) -> PickupAssignment:
    _ensure_pending(pickup)
    pickup.status = PICKUP_PICKED_UP
    pickup.actual_pickup_time = at or datetime.now(tz=timezone.utc)
    return pickup


def mark_no_show(pickup: PickupAssignment) -> PickupAssignment:
    _ensure_pending(pickup)
    pickup.status = PICKUP_NO_SHOW
    return pickup


def update_pickup_time(pickup: PickupAssignment, value: str) -> PickupAssignment:
    _ensure_pending(pickup)
    try:
        pickup.calculated_pickup_time = normalize_hhmm(value)
    except ValueError as exc:
        raise ValidationError(
            detail=f"Pickup time {value} must use HH:MM",
            errors=[{"code": "invalid_time", "booking_id": pickup.booking_id, "value": value}],
        ) from exc
    pickup.time_overridden = True
    return pickup


def calculate_ghost_preview(
    *,
    current: Sequence[Stop],
    candidate: Stop,
    departure_minutes: int,
    vehicle_capacity: int,
    matrix: TravelMatrix,
    position: int | None = None,
    config: RouteConfig | None = None,
    efficiency_threshold: int | None = None,
    moved_from_assignment_id: str | None = None,
) -> GhostPreview:
    """Project a drop of ``candidate`` onto a guide without touching any state."""

    config = config or RouteConfig.from_settings()
    threshold = settings.dispatch_efficiency_threshold_minutes if efficiency_threshold is None else efficiency_threshold
    others = [stop for stop in current if stop.booking_id != candidate.booking_id]
    current_guests = sum(stop.guests for stop in others)

    reason = None
    if current_guests + candidate.guests > vehicle_capacity:
        reason = f"Needs {current_guests + candidate.guests} seats, vehicle has {vehicle_capacity}"
    elif candidate.is_private and others:
        reason = "Private booking needs an empty guide"
    elif any(stop.is_private for stop in others):
        reason = "Guide is carrying a private booking"
    elif position is not None and not 0 <= position <= len(others):
        reason = f"Position must be between 0 and {len(others)}"
    if reason is not None:
        return GhostPreview(
            valid=False,
            reason=reason,
            stops=(),
            added_drive_minutes=0,
            current_guests=current_guests,
            max_guests=vehicle_capacity,
            is_efficient=False,
            recommendation=reason,
            moved_from_assignment_id=moved_from_assignment_id,
        )

    index = len(others) if position is None else position
    route = others[:index] + [candidate] + others[index:]
    added = route_drive_minutes(route, matrix) - route_drive_minutes(others, matrix)
    scheduled = schedule_pickups(route, departure_minutes, matrix, config)
    is_efficient = added <= threshold
    if is_efficient:
        recommendation = f"Good fit: adds {added} min of driving"
    else:
        recommendation = f"Adds {added} min of driving; consider another guide or position"
    return GhostPreview(
        valid=True,
        reason=None,
        stops=tuple(
            GhostStop(
                position=item.position,
                booking_id=item.stop.booking_id,
                guests=item.stop.guests,
                pickup_time=format_minutes(item.pickup_minutes),
                drive_minutes=item.drive_minutes,
                is_new=item.stop.booking_id == candidate.booking_id,
            )
            for item in scheduled
        ),
        added_drive_minutes=added,
        current_guests=current_guests,
        max_guests=vehicle_capacity,
        is_efficient=is_efficient,
        recommendation=recommendation,
        moved_from_assignment_id=moved_from_assignment_id,
    )
