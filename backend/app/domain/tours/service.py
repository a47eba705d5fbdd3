from __future__ import annotations

import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import date
from math import ceil
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.domain.bookings.db_models import BOOKING_STATUS_CANCELLED, Booking, BookingParticipant
from app.domain.dispatch.clock import format_minutes, normalize_hhmm, parse_hhmm
from app.domain.dispatch.db_models import GuideAssignment, PickupAssignment
from app.domain.errors import NotFoundError, ValidationError
from app.domain.guides.db_models import Guide
from app.domain.pickups.db_models import PickupAddress
from app.domain.tours.db_models import Tour
from app.settings import settings


@dataclass(frozen=True)
class RunKey:
    tour_id: str
    run_date: date
    run_time: str

    def __str__(self) -> str:
        return format_run_key(self.tour_id, self.run_date, self.run_time)


@dataclass(frozen=True)
class TourRun:
    key: RunKey
    tour_name: str
    duration_minutes: int
    bookings: tuple[Booking, ...]

    @property
    def run_key(self) -> str:
        return str(self.key)

    @property
    def tour_id(self) -> str:
        return self.key.tour_id

    @property
    def run_date(self) -> date:
        return self.key.run_date

    @property
    def run_time(self) -> str:
        return self.key.run_time

    @property
    def start_minutes(self) -> int:
        return parse_hhmm(self.key.run_time)

    @property
    def end_minutes(self) -> int:
        return self.start_minutes + self.duration_minutes

    @property
    def end_time(self) -> str:
        return format_minutes(self.end_minutes)

    @property
    def total_guests(self) -> int:
        return sum(booking.total_participants for booking in self.bookings)

    @property
    def guides_required(self) -> int:
        return guides_required_for(self.bookings)


@dataclass(frozen=True)
class ManifestParticipant:
    first_name: str
    last_name: str | None
    participant_type: str
    dietary_requirements: str | None
    accessibility_needs: str | None


@dataclass(frozen=True)
class ManifestEntry:
    booking_id: str
    reference_number: str | None
    customer_name: str | None
    customer_phone: str | None
    adult_count: int
    child_count: int
    infant_count: int
    total_participants: int
    is_private: bool
    special_requests: str | None
    pickup_address_id: str | None
    pickup_location: str | None
    pickup_instructions: str | None
    guide_id: str | None
    guide_name: str | None
    pickup_position: int | None
    pickup_time: str | None
    pickup_status: str | None
    participants: tuple[ManifestParticipant, ...]


@dataclass(frozen=True)
class RunManifest:
    run: TourRun
    entries: tuple[ManifestEntry, ...]


def format_run_key(tour_id: str, run_date: date, run_time: str) -> str:
    return f"{tour_id}|{run_date.isoformat()}|{run_time}"


def parse_run_key(raw: str) -> RunKey:
    parts = raw.rsplit("|", 2)
    if len(parts) != 3 or not parts[0]:
        raise ValidationError(
            detail=f"Invalid tour run key {raw}", errors=[{"code": "invalid_run_key", "run_key": raw}]
        )
    try:
        return RunKey(tour_id=parts[0], run_date=date.fromisoformat(parts[1]), run_time=normalize_hhmm(parts[2]))
    except ValueError as exc:
        raise ValidationError(
            detail=f"Invalid tour run key {raw}", errors=[{"code": "invalid_run_key", "run_key": raw}]
        ) from exc


def run_key_for(booking: Booking) -> RunKey:
    return RunKey(tour_id=booking.tour_id, run_date=booking.booking_date, run_time=normalize_hhmm(booking.booking_time))


def guides_required_for(bookings: Iterable[Booking], guests_per_guide: int | None = None) -> int:
    """Minimum guides for a run: ceil(guests / per-guide capacity), plus one when any booking is private."""

    bookings = list(bookings)
    if not bookings:
        return 0
    capacity = guests_per_guide or settings.dispatch_guests_per_guide
    total = sum(booking.total_participants for booking in bookings)
    required = ceil(total / capacity) if total else 0
    if any(booking.is_private for booking in bookings):
        required += 1
    return max(required, 1)


def _run_sort_key(run: TourRun) -> tuple:
    return (run.start_minutes, run.tour_name, run.tour_id)


async def _load_tours(session: AsyncSession, org_id: uuid.UUID, tour_ids: set[str]) -> dict[str, Tour]:
    if not tour_ids:
        return {}
    result = await session.execute(select(Tour).where(Tour.org_id == org_id, Tour.tour_id.in_(tour_ids)))
    return {tour.tour_id: tour for tour in result.scalars().all()}


def _group_runs(bookings: Iterable[Booking], tours: dict[str, Tour]) -> list[TourRun]:
    grouped: dict[RunKey, list[Booking]] = defaultdict(list)
    for booking in bookings:
        grouped[run_key_for(booking)].append(booking)
    runs = []
    for key, members in grouped.items():
        tour = tours.get(key.tour_id)
        duration = (tour.duration_minutes if tour and tour.duration_minutes else None) or (
            settings.dispatch_default_tour_minutes
        )
        runs.append(
            TourRun(
                key=key,
                tour_name=tour.name if tour else key.tour_id,
                duration_minutes=duration,
                bookings=tuple(sorted(members, key=lambda booking: booking.booking_id)),
            )
        )
    return sorted(runs, key=_run_sort_key)


async def list_bookings_for_date(session: AsyncSession, org_id: uuid.UUID, target_date: date) -> list[Booking]:
    result = await session.execute(
        select(Booking)
        .where(
            Booking.org_id == org_id,
            Booking.booking_date == target_date,
            Booking.status != BOOKING_STATUS_CANCELLED,
        )
        .order_by(Booking.booking_time, Booking.tour_id, Booking.booking_id)
    )
    return list(result.scalars().all())


async def get_for_date(session: AsyncSession, org_id: uuid.UUID, target_date: date) -> list[TourRun]:
    bookings = await list_bookings_for_date(session, org_id, target_date)
    tours = await _load_tours(session, org_id, {booking.tour_id for booking in bookings})
    return _group_runs(bookings, tours)


async def get_run(session: AsyncSession, org_id: uuid.UUID, key: RunKey | str) -> TourRun:
    if isinstance(key, str):
        key = parse_run_key(key)
    result = await session.execute(
        select(Booking)
        .where(
            Booking.org_id == org_id,
            Booking.tour_id == key.tour_id,
            Booking.booking_date == key.run_date,
            Booking.status != BOOKING_STATUS_CANCELLED,
        )
        .order_by(Booking.booking_id)
    )
    # booking_time is free text upstream, so match on the normalized slot.
    bookings = [booking for booking in result.scalars().all() if run_key_for(booking) == key]
    if not bookings:
        raise NotFoundError(
            detail=f"Tour run {key} not found", errors=[{"code": "tour_run_not_found", "run_key": str(key)}]
        )
    tours = await _load_tours(session, org_id, {key.tour_id})
    return _group_runs(bookings, tours)[0]


async def calculate_guides_required(session: AsyncSession, org_id: uuid.UUID, key: RunKey | str) -> int:
    run = await get_run(session, org_id, key)
    return run.guides_required


def _manifest_sort_key(entry: ManifestEntry) -> tuple:
    # Unassigned bookings last, then by pickup order within each guide.
    position = entry.pickup_position if entry.pickup_position is not None else 10**6
    return (entry.guide_id is None, entry.guide_name or "", position, entry.booking_id)


async def get_manifest(session: AsyncSession, org_id: uuid.UUID, key: RunKey | str) -> RunManifest:
    run = await get_run(session, org_id, key)
    booking_ids = [booking.booking_id for booking in run.bookings]

    participants: dict[str, list[BookingParticipant]] = defaultdict(list)
    result = await session.execute(
        select(BookingParticipant)
        .where(BookingParticipant.booking_id.in_(booking_ids))
        .order_by(BookingParticipant.participant_id)
    )
    for participant in result.scalars().all():
        participants[participant.booking_id].append(participant)

    result = await session.execute(
        select(PickupAssignment)
        .options(selectinload(PickupAssignment.guide_assignment))
        .where(
            PickupAssignment.org_id == org_id,
            PickupAssignment.dispatch_date == run.run_date,
            PickupAssignment.booking_id.in_(booking_ids),
        )
    )
    pickups = {pickup.booking_id: pickup for pickup in result.scalars().all()}

    guide_ids = {pickup.guide_assignment.guide_id for pickup in pickups.values()}
    guides: dict[str, Guide] = {}
    if guide_ids:
        result = await session.execute(select(Guide).where(Guide.guide_id.in_(guide_ids)))
        guides = {guide.guide_id: guide for guide in result.scalars().all()}

    address_ids = {booking.pickup_address_id for booking in run.bookings if booking.pickup_address_id}
    addresses: dict[str, PickupAddress] = {}
    if address_ids:
        result = await session.execute(select(PickupAddress).where(PickupAddress.address_id.in_(address_ids)))
        addresses = {address.address_id: address for address in result.scalars().all()}

    entries = []
    for booking in run.bookings:
        pickup = pickups.get(booking.booking_id)
        assignment: GuideAssignment | None = pickup.guide_assignment if pickup else None
        guide = guides.get(assignment.guide_id) if assignment else None
        address = addresses.get(booking.pickup_address_id) if booking.pickup_address_id else None
        entries.append(
            ManifestEntry(
                booking_id=booking.booking_id,
                reference_number=booking.reference_number,
                customer_name=booking.customer_name,
                customer_phone=booking.customer_phone,
                adult_count=booking.adult_count,
                child_count=booking.child_count,
                infant_count=booking.infant_count,
                total_participants=booking.total_participants,
                is_private=booking.is_private,
                special_requests=booking.special_requests,
                pickup_address_id=booking.pickup_address_id,
                pickup_location=address.name if address else None,
                pickup_instructions=address.pickup_instructions if address else None,
                guide_id=guide.guide_id if guide else None,
                guide_name=guide.display_name if guide else None,
                pickup_position=pickup.position if pickup else None,
                pickup_time=pickup.calculated_pickup_time if pickup else None,
                pickup_status=pickup.status if pickup else None,
                participants=tuple(
                    ManifestParticipant(
                        first_name=item.first_name,
                        last_name=item.last_name,
                        participant_type=item.participant_type,
                        dietary_requirements=item.dietary_requirements,
                        accessibility_needs=item.accessibility_needs,
                    )
                    for item in participants[booking.booking_id]
                ),
            )
        )
    entries.sort(key=_manifest_sort_key)
    return RunManifest(run=run, entries=tuple(entries))
