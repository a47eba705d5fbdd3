"""Auto-assignment engine.

Pure functions over frozen inputs: nothing here touches the database. The
command center builds the inputs, calls :func:`plan_run` / :func:`plan_day`, and
commits the resulting proposals itself.

Placement order for one tour run:

1. private bookings, each onto its own empty guide (fewest runs today, then
   fewest guests today, then guide id);
2. shared bookings clustered by pickup zone, biggest cluster first; a cluster
   goes whole to the guide with the most remaining room that fits it;
3. clusters that fit nowhere are split booking by booking, largest first, each
   into the guide with the most remaining room that still fits;
4. stops are ordered nearest-neighbor and timed backward from departure.

Bookings that fit nowhere produce flags instead of failing the run.
"""

from __future__ import annotations

import dataclasses
from collections import defaultdict
from dataclasses import dataclass, field
from statistics import mean, pstdev
from typing import Iterable, Literal, Sequence

from app.domain.dispatch.routing import (
    RouteConfig,
    ScheduledStop,
    Stop,
    order_stops,
    route_drive_minutes,
    schedule_pickups,
)
from app.domain.pickups.travel import TravelMatrix
from app.settings import settings

FlagType = Literal["no_capacity", "no_qualified_guide", "exceeds_vehicle"]

SUGGEST_BASE_SCORE = 50
SUGGEST_PREFERRED_ZONE_WEIGHT = 25
SUGGEST_SAME_ZONE_WEIGHT = 10
SUGGEST_FILL_WEIGHT = 15
SUGGEST_EMPTY_WEIGHT = 10
SUGGEST_FILL_THRESHOLD = 0.8
SUGGEST_DRIVE_PENALTY_STEP = 5


def runs_overlap(first: tuple[int, int], second: tuple[int, int], buffer_minutes: int) -> bool:
    """True when two runs are closer than ``buffer_minutes`` apart."""

    return first[0] < second[1] + buffer_minutes and second[0] < first[1] + buffer_minutes


@dataclass(frozen=True)
class EngineConfig:
    route: RouteConfig = field(default_factory=RouteConfig)
    run_buffer_minutes: int = 30

    @classmethod
    def from_settings(cls) -> "EngineConfig":
        return cls(route=RouteConfig.from_settings(), run_buffer_minutes=settings.dispatch_run_buffer_minutes)


@dataclass(frozen=True)
class GuideInput:
    guide_id: str
    name: str
    vehicle_capacity: int
    windows: tuple[tuple[int, int], ...]
    # None means qualified for every tour.
    qualified_tour_ids: frozenset[str] | None = None
    preferred_zones: tuple[str, ...] = ()
    base_zone: str | None = None
    busy: tuple[tuple[int, int], ...] = ()
    day_runs: int = 0
    day_guests: int = 0

    def is_qualified_for(self, tour_id: str) -> bool:
        return self.qualified_tour_ids is None or tour_id in self.qualified_tour_ids

    def covers(self, start: int, end: int) -> bool:
        return any(window_start <= start and end <= window_end for window_start, window_end in self.windows)

    def conflicts_with(self, start: int, end: int, buffer_minutes: int) -> bool:
        return any(runs_overlap((start, end), busy, buffer_minutes) for busy in self.busy)

    def prefers_zone(self, zone: str | None) -> bool:
        return zone is not None and (zone in self.preferred_zones or zone == self.base_zone)


@dataclass(frozen=True)
class ExistingLoad:
    guide_id: str
    stops: tuple[Stop, ...]


@dataclass(frozen=True)
class RunInput:
    run_key: str
    tour_id: str
    start_minutes: int
    end_minutes: int
    bookings: tuple[Stop, ...]
    existing: tuple[ExistingLoad, ...] = ()


@dataclass(frozen=True)
class GuideLoad:
    guide_id: str
    guide_name: str
    vehicle_capacity: int
    pickups: tuple[ScheduledStop, ...]
    is_new: bool
    added_booking_ids: tuple[str, ...]

    @property
    def guests(self) -> int:
        return sum(item.stop.guests for item in self.pickups)

    @property
    def drive_minutes(self) -> int:
        return sum(item.drive_minutes for item in self.pickups)


@dataclass(frozen=True)
class EngineFlag:
    type: FlagType
    booking_ids: tuple[str, ...]
    message: str


@dataclass(frozen=True)
class RunStats:
    total_drive_minutes: int
    vehicle_utilization: float
    guide_balance: float


@dataclass(frozen=True)
class RunProposal:
    run_key: str
    loads: tuple[GuideLoad, ...]
    flags: tuple[EngineFlag, ...]
    stats: RunStats

    @property
    def assigned_booking_ids(self) -> tuple[str, ...]:
        return tuple(booking_id for load in self.loads for booking_id in load.added_booking_ids)

    @property
    def unassigned_booking_ids(self) -> tuple[str, ...]:
        return tuple(booking_id for flag in self.flags for booking_id in flag.booking_ids)

    @property
    def success(self) -> bool:
        return not self.flags


@dataclass(frozen=True)
class GuideSuggestion:
    guide_id: str
    guide_name: str
    score: int
    reasons: tuple[str, ...]
    added_drive_minutes: int
    current_guests: int
    vehicle_capacity: int


@dataclass
class _Bin:
    guide: GuideInput
    existing: list[Stop]
    added: list[Stop] = field(default_factory=list)

    @property
    def guests(self) -> int:
        return sum(stop.guests for stop in self.existing) + sum(stop.guests for stop in self.added)

    @property
    def remaining(self) -> int:
        return self.guide.vehicle_capacity - self.guests

    @property
    def is_private(self) -> bool:
        return any(stop.is_private for stop in self.existing + self.added)

    @property
    def is_empty(self) -> bool:
        return not self.existing and not self.added

    def zones(self, matrix: TravelMatrix) -> set[str]:
        return {
            zone
            for zone in (matrix.zone_of(stop.pickup_address_id) for stop in self.existing + self.added)
            if zone
        }


def is_eligible(guide: GuideInput, run: RunInput, config: EngineConfig) -> bool:
    return (
        guide.is_qualified_for(run.tour_id)
        and guide.covers(run.start_minutes, run.end_minutes)
        and not guide.conflicts_with(run.start_minutes, run.end_minutes, config.run_buffer_minutes)
    )


def _flag_for(stop: Stop, candidates: Sequence[GuideInput]) -> FlagType:
    if not candidates:
        return "no_qualified_guide"
    if stop.guests > max(guide.vehicle_capacity for guide in candidates):
        return "exceeds_vehicle"
    return "no_capacity"


_FLAG_MESSAGES: dict[str, str] = {
    "no_qualified_guide": "No qualified guide is available for this run",
    "exceeds_vehicle": "Booking is larger than any available vehicle",
    "no_capacity": "No guide has enough remaining capacity",
}


def _bins_for_run(run: RunInput, guides: Sequence[GuideInput], config: EngineConfig) -> tuple[list[_Bin], list[GuideInput]]:
    by_id = {guide.guide_id: guide for guide in guides}
    bins: list[_Bin] = []
    seen: set[str] = set()
    for load in run.existing:
        guide = by_id.get(load.guide_id)
        if guide is None:
            # Assigned guide no longer schedulable: keep its stops out of the packing.
            continue
        bins.append(_Bin(guide=guide, existing=list(load.stops)))
        seen.add(guide.guide_id)
    eligible = [guide for guide in guides if is_eligible(guide, run, config)]
    for guide in eligible:
        if guide.guide_id not in seen:
            bins.append(_Bin(guide=guide, existing=[]))
    candidates = [guide for guide in guides if guide.guide_id in seen or guide in eligible]
    bins.sort(key=lambda item: item.guide.guide_id)
    return bins, candidates


def _place_private(stop: Stop, bins: list[_Bin]) -> _Bin | None:
    options = [item for item in bins if item.is_empty and item.guide.vehicle_capacity >= stop.guests]
    if not options:
        return None
    return min(options, key=lambda item: (item.guide.day_guests, item.guide.day_runs, item.guide.guide_id))


def _shared_key(item: _Bin, zone: str | None, matrix: TravelMatrix) -> tuple:
    return (
        -item.remaining,
        0 if zone and zone in item.zones(matrix) else 1,
        0 if item.guide.prefers_zone(zone) else 1,
        item.guests,
        item.guide.guide_id,
    )


def _fitting(bins: list[_Bin], guests: int) -> list[_Bin]:
    return [item for item in bins if not item.is_private and item.remaining >= guests]


def _cluster_by_zone(stops: Iterable[Stop], matrix: TravelMatrix) -> list[tuple[str | None, list[Stop]]]:
    clusters: dict[str | None, list[Stop]] = defaultdict(list)
    for stop in stops:
        clusters[matrix.zone_of(stop.pickup_address_id)].append(stop)
    ordered = sorted(
        clusters.items(),
        key=lambda entry: (-sum(stop.guests for stop in entry[1]), entry[0] is None, entry[0] or ""),
    )
    return [(zone, sorted(members, key=lambda stop: (-stop.guests, stop.booking_id))) for zone, members in ordered]


def _guide_balance(loads: Sequence[int]) -> float:
    if len(loads) <= 1:
        return 1.0
    average = mean(loads)
    if average == 0:
        return 1.0
    return round(max(0.0, 1 - pstdev(loads) / average), 2)


def plan_run(
    run: RunInput,
    guides: Sequence[GuideInput],
    matrix: TravelMatrix,
    config: EngineConfig | None = None,
) -> RunProposal:
    config = config or EngineConfig()
    bins, candidates = _bins_for_run(run, guides, config)
    unplaced: list[Stop] = []

    private = sorted((stop for stop in run.bookings if stop.is_private), key=lambda stop: (-stop.guests, stop.booking_id))
    for stop in private:
        target = _place_private(stop, bins)
        if target is None:
            unplaced.append(stop)
        else:
            target.added.append(stop)

    shared = [stop for stop in run.bookings if not stop.is_private]
    for zone, members in _cluster_by_zone(shared, matrix):
        total = sum(stop.guests for stop in members)
        whole = _fitting(bins, total)
        if whole:
            target = min(whole, key=lambda item: _shared_key(item, zone, matrix))
            target.added.extend(members)
            continue
        for stop in members:
            options = _fitting(bins, stop.guests)
            if not options:
                unplaced.append(stop)
                continue
            min(options, key=lambda item: _shared_key(item, zone, matrix)).added.append(stop)

    loads = []
    for item in bins:
        if not item.added:
            continue
        route = order_stops(item.existing, item.added, matrix)
        loads.append(
            GuideLoad(
                guide_id=item.guide.guide_id,
                guide_name=item.guide.name,
                vehicle_capacity=item.guide.vehicle_capacity,
                pickups=tuple(schedule_pickups(route, run.start_minutes, matrix, config.route)),
                is_new=not item.existing,
                added_booking_ids=tuple(stop.booking_id for stop in route if stop in item.added),
            )
        )

    flags_by_type: dict[FlagType, list[str]] = defaultdict(list)
    for stop in sorted(unplaced, key=lambda stop: stop.booking_id):
        flags_by_type[_flag_for(stop, candidates)].append(stop.booking_id)
    flags = tuple(
        EngineFlag(type=flag_type, booking_ids=tuple(booking_ids), message=_FLAG_MESSAGES[flag_type])
        for flag_type, booking_ids in sorted(flags_by_type.items())
    )

    capacity = sum(load.vehicle_capacity for load in loads)
    guests = sum(load.guests for load in loads)
    stats = RunStats(
        total_drive_minutes=sum(load.drive_minutes for load in loads),
        vehicle_utilization=round(guests / capacity, 2) if capacity else 0.0,
        guide_balance=_guide_balance([load.guests for load in loads]),
    )
    return RunProposal(run_key=run.run_key, loads=tuple(loads), flags=flags, stats=stats)


def plan_day(
    runs: Sequence[RunInput],
    guides: Sequence[GuideInput],
    matrix: TravelMatrix,
    config: EngineConfig | None = None,
) -> list[RunProposal]:
    """Plan runs in departure order, blocking guides for overlapping later runs."""

    config = config or EngineConfig()
    current = {guide.guide_id: guide for guide in guides}
    proposals = []
    for run in sorted(runs, key=lambda item: (item.start_minutes, item.run_key)):
        proposal = plan_run(run, [current[guide_id] for guide_id in sorted(current)], matrix, config)
        for load in proposal.loads:
            guide = current[load.guide_id]
            added_guests = sum(item.stop.guests for item in load.pickups if item.stop.booking_id in load.added_booking_ids)
            current[load.guide_id] = dataclasses.replace(
                guide,
                busy=guide.busy + ((run.start_minutes, run.end_minutes),) if load.is_new else guide.busy,
                day_runs=guide.day_runs + (1 if load.is_new else 0),
                day_guests=guide.day_guests + added_guests,
            )
        proposals.append(proposal)
    return proposals


def rank_guides(
    stop: Stop,
    run: RunInput,
    guides: Sequence[GuideInput],
    matrix: TravelMatrix,
    config: EngineConfig | None = None,
) -> list[GuideSuggestion]:
    """Score every guide that could take ``stop`` on ``run`` (0..100, best first)."""

    config = config or EngineConfig()
    bins, _ = _bins_for_run(run, guides, config)
    zone = matrix.zone_of(stop.pickup_address_id)
    suggestions = []
    for item in bins:
        if item.remaining < stop.guests:
            continue
        if item.is_private or (stop.is_private and not item.is_empty):
            continue
        before = route_drive_minutes(item.existing, matrix)
        after = route_drive_minutes(order_stops(item.existing, [stop], matrix), matrix)
        added_drive = after - before
        score = SUGGEST_BASE_SCORE
        reasons: list[str] = []
        if item.guide.prefers_zone(zone):
            score += SUGGEST_PREFERRED_ZONE_WEIGHT
            reasons.append(f"Prefers the {zone} zone")
        if zone and zone in item.zones(matrix):
            score += SUGGEST_SAME_ZONE_WEIGHT
            reasons.append(f"Already picking up in {zone}")
        utilization = (item.guests + stop.guests) / item.guide.vehicle_capacity
        if utilization >= SUGGEST_FILL_THRESHOLD:
            score += SUGGEST_FILL_WEIGHT
            reasons.append(f"Fills vehicle to {round(utilization * 100)}%")
        if item.is_empty:
            score += SUGGEST_EMPTY_WEIGHT
            reasons.append("No pickups on this run yet")
        score -= added_drive // SUGGEST_DRIVE_PENALTY_STEP
        if added_drive:
            reasons.append(f"Adds {added_drive} min of driving")
        suggestions.append(
            GuideSuggestion(
                guide_id=item.guide.guide_id,
                guide_name=item.guide.name,
                score=max(0, min(100, score)),
                reasons=tuple(reasons),
                added_drive_minutes=added_drive,
                current_guests=item.guests,
                vehicle_capacity=item.guide.vehicle_capacity,
            )
        )
    suggestions.sort(key=lambda entry: (-entry.score, entry.added_drive_minutes, entry.guide_id))
    return suggestions
