from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from app.domain.dispatch.clock import format_minutes
from app.domain.pickups.travel import TravelMatrix
from app.settings import settings


@dataclass(frozen=True)
class Stop:
    booking_id: str
    guests: int
    pickup_address_id: str | None = None
    is_private: bool = False


@dataclass(frozen=True)
class ScheduledStop:
    stop: Stop
    position: int
    pickup_minutes: int
    drive_minutes: int

    @property
    def pickup_time(self) -> str:
        return format_minutes(self.pickup_minutes)


@dataclass(frozen=True)
class RouteConfig:
    pickup_buffer_minutes: int = 5
    average_pickup_minutes: int = 5

    @classmethod
    def from_settings(cls) -> "RouteConfig":
        return cls(
            pickup_buffer_minutes=settings.dispatch_pickup_buffer_minutes,
            average_pickup_minutes=settings.dispatch_average_pickup_minutes,
        )


def stop_sort_key(stop: Stop, matrix: TravelMatrix) -> tuple:
    point = matrix.point(stop.pickup_address_id)
    if point is None:
        return ("~", 0, "", stop.booking_id)
    return (point.zone or "~", point.sort_order, point.address_id, stop.booking_id)


def order_stops(existing: Sequence[Stop], new: Sequence[Stop], matrix: TravelMatrix) -> list[Stop]:
    """Append ``new`` stops after ``existing`` ones using nearest-neighbor ordering.

    Existing stops keep their order. Ties on drive time fall back to zone, address
    sort order, and booking id so the result is deterministic.
    """

    route = list(existing)
    remaining = sorted(new, key=lambda stop: stop_sort_key(stop, matrix))
    while remaining:
        if not route:
            chosen = remaining[0]
        else:
            current = route[-1].pickup_address_id
            chosen = min(
                remaining,
                key=lambda stop: (matrix.drive_minutes(current, stop.pickup_address_id), stop_sort_key(stop, matrix)),
            )
        route.append(chosen)
        remaining.remove(chosen)
    return route


def leg_drive_minutes(stops: Sequence[Stop], matrix: TravelMatrix) -> list[int]:
    """Drive minutes into each stop from the previous one; the first stop has none."""

    legs = [0] * len(stops)
    for index in range(1, len(stops)):
        legs[index] = matrix.drive_minutes(stops[index - 1].pickup_address_id, stops[index].pickup_address_id)
    return legs


def route_drive_minutes(stops: Sequence[Stop], matrix: TravelMatrix) -> int:
    return sum(leg_drive_minutes(stops, matrix))


def schedule_pickups(
    stops: Sequence[Stop],
    departure_minutes: int,
    matrix: TravelMatrix,
    config: RouteConfig,
) -> list[ScheduledStop]:
    """Pickup times walking backward from departure.

    The last stop finishes boarding ``pickup_buffer_minutes`` before departure; each
    earlier stop is its successor's time minus the drive between them and its own
    boarding time.
    """

    if not stops:
        return []
    legs = leg_drive_minutes(stops, matrix)
    boarding = [matrix.pickup_minutes(stop.pickup_address_id, config.average_pickup_minutes) for stop in stops]
    times = [0] * len(stops)
    current = departure_minutes - config.pickup_buffer_minutes - boarding[-1]
    for index in range(len(stops) - 1, -1, -1):
        times[index] = current
        if index > 0:
            current -= legs[index] + boarding[index - 1]
    return [
        ScheduledStop(stop=stop, position=index, pickup_minutes=times[index], drive_minutes=legs[index])
        for index, stop in enumerate(stops)
    ]
