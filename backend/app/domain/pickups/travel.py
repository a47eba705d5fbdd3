from __future__ import annotations

from dataclasses import dataclass, field
from math import asin, ceil, cos, radians, sin, sqrt

from app.settings import settings

EARTH_RADIUS_KM = 6371.0


@dataclass(frozen=True)
class PickupPoint:
    address_id: str
    name: str
    zone: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    average_pickup_minutes: int = 5
    sort_order: int = 0

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None


@dataclass(frozen=True)
class TravelSettings:
    average_speed_kmh: float = 30.0
    default_drive_minutes: int = 10
    same_zone_drive_minutes: int = 5

    @classmethod
    def from_settings(cls) -> "TravelSettings":
        return cls(
            average_speed_kmh=settings.dispatch_average_speed_kmh,
            default_drive_minutes=settings.dispatch_default_drive_minutes,
            same_zone_drive_minutes=settings.dispatch_same_zone_drive_minutes,
        )


@dataclass(frozen=True)
class TravelMatrix:
    """Pickup points plus zone-to-zone drive minutes for one organization."""

    points: dict[str, PickupPoint] = field(default_factory=dict)
    zone_minutes: dict[tuple[str, str], int] = field(default_factory=dict)
    travel: TravelSettings = field(default_factory=TravelSettings)

    def point(self, address_id: str | None) -> PickupPoint | None:
        if address_id is None:
            return None
        return self.points.get(address_id)

    def zone_of(self, address_id: str | None) -> str | None:
        point = self.point(address_id)
        return point.zone if point else None

    def pickup_minutes(self, address_id: str | None, default: int) -> int:
        point = self.point(address_id)
        if point is None or point.average_pickup_minutes is None:
            return default
        return point.average_pickup_minutes

    def drive_minutes(self, origin_id: str | None, destination_id: str | None) -> int:
        return estimate_drive_minutes(self.point(origin_id), self.point(destination_id), self)


def haversine_km(origin_lat: float, origin_lng: float, dest_lat: float, dest_lng: float) -> float:
    lat1 = radians(origin_lat)
    lat2 = radians(dest_lat)
    delta_lat = radians(dest_lat - origin_lat)
    delta_lng = radians(dest_lng - origin_lng)
    a = sin(delta_lat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(delta_lng / 2) ** 2
    return EARTH_RADIUS_KM * 2 * asin(sqrt(a))


def estimate_drive_minutes(
    origin: PickupPoint | None,
    destination: PickupPoint | None,
    matrix: TravelMatrix,
) -> int:
    """Drive estimate between two pickup points.

    Precedence: identical point, configured zone matrix (either direction),
    straight-line distance at the average speed, same-zone default, global default.
    """

    travel = matrix.travel
    if origin is None or destination is None:
        return travel.default_drive_minutes
    if origin.address_id == destination.address_id:
        return 0
    if origin.zone and destination.zone:
        configured = matrix.zone_minutes.get((origin.zone, destination.zone))
        if configured is None:
            configured = matrix.zone_minutes.get((destination.zone, origin.zone))
        if configured is not None:
            return configured
    if origin.has_coordinates and destination.has_coordinates:
        distance_km = haversine_km(origin.latitude, origin.longitude, destination.latitude, destination.longitude)
        return int(ceil(distance_km / travel.average_speed_kmh * 60))
    if origin.zone and origin.zone == destination.zone:
        return travel.same_zone_drive_minutes
    return travel.default_drive_minutes
