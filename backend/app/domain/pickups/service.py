from __future__ import annotations

import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.pickups.db_models import PickupAddress, ZoneTravelTime
from app.domain.pickups.travel import PickupPoint, TravelMatrix, TravelSettings


def to_pickup_point(address: PickupAddress) -> PickupPoint:
    return PickupPoint(
        address_id=address.address_id,
        name=address.short_name or address.name,
        zone=address.zone,
        latitude=address.latitude,
        longitude=address.longitude,
        average_pickup_minutes=address.average_pickup_minutes,
        sort_order=address.sort_order,
    )


async def list_pickup_addresses(
    session: AsyncSession, org_id: uuid.UUID, *, active_only: bool = True
) -> list[PickupAddress]:
    stmt = select(PickupAddress).where(PickupAddress.org_id == org_id)
    if active_only:
        stmt = stmt.where(PickupAddress.is_active.is_(True))
    stmt = stmt.order_by(PickupAddress.sort_order, PickupAddress.name, PickupAddress.address_id)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def load_travel_matrix(session: AsyncSession, org_id: uuid.UUID) -> TravelMatrix:
    # Inactive addresses stay resolvable: existing bookings may still reference them.
    addresses = await list_pickup_addresses(session, org_id, active_only=False)
    result = await session.execute(select(ZoneTravelTime).where(ZoneTravelTime.org_id == org_id))
    zone_minutes = {(row.from_zone, row.to_zone): row.estimated_minutes for row in result.scalars().all()}
    return TravelMatrix(
        points={address.address_id: to_pickup_point(address) for address in addresses},
        zone_minutes=zone_minutes,
        travel=TravelSettings.from_settings(),
    )
