from __future__ import annotations

import logging
import uuid
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.bookings.db_models import BOOKING_STATUS_CANCELLED, Booking
from app.domain.errors import NotFoundError

logger = logging.getLogger(__name__)


async def get_booking(session: AsyncSession, org_id: uuid.UUID, booking_id: str) -> Booking:
    booking = await session.scalar(
        select(Booking).where(Booking.org_id == org_id, Booking.booking_id == booking_id)
    )
    if booking is None or booking.status == BOOKING_STATUS_CANCELLED:
        raise NotFoundError(
            detail=f"Booking {booking_id} not found",
            errors=[{"code": "booking_not_found", "booking_id": booking_id}],
        )
    return booking


def cancel_bookings(bookings: Iterable[Booking], *, reason: str) -> list[str]:
    cancelled = []
    for booking in bookings:
        if booking.status == BOOKING_STATUS_CANCELLED:
            continue
        booking.status = BOOKING_STATUS_CANCELLED
        cancelled.append(booking.booking_id)
    if cancelled:
        logger.info("bookings_cancelled", extra={"extra": {"booking_ids": cancelled, "reason": reason}})
    return cancelled
