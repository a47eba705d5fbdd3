from __future__ import annotations

import uuid
from datetime import date, datetime

from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Index, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.infra.db import UUID_TYPE, Base
from app.settings import settings

BOOKING_STATUS_CANCELLED = "cancelled"


class Booking(Base):
    __tablename__ = "bookings"

    booking_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    org_id: Mapped[uuid.UUID] = mapped_column(
        UUID_TYPE,
        ForeignKey("organizations.org_id", ondelete="CASCADE"),
        nullable=False,
        default=lambda: settings.default_org_id,
    )
    reference_number: Mapped[str | None] = mapped_column(String(32))
    tour_id: Mapped[str] = mapped_column(ForeignKey("tours.tour_id"), nullable=False)
    booking_date: Mapped[date] = mapped_column(Date, nullable=False)
    # "HH:MM" departure slot.
    booking_time: Mapped[str] = mapped_column(String(5), nullable=False)
    customer_name: Mapped[str | None] = mapped_column(String(255))
    customer_phone: Mapped[str | None] = mapped_column(String(50))
    customer_email: Mapped[str | None] = mapped_column(String(255))
    adult_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    child_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    infant_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_private: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="0")
    pickup_address_id: Mapped[str | None] = mapped_column(
        ForeignKey("pickup_addresses.address_id", ondelete="SET NULL")
    )
    special_requests: Mapped[str | None] = mapped_column(String(1000))
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="confirmed")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    participants: Mapped[list["BookingParticipant"]] = relationship(
        "BookingParticipant",
        cascade="all, delete-orphan",
        order_by="BookingParticipant.participant_id",
    )

    __table_args__ = (
        Index("ix_bookings_org_run", "org_id", "booking_date", "tour_id", "booking_time"),
        Index("ix_bookings_org_status", "org_id", "status"),
    )

    @property
    def total_participants(self) -> int:
        return (self.adult_count or 0) + (self.child_count or 0) + (self.infant_count or 0)


class BookingParticipant(Base):
    __tablename__ = "booking_participants"

    participant_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    org_id: Mapped[uuid.UUID] = mapped_column(
        UUID_TYPE,
        ForeignKey("organizations.org_id", ondelete="CASCADE"),
        nullable=False,
        default=lambda: settings.default_org_id,
    )
    booking_id: Mapped[str] = mapped_column(
        ForeignKey("bookings.booking_id", ondelete="CASCADE"), nullable=False, index=True
    )
    first_name: Mapped[str] = mapped_column(String(120), nullable=False)
    last_name: Mapped[str | None] = mapped_column(String(120))
    participant_type: Mapped[str] = mapped_column(String(16), nullable=False, default="adult")
    dietary_requirements: Mapped[str | None] = mapped_column(String(255))
    accessibility_needs: Mapped[str | None] = mapped_column(String(255))
