from __future__ import annotations

import uuid
from datetime import date, datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.infra.db import UUID_TYPE, Base
from app.settings import settings

DAY_NOT_STARTED = "not_started"
DAY_IN_PROGRESS = "in_progress"
DAY_DISPATCHED = "dispatched"

PICKUP_PENDING = "pending"
PICKUP_PICKED_UP = "picked_up"
PICKUP_NO_SHOW = "no_show"
TERMINAL_PICKUP_STATUSES = (PICKUP_PICKED_UP, PICKUP_NO_SHOW)


class DispatchDay(Base):
    """Per-organization, per-date dispatch aggregate carrying the concurrency token."""

    __tablename__ = "dispatch_days"

    dispatch_day_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    org_id: Mapped[uuid.UUID] = mapped_column(
        UUID_TYPE,
        ForeignKey("organizations.org_id", ondelete="CASCADE"),
        nullable=False,
        default=lambda: settings.default_org_id,
    )
    dispatch_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=DAY_NOT_STARTED)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    optimized_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    dispatched_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    dispatched_by: Mapped[str | None] = mapped_column(String(128))
    reopened_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    __table_args__ = (
        UniqueConstraint("org_id", "dispatch_date", name="uq_dispatch_days_org_date"),
    )


class GuideAssignment(Base):
    __tablename__ = "guide_assignments"

    assignment_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    org_id: Mapped[uuid.UUID] = mapped_column(
        UUID_TYPE,
        ForeignKey("organizations.org_id", ondelete="CASCADE"),
        nullable=False,
        default=lambda: settings.default_org_id,
    )
    dispatch_date: Mapped[date] = mapped_column(Date, nullable=False)
    tour_id: Mapped[str] = mapped_column(ForeignKey("tours.tour_id"), nullable=False)
    run_time: Mapped[str] = mapped_column(String(5), nullable=False)
    guide_id: Mapped[str] = mapped_column(ForeignKey("guides.guide_id"), nullable=False)
    is_lead_guide: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="0")
    notified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    pickups: Mapped[list["PickupAssignment"]] = relationship(
        "PickupAssignment",
        back_populates="guide_assignment",
        order_by="PickupAssignment.position",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __table_args__ = (
        UniqueConstraint(
            "org_id", "dispatch_date", "tour_id", "run_time", "guide_id", name="uq_guide_assignments_run_guide"
        ),
        Index("ix_guide_assignments_org_date", "org_id", "dispatch_date"),
    )

    @property
    def run_key(self) -> str:
        return f"{self.tour_id}|{self.dispatch_date.isoformat()}|{self.run_time}"


class PickupAssignment(Base):
    __tablename__ = "pickup_assignments"

    pickup_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    org_id: Mapped[uuid.UUID] = mapped_column(
        UUID_TYPE,
        ForeignKey("organizations.org_id", ondelete="CASCADE"),
        nullable=False,
        default=lambda: settings.default_org_id,
    )
    dispatch_date: Mapped[date] = mapped_column(Date, nullable=False)
    guide_assignment_id: Mapped[str] = mapped_column(
        ForeignKey("guide_assignments.assignment_id", ondelete="CASCADE"), nullable=False
    )
    booking_id: Mapped[str] = mapped_column(ForeignKey("bookings.booking_id", ondelete="CASCADE"), nullable=False)
    pickup_address_id: Mapped[str | None] = mapped_column(
        ForeignKey("pickup_addresses.address_id", ondelete="SET NULL")
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    passenger_count: Mapped[int] = mapped_column(Integer, nullable=False)
    calculated_pickup_time: Mapped[str | None] = mapped_column(String(5))
    drive_time_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    time_overridden: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="0")
    actual_pickup_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=PICKUP_PENDING)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    guide_assignment: Mapped[GuideAssignment] = relationship("GuideAssignment", back_populates="pickups")

    __table_args__ = (
        UniqueConstraint("org_id", "dispatch_date", "booking_id", name="uq_pickup_assignments_booking"),
        Index("ix_pickup_assignments_guide_assignment", "guide_assignment_id", "position"),
    )


class DispatchWarningResolution(Base):
    __tablename__ = "dispatch_warning_resolutions"

    resolution_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    org_id: Mapped[uuid.UUID] = mapped_column(
        UUID_TYPE,
        ForeignKey("organizations.org_id", ondelete="CASCADE"),
        nullable=False,
        default=lambda: settings.default_org_id,
    )
    dispatch_date: Mapped[date] = mapped_column(Date, nullable=False)
    warning_id: Mapped[str] = mapped_column(String(64), nullable=False)
    warning_type: Mapped[str] = mapped_column(String(32), nullable=False)
    action: Mapped[str] = mapped_column(String(32), nullable=False)
    details: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    resolved_by: Mapped[str | None] = mapped_column(String(128))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        UniqueConstraint("org_id", "dispatch_date", "warning_id", name="uq_dispatch_warning_resolution"),
    )
