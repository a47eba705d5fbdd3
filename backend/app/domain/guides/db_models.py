from __future__ import annotations

import uuid
from datetime import date, datetime, time

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Time,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.infra.db import UUID_TYPE, Base
from app.settings import settings

GUIDE_KIND_STAFF = "staff"
GUIDE_KIND_TEMPORARY = "temporary"
GUIDE_KIND_EXTERNAL = "external"
EPHEMERAL_GUIDE_KINDS = (GUIDE_KIND_TEMPORARY, GUIDE_KIND_EXTERNAL)


class Guide(Base):
    __tablename__ = "guides"

    guide_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    org_id: Mapped[uuid.UUID] = mapped_column(
        UUID_TYPE,
        ForeignKey("organizations.org_id", ondelete="CASCADE"),
        nullable=False,
        default=lambda: settings.default_org_id,
    )
    first_name: Mapped[str] = mapped_column(String(120), nullable=False)
    last_name: Mapped[str | None] = mapped_column(String(120))
    email: Mapped[str | None] = mapped_column(String(255))
    phone: Mapped[str | None] = mapped_column(String(50))
    vehicle_capacity: Mapped[int] = mapped_column(
        Integer, nullable=False, default=lambda: settings.dispatch_default_vehicle_capacity
    )
    kind: Mapped[str] = mapped_column(String(16), nullable=False, default=GUIDE_KIND_STAFF)
    # Ephemeral guides exist for exactly one date.
    valid_on: Mapped[date | None] = mapped_column(Date)
    available_from: Mapped[time | None] = mapped_column(Time)
    available_to: Mapped[time | None] = mapped_column(Time)
    base_zone: Mapped[str | None] = mapped_column(String(64))
    preferred_zones: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    archived_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    weekly_availability: Mapped[list["GuideAvailability"]] = relationship(
        "GuideAvailability", cascade="all, delete-orphan", lazy="selectin"
    )
    overrides: Mapped[list["GuideAvailabilityOverride"]] = relationship(
        "GuideAvailabilityOverride", cascade="all, delete-orphan", lazy="selectin"
    )
    qualifications: Mapped[list["TourGuideQualification"]] = relationship(
        "TourGuideQualification", cascade="all, delete-orphan", lazy="selectin"
    )

    __table_args__ = (
        Index("ix_guides_org_status", "org_id", "status"),
        Index("ix_guides_org_valid_on", "org_id", "valid_on"),
    )

    @property
    def display_name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part)

    @property
    def is_ephemeral(self) -> bool:
        return self.kind in EPHEMERAL_GUIDE_KINDS


class GuideAvailability(Base):
    __tablename__ = "guide_availability"

    availability_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    org_id: Mapped[uuid.UUID] = mapped_column(
        UUID_TYPE,
        ForeignKey("organizations.org_id", ondelete="CASCADE"),
        nullable=False,
        default=lambda: settings.default_org_id,
    )
    guide_id: Mapped[str] = mapped_column(
        ForeignKey("guides.guide_id", ondelete="CASCADE"), nullable=False, index=True
    )
    # 0 = Monday, matching date.weekday().
    day_of_week: Mapped[int] = mapped_column(Integer, nullable=False)
    start_time: Mapped[time] = mapped_column(Time, nullable=False)
    end_time: Mapped[time] = mapped_column(Time, nullable=False)
    is_available: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="1")


class GuideAvailabilityOverride(Base):
    __tablename__ = "guide_availability_overrides"

    override_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    org_id: Mapped[uuid.UUID] = mapped_column(
        UUID_TYPE,
        ForeignKey("organizations.org_id", ondelete="CASCADE"),
        nullable=False,
        default=lambda: settings.default_org_id,
    )
    guide_id: Mapped[str] = mapped_column(
        ForeignKey("guides.guide_id", ondelete="CASCADE"), nullable=False
    )
    override_date: Mapped[date] = mapped_column(Date, nullable=False)
    is_available: Mapped[bool] = mapped_column(Boolean, nullable=False)
    start_time: Mapped[time | None] = mapped_column(Time)
    end_time: Mapped[time | None] = mapped_column(Time)
    reason: Mapped[str | None] = mapped_column(String(255))

    __table_args__ = (
        UniqueConstraint("guide_id", "override_date", name="uq_guide_override_date"),
    )


class TourGuideQualification(Base):
    __tablename__ = "tour_guide_qualifications"

    qualification_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    org_id: Mapped[uuid.UUID] = mapped_column(
        UUID_TYPE,
        ForeignKey("organizations.org_id", ondelete="CASCADE"),
        nullable=False,
        default=lambda: settings.default_org_id,
    )
    tour_id: Mapped[str] = mapped_column(ForeignKey("tours.tour_id", ondelete="CASCADE"), nullable=False)
    guide_id: Mapped[str] = mapped_column(ForeignKey("guides.guide_id", ondelete="CASCADE"), nullable=False)
    is_primary: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="0")

    __table_args__ = (
        UniqueConstraint("tour_id", "guide_id", name="uq_tour_guide_qualification"),
    )
