from __future__ import annotations

from datetime import date, datetime
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from app.domain.dispatch.clock import normalize_hhmm

WarningType = Literal[
    "unassigned_bookings",
    "insufficient_guides",
    "no_qualified_guide",
    "capacity_exceeded",
    "guide_unavailable",
    "guide_conflict",
]
ResolutionAction = Literal["assign_guide", "add_external", "cancel_tour", "acknowledge"]
DayStatus = Literal["not_started", "in_progress", "dispatched"]
RunStatus = Literal["unassigned", "partial", "assigned", "overstaffed"]
Confidence = Literal["optimal", "good", "review", "problem"]


def _validate_hhmm(value: str | None) -> str | None:
    if value is None:
        return None
    try:
        return normalize_hhmm(value)
    except ValueError as exc:
        raise ValueError("Time must use HH:MM") from exc


class SuggestedGuide(BaseModel):
    guide_id: str
    guide_name: str
    score: int
    reasons: list[str] = Field(default_factory=list)
    added_drive_minutes: int = 0
    current_guests: int = 0
    vehicle_capacity: int


class DispatchWarning(BaseModel):
    warning_id: str
    type: WarningType
    severity: Literal["info", "warn", "critical"]
    message: str
    run_key: str | None = None
    booking_ids: list[str] = Field(default_factory=list)
    guide_ids: list[str] = Field(default_factory=list)
    resolutions: list[ResolutionAction] = Field(default_factory=list)
    suggested_guides: list[SuggestedGuide] = Field(default_factory=list)


class DispatchStatusResponse(BaseModel):
    date: date
    status: DayStatus
    version: int
    is_dispatched: bool
    dispatched_at: datetime | None = None
    dispatched_by: str | None = None
    total_runs: int
    assigned_runs: int
    unassigned_runs: int
    total_guests: int
    assigned_guests: int
    guides_available: int
    guides_assigned: int
    warnings: list[DispatchWarning] = Field(default_factory=list)
    can_dispatch: bool


class RunBooking(BaseModel):
    booking_id: str
    reference_number: str | None = None
    customer_name: str | None = None
    guests: int
    is_private: bool
    pickup_address_id: str | None = None
    zone: str | None = None
    guide_id: str | None = None
    pickup_id: str | None = None
    pickup_position: int | None = None
    pickup_time: str | None = None
    pickup_status: str | None = None


class TourRunView(BaseModel):
    run_key: str
    tour_id: str
    tour_name: str
    date: date
    time: str
    end_time: str
    total_guests: int
    guides_required: int
    guides_assigned: int
    assigned_guide_ids: list[str] = Field(default_factory=list)
    status: RunStatus
    bookings: list[RunBooking] = Field(default_factory=list)


class TourRunsResponse(BaseModel):
    date: date
    runs: list[TourRunView] = Field(default_factory=list)


class AvailableGuideView(BaseModel):
    guide_id: str
    name: str
    kind: str
    vehicle_capacity: int
    available_from: str
    available_to: str
    qualified_tour_ids: list[str] = Field(default_factory=list)
    base_zone: str | None = None
    preferred_zones: list[str] = Field(default_factory=list)
    current_assignments: list[str] = Field(default_factory=list)


class AvailableGuidesResponse(BaseModel):
    date: date
    guides: list[AvailableGuideView] = Field(default_factory=list)


class TimelineSegment(BaseModel):
    type: Literal["drive", "pickup", "tour"]
    start_time: str
    end_time: str
    run_key: str
    booking_id: str | None = None
    pickup_id: str | None = None
    pickup_address_id: str | None = None
    guests: int | None = None
    status: str | None = None
    label: str


class GuideTimeline(BaseModel):
    guide_id: str
    guide_name: str
    kind: str
    vehicle_capacity: int
    total_guests: int
    utilization: int
    confidence: Confidence
    segments: list[TimelineSegment] = Field(default_factory=list)


class GuideTimelinesResponse(BaseModel):
    date: date
    timelines: list[GuideTimeline] = Field(default_factory=list)


class DispatchBoardResponse(BaseModel):
    status: DispatchStatusResponse
    runs: list[TourRunView] = Field(default_factory=list)
    timelines: list[GuideTimeline] = Field(default_factory=list)


class ManifestParticipantView(BaseModel):
    first_name: str
    last_name: str | None = None
    participant_type: str
    dietary_requirements: str | None = None
    accessibility_needs: str | None = None


class ManifestEntryView(BaseModel):
    booking_id: str
    reference_number: str | None = None
    customer_name: str | None = None
    customer_phone: str | None = None
    adult_count: int
    child_count: int
    infant_count: int
    total_participants: int
    is_private: bool
    special_requests: str | None = None
    pickup_location: str | None = None
    pickup_instructions: str | None = None
    guide_id: str | None = None
    guide_name: str | None = None
    pickup_position: int | None = None
    pickup_time: str | None = None
    pickup_status: str | None = None
    participants: list[ManifestParticipantView] = Field(default_factory=list)


class ManifestResponse(BaseModel):
    run_key: str
    tour_name: str
    date: date
    time: str
    total_guests: int
    entries: list[ManifestEntryView] = Field(default_factory=list)


class ProposedPickupView(BaseModel):
    booking_id: str
    position: int
    guests: int
    pickup_time: str
    drive_minutes: int
    is_new: bool


class ProposedGuideLoad(BaseModel):
    guide_id: str
    guide_name: str
    vehicle_capacity: int
    guests: int
    drive_minutes: int
    pickups: list[ProposedPickupView] = Field(default_factory=list)


class ProposalFlag(BaseModel):
    type: Literal["no_capacity", "no_qualified_guide", "exceeds_vehicle"]
    booking_ids: list[str] = Field(default_factory=list)
    message: str


class RunProposalResponse(BaseModel):
    run_key: str
    success: bool
    assignments: list[ProposedGuideLoad] = Field(default_factory=list)
    warnings: list[ProposalFlag] = Field(default_factory=list)
    total_drive_minutes: int
    vehicle_utilization: float
    guide_balance: float


class SuggestionsResponse(BaseModel):
    booking_id: str
    run_key: str
    suggestions: list[SuggestedGuide] = Field(default_factory=list)


class VersionedRequest(BaseModel):
    expected_version: int | None = Field(default=None, ge=0)


class DateRequest(VersionedRequest):
    date: str = Field(min_length=10, description="YYYY-MM-DD or an ISO datetime")
    tz: str | None = None

    @field_validator("date")
    @classmethod
    def validate_date(cls, value: str) -> str:
        raw = value.strip()
        try:
            if len(raw) == 10:
                date.fromisoformat(raw)
            else:
                datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError as exc:
            raise ValueError("Date must be YYYY-MM-DD or an ISO datetime") from exc
        return raw


class OptimizeRequest(DateRequest):
    pass


class OptimizeResponse(BaseModel):
    date: date
    version: int
    runs: list[RunProposalResponse] = Field(default_factory=list)
    assigned_bookings: int
    unassigned_bookings: int
    guides_used: int


class ManualAssignRequest(VersionedRequest):
    booking_id: str = Field(min_length=1)
    guide_id: str = Field(min_length=1)
    position: int | None = Field(default=None, ge=0)


class UnassignRequest(VersionedRequest):
    booking_id: str = Field(min_length=1)


class PickupView(BaseModel):
    pickup_id: str
    guide_assignment_id: str
    booking_id: str
    position: int
    passenger_count: int
    pickup_time: str | None = None
    drive_minutes: int
    time_overridden: bool
    status: str
    actual_pickup_time: datetime | None = None


class AssignmentResponse(BaseModel):
    date: date
    version: int
    guide_assignment_id: str
    guide_id: str
    run_key: str
    pickups: list[PickupView] = Field(default_factory=list)


class UnassignResponse(BaseModel):
    date: date
    version: int
    booking_id: str
    removed_guide_assignment: bool


class WarningResolutionRequest(DateRequest):
    type: ResolutionAction
    guide_id: str | None = None
    external_guide_name: str | None = None
    external_guide_contact: str | None = None
    vehicle_capacity: int | None = Field(default=None, gt=0)
    note: str | None = None
    resolved_by: str | None = None


class WarningResolutionResponse(BaseModel):
    warning_id: str
    action: ResolutionAction
    version: int
    guide_id: str | None = None
    affected_booking_ids: list[str] = Field(default_factory=list)


class AssignChange(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["assign"]
    booking_id: str = Field(min_length=1)
    guide_id: str = Field(min_length=1)
    position: int | None = Field(default=None, ge=0)


class UnassignChange(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["unassign"]
    booking_id: str = Field(min_length=1)


class ReassignChange(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["reassign"]
    booking_id: str = Field(min_length=1)
    from_guide_id: str | None = None
    to_guide_id: str = Field(min_length=1)
    position: int | None = Field(default=None, ge=0)


class TimeShiftChange(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["time-shift"]
    booking_id: str = Field(min_length=1)
    shift_minutes: int | None = None
    pickup_time: str | None = None

    @field_validator("pickup_time")
    @classmethod
    def normalize_pickup_time(cls, value: str | None) -> str | None:
        return _validate_hhmm(value)

    @model_validator(mode="after")
    def validate_exactly_one(self) -> "TimeShiftChange":
        if (self.shift_minutes is None) == (self.pickup_time is None):
            raise ValueError("Provide exactly one of shift_minutes or pickup_time")
        return self


BatchChange = Annotated[
    Union[AssignChange, UnassignChange, ReassignChange, TimeShiftChange],
    Field(discriminator="type"),
]


class BatchApplyRequest(DateRequest):
    changes: list[BatchChange] = Field(min_length=1)


class AppliedChange(BaseModel):
    index: int
    type: Literal["assign", "unassign", "reassign", "time-shift"]
    booking_id: str
    guide_id: str | None = None
    pickup_time: str | None = None


class BatchApplyResponse(BaseModel):
    date: date
    version: int
    applied: list[AppliedChange] = Field(default_factory=list)


class DispatchRequest(DateRequest):
    dispatched_by: str | None = None


class DispatchResponse(BaseModel):
    date: date
    version: int
    dispatched_at: datetime
    guides_notified: int
    notification_errors: list[str] = Field(default_factory=list)


class ReopenRequest(DateRequest):
    pass


class DayStateResponse(BaseModel):
    date: date
    status: DayStatus
    version: int


class ClearRunRequest(VersionedRequest):
    pass


class RunClearedResponse(BaseModel):
    run_key: str
    version: int
    cleared_booking_ids: list[str] = Field(default_factory=list)


class ExternalGuideRequest(VersionedRequest):
    name: str = Field(min_length=1, max_length=120)
    contact: str | None = Field(default=None, max_length=255)
    vehicle_capacity: int | None = Field(default=None, gt=0)
    assign_unassigned: bool = True


class TempGuideRequest(DateRequest):
    first_name: str = Field(min_length=1, max_length=120)
    last_name: str | None = Field(default=None, max_length=120)
    phone: str | None = Field(default=None, max_length=50)
    email: str | None = Field(default=None, max_length=255)
    vehicle_capacity: int | None = Field(default=None, gt=0)
    available_from: str | None = None
    available_to: str | None = None

    @field_validator("available_from", "available_to")
    @classmethod
    def normalize_window(cls, value: str | None) -> str | None:
        return _validate_hhmm(value)


class GuideCreatedResponse(BaseModel):
    guide_id: str
    name: str
    kind: str
    valid_on: date
    vehicle_capacity: int
    version: int
    assigned_booking_ids: list[str] = Field(default_factory=list)


class GhostPreviewRequest(BaseModel):
    guide_assignment_id: str = Field(min_length=1)
    booking_id: str = Field(min_length=1)
    position: int | None = Field(default=None, ge=0)


class GhostStopView(BaseModel):
    position: int
    booking_id: str
    guests: int
    pickup_time: str
    drive_minutes: int
    is_new: bool


class CapacityView(BaseModel):
    current: int
    max: int


class GhostPreviewResponse(BaseModel):
    valid: bool
    reason: str | None = None
    stops: list[GhostStopView] = Field(default_factory=list)
    added_drive_minutes: int
    new_capacity: CapacityView
    is_efficient: bool
    recommendation: str
    moved_from_assignment_id: str | None = None


class ReorderRequest(VersionedRequest):
    booking_ids: list[str] = Field(min_length=1)


class ReorderResponse(BaseModel):
    guide_assignment_id: str
    version: int
    pickups: list[PickupView] = Field(default_factory=list)


class PickupTimeRequest(VersionedRequest):
    pickup_time: str

    @field_validator("pickup_time")
    @classmethod
    def normalize_pickup_time(cls, value: str) -> str:
        return _validate_hhmm(value)


class CheckInRequest(VersionedRequest):
    actual_pickup_time: datetime | None = None


class PickupResponse(BaseModel):
    version: int
    pickup: PickupView
