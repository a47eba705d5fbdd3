from __future__ import annotations

import uuid
from datetime import date
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.org_context import require_org_context
from app.dependencies import get_db_session, get_outbox_adapters
from app.domain.dispatch import schemas
from app.domain.dispatch import service as dispatch_service
from app.domain.dispatch.clock import normalize_dispatch_date
from app.domain.errors import ValidationError
from app.domain.outbox.service import OutboxAdapters
from app.domain.saas.service import resolve_org_timezone

router = APIRouter(prefix="/v1/command-center", tags=["command-center"])


async def _dispatch_date(session: AsyncSession, org_id: uuid.UUID, value: str, tz: str | None) -> date:
    """Calendar date in the org's zone; the only place request datetimes are converted."""

    tz_name = tz or await resolve_org_timezone(session, org_id)
    try:
        ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValidationError(
            detail=f"Unknown time zone {tz_name}", errors=[{"code": "invalid_timezone", "tz": tz_name}]
        ) from exc
    try:
        return normalize_dispatch_date(value, tz_name)
    except ValueError as exc:
        raise ValidationError(
            detail=f"Invalid date {value!r}; expected YYYY-MM-DD or an ISO datetime",
            errors=[{"code": "invalid_date", "date": value}],
        ) from exc


# Reads


@router.get("/dispatch", response_model=schemas.DispatchBoardResponse)
async def get_dispatch_board(
    day: str = Query(..., alias="date", description="YYYY-MM-DD or an ISO datetime"),
    tz: str | None = Query(None, description="IANA time zone; defaults to the organization's"),
    session: AsyncSession = Depends(get_db_session),
    org_id: uuid.UUID = Depends(require_org_context),
) -> schemas.DispatchBoardResponse:
    dispatch_date = await _dispatch_date(session, org_id, day, tz)
    return await dispatch_service.get_dispatch_board(session, org_id, dispatch_date)


@router.get("/status", response_model=schemas.DispatchStatusResponse)
async def get_dispatch_status(
    day: str = Query(..., alias="date"),
    tz: str | None = Query(None),
    session: AsyncSession = Depends(get_db_session),
    org_id: uuid.UUID = Depends(require_org_context),
) -> schemas.DispatchStatusResponse:
    dispatch_date = await _dispatch_date(session, org_id, day, tz)
    return await dispatch_service.get_dispatch_status(session, org_id, dispatch_date)


@router.get("/runs", response_model=schemas.TourRunsResponse)
async def get_tour_runs(
    day: str = Query(..., alias="date"),
    tz: str | None = Query(None),
    session: AsyncSession = Depends(get_db_session),
    org_id: uuid.UUID = Depends(require_org_context),
) -> schemas.TourRunsResponse:
    dispatch_date = await _dispatch_date(session, org_id, day, tz)
    return await dispatch_service.get_tour_runs(session, org_id, dispatch_date)


@router.get("/runs/{run_key}/manifest", response_model=schemas.ManifestResponse)
async def get_manifest(
    run_key: str,
    session: AsyncSession = Depends(get_db_session),
    org_id: uuid.UUID = Depends(require_org_context),
) -> schemas.ManifestResponse:
    return await dispatch_service.get_manifest(session, org_id, run_key)


@router.get("/runs/{run_key}/proposal", response_model=schemas.RunProposalResponse)
async def get_run_proposal(
    run_key: str,
    session: AsyncSession = Depends(get_db_session),
    org_id: uuid.UUID = Depends(require_org_context),
) -> schemas.RunProposalResponse:
    """Auto-assignment proposal for one run. Nothing is saved."""

    return await dispatch_service.auto_assign_tour(session, org_id, run_key)


@router.get("/guides", response_model=schemas.AvailableGuidesResponse)
async def get_available_guides(
    day: str = Query(..., alias="date"),
    tz: str | None = Query(None),
    session: AsyncSession = Depends(get_db_session),
    org_id: uuid.UUID = Depends(require_org_context),
) -> schemas.AvailableGuidesResponse:
    dispatch_date = await _dispatch_date(session, org_id, day, tz)
    return await dispatch_service.get_available_guides(session, org_id, dispatch_date)


@router.get("/timelines", response_model=schemas.GuideTimelinesResponse)
async def get_guide_timelines(
    day: str = Query(..., alias="date"),
    tz: str | None = Query(None),
    session: AsyncSession = Depends(get_db_session),
    org_id: uuid.UUID = Depends(require_org_context),
) -> schemas.GuideTimelinesResponse:
    dispatch_date = await _dispatch_date(session, org_id, day, tz)
    return await dispatch_service.get_guide_timelines(session, org_id, dispatch_date)


@router.get("/bookings/{booking_id}/suggestions", response_model=schemas.SuggestionsResponse)
async def get_suggestions(
    booking_id: str,
    session: AsyncSession = Depends(get_db_session),
    org_id: uuid.UUID = Depends(require_org_context),
) -> schemas.SuggestionsResponse:
    return await dispatch_service.get_suggestions(session, org_id, booking_id)


# Assignment changes


@router.post("/optimize", response_model=schemas.OptimizeResponse)
async def optimize(
    request: schemas.OptimizeRequest,
    session: AsyncSession = Depends(get_db_session),
    org_id: uuid.UUID = Depends(require_org_context),
) -> schemas.OptimizeResponse:
    dispatch_date = await _dispatch_date(session, org_id, request.date, request.tz)
    return await dispatch_service.optimize(
        session, org_id, dispatch_date, expected_version=request.expected_version
    )


@router.post("/assign", response_model=schemas.AssignmentResponse)
async def manual_assign(
    request: schemas.ManualAssignRequest,
    session: AsyncSession = Depends(get_db_session),
    org_id: uuid.UUID = Depends(require_org_context),
) -> schemas.AssignmentResponse:
    return await dispatch_service.manual_assign(
        session,
        org_id,
        booking_id=request.booking_id,
        guide_id=request.guide_id,
        position=request.position,
        expected_version=request.expected_version,
    )


@router.post("/unassign", response_model=schemas.UnassignResponse)
async def unassign(
    request: schemas.UnassignRequest,
    session: AsyncSession = Depends(get_db_session),
    org_id: uuid.UUID = Depends(require_org_context),
) -> schemas.UnassignResponse:
    return await dispatch_service.unassign(
        session, org_id, booking_id=request.booking_id, expected_version=request.expected_version
    )


@router.post("/batch", response_model=schemas.BatchApplyResponse)
async def batch_apply_changes(
    request: schemas.BatchApplyRequest,
    session: AsyncSession = Depends(get_db_session),
    org_id: uuid.UUID = Depends(require_org_context),
) -> schemas.BatchApplyResponse:
    dispatch_date = await _dispatch_date(session, org_id, request.date, request.tz)
    return await dispatch_service.batch_apply_changes(
        session, org_id, dispatch_date, request.changes, expected_version=request.expected_version
    )


@router.post("/warnings/{warning_id}/resolve", response_model=schemas.WarningResolutionResponse)
async def resolve_warning(
    warning_id: str,
    request: schemas.WarningResolutionRequest,
    session: AsyncSession = Depends(get_db_session),
    org_id: uuid.UUID = Depends(require_org_context),
) -> schemas.WarningResolutionResponse:
    dispatch_date = await _dispatch_date(session, org_id, request.date, request.tz)
    return await dispatch_service.resolve_warning(session, org_id, dispatch_date, warning_id, request)


# Day lifecycle


@router.post("/dispatch", response_model=schemas.DispatchResponse)
async def dispatch(
    request: schemas.DispatchRequest,
    session: AsyncSession = Depends(get_db_session),
    org_id: uuid.UUID = Depends(require_org_context),
    adapters: OutboxAdapters = Depends(get_outbox_adapters),
) -> schemas.DispatchResponse:
    dispatch_date = await _dispatch_date(session, org_id, request.date, request.tz)
    return await dispatch_service.dispatch(
        session,
        org_id,
        dispatch_date,
        dispatched_by=request.dispatched_by,
        expected_version=request.expected_version,
        adapters=adapters,
    )


@router.post("/reopen", response_model=schemas.DayStateResponse)
async def reopen(
    request: schemas.ReopenRequest,
    session: AsyncSession = Depends(get_db_session),
    org_id: uuid.UUID = Depends(require_org_context),
) -> schemas.DayStateResponse:
    dispatch_date = await _dispatch_date(session, org_id, request.date, request.tz)
    return await dispatch_service.reopen(session, org_id, dispatch_date, expected_version=request.expected_version)


@router.post("/runs/{run_key}/clear", response_model=schemas.RunClearedResponse)
async def clear_run(
    run_key: str,
    request: schemas.ClearRunRequest,
    session: AsyncSession = Depends(get_db_session),
    org_id: uuid.UUID = Depends(require_org_context),
) -> schemas.RunClearedResponse:
    return await dispatch_service.clear_run(session, org_id, run_key, expected_version=request.expected_version)


# Ephemeral guides


@router.post(
    "/runs/{run_key}/external-guide",
    response_model=schemas.GuideCreatedResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_external_guide(
    run_key: str,
    request: schemas.ExternalGuideRequest,
    session: AsyncSession = Depends(get_db_session),
    org_id: uuid.UUID = Depends(require_org_context),
) -> schemas.GuideCreatedResponse:
    return await dispatch_service.add_outsourced_guide_to_run(session, org_id, run_key, request)


@router.post("/temp-guides", response_model=schemas.GuideCreatedResponse, status_code=status.HTTP_201_CREATED)
async def create_temp_guide(
    request: schemas.TempGuideRequest,
    session: AsyncSession = Depends(get_db_session),
    org_id: uuid.UUID = Depends(require_org_context),
) -> schemas.GuideCreatedResponse:
    dispatch_date = await _dispatch_date(session, org_id, request.date, request.tz)
    return await dispatch_service.create_temp_guide_for_date(session, org_id, dispatch_date, request)


# Pickups


@router.post("/pickups/preview", response_model=schemas.GhostPreviewResponse)
async def preview_pickup(
    request: schemas.GhostPreviewRequest,
    session: AsyncSession = Depends(get_db_session),
    org_id: uuid.UUID = Depends(require_org_context),
) -> schemas.GhostPreviewResponse:
    return await dispatch_service.calculate_ghost_preview(
        session,
        org_id,
        guide_assignment_id=request.guide_assignment_id,
        booking_id=request.booking_id,
        position=request.position,
    )


@router.post("/pickups/{guide_assignment_id}/reorder", response_model=schemas.ReorderResponse)
async def reorder_pickups(
    guide_assignment_id: str,
    request: schemas.ReorderRequest,
    session: AsyncSession = Depends(get_db_session),
    org_id: uuid.UUID = Depends(require_org_context),
) -> schemas.ReorderResponse:
    return await dispatch_service.reorder_pickups(
        session, org_id, guide_assignment_id, request.booking_ids, expected_version=request.expected_version
    )


@router.post("/pickups/{pickup_id}/picked-up", response_model=schemas.PickupResponse)
async def mark_picked_up(
    pickup_id: str,
    request: schemas.CheckInRequest,
    session: AsyncSession = Depends(get_db_session),
    org_id: uuid.UUID = Depends(require_org_context),
) -> schemas.PickupResponse:
    return await dispatch_service.mark_picked_up(
        session, org_id, pickup_id, at=request.actual_pickup_time, expected_version=request.expected_version
    )


@router.post("/pickups/{pickup_id}/no-show", response_model=schemas.PickupResponse)
async def mark_no_show(
    pickup_id: str,
    request: schemas.CheckInRequest,
    session: AsyncSession = Depends(get_db_session),
    org_id: uuid.UUID = Depends(require_org_context),
) -> schemas.PickupResponse:
    return await dispatch_service.mark_no_show(
        session, org_id, pickup_id, expected_version=request.expected_version
    )


@router.post("/pickups/{pickup_id}/time", response_model=schemas.PickupResponse)
async def update_pickup_time(
    pickup_id: str,
    request: schemas.PickupTimeRequest,
    session: AsyncSession = Depends(get_db_session),
    org_id: uuid.UUID = Depends(require_org_context),
) -> schemas.PickupResponse:
    return await dispatch_service.update_pickup_time(
        session, org_id, pickup_id, request.pickup_time, expected_version=request.expected_version
    )
