import datetime as dt

import httpx
import pytest
import sqlalchemy as sa
from sqlalchemy.exc import OperationalError

from app.domain.dispatch import pickup_ledger, schemas
from app.domain.dispatch import service as dispatch_service
from app.domain.dispatch.db_models import DAY_DISPATCHED, DispatchDay, GuideAssignment, PickupAssignment
from app.domain.errors import (
    BatchApplyError,
    CapacityError,
    ConflictError,
    DispatchLockedError,
    NotFoundError,
    ValidationError,
    VersionConflictError,
)
from app.domain.guides.db_models import GUIDE_KIND_EXTERNAL, GUIDE_KIND_TEMPORARY, Guide
from app.domain.outbox.db_models import OUTBOX_RETRY, OUTBOX_SENT, OutboxEvent
from app.domain.outbox.service import OutboxAdapters
from tests.conftest import DEFAULT_ORG_ID
from tests.dispatch_seed import (
    DAY,
    DISPATCH_DATE,
    RUN_KEY,
    add_booking,
    add_guide,
    add_tour,
    seed_split_run,
)

WEBHOOK_URL = "https://hooks.example.com/dispatch"


async def _seed_short_staffed(async_session_maker) -> None:
    """Ten guests on one run but only a six-seat guide."""

    async with async_session_maker() as session:
        add_tour(session)
        await session.flush()
        add_guide(session, "guide-small", capacity=6)
        add_booking(session, "b2", 2)
        add_booking(session, "b3", 3)
        add_booking(session, "b5", 5)
        await session.commit()


async def _placements(async_session_maker) -> dict[str, tuple[str, int]]:
    async with async_session_maker() as session:
        result = await session.execute(
            sa.select(PickupAssignment.booking_id, GuideAssignment.guide_id, PickupAssignment.position).join(
                GuideAssignment, GuideAssignment.assignment_id == PickupAssignment.guide_assignment_id
            )
        )
        return {booking_id: (guide_id, position) for booking_id, guide_id, position in result.all()}


async def _pickup_records(async_session_maker) -> dict[str, tuple]:
    async with async_session_maker() as session:
        result = await session.execute(
            sa.select(
                PickupAssignment.booking_id,
                GuideAssignment.guide_id,
                PickupAssignment.position,
                PickupAssignment.calculated_pickup_time,
                PickupAssignment.drive_time_minutes,
                PickupAssignment.time_overridden,
                PickupAssignment.status,
            ).join(GuideAssignment, GuideAssignment.assignment_id == PickupAssignment.guide_assignment_id)
        )
        return {row[0]: tuple(row[1:]) for row in result.all()}


async def _version(async_session_maker) -> int:
    async with async_session_maker() as session:
        day = await session.scalar(sa.select(DispatchDay).where(DispatchDay.dispatch_date == DISPATCH_DATE))
        return day.version if day else 0


async def _warning(async_session_maker, warning_type: str) -> schemas.DispatchWarning:
    async with async_session_maker() as session:
        status = await dispatch_service.get_dispatch_status(session, DEFAULT_ORG_ID, DISPATCH_DATE)
    return next(warning for warning in status.warnings if warning.type == warning_type)


def _capturing_transport(captured: list[dict], status_code: int = 202) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        captured.append({"url": str(request.url), "body": request.content})
        return httpx.Response(status_code, json={"ok": status_code < 300})

    return httpx.MockTransport(handler)


@pytest.mark.anyio
async def test_optimize_assigns_every_run_and_bumps_version(async_session_maker):
    await seed_split_run(async_session_maker)

    async with async_session_maker() as session:
        result = await dispatch_service.optimize(session, DEFAULT_ORG_ID, DISPATCH_DATE)

    assert result.version == 1
    assert result.assigned_bookings == 3
    assert result.unassigned_bookings == 0
    assert result.guides_used == 2
    placements = await _placements(async_session_maker)
    assert placements == {
        "b2": ("guide-small", 0),
        "b3": ("guide-small", 1),
        "b5": ("guide-large", 0),
    }

    async with async_session_maker() as session:
        status = await dispatch_service.get_dispatch_status(session, DEFAULT_ORG_ID, DISPATCH_DATE)
        again = await dispatch_service.optimize(session, DEFAULT_ORG_ID, DISPATCH_DATE)

    assert status.status == "in_progress"
    assert status.can_dispatch
    assert status.assigned_guests == 10
    assert again.assigned_bookings == 0
    assert again.version == 2


@pytest.mark.anyio
async def test_stale_version_is_rejected_without_changes(async_session_maker):
    await seed_split_run(async_session_maker)

    async with async_session_maker() as session:
        with pytest.raises(VersionConflictError) as exc:
            await dispatch_service.optimize(session, DEFAULT_ORG_ID, DISPATCH_DATE, expected_version=4)

    assert exc.value.errors[0]["code"] == "version_conflict"
    assert await _placements(async_session_maker) == {}
    assert await _version(async_session_maker) == 0


@pytest.mark.anyio
async def test_manual_assign_and_unassign(async_session_maker):
    await seed_split_run(async_session_maker)

    async with async_session_maker() as session:
        assigned = await dispatch_service.manual_assign(
            session, DEFAULT_ORG_ID, booking_id="b5", guide_id="guide-small", expected_version=0
        )
        with pytest.raises(CapacityError):
            await dispatch_service.manual_assign(session, DEFAULT_ORG_ID, booking_id="b2", guide_id="guide-small")
        with pytest.raises(ConflictError) as duplicate:
            await dispatch_service.manual_assign(session, DEFAULT_ORG_ID, booking_id="b5", guide_id="guide-large")
        removed = await dispatch_service.unassign(session, DEFAULT_ORG_ID, booking_id="b5", expected_version=1)

    assert duplicate.value.errors[0]["code"] == "booking_already_assigned"

    assert assigned.version == 1
    assert assigned.run_key == RUN_KEY
    assert [pickup.booking_id for pickup in assigned.pickups] == ["b5"]
    assert assigned.pickups[0].pickup_time == "08:50"
    assert removed.removed_guide_assignment
    assert removed.version == 2
    assert await _placements(async_session_maker) == {}


@pytest.mark.anyio
async def test_manual_assign_rejects_unavailable_and_unknown(async_session_maker):
    async with async_session_maker() as session:
        add_tour(session)
        await session.flush()
        add_guide(session, "guide-off", off_on=DISPATCH_DATE)
        add_booking(session, "b1", 2)
        await session.commit()

    async with async_session_maker() as session:
        with pytest.raises(ConflictError) as unavailable:
            await dispatch_service.manual_assign(session, DEFAULT_ORG_ID, booking_id="b1", guide_id="guide-off")
        with pytest.raises(NotFoundError):
            await dispatch_service.manual_assign(session, DEFAULT_ORG_ID, booking_id="b1", guide_id="nobody")
        with pytest.raises(NotFoundError):
            await dispatch_service.manual_assign(session, DEFAULT_ORG_ID, booking_id="missing", guide_id="guide-off")

    assert unavailable.value.errors[0]["code"] == "guide_unavailable"
    assert await _version(async_session_maker) == 0


@pytest.mark.anyio
async def test_guide_cannot_hold_overlapping_runs(async_session_maker):
    async with async_session_maker() as session:
        add_tour(session)
        await session.flush()
        add_guide(session, "guide-ana")
        add_booking(session, "morning", 2)
        add_booking(session, "midday", 2, booking_time="11:00")
        add_booking(session, "evening", 2, booking_time="16:00")
        await session.commit()

    async with async_session_maker() as session:
        await dispatch_service.manual_assign(session, DEFAULT_ORG_ID, booking_id="morning", guide_id="guide-ana")
        with pytest.raises(ConflictError) as conflict:
            await dispatch_service.manual_assign(session, DEFAULT_ORG_ID, booking_id="midday", guide_id="guide-ana")
        later = await dispatch_service.manual_assign(
            session, DEFAULT_ORG_ID, booking_id="evening", guide_id="guide-ana"
        )

    assert conflict.value.errors[0]["code"] == "guide_conflict"
    assert later.version == 2


@pytest.mark.anyio
async def test_batch_applies_all_changes_in_one_version(async_session_maker):
    await seed_split_run(async_session_maker)
    async with async_session_maker() as session:
        await dispatch_service.optimize(session, DEFAULT_ORG_ID, DISPATCH_DATE)

    changes = [
        schemas.ReassignChange(type="reassign", booking_id="b2", from_guide_id="guide-small", to_guide_id="guide-large"),
        schemas.TimeShiftChange(type="time-shift", booking_id="b3", pickup_time="8:40"),
    ]
    async with async_session_maker() as session:
        result = await dispatch_service.batch_apply_changes(
            session, DEFAULT_ORG_ID, DISPATCH_DATE, changes, expected_version=1
        )

    assert result.version == 2
    assert [(item.index, item.type, item.guide_id) for item in result.applied] == [
        (0, "reassign", "guide-large"),
        (1, "time-shift", "guide-small"),
    ]
    assert result.applied[1].pickup_time == "08:40"
    placements = await _placements(async_session_maker)
    assert placements["b2"][0] == "guide-large"
    assert placements["b3"] == ("guide-small", 0)


@pytest.mark.anyio
async def test_invalid_batch_change_leaves_day_untouched(async_session_maker):
    await seed_split_run(async_session_maker)
    async with async_session_maker() as session:
        await dispatch_service.optimize(session, DEFAULT_ORG_ID, DISPATCH_DATE)
    before = await _pickup_records(async_session_maker)

    changes = [
        schemas.ReassignChange(type="reassign", booking_id="b2", to_guide_id="guide-large"),
        schemas.ReassignChange(type="reassign", booking_id="b3", to_guide_id="guide-large"),
    ]
    async with async_session_maker() as session:
        with pytest.raises(CapacityError) as exc:
            await dispatch_service.batch_apply_changes(session, DEFAULT_ORG_ID, DISPATCH_DATE, changes)

    assert exc.value.detail.startswith("Change 1 (reassign): ")
    assert exc.value.errors[0]["index"] == 1
    assert await _pickup_records(async_session_maker) == before
    assert await _version(async_session_maker) == 1


@pytest.mark.anyio
async def test_batch_storage_failure_rolls_back_earlier_changes(async_session_maker, monkeypatch):
    await seed_split_run(async_session_maker)
    async with async_session_maker() as session:
        await dispatch_service.optimize(session, DEFAULT_ORG_ID, DISPATCH_DATE)
    before = await _pickup_records(async_session_maker)

    def fail(pickup, value):
        raise OperationalError("UPDATE pickup_assignments", {}, Exception("disk I/O error"))

    monkeypatch.setattr(pickup_ledger, "update_pickup_time", fail)
    changes = [
        schemas.ReassignChange(type="reassign", booking_id="b2", to_guide_id="guide-large"),
        schemas.TimeShiftChange(type="time-shift", booking_id="b3", shift_minutes=-10),
    ]
    async with async_session_maker() as session:
        with pytest.raises(BatchApplyError) as exc:
            await dispatch_service.batch_apply_changes(session, DEFAULT_ORG_ID, DISPATCH_DATE, changes)

    assert exc.value.status_code == 500
    assert exc.value.errors[0] == {"code": "batch_apply_failed", "index": 1, "reason": "OperationalError"}
    assert await _pickup_records(async_session_maker) == before
    assert await _version(async_session_maker) == 1


@pytest.mark.anyio
async def test_batch_reassign_then_assign_unassigned_booking(async_session_maker):
    await seed_split_run(async_session_maker)
    async with async_session_maker() as session:
        await dispatch_service.manual_assign(session, DEFAULT_ORG_ID, booking_id="b2", guide_id="guide-small")

    changes = [
        schemas.ReassignChange(type="reassign", booking_id="b2", from_guide_id="guide-small", to_guide_id="guide-large"),
        schemas.AssignChange(type="assign", booking_id="b5", guide_id="guide-large"),
    ]
    async with async_session_maker() as session:
        result = await dispatch_service.batch_apply_changes(
            session, DEFAULT_ORG_ID, DISPATCH_DATE, changes, expected_version=1
        )

    assert result.version == 2
    assert [(item.type, item.guide_id) for item in result.applied] == [
        ("reassign", "guide-large"),
        ("assign", "guide-large"),
    ]
    assert await _placements(async_session_maker) == {
        "b2": ("guide-large", 0),
        "b5": ("guide-large", 1),
    }


@pytest.mark.anyio
async def test_resolution_without_guide_is_rejected_and_warning_stays(async_session_maker):
    await _seed_short_staffed(async_session_maker)
    async with async_session_maker() as session:
        optimized = await dispatch_service.optimize(session, DEFAULT_ORG_ID, DISPATCH_DATE)
    assert optimized.unassigned_bookings == 2
    warning = await _warning(async_session_maker, "unassigned_bookings")
    assert warning.booking_ids == ["b2", "b3"]

    request = schemas.WarningResolutionRequest(date=DAY, type="assign_guide")
    async with async_session_maker() as session:
        with pytest.raises(ValidationError) as exc:
            await dispatch_service.resolve_warning(session, DEFAULT_ORG_ID, DISPATCH_DATE, warning.warning_id, request)

    assert exc.value.status_code == 422
    assert exc.value.errors[0]["code"] == "guide_id_required"
    assert (await _warning(async_session_maker, "unassigned_bookings")).warning_id == warning.warning_id
    assert await _version(async_session_maker) == 1


@pytest.mark.anyio
async def test_add_external_resolution_places_unassigned_bookings(async_session_maker):
    await _seed_short_staffed(async_session_maker)
    async with async_session_maker() as session:
        await dispatch_service.optimize(session, DEFAULT_ORG_ID, DISPATCH_DATE)
    warning = await _warning(async_session_maker, "unassigned_bookings")

    request = schemas.WarningResolutionRequest(
        date=DAY,
        type="add_external",
        external_guide_name="Peak Shuttles",
        external_guide_contact="ops@peak.example.com",
        resolved_by="dispatcher",
    )
    async with async_session_maker() as session:
        result = await dispatch_service.resolve_warning(
            session, DEFAULT_ORG_ID, DISPATCH_DATE, warning.warning_id, request
        )
        with pytest.raises(ConflictError) as again:
            await dispatch_service.resolve_warning(session, DEFAULT_ORG_ID, DISPATCH_DATE, warning.warning_id, request)

    assert again.value.errors[0]["code"] == "warning_already_resolved"
    assert result.affected_booking_ids == ["b3", "b2"]
    async with async_session_maker() as session:
        guide = await session.get(Guide, result.guide_id)
        status = await dispatch_service.get_dispatch_status(session, DEFAULT_ORG_ID, DISPATCH_DATE)

    assert guide.kind == GUIDE_KIND_EXTERNAL
    assert guide.email == "ops@peak.example.com"
    assert guide.valid_on == DISPATCH_DATE
    assert status.warnings == []
    assert status.can_dispatch


@pytest.mark.anyio
async def test_external_guide_resolution_keeps_private_booking_alone(async_session_maker):
    async with async_session_maker() as session:
        add_tour(session)
        await session.flush()
        add_booking(session, "priv", 4, is_private=True)
        add_booking(session, "shared", 2)
        await session.commit()
    warning = await _warning(async_session_maker, "no_qualified_guide")
    assert warning.booking_ids == ["priv", "shared"]

    async with async_session_maker() as session:
        first = await dispatch_service.resolve_warning(
            session,
            DEFAULT_ORG_ID,
            DISPATCH_DATE,
            warning.warning_id,
            schemas.WarningResolutionRequest(date=DAY, type="add_external", external_guide_name="Peak Shuttles"),
        )

    assert first.affected_booking_ids == ["priv"]
    remaining = await _warning(async_session_maker, "unassigned_bookings")
    assert remaining.booking_ids == ["shared"]

    async with async_session_maker() as session:
        second = await dispatch_service.resolve_warning(
            session,
            DEFAULT_ORG_ID,
            DISPATCH_DATE,
            remaining.warning_id,
            schemas.WarningResolutionRequest(date=DAY, type="add_external", external_guide_name="Valley Vans"),
        )
        status = await dispatch_service.get_dispatch_status(session, DEFAULT_ORG_ID, DISPATCH_DATE)

    assert second.affected_booking_ids == ["shared"]
    assert second.guide_id != first.guide_id
    placements = await _placements(async_session_maker)
    assert placements == {"priv": (first.guide_id, 0), "shared": (second.guide_id, 0)}
    assert "unassigned_bookings" not in {item.type for item in status.warnings}


@pytest.mark.anyio
async def test_resolution_must_match_warning_type(async_session_maker):
    await _seed_short_staffed(async_session_maker)
    async with async_session_maker() as session:
        await dispatch_service.optimize(session, DEFAULT_ORG_ID, DISPATCH_DATE)
    warning = await _warning(async_session_maker, "insufficient_guides")

    request = schemas.WarningResolutionRequest(date=DAY, type="assign_guide", guide_id="guide-small")
    async with async_session_maker() as session:
        with pytest.raises(ValidationError) as exc:
            await dispatch_service.resolve_warning(session, DEFAULT_ORG_ID, DISPATCH_DATE, warning.warning_id, request)
        with pytest.raises(NotFoundError):
            await dispatch_service.resolve_warning(session, DEFAULT_ORG_ID, DISPATCH_DATE, "0000", request)

    assert exc.value.errors[0]["code"] == "resolution_not_applicable"


@pytest.mark.anyio
async def test_cancel_tour_resolution_cancels_run(async_session_maker):
    await _seed_short_staffed(async_session_maker)
    async with async_session_maker() as session:
        await dispatch_service.optimize(session, DEFAULT_ORG_ID, DISPATCH_DATE)
    warning = await _warning(async_session_maker, "unassigned_bookings")

    request = schemas.WarningResolutionRequest(date=DAY, type="cancel_tour")
    async with async_session_maker() as session:
        result = await dispatch_service.resolve_warning(
            session, DEFAULT_ORG_ID, DISPATCH_DATE, warning.warning_id, request
        )
        runs = await dispatch_service.get_tour_runs(session, DEFAULT_ORG_ID, DISPATCH_DATE)

    assert sorted(result.affected_booking_ids) == ["b2", "b3", "b5"]
    assert runs.runs == []
    assert await _placements(async_session_maker) == {}


@pytest.mark.anyio
async def test_dispatch_locks_day_and_delivers_event(async_session_maker):
    await seed_split_run(async_session_maker)
    async with async_session_maker() as session:
        await dispatch_service.optimize(session, DEFAULT_ORG_ID, DISPATCH_DATE)

    captured: list[dict] = []
    adapters = OutboxAdapters(event_transport=_capturing_transport(captured), webhook_url=WEBHOOK_URL)
    async with async_session_maker() as session:
        result = await dispatch_service.dispatch(
            session, DEFAULT_ORG_ID, DISPATCH_DATE, dispatched_by="dispatcher", expected_version=1, adapters=adapters
        )

    assert result.version == 2
    assert result.guides_notified == 2
    assert result.notification_errors == []
    assert len(captured) == 1
    assert captured[0]["url"] == WEBHOOK_URL
    assert b'"dispatch.completed"' in captured[0]["body"]

    async with async_session_maker() as session:
        event = await session.scalar(sa.select(OutboxEvent))
        day = await session.scalar(sa.select(DispatchDay))
        notified = (await session.execute(sa.select(GuideAssignment.notified_at))).scalars().all()
        assert event.status == OUTBOX_SENT
        assert event.payload_json["guide_ids"] == ["guide-large", "guide-small"]
        assert day.status == DAY_DISPATCHED
        assert day.dispatched_by == "dispatcher"
        assert all(value is not None for value in notified)

        with pytest.raises(DispatchLockedError) as locked:
            await dispatch_service.unassign(session, DEFAULT_ORG_ID, booking_id="b2")
        with pytest.raises(DispatchLockedError):
            await dispatch_service.optimize(session, DEFAULT_ORG_ID, DISPATCH_DATE)

    assert locked.value.status_code == 409
    assert locked.value.errors[0]["code"] == "dispatch_locked"
    assert await _version(async_session_maker) == 2


@pytest.mark.anyio
async def test_clear_run_allows_planning_again(async_session_maker):
    await seed_split_run(async_session_maker)
    async with async_session_maker() as session:
        await dispatch_service.optimize(session, DEFAULT_ORG_ID, DISPATCH_DATE)
        cleared = await dispatch_service.clear_run(session, DEFAULT_ORG_ID, RUN_KEY, expected_version=1)

    assert sorted(cleared.cleared_booking_ids) == ["b2", "b3", "b5"]
    assert cleared.version == 2
    assert await _placements(async_session_maker) == {}

    async with async_session_maker() as session:
        replanned = await dispatch_service.optimize(session, DEFAULT_ORG_ID, DISPATCH_DATE)
        with pytest.raises(NotFoundError):
            await dispatch_service.clear_run(session, DEFAULT_ORG_ID, f"tour-canyon|{DAY}|18:00")

    assert replanned.assigned_bookings == 3
    assert replanned.version == 3


@pytest.mark.anyio
async def test_clear_run_refuses_when_a_guest_was_picked_up(async_session_maker):
    await seed_split_run(async_session_maker)
    async with async_session_maker() as session:
        await dispatch_service.optimize(session, DEFAULT_ORG_ID, DISPATCH_DATE)
        pickup_id = await session.scalar(sa.select(PickupAssignment.pickup_id).where(PickupAssignment.booking_id == "b5"))
        await dispatch_service.mark_picked_up(session, DEFAULT_ORG_ID, pickup_id)
    before = await _pickup_records(async_session_maker)

    async with async_session_maker() as session:
        with pytest.raises(ConflictError) as exc:
            await dispatch_service.clear_run(session, DEFAULT_ORG_ID, RUN_KEY)

    assert exc.value.errors[0]["code"] == "pickup_terminal"
    assert await _pickup_records(async_session_maker) == before
    assert await _version(async_session_maker) == 2


@pytest.mark.anyio
async def test_check_in_allowed_after_dispatch_and_reopen_unlocks(async_session_maker):
    await seed_split_run(async_session_maker)
    async with async_session_maker() as session:
        await dispatch_service.optimize(session, DEFAULT_ORG_ID, DISPATCH_DATE)
        await dispatch_service.dispatch(session, DEFAULT_ORG_ID, DISPATCH_DATE)
        pickup_id = await session.scalar(sa.select(PickupAssignment.pickup_id).where(PickupAssignment.booking_id == "b5"))

        picked = await dispatch_service.mark_picked_up(session, DEFAULT_ORG_ID, pickup_id)
        assert picked.pickup.status == "picked_up"
        assert picked.version == 3

        reopened = await dispatch_service.reopen(session, DEFAULT_ORG_ID, DISPATCH_DATE, expected_version=3)
        assert reopened.status == "in_progress"
        with pytest.raises(ConflictError) as not_dispatched:
            await dispatch_service.reopen(session, DEFAULT_ORG_ID, DISPATCH_DATE)
        with pytest.raises(ConflictError) as terminal:
            await dispatch_service.unassign(session, DEFAULT_ORG_ID, booking_id="b5")
        removed = await dispatch_service.unassign(session, DEFAULT_ORG_ID, booking_id="b2")

    assert not_dispatched.value.errors[0]["code"] == "not_dispatched"
    assert terminal.value.errors[0]["code"] == "pickup_terminal"
    assert removed.version == 5


@pytest.mark.anyio
async def test_dispatch_survives_webhook_failure(async_session_maker):
    await seed_split_run(async_session_maker)
    async with async_session_maker() as session:
        await dispatch_service.optimize(session, DEFAULT_ORG_ID, DISPATCH_DATE)

    adapters = OutboxAdapters(event_transport=_capturing_transport([], status_code=503), webhook_url=WEBHOOK_URL)
    async with async_session_maker() as session:
        result = await dispatch_service.dispatch(session, DEFAULT_ORG_ID, DISPATCH_DATE, adapters=adapters)

    assert result.notification_errors == ["status_503"]
    async with async_session_maker() as session:
        event = await session.scalar(sa.select(OutboxEvent))
        day = await session.scalar(sa.select(DispatchDay))
    assert event.status == OUTBOX_RETRY
    assert event.attempts == 1
    assert day.status == DAY_DISPATCHED


@pytest.mark.anyio
async def test_dispatch_blocked_by_outstanding_warnings_until_acknowledged(async_session_maker):
    await _seed_short_staffed(async_session_maker)
    async with async_session_maker() as session:
        await dispatch_service.optimize(session, DEFAULT_ORG_ID, DISPATCH_DATE)
        with pytest.raises(ValidationError) as blocked:
            await dispatch_service.dispatch(session, DEFAULT_ORG_ID, DISPATCH_DATE)

    assert {item["code"] for item in blocked.value.errors} == {"outstanding_warnings"}
    assert {item["type"] for item in blocked.value.errors} == {"unassigned_bookings", "insufficient_guides"}

    async with async_session_maker() as session:
        status = await dispatch_service.get_dispatch_status(session, DEFAULT_ORG_ID, DISPATCH_DATE)
        for warning in status.warnings:
            await dispatch_service.resolve_warning(
                session,
                DEFAULT_ORG_ID,
                DISPATCH_DATE,
                warning.warning_id,
                schemas.WarningResolutionRequest(date=DAY, type="acknowledge", note="customer will self-drive"),
            )
        result = await dispatch_service.dispatch(session, DEFAULT_ORG_ID, DISPATCH_DATE)

    assert result.notification_errors == []
    async with async_session_maker() as session:
        board = await dispatch_service.get_dispatch_board(session, DEFAULT_ORG_ID, DISPATCH_DATE)
    assert board.status.is_dispatched
    assert board.status.warnings == []


@pytest.mark.anyio
async def test_outsourced_guide_takes_unassigned_bookings(async_session_maker):
    await _seed_short_staffed(async_session_maker)
    async with async_session_maker() as session:
        await dispatch_service.optimize(session, DEFAULT_ORG_ID, DISPATCH_DATE)
        created = await dispatch_service.add_outsourced_guide_to_run(
            session,
            DEFAULT_ORG_ID,
            RUN_KEY,
            schemas.ExternalGuideRequest(name="Valley Vans", contact="+1 403 555 0100", vehicle_capacity=5),
        )
        with pytest.raises(NotFoundError):
            await dispatch_service.add_outsourced_guide_to_run(
                session, DEFAULT_ORG_ID, f"tour-canyon|{DAY}|18:00", schemas.ExternalGuideRequest(name="Nobody")
            )

    assert created.kind == GUIDE_KIND_EXTERNAL
    assert created.assigned_booking_ids == ["b3", "b2"]
    assert created.version == 2
    placements = await _placements(async_session_maker)
    assert placements["b3"] == (created.guide_id, 0)
    assert placements["b2"] == (created.guide_id, 1)


@pytest.mark.anyio
async def test_temp_guide_is_available_only_on_its_date(async_session_maker):
    await seed_split_run(async_session_maker)
    async with async_session_maker() as session:
        created = await dispatch_service.create_temp_guide_for_date(
            session,
            DEFAULT_ORG_ID,
            DISPATCH_DATE,
            schemas.TempGuideRequest(date=DAY, first_name="Sam", vehicle_capacity=4, available_from="08:00"),
        )
        today = await dispatch_service.get_available_guides(session, DEFAULT_ORG_ID, DISPATCH_DATE)
        tomorrow = await dispatch_service.get_available_guides(
            session, DEFAULT_ORG_ID, DISPATCH_DATE + dt.timedelta(days=1)
        )

    assert created.kind == GUIDE_KIND_TEMPORARY
    assert created.version == 1
    assert created.guide_id in {guide.guide_id for guide in today.guides}
    assert created.guide_id not in {guide.guide_id for guide in tomorrow.guides}


@pytest.mark.anyio
async def test_reorder_and_pickup_time_override(async_session_maker):
    await seed_split_run(async_session_maker)
    async with async_session_maker() as session:
        await dispatch_service.optimize(session, DEFAULT_ORG_ID, DISPATCH_DATE)
        assignment_id = await session.scalar(
            sa.select(GuideAssignment.assignment_id).where(GuideAssignment.guide_id == "guide-small")
        )
        reordered = await dispatch_service.reorder_pickups(
            session, DEFAULT_ORG_ID, assignment_id, ["b3", "b2"], expected_version=1
        )
        pickup_id = reordered.pickups[0].pickup_id
        updated = await dispatch_service.update_pickup_time(session, DEFAULT_ORG_ID, pickup_id, "08:20")
        with pytest.raises(ValidationError):
            await dispatch_service.update_pickup_time(session, DEFAULT_ORG_ID, pickup_id, "8 am")

    assert [(pickup.booking_id, pickup.pickup_time) for pickup in reordered.pickups] == [
        ("b3", "08:35"),
        ("b2", "08:50"),
    ]
    assert updated.pickup.pickup_time == "08:20"
    assert updated.pickup.time_overridden
    assert updated.version == 3
    assert await _version(async_session_maker) == 3


@pytest.mark.anyio
async def test_ghost_preview_does_not_write(async_session_maker):
    await seed_split_run(async_session_maker)
    async with async_session_maker() as session:
        await dispatch_service.manual_assign(session, DEFAULT_ORG_ID, booking_id="b5", guide_id="guide-large")
        assignment_id = await session.scalar(sa.select(GuideAssignment.assignment_id))
        fits = await dispatch_service.calculate_ghost_preview(
            session, DEFAULT_ORG_ID, guide_assignment_id=assignment_id, booking_id="b3", position=0
        )

    assert fits.valid
    assert [(stop.booking_id, stop.is_new) for stop in fits.stops] == [("b3", True), ("b5", False)]
    assert (fits.new_capacity.current, fits.new_capacity.max) == (8, 8)
    assert fits.moved_from_assignment_id is None
    assert await _version(async_session_maker) == 1
    assert set(await _placements(async_session_maker)) == {"b5"}


@pytest.mark.anyio
async def test_read_projections(async_session_maker):
    await seed_split_run(async_session_maker)
    async with async_session_maker() as session:
        proposal = await dispatch_service.auto_assign_tour(session, DEFAULT_ORG_ID, RUN_KEY)
        suggestions = await dispatch_service.get_suggestions(session, DEFAULT_ORG_ID, "b5")
        await dispatch_service.optimize(session, DEFAULT_ORG_ID, DISPATCH_DATE)
        timelines = await dispatch_service.get_guide_timelines(session, DEFAULT_ORG_ID, DISPATCH_DATE)
        manifest = await dispatch_service.get_manifest(session, DEFAULT_ORG_ID, RUN_KEY)

    assert proposal.success
    assert {load.guide_id: load.guests for load in proposal.assignments} == {"guide-large": 5, "guide-small": 5}
    assert await _version(async_session_maker) == 1
    assert suggestions.run_key == RUN_KEY
    assert [(item.guide_id, item.score) for item in suggestions.suggestions] == [
        ("guide-small", 75),
        ("guide-large", 60),
    ]
    by_guide = {timeline.guide_id: timeline for timeline in timelines.timelines}
    assert by_guide["guide-small"].total_guests == 5
    assert [segment.type for segment in by_guide["guide-large"].segments][-1] == "tour"
    assert {entry.booking_id: entry.guide_id for entry in manifest.entries} == {
        "b2": "guide-small",
        "b3": "guide-small",
        "b5": "guide-large",
    }
