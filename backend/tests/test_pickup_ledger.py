import datetime as dt

import pytest

from app.domain.dispatch import pickup_ledger
from app.domain.dispatch.db_models import PICKUP_NO_SHOW, GuideAssignment, PickupAssignment
from app.domain.dispatch.routing import RouteConfig, Stop
from app.domain.errors import CapacityError, ConflictError, ValidationError
from app.domain.pickups.travel import TravelMatrix
from tests.dispatch_seed import DISPATCH_DATE, TOUR_ID, add_booking, add_guide, add_tour

MATRIX = TravelMatrix()
ROUTE = RouteConfig()


async def _setup(session):
    add_tour(session)
    await session.flush()
    add_guide(session, "guide-ana")
    bookings = {
        "b1": add_booking(session, "b1", 2),
        "b2": add_booking(session, "b2", 3),
        "b3": add_booking(session, "b3", 2),
        "private": add_booking(session, "private", 2, is_private=True),
        "late": add_booking(session, "late", 1, booking_time="14:00"),
    }
    assignment = GuideAssignment(
        dispatch_date=DISPATCH_DATE, tour_id=TOUR_ID, run_time="09:00", guide_id="guide-ana", pickups=[]
    )
    session.add(assignment)
    await session.flush()
    return assignment, bookings


async def _assign(session, assignment, booking, position=None):
    return await pickup_ledger.assign(
        session,
        assignment=assignment,
        booking=booking,
        vehicle_capacity=6,
        matrix=MATRIX,
        position=position,
        config=ROUTE,
    )


def _order(assignment) -> list[tuple[int, str, str]]:
    return [(pickup.position, pickup.booking_id, pickup.calculated_pickup_time) for pickup in assignment.pickups]


@pytest.mark.anyio
async def test_assign_keeps_positions_contiguous_and_retimes(async_session_maker):
    async with async_session_maker() as session:
        assignment, bookings = await _setup(session)

        await _assign(session, assignment, bookings["b1"])
        assert _order(assignment) == [(0, "b1", "08:50")]

        await _assign(session, assignment, bookings["b2"], position=0)
        assert _order(assignment) == [(0, "b2", "08:35"), (1, "b1", "08:50")]

        pickup = assignment.pickups[0]
        await pickup_ledger.unassign(session, assignment=assignment, pickup=pickup, matrix=MATRIX, config=ROUTE)
        assert _order(assignment) == [(0, "b1", "08:50")]


@pytest.mark.anyio
async def test_assign_rejects_capacity_overflow(async_session_maker):
    async with async_session_maker() as session:
        assignment, bookings = await _setup(session)
        await _assign(session, assignment, bookings["b1"])
        await _assign(session, assignment, bookings["b2"])

        with pytest.raises(CapacityError) as exc:
            await _assign(session, assignment, bookings["b3"])

    assert exc.value.status_code == 409
    assert exc.value.errors[0]["code"] == "capacity_exceeded"
    assert exc.value.errors[0]["current"] == 5


@pytest.mark.anyio
async def test_private_booking_rules(async_session_maker):
    async with async_session_maker() as session:
        assignment, bookings = await _setup(session)
        await _assign(session, assignment, bookings["b1"])

        with pytest.raises(ConflictError) as not_empty:
            await _assign(session, assignment, bookings["private"])

        await pickup_ledger.unassign(
            session, assignment=assignment, pickup=assignment.pickups[0], matrix=MATRIX, config=ROUTE
        )
        await _assign(session, assignment, bookings["private"])
        with pytest.raises(ConflictError) as carrying_private:
            await _assign(session, assignment, bookings["b2"])

    assert not_empty.value.errors[0]["code"] == "private_requires_empty_guide"
    assert carrying_private.value.errors[0]["code"] == "guide_has_private_booking"


@pytest.mark.anyio
async def test_assign_rejects_duplicates_other_runs_and_bad_positions(async_session_maker):
    async with async_session_maker() as session:
        assignment, bookings = await _setup(session)
        await _assign(session, assignment, bookings["b1"])

        with pytest.raises(ConflictError) as duplicate:
            await _assign(session, assignment, bookings["b1"])
        with pytest.raises(ValidationError) as other_run:
            await _assign(session, assignment, bookings["late"])
        with pytest.raises(ValidationError) as position:
            await _assign(session, assignment, bookings["b2"], position=5)

    assert duplicate.value.errors[0]["code"] == "booking_already_assigned"
    assert other_run.value.errors[0]["code"] == "booking_not_in_run"
    assert position.value.errors[0]["code"] == "invalid_position"


@pytest.mark.anyio
async def test_reorder_validates_and_keeps_manual_times(async_session_maker):
    async with async_session_maker() as session:
        assignment, bookings = await _setup(session)
        for booking_id in ("b1", "b2"):
            await _assign(session, assignment, bookings[booking_id])
        pickup_ledger.update_pickup_time(assignment.pickups[0], "8:15")

        with pytest.raises(ValidationError) as mismatch:
            await pickup_ledger.reorder(session, assignment=assignment, booking_ids=["b2"], matrix=MATRIX)

        pickups = await pickup_ledger.reorder(
            session, assignment=assignment, booking_ids=["b2", "b1"], matrix=MATRIX, config=ROUTE
        )

    assert mismatch.value.errors[0]["code"] == "pickup_order_mismatch"
    assert [(pickup.position, pickup.booking_id) for pickup in pickups] == [(0, "b2"), (1, "b1")]
    assert pickups[0].calculated_pickup_time == "08:35"
    assert pickups[1].calculated_pickup_time == "08:15"
    assert pickups[1].time_overridden


@pytest.mark.anyio
async def test_checked_in_pickups_are_terminal(async_session_maker):
    async with async_session_maker() as session:
        assignment, bookings = await _setup(session)
        for booking_id in ("b1", "b2"):
            await _assign(session, assignment, bookings[booking_id])
        first, second = assignment.pickups

        at = dt.datetime(2025, 6, 2, 14, 40, tzinfo=dt.timezone.utc)
        pickup_ledger.mark_picked_up(first, at)
        pickup_ledger.mark_no_show(second)

        with pytest.raises(ConflictError) as again:
            pickup_ledger.mark_no_show(first)
        with pytest.raises(ConflictError) as move:
            await pickup_ledger.reorder(session, assignment=assignment, booking_ids=["b2", "b1"], matrix=MATRIX)
        with pytest.raises(ConflictError):
            pickup_ledger.update_pickup_time(second, "08:00")

    assert first.actual_pickup_time == at
    assert second.status == PICKUP_NO_SHOW
    assert again.value.errors[0]["code"] == "pickup_terminal"
    assert move.value.errors[0]["code"] == "pickup_terminal"


def test_update_pickup_time_requires_hhmm():
    pickup = PickupAssignment(booking_id="b1", status="pending", time_overridden=False)

    with pytest.raises(ValidationError) as exc:
        pickup_ledger.update_pickup_time(pickup, "soon")

    assert exc.value.errors[0]["code"] == "invalid_time"
    assert not pickup.time_overridden


def test_ghost_preview_projects_drop_without_side_effects():
    current = [Stop("b1", 2), Stop("b2", 2)]
    snapshot = list(current)

    preview = pickup_ledger.calculate_ghost_preview(
        current=current,
        candidate=Stop("new", 1),
        departure_minutes=9 * 60,
        vehicle_capacity=6,
        matrix=MATRIX,
        position=1,
        config=ROUTE,
        efficiency_threshold=15,
    )

    assert current == snapshot
    assert preview.valid
    assert [(stop.booking_id, stop.is_new) for stop in preview.stops] == [("b1", False), ("new", True), ("b2", False)]
    assert preview.added_drive_minutes == 10
    assert preview.current_guests == 4
    assert preview.is_efficient


def test_ghost_preview_reports_invalid_drop():
    preview = pickup_ledger.calculate_ghost_preview(
        current=[Stop("b1", 5)],
        candidate=Stop("new", 2),
        departure_minutes=9 * 60,
        vehicle_capacity=6,
        matrix=MATRIX,
        config=ROUTE,
    )

    assert not preview.valid
    assert preview.stops == ()
    assert preview.reason == "Needs 7 seats, vehicle has 6"


def test_ghost_preview_flags_inefficient_detour():
    preview = pickup_ledger.calculate_ghost_preview(
        current=[Stop("b1", 1)],
        candidate=Stop("new", 1),
        departure_minutes=9 * 60,
        vehicle_capacity=6,
        matrix=MATRIX,
        config=ROUTE,
        efficiency_threshold=5,
    )

    assert preview.valid
    assert not preview.is_efficient
    assert "consider another guide" in preview.recommendation
