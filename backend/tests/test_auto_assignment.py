import random

from app.domain.dispatch.auto_assignment import (
    EngineConfig,
    ExistingLoad,
    GuideInput,
    RunInput,
    plan_day,
    plan_run,
    rank_guides,
    runs_overlap,
)
from app.domain.dispatch.routing import Stop
from app.domain.pickups.travel import PickupPoint, TravelMatrix

DAY = ((7 * 60, 22 * 60),)


def _guide(guide_id: str, capacity: int = 6, **kwargs) -> GuideInput:
    return GuideInput(guide_id=guide_id, name=guide_id.title(), vehicle_capacity=capacity, windows=DAY, **kwargs)


def _run(*stops: Stop, start: int = 9 * 60, duration: int = 240, run_key: str = "tour-1|2025-06-01|09:00", **kwargs):
    return RunInput(
        run_key=run_key,
        tour_id=run_key.split("|")[0],
        start_minutes=start,
        end_minutes=start + duration,
        bookings=tuple(stops),
        **kwargs,
    )


def _matrix() -> TravelMatrix:
    return TravelMatrix(
        points={
            "north-1": PickupPoint(address_id="north-1", name="North Lodge", zone="north", sort_order=1),
            "north-2": PickupPoint(address_id="north-2", name="North Inn", zone="north", sort_order=2),
            "south-1": PickupPoint(address_id="south-1", name="South Hotel", zone="south", sort_order=1),
        },
        zone_minutes={("north", "south"): 20},
    )


def _loads(proposal) -> dict[str, set[str]]:
    return {load.guide_id: {item.stop.booking_id for item in load.pickups} for load in proposal.loads}


def test_split_bookings_fill_largest_vehicle_first():
    run = _run(Stop("b2", 2), Stop("b3", 3), Stop("b5", 5))
    guides = [_guide("g-small", 6), _guide("g-large", 8)]

    proposal = plan_run(run, guides, TravelMatrix())

    assert proposal.success
    assert _loads(proposal) == {"g-large": {"b5"}, "g-small": {"b2", "b3"}}
    assert proposal.stats.vehicle_utilization == round(10 / 14, 2)


def test_pickups_are_timed_backward_from_departure():
    run = _run(Stop("b2", 2), Stop("b3", 3))

    proposal = plan_run(run, [_guide("g1")], TravelMatrix())

    (load,) = proposal.loads
    assert [(item.stop.booking_id, item.pickup_time) for item in load.pickups] == [
        ("b2", "08:35"),
        ("b3", "08:50"),
    ]
    assert load.pickups[0].drive_minutes == 0
    assert load.pickups[1].drive_minutes == 10


def test_plan_run_is_deterministic_regardless_of_guide_order():
    run = _run(
        Stop("a", 3, "north-1"),
        Stop("b", 2, "south-1"),
        Stop("c", 4, "north-2"),
        Stop("d", 1),
    )
    guides = [_guide("g1"), _guide("g2", 8), _guide("g3", 4)]
    expected = plan_run(run, guides, _matrix())

    for seed in range(5):
        shuffled = list(guides)
        random.Random(seed).shuffle(shuffled)
        assert plan_run(run, shuffled, _matrix()) == expected


def test_zone_cluster_stays_on_one_guide():
    run = _run(Stop("n1", 2, "north-1"), Stop("n2", 2, "north-2"), Stop("s1", 2, "south-1"))

    proposal = plan_run(run, [_guide("g1"), _guide("g2")], _matrix())

    assert _loads(proposal) == {"g1": {"n1", "n2"}, "g2": {"s1"}}


def test_private_booking_gets_its_own_guide():
    run = _run(Stop("private", 2, is_private=True), Stop("shared", 3))

    proposal = plan_run(run, [_guide("g1"), _guide("g2")], TravelMatrix())

    assert _loads(proposal) == {"g1": {"private"}, "g2": {"shared"}}


def test_shared_booking_never_joins_a_private_guide():
    run = _run(Stop("private", 2, is_private=True), Stop("shared", 3))

    proposal = plan_run(run, [_guide("g1")], TravelMatrix())

    assert _loads(proposal) == {"g1": {"private"}}
    assert [(flag.type, flag.booking_ids) for flag in proposal.flags] == [("no_capacity", ("shared",))]
    assert not proposal.success


def test_private_booking_goes_to_guide_with_fewest_guests_today():
    run = _run(Stop("private", 3, is_private=True))
    guides = [_guide("a", day_runs=1, day_guests=6), _guide("b", day_runs=2, day_guests=2)]

    proposal = plan_run(run, guides, TravelMatrix())

    assert _loads(proposal) == {"b": {"private"}}


def test_private_booking_tie_on_guests_falls_back_to_guide_id():
    run = _run(Stop("private", 3, is_private=True))
    guides = [_guide("b", day_guests=4), _guide("a", day_guests=4)]

    proposal = plan_run(run, guides, TravelMatrix())

    assert _loads(proposal) == {"a": {"private"}}


def test_flags_booking_larger_than_any_vehicle():
    proposal = plan_run(_run(Stop("big", 7)), [_guide("g1", 6)], TravelMatrix())

    assert proposal.loads == ()
    assert proposal.flags[0].type == "exceeds_vehicle"
    assert proposal.unassigned_booking_ids == ("big",)


def test_flags_run_without_qualified_guide():
    guide = _guide("g1", qualified_tour_ids=frozenset({"other-tour"}))

    proposal = plan_run(_run(Stop("b1", 2)), [guide], TravelMatrix())

    assert proposal.flags[0].type == "no_qualified_guide"


def test_guide_outside_working_window_is_not_used():
    guide = GuideInput(guide_id="g1", name="Late", vehicle_capacity=6, windows=((12 * 60, 22 * 60),))

    proposal = plan_run(_run(Stop("b1", 2)), [guide], TravelMatrix())

    assert proposal.flags[0].type == "no_qualified_guide"


def test_existing_pickups_count_against_capacity():
    run = _run(Stop("new", 3), existing=(ExistingLoad(guide_id="g1", stops=(Stop("old", 4),)),))

    proposal = plan_run(run, [_guide("g1"), _guide("g2")], TravelMatrix())

    assert _loads(proposal) == {"g2": {"new"}}
    assert proposal.loads[0].is_new


def test_existing_load_keeps_order_and_new_stop_is_appended():
    run = _run(Stop("new", 1, "north-2"), existing=(ExistingLoad(guide_id="g1", stops=(Stop("old", 2, "south-1"),)),))

    proposal = plan_run(run, [_guide("g1")], _matrix())

    (load,) = proposal.loads
    assert [item.stop.booking_id for item in load.pickups] == ["old", "new"]
    assert load.added_booking_ids == ("new",)
    assert not load.is_new


def test_plan_day_blocks_guide_for_overlapping_runs():
    morning = _run(Stop("m1", 2), run_key="tour-1|2025-06-01|09:00")
    overlapping = _run(Stop("o1", 2), start=11 * 60, run_key="tour-2|2025-06-01|11:00")
    afternoon = _run(Stop("a1", 2), start=14 * 60, run_key="tour-3|2025-06-01|14:00")

    proposals = plan_day([afternoon, overlapping, morning], [_guide("g1")], TravelMatrix())

    by_key = {proposal.run_key: proposal for proposal in proposals}
    assert [proposal.run_key for proposal in proposals] == [morning.run_key, overlapping.run_key, afternoon.run_key]
    assert _loads(by_key[morning.run_key]) == {"g1": {"m1"}}
    assert by_key[overlapping.run_key].flags[0].type == "no_qualified_guide"
    assert _loads(by_key[afternoon.run_key]) == {"g1": {"a1"}}


def test_runs_overlap_honours_buffer():
    assert runs_overlap((540, 780), (800, 900), 30)
    assert not runs_overlap((540, 780), (810, 900), 30)
    assert not runs_overlap((540, 780), (800, 900), 0)


def test_engine_config_buffer_applies_to_busy_guides():
    guide = _guide("g1", busy=((13 * 60, 15 * 60),))
    run = _run(Stop("b1", 2))

    assert plan_run(run, [guide], TravelMatrix(), EngineConfig(run_buffer_minutes=0)).success
    assert not plan_run(run, [guide], TravelMatrix(), EngineConfig(run_buffer_minutes=30)).success


def test_rank_guides_prefers_zone_match():
    run = _run()
    guides = [_guide("g-north", preferred_zones=("north",)), _guide("g-south", base_zone="south")]

    suggestions = rank_guides(Stop("b1", 2, "north-1"), run, guides, _matrix())

    assert [item.guide_id for item in suggestions] == ["g-north", "g-south"]
    assert suggestions[0].score > suggestions[1].score
    assert "Prefers the north zone" in suggestions[0].reasons


def test_rank_guides_skips_guides_without_room():
    run = _run(existing=(ExistingLoad(guide_id="g1", stops=(Stop("old", 5),)),))

    suggestions = rank_guides(Stop("b1", 2), run, [_guide("g1"), _guide("g2")], TravelMatrix())

    assert [item.guide_id for item in suggestions] == ["g2"]
    assert all(0 <= item.score <= 100 for item in suggestions)
