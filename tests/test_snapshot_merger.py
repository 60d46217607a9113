from schemas.travel_plan_schema import TravelPlan
from services.snapshot_merger import TravelPlanSnapshotMerger, merge_travel_plans

from conftest import utc


def _plan(plan_id, created_day=1, title="Trip"):
    return TravelPlan(
        id=plan_id,
        title=title,
        destination="Osaka",
        start_date=utc(2024, 4, 1),
        end_date=utc(2024, 4, 2),
        created_at=utc(2024, 3, created_day),
    )


def test_nothing_is_emitted_until_both_sides_delivered():
    emitted = []
    merger = TravelPlanSnapshotMerger(emitted.append)

    merger.update_own([_plan("A")])
    merger.update_own([_plan("A"), _plan("B")])
    assert emitted == []
    assert not merger.ready

    merger.update_shared([])
    assert merger.ready
    assert [[p.id for p in plans] for plans in emitted] == [["A", "B"]]


def test_every_later_update_emits_the_full_list():
    emitted = []
    merger = TravelPlanSnapshotMerger(emitted.append)
    merger.update_shared([_plan("S", created_day=5)])
    merger.update_own([_plan("A", created_day=1)])
    merger.update_own([])

    assert [[p.id for p in plans] for plans in emitted] == [["S", "A"], ["S"]]


def test_same_plan_in_both_lists_appears_once():
    own = _plan("SAME", title="old title")
    shared = _plan("SAME", title="new title")

    merged = merge_travel_plans([own], [shared])

    assert len(merged) == 1
    assert merged[0].title == "new title"
