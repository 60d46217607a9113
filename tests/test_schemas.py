import datetime

import pytest
from pydantic import ValidationError

from core.colors import hex_to_rgb, normalize_hex_color, parse_hex_color, rgb_to_hex
from schemas.migration_schema import MigrationReport
from schemas.place_schema import PlaceCategory
from schemas.plan_schema import PlanType
from schemas.travel_plan_schema import (
    SHARE_CODE_PATTERN,
    TravelPlan,
    TravelPlanCreate,
    normalize_share_code,
)

from conftest import utc


def _plan(**extra):
    return TravelPlan(title="Kyoto", destination="Kyoto", start_date=utc(2024, 10, 1), end_date=utc(2024, 10, 3), **extra)


def test_generated_share_codes_match_pattern():
    codes = {TravelPlan.generate_share_code() for _ in range(50)}
    assert all(SHARE_CODE_PATTERN.match(code) for code in codes)
    assert len(codes) > 1


def test_normalize_share_code():
    assert normalize_share_code("  travel-ab12cd34\n") == "TRAVEL-AB12CD34"


def test_owner_falls_back_to_user_id():
    assert _plan(user_id="u1").is_owner("u1")
    assert not _plan(user_id="u1", owner_id="u2").is_owner("u1")
    assert _plan(owner_id="u2").is_owner("u2")


def test_shared_with_user():
    plan = _plan(is_shared=True, owner_id="owner", shared_with=["owner", "guest"])
    assert plan.is_shared_with_user("guest")
    assert plan.is_shared_with_user("owner")
    assert not plan.is_shared_with_user("stranger")


def test_naive_dates_are_read_as_utc():
    plan = TravelPlan(
        title="Kyoto",
        destination="Kyoto",
        start_date=datetime.datetime(2024, 10, 1, 9, 0),
        end_date=datetime.datetime(2024, 10, 3, 9, 0),
    )
    assert plan.start_date.tzinfo == datetime.timezone.utc
    assert plan.start_date.hour == 9


def test_card_color_is_normalized():
    assert _plan(card_color_hex="ff8800").card_color_hex == "#FF8800"
    with pytest.raises(ValidationError):
        _plan(card_color_hex="not-a-color")


def test_create_rejects_end_before_start():
    with pytest.raises(ValidationError):
        TravelPlanCreate(title="Kyoto", destination="Kyoto", start_date=utc(2024, 10, 3), end_date=utc(2024, 10, 1))


@pytest.mark.parametrize("value", ["#000000", "#FFFFFF", "#1A2B3C"])
def test_hex_colors_round_trip(value):
    assert rgb_to_hex(hex_to_rgb(value)) == value


def test_lenient_color_parsing():
    assert normalize_hex_color("#abcdef") == "#ABCDEF"
    assert parse_hex_color("zzz") is None
    assert parse_hex_color(42) is None


def test_enum_parsing_falls_back():
    assert PlaceCategory.parse("cafe") is PlaceCategory.CAFE
    assert PlaceCategory.parse("spaceport") is PlaceCategory.OTHER
    assert PlanType.parse("daily") is PlanType.DAILY
    assert PlanType.parse(None) is PlanType.OUTING


def test_migration_report_totals():
    report = MigrationReport(user_id="u1")
    report.count_for("plans").migrated = 2
    report.count_for("visited_places").migrated = 3
    report.count_for("plans").skipped += 1

    assert report.total_migrated == 5
    assert report.count_for("plans").skipped == 1
