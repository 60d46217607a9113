import pytest

from core.errors import AuthenticationRequiredError, RemoteOperationError
from schemas.migration_schema import MigrationState
from schemas.travel_plan_schema import TravelPlan
from schemas.plan_schema import Plan
from schemas.place_schema import VisitedPlace
from services import cloudkit_codec, firestore_codec
from services.image_utils import image_dimensions
from services.migration_service import CloudKitMigrationService

from conftest import USER_ID, make_jpeg, utc

MIGRATION_KEY = "hasCompletedCloudKitMigration_v1"
USER_FLAG = f"{MIGRATION_KEY}:{USER_ID}"


def _travel_plan(plan_id, title="Kyoto", **extra):
    return TravelPlan(
        id=plan_id,
        title=title,
        destination="Kyoto",
        start_date=utc(2024, 10, 1),
        end_date=utc(2024, 10, 3),
        created_at=utc(2024, 9, 1),
        **extra,
    )


@pytest.fixture
def migration(cloudkit_service, firestore_service, image_store, preferences):
    return CloudKitMigrationService(
        cloudkit=cloudkit_service,
        firestore=firestore_service,
        image_store=image_store,
        preferences=preferences,
        migration_key=MIGRATION_KEY,
    )


@pytest.fixture
def populated_source(cloudkit_server):
    cloudkit_server.put_record(cloudkit_codec.travel_plan_to_record(_travel_plan("TP1"), USER_ID, "TP1"), image=make_jpeg(90, 50))
    cloudkit_server.put_record(cloudkit_codec.travel_plan_to_record(_travel_plan("TP2"), USER_ID, "TP2"))
    cloudkit_server.put_record(cloudkit_codec.plan_to_record(
        Plan(id="PL1", title="Picnic", start_date=utc(2024, 5, 3), end_date=utc(2024, 5, 3)), USER_ID
    ))
    cloudkit_server.put_record(
        cloudkit_codec.visited_place_to_record(VisitedPlace(title="Gion", latitude=35.0, longitude=135.77), USER_ID, "VP1"),
        image=make_jpeg(33, 21),
    )
    return cloudkit_server


def _target_counts(fake_firestore):
    return {
        name: len(fake_firestore.docs_under(f"users/{USER_ID}/{name}"))
        for name in ("travelPlans", "plans", "places")
    }


async def test_migration_copies_everything_and_sets_flag(migration, populated_source, fake_firestore, preferences):
    assert migration.state(USER_ID) == MigrationState.NOT_STARTED

    report = await migration.migrate_all_data(USER_ID)

    assert _target_counts(fake_firestore) == {"travelPlans": 2, "plans": 1, "places": 1}
    assert report.count_for("travel_plans").migrated == 2
    assert report.count_for("travel_plans").images_rehomed == 1
    assert report.total_migrated == 4
    assert preferences.get_bool(USER_FLAG)
    assert migration.state(USER_ID) == MigrationState.COMPLETED


async def test_running_twice_writes_nothing_the_second_time(migration, populated_source, fake_firestore):
    await migration.migrate_all_data(USER_ID)
    counts = _target_counts(fake_firestore)
    writes = len(fake_firestore.writes)

    report = await migration.migrate_all_data(USER_ID)

    assert report.already_completed
    assert _target_counts(fake_firestore) == counts
    assert len(fake_firestore.writes) == writes


async def test_rerun_after_flag_reset_skips_existing_records(migration, populated_source, fake_firestore):
    await migration.migrate_all_data(USER_ID)
    counts = _target_counts(fake_firestore)
    writes = len(fake_firestore.writes)

    migration.reset_migration_flag(USER_ID)
    report = await migration.migrate_all_data(USER_ID)

    assert _target_counts(fake_firestore) == counts
    assert len(fake_firestore.writes) == writes
    assert report.total_migrated == 0
    assert report.count_for("travel_plans").skipped == 2


async def test_existing_target_record_is_left_untouched(migration, cloudkit_server, fake_firestore):
    cloudkit_server.put_record(cloudkit_codec.travel_plan_to_record(_travel_plan("abc123", title="From CloudKit"), USER_ID, "abc123"))
    existing = firestore_codec.travel_plan_to_document(_travel_plan("abc123", title="Already in Firestore"), USER_ID)
    fake_firestore.documents[f"users/{USER_ID}/travelPlans/abc123"] = existing
    before = dict(existing)

    await migration.migrate_all_data(USER_ID)

    docs = fake_firestore.docs_under(f"users/{USER_ID}/travelPlans")
    assert list(docs) == ["abc123"]
    assert docs["abc123"] == before


async def test_visited_place_image_is_rehomed_locally(migration, populated_source, fake_firestore, image_store):
    await migration.migrate_all_data(USER_ID)

    document = fake_firestore.docs_under(f"users/{USER_ID}/places")["VP1"]
    file_name = document["localPhotoFileName"]
    assert file_name.startswith("visited_place_")
    assert image_dimensions(image_store.load(file_name)) == (33, 21)


async def test_travel_plan_image_is_rehomed_locally(migration, populated_source, fake_firestore, image_store):
    await migration.migrate_all_data(USER_ID)

    docs = fake_firestore.docs_under(f"users/{USER_ID}/travelPlans")
    assert docs["TP1"]["localImageFileName"].startswith("travel_plan_")
    assert image_dimensions(image_store.load(docs["TP1"]["localImageFileName"])) == (90, 50)
    assert "localImageFileName" not in docs["TP2"]


async def test_shared_plans_are_migrated_into_shared_collection(migration, cloudkit_server, fake_firestore):
    shared = _travel_plan("SH1", is_shared=True, share_code="TRAVEL-AB12CD34", shared_with=["owner", USER_ID], owner_id="owner")
    cloudkit_server.put_record(cloudkit_codec.travel_plan_to_record(shared, "owner", "SH1"))

    await migration.migrate_all_data(USER_ID)

    document = fake_firestore.docs_under("sharedTravelPlans")["SH1"]
    assert document["shareCode"] == "TRAVEL-AB12CD34"
    assert document["ownerId"] == "owner"


async def test_failure_aborts_and_leaves_flag_unset(migration, populated_source, fake_firestore, preferences):
    fake_firestore.fail_writes_under = f"users/{USER_ID}/plans"

    with pytest.raises(RemoteOperationError):
        await migration.migrate_all_data(USER_ID)

    assert not preferences.get_bool(USER_FLAG)
    assert migration.state(USER_ID) == MigrationState.NOT_STARTED
    # travel plans went through, visited places were never reached
    assert _target_counts(fake_firestore) == {"travelPlans": 2, "plans": 0, "places": 0}


async def test_source_failure_propagates(migration, cloudkit_server, preferences):
    cloudkit_server.shared_query_failure = "other"

    with pytest.raises(RemoteOperationError):
        await migration.migrate_all_data(USER_ID)
    assert not preferences.get_bool(USER_FLAG)


async def test_failed_existence_check_counts_as_absent(migration, populated_source, fake_firestore, monkeypatch):
    async def broken_check(self, plan_id):
        raise RemoteOperationError("unavailable")

    monkeypatch.setattr(type(migration.firestore), "plan_exists", broken_check)

    report = await migration.migrate_all_data(USER_ID)

    assert report.count_for("plans").migrated == 1
    assert "PL1" in fake_firestore.docs_under(f"users/{USER_ID}/plans")


async def test_broken_source_image_does_not_block_record(migration, cloudkit_server, fake_firestore):
    cloudkit_server.put_record(
        cloudkit_codec.visited_place_to_record(VisitedPlace(title="Pin", latitude=1.0, longitude=2.0), USER_ID, "VP2"),
        image=b"not really a jpeg",
    )

    await migration.migrate_all_data(USER_ID)

    document = fake_firestore.docs_under(f"users/{USER_ID}/places")["VP2"]
    assert "localPhotoFileName" not in document


async def test_empty_source_still_completes(migration, preferences, fake_firestore):
    report = await migration.migrate_all_data(USER_ID)

    assert report.total_migrated == 0
    assert preferences.get_bool(USER_FLAG)
    assert fake_firestore.writes == []


async def test_missing_user_is_rejected(migration, preferences):
    with pytest.raises(AuthenticationRequiredError):
        await migration.migrate_all_data("")
    assert not preferences.get_bool(USER_FLAG)


async def test_single_plan_migration_bypasses_checks_and_flag(migration, fake_firestore, preferences, image_store):
    fake_firestore.documents[f"users/{USER_ID}/travelPlans/TP9"] = firestore_codec.travel_plan_to_document(
        _travel_plan("TP9", title="Old"), USER_ID
    )
    preferences.set_bool(USER_FLAG, True)

    saved = await migration.migrate_single_travel_plan(USER_ID, _travel_plan("TP9", title="Backfilled"), image=make_jpeg())

    document = fake_firestore.docs_under(f"users/{USER_ID}/travelPlans")["TP9"]
    assert document["title"] == "Backfilled"
    assert image_store.exists(saved.local_image_file_name)
    assert preferences.get_bool(USER_FLAG)


async def test_each_user_is_migrated_independently(migration, populated_source, fake_firestore, preferences):
    populated_source.put_record(cloudkit_codec.plan_to_record(
        Plan(id="BOB-PL", title="Bob's picnic", start_date=utc(2024, 6, 1), end_date=utc(2024, 6, 1)), "bob"
    ))
    await migration.migrate_all_data(USER_ID)

    report = await migration.migrate_all_data("bob")

    assert not report.already_completed
    assert list(fake_firestore.docs_under("users/bob/plans")) == ["BOB-PL"]
    assert migration.state("bob") == MigrationState.COMPLETED

    migration.reset_migration_flag("bob")
    assert migration.state("bob") == MigrationState.NOT_STARTED
    assert preferences.get_bool(USER_FLAG)


async def test_single_plan_migration_replaces_existing_local_image(migration, fake_firestore, image_store):
    plan = _travel_plan("TP8", local_image_file_name="stale_cover.jpg")

    saved = await migration.migrate_single_travel_plan(USER_ID, plan, image=make_jpeg(20, 10))

    assert saved.local_image_file_name.startswith("travel_plan_")
    assert image_dimensions(image_store.load(saved.local_image_file_name)) == (20, 10)
    document = fake_firestore.docs_under(f"users/{USER_ID}/travelPlans")["TP8"]
    assert document["localImageFileName"] == saved.local_image_file_name
