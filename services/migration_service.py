"""
One-time copy of a user's CloudKit data into Firestore.

Each user's completion flag in `Preferences` is the only durable state.
A run that fails part way leaves it unset, and the next run starts over
from the first entity type; records already copied are skipped by the
per-record existence check.
"""
import logging
from typing import Optional, Set, Union

from PIL import Image

from core.config import settings
from core.errors import APIClientError, AuthenticationRequiredError, InvalidPayloadError
from core.preferences import Preferences
from schemas.migration_schema import MigrationReport, MigrationState
from schemas.travel_plan_schema import TravelPlan
from services.cloudkit_service import CloudKitService
from services.firestore_service import FirestoreService
from services.image_store import LocalImageStore
from services.image_utils import MIGRATION_QUALITY, encode_jpeg

logger = logging.getLogger(__name__)

ImageInput = Union[bytes, Image.Image]

TRAVEL_PLAN_IMAGE_PREFIX = "travel_plan"
VISITED_PLACE_IMAGE_PREFIX = "visited_place"


class CloudKitMigrationService:
    def __init__(
        self,
        cloudkit: CloudKitService,
        firestore: FirestoreService,
        image_store: LocalImageStore,
        preferences: Preferences,
        migration_key: str = settings.MIGRATION_KEY,
    ):
        self.cloudkit = cloudkit
        self.firestore = firestore
        self.image_store = image_store
        self.preferences = preferences
        self.migration_key = migration_key
        self._running: Set[str] = set()

    # --- Status ---

    def flag_key(self, user_id: str) -> str:
        """Completion is tracked per user; the server migrates many accounts."""
        return f"{self.migration_key}:{user_id}"

    def has_migrated(self, user_id: str) -> bool:
        return self.preferences.get_bool(self.flag_key(user_id))

    def state(self, user_id: str) -> MigrationState:
        if self.has_migrated(user_id):
            return MigrationState.COMPLETED
        if user_id in self._running:
            return MigrationState.IN_PROGRESS
        return MigrationState.NOT_STARTED

    def _mark_migration_complete(self, user_id: str):
        self.preferences.set_bool(self.flag_key(user_id), True)
        logger.info(f"✅ [Migration] Migration marked as complete for {user_id}")

    def reset_migration_flag(self, user_id: str):
        """Clears the user's completion flag so the next run migrates again. Meant for testing."""
        self.preferences.remove(self.flag_key(user_id))
        logger.warning(f"⚠️ [Migration] Migration flag reset for {user_id}")

    # --- Migration ---

    async def migrate_all_data(self, user_id: str) -> MigrationReport:
        if not user_id:
            raise AuthenticationRequiredError()
        report = MigrationReport(user_id=user_id)
        if self.has_migrated(user_id):
            logger.info("ℹ️ [Migration] Migration already completed, skipping")
            report.already_completed = True
            return report

        logger.info(f"🔄 [Migration] Starting CloudKit to Firestore migration for {user_id}")
        target = self.firestore.bound_to(user_id)
        self._running.add(user_id)
        try:
            await self._migrate_travel_plans(user_id, target, report)
            await self._migrate_plans(user_id, target, report)
            await self._migrate_visited_places(user_id, target, report)
        except Exception as e:
            logger.error(f"❌ [Migration] Migration failed: {e}")
            raise
        finally:
            self._running.discard(user_id)

        self._mark_migration_complete(user_id)
        logger.info(f"✅ [Migration] Migration completed successfully! ({report.total_migrated} records)")
        return report

    async def _exists(self, check, label: str, record_id: str) -> bool:
        try:
            return await check
        except APIClientError as e:
            logger.warning(f"  ⚠️ Error checking existing {label} {record_id}: {e}")
            return False

    def _rehome_image(self, image: ImageInput, prefix: str) -> Optional[str]:
        """Stores the image locally and returns its file name, or None when that fails."""
        file_name = LocalImageStore.generate_file_name(prefix)
        try:
            self.image_store.save(encode_jpeg(image, MIGRATION_QUALITY), file_name)
        except (InvalidPayloadError, OSError, ValueError) as e:
            logger.warning(f"  ❌ Failed to save image: {e}")
            return None
        logger.info(f"  ✅ Image saved locally: {file_name}")
        return file_name

    async def _migrate_travel_plans(self, user_id: str, target: FirestoreService, report: MigrationReport):
        logger.info("🔄 [Migration] Migrating TravelPlans...")
        results = await self.cloudkit.fetch_travel_plans_including_shared(user_id)
        count = report.count_for("travel_plans")
        count.found = len(results)
        logger.info(f"🔄 [Migration] Found {len(results)} TravelPlans in CloudKit")
        if not results:
            logger.info("ℹ️ [Migration] No TravelPlans to migrate")
            return

        for plan, image in results:
            if not plan.id:
                continue
            if await self._exists(target.travel_plan_exists(plan.id, shared=plan.is_shared), "TravelPlan", plan.id):
                logger.info(f"  ℹ️ Plan already exists in Firestore, skipping: {plan.title}")
                count.skipped += 1
                continue

            if image is not None and plan.local_image_file_name is None:
                file_name = self._rehome_image(image, TRAVEL_PLAN_IMAGE_PREFIX)
                if file_name:
                    plan = plan.model_copy(update={"local_image_file_name": file_name})
                    count.images_rehomed += 1

            await target.save_travel_plan(plan, touch=False)
            count.migrated += 1

        logger.info("✅ [Migration] TravelPlans migrated to Firestore")

    async def _migrate_plans(self, user_id: str, target: FirestoreService, report: MigrationReport):
        logger.info("🔄 [Migration] Migrating Plans...")
        plans = await self.cloudkit.fetch_plans(user_id)
        count = report.count_for("plans")
        count.found = len(plans)
        logger.info(f"🔄 [Migration] Found {len(plans)} Plans in CloudKit")
        if not plans:
            logger.info("ℹ️ [Migration] No Plans to migrate")
            return

        for plan in plans:
            if await self._exists(target.plan_exists(plan.id), "Plan", plan.id):
                logger.info(f"  ℹ️ Plan already exists in Firestore, skipping: {plan.title}")
                count.skipped += 1
                continue
            await target.save_plan(plan)
            count.migrated += 1

        logger.info("✅ [Migration] Plans migrated to Firestore")

    async def _migrate_visited_places(self, user_id: str, target: FirestoreService, report: MigrationReport):
        logger.info("🔄 [Migration] Migrating VisitedPlaces...")
        results = await self.cloudkit.fetch_visited_places(user_id)
        count = report.count_for("visited_places")
        count.found = len(results)
        logger.info(f"🔄 [Migration] Found {len(results)} VisitedPlaces in CloudKit")
        if not results:
            logger.info("ℹ️ [Migration] No VisitedPlaces to migrate")
            return

        for place, image in results:
            if not place.id:
                continue
            if await self._exists(target.place_exists(place.id), "VisitedPlace", place.id):
                logger.info(f"  ℹ️ Place already exists in Firestore, skipping: {place.title}")
                count.skipped += 1
                continue

            if image is not None and place.local_photo_file_name is None:
                file_name = self._rehome_image(image, VISITED_PLACE_IMAGE_PREFIX)
                if file_name:
                    place = place.model_copy(update={"local_photo_file_name": file_name})
                    count.images_rehomed += 1

            await target.save_place(place)
            count.migrated += 1

        logger.info("✅ [Migration] VisitedPlaces migrated to Firestore")

    async def migrate_single_travel_plan(self, user_id: str, plan: TravelPlan, image: Optional[ImageInput] = None) -> TravelPlan:
        """
        Copies one travel plan regardless of what the target already holds
        and without looking at or touching the completion flag.
        """
        target = self.firestore.bound_to(user_id)
        if image is not None:
            file_name = self._rehome_image(image, TRAVEL_PLAN_IMAGE_PREFIX)
            if file_name:
                plan = plan.model_copy(update={"local_image_file_name": file_name})
        return await target.save_travel_plan(plan, touch=False)
