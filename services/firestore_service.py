"""
Firestore store for travel plans, plans and visited places.

Per-user data lives under `users/{uid}/travelPlans`, `users/{uid}/plans` and
`users/{uid}/places`. Shared travel plans move to the top-level
`sharedTravelPlans` collection, where membership is the `sharedWith` array.
Cover photos never go to Firestore: they are kept in the local image store
and only their file name is written to the document.
"""
import asyncio
import logging
from typing import AsyncIterator, Callable, List, Optional, Union

from firebase_admin import firestore
from google.api_core import exceptions as google_exceptions
from google.cloud.firestore_v1.base_query import FieldFilter
from PIL import Image

from core.errors import AuthenticationRequiredError, InvalidPayloadError, NotFoundError, RemoteOperationError
from schemas.common import new_id, utc_now
from schemas.travel_plan_schema import TravelPlan, normalize_share_code
from schemas.plan_schema import Plan
from schemas.place_schema import VisitedPlace
from services import firestore_codec
from services.codec import successful
from services.image_store import LocalImageStore
from services.image_utils import LOCAL_COVER_QUALITY, encode_jpeg
from services.snapshot_merger import TravelPlanSnapshotMerger, merge_travel_plans

logger = logging.getLogger(__name__)

ImageInput = Union[bytes, Image.Image]

USERS_COLLECTION = "users"
TRAVEL_PLANS_COLLECTION = "travelPlans"
PLANS_COLLECTION = "plans"
PLACES_COLLECTION = "places"
SHARED_TRAVEL_PLANS_COLLECTION = "sharedTravelPlans"

TRAVEL_PLAN_IMAGE_PREFIX = "travelPlan"
PLAN_IMAGE_PREFIX = "plan"
PLACE_IMAGE_PREFIX = "visited_place"


class FirestoreService:
    def __init__(
        self,
        client,
        image_store: LocalImageStore,
        current_user: Callable[[], Optional[str]],
    ):
        self.db = client
        self.image_store = image_store
        self._current_user = current_user

    def bound_to(self, user_id: Optional[str]) -> "FirestoreService":
        """A copy of this service acting on behalf of `user_id`."""
        return FirestoreService(self.db, self.image_store, lambda: user_id)

    def _require_user(self) -> str:
        uid = self._current_user()
        if not uid:
            logger.warning("[Firestore] Rejected request without an authenticated user")
            raise AuthenticationRequiredError()
        return uid

    async def _call(self, action: str, fn, *args, **kwargs):
        """Runs a blocking SDK call in a worker thread and wraps SDK errors."""
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except google_exceptions.NotFound:
            raise NotFoundError()
        except google_exceptions.GoogleAPIError as e:
            logger.error(f"❌ [Firestore] {action} failed: {e}")
            raise RemoteOperationError(f"Firestore {action} failed", cause=e)

    # --- References ---

    def _user_collection(self, uid: str, name: str):
        return self.db.collection(USERS_COLLECTION).document(uid).collection(name)

    def _shared_collection(self):
        return self.db.collection(SHARED_TRAVEL_PLANS_COLLECTION)

    def _shared_with_query(self, uid: str):
        return self._shared_collection().where(filter=FieldFilter("sharedWith", "array_contains", uid))

    @staticmethod
    def _newest_first(collection):
        return collection.order_by("createdAt", direction=firestore.Query.DESCENDING)

    # --- Snapshot helpers ---

    @staticmethod
    def _parse_documents(snapshots, parse, label: str) -> list:
        return successful((parse(doc.id, doc.to_dict() or {}) for doc in snapshots), label)

    async def _listen(self, query, parse, label: str) -> AsyncIterator[list]:
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()

        def on_snapshot(snapshots, changes, read_time):
            items = self._parse_documents(snapshots, parse, label)
            loop.call_soon_threadsafe(queue.put_nowait, items)

        watch = query.on_snapshot(on_snapshot)
        try:
            while True:
                yield await queue.get()
        finally:
            watch.unsubscribe()

    # --- TravelPlan ---

    async def save_travel_plan(self, plan: TravelPlan, touch: bool = True) -> TravelPlan:
        """
        Writes a travel plan to the location its sharing state calls for.
        Shared plans also get the caller recorded as last editor, and a private
        copy left over from before sharing is removed.
        """
        uid = self._require_user()
        doc_id = plan.id or new_id()

        update = {"id": doc_id, "user_id": uid}
        if touch:
            update["updated_at"] = utc_now()
            if plan.is_shared:
                update["last_edited_by"] = uid
        to_save = plan.model_copy(update=update)

        if to_save.is_shared:
            data = firestore_codec.travel_plan_to_document(to_save, uid, include_sharing=True)
            await self._call("save shared travel plan", self._shared_collection().document(doc_id).set, data)
            if to_save.is_owner(uid):
                await self._call(
                    "remove private travel plan copy",
                    self._user_collection(uid, TRAVEL_PLANS_COLLECTION).document(doc_id).delete,
                )
        else:
            data = firestore_codec.travel_plan_to_document(to_save, uid)
            await self._call(
                "save travel plan",
                self._user_collection(uid, TRAVEL_PLANS_COLLECTION).document(doc_id).set,
                data,
            )

        logger.info(f"✅ [Firestore] TravelPlan saved: {doc_id} (shared={to_save.is_shared})")
        return to_save

    async def share_travel_plan(self, plan: TravelPlan) -> TravelPlan:
        uid = self._require_user()
        owner_id = plan.owner_id or plan.user_id or uid
        shared_with = list(plan.shared_with)
        if owner_id not in shared_with:
            shared_with.insert(0, owner_id)
        shared = plan.model_copy(update={
            "is_shared": True,
            "share_code": plan.share_code or TravelPlan.generate_share_code(),
            "owner_id": owner_id,
            "shared_with": shared_with,
        })
        return await self.save_travel_plan(shared)

    def _travel_plan_ref(self, uid: str, plan_id: str, shared: bool):
        if shared:
            return self._shared_collection().document(plan_id)
        return self._user_collection(uid, TRAVEL_PLANS_COLLECTION).document(plan_id)

    async def fetch_travel_plan(self, plan_id: str, shared: bool = False) -> Optional[TravelPlan]:
        uid = self._require_user()
        ref = self._travel_plan_ref(uid, plan_id, shared)
        snapshot = await self._call("fetch travel plan", ref.get)
        if not snapshot.exists:
            return None
        plans = successful([firestore_codec.travel_plan_from_document(snapshot.id, snapshot.to_dict() or {})], "TravelPlan")
        return plans[0] if plans else None

    async def travel_plan_exists(self, plan_id: str, shared: bool = False) -> bool:
        uid = self._require_user()
        ref = self._travel_plan_ref(uid, plan_id, shared)
        snapshot = await self._call("check travel plan", ref.get)
        return snapshot.exists

    async def fetch_travel_plans(self) -> List[TravelPlan]:
        """One-shot read of own plans merged with plans shared with the caller."""
        uid = self._require_user()
        own = await self._call("fetch travel plans", self._newest_first(self._user_collection(uid, TRAVEL_PLANS_COLLECTION)).get)
        shared = await self._call("fetch shared travel plans", self._shared_with_query(uid).get)
        return merge_travel_plans(
            self._parse_documents(own, firestore_codec.travel_plan_from_document, "TravelPlan"),
            self._parse_documents(shared, firestore_codec.travel_plan_from_document, "TravelPlan"),
        )

    def observe_travel_plans(self) -> AsyncIterator[List[TravelPlan]]:
        """
        Yields the merged own + shared list on every change of either
        listener, starting once both have delivered.
        """
        uid = self._require_user()
        return self._listen_travel_plans(uid)

    async def _listen_travel_plans(self, uid: str) -> AsyncIterator[List[TravelPlan]]:
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()
        merger = TravelPlanSnapshotMerger(lambda plans: loop.call_soon_threadsafe(queue.put_nowait, plans))

        def listener(update):
            def on_snapshot(snapshots, changes, read_time):
                update(self._parse_documents(snapshots, firestore_codec.travel_plan_from_document, "TravelPlan"))
            return on_snapshot

        own_watch = self._newest_first(self._user_collection(uid, TRAVEL_PLANS_COLLECTION)).on_snapshot(
            listener(merger.update_own)
        )
        shared_watch = self._shared_with_query(uid).on_snapshot(listener(merger.update_shared))
        try:
            while True:
                yield await queue.get()
        finally:
            own_watch.unsubscribe()
            shared_watch.unsubscribe()

    async def find_travel_plan_by_share_code(self, share_code: str) -> TravelPlan:
        self._require_user()
        code = normalize_share_code(share_code)
        query = self._shared_collection().where(filter=FieldFilter("shareCode", "==", code)).limit(1)
        snapshots = await self._call("find travel plan by share code", query.get)
        plans = self._parse_documents(snapshots, firestore_codec.travel_plan_from_document, "TravelPlan")
        if not plans:
            logger.info(f"[Firestore] No travel plan for share code {code}")
            raise NotFoundError("共有コードに一致するプランが見つかりません")
        return plans[0]

    async def join_travel_plan(self, plan_id: str) -> TravelPlan:
        uid = self._require_user()
        ref = self._shared_collection().document(plan_id)
        await self._call("join travel plan", ref.update, {"sharedWith": firestore.ArrayUnion([uid])})
        snapshot = await self._call("fetch joined travel plan", ref.get)
        if not snapshot.exists:
            raise NotFoundError()
        result = firestore_codec.travel_plan_from_document(snapshot.id, snapshot.to_dict() or {})
        if not result.ok:
            raise NotFoundError()
        logger.info(f"✅ [Firestore] {uid} joined travel plan {plan_id}")
        return result.entity

    async def join_travel_plan_by_share_code(self, share_code: str) -> TravelPlan:
        plan = await self.find_travel_plan_by_share_code(share_code)
        return await self.join_travel_plan(plan.id)

    async def leave_travel_plan(self, plan_id: str):
        uid = self._require_user()
        ref = self._shared_collection().document(plan_id)
        await self._call("leave travel plan", ref.update, {"sharedWith": firestore.ArrayRemove([uid])})
        logger.info(f"✅ [Firestore] {uid} left travel plan {plan_id}")

    async def delete_travel_plan(self, plan: TravelPlan):
        """
        Deletes the plan and its cached cover image. A member who is not the
        owner of a shared plan only leaves it; the plan stays for everyone else.
        """
        uid = self._require_user()
        if not plan.id:
            raise NotFoundError()
        if plan.is_shared and not plan.is_owner(uid):
            await self.leave_travel_plan(plan.id)
            return
        ref = self._travel_plan_ref(uid, plan.id, plan.is_shared)
        await self._call("delete travel plan", ref.delete)

        if plan.local_image_file_name:
            self.delete_travel_plan_image_locally(plan.local_image_file_name)

    # --- Plan ---

    async def save_plan(self, plan: Plan) -> Plan:
        uid = self._require_user()
        to_save = plan.model_copy(update={"id": plan.id or new_id(), "user_id": uid})
        data = firestore_codec.plan_to_document(to_save, uid)
        await self._call("save plan", self._user_collection(uid, PLANS_COLLECTION).document(to_save.id).set, data)
        logger.info(f"✅ [Firestore] Plan saved: {to_save.id}")
        return to_save

    async def fetch_plan(self, plan_id: str) -> Optional[Plan]:
        uid = self._require_user()
        snapshot = await self._call("fetch plan", self._user_collection(uid, PLANS_COLLECTION).document(plan_id).get)
        if not snapshot.exists:
            return None
        plans = successful([firestore_codec.plan_from_document(snapshot.id, snapshot.to_dict() or {})], "Plan")
        return plans[0] if plans else None

    async def plan_exists(self, plan_id: str) -> bool:
        uid = self._require_user()
        snapshot = await self._call("check plan", self._user_collection(uid, PLANS_COLLECTION).document(plan_id).get)
        return snapshot.exists

    async def fetch_plans(self) -> List[Plan]:
        uid = self._require_user()
        snapshots = await self._call("fetch plans", self._newest_first(self._user_collection(uid, PLANS_COLLECTION)).get)
        return self._parse_documents(snapshots, firestore_codec.plan_from_document, "Plan")

    def observe_plans(self) -> AsyncIterator[List[Plan]]:
        uid = self._require_user()
        query = self._newest_first(self._user_collection(uid, PLANS_COLLECTION))
        return self._listen(query, firestore_codec.plan_from_document, "Plan")

    async def delete_plan(self, plan_id: str):
        uid = self._require_user()
        await self._call("delete plan", self._user_collection(uid, PLANS_COLLECTION).document(plan_id).delete)

    # --- VisitedPlace ---

    async def save_place(self, place: VisitedPlace, image: Optional[ImageInput] = None) -> VisitedPlace:
        uid = self._require_user()
        update = {"id": place.id or new_id(), "user_id": uid}
        if image is not None:
            try:
                update["local_photo_file_name"] = self._save_image_locally(image, PLACE_IMAGE_PREFIX)
            except (InvalidPayloadError, OSError, ValueError) as e:
                logger.warning(f"⚠️ [Firestore] Place photo could not be stored locally: {e}")
        to_save = place.model_copy(update=update)

        data = firestore_codec.visited_place_to_document(to_save, uid)
        await self._call("save place", self._user_collection(uid, PLACES_COLLECTION).document(to_save.id).set, data)
        logger.info(f"✅ [Firestore] VisitedPlace saved: {to_save.id}")
        return to_save

    async def update_place(self, place: VisitedPlace) -> VisitedPlace:
        """Overwrites the whole document of an existing place."""
        uid = self._require_user()
        if not place.id:
            raise NotFoundError()
        to_save = place.model_copy(update={"user_id": uid})
        data = firestore_codec.visited_place_to_document(to_save, uid)
        await self._call("update place", self._user_collection(uid, PLACES_COLLECTION).document(place.id).set, data)
        return to_save

    async def fetch_place(self, place_id: str) -> Optional[VisitedPlace]:
        uid = self._require_user()
        snapshot = await self._call("fetch place", self._user_collection(uid, PLACES_COLLECTION).document(place_id).get)
        if not snapshot.exists:
            return None
        places = successful([firestore_codec.visited_place_from_document(snapshot.id, snapshot.to_dict() or {})], "VisitedPlace")
        return places[0] if places else None

    async def place_exists(self, place_id: str) -> bool:
        uid = self._require_user()
        snapshot = await self._call("check place", self._user_collection(uid, PLACES_COLLECTION).document(place_id).get)
        return snapshot.exists

    async def fetch_places(self) -> List[VisitedPlace]:
        uid = self._require_user()
        snapshots = await self._call("fetch places", self._newest_first(self._user_collection(uid, PLACES_COLLECTION)).get)
        return self._parse_documents(snapshots, firestore_codec.visited_place_from_document, "VisitedPlace")

    def observe_places(self) -> AsyncIterator[List[VisitedPlace]]:
        uid = self._require_user()
        query = self._newest_first(self._user_collection(uid, PLACES_COLLECTION))
        return self._listen(query, firestore_codec.visited_place_from_document, "VisitedPlace")

    async def delete_place(self, place_id: str):
        uid = self._require_user()
        await self._call("delete place", self._user_collection(uid, PLACES_COLLECTION).document(place_id).delete)

    # --- Local images ---

    def _save_image_locally(self, image: ImageInput, prefix: str) -> str:
        data = encode_jpeg(image, LOCAL_COVER_QUALITY)
        file_name = LocalImageStore.generate_file_name(prefix)
        self.image_store.save(data, file_name)
        logger.info(f"[Firestore] Local image saved: {file_name}")
        return file_name

    def save_travel_plan_image_locally(self, image: ImageInput) -> str:
        return self._save_image_locally(image, TRAVEL_PLAN_IMAGE_PREFIX)

    def save_plan_image_locally(self, image: ImageInput) -> str:
        return self._save_image_locally(image, PLAN_IMAGE_PREFIX)

    def delete_travel_plan_image_locally(self, file_name: str):
        try:
            self.image_store.delete(file_name)
        except (OSError, ValueError) as e:
            logger.warning(f"⚠️ [Firestore] Local image could not be deleted ({file_name}): {e}")
