"""
Client for the legacy CloudKit store, spoken through CloudKit Web Services.

The iOS app kept every TravelPlan, Plan and VisitedPlace in the private
database of the `iCloud.com.gmail.taismryotasis.Travory` container. This
service reads them for the migration and still supports the full CRUD
surface so old clients and tooling keep working.
"""
import logging
import os
import tempfile
from typing import Any, Dict, List, Optional, Tuple, Union

import httpx
from PIL import Image

from core.config import settings
from core.errors import AuthenticationRequiredError, NotFoundError, RemoteOperationError
from schemas.common import new_id
from schemas.travel_plan_schema import TravelPlan, normalize_share_code
from schemas.plan_schema import Plan
from schemas.place_schema import VisitedPlace
from services import cloudkit_codec
from services.cloudkit_codec import (
    CloudKitRecord,
    IMAGE_FIELD,
    PLAN_RECORD_TYPE,
    TRAVEL_PLAN_RECORD_TYPE,
    VISITED_PLACE_RECORD_TYPE,
)
from services.codec import successful
from services.image_utils import CLOUDKIT_UPLOAD_QUALITY, encode_jpeg

logger = logging.getLogger(__name__)

ImageInput = Union[bytes, Image.Image]

QUERY_RESULTS_LIMIT = 200


def equals_filter(field_name: str, value: str) -> Dict[str, Any]:
    return {
        "fieldName": field_name,
        "comparator": "EQUALS",
        "fieldValue": {"value": value, "type": "STRING"},
    }


def list_contains_filter(field_name: str, value: str) -> Dict[str, Any]:
    return {
        "fieldName": field_name,
        "comparator": "LIST_CONTAINS",
        "fieldValue": {"value": value, "type": "STRING"},
    }


def is_missing_shared_field_error(error: RemoteOperationError) -> bool:
    """
    True only for the rejection CloudKit returns when a query filters on
    `sharedWith` before any record in the container has that field.
    """
    return error.server_error_code == "BAD_REQUEST" and "sharedWith" in (error.reason or "")


class CloudKitService:
    def __init__(
        self,
        container: str = settings.CLOUDKIT_CONTAINER,
        environment: str = settings.CLOUDKIT_ENVIRONMENT,
        database: str = settings.CLOUDKIT_DATABASE,
        api_token: Optional[str] = settings.CLOUDKIT_API_TOKEN,
        web_auth_token: Optional[str] = settings.CLOUDKIT_WEB_AUTH_TOKEN,
        base_url: str = settings.CLOUDKIT_API_URL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30.0,
    ):
        self.container = container
        self.environment = environment
        self.database = database
        self.api_token = api_token
        self.web_auth_token = web_auth_token
        self.base_url = base_url.rstrip("/")
        self._transport = transport
        self._timeout = timeout

    # --- HTTP plumbing ---

    def _database_url(self, path: str, database: Optional[str] = None) -> str:
        db = database or self.database
        return f"{self.base_url}/database/1/{self.container}/{self.environment}/{db}/{path}"

    def _auth_params(self) -> Dict[str, str]:
        params = {}
        if self.api_token:
            params["ckAPIToken"] = self.api_token
        if self.web_auth_token:
            params["ckWebAuthToken"] = self.web_auth_token
        return params

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport, timeout=self._timeout)

    @staticmethod
    def _error_from_response(response: httpx.Response, action: str) -> RemoteOperationError:
        code = reason = None
        try:
            body = response.json()
            code = body.get("serverErrorCode")
            reason = body.get("reason")
        except ValueError:
            reason = response.text
        return RemoteOperationError(
            f"CloudKit {action} failed with HTTP {response.status_code}",
            server_error_code=code,
            reason=reason,
            status_code=response.status_code,
        )

    async def _post(self, path: str, payload: Dict[str, Any], action: str, database: Optional[str] = None) -> Dict[str, Any]:
        url = self._database_url(path, database)
        async with self._client() as client:
            try:
                response = await client.post(url, params=self._auth_params(), json=payload)
                response.raise_for_status()
                return response.json()
            except httpx.HTTPStatusError as e:
                error = self._error_from_response(e.response, action)
                if error.server_error_code == "AUTHENTICATION_REQUIRED":
                    raise AuthenticationRequiredError("iCloudにサインインしていません")
                raise error
            except httpx.RequestError as e:
                raise RemoteOperationError(f"CloudKit {action} request failed", cause=e)

    @staticmethod
    def _record_error(item: Dict[str, Any], action: str) -> RemoteOperationError:
        return RemoteOperationError(
            f"CloudKit {action} failed for record {item.get('recordName')}",
            server_error_code=item.get("serverErrorCode"),
            reason=item.get("reason"),
        )

    # --- Account status ---

    async def check_account_status(self) -> str:
        """Returns "available" or "noAccount"."""
        url = self._database_url("users/current", database="public")
        async with self._client() as client:
            try:
                response = await client.get(url, params=self._auth_params())
            except httpx.RequestError as e:
                raise RemoteOperationError("CloudKit account status request failed", cause=e)
        if response.status_code in (401, 421):
            return "noAccount"
        if response.is_error:
            raise self._error_from_response(response, "account status")
        return "available" if response.json().get("userRecordName") else "noAccount"

    async def is_available(self) -> bool:
        try:
            return await self.check_account_status() == "available"
        except RemoteOperationError as e:
            logger.error(f"❌ [CloudKit] Account status check failed: {e}")
            return False

    # --- Basic record operations ---

    async def save(self, record: CloudKitRecord) -> CloudKitRecord:
        logger.info(f"🔷 [CloudKit] Saving {record.record_type} record {record.record_name}")
        saved = await self.save_records([record])
        return saved[0]

    async def save_records(self, records: List[CloudKitRecord]) -> List[CloudKitRecord]:
        payload = {
            "operations": [
                {"operationType": "forceReplace", "record": record.to_wire()}
                for record in records
            ],
        }
        body = await self._post("records/modify", payload, "save")

        saved = []
        for item in body.get("records", []):
            if "serverErrorCode" in item:
                logger.error(f"❌ [CloudKit] Save failed: {item.get('serverErrorCode')} {item.get('reason')}")
                raise self._record_error(item, "save")
            saved.append(CloudKitRecord.from_wire(item))
        return saved

    async def fetch(self, record_name: str) -> CloudKitRecord:
        body = await self._post("records/lookup", {"records": [{"recordName": record_name}]}, "lookup")
        items = body.get("records", [])
        if not items:
            raise NotFoundError()
        item = items[0]
        if item.get("serverErrorCode") == "NOT_FOUND":
            raise NotFoundError()
        if "serverErrorCode" in item:
            raise self._record_error(item, "lookup")
        return CloudKitRecord.from_wire(item)

    async def query(self, record_type: str, filters: Optional[List[Dict[str, Any]]] = None) -> List[CloudKitRecord]:
        """Runs a query and follows continuation markers until every page is read."""
        query: Dict[str, Any] = {"recordType": record_type}
        if filters:
            query["filterBy"] = filters

        records = []
        marker = None
        while True:
            payload: Dict[str, Any] = {"query": query, "resultsLimit": QUERY_RESULTS_LIMIT}
            if marker:
                payload["continuationMarker"] = marker
            body = await self._post("records/query", payload, "query")

            for item in body.get("records", []):
                if "serverErrorCode" in item:
                    logger.debug(f"[CloudKit] Skipping failed query result: {item.get('serverErrorCode')}")
                    continue
                records.append(CloudKitRecord.from_wire(item))

            marker = body.get("continuationMarker")
            if not marker:
                return records

    async def delete(self, record_name: str):
        await self.delete_records([record_name])

    async def delete_records(self, record_names: List[str]):
        payload = {
            "operations": [
                {"operationType": "forceDelete", "record": {"recordName": name}}
                for name in record_names
            ],
        }
        body = await self._post("records/modify", payload, "delete")
        for item in body.get("records", []):
            code = item.get("serverErrorCode")
            # Deleting a record that is already gone counts as success
            if code and code != "NOT_FOUND":
                raise self._record_error(item, "delete")

    # --- Assets ---

    async def upload_asset(self, record_type: str, record_name: str, data: bytes, field_name: str = IMAGE_FIELD) -> Dict[str, Any]:
        """
        Uploads the bytes of a transient file and returns the asset receipt
        to store in the record's ASSETID field.
        """
        payload = {
            "tokens": [{"recordType": record_type, "fieldName": field_name, "recordName": record_name}],
        }
        body = await self._post("assets/upload", payload, "asset upload")
        tokens = body.get("tokens") or []
        if not tokens or not tokens[0].get("url"):
            raise RemoteOperationError("CloudKit did not return an asset upload URL")

        async with self._client() as client:
            try:
                response = await client.post(
                    tokens[0]["url"],
                    content=data,
                    headers={"Content-Type": "application/octet-stream"},
                )
                response.raise_for_status()
            except httpx.HTTPStatusError as e:
                raise self._error_from_response(e.response, "asset upload")
            except httpx.RequestError as e:
                raise RemoteOperationError("CloudKit asset upload request failed", cause=e)

        receipt = response.json().get("singleFile")
        if not receipt:
            raise RemoteOperationError("CloudKit asset upload returned no receipt")
        return receipt

    async def fetch_asset(self, record: CloudKitRecord, field_name: str = IMAGE_FIELD) -> Optional[bytes]:
        asset = record.asset(field_name)
        if not asset or not asset.get("downloadURL"):
            return None
        url = asset["downloadURL"].replace("${f}", f"{field_name}.jpg")
        async with self._client() as client:
            try:
                response = await client.get(url)
                response.raise_for_status()
            except httpx.HTTPStatusError as e:
                raise self._error_from_response(e.response, "asset download")
            except httpx.RequestError as e:
                raise RemoteOperationError("CloudKit asset download request failed", cause=e)
        return response.content

    async def _fetch_image_quietly(self, record: CloudKitRecord) -> Optional[bytes]:
        try:
            return await self.fetch_asset(record)
        except RemoteOperationError as e:
            logger.warning(f"⚠️ [CloudKit] Could not download image of {record.record_name}: {e}")
            return None

    async def _attach_image(self, record: CloudKitRecord, jpeg: bytes):
        """Writes the JPEG to a temp file, uploads it and sets the asset field. The temp file is always removed."""
        fd, tmp_path = tempfile.mkstemp(suffix=".jpg")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(jpeg)
            logger.debug(f"[CloudKit] Temp file created: {tmp_path}")
            with open(tmp_path, "rb") as f:
                data = f.read()
            receipt = await self.upload_asset(record.record_type, record.record_name, data)
            record.set_asset(IMAGE_FIELD, receipt)
        finally:
            try:
                os.remove(tmp_path)
            except OSError as e:
                logger.warning(f"⚠️ [CloudKit] Could not remove temp file {tmp_path}: {e}")

    async def _save_with_image(self, record: CloudKitRecord, jpeg: Optional[bytes]) -> CloudKitRecord:
        if jpeg is not None:
            await self._attach_image(record, jpeg)
        return await self.save(record)

    # --- VisitedPlace ---

    async def save_visited_place(self, place: VisitedPlace, user_id: str, image: Optional[ImageInput] = None) -> VisitedPlace:
        jpeg = encode_jpeg(image, CLOUDKIT_UPLOAD_QUALITY) if image is not None else None
        record_name = place.id or new_id()
        record = cloudkit_codec.visited_place_to_record(place, user_id, record_name)
        saved = await self._save_with_image(record, jpeg)
        logger.info(f"✅ [CloudKit] VisitedPlace saved: {saved.record_name}")
        return place.model_copy(update={"id": saved.record_name, "user_id": user_id})

    async def fetch_visited_places(self, user_id: str) -> List[Tuple[VisitedPlace, Optional[bytes]]]:
        records = await self.query(VISITED_PLACE_RECORD_TYPE, [equals_filter("userId", user_id)])
        results = []
        for record in records:
            parsed = successful([cloudkit_codec.visited_place_from_record(record)], "VisitedPlace")
            if parsed:
                results.append((parsed[0], await self._fetch_image_quietly(record)))
        logger.info(f"✅ [CloudKit] Fetched {len(results)} VisitedPlaces")
        return results

    async def fetch_visited_place_image(self, place_id: str) -> Optional[bytes]:
        record = await self.fetch(place_id)
        return await self.fetch_asset(record)

    async def delete_visited_place(self, place_id: str):
        await self.delete(place_id)

    # --- Plan ---

    async def save_plan(self, plan: Plan, user_id: str) -> Plan:
        record = cloudkit_codec.plan_to_record(plan, user_id)
        saved = await self.save(record)
        logger.info(f"✅ [CloudKit] Plan saved: {saved.record_name}")
        return plan.model_copy(update={"id": saved.record_name, "user_id": user_id})

    async def fetch_plans(self, user_id: str) -> List[Plan]:
        records = await self.query(PLAN_RECORD_TYPE, [equals_filter("userId", user_id)])
        plans = successful((cloudkit_codec.plan_from_record(record) for record in records), "Plan")
        logger.info(f"✅ [CloudKit] Fetched {len(plans)} Plans")
        return plans

    async def delete_plan(self, plan_id: str):
        await self.delete(plan_id)

    # --- TravelPlan ---

    async def save_travel_plan(self, plan: TravelPlan, user_id: str, image: Optional[ImageInput] = None) -> TravelPlan:
        jpeg = encode_jpeg(image, CLOUDKIT_UPLOAD_QUALITY) if image is not None else None
        record_name = plan.id or new_id()
        record = cloudkit_codec.travel_plan_to_record(plan, user_id, record_name)
        saved = await self._save_with_image(record, jpeg)
        logger.info(f"✅ [CloudKit] TravelPlan saved: {saved.record_name}")
        return plan.model_copy(update={"id": saved.record_name, "user_id": user_id})

    async def _travel_plans_with_images(self, records: List[CloudKitRecord]) -> List[Tuple[TravelPlan, Optional[bytes]]]:
        results = []
        for record in records:
            parsed = successful([cloudkit_codec.travel_plan_from_record(record)], "TravelPlan")
            if parsed:
                results.append((parsed[0], await self._fetch_image_quietly(record)))
        return results

    async def fetch_travel_plans(self, user_id: str) -> List[Tuple[TravelPlan, Optional[bytes]]]:
        """TravelPlans owned by the user."""
        records = await self.query(TRAVEL_PLAN_RECORD_TYPE, [equals_filter("userId", user_id)])
        return await self._travel_plans_with_images(records)

    async def fetch_travel_plans_including_shared(self, user_id: str) -> List[Tuple[TravelPlan, Optional[bytes]]]:
        """
        Owned plans plus plans shared with the user. CloudKit queries have no OR,
        so this runs two queries and merges them by record name.
        """
        owned = await self.query(TRAVEL_PLAN_RECORD_TYPE, [equals_filter("userId", user_id)])
        logger.info(f"🟣 [CloudKit] Found {len(owned)} owned plans")

        try:
            shared = await self.query(TRAVEL_PLAN_RECORD_TYPE, [list_contains_filter("sharedWith", user_id)])
            logger.info(f"🟣 [CloudKit] Found {len(shared)} shared plans")
        except RemoteOperationError as e:
            if not is_missing_shared_field_error(e):
                raise
            logger.warning("⚠️ [CloudKit] sharedWith field not in schema yet, skipping shared plans query")
            shared = []

        merged: Dict[str, CloudKitRecord] = {}
        for record in owned + shared:
            merged[record.record_name] = record
        logger.info(f"🟣 [CloudKit] Total unique plans: {len(merged)}")

        return await self._travel_plans_with_images(list(merged.values()))

    async def find_travel_plan_by_share_code(self, share_code: str) -> Optional[TravelPlan]:
        code = normalize_share_code(share_code)
        records = await self.query(TRAVEL_PLAN_RECORD_TYPE, [equals_filter("shareCode", code)])
        plans = successful((cloudkit_codec.travel_plan_from_record(record) for record in records), "TravelPlan")
        return plans[0] if plans else None

    async def fetch_travel_plan_image(self, plan_id: str) -> Optional[bytes]:
        record = await self.fetch(plan_id)
        return await self.fetch_asset(record)

    async def delete_travel_plan(self, plan_id: str):
        await self.delete(plan_id)
