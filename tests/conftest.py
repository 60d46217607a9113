import copy
import datetime
import io
import json
import threading
from typing import Dict, List, Optional

import httpx
import pytest
from google.api_core import exceptions as google_exceptions
from google.cloud.firestore_v1.transforms import ArrayRemove, ArrayUnion
from PIL import Image

from core.preferences import Preferences
from services.cloudkit_codec import CloudKitRecord
from services.cloudkit_service import CloudKitService
from services.firestore_service import FirestoreService
from services.image_store import LocalImageStore

USER_ID = "user-1"


def make_jpeg(width: int = 64, height: int = 48, color=(200, 80, 40)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format="JPEG")
    return buffer.getvalue()


def utc(*args) -> datetime.datetime:
    return datetime.datetime(*args, tzinfo=datetime.timezone.utc)


# --- In-memory Firestore ---

class FakeSnapshot:
    def __init__(self, doc_id: str, data: Optional[dict]):
        self.id = doc_id
        self._data = data
        self.exists = data is not None

    def to_dict(self):
        return copy.deepcopy(self._data) if self._data is not None else None


class FakeWatch:
    def __init__(self, db, entry):
        self._db = db
        self._entry = entry

    def unsubscribe(self):
        with self._db.lock:
            if self._entry in self._db.listeners:
                self._db.listeners.remove(self._entry)


class FakeQuery:
    def __init__(self, db, collection_path: str, filters=(), order=None, limit_to=None):
        self._db = db
        self._path = collection_path
        self._filters = tuple(filters)
        self._order = order
        self._limit = limit_to

    def where(self, filter=None):
        return FakeQuery(self._db, self._path, self._filters + (filter,), self._order, self._limit)

    def order_by(self, field_path, direction="ASCENDING"):
        return FakeQuery(self._db, self._path, self._filters, (field_path, direction), self._limit)

    def limit(self, count):
        return FakeQuery(self._db, self._path, self._filters, self._order, count)

    def _matches(self, data: dict) -> bool:
        for f in self._filters:
            value = data.get(f.field_path)
            if f.op_string == "==" and value != f.value:
                return False
            if f.op_string == "array_contains" and (not isinstance(value, list) or f.value not in value):
                return False
        return True

    def results(self) -> List[FakeSnapshot]:
        docs = []
        for path, data in self._db.documents.items():
            parent, _, doc_id = path.rpartition("/")
            if parent == self._path and self._matches(data):
                docs.append(FakeSnapshot(doc_id, copy.deepcopy(data)))
        if self._order:
            field, direction = self._order
            docs.sort(key=lambda s: s.to_dict().get(field), reverse=direction == "DESCENDING")
        if self._limit is not None:
            docs = docs[: self._limit]
        return docs

    def get(self):
        self._db.record_call()
        return self.results()

    def stream(self):
        return iter(self.get())

    def on_snapshot(self, callback):
        self._db.record_call()
        entry = (self, callback)
        with self._db.lock:
            self._db.listeners.append(entry)
        callback(self.results(), [], None)
        return FakeWatch(self._db, entry)


class FakeCollection(FakeQuery):
    def document(self, doc_id: Optional[str] = None):
        return FakeDocument(self._db, f"{self._path}/{doc_id or 'AUTO-ID'}")


class FakeDocument:
    def __init__(self, db, path: str):
        self._db = db
        self.path = path
        self.id = path.rpartition("/")[2]

    def collection(self, name: str):
        return FakeCollection(self._db, f"{self.path}/{name}")

    def get(self):
        self._db.record_call()
        return FakeSnapshot(self.id, copy.deepcopy(self._db.documents.get(self.path)))

    def set(self, data: dict):
        self._db.record_call()
        self._db.check_failure("set", self.path)
        self._db.documents[self.path] = copy.deepcopy(data)
        self._db.writes.append(("set", self.path))
        self._db.notify()

    def update(self, data: dict):
        self._db.record_call()
        if self.path not in self._db.documents:
            raise google_exceptions.NotFound(f"No document to update: {self.path}")
        doc = self._db.documents[self.path]
        for key, value in data.items():
            if isinstance(value, ArrayUnion):
                current = list(doc.get(key) or [])
                current.extend(v for v in value.values if v not in current)
                doc[key] = current
            elif isinstance(value, ArrayRemove):
                doc[key] = [v for v in doc.get(key) or [] if v not in value.values]
            else:
                doc[key] = copy.deepcopy(value)
        self._db.writes.append(("update", self.path))
        self._db.notify()

    def delete(self):
        self._db.record_call()
        self._db.documents.pop(self.path, None)
        self._db.writes.append(("delete", self.path))
        self._db.notify()


class FakeFirestore:
    """The slice of the Firestore client the service uses, plus a call spy."""

    def __init__(self):
        self.documents: Dict[str, dict] = {}
        self.listeners = []
        self.writes = []
        self.calls = 0
        self.fail_writes_under: Optional[str] = None
        self.lock = threading.Lock()

    def record_call(self):
        with self.lock:
            self.calls += 1

    def check_failure(self, action: str, path: str):
        if self.fail_writes_under and path.startswith(self.fail_writes_under):
            raise google_exceptions.PermissionDenied(f"{action} denied for {path}")

    def collection(self, name: str):
        self.record_call()
        return FakeCollection(self, name)

    def notify(self):
        with self.lock:
            listeners = list(self.listeners)
        for query, callback in listeners:
            callback(query.results(), [], None)

    def docs_under(self, collection_path: str) -> Dict[str, dict]:
        prefix = collection_path + "/"
        return {
            path[len(prefix):]: data
            for path, data in self.documents.items()
            if path.startswith(prefix) and "/" not in path[len(prefix):]
        }


# --- In-memory CloudKit Web Services ---

UPLOAD_HOST = "upload.cloudkit.test"
DOWNLOAD_HOST = "download.cloudkit.test"


class FakeCloudKitServer:
    def __init__(self):
        self.records: Dict[str, dict] = {}
        self.assets: Dict[str, bytes] = {}
        self.requests: List[httpx.Request] = []
        self.shared_query_failure: Optional[str] = None
        self.page_size = 200

    # seeding

    def put_record(self, record: CloudKitRecord, image: Optional[bytes] = None):
        wire = record.to_wire()
        if image is not None:
            receipt = f"receipt-{len(self.assets)}"
            self.assets[receipt] = image
            wire["fields"]["image"] = {"value": self._download_value(receipt, image), "type": "ASSETID"}
        self.records[record.record_name] = wire

    def _download_value(self, receipt: str, data: bytes) -> dict:
        return {
            "downloadURL": f"https://{DOWNLOAD_HOST}/{receipt}/${{f}}",
            "size": len(data),
            "fileChecksum": "checksum",
        }

    def paths(self) -> List[str]:
        return [request.url.path for request in self.requests]

    # transport

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        host = request.url.host
        path = request.url.path

        if host == UPLOAD_HOST:
            receipt = path.strip("/")
            self.assets[receipt] = request.content
            return httpx.Response(200, json={"singleFile": {"receipt": receipt, "size": len(request.content), "fileChecksum": "checksum"}})
        if host == DOWNLOAD_HOST:
            receipt = path.strip("/").split("/")[0]
            if receipt not in self.assets:
                return httpx.Response(404)
            return httpx.Response(200, content=self.assets[receipt])

        if path.endswith("/users/current"):
            return httpx.Response(200, json={"userRecordName": "_ck_user"})

        body = json.loads(request.content or b"{}")
        if path.endswith("/records/query"):
            return self._query(body)
        if path.endswith("/records/modify"):
            return self._modify(body)
        if path.endswith("/records/lookup"):
            return self._lookup(body)
        if path.endswith("/assets/upload"):
            tokens = [
                {
                    "recordName": token["recordName"],
                    "fieldName": token["fieldName"],
                    "url": f"https://{UPLOAD_HOST}/asset-{token['recordName']}",
                }
                for token in body["tokens"]
            ]
            return httpx.Response(200, json={"tokens": tokens})
        return httpx.Response(404, json={"serverErrorCode": "NOT_FOUND", "reason": path})

    def _query(self, body: dict) -> httpx.Response:
        query = body["query"]
        filters = query.get("filterBy", [])
        for f in filters:
            if f["fieldName"] == "sharedWith" and self.shared_query_failure == "schema":
                return httpx.Response(400, json={
                    "serverErrorCode": "BAD_REQUEST",
                    "reason": "Field 'sharedWith' is not marked queryable",
                })
            if f["fieldName"] == "sharedWith" and self.shared_query_failure == "other":
                return httpx.Response(503, json={"serverErrorCode": "SERVICE_UNAVAILABLE", "reason": "try again later"})

        matches = []
        for wire in self.records.values():
            if wire["recordType"] != query["recordType"]:
                continue
            ok = True
            for f in filters:
                value = wire["fields"].get(f["fieldName"], {}).get("value")
                if f["comparator"] == "EQUALS" and value != f["fieldValue"]["value"]:
                    ok = False
                if f["comparator"] == "LIST_CONTAINS" and (not isinstance(value, list) or f["fieldValue"]["value"] not in value):
                    ok = False
            if ok:
                matches.append(wire)

        start = int(body.get("continuationMarker") or 0)
        page = matches[start:start + self.page_size]
        response = {"records": copy.deepcopy(page)}
        if start + self.page_size < len(matches):
            response["continuationMarker"] = str(start + self.page_size)
        return httpx.Response(200, json=response)

    def _modify(self, body: dict) -> httpx.Response:
        results = []
        for operation in body["operations"]:
            record = operation["record"]
            name = record["recordName"]
            if operation["operationType"] == "forceDelete":
                if self.records.pop(name, None) is None:
                    results.append({"recordName": name, "serverErrorCode": "NOT_FOUND", "reason": "Record not found"})
                else:
                    results.append({"recordName": name, "deleted": True})
                continue
            stored = copy.deepcopy(record)
            image = stored["fields"].get("image")
            if image and image.get("type") == "ASSETID" and "receipt" in image["value"]:
                receipt = image["value"]["receipt"]
                image["value"] = self._download_value(receipt, self.assets[receipt])
            stored["recordChangeTag"] = "tag-1"
            self.records[name] = stored
            results.append(copy.deepcopy(stored))
        return httpx.Response(200, json={"records": results})

    def _lookup(self, body: dict) -> httpx.Response:
        results = []
        for item in body["records"]:
            name = item["recordName"]
            if name in self.records:
                results.append(copy.deepcopy(self.records[name]))
            else:
                results.append({"recordName": name, "serverErrorCode": "NOT_FOUND", "reason": "Record not found"})
        return httpx.Response(200, json={"records": results})


# --- Fixtures ---

@pytest.fixture
def fake_firestore():
    return FakeFirestore()


@pytest.fixture
def image_store(tmp_path):
    return LocalImageStore(str(tmp_path / "documents"))


@pytest.fixture
def firestore_service(fake_firestore, image_store):
    return FirestoreService(fake_firestore, image_store, current_user=lambda: USER_ID)


@pytest.fixture
def cloudkit_server():
    return FakeCloudKitServer()


@pytest.fixture
def cloudkit_service(cloudkit_server):
    return CloudKitService(
        container="iCloud.com.example.test",
        environment="development",
        database="private",
        api_token="api-token",
        web_auth_token="web-auth-token",
        base_url="https://api.cloudkit.test",
        transport=httpx.MockTransport(cloudkit_server.handler),
    )


@pytest.fixture
def preferences(tmp_path):
    return Preferences(str(tmp_path / "preferences.json"))
