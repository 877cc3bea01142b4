import copy
import io
import math
from datetime import datetime
from pathlib import Path
from types import SimpleNamespace

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from src.database.schemas.metadata import AudioStreamInfo, MediaInfo, VideoStreamInfo
from src.database.video_store import VideoStore
from src.media.transcoder import MANIFEST_NAME, Transcoder
from src.media.workspace import WorkspaceManager
from src.pipeline.ingestion import IngestionOrchestrator, UploadRequest
from src.storage.object_storage import ObjectStorageClient


# ---------- MongoDB collection fake (equality filters only) ----------

def _matches(doc: dict, query: dict) -> bool:
    return all(doc.get(k) == v for k, v in query.items())


class FakeCursor:
    def __init__(self, docs):
        self._docs = docs

    def sort(self, field, direction=1):
        self._docs.sort(key=lambda d: d.get(field), reverse=direction == -1)
        return self

    def skip(self, n):
        self._docs = self._docs[n:]
        return self

    def limit(self, n):
        if n:
            self._docs = self._docs[:n]
        return self

    async def to_list(self, length=None):
        return [copy.deepcopy(d) for d in self._docs]


class FakeCollection:
    def __init__(self):
        self.docs = {}

    async def insert_one(self, doc):
        assert doc["_id"] not in self.docs
        self.docs[doc["_id"]] = copy.deepcopy(doc)
        return SimpleNamespace(inserted_id=doc["_id"])

    async def find_one(self, query):
        for doc in self.docs.values():
            if _matches(doc, query):
                return copy.deepcopy(doc)
        return None

    def find(self, query=None):
        return FakeCursor([copy.deepcopy(d) for d in self.docs.values() if _matches(d, query or {})])

    async def find_one_and_update(self, query, update, return_document=None):
        for doc in self.docs.values():
            if _matches(doc, query):
                doc.update(copy.deepcopy(update.get("$set", {})))
                for k, v in update.get("$inc", {}).items():
                    doc[k] = doc.get(k, 0) + v
                return copy.deepcopy(doc)
        return None

    async def delete_one(self, query):
        for key, doc in list(self.docs.items()):
            if _matches(doc, query):
                del self.docs[key]
                return SimpleNamespace(deleted_count=1)
        return SimpleNamespace(deleted_count=0)

    async def count_documents(self, query):
        return sum(1 for d in self.docs.values() if _matches(d, query))


# ---------- boto3 S3 client fake ----------

def _client_error(code, op):
    return ClientError({"Error": {"Code": code, "Message": code}}, op)


class FakeS3:
    def __init__(self):
        self.objects = {}
        self.put_order = []
        self.delete_calls = []
        self.delete_failures = {}   # key -> number of delete calls that fail
        self.fail_puts = set()      # key suffixes whose upload fails
        self.unreachable = False

    def _check(self):
        if self.unreachable:
            raise EndpointConnectionError(endpoint_url="https://storage.test")

    def put_object(self, Bucket, Key, Body, ContentType, CacheControl=None, Metadata=None):
        self._check()
        if any(Key.endswith(s) for s in self.fail_puts):
            raise _client_error("InternalError", "PutObject")
        data = Body if isinstance(Body, bytes) else Body.read()
        self.objects[Key] = {
            "body": data,
            "content_type": ContentType,
            "cache_control": CacheControl,
            "modified": datetime(2026, 1, 1),
        }
        self.put_order.append(Key)
        return {"ETag": '"etag"'}

    def head_object(self, Bucket, Key):
        self._check()
        if Key not in self.objects:
            raise _client_error("404", "HeadObject")
        return {"ContentLength": len(self.objects[Key]["body"])}

    def delete_object(self, Bucket, Key):
        self._check()
        self.delete_calls.append(Key)
        if self.delete_failures.get(Key, 0) > 0:
            self.delete_failures[Key] -= 1
            raise _client_error("SlowDown", "DeleteObject")
        self.objects.pop(Key, None)
        return {}

    def list_objects_v2(self, Bucket, Prefix="", MaxKeys=1000, ContinuationToken=None):
        self._check()
        keys = sorted(k for k in self.objects if k.startswith(Prefix))
        start = int(ContinuationToken or 0)
        page = keys[start:start + MaxKeys]
        response = {
            "KeyCount": len(page),
            "Contents": [
                {"Key": k, "Size": len(self.objects[k]["body"]), "LastModified": self.objects[k]["modified"]}
                for k in page
            ],
            "IsTruncated": start + MaxKeys < len(keys),
        }
        if response["IsTruncated"]:
            response["NextContinuationToken"] = str(start + MaxKeys)
        return response

    def get_object(self, Bucket, Key):
        self._check()
        if Key not in self.objects:
            raise _client_error("NoSuchKey", "GetObject")
        return {"Body": io.BytesIO(self.objects[Key]["body"])}


# ---------- transcoder fake ----------

def sample_media_info(duration=5.0, width=640, height=360) -> MediaInfo:
    return MediaInfo(
        duration=duration,
        size=120_000,
        bitrate=192_000,
        video=VideoStreamInfo(codec="h264", width=width, height=height, framerate="30/1"),
        audio=AudioStreamInfo(codec="aac", sample_rate=44100, channels=2),
    )


class FakeTranscoder:
    """Writes an HLS-shaped output tree without running ffmpeg."""

    def __init__(self, info=None, segment_seconds=10):
        self.info = info or sample_media_info()
        self.segment_seconds = segment_seconds
        self.probe_error = None
        self.package_error = None
        self.on_package = None
        self.probe_calls = 0
        self.package_calls = 0
        self.progress = []

    def probe(self, source_path):
        self.probe_calls += 1
        assert Path(source_path).exists()
        if self.probe_error:
            raise self.probe_error
        return self.info

    def package(self, source_path, output_dir, progress_callback=None, duration=None, cancel_event=None):
        self.package_calls += 1
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        if self.on_package:
            self.on_package()
        if self.package_error:
            (output_dir / "segment_000.ts").write_bytes(b"partial")
            raise self.package_error

        count = max(1, math.ceil(self.info.duration / self.segment_seconds))
        names = [f"segment_{i:03d}.ts" for i in range(count)]
        for name in names:
            (output_dir / name).write_bytes(b"\x47" * 188)
        (output_dir / MANIFEST_NAME).write_text(
            "#EXTM3U\n#EXT-X-TARGETDURATION:10\n"
            + "".join(f"#EXTINF:{self.segment_seconds}.0,\n{n}\n" for n in names)
            + "#EXT-X-ENDLIST\n"
        )
        if progress_callback:
            progress_callback(self.info.duration, duration)
            self.progress.append((self.info.duration, duration))
        return Transcoder.describe_output(output_dir)


# ---------- fixtures ----------

@pytest.fixture
def collection():
    return FakeCollection()


@pytest.fixture
def store(collection):
    return VideoStore(collection)


@pytest.fixture
def s3():
    return FakeS3()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def storage(s3, sleeps):
    return ObjectStorageClient(s3, bucket="test-bucket", public_base_url="https://cdn.test", sleep=sleeps.append)


@pytest.fixture
def transcoder():
    return FakeTranscoder()


@pytest.fixture
def workspace_root(tmp_path):
    return tmp_path / "workspaces"


@pytest.fixture
def workspaces(workspace_root):
    return WorkspaceManager(root=workspace_root)


@pytest.fixture
def orchestrator(store, storage, transcoder, workspaces):
    return IngestionOrchestrator(
        store=store,
        storage=storage,
        transcoder=transcoder,
        workspaces=workspaces,
        max_upload_bytes=1024 * 1024,
    )


@pytest.fixture
def make_request():
    def _make(title="Test Clip", filename="clip.mp4", content_type="video/mp4", data=b"\x00" * 2048, **kw):
        return UploadRequest(
            title=title,
            filename=filename,
            content_type=content_type,
            stream=io.BytesIO(data) if data is not None else None,
            size=len(data) if data is not None else None,
            **kw,
        )
    return _make


@pytest.fixture
def client(orchestrator):
    from fastapi.testclient import TestClient

    from main import app
    from src.core.dependencies import get_orchestrator

    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
