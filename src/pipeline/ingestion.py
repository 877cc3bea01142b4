"""
End-to-end video ingestion: stage the upload in a private workspace, probe
it, store the original, package it as HLS, store every package file and
only then publish the keys on the video record.

Deletion runs the other way round and never leaves a record behind just
because some storage object refused to go away.
"""
import asyncio
import logging
import threading
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, Dict, List, Optional

from fastapi.concurrency import run_in_threadpool

from src.core.errors import (
    AlreadyPackagedError,
    ConflictError,
    MediaPipelineError,
    ValidationError,
)
from src.database.schemas.metadata import MediaInfo, ProcessingStatus, VideoAsset
from src.database.video_store import VideoStore
from src.media.transcoder import MANIFEST_NAME, Transcoder
from src.media.workspace import Workspace, WorkspaceManager
from src.pipeline.reconcile import SyncReport, reconcile
from src.storage.object_storage import DeleteResult, ObjectStorageClient

logger = logging.getLogger(__name__)

ORIGINAL_PREFIX = "videos/original"
HLS_PREFIX = "videos/hls"
COPY_CHUNK_BYTES = 8 * 1024 * 1024


def new_asset_id() -> str:
    return f"vid_{uuid.uuid4().hex}"


def _extension(filename: Optional[str]) -> str:
    ext = Path(filename or "").suffix.lstrip(".").lower()
    return ext or "mp4"


def original_key_for(asset_id: str, filename: Optional[str]) -> str:
    return f"{ORIGINAL_PREFIX}/{asset_id}.{_extension(filename)}"


def package_key_for(asset_id: str, name: str) -> str:
    return f"{HLS_PREFIX}/{asset_id}/{name}"


def parse_tags(raw) -> List[str]:
    if not raw:
        return []
    if isinstance(raw, str):
        raw = raw.split(",")
    return [t.strip() for t in raw if t and t.strip()]


def parse_bool(raw, default: bool = True) -> bool:
    if raw is None or raw == "":
        return default
    if isinstance(raw, bool):
        return raw
    return str(raw).strip().lower() in ("1", "true", "yes", "on")


@dataclass
class UploadRequest:
    title: str
    filename: Optional[str]
    content_type: Optional[str]
    stream: Optional[BinaryIO]
    size: Optional[int] = None
    description: str = ""
    tags: List[str] = field(default_factory=list)
    is_public: bool = True


@dataclass
class PipelineResult:
    asset: VideoAsset
    media_info: MediaInfo


@dataclass
class DeletionReport:
    asset: VideoAsset
    results: List[DeleteResult]
    bucket: str

    @property
    def surviving(self) -> List[DeleteResult]:
        """Objects this run could not confirm as removed."""
        return [r for r in self.results if not r.confirmed]

    @property
    def all_removed(self) -> bool:
        return not self.surviving


class IngestionOrchestrator:
    def __init__(
        self,
        store: VideoStore,
        storage: ObjectStorageClient,
        transcoder: Transcoder,
        workspaces: WorkspaceManager,
        max_upload_bytes: int = 2 * 1024 * 1024 * 1024,
    ):
        self.store = store
        self.storage = storage
        self.transcoder = transcoder
        self.workspaces = workspaces
        self.max_upload_bytes = max_upload_bytes

    # ---------- upload ----------

    def validate(self, request: UploadRequest) -> None:
        if not (request.title or "").strip():
            raise ValidationError("Title is required")
        if request.stream is None or not request.filename:
            raise ValidationError("Video file is required")
        if not (request.content_type or "").lower().startswith("video/"):
            raise ValidationError("Only video files are allowed")
        if request.size is not None:
            if request.size <= 0:
                raise ValidationError("Video file is empty")
            if request.size > self.max_upload_bytes:
                raise ValidationError(
                    f"Video file exceeds the {self.max_upload_bytes} byte upload limit"
                )

    def _write_source(self, stream: BinaryIO, dest: Path) -> int:
        written = 0
        with open(dest, "wb") as fh:
            while True:
                chunk = stream.read(COPY_CHUNK_BYTES)
                if not chunk:
                    break
                written += len(chunk)
                if written > self.max_upload_bytes:
                    raise ValidationError(
                        f"Video file exceeds the {self.max_upload_bytes} byte upload limit"
                    )
                fh.write(chunk)
        if written == 0:
            raise ValidationError("Video file is empty")
        return written

    async def upload(self, request: UploadRequest, package: bool = True) -> PipelineResult:
        self.validate(request)

        with self.workspaces.scope() as ws:
            source = ws.file(f"source.{_extension(request.filename)}")
            file_size = await run_in_threadpool(self._write_source, request.stream, source)
            logger.info(
                "Upload staged title=%r file=%s size=%d workspace=%s",
                request.title, request.filename, file_size, ws.path,
            )

            # a probe failure aborts before any record or object exists
            info = await run_in_threadpool(self.transcoder.probe, source)

            asset = await self.store.create(
                VideoAsset(
                    _id=new_asset_id(),
                    title=request.title.strip(),
                    description=request.description or "",
                    tags=request.tags,
                    is_public=request.is_public,
                    status=ProcessingStatus.PENDING,
                    file_size=file_size,
                    mime_type=request.content_type,
                    original_name=Path(request.filename).name,
                    bucket=self.storage.bucket,
                )
            )

            uploaded: List[str] = []
            try:
                original_key = original_key_for(asset.id, request.filename)
                ref = await run_in_threadpool(
                    self.storage.upload_file, source, original_key, request.content_type
                )
                uploaded.append(ref.key)

                if not package:
                    asset = await self.store.record_original(
                        asset.id, ref.key, ref.url, expected_version=asset.version
                    )
                    logger.info("Stored original for %s without packaging", asset.id)
                    return PipelineResult(asset, info)

                asset = await self.store.update_status(
                    asset.id,
                    ProcessingStatus.PROCESSING,
                    expected_version=asset.version,
                    original_key=ref.key,
                    original_url=ref.url,
                )
                asset = await self._package_and_publish(asset, source, ws, info, uploaded)
            except (Exception, asyncio.CancelledError) as e:
                await self._handle_failure(asset.id, e, uploaded)
                raise

        logger.info(
            "Video %s ready: %d segments, manifest=%s",
            asset.id, asset.segment_count, asset.manifest_key,
        )
        return PipelineResult(asset, info)

    # ---------- convert existing ----------

    async def convert(self, asset_id: str) -> PipelineResult:
        asset = await self.store.get(asset_id)
        if asset.is_packaged:
            raise AlreadyPackagedError(f"video {asset_id} is already packaged")
        if not asset.original_key:
            raise ValidationError(f"video {asset_id} has no stored original to package")

        asset = await self.store.update_status(
            asset_id, ProcessingStatus.PROCESSING, expected_version=asset.version, error=None
        )
        logger.info("Converting existing video %s (%s)", asset_id, asset.title)

        uploaded: List[str] = []
        try:
            with self.workspaces.scope() as ws:
                source = ws.file(f"source.{_extension(asset.original_name)}")
                await run_in_threadpool(self.storage.download_file, asset.original_key, source)
                info = await run_in_threadpool(self.transcoder.probe, source)
                asset = await self._package_and_publish(asset, source, ws, info, uploaded)
        except (Exception, asyncio.CancelledError) as e:
            await self._handle_failure(asset_id, e, uploaded)
            raise

        return PipelineResult(asset, info)

    # ---------- shared steps ----------

    async def _package_and_publish(
        self,
        asset: VideoAsset,
        source: Path,
        ws: Workspace,
        info: MediaInfo,
        uploaded: List[str],
    ) -> VideoAsset:
        output_dir = ws.subdir("hls")
        cancel = threading.Event()
        packaging = asyncio.ensure_future(
            run_in_threadpool(
                self.transcoder.package,
                source,
                output_dir,
                _progress_logger(asset.id),
                info.duration,
                cancel,
            )
        )
        try:
            descriptor = await asyncio.shield(packaging)
        except asyncio.CancelledError:
            # stop ffmpeg before the workspace is removed underneath it
            cancel.set()
            try:
                await packaging
            except MediaPipelineError as e:
                logger.info("Packaging for %s stopped: %s", asset.id, e)
            raise

        package_keys = []
        for path in descriptor.files:
            key = package_key_for(asset.id, path.name)
            await run_in_threadpool(self.storage.upload_file, path, key)
            uploaded.append(key)
            package_keys.append(key)
        logger.info("Uploaded %d package files for %s", len(package_keys), asset.id)

        # objects exist before the record points at them
        manifest_key = package_key_for(asset.id, MANIFEST_NAME)
        return await self.store.append_package_keys(
            asset.id,
            package_keys,
            manifest_key=manifest_key,
            manifest_url=self.storage.public_url(manifest_key),
            segment_count=descriptor.segment_count,
            source_info=info,
            expected_version=asset.version,
        )

    async def _handle_failure(self, asset_id: str, error: BaseException, uploaded: List[str]) -> None:
        """Mark the record failed without ever masking `error`."""
        logger.error("Pipeline failed for %s: %s", asset_id, error)

        # the record never pointed at these, so nothing else will remove them
        partial = [k for k in uploaded if k.startswith(f"{HLS_PREFIX}/")]
        if partial:
            logger.warning("Removing %d unpublished package objects for %s", len(partial), asset_id)
            await self._remove_keys(partial)
            uploaded = [k for k in uploaded if k not in partial]

        try:
            await self.store.update_status(
                asset_id, ProcessingStatus.FAILED, error=str(error) or type(error).__name__
            )
            return
        except MediaPipelineError as e:
            logger.warning("Could not mark %s as failed: %s", asset_id, e)
        except Exception:
            logger.exception("Could not mark %s as failed", asset_id)

        # record removed mid-run: nothing will ever reference these objects
        if isinstance(error, ConflictError) and uploaded:
            try:
                record = await self.store.find_by_id(asset_id)
            except Exception:
                logger.exception("Could not re-read %s after conflict", asset_id)
                return
            if record is None:
                logger.warning("Video %s vanished mid-run, removing %d objects", asset_id, len(uploaded))
                await self._remove_keys(uploaded)

    async def _remove_keys(self, keys: List[str]) -> None:
        results = [await run_in_threadpool(self.storage.delete_object_with_retry, key) for key in keys]
        stuck = [r.key for r in results if not r.success]
        if stuck:
            logger.error("Orphaned storage objects need manual cleanup: %s", stuck)

    # ---------- deletion / cleanup ----------

    async def delete(self, asset_id: str) -> DeletionReport:
        asset = await self.store.get(asset_id)
        logger.info("Deleting video %s (%s)", asset_id, asset.title)

        keys = list(dict.fromkeys(k for k in [*asset.package_keys, asset.original_key] if k))
        results = []
        for key in keys:
            results.append(await run_in_threadpool(self.storage.delete_object_with_retry, key))

        # the record goes regardless; survivors are reported, not hidden
        await self.store.delete(asset_id)

        report = DeletionReport(asset=asset, results=results, bucket=asset.bucket or self.storage.bucket)
        if report.surviving:
            logger.warning(
                "Video %s removed from database, %d storage objects need manual cleanup: %s",
                asset_id, len(report.surviving), [r.key for r in report.surviving],
            )
        else:
            logger.info("Video %s and %d storage objects deleted", asset_id, len(results))
        return report

    async def cleanup_key(self, key: str) -> DeleteResult:
        logger.info("Manual storage cleanup for %s", key)
        return await run_in_threadpool(self.storage.delete_object_with_retry, key)

    # ---------- read-only reports ----------

    async def sync_check(self) -> SyncReport:
        videos = await self.store.list_all()
        return await run_in_threadpool(reconcile, videos, self.storage)

    async def stats(self) -> Dict:
        videos = [v for v in await self.store.list_all() if v.is_packaged]
        total_size = sum(v.file_size or 0 for v in videos)
        total_segments = sum(v.segment_count or 0 for v in videos)
        total_duration = sum(v.source_info.duration for v in videos if v.source_info)

        resolutions: Dict[str, int] = {}
        for v in videos:
            res = v.source_info.resolution if v.source_info else None
            if res:
                resolutions[res] = resolutions.get(res, 0) + 1

        return {
            "totalVideos": len(videos),
            "totalSize": total_size,
            "totalSizeMB": round(total_size / (1024 * 1024), 2),
            "totalSegments": total_segments,
            "totalDuration": total_duration,
            "totalDurationHours": round(total_duration / 3600, 2),
            "avgSegmentsPerVideo": round(total_segments / len(videos), 1) if videos else 0,
            "resolutions": resolutions,
        }


    async def bucket_info(self, prefix: str = "videos/") -> Dict:
        objects = await run_in_threadpool(self.storage.list_objects, prefix)
        total_size = sum(o.size for o in objects)
        return {
            "bucketName": self.storage.bucket,
            "publicUrl": self.storage.public_base_url,
            "prefix": prefix,
            "totalObjects": len(objects),
            "totalSize": total_size,
            "totalSizeMB": round(total_size / (1024 * 1024), 2),
            "totalSizeGB": round(total_size / (1024 * 1024 * 1024), 2),
            "objects": [
                {
                    "key": o.key,
                    "size": o.size,
                    "sizeMB": round(o.size / (1024 * 1024), 2),
                    "lastModified": o.last_modified.isoformat() if o.last_modified else None,
                    "publicUrl": self.storage.public_url(o.key),
                }
                for o in objects
            ],
        }


def _progress_logger(asset_id: str):
    last = {"pct": -10}

    def report(current: float, total: Optional[float]) -> None:
        if not total:
            return
        pct = min(100, int(100 * current / total))
        if pct >= last["pct"] + 10:
            last["pct"] = pct
            logger.info("Packaging %s: %d%% done", asset_id, pct)

    return report
