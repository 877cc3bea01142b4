from functools import lru_cache

from src.core.config import settings
from src.core.database import mongodb
from src.database.video_store import VideoStore
from src.media.transcoder import Transcoder
from src.media.workspace import WorkspaceManager
from src.pipeline.ingestion import IngestionOrchestrator
from src.storage.object_storage import ObjectStorageClient


@lru_cache
def get_storage() -> ObjectStorageClient:
    return ObjectStorageClient.from_settings()


@lru_cache
def get_transcoder() -> Transcoder:
    return Transcoder(
        ffmpeg_bin=settings.FFMPEG_BIN,
        ffprobe_bin=settings.FFPROBE_BIN,
        segment_seconds=settings.HLS_SEGMENT_SECONDS,
        probe_timeout=settings.PROBE_TIMEOUT_SECONDS,
        package_timeout=settings.TRANSCODE_TIMEOUT_SECONDS,
    )


@lru_cache
def get_workspaces() -> WorkspaceManager:
    return WorkspaceManager(root=settings.WORKSPACE_ROOT)


def get_video_store() -> VideoStore:
    if mongodb.db is None:
        raise RuntimeError("MongoDB is not connected")
    return VideoStore(mongodb.db[settings.VIDEOS_COLLECTION])


def get_orchestrator() -> IngestionOrchestrator:
    return IngestionOrchestrator(
        store=get_video_store(),
        storage=get_storage(),
        transcoder=get_transcoder(),
        workspaces=get_workspaces(),
        max_upload_bytes=settings.MAX_UPLOAD_BYTES,
    )
