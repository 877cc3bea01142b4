from enum import Enum
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from typing import Dict, FrozenSet, List, Optional
from datetime import datetime

from src.core.errors import InvalidStatusTransition


class ProcessingStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# completed is terminal; failed may re-enter processing on conversion retry
ALLOWED_TRANSITIONS: Dict[ProcessingStatus, FrozenSet[ProcessingStatus]] = {
    ProcessingStatus.PENDING: frozenset({ProcessingStatus.PROCESSING, ProcessingStatus.FAILED}),
    ProcessingStatus.PROCESSING: frozenset({ProcessingStatus.COMPLETED, ProcessingStatus.FAILED}),
    ProcessingStatus.FAILED: frozenset({ProcessingStatus.PROCESSING}),
    ProcessingStatus.COMPLETED: frozenset(),
}


def transition(current, target) -> ProcessingStatus:
    """
    Single authority for processing status changes.

    Returns the target status when the move is allowed and raises
    InvalidStatusTransition otherwise.
    """
    current = ProcessingStatus(current)
    target = ProcessingStatus(target)
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidStatusTransition(
            f"cannot move video from '{current.value}' to '{target.value}'"
        )
    return target


class VideoStreamInfo(BaseModel):
    codec: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    framerate: Optional[str] = None


class AudioStreamInfo(BaseModel):
    codec: Optional[str] = None
    sample_rate: Optional[int] = None
    channels: Optional[int] = None


class MediaInfo(BaseModel):
    duration: float                 # seconds
    size: Optional[int] = None      # bytes, as reported by the container
    bitrate: Optional[int] = None
    video: Optional[VideoStreamInfo] = None
    audio: Optional[AudioStreamInfo] = None

    @property
    def resolution(self) -> Optional[str]:
        if not self.video or not self.video.width or not self.video.height:
            return None
        return f"{self.video.width}x{self.video.height}"


class VideoAsset(BaseModel):
    """Durable record of one uploaded video as stored in MongoDB."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., alias="_id")
    title: str
    description: str = ""
    tags: List[str] = Field(default_factory=list)
    is_public: bool = True

    status: ProcessingStatus = ProcessingStatus.PENDING
    is_packaged: bool = False
    manifest_key: Optional[str] = None
    manifest_url: Optional[str] = None
    original_key: Optional[str] = None
    original_url: Optional[str] = None
    package_keys: List[str] = Field(default_factory=list)
    segment_count: int = 0
    source_info: Optional[MediaInfo] = None

    file_size: int
    mime_type: str
    original_name: str
    bucket: Optional[str] = None
    error: Optional[str] = None

    # bumped on every write, used for optimistic concurrency checks
    version: int = 0

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def primary_key(self) -> Optional[str]:
        """Storage key that must exist for this record to be usable."""
        if self.is_packaged and self.manifest_key:
            return self.manifest_key
        return self.original_key

    def to_document(self) -> dict:
        doc = self.model_dump(by_alias=True, mode="python")
        doc["status"] = self.status.value
        return doc

    def to_response(self) -> "VideoAssetOut":
        info = self.source_info
        return VideoAssetOut(
            id=self.id,
            title=self.title,
            description=self.description,
            tags=self.tags,
            is_public=self.is_public,
            processing_status=self.status,
            is_packaged=self.is_packaged,
            manifest_key=self.manifest_key,
            manifest_url=self.manifest_url,
            original_key=self.original_key,
            original_url=self.original_url,
            package_object_keys=self.package_keys,
            segment_count=self.segment_count,
            source_info=info,
            file_size=self.file_size,
            file_size_formatted=format_file_size(self.file_size),
            mime_type=self.mime_type,
            original_name=self.original_name,
            duration=info.duration if info else None,
            duration_formatted=format_duration(info.duration if info else None),
            resolution=info.resolution if info else None,
            bucket=self.bucket,
            error=self.error,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


class VideoAssetOut(BaseModel):
    """Public projection of a VideoAsset, serialized with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    title: str
    description: str
    tags: List[str]
    is_public: bool
    processing_status: ProcessingStatus
    is_packaged: bool
    manifest_key: Optional[str] = None
    manifest_url: Optional[str] = None
    original_key: Optional[str] = None
    original_url: Optional[str] = None
    package_object_keys: List[str]
    segment_count: int
    source_info: Optional[MediaInfo] = None
    file_size: int
    file_size_formatted: str
    mime_type: str
    original_name: str
    duration: Optional[float] = None
    duration_formatted: str
    resolution: Optional[str] = None
    bucket: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime
    updated_at: datetime


def format_file_size(size: Optional[int]) -> str:
    if not size:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB", "TB"]
    value = float(size)
    i = 0
    while value >= 1024 and i < len(units) - 1:
        value /= 1024
        i += 1
    return f"{round(value, 2):g} {units[i]}"


def format_duration(seconds: Optional[float]) -> str:
    if not seconds:
        return "0:00"
    total = int(seconds)
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"
