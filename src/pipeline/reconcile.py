import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from src.core.errors import StorageUnavailableError
from src.database.schemas.metadata import VideoAsset
from src.storage.object_storage import ObjectStorageClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncEntry:
    video_id: str
    title: str
    key: Optional[str]
    bucket: Optional[str]
    status: str                 # "exists" | "not_found" | "unverified"
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "videoId": self.video_id,
            "title": self.title,
            "key": self.key,
            "bucket": self.bucket,
            "status": self.status,
            "error": self.error,
        }


@dataclass
class SyncReport:
    present: List[SyncEntry] = field(default_factory=list)
    orphaned: List[SyncEntry] = field(default_factory=list)
    unverified: List[SyncEntry] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.present) + len(self.orphaned) + len(self.unverified)

    def to_dict(self) -> dict:
        return {
            "totalVideos": self.total,
            "syncedVideos": len(self.present),
            "orphanedVideos": len(self.orphaned),
            "unverifiedVideos": len(self.unverified),
            "orphanedList": [e.to_dict() for e in self.orphaned],
            "unverifiedList": [e.to_dict() for e in self.unverified],
        }


def reconcile(videos: Iterable[VideoAsset], storage: ObjectStorageClient) -> SyncReport:
    """
    Check the primary stored key of every record. Read-only: records are
    never modified, so this is always safe to run.
    """
    report = SyncReport()
    for video in videos:
        key = video.primary_key
        bucket = video.bucket or storage.bucket
        if not key:
            # nothing was ever stored for this record
            report.orphaned.append(SyncEntry(video.id, video.title, None, bucket, "not_found",
                                             "record has no stored key"))
            continue
        try:
            exists = storage.object_exists(key)
        except StorageUnavailableError as e:
            logger.warning("Could not verify %s for video %s: %s", key, video.id, e)
            report.unverified.append(SyncEntry(video.id, video.title, key, bucket, "unverified", str(e)))
            continue

        if exists:
            report.present.append(SyncEntry(video.id, video.title, key, bucket, "exists"))
        else:
            report.orphaned.append(SyncEntry(video.id, video.title, key, bucket, "not_found"))

    logger.info(
        "Storage sync check: total=%d present=%d orphaned=%d unverified=%d",
        report.total, len(report.present), len(report.orphaned), len(report.unverified),
    )
    return report
