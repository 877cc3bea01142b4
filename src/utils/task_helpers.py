import logging
from functools import lru_cache
from typing import Iterable, List, Optional

from src.core.database_sync import mongodb_sync
from src.database.schemas.metadata import VideoAsset
from src.pipeline.reconcile import SyncReport, reconcile
from src.storage.object_storage import DeleteResult, ObjectStorageClient

logger = logging.getLogger(__name__)


@lru_cache
def get_storage_client() -> ObjectStorageClient:
    return ObjectStorageClient.from_settings()


def load_all_videos() -> List[VideoAsset]:
    """Read every video record through the worker's synchronous client."""
    return [VideoAsset.model_validate(doc) for doc in mongodb_sync.videos.find({})]


def delete_storage_keys(
    keys: Iterable[str],
    storage: Optional[ObjectStorageClient] = None,
) -> List[DeleteResult]:
    """
    Retry deletion of storage keys left behind by an earlier delete.

    Parameters:
    - keys: storage keys to remove
    - storage: client to use, defaults to the one built from settings

    Returns one DeleteResult per distinct key; nothing is raised.
    """
    storage = storage or get_storage_client()
    results = [storage.delete_object_with_retry(key) for key in dict.fromkeys(keys)]

    failed = [r.key for r in results if not r.success]
    if failed:
        logger.warning("Storage cleanup left %d keys behind: %s", len(failed), failed)
    else:
        logger.info("Storage cleanup finished for %d keys", len(results))
    return results


def run_sync_check(
    storage: Optional[ObjectStorageClient] = None,
    videos: Optional[Iterable[VideoAsset]] = None,
) -> SyncReport:
    storage = storage or get_storage_client()
    if videos is None:
        videos = load_all_videos()

    report = reconcile(videos, storage)
    for entry in report.orphaned:
        logger.warning(
            "Orphaned video %s (%s): key=%s bucket=%s",
            entry.video_id, entry.title, entry.key, entry.bucket,
        )
    return report
