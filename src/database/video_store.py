import logging
import re
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from pymongo import ASCENDING, DESCENDING, ReturnDocument

from src.core.errors import ConflictError, InvariantViolation, NotFoundError, ValidationError
from src.database.schemas.metadata import (
    MediaInfo,
    ProcessingStatus,
    VideoAsset,
    transition,
)

logger = logging.getLogger(__name__)

SORT_FIELDS = {
    "createdAt": "created_at",
    "updatedAt": "updated_at",
    "title": "title",
    "fileSize": "file_size",
    "segmentCount": "segment_count",
}

EDITABLE_FIELDS = frozenset({"title", "description", "tags", "is_public"})


def validate_package_fields(package_keys: Iterable[str], manifest_key: Optional[str]) -> List[str]:
    keys = list(dict.fromkeys(package_keys))
    if not keys:
        raise InvariantViolation("a packaged video needs at least one package key")
    if not manifest_key or manifest_key not in keys:
        raise InvariantViolation(f"manifest key {manifest_key!r} is not one of the package keys")
    return keys


def build_search_query(
    q: Optional[str] = None,
    tags: Optional[List[str]] = None,
    is_public: Optional[bool] = None,
    is_packaged: Optional[bool] = None,
) -> dict:
    query: dict = {}
    if is_packaged is not None:
        query["is_packaged"] = is_packaged
    if q:
        pattern = re.escape(q)
        query["$or"] = [
            {"title": {"$regex": pattern, "$options": "i"}},
            {"description": {"$regex": pattern, "$options": "i"}},
        ]
    if tags:
        query["tags"] = {"$in": tags}
    if is_public is not None:
        query["is_public"] = is_public
    return query


class VideoStore:
    """
    Persistence boundary for VideoAsset documents.

    Every write after creation is a conditional update on the record's
    version counter, so a record that changed or disappeared between read
    and write raises ConflictError instead of being overwritten.
    """

    def __init__(self, collection):
        self.collection = collection

    async def create(self, asset: VideoAsset) -> VideoAsset:
        if asset.is_packaged:
            validate_package_fields(asset.package_keys, asset.manifest_key)
        elif asset.package_keys:
            raise InvariantViolation("an unpackaged video cannot carry package keys")

        await self.collection.insert_one(asset.to_document())
        logger.info("Created video record %s status=%s", asset.id, asset.status.value)
        return asset

    async def find_by_id(self, asset_id: str) -> Optional[VideoAsset]:
        doc = await self.collection.find_one({"_id": asset_id})
        if doc is None:
            return None
        return VideoAsset.model_validate(doc)

    async def get(self, asset_id: str) -> VideoAsset:
        asset = await self.find_by_id(asset_id)
        if asset is None:
            raise NotFoundError(f"no video with id {asset_id}")
        return asset

    async def list(self, is_packaged: Optional[bool] = None, limit: int = 50, skip: int = 0) -> List[VideoAsset]:
        query = {} if is_packaged is None else {"is_packaged": is_packaged}
        cursor = self.collection.find(query).sort("created_at", DESCENDING).skip(skip).limit(limit)
        return [VideoAsset.model_validate(doc) for doc in await cursor.to_list(length=None)]

    async def count(self, is_packaged: Optional[bool] = None) -> int:
        query = {} if is_packaged is None else {"is_packaged": is_packaged}
        return await self.collection.count_documents(query)

    async def list_all(self) -> List[VideoAsset]:
        cursor = self.collection.find({}).sort("created_at", DESCENDING)
        return [VideoAsset.model_validate(doc) for doc in await cursor.to_list(length=None)]

    async def search(
        self,
        q: Optional[str] = None,
        tags: Optional[List[str]] = None,
        is_public: Optional[bool] = None,
        is_packaged: Optional[bool] = None,
        limit: int = 20,
        skip: int = 0,
        sort_by: str = "createdAt",
        sort_order: str = "desc",
    ) -> Tuple[List[VideoAsset], int]:
        query = build_search_query(q, tags, is_public, is_packaged)
        field = SORT_FIELDS.get(sort_by, "created_at")
        direction = DESCENDING if sort_order == "desc" else ASCENDING
        cursor = self.collection.find(query).sort(field, direction).skip(skip).limit(limit)
        videos = [VideoAsset.model_validate(doc) for doc in await cursor.to_list(length=None)]
        total = await self.collection.count_documents(query)
        return videos, total

    async def _conditional_update(self, current: VideoAsset, fields: dict) -> VideoAsset:
        fields = dict(fields, updated_at=datetime.utcnow())
        doc = await self.collection.find_one_and_update(
            {"_id": current.id, "version": current.version},
            {"$set": fields, "$inc": {"version": 1}},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            if await self.collection.find_one({"_id": current.id}) is None:
                raise ConflictError(f"video {current.id} was deleted during the update")
            raise ConflictError(f"video {current.id} was modified concurrently")
        return VideoAsset.model_validate(doc)

    async def _load(self, asset_id: str, expected_version: Optional[int]) -> VideoAsset:
        current = await self.find_by_id(asset_id)
        if current is None:
            if expected_version is not None:
                # the caller saw this record earlier in the same run
                raise ConflictError(f"video {asset_id} was deleted during processing")
            raise NotFoundError(f"no video with id {asset_id}")
        if expected_version is not None and current.version != expected_version:
            raise ConflictError(
                f"video {asset_id} is at version {current.version}, expected {expected_version}"
            )
        return current

    async def update_status(
        self,
        asset_id: str,
        target: ProcessingStatus,
        expected_version: Optional[int] = None,
        **fields,
    ) -> VideoAsset:
        current = await self._load(asset_id, expected_version)
        new_status = transition(current.status, target)
        if new_status == ProcessingStatus.COMPLETED:
            raise InvariantViolation("use append_package_keys to complete a video")
        updated = await self._conditional_update(current, dict(fields, status=new_status.value))
        logger.info("Video %s status %s -> %s", asset_id, current.status.value, new_status.value)
        return updated

    async def update_metadata(
        self,
        asset_id: str,
        changes: dict,
        expected_version: Optional[int] = None,
    ) -> VideoAsset:
        """
        Edit descriptive fields only. Storage keys, sizes, package fields
        and status belong to the pipeline and are refused here.
        """
        protected = sorted(set(changes) - EDITABLE_FIELDS)
        if protected:
            raise ValidationError(f"fields cannot be updated: {', '.join(protected)}")
        if "title" in changes:
            title = (changes["title"] or "").strip()
            if not title:
                raise ValidationError("Title cannot be empty")
            changes = dict(changes, title=title)

        current = await self._load(asset_id, expected_version)
        if not changes:
            return current
        updated = await self._conditional_update(current, changes)
        logger.info("Video %s metadata updated: %s", asset_id, sorted(changes))
        return updated

    async def record_original(
        self,
        asset_id: str,
        key: str,
        url: str,
        expected_version: Optional[int] = None,
    ) -> VideoAsset:
        current = await self._load(asset_id, expected_version)
        return await self._conditional_update(current, {"original_key": key, "original_url": url})

    async def append_package_keys(
        self,
        asset_id: str,
        package_keys: Iterable[str],
        manifest_key: str,
        manifest_url: str,
        segment_count: int,
        source_info: MediaInfo,
        expected_version: Optional[int] = None,
    ) -> VideoAsset:
        """Record a finished package and mark the video completed in one write."""
        keys = validate_package_fields(package_keys, manifest_key)
        current = await self._load(asset_id, expected_version)
        if current.is_packaged:
            raise InvariantViolation(f"video {asset_id} is already packaged")
        transition(current.status, ProcessingStatus.COMPLETED)

        updated = await self._conditional_update(
            current,
            {
                "is_packaged": True,
                "package_keys": keys,
                "manifest_key": manifest_key,
                "manifest_url": manifest_url,
                "segment_count": segment_count,
                "source_info": source_info.model_dump(),
                "status": ProcessingStatus.COMPLETED.value,
                "error": None,
            },
        )
        logger.info("Video %s completed with %d package objects", asset_id, len(keys))
        return updated

    async def delete(self, asset_id: str) -> bool:
        result = await self.collection.delete_one({"_id": asset_id})
        return result.deleted_count > 0
