from fastapi import APIRouter, Body, Depends, File, Form, Query, UploadFile, status
from fastapi.responses import JSONResponse
from typing import Any, Dict, Optional
import logging

from src.app_celery.tasks import cleanup_storage_keys
from src.core.config import settings
from src.core.dependencies import get_orchestrator
from src.database.schemas.metadata import VideoAsset
from src.pipeline.ingestion import (
    IngestionOrchestrator,
    PipelineResult,
    UploadRequest,
    parse_bool,
    parse_tags,
)

logger = logging.getLogger(__name__)
router = APIRouter()

# request field names accepted by PUT /{video_id}
_UPDATE_ALIASES = {"isPublic": "is_public", "visibility": "is_public"}


def _video(asset: VideoAsset) -> dict:
    return asset.to_response().model_dump(by_alias=True, mode="json")


def _processing(result: PipelineResult) -> dict:
    info = result.media_info
    return {
        "originalSize": result.asset.file_size,
        "duration": info.duration,
        "segments": result.asset.segment_count,
        "resolution": info.resolution,
    }


@router.post("/upload", status_code=status.HTTP_201_CREATED)
async def upload_video(
    video: Optional[UploadFile] = File(None),
    title: Optional[str] = Form(None),
    description: str = Form(""),
    tags: Optional[str] = Form(None),
    visibility: Optional[str] = Form(None),
    package: Optional[str] = Form(None),
    orchestrator: IngestionOrchestrator = Depends(get_orchestrator),
):
    request = UploadRequest(
        title=title or "",
        filename=video.filename if video else None,
        content_type=video.content_type if video else None,
        stream=video.file if video else None,
        size=getattr(video, "size", None) if video else None,
        description=description,
        tags=parse_tags(tags),
        is_public=parse_bool(visibility, default=True),
    )
    result = await orchestrator.upload(request, package=parse_bool(package, default=True))

    return {
        "success": True,
        "video": _video(result.asset),
        "processing": _processing(result),
    }


@router.get("")
async def list_videos(
    is_packaged: Optional[bool] = Query(None, alias="isPackaged"),
    limit: int = Query(50, ge=1, le=500),
    skip: int = Query(0, ge=0),
    orchestrator: IngestionOrchestrator = Depends(get_orchestrator),
):
    videos = await orchestrator.store.list(is_packaged=is_packaged, limit=limit, skip=skip)
    total = await orchestrator.store.count(is_packaged=is_packaged)
    return {
        "success": True,
        "videos": [_video(v) for v in videos],
        "total": total,
        "limit": limit,
        "skip": skip,
    }


@router.get("/search")
async def search_videos(
    q: Optional[str] = None,
    tags: Optional[str] = None,
    visibility: Optional[str] = None,
    is_packaged: Optional[bool] = Query(None, alias="isPackaged"),
    limit: int = Query(20, ge=1, le=500),
    skip: int = Query(0, ge=0),
    sort_by: str = Query("createdAt", alias="sortBy"),
    sort_order: str = Query("desc", alias="sortOrder", pattern="^(asc|desc)$"),
    orchestrator: IngestionOrchestrator = Depends(get_orchestrator),
):
    is_public = None if visibility is None else parse_bool(visibility)
    videos, total = await orchestrator.store.search(
        q=q,
        tags=parse_tags(tags),
        is_public=is_public,
        is_packaged=is_packaged,
        limit=limit,
        skip=skip,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    return {
        "success": True,
        "videos": [_video(v) for v in videos],
        "pagination": {
            "total": total,
            "limit": limit,
            "skip": skip,
            "hasMore": total > skip + limit,
        },
    }


@router.get("/stats")
async def video_stats(orchestrator: IngestionOrchestrator = Depends(get_orchestrator)):
    return {"success": True, "stats": await orchestrator.stats()}


@router.get("/sync-check")
async def storage_sync_check(orchestrator: IngestionOrchestrator = Depends(get_orchestrator)):
    report = await orchestrator.sync_check()
    return {"success": True, **report.to_dict()}


@router.get("/bucket-info")
async def storage_bucket_info(
    prefix: str = "videos/",
    orchestrator: IngestionOrchestrator = Depends(get_orchestrator),
):
    return {"success": True, **await orchestrator.bucket_info(prefix)}


@router.delete("/storage/{key:path}")
async def cleanup_storage_object(
    key: str,
    orchestrator: IngestionOrchestrator = Depends(get_orchestrator),
):
    result = await orchestrator.cleanup_key(key)
    if not result.success:
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "success": False,
                "error": "Storage cleanup failed",
                "key": key,
                "bucket": orchestrator.storage.bucket,
                "attempts": result.attempts,
                "details": result.error,
            },
        )
    return {
        "success": True,
        "message": "Storage cleanup successful",
        "key": key,
        "status": result.status,
        "attempts": result.attempts,
    }


@router.get("/{video_id}")
async def get_video(video_id: str, orchestrator: IngestionOrchestrator = Depends(get_orchestrator)):
    asset = await orchestrator.store.get(video_id)
    return {"success": True, "video": _video(asset)}


@router.put("/{video_id}")
async def update_video(
    video_id: str,
    updates: Dict[str, Any] = Body(...),
    orchestrator: IngestionOrchestrator = Depends(get_orchestrator),
):
    changes = {_UPDATE_ALIASES.get(k, k): v for k, v in updates.items()}
    if "tags" in changes:
        changes["tags"] = parse_tags(changes["tags"])
    if "is_public" in changes:
        changes["is_public"] = parse_bool(changes["is_public"])

    asset = await orchestrator.store.update_metadata(video_id, changes)
    return {"success": True, "message": "Video updated successfully", "video": _video(asset)}


@router.post("/{video_id}/convert")
async def convert_video(video_id: str, orchestrator: IngestionOrchestrator = Depends(get_orchestrator)):
    result = await orchestrator.convert(video_id)
    return {
        "success": True,
        "message": "Video converted to HLS successfully",
        "video": _video(result.asset),
        "processing": _processing(result),
    }


@router.delete("/{video_id}")
async def delete_video(video_id: str, orchestrator: IngestionOrchestrator = Depends(get_orchestrator)):
    report = await orchestrator.delete(video_id)
    surviving = report.surviving

    response = {
        "success": True,
        "message": "Video deleted successfully",
        "videoId": video_id,
        "title": report.asset.title,
        "deletedFiles": sum(1 for r in report.results if r.confirmed),
        "storageDeleted": report.all_removed,
    }
    if not surviving:
        return response

    response["warning"] = (
        f"Video removed from database, but {len(surviving)} storage objects could not "
        "be confirmed deleted. Please check manually."
    )
    response["warnings"] = [
        {
            "key": r.key,
            "bucket": report.bucket,
            "reason": "not_found" if r.status == "missing" else "delete_failed",
            "error": r.error,
        }
        for r in surviving
    ]
    response["failedKeys"] = [r.key for r in surviving]
    response["bucket"] = report.bucket

    retry_keys = [r.key for r in surviving if not r.success]
    if retry_keys and settings.CLEANUP_QUEUE_ENABLED:
        try:
            task = cleanup_storage_keys.delay(retry_keys)
            response["cleanupTaskId"] = task.id
        except Exception:
            logger.exception("Could not enqueue storage cleanup for %s", retry_keys)

    return response
