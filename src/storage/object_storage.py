import logging
import shutil
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import BinaryIO, Callable, List, Optional, Union

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from src.core.config import settings
from src.core.errors import (
    DeleteError,
    ObjectNotFoundError,
    StorageUnavailableError,
    UploadError,
)

logger = logging.getLogger(__name__)

MANIFEST_CONTENT_TYPE = "application/vnd.apple.mpegurl"
SEGMENT_CONTENT_TYPE = "video/mp2t"
DEFAULT_CONTENT_TYPE = "application/octet-stream"

_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}


def content_type_for(name: str, fallback: Optional[str] = None) -> str:
    n = name.lower()
    if n.endswith(".m3u8"):
        return MANIFEST_CONTENT_TYPE
    if n.endswith(".ts"):
        return SEGMENT_CONTENT_TYPE
    return fallback or DEFAULT_CONTENT_TYPE


def cache_control_for(name: str) -> str:
    n = name.lower()
    if n.endswith(".m3u8"):
        return "no-cache"
    if n.endswith(".ts"):
        return "public, max-age=31536000, immutable"
    return "public, max-age=3600"


def is_not_found(error: Exception) -> bool:
    if not isinstance(error, ClientError):
        return False
    code = str(error.response.get("Error", {}).get("Code", ""))
    return code in _NOT_FOUND_CODES


@dataclass(frozen=True)
class ObjectRef:
    key: str
    url: str
    bucket: str


@dataclass(frozen=True)
class StoredObject:
    key: str
    size: int
    last_modified: Optional[datetime] = None


@dataclass(frozen=True)
class DeleteResult:
    key: str
    status: str                 # "deleted" | "missing" | "failed"
    attempts: int = 1
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status != "failed"

    @property
    def confirmed(self) -> bool:
        """True only when this call removed an object that existed."""
        return self.status == "deleted"


class ObjectStorageClient:
    """
    Key-addressed access to the video bucket.

    Uploads fail loudly (UploadError); deletions are retried with
    exponential backoff and always come back as a DeleteResult.
    """

    def __init__(
        self,
        s3_client,
        bucket: str,
        public_base_url: str = "",
        max_delete_attempts: int = 3,
        backoff_base: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.s3 = s3_client
        self.bucket = bucket
        self.public_base_url = public_base_url.rstrip("/")
        self.max_delete_attempts = max_delete_attempts
        self.backoff_base = backoff_base
        self._sleep = sleep

    @classmethod
    def from_settings(cls) -> "ObjectStorageClient":
        if not settings.AWS_S3_BUCKET:
            raise RuntimeError("AWS_S3_BUCKET is not set")

        s3_client = boto3.client(
            "s3",
            endpoint_url=settings.S3_ENDPOINT_URL or None,
            aws_access_key_id=settings.AWS_ACCESS_KEY_ID or None,
            aws_secret_access_key=settings.AWS_SECRET_ACCESS_KEY or None,
            region_name=settings.AWS_REGION,
            config=Config(
                connect_timeout=settings.STORAGE_CONNECT_TIMEOUT,
                read_timeout=settings.STORAGE_READ_TIMEOUT,
                signature_version="s3v4",
                s3={"addressing_style": "path"},
                retries={"max_attempts": 2, "mode": "standard"},
            ),
        )
        return cls(
            s3_client,
            bucket=settings.AWS_S3_BUCKET,
            public_base_url=settings.PUBLIC_BASE_URL,
            max_delete_attempts=settings.DELETE_MAX_ATTEMPTS,
            backoff_base=settings.DELETE_BACKOFF_BASE_SECONDS,
        )

    def list_objects(self, prefix: str = "videos/", page_size: int = 1000) -> List[StoredObject]:
        objects = []
        params = {"Bucket": self.bucket, "Prefix": prefix, "MaxKeys": page_size}
        try:
            while True:
                page = self.s3.list_objects_v2(**params)
                for obj in page.get("Contents", []):
                    objects.append(StoredObject(obj["Key"], obj.get("Size", 0), obj.get("LastModified")))
                if not page.get("IsTruncated"):
                    break
                params["ContinuationToken"] = page["NextContinuationToken"]
        except (BotoCoreError, ClientError) as e:
            raise StorageUnavailableError(f"could not list prefix={prefix}: {e}") from e
        return objects

    def public_url(self, key: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url}/{key}"
        return f"https://{self.bucket}.s3.amazonaws.com/{key}"

    def put_object(
        self,
        key: str,
        body: Union[bytes, BinaryIO],
        content_type: Optional[str] = None,
    ) -> ObjectRef:
        resolved_type = content_type_for(key, content_type)
        try:
            self.s3.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=body,
                ContentType=resolved_type,
                CacheControl=cache_control_for(key),
                Metadata={
                    "generated-by": "hls-video-processor",
                    "upload-timestamp": datetime.utcnow().isoformat(),
                },
            )
        except (BotoCoreError, ClientError) as e:
            logger.error("Failed to upload %s: %s", key, e)
            raise UploadError(f"upload failed for key={key}: {e}") from e

        logger.info("Uploaded %s (%s)", key, resolved_type)
        return ObjectRef(key=key, url=self.public_url(key), bucket=self.bucket)

    def upload_file(self, path: Path, key: str, content_type: Optional[str] = None) -> ObjectRef:
        with open(path, "rb") as fh:
            return self.put_object(key, fh, content_type)

    def download_file(self, key: str, dest: Path) -> Path:
        try:
            response = self.s3.get_object(Bucket=self.bucket, Key=key)
            with open(dest, "wb") as fh:
                shutil.copyfileobj(response["Body"], fh)
        except ClientError as e:
            if is_not_found(e):
                raise ObjectNotFoundError(f"object {key} does not exist in storage") from e
            raise StorageUnavailableError(f"download failed for key={key}: {e}") from e
        except BotoCoreError as e:
            raise StorageUnavailableError(f"download failed for key={key}: {e}") from e
        return dest

    def object_exists(self, key: str) -> bool:
        try:
            self.s3.head_object(Bucket=self.bucket, Key=key)
            return True
        except ClientError as e:
            if is_not_found(e):
                return False
            raise StorageUnavailableError(f"could not check key={key}: {e}") from e
        except BotoCoreError as e:
            raise StorageUnavailableError(f"could not check key={key}: {e}") from e

    def delete_object(self, key: str) -> DeleteResult:
        """
        Delete one object. S3 answers deletes of absent keys with success,
        so existence is checked first to tell "deleted" from "missing".
        """
        try:
            if not self.object_exists(key):
                return DeleteResult(key=key, status="missing")
            self.s3.delete_object(Bucket=self.bucket, Key=key)
        except StorageUnavailableError as e:
            raise DeleteError(str(e)) from e
        except (BotoCoreError, ClientError) as e:
            raise DeleteError(f"delete failed for key={key}: {e}") from e
        return DeleteResult(key=key, status="deleted")

    def delete_object_with_retry(self, key: str, max_attempts: Optional[int] = None) -> DeleteResult:
        max_attempts = max_attempts or self.max_delete_attempts
        last_error = None
        for attempt in range(1, max_attempts + 1):
            logger.info("Delete attempt %d/%d for %s", attempt, max_attempts, key)
            try:
                result = self.delete_object(key)
            except DeleteError as e:
                last_error = str(e)
                logger.warning("Delete attempt %d for %s failed: %s", attempt, key, e)
                if attempt < max_attempts:
                    # 2s, 4s, 8s, ...
                    self._sleep(self.backoff_base * (2 ** (attempt - 1)))
                continue
            return DeleteResult(key=key, status=result.status, attempts=attempt)

        logger.error("Giving up on deleting %s after %d attempts", key, max_attempts)
        return DeleteResult(key=key, status="failed", attempts=max_attempts, error=last_error)
