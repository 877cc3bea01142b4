import os
from pathlib import Path
from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent.parent  # go up to project root
env_path = BASE_DIR / ".env.development"

load_dotenv(env_path)


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings:
    MONGO_URI: str = os.getenv("MONGO_URI", "mongodb://localhost:27017")
    MONGO_DB: str = os.getenv("MONGO_DB", "wellness_media_db")
    VIDEOS_COLLECTION: str = os.getenv("VIDEOS_COLLECTION", "videos")

    # Object storage (AWS S3 or any S3-compatible endpoint such as Cloudflare R2)
    AWS_S3_BUCKET: str = os.getenv("AWS_S3_BUCKET", "")
    AWS_ACCESS_KEY_ID: str = os.getenv("AWS_ACCESS_KEY_ID", "")
    AWS_SECRET_ACCESS_KEY: str = os.getenv("AWS_SECRET_ACCESS_KEY", "")
    AWS_REGION: str = os.getenv("AWS_REGION", "auto")
    S3_ENDPOINT_URL: str = os.getenv("S3_ENDPOINT_URL", "")
    PUBLIC_BASE_URL: str = os.getenv("PUBLIC_BASE_URL", "")
    STORAGE_CONNECT_TIMEOUT: int = int(os.getenv("STORAGE_CONNECT_TIMEOUT", "10"))
    STORAGE_READ_TIMEOUT: int = int(os.getenv("STORAGE_READ_TIMEOUT", "120"))
    DELETE_MAX_ATTEMPTS: int = int(os.getenv("DELETE_MAX_ATTEMPTS", "3"))
    DELETE_BACKOFF_BASE_SECONDS: float = float(os.getenv("DELETE_BACKOFF_BASE_SECONDS", "2"))

    # Transcoding
    FFMPEG_BIN: str = os.getenv("FFMPEG_BIN", "ffmpeg")
    FFPROBE_BIN: str = os.getenv("FFPROBE_BIN", "ffprobe")
    PROBE_TIMEOUT_SECONDS: int = int(os.getenv("PROBE_TIMEOUT_SECONDS", "60"))
    TRANSCODE_TIMEOUT_SECONDS: int = int(os.getenv("TRANSCODE_TIMEOUT_SECONDS", "3600"))
    HLS_SEGMENT_SECONDS: int = int(os.getenv("HLS_SEGMENT_SECONDS", "10"))

    # Uploads
    MAX_UPLOAD_BYTES: int = int(os.getenv("MAX_UPLOAD_BYTES", str(2 * 1024 * 1024 * 1024)))
    WORKSPACE_ROOT: str = os.getenv("WORKSPACE_ROOT", str(BASE_DIR / "temp"))

    # Celery
    CELERY_BROKER_URL: str = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
    CELERY_RESULT_BACKEND: str = os.getenv("CELERY_RESULT_BACKEND", "redis://localhost:6379/0")
    CLEANUP_QUEUE_ENABLED: bool = _env_bool("CLEANUP_QUEUE_ENABLED")

    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

settings = Settings()
