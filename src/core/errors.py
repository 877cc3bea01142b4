class MediaPipelineError(Exception):
    """Base error for the media ingestion pipeline."""

    status_code = 500
    title = "Media pipeline failure"


class ValidationError(MediaPipelineError):
    """Bad input. Raised before any side effect."""

    status_code = 400
    title = "Invalid request"


class AlreadyPackagedError(ValidationError):
    title = "Video is already packaged"


class NotFoundError(MediaPipelineError):
    status_code = 404
    title = "Video not found"


class ConflictError(MediaPipelineError):
    """The record changed underneath a multi-step operation."""

    status_code = 409
    title = "Video was modified concurrently"


class InvalidStatusTransition(ConflictError):
    title = "Invalid processing status transition"


class InvariantViolation(MediaPipelineError):
    title = "Video record invariant violated"


class ProbeError(MediaPipelineError):
    status_code = 422
    title = "Failed to read video metadata"


class PackagingError(MediaPipelineError):
    title = "Failed to package video for streaming"


class UploadError(MediaPipelineError):
    status_code = 502
    title = "Failed to upload video to storage"


class DeleteError(MediaPipelineError):
    """Single delete attempt failed. Retried, then reported as a result."""

    status_code = 502
    title = "Failed to delete object from storage"


class StorageUnavailableError(MediaPipelineError):
    """Storage could not answer. Never means the object is missing."""

    status_code = 503
    title = "Object storage unavailable"


class ObjectNotFoundError(NotFoundError):
    title = "Stored object not found"
