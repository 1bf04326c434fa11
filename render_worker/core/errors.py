"""
Render Error Taxonomy

Every failure the pipeline can report carries a stable ErrorCode. Pipeline
stages raise RenderError subclasses; the orchestrator normalizes whatever it
catches into a JobError (see schemas/job.py) before persisting it or sending
it to a webhook.

Groups:
- Validation (rejected before a job is queued): INVALID_TIMELINE, INVALID_CLIP,
  TIMELINE_TOO_LONG, TOO_MANY_CLIPS
- Pipeline (retryable): IMAGE_DOWNLOAD_FAILED, FFMPEG_ERROR, FFMPEG_TIMEOUT,
  STORAGE_UPLOAD_FAILED
- System: JOB_NOT_FOUND, QUEUE_ERROR, DATABASE_ERROR, UNKNOWN_ERROR
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    # Validation
    INVALID_TIMELINE = "INVALID_TIMELINE"
    INVALID_CLIP = "INVALID_CLIP"
    TIMELINE_TOO_LONG = "TIMELINE_TOO_LONG"
    TOO_MANY_CLIPS = "TOO_MANY_CLIPS"

    # Pipeline
    IMAGE_DOWNLOAD_FAILED = "IMAGE_DOWNLOAD_FAILED"
    FFMPEG_ERROR = "FFMPEG_ERROR"
    FFMPEG_TIMEOUT = "FFMPEG_TIMEOUT"
    STORAGE_UPLOAD_FAILED = "STORAGE_UPLOAD_FAILED"

    # System
    JOB_NOT_FOUND = "JOB_NOT_FOUND"
    QUEUE_ERROR = "QUEUE_ERROR"
    DATABASE_ERROR = "DATABASE_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class RenderError(Exception):
    """Base class for errors that map onto an ErrorCode."""

    code: ErrorCode = ErrorCode.UNKNOWN_ERROR

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def __repr__(self) -> str:
        return f"<{type(self).__name__}(code={self.code.value!r}, message={self.message!r})>"


# ============================================================================
# Validation Errors
# ============================================================================


class InvalidTimeline(RenderError):
    code = ErrorCode.INVALID_TIMELINE


class InvalidClip(RenderError):
    code = ErrorCode.INVALID_CLIP


class TimelineTooLong(RenderError):
    code = ErrorCode.TIMELINE_TOO_LONG


class TooManyClips(RenderError):
    code = ErrorCode.TOO_MANY_CLIPS


# ============================================================================
# Pipeline Errors
# ============================================================================


class ImageDownloadFailed(RenderError):
    """Raised when a clip image cannot be fetched into the workspace."""

    code = ErrorCode.IMAGE_DOWNLOAD_FAILED


class FFmpegError(RenderError):
    """Raised when FFmpeg fails (non-zero exit, missing output, spawn error)."""

    code = ErrorCode.FFMPEG_ERROR


class FFmpegTimeout(FFmpegError):
    """Raised when FFmpeg exceeds the allowed timeout."""

    code = ErrorCode.FFMPEG_TIMEOUT


class StorageUploadFailed(RenderError):
    code = ErrorCode.STORAGE_UPLOAD_FAILED


# ============================================================================
# System Errors
# ============================================================================


class JobNotFound(RenderError):
    code = ErrorCode.JOB_NOT_FOUND


class QueueError(RenderError):
    code = ErrorCode.QUEUE_ERROR


class DatabaseError(RenderError):
    code = ErrorCode.DATABASE_ERROR


class UnknownError(RenderError):
    code = ErrorCode.UNKNOWN_ERROR


class JobStateError(RenderError):
    """Raised on a lifecycle transition the state machine does not allow."""

    code = ErrorCode.DATABASE_ERROR
