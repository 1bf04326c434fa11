# Core modules for the render worker
from .errors import (
    ErrorCode,
    RenderError,
    InvalidTimeline,
    InvalidClip,
    TimelineTooLong,
    TooManyClips,
    ImageDownloadFailed,
    FFmpegError,
    FFmpegTimeout,
    StorageUploadFailed,
    JobNotFound,
    QueueError,
    DatabaseError,
    UnknownError,
    JobStateError,
)
from .config import Settings, get_settings

__all__ = [
    # Errors
    "ErrorCode",
    "RenderError",
    "InvalidTimeline",
    "InvalidClip",
    "TimelineTooLong",
    "TooManyClips",
    "ImageDownloadFailed",
    "FFmpegError",
    "FFmpegTimeout",
    "StorageUploadFailed",
    "JobNotFound",
    "QueueError",
    "DatabaseError",
    "UnknownError",
    "JobStateError",
    # Config
    "Settings",
    "get_settings",
]
