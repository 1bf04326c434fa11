"""
Pydantic schemas for the render worker.

    from render_worker.schemas import Timeline, Clip, JobStatus, JobError
"""

from .timeline import (
    Clip,
    Timeline,
    validate_timeline,
    MAX_CLIPS,
    MAX_TOTAL_DURATION,
    MAX_TEXT_LENGTH,
)
from .job import JobError, JobStatus, JobStatusResponse, RenderJobPayload

__all__ = [
    # Timeline
    "Clip",
    "Timeline",
    "validate_timeline",
    "MAX_CLIPS",
    "MAX_TOTAL_DURATION",
    "MAX_TEXT_LENGTH",
    # Job
    "JobError",
    "JobStatus",
    "JobStatusResponse",
    "RenderJobPayload",
]
