"""
Pydantic schemas for render jobs.

Includes the lifecycle status enum, the normalized error attached to failed
jobs, the queue payload and the status-query response.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from .timeline import Timeline


class JobStatus(str, Enum):
    """Externally visible job states. COMPLETED and FAILED are terminal."""

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class JobError(BaseModel):
    """Normalized failure attached to a job in its terminal FAILED state."""

    code: str = Field(..., description="ErrorCode value")
    message: str = Field(..., description="Human-readable error message")
    details: Optional[Dict[str, Any]] = Field(None, description="Structured context")
    stack: Optional[str] = Field(None, description="Traceback for unexpected errors")


class RenderJobPayload(BaseModel):
    """One job occurrence as delivered by the queue."""

    job_id: str = Field(..., description="Job UUID")
    timeline: Timeline
    callback_url: Optional[str] = Field(None, description="Webhook for the terminal outcome")


class JobStatusResponse(BaseModel):
    """Status of a job as seen by observers."""

    id: str
    status: JobStatus
    output_url: Optional[str] = None
    error: Optional[JobError] = None
    attempts: int = 0
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None

    model_config = {"from_attributes": True}
