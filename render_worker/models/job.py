"""
Job models for the render worker.

Job holds the authoritative lifecycle of one render; JobAttempt is an
append-only log of per-attempt outcomes kept alongside the single terminal
error stored on the job row.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
import uuid

from sqlalchemy import JSON, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..db import Base
from ..schemas.job import JobStatus


def generate_uuid() -> str:
    """Generate a new UUID string."""
    return str(uuid.uuid4())


class Job(Base):
    """
    Job model representing one timeline render.

    Created QUEUED by the submission path with attempts=0. Only the render
    orchestrator moves it through PROCESSING to COMPLETED or FAILED.
    """

    __tablename__ = "jobs"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=generate_uuid,
        doc="UUID primary key"
    )

    # Input snapshot
    timeline: Mapped[Dict[str, Any]] = mapped_column(
        JSON,
        nullable=False,
        doc="Timeline as submitted (immutable)"
    )
    callback_url: Mapped[Optional[str]] = mapped_column(
        String(2048),
        nullable=True,
        doc="Webhook notified on the terminal outcome"
    )

    # Status tracking
    status: Mapped[str] = mapped_column(
        String(20),
        default=JobStatus.QUEUED.value,
        nullable=False,
        index=True,
        doc="Status: queued, processing, completed, failed"
    )
    attempts: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
        doc="Number of failed attempts before the current one"
    )

    # Output
    output_url: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        doc="Signed URL of the rendered file"
    )

    # Error handling
    error: Mapped[Optional[Dict[str, Any]]] = mapped_column(
        JSON,
        nullable=True,
        doc="Normalized JobError, set only when FAILED"
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=datetime.utcnow,
        nullable=False,
        index=True,
        doc="Job creation timestamp"
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
        doc="Last state change"
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime,
        nullable=True,
        doc="When the job reached COMPLETED or FAILED"
    )

    # Relationships
    attempt_log: Mapped[List["JobAttempt"]] = relationship(
        "JobAttempt",
        back_populates="job",
        order_by="JobAttempt.attempt_number",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<Job(id={self.id!r}, status={self.status!r}, attempts={self.attempts})>"


class JobAttempt(Base):
    """Outcome of one processing attempt of a job."""

    __tablename__ = "job_attempts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    job_id: Mapped[str] = mapped_column(
        ForeignKey("jobs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False, doc="1-based")
    outcome: Mapped[str] = mapped_column(String(20), nullable=False, doc="succeeded or failed")
    error: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    finished_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    job: Mapped["Job"] = relationship("Job", back_populates="attempt_log")

    def __repr__(self) -> str:
        return f"<JobAttempt(job_id={self.job_id!r}, attempt={self.attempt_number}, outcome={self.outcome!r})>"
