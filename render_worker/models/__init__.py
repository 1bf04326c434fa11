"""
SQLAlchemy models for the render worker.

    from render_worker.models import Job, JobAttempt

All models use UUID strings as primary keys for SQLite compatibility.
"""

from .job import Job, JobAttempt

__all__ = [
    "Job",
    "JobAttempt",
]
