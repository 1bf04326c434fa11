"""
Job State Machine

Authoritative lifecycle of a render job, persisted through SQLAlchemy:

    QUEUED -> PROCESSING -> COMPLETED
                        +-> FAILED

- PROCESSING -> PROCESSING happens at the start of every retry
- COMPLETED and FAILED are terminal; no write ever leaves them
- Terminal writes are conditioned on the current status in the UPDATE itself,
  so completed_at is set at most once even if the queue redelivers a job
- attempts is incremented atomically in SQL (attempts = attempts + 1)

Intermediate failures never touch error or completed_at: a status query on a
job that is being retried reports PROCESSING. Per-attempt outcomes go to the
job_attempts table instead.
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, Generator, List, Optional, Set

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.errors import DatabaseError, JobNotFound, JobStateError
from ..db import get_session_factory
from ..models.job import Job, JobAttempt
from ..schemas.job import JobError, JobStatus, JobStatusResponse
from ..schemas.timeline import Timeline

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: Dict[JobStatus, Set[JobStatus]] = {
    JobStatus.QUEUED: {JobStatus.PROCESSING},
    JobStatus.PROCESSING: {JobStatus.PROCESSING, JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}

TERMINAL_STATUSES = [s.value for s in JobStatus if s.is_terminal]

ATTEMPT_SUCCEEDED = "succeeded"
ATTEMPT_FAILED = "failed"


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    """Check whether the state machine allows current -> target."""
    return target in ALLOWED_TRANSITIONS[current]


class JobStore:
    """
    Reads and writes job rows on behalf of the orchestrator.

    Every method opens its own short session; no state is kept between calls,
    so one store can be shared by all job slots of a worker.
    """

    def __init__(self, session_factory: Optional[Callable[[], Session]] = None):
        self._session_factory = session_factory or get_session_factory()

    @contextmanager
    def _session(self) -> Generator[Session, None, None]:
        session = self._session_factory()
        try:
            yield session
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Database error: {e}")
            raise DatabaseError(f"Database error: {e}") from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, job_id: str) -> Job:
        """
        Load a job row.

        Raises:
            JobNotFound: If no job has this id
        """
        with self._session() as session:
            job = session.get(Job, job_id)
            if job is None:
                raise JobNotFound(f"Job with ID {job_id} not found", {"job_id": job_id})
            session.expunge(job)
            return job

    def status(self, job_id: str) -> JobStatusResponse:
        """Status view of a job as exposed to observers."""
        return JobStatusResponse.model_validate(self.get(job_id))

    def attempt_history(self, job_id: str) -> List[JobAttempt]:
        """All recorded attempts of a job, oldest first."""
        with self._session() as session:
            attempts = session.scalars(
                select(JobAttempt)
                .where(JobAttempt.job_id == job_id)
                .order_by(JobAttempt.attempt_number)
            ).all()
            for attempt in attempts:
                session.expunge(attempt)
            return list(attempts)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(self, timeline: Timeline, callback_url: Optional[str] = None) -> Job:
        """Insert a new QUEUED job with attempts=0."""
        with self._session() as session:
            job = Job(
                timeline=timeline.to_payload(),
                callback_url=callback_url,
                status=JobStatus.QUEUED.value,
                attempts=0,
            )
            session.add(job)
            session.commit()
            session.refresh(job)
            session.expunge(job)

        logger.info(f"Created job: {job.id}")
        return job

    def mark_processing(self, job_id: str) -> None:
        self._transition(job_id, JobStatus.PROCESSING)
        logger.info(f"Job {job_id} is now processing")

    def mark_completed(self, job_id: str, output_url: str) -> None:
        self._transition(
            job_id,
            JobStatus.COMPLETED,
            output_url=output_url,
            completed_at=datetime.utcnow(),
        )
        logger.info(f"Job {job_id} completed")

    def mark_failed(self, job_id: str, error: JobError) -> None:
        self._transition(
            job_id,
            JobStatus.FAILED,
            error=error.model_dump(exclude_none=True),
            completed_at=datetime.utcnow(),
        )
        logger.info(f"Job {job_id} failed with {error.code}")

    def increment_attempts(self, job_id: str) -> int:
        """
        Atomically add one failed attempt to a non-terminal job.

        Returns:
            The new attempts count
        """
        with self._session() as session:
            result = session.execute(
                update(Job)
                .where(Job.id == job_id, Job.status.notin_(TERMINAL_STATUSES))
                .values(attempts=Job.attempts + 1, updated_at=datetime.utcnow())
            )
            if result.rowcount == 0:
                self._raise_for_missed_write(session, job_id, "increment attempts of")
            session.commit()
            return session.scalar(select(Job.attempts).where(Job.id == job_id))

    def record_attempt(
        self,
        job_id: str,
        attempt_number: int,
        outcome: str,
        started_at: datetime,
        error: Optional[JobError] = None,
    ) -> None:
        """Append one attempt outcome to the job's history."""
        with self._session() as session:
            session.add(
                JobAttempt(
                    job_id=job_id,
                    attempt_number=attempt_number,
                    outcome=outcome,
                    error=error.model_dump(exclude_none=True) if error else None,
                    started_at=started_at,
                    finished_at=datetime.utcnow(),
                )
            )
            session.commit()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _transition(self, job_id: str, target: JobStatus, **values: Any) -> None:
        """
        Move a job to target, conditioned on its current status.

        The allowed source states are part of the UPDATE's WHERE clause, so
        a concurrent or repeated write can never leave a terminal state.
        """
        sources = [s.value for s, targets in ALLOWED_TRANSITIONS.items() if target in targets]

        with self._session() as session:
            result = session.execute(
                update(Job)
                .where(Job.id == job_id, Job.status.in_(sources))
                .values(status=target.value, updated_at=datetime.utcnow(), **values)
            )
            if result.rowcount == 0:
                self._raise_for_missed_write(session, job_id, f"move to {target.value}")
            session.commit()

    @staticmethod
    def _raise_for_missed_write(session: Session, job_id: str, action: str) -> None:
        current = session.scalar(select(Job.status).where(Job.id == job_id))
        if current is None:
            raise JobNotFound(f"Job with ID {job_id} not found", {"job_id": job_id})
        raise JobStateError(
            f"Cannot {action} job {job_id} in status {current}",
            {"job_id": job_id, "status": current},
        )
