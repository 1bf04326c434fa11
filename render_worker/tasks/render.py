"""
Render Task for the Render Worker

Processes one dequeued job occurrence:
1. Moves the job to PROCESSING
2. Compiles the timeline (downloads images, builds the FFmpeg command)
3. Runs FFmpeg with timeout enforcement
4. Uploads the output and obtains a signed URL
5. Moves the job to COMPLETED
6. Sends the completion webhook, if any
7. Always removes the job workspace

Retry policy:
- Every error is normalized into a JobError
- Before the final attempt, only `attempts` is incremented and the error is
  re-raised so RQ schedules a retry with exponential backoff
- On the final attempt the job moves to FAILED and the failure webhook is sent

Intermediate errors never reach the job row (status stays PROCESSING); they
are kept in the job_attempts history.
"""

import logging
import traceback
from datetime import datetime
from functools import lru_cache
from typing import Any, Callable, Dict, Optional

import httpx
from rq import get_current_job
from rq.job import Job as RQJob

from ..core.config import Settings, get_settings
from ..core.errors import (
    DatabaseError,
    ErrorCode,
    FFmpegError,
    FFmpegTimeout,
    RenderError,
)
from ..core.storage import ObjectStorage, get_object_storage
from ..schemas.job import JobError, JobStatus, RenderJobPayload
from ..schemas.timeline import Timeline
from .ffmpeg_runner import FFmpegCommand, FFmpegResult, run_ffmpeg
from .job_state import ATTEMPT_FAILED, ATTEMPT_SUCCEEDED, JobStore
from .notifications import WebhookNotifier, completed_payload, failed_payload
from .timeline_compiler import TimelineCompiler

logger = logging.getLogger(__name__)


# ============================================================================
# Error Normalization
# ============================================================================


def normalize_error(error: BaseException) -> JobError:
    """
    Convert any exception raised by a pipeline stage into a JobError.

    - RenderError: its own code, message and details
    - httpx.HTTPError: an image fetch that escaped the compiler
    - anything else: UNKNOWN_ERROR with the traceback
    """
    if isinstance(error, RenderError):
        return JobError(
            code=error.code.value,
            message=error.message,
            details=error.details,
        )

    if isinstance(error, httpx.HTTPError):
        url = None
        try:
            url = str(error.request.url)
        except RuntimeError:
            pass
        return JobError(
            code=ErrorCode.IMAGE_DOWNLOAD_FAILED.value,
            message=f"Failed to download image: {error}",
            details={"url": url},
        )

    return JobError(
        code=ErrorCode.UNKNOWN_ERROR.value,
        message=str(error) or "An unknown error occurred",
        stack="".join(traceback.format_exception(type(error), error, error.__traceback__)),
    )


def ffmpeg_failure(result: FFmpegResult) -> FFmpegError:
    """Classify a failed FFmpegResult as FFmpegTimeout or FFmpegError."""
    details = {"failure": result.failure.value if result.failure else None}
    if result.return_code is not None:
        details["return_code"] = result.return_code
    if result.timed_out:
        return FFmpegTimeout(result.error or "FFmpeg timed out", details)
    return FFmpegError(result.error or "FFmpeg failed", details)


# ============================================================================
# Orchestrator
# ============================================================================


class RenderProcessor:
    """
    Drives one job occurrence through compile -> run -> upload -> notify.

    All collaborators are injected; the processor itself holds no per-job
    state, so one instance can serve every job slot of a worker.
    """

    def __init__(
        self,
        jobs: JobStore,
        compiler: TimelineCompiler,
        storage: ObjectStorage,
        notifier: WebhookNotifier,
        settings: Optional[Settings] = None,
        runner: Callable[[FFmpegCommand, float], FFmpegResult] = run_ffmpeg,
    ):
        self.jobs = jobs
        self.compiler = compiler
        self.storage = storage
        self.notifier = notifier
        self.settings = settings or get_settings()
        self.runner = runner

    @property
    def max_attempts(self) -> int:
        return self.settings.max_attempts

    def process(self, payload: RenderJobPayload, attempt: int = 0) -> Optional[str]:
        """
        Process one job occurrence.

        Args:
            payload: Job id, timeline and optional callback URL
            attempt: Number of earlier attempts of this job (0 for the first)

        Returns:
            The output URL, or None if the job was already terminal

        Raises:
            JobNotFound: If the job row does not exist
            RenderError or any other exception: On failure, after the retry
                bookkeeping is done, so the queue can retry or record it
        """
        job_id = payload.job_id
        attempt_number = attempt + 1
        logger.info(f"Processing job {job_id} (attempt {attempt_number}/{self.max_attempts})")

        job = self.jobs.get(job_id)
        if JobStatus(job.status).is_terminal:
            # Redelivery of a finished job: its outcome is already final
            logger.warning(f"Job {job_id} is already {job.status}, skipping")
            return None

        started_at = datetime.utcnow()
        try:
            output_url = self._run_pipeline(payload)
        except Exception as e:
            self._handle_job_error(payload, attempt, started_at, e)
            raise
        finally:
            self.compiler.cleanup(self.compiler.work_dir_for(job_id))

        if payload.callback_url:
            self.notifier.notify(payload.callback_url, completed_payload(job_id, output_url))

        self._record_attempt(job_id, attempt_number, ATTEMPT_SUCCEEDED, started_at)

        logger.info(f"Job {job_id} completed successfully")
        return output_url

    def _run_pipeline(self, payload: RenderJobPayload) -> str:
        job_id = payload.job_id

        self.jobs.mark_processing(job_id)

        logger.info(f"Compiling timeline for job {job_id}")
        compilation = self.compiler.compile(job_id, payload.timeline)

        logger.info(f"Running FFmpeg for job {job_id}")
        result = self.runner(compilation.command, self.settings.job_timeout_seconds)
        if not result.success:
            raise ffmpeg_failure(result)

        logger.info(f"Uploading output for job {job_id}")
        _, url = self.storage.upload_video(job_id, result.output_path)

        self.jobs.mark_completed(job_id, url)
        return url

    def _record_attempt(
        self,
        job_id: str,
        attempt_number: int,
        outcome: str,
        started_at: datetime,
        error: Optional[JobError] = None,
    ) -> None:
        """Append to the attempt history; a failed write never changes the job outcome."""
        try:
            self.jobs.record_attempt(job_id, attempt_number, outcome, started_at, error)
        except DatabaseError as e:
            logger.warning(f"Failed to record attempt {attempt_number} of job {job_id}: {e}")

    def _handle_job_error(
        self,
        payload: RenderJobPayload,
        attempt: int,
        started_at: datetime,
        error: Exception,
    ) -> None:
        job_id = payload.job_id
        is_last_attempt = attempt >= self.max_attempts - 1
        job_error = normalize_error(error)

        logger.error(
            f"Job {job_id} failed (attempt {attempt + 1}/{self.max_attempts}): "
            f"{job_error.code}: {job_error.message}",
            exc_info=not isinstance(error, RenderError),
        )

        self._record_attempt(job_id, attempt + 1, ATTEMPT_FAILED, started_at, job_error)

        if not is_last_attempt:
            attempts = self.jobs.increment_attempts(job_id)
            logger.info(f"Job {job_id} will be retried ({attempts} failed attempts so far)")
            return

        self.jobs.mark_failed(job_id, job_error)

        if payload.callback_url:
            self.notifier.notify(payload.callback_url, failed_payload(job_id, job_error))


# ============================================================================
# RQ Entry Point
# ============================================================================


def attempt_from_rq_job(rq_job: Optional[RQJob], max_attempts: int) -> int:
    """
    Number of earlier attempts of the current RQ job.

    RQ counts down retries_left each time it schedules a retry. Jobs run
    outside RQ, or enqueued without a retry policy, are treated as being on
    their final attempt.
    """
    if rq_job is None or rq_job.retries_left is None:
        return max_attempts - 1
    return max(0, (max_attempts - 1) - rq_job.retries_left)


@lru_cache(maxsize=1)
def get_render_processor() -> RenderProcessor:
    """Build the processor once per worker process."""
    settings = get_settings()
    return RenderProcessor(
        jobs=JobStore(),
        compiler=TimelineCompiler(settings),
        storage=get_object_storage(),
        notifier=WebhookNotifier(timeout_seconds=settings.webhook_timeout_seconds),
        settings=settings,
    )


def render_job(
    job_id: str,
    timeline: Dict[str, Any],
    callback_url: Optional[str] = None,
) -> Dict[str, Any]:
    """
    RQ task to render one job.

    Args:
        job_id: Job UUID (also the RQ job id)
        timeline: Timeline as stored in the queue payload
        callback_url: Optional webhook for the terminal outcome

    Returns:
        dict with job_id and output_url

    Raises:
        Any pipeline error, after retry bookkeeping, so RQ retries or fails the job
    """
    settings = get_settings()
    attempt = attempt_from_rq_job(get_current_job(), settings.max_attempts)

    payload = RenderJobPayload(
        job_id=job_id,
        timeline=Timeline.model_validate(timeline),
        callback_url=callback_url,
    )
    output_url = get_render_processor().process(payload, attempt=attempt)

    return {"job_id": job_id, "output_url": output_url}
