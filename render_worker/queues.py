"""
Render Queue

Single RQ queue (default "render-queue") carrying one message per job:

    render_job(job_id, timeline, callback_url)

The RQ job id is the job's own UUID, so a job is never enqueued twice.
Failed occurrences are retried by RQ with exponential backoff; the delays
come from Settings.backoff_intervals and need a worker running the RQ
scheduler.
"""

import logging
from typing import Any, Dict, Optional, Union

from redis import Redis
from redis.exceptions import RedisError
from rq import Queue, Retry
from rq.job import Job as RQJob
from rq.registry import (
    FailedJobRegistry,
    FinishedJobRegistry,
    ScheduledJobRegistry,
    StartedJobRegistry,
)

from .core.config import Settings, get_settings
from .core.errors import QueueError
from .models.job import Job
from .schemas.job import RenderJobPayload
from .schemas.timeline import MAX_CLIPS, Timeline, validate_timeline
from .tasks.job_state import JobStore
from .tasks.render import render_job

logger = logging.getLogger(__name__)

# Headroom for queue bookkeeping on top of fetch and render time
QUEUE_TIMEOUT_MARGIN_SECONDS = 60

# Redis connection singleton
_redis_connection: Optional[Redis] = None


def get_redis_connection() -> Redis:
    """
    Get or create the Redis connection from settings.redis_url.

    Returns:
        Redis: A Redis connection instance
    """
    global _redis_connection

    if _redis_connection is None:
        _redis_connection = Redis.from_url(get_settings().redis_url, decode_responses=False)

    return _redis_connection


def get_render_queue(connection: Optional[Redis] = None) -> Queue:
    """Get the render queue, on the shared connection unless one is given."""
    return Queue(get_settings().queue_name, connection=connection or get_redis_connection())


def queue_job_timeout(settings: Settings) -> int:
    """
    RQ hard limit for one job occurrence, in seconds.

    Must outlast the worst case of the task itself (every image fetch timing
    out, then ffmpeg running to its own limit), so the supervisor's timeout
    and error bookkeeping always run before RQ kills the work horse.
    """
    fetch_budget = int(MAX_CLIPS * settings.image_download_timeout_seconds)
    return settings.job_timeout_seconds + fetch_budget + QUEUE_TIMEOUT_MARGIN_SECONDS


def enqueue_render_job(payload: RenderJobPayload, queue: Optional[Queue] = None) -> RQJob:
    """
    Enqueue one render job.

    Args:
        payload: Job id, timeline and optional callback URL
        queue: Queue to use (defaults to the render queue)

    Returns:
        RQJob: The enqueued RQ job (id == payload.job_id)

    Raises:
        QueueError: If Redis cannot be reached
    """
    settings = get_settings()
    queue = queue or get_render_queue()

    retry = None
    if settings.max_attempts > 1:
        retry = Retry(max=settings.max_attempts - 1, interval=settings.backoff_intervals)

    try:
        rq_job = queue.enqueue(
            render_job,
            payload.job_id,
            payload.timeline.to_payload(),
            payload.callback_url,
            job_id=payload.job_id,
            job_timeout=queue_job_timeout(settings),
            retry=retry,
            result_ttl=settings.result_ttl_seconds,
            failure_ttl=settings.failure_ttl_seconds,
        )
    except RedisError as e:
        logger.error(f"Failed to enqueue job {payload.job_id}: {e}")
        raise QueueError(
            f"Failed to enqueue job: {e}",
            {"job_id": payload.job_id},
        ) from e

    logger.info(f"Enqueued job {payload.job_id} on {queue.name}")
    return rq_job


def submit_render_job(
    timeline: Union[Timeline, Dict[str, Any]],
    callback_url: Optional[str] = None,
    store: Optional[JobStore] = None,
    queue: Optional[Queue] = None,
) -> Job:
    """
    Validate a timeline, create its QUEUED job row and enqueue it.

    Args:
        timeline: Validated Timeline or raw timeline dict
        callback_url: Optional webhook for the terminal outcome
        store: JobStore to use (defaults to a new one)
        queue: Queue to use (defaults to the render queue)

    Returns:
        Job: The created job row

    Raises:
        InvalidTimeline, InvalidClip, TooManyClips, TimelineTooLong: On bad input
        QueueError: If the job row was created but could not be enqueued
    """
    if not isinstance(timeline, Timeline):
        timeline = validate_timeline(timeline)
    else:
        # Limits are not part of the model itself
        validate_timeline(timeline.to_payload())

    store = store or JobStore()
    job = store.create(timeline, callback_url)

    enqueue_render_job(
        RenderJobPayload(job_id=job.id, timeline=timeline, callback_url=callback_url),
        queue=queue,
    )
    return job


def get_queue_status(queue: Optional[Queue] = None) -> Dict[str, int]:
    """
    Counts of RQ jobs by queue state.

    Returns:
        dict with waiting, active, delayed, completed and failed counts
    """
    queue = queue or get_render_queue()
    try:
        return {
            "waiting": queue.count,
            "active": StartedJobRegistry(queue=queue).count,
            "delayed": ScheduledJobRegistry(queue=queue).count,
            "completed": FinishedJobRegistry(queue=queue).count,
            "failed": FailedJobRegistry(queue=queue).count,
        }
    except RedisError as e:
        raise QueueError(f"Failed to read queue status: {e}") from e
