"""
Render Worker Entry Point

Starts the RQ workers that render jobs from the render queue, and offers
small operator commands for submitting a timeline and reading job status.

Usage:
    python -m render_worker.main worker
    python -m render_worker.main submit timeline.json --callback-url https://example.com/hook
    python -m render_worker.main status <job_id>

Environment Variables:
    REDIS_URL: Redis connection URL (default: redis://localhost:6379/0)
    DATABASE_URL: Job database URL (default: sqlite:///./render_jobs.db)
    WORKER_CONCURRENCY: Job slots per worker process (default: 2)
    See render_worker/core/config.py for the full list.
"""

import argparse
import json
import logging
import sys
from typing import List, Optional

from redis import Redis
from rq import Worker
from rq.worker_pool import WorkerPool

from .core.config import get_settings
from .core.errors import RenderError
from .db import create_all_tables, get_engine
from .queues import get_queue_status, get_redis_connection, get_render_queue, submit_render_job
from .tasks.ffmpeg_runner import ffmpeg_version
from .tasks.job_state import JobStore

logger = logging.getLogger("render_worker.worker")


def configure_logging() -> None:
    logging.basicConfig(
        level=get_settings().log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


def create_worker(connection: Redis) -> Worker:
    """
    Create a single RQ worker on the render queue.

    Args:
        connection: Redis connection instance

    Returns:
        Worker: Configured RQ worker instance
    """
    return Worker(
        queues=[get_render_queue(connection)],
        connection=connection,
    )


def create_worker_pool(connection: Redis, num_workers: int) -> WorkerPool:
    """Create a pool of num_workers RQ workers on the render queue."""
    return WorkerPool(
        queues=[get_render_queue(connection)],
        connection=connection,
        num_workers=num_workers,
    )


def start_worker() -> None:
    """
    Initialize Redis and the database, then run the workers.

    Runs one worker per job slot (settings.worker_concurrency). Every worker
    also runs the RQ scheduler so delayed retries get re-enqueued.

    This function blocks and runs until the worker is terminated.
    """
    settings = get_settings()
    logger.info("Starting render worker...")

    try:
        connection = get_redis_connection()

        # Verify Redis connection
        connection.ping()
        logger.info("Successfully connected to Redis")

    except Exception as e:
        logger.error(f"Failed to connect to Redis: {e}")
        sys.exit(1)

    create_all_tables()
    # Forked work horses must open their own connections
    get_engine().dispose()

    version = ffmpeg_version(settings.ffmpeg_binary)
    if version is None:
        logger.warning(f"{settings.ffmpeg_binary} not found; every render will fail")
    else:
        logger.info(f"Using FFmpeg {version}")

    logger.info(
        f"Listening on queue {settings.queue_name} "
        f"with {settings.worker_concurrency} job slot(s)"
    )

    try:
        if settings.worker_concurrency > 1:
            pool = create_worker_pool(connection, settings.worker_concurrency)
            pool.start(logging_level=settings.log_level.upper())
        else:
            worker = create_worker(connection)
            worker.work(with_scheduler=True, logging_level=settings.log_level.upper())
    except KeyboardInterrupt:
        logger.info("Worker shutdown requested")
    except Exception as e:
        logger.error(f"Worker error: {e}")
        sys.exit(1)

    logger.info("Worker stopped")


def submit(timeline_path: str, callback_url: Optional[str] = None) -> int:
    """Submit a timeline JSON file; prints the new job id."""
    with open(timeline_path, "r", encoding="utf-8") as f:
        data = json.load(f)

    create_all_tables()
    try:
        job = submit_render_job(data, callback_url)
    except RenderError as e:
        logger.error(f"Submission rejected: {e.code.value}: {e.message}")
        return 1

    print(job.id)
    return 0


def status(job_id: str) -> int:
    """Print the status of a job as JSON."""
    try:
        job_status = JobStore().status(job_id)
    except RenderError as e:
        logger.error(f"{e.code.value}: {e.message}")
        return 1

    print(job_status.model_dump_json(indent=2, exclude_none=True))
    return 0


def queue_status() -> int:
    print(json.dumps(get_queue_status(), indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="render-worker",
        description="Render worker and job tools",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("worker", help="Run the render workers")

    submit_parser = subparsers.add_parser("submit", help="Submit a timeline JSON file")
    submit_parser.add_argument("timeline", help="Path to a timeline JSON file")
    submit_parser.add_argument("--callback-url", default=None, help="Webhook for the outcome")

    status_parser = subparsers.add_parser("status", help="Show the status of a job")
    status_parser.add_argument("job_id", help="Job UUID")

    subparsers.add_parser("queue", help="Show render queue counts")

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point for the worker module."""
    args = build_parser().parse_args(argv)
    configure_logging()

    if args.command == "worker":
        start_worker()
        return

    if args.command == "submit":
        code = submit(args.timeline, args.callback_url)
    elif args.command == "status":
        code = status(args.job_id)
    else:
        code = queue_status()
    sys.exit(code)


if __name__ == "__main__":
    main()
