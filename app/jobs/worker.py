"""
Background worker runner.

Runs the arq worker that executes reminder and deadline jobs queued by the
API process. Start with ``python -m app.jobs.worker``.
"""

from typing import Any

from arq.worker import func, run_worker

from app.config import settings
from app.db.pool import db_pool
from app.features.availability.jobs import enforce_prompt_deadline, send_prompt_reminder
from app.features.availability.services.scheduler import DEADLINE_JOB, REMINDER_JOB
from app.infrastructure.observability.logging import get_logger, setup_logging
from app.infrastructure.tasks import drain
from app.services.calendar.google_client import google_calendar_service
from app.services.infrastructure.job_queue import get_redis_settings, job_queue

logger = get_logger(__name__)


async def startup(ctx: dict[str, Any]) -> None:
    setup_logging(settings.LOG_LEVEL, process="worker")
    await db_pool.initialize()
    # Reuse the worker's redis connection for any jobs handlers enqueue.
    await job_queue.initialize(ctx["redis"])
    logger.info("Worker started", environment=settings.environment)


async def shutdown(ctx: dict[str, Any]) -> None:
    await drain()
    await job_queue.close()
    await google_calendar_service.close()
    await db_pool.close()
    logger.info("Worker stopped")


class WorkerSettings:
    """arq settings; job names match the ones the scheduler enqueues."""

    functions = [
        func(enforce_prompt_deadline, name=DEADLINE_JOB),
        func(send_prompt_reminder, name=REMINDER_JOB),
    ]
    redis_settings = get_redis_settings()
    on_startup = startup
    on_shutdown = shutdown

    max_jobs = settings.WORKER_MAX_JOBS
    job_timeout = settings.WORKER_JOB_TIMEOUT
    keep_result = settings.WORKER_KEEP_RESULT
    max_tries = 3


def main() -> None:
    """CLI entrypoint."""
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
