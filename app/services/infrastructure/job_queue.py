# app/services/infrastructure/job_queue.py
"""
Durable delayed jobs on top of arq.

Jobs are keyed by deterministic ids so scheduling is "insert or no-op" and
cancellation is a delete by key.
"""

from datetime import timedelta
from typing import Any
from urllib.parse import urlparse

from arq import create_pool
from arq.connections import ArqRedis, RedisSettings
from arq.constants import default_queue_name, job_key_prefix, result_key_prefix
from redis.exceptions import RedisError

from app.config import settings
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class JobQueueError(Exception):
    """Raised when the job store cannot be reached or refuses an operation."""

    def __init__(self, message: str, operation: str = "unknown", recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


def get_redis_settings(redis_url: str | None = None) -> RedisSettings:
    """Build arq connection settings from REDIS_URL (redis:// or rediss://)."""
    parsed = urlparse(redis_url or settings.REDIS_URL)
    database = 0
    if parsed.path and parsed.path.strip("/").isdigit():
        database = int(parsed.path.strip("/"))

    return RedisSettings(
        host=parsed.hostname or "localhost",
        port=parsed.port or 6379,
        username=parsed.username,
        password=parsed.password,
        database=database,
        ssl=parsed.scheme == "rediss",
        conn_timeout=15,
        conn_retry_delay=1,
    )


class JobQueue:
    """arq pool wrapper shared by the API process and the worker."""

    def __init__(self):
        self.pool: ArqRedis | None = None
        self._initialized = False
        self._owns_pool = False

    async def initialize(self, pool: ArqRedis | None = None) -> None:
        """Open the pool on startup; the worker hands in its own connection."""
        if self._initialized:
            return

        try:
            self._owns_pool = pool is None
            self.pool = pool or await create_pool(get_redis_settings())
            self._initialized = True
            logger.info("Job queue initialized", queue=default_queue_name)
        except (RedisError, OSError) as e:
            logger.error("Failed to initialize job queue", error=str(e))
            raise JobQueueError(f"Job queue initialization failed: {e}", operation="initialize") from e

    async def close(self) -> None:
        if self.pool and self._initialized and self._owns_pool:
            await self.pool.aclose()
            logger.info("Job queue closed")
        self.pool = None
        self._initialized = False

    def _require_pool(self) -> ArqRedis:
        if not self._initialized or self.pool is None:
            raise JobQueueError("Job queue not initialized", operation="pool", recoverable=False)
        return self.pool

    async def enqueue_deferred(
        self, function: str, *args: Any, job_id: str, delay_ms: int, **kwargs: Any
    ) -> bool:
        """
        Enqueue ``function`` to run after ``delay_ms``.

        Returns:
            False when a job with the same id already exists (nothing is written).
        """
        pool = self._require_pool()
        try:
            job = await pool.enqueue_job(
                function,
                *args,
                _job_id=job_id,
                _defer_by=timedelta(milliseconds=delay_ms),
                **kwargs,
            )
        except RedisError as e:
            logger.error("Failed to enqueue job", job_id=job_id, function=function, error=str(e))
            raise JobQueueError(f"Enqueue failed: {e}", operation="enqueue") from e

        if job is None:
            logger.debug("Job already scheduled", job_id=job_id, function=function)
            return False

        logger.info("Job scheduled", job_id=job_id, function=function, delay_ms=delay_ms)
        return True

    async def cancel(self, job_id: str) -> bool:
        """Remove a queued job by id. Returns True if anything was removed."""
        pool = self._require_pool()
        try:
            async with pool.pipeline(transaction=True) as pipe:
                pipe.delete(job_key_prefix + job_id, result_key_prefix + job_id)
                pipe.zrem(default_queue_name, job_id)
                deleted, dequeued = await pipe.execute()
        except RedisError as e:
            logger.error("Failed to cancel job", job_id=job_id, error=str(e))
            raise JobQueueError(f"Cancel failed: {e}", operation="cancel") from e

        cancelled = bool(deleted or dequeued)
        logger.info("Job cancel requested", job_id=job_id, cancelled=cancelled)
        return cancelled

    async def health_check(self) -> dict[str, Any]:
        if not self._initialized or self.pool is None:
            return {"healthy": False, "service": "job_queue", "error": "Not initialized"}
        try:
            await self.pool.ping()
            queued = await self.pool.zcard(default_queue_name)
            return {"healthy": True, "service": "job_queue", "queued_jobs": queued}
        except RedisError as e:
            return {"healthy": False, "service": "job_queue", "error": str(e)}


job_queue = JobQueue()
