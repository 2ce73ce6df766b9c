"""
Retry policy shared by the availability job handlers.

arq only re-queues a job that raises ``arq.Retry``; any other exception
marks it failed for good. Transient failures are turned into a deferred
retry, backing off linearly with the attempt number.
"""

from typing import Any

from arq import Retry

RETRY_DELAY_SECONDS = 30


def retry_delay(ctx: dict[str, Any]) -> int:
    return (ctx.get("job_try") or 1) * RETRY_DELAY_SECONDS


def is_recoverable(error: Exception) -> bool:
    """Errors from our own layers say so; anything else is treated as a bug."""
    return bool(getattr(error, "recoverable", False))


def retry_later(ctx: dict[str, Any]) -> Retry:
    return Retry(defer=retry_delay(ctx))
