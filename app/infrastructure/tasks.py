"""
Detached background tasks for side effects that must never fail the caller.

Analytics writes, confirmation emails, hold cleanup and suggestion refreshes
run through ``spawn``. A failure is only visible in the logs.
"""

import asyncio
from collections.abc import Coroutine
from typing import Any

from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

# Strong references so the event loop does not garbage-collect running tasks.
_background_tasks: set[asyncio.Task] = set()


async def _run_logged(coro: Coroutine[Any, Any, Any], name: str) -> Any:
    try:
        return await coro
    except asyncio.CancelledError:
        logger.info("Background task cancelled", task=name)
        raise
    except Exception as e:
        logger.exception("Background task failed", task=name, error=str(e))
        return None


def spawn(coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task:
    """Schedule ``coro`` on the running loop without awaiting it."""
    task = asyncio.create_task(_run_logged(coro, name), name=name)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


async def drain(timeout: float = 10.0) -> None:
    """Wait for in-flight background tasks, e.g. during shutdown."""
    if not _background_tasks:
        return

    pending = list(_background_tasks)
    done, still_running = await asyncio.wait(pending, timeout=timeout)
    if still_running:
        logger.warning(
            "Background tasks still running after drain timeout",
            remaining=len(still_running),
            timeout=timeout,
        )
    else:
        logger.debug("Background tasks drained", completed=len(done))
