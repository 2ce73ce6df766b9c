"""
Deadline enforcement job.

Queued by the prompt scheduler with id ``deadline-{prompt_id}`` and run by
the arq worker at the prompt's deadline.
"""

from typing import Any

from app.features.availability.services.deadline_service import deadline_service
from app.infrastructure.observability.logging import get_logger, job_context

from .retry import is_recoverable, retry_delay, retry_later

logger = get_logger(__name__)


async def enforce_prompt_deadline(ctx: dict[str, Any], prompt_id: str) -> dict[str, Any]:
    """
    Convert the winning suggestion or close the prompt.

    Transient failures, and a winning row that vanished under a recompute,
    are retried through ``arq.Retry``. Anything else is logged and re-raised
    so arq marks the job failed; the prompt is left as it was.
    """
    with job_context(ctx, prompt_id=prompt_id):
        logger.info("Deadline job started")
        try:
            result = await deadline_service.enforce_deadline(prompt_id)
        except Exception as e:
            if is_recoverable(e):
                logger.warning("Deadline job will retry", error=str(e), defer_seconds=retry_delay(ctx))
                raise retry_later(ctx) from e
            logger.exception("Deadline job failed", error=str(e))
            raise

        if result["action"] == "conversion_failed":
            logger.warning(
                "Deadline job will retry",
                suggestion_id=result.get("suggestion_id"),
                defer_seconds=retry_delay(ctx),
            )
            raise retry_later(ctx)

        logger.info("Deadline job finished", action=result["action"], reason=result.get("reason"))
        return result
