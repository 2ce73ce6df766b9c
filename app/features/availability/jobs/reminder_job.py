"""
Reminder job, fired at 50% and 90% of a prompt's response window.
"""

from typing import Any

from app.features.availability.services.reminder_service import reminder_service
from app.infrastructure.observability.logging import get_logger, job_context

from .retry import is_recoverable, retry_delay, retry_later

logger = get_logger(__name__)


async def send_prompt_reminder(ctx: dict[str, Any], prompt_id: str, reminder_type: str) -> dict[str, Any]:
    with job_context(ctx, prompt_id=prompt_id, reminder_type=reminder_type):
        try:
            result = await reminder_service.send_prompt_reminder(prompt_id, reminder_type)
        except Exception as e:
            if is_recoverable(e):
                logger.warning("Reminder job will retry", error=str(e), defer_seconds=retry_delay(ctx))
                raise retry_later(ctx) from e
            logger.exception("Reminder job failed", error=str(e))
            raise

        logger.info(
            "Reminder job finished",
            reminders_sent=result.get("reminders_sent", 0),
            skipped=result.get("skipped", 0),
            failed=result.get("failed", 0),
        )
        return result
