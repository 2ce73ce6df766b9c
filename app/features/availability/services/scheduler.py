"""
Reminder and deadline job scheduling for prompts.

Job ids are derived from the prompt id and the job's purpose, so scheduling
the same prompt twice never queues a second copy and cancellation needs no
stored state. Delays are computed from absolute instants.
"""

from datetime import UTC, datetime
from typing import Any

from app.config import settings
from app.features.availability.domain.models import Prompt, milliseconds_between
from app.infrastructure.observability.logging import get_logger
from app.services.infrastructure.job_queue import JobQueue, job_queue

logger = get_logger(__name__)

REMINDER_JOB = "send_prompt_reminder"
DEADLINE_JOB = "enforce_prompt_deadline"

# (reminder_type, job id prefix, fraction of the window elapsed)
REMINDER_MILESTONES: tuple[tuple[str, str, float], ...] = (
    ("50_percent", "reminder-50", 0.5),
    ("90_percent", "reminder-90", 0.9),
)


def reminder_job_id(prompt_id: str, prefix: str) -> str:
    return f"{prefix}-{prompt_id}"


def deadline_job_id(prompt_id: str) -> str:
    return f"deadline-{prompt_id}"


def all_job_ids(prompt_id: str) -> list[str]:
    return [reminder_job_id(prompt_id, prefix) for _, prefix, _ in REMINDER_MILESTONES] + [
        deadline_job_id(prompt_id)
    ]


def plan_reminder_delays(window_ms: int, min_delay_ms: int) -> list[tuple[str, str, int]]:
    """Reminder (type, prefix, delay_ms) at each milestone; too-early ones are dropped."""
    planned = []
    for reminder_type, prefix, fraction in REMINDER_MILESTONES:
        delay_ms = int(window_ms * fraction)
        if delay_ms >= min_delay_ms:
            planned.append((reminder_type, prefix, delay_ms))
    return planned


class PromptJobScheduler:
    """Schedules and cancels the three delayed jobs every active prompt has."""

    def __init__(self, queue: JobQueue | None = None):
        self.queue = queue or job_queue

    @property
    def min_delay_ms(self) -> int:
        return settings.REMINDER_MIN_DELAY_SECONDS * 1000

    async def schedule_reminders(self, prompt: Prompt, *, now: datetime | None = None) -> dict[str, Any]:
        """Queue the 50% and 90% reminders for the time remaining until the deadline."""
        window_ms = milliseconds_between(now or datetime.now(UTC), prompt.deadline)

        reminders = []
        for reminder_type, prefix, delay_ms in plan_reminder_delays(window_ms, self.min_delay_ms):
            job_id = reminder_job_id(prompt.id, prefix)
            created = await self.queue.enqueue_deferred(
                REMINDER_JOB, prompt.id, reminder_type, job_id=job_id, delay_ms=delay_ms
            )
            reminders.append(
                {"type": reminder_type, "job_id": job_id, "delay_ms": delay_ms, "created": created}
            )

        if not reminders:
            logger.info(
                "Reminders skipped, window below minimum delay",
                prompt_id=prompt.id,
                window_ms=window_ms,
            )
        return {"scheduled": bool(reminders), "reminders": reminders}

    async def schedule_deadline_job(self, prompt: Prompt, *, now: datetime | None = None) -> dict[str, Any]:
        """Queue deadline enforcement at the deadline instant."""
        delay_ms = milliseconds_between(now or datetime.now(UTC), prompt.deadline)
        job_id = deadline_job_id(prompt.id)

        if delay_ms <= 0:
            logger.warning("Deadline already passed, job not scheduled", prompt_id=prompt.id)
            return {"scheduled": False, "delay_ms": delay_ms, "job_id": job_id, "reason": "deadline_passed"}

        created = await self.queue.enqueue_deferred(
            DEADLINE_JOB, prompt.id, job_id=job_id, delay_ms=delay_ms
        )
        return {"scheduled": True, "delay_ms": delay_ms, "job_id": job_id, "created": created}

    async def schedule_prompt_jobs(self, prompt: Prompt, *, now: datetime | None = None) -> dict[str, Any]:
        now = now or datetime.now(UTC)
        return {
            "reminders": await self.schedule_reminders(prompt, now=now),
            "deadline": await self.schedule_deadline_job(prompt, now=now),
        }

    async def cancel_prompt_jobs(self, prompt_id: str) -> dict[str, int]:
        """Cancel every job for the prompt. Jobs that already started cannot be stopped."""
        cancelled = 0
        for job_id in all_job_ids(prompt_id):
            if await self.queue.cancel(job_id):
                cancelled += 1

        logger.info("Prompt jobs cancelled", prompt_id=prompt_id, cancelled=cancelled)
        return {"cancelled": cancelled}

    async def reschedule_prompt_jobs(self, prompt: Prompt, *, now: datetime | None = None) -> dict[str, Any]:
        """Replace any queued jobs with ones computed from the current deadline."""
        cancelled = await self.cancel_prompt_jobs(prompt.id)
        scheduled = await self.schedule_prompt_jobs(prompt, now=now)
        return {**cancelled, **scheduled}


prompt_job_scheduler = PromptJobScheduler()
