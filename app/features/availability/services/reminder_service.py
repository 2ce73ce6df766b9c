"""
Reminder delivery for members who have not responded yet.
"""

from datetime import UTC, datetime, timedelta
from typing import Any

from app.config import settings
from app.db.helpers import DatabaseError
from app.features.availability.domain.models import AvailabilityResponse, Member, PromptContext, to_utc
from app.features.availability.repository.member_repository import MemberRepository
from app.features.availability.repository.prompt_repository import PromptRepository
from app.features.availability.repository.response_repository import ResponseRepository
from app.features.availability.services.messages import build_reminder_email
from app.infrastructure.observability.logging import get_logger
from app.services.magic_token_service import MagicTokenError, magic_token_service
from app.services.notification_service import notification_service

logger = get_logger(__name__)


class ReminderService:
    def __init__(self, max_reminders: int | None = None, cooldown_hours: float | None = None):
        self.max_reminders = settings.MAX_REMINDERS_PER_USER if max_reminders is None else max_reminders
        if cooldown_hours is None:
            cooldown_hours = settings.REMINDER_COOLDOWN_HOURS
        self.cooldown = timedelta(hours=cooldown_hours)

    def _skip_reason(
        self, member: Member, response: AvailabilityResponse | None, now: datetime
    ) -> str | None:
        if not member.email or not member.email_notifications_enabled:
            return "notifications_disabled"
        if response is None:
            return None
        if response.submitted:
            return "already_responded"
        if response.reminder_count >= self.max_reminders:
            return "reminder_limit"
        if response.last_reminded_at and now - to_utc(response.last_reminded_at) < self.cooldown:
            return "cooldown"
        return None

    async def _remind(self, context: PromptContext, member: Member, reminder_type: str) -> bool:
        """Issue a fresh link, email it, and stamp the reminder once delivered."""
        prompt_id = context.prompt.id
        issued = await magic_token_service.generate_token(
            member.user_id,
            prompt_id,
            name=member.username,
            expiry_hours=settings.REMINDER_TOKEN_EXPIRY_HOURS,
        )
        delivery = await notification_service.send(
            build_reminder_email(context, member, issued.token, reminder_type)
        )
        if not delivery.get("success"):
            return False

        await ResponseRepository.record_reminder(prompt_id, member.user_id)
        return True

    async def send_prompt_reminder(
        self, prompt_id: str, reminder_type: str, *, now: datetime | None = None
    ) -> dict[str, Any]:
        """
        Email a fresh magic link to every member still missing a response.

        Returns:
            {"prompt_id", "reminder_type", "reminders_sent", "skipped", "failed"}
        """
        now = to_utc(now or datetime.now(UTC))
        summary: dict[str, Any] = {
            "prompt_id": prompt_id,
            "reminder_type": reminder_type,
            "reminders_sent": 0,
            "skipped": 0,
            "failed": 0,
        }

        context = await PromptRepository.get_prompt_context(prompt_id)
        if context is None:
            return {**summary, "reason": "prompt_not_found"}
        if context.prompt.status != "active":
            logger.info(
                "Reminder skipped, prompt not active",
                prompt_id=prompt_id,
                status=context.prompt.status,
            )
            return {**summary, "reason": "prompt_not_active"}

        members = await MemberRepository.get_group_members(context.prompt.group_id)
        responses = await ResponseRepository.list_responses(prompt_id)

        for member in members:
            reason = self._skip_reason(member, responses.get(member.user_id), now)
            if reason:
                summary["skipped"] += 1
                logger.debug("Reminder skipped", prompt_id=prompt_id, user_id=member.user_id, reason=reason)
                continue

            try:
                sent = await self._remind(context, member, reminder_type)
            except (DatabaseError, MagicTokenError) as e:
                logger.error(
                    "Reminder failed for member",
                    prompt_id=prompt_id,
                    user_id=member.user_id,
                    error=str(e),
                )
                sent = False
            summary["reminders_sent" if sent else "failed"] += 1

        logger.info(
            "Prompt reminders processed",
            prompt_id=prompt_id,
            reminder_type=reminder_type,
            sent=summary["reminders_sent"],
            skipped=summary["skipped"],
            failed=summary["failed"],
        )
        return summary


reminder_service = ReminderService()
