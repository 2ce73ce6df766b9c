"""
Deadline enforcement for availability prompts.

When a prompt's deadline fires the final responses are aggregated once
more. With auto-scheduling on, the best qualifying suggestion is converted;
otherwise the prompt closes. Unexpected errors propagate so the job layer
records them and the prompt stays in its prior state.
"""

from typing import Any

from app.features.availability.domain.models import ADMIN_ROLES
from app.features.availability.repository.member_repository import MemberRepository
from app.features.availability.repository.prompt_repository import PromptRepository
from app.features.availability.repository.suggestion_repository import SuggestionRepository
from app.features.availability.services.conversion_service import suggestion_conversion_service
from app.features.availability.services.messages import build_no_consensus_email
from app.features.availability.services.prompt_service import prompt_service
from app.infrastructure.observability.logging import get_logger
from app.infrastructure.tasks import spawn
from app.services.notification_service import notification_service

logger = get_logger(__name__)


class DeadlineService:
    async def enforce_deadline(self, prompt_id: str) -> dict[str, Any]:
        prompt = await PromptRepository.get_prompt(prompt_id)
        if prompt is None:
            logger.warning("Deadline fired for unknown prompt", prompt_id=prompt_id)
            return {"prompt_id": prompt_id, "action": "skipped", "reason": "prompt_not_found"}
        if prompt.status in ("closed", "converted"):
            return {"prompt_id": prompt_id, "action": "skipped", "reason": "prompt_not_active"}

        refresh = await prompt_service.refresh_suggestions(prompt_id, place_holds=False)
        suggestion_count = refresh["aggregation"]["suggestion_count"]

        if not prompt.auto_schedule_enabled:
            return await self._close(prompt_id, "auto_schedule_disabled")

        best = await SuggestionRepository.list_suggestions(
            prompt_id, meets_minimum=True, unconverted_only=True, limit=1
        )
        if not best:
            spawn(
                self._notify_no_consensus(prompt_id, suggestion_count),
                name="no-consensus-notice",
            )
            return await self._close(prompt_id, "no_qualifying_suggestion")

        suggestion = best[0]
        result = await suggestion_conversion_service.convert_suggestion_to_event(suggestion.id)
        if result.success or result.already_converted:
            return {
                "prompt_id": prompt_id,
                "action": "converted",
                "suggestion_id": suggestion.id,
                "event_id": result.event_id,
                "already_converted": result.already_converted,
            }

        # The chosen row vanished under a concurrent recompute; leave the prompt for the next look.
        logger.warning(
            "Deadline conversion did not complete",
            prompt_id=prompt_id,
            suggestion_id=suggestion.id,
            message=result.message,
        )
        return {
            "prompt_id": prompt_id,
            "action": "conversion_failed",
            "suggestion_id": suggestion.id,
            "message": result.message,
        }

    async def _close(self, prompt_id: str, reason: str) -> dict[str, Any]:
        closed = await PromptRepository.transition_status(prompt_id, "closed")
        logger.info("Prompt closed at deadline", prompt_id=prompt_id, reason=reason, applied=closed)
        return {"prompt_id": prompt_id, "action": "closed", "reason": reason}

    async def _notify_no_consensus(self, prompt_id: str, suggestion_count: int) -> dict[str, Any]:
        context = await PromptRepository.get_prompt_context(prompt_id)
        if context is None:
            return {"total": 0, "successful": 0, "failed": 0}

        admins = [
            m
            for m in await MemberRepository.get_group_members(context.prompt.group_id)
            if m.role in ADMIN_ROLES and m.email
        ]
        result = await notification_service.send_batch(
            [build_no_consensus_email(context, admin, suggestion_count) for admin in admins]
        )
        logger.info(
            "No-consensus notices sent",
            prompt_id=prompt_id,
            successful=result["successful"],
            failed=result["failed"],
        )
        return result


deadline_service = DeadlineService()
