"""
Prompt lifecycle operations and the suggestion refresh.

Status changes are forward-only and enforced by the repository's guarded
UPDATE; this module adds the job bookkeeping around them.
"""

from typing import Any

from app.db.helpers import DatabaseError
from app.features.availability.pipeline.aggregation import suggestion_aggregation_service
from app.features.availability.repository.prompt_repository import PromptRepository
from app.features.availability.services.hold_service import tentative_hold_service
from app.features.availability.services.scheduler import prompt_job_scheduler
from app.infrastructure.observability.logging import get_logger
from app.infrastructure.tasks import spawn

logger = get_logger(__name__)


class PromptService:
    async def activate_prompt(self, prompt_id: str) -> dict[str, Any]:
        """pending -> active, then (re)schedule reminders and the deadline job."""
        if not await PromptRepository.transition_status(prompt_id, "active"):
            return await self._rejected(prompt_id, "activated")

        prompt = await PromptRepository.get_prompt(prompt_id)
        jobs = await prompt_job_scheduler.reschedule_prompt_jobs(prompt)
        logger.info("Prompt activated", prompt_id=prompt_id, deadline=prompt.deadline.isoformat())
        return {"success": True, "status": "active", "message": "Prompt activated", "jobs": jobs}

    async def close_prompt(self, prompt_id: str) -> dict[str, Any]:
        """Close voting early and cancel the prompt's pending jobs."""
        if not await PromptRepository.transition_status(prompt_id, "closed"):
            return await self._rejected(prompt_id, "closed")

        jobs = await prompt_job_scheduler.cancel_prompt_jobs(prompt_id)
        logger.info("Prompt closed", prompt_id=prompt_id, cancelled_jobs=jobs["cancelled"])
        return {"success": True, "status": "closed", "message": "Prompt closed", "jobs": jobs}

    async def _rejected(self, prompt_id: str, verb: str) -> dict[str, Any]:
        prompt = await PromptRepository.get_prompt(prompt_id)
        if prompt is None:
            return {"success": False, "not_found": True, "message": "Prompt not found"}
        return {
            "success": False,
            "status": prompt.status,
            "message": f"Prompt cannot be {verb} from status '{prompt.status}'",
        }

    async def refresh_suggestions(self, prompt_id: str, *, place_holds: bool = True) -> dict[str, Any]:
        """
        Recompute suggestions, then place holds on the leaders.

        Holds released by the recompute are removed in the background. Hold
        placement failures are logged and reported, never raised.
        """
        aggregation = await suggestion_aggregation_service.aggregate_responses(prompt_id)
        if aggregation.released_holds:
            spawn(
                tentative_hold_service.release_holds(aggregation.released_holds),
                name="hold-release",
            )

        result: dict[str, Any] = {"aggregation": aggregation.to_dict(), "holds": None}
        if not place_holds or not aggregation.success or not aggregation.suggestion_count:
            return result

        try:
            result["holds"] = await tentative_hold_service.create_holds_for_top_suggestions(prompt_id)
        except DatabaseError as e:
            logger.error("Tentative hold placement failed", prompt_id=prompt_id, error=str(e))
            result["holds"] = {"error": "hold_placement_failed"}
        return result


prompt_service = PromptService()
