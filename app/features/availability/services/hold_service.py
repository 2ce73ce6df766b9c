"""
Tentative calendar holds on leading suggestions.

Holds are a best-effort enrichment. Every calendar call is isolated: one
participant's failure is logged and counted, never raised to the caller.
"""

from collections import defaultdict
from typing import Any

from app.config import settings
from app.db.helpers import DatabaseError
from app.db.pool import db_pool
from app.features.availability.domain.models import Member, PromptContext, Suggestion
from app.features.availability.pipeline.aggregation.repository import SuggestionAggregationRepository
from app.features.availability.repository.member_repository import MemberRepository
from app.features.availability.repository.prompt_repository import PromptRepository
from app.features.availability.repository.suggestion_repository import SuggestionRepository
from app.infrastructure.observability.logging import get_logger
from app.models.domain.calendar_domain import TentativeHold
from app.services.calendar.google_client import GoogleCalendarError, google_calendar_service

logger = get_logger(__name__)


class TentativeHoldService:
    """Places and removes provisional holds for a prompt's suggestions."""

    def __init__(self, hold_limit: int | None = None):
        self.hold_limit = settings.TENTATIVE_HOLD_LIMIT if hold_limit is None else hold_limit

    def _build_hold(self, context: PromptContext, suggestion: Suggestion, member: Member) -> TentativeHold:
        return TentativeHold(
            start=suggestion.start,
            end=suggestion.end,
            summary=f"Tentative: {context.group_name} - {context.activity_name}",
            description=(
                f"Held while {context.group_name} decides on a time for "
                f"{context.activity_name}. This entry is removed or confirmed "
                "when the poll closes."
            ),
            timezone=member.timezone,
            suggestion_id=suggestion.id,
        )

    async def _persist_refreshed_token(self, member: Member, access_token: str | None) -> None:
        if not access_token or access_token == member.calendar_access_token:
            return
        member.calendar_access_token = access_token
        try:
            await MemberRepository.update_calendar_access_token(member.id, access_token)
        except DatabaseError as e:
            logger.warning(
                "Failed to persist refreshed calendar token",
                user_id=member.user_id,
                error=str(e),
            )

    async def _record_holds(
        self, prompt_id: str, suggestion: Suggestion, placed: dict[str, str]
    ) -> bool:
        """
        Merge new holds into the suggestion for this window.

        Runs under the prompt's aggregation lock, so a concurrent recompute
        either carries these holds forward or has already produced the rows
        they land on. False means the window is gone or the write failed.
        """
        try:
            async with db_pool.transaction() as conn:
                await SuggestionAggregationRepository.lock_prompt_suggestions(
                    prompt_id, connection=conn
                )
                recorded = await SuggestionRepository.merge_tentative_holds(
                    prompt_id, suggestion.start, suggestion.end, placed, connection=conn
                )
        except DatabaseError as e:
            logger.error(
                "Failed to record tentative holds",
                prompt_id=prompt_id,
                suggestion_id=suggestion.id,
                holds=len(placed),
                error=str(e),
            )
            return False

        if not recorded:
            logger.warning(
                "Suggestion window replaced before holds were recorded",
                prompt_id=prompt_id,
                suggestion_id=suggestion.id,
                holds=len(placed),
            )
        return recorded

    async def create_holds_for_top_suggestions(
        self, prompt_id: str, limit: int | None = None
    ) -> dict[str, Any]:
        """
        Place holds on the top qualifying, unconverted suggestions.

        Participants without a connected calendar, or who already hold an
        entry for the suggestion, are skipped.

        Returns:
            {"success_count", "failure_count", "suggestions": [per-suggestion summary]}
        """
        summary: dict[str, Any] = {"success_count": 0, "failure_count": 0, "suggestions": []}

        context = await PromptRepository.get_prompt_context(prompt_id)
        if context is None:
            logger.warning("Skipping tentative holds, prompt not found", prompt_id=prompt_id)
            return summary

        suggestions = await SuggestionRepository.list_suggestions(
            prompt_id,
            meets_minimum=True,
            unconverted_only=True,
            limit=self.hold_limit if limit is None else limit,
        )
        if not suggestions:
            return summary

        participant_ids = sorted({uid for s in suggestions for uid in s.participant_ids})
        members = {
            m.user_id: m for m in await MemberRepository.get_members_by_user_ids(participant_ids)
        }

        for suggestion in suggestions:
            holds = dict(suggestion.tentative_holds or {})
            placed: dict[str, str] = {}
            failed = 0

            for user_id in suggestion.participant_ids:
                if user_id in holds:
                    continue
                member = members.get(user_id)
                if member is None or not member.has_calendar:
                    continue

                try:
                    result = await google_calendar_service.create_tentative_hold(
                        member.calendar_access_token,
                        self._build_hold(context, suggestion, member),
                        refresh_token=member.calendar_refresh_token,
                    )
                except GoogleCalendarError as e:
                    failed += 1
                    logger.warning(
                        "Failed to place tentative hold",
                        prompt_id=prompt_id,
                        suggestion_id=suggestion.id,
                        user_id=user_id,
                        status_code=e.status_code,
                        error=str(e),
                    )
                    continue

                placed[user_id] = result.value
                await self._persist_refreshed_token(member, result.refreshed_access_token)

            discarded = 0
            if placed and await self._record_holds(prompt_id, suggestion, placed):
                holds.update(placed)
            elif placed:
                # Nothing references these entries any more, so take them back out
                discarded = len(placed)
                await self.release_holds(list(placed.items()))
            created = len(placed) - discarded

            summary["success_count"] += created
            summary["failure_count"] += failed
            summary["suggestions"].append(
                {
                    "suggestion_id": suggestion.id,
                    "holds_created": created,
                    "holds_failed": failed,
                    "holds_discarded": discarded,
                    "user_hold_ids": holds,
                }
            )

        logger.info(
            "Tentative holds processed",
            prompt_id=prompt_id,
            suggestions=len(suggestions),
            created=summary["success_count"],
            failed=summary["failure_count"],
        )
        return summary

    async def release_holds(self, pairs: list[tuple[str, str]]) -> dict[str, int]:
        """Delete (user_id, calendar_event_id) holds, grouped per calendar owner."""
        counts = {"deleted": 0, "failed": 0}
        if not pairs:
            return counts

        by_user: dict[str, list[str]] = defaultdict(list)
        for user_id, event_id in pairs:
            by_user[user_id].append(event_id)

        members = {
            m.user_id: m for m in await MemberRepository.get_members_by_user_ids(list(by_user))
        }

        for user_id, event_ids in by_user.items():
            member = members.get(user_id)
            if member is None or not member.calendar_access_token:
                counts["failed"] += len(event_ids)
                logger.warning(
                    "Cannot remove tentative holds, calendar no longer connected",
                    user_id=user_id,
                    holds=len(event_ids),
                )
                continue

            result = await google_calendar_service.delete_tentative_holds(
                member.calendar_access_token,
                event_ids,
                refresh_token=member.calendar_refresh_token,
            )
            counts["deleted"] += result.value["deleted"]
            counts["failed"] += result.value["failed"]
            await self._persist_refreshed_token(member, result.refreshed_access_token)

        return counts

    async def cleanup_other_holds(
        self, prompt_id: str, converted_suggestion_id: str
    ) -> dict[str, int]:
        """Remove holds from every suggestion of the prompt except the converted one."""
        others = await SuggestionRepository.list_with_holds(
            prompt_id, exclude_id=converted_suggestion_id
        )
        pairs = [
            (user_id, event_id)
            for suggestion in others
            for user_id, event_id in (suggestion.tentative_holds or {}).items()
        ]

        counts = await self.release_holds(pairs)
        for suggestion in others:
            await SuggestionRepository.set_tentative_holds(suggestion.id, None)

        logger.info(
            "Tentative holds cleaned up",
            prompt_id=prompt_id,
            converted_suggestion_id=converted_suggestion_id,
            suggestions=len(others),
            deleted=counts["deleted"],
            failed=counts["failed"],
        )
        return {"suggestions": len(others), **counts}


tentative_hold_service = TentativeHoldService()
