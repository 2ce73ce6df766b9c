"""
Suggestion aggregation service.

Turns every submitted response for a prompt into a ranked set of candidate
windows. The whole set is recomputed and replaced in one transaction.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from .repository import SubmittedResponseRow, SuggestionAggregationRepository
from app.config import settings
from app.db.helpers import DatabaseError
from app.db.pool import db_pool
from app.features.availability.domain.models import Suggestion, score_window
from app.features.availability.repository.prompt_repository import PromptRepository
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

WindowKey = tuple[datetime, datetime]


class AggregationError(Exception):
    """Unexpected failure while recomputing suggestions; the recompute was rolled back."""

    def __init__(self, message: str, prompt_id: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.prompt_id = prompt_id
        self.recoverable = recoverable


@dataclass(slots=True)
class AggregationResult:
    success: bool
    suggestion_count: int
    message: str
    released_holds: list[tuple[str, str]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "suggestion_count": self.suggestion_count,
            "message": self.message,
        }


@dataclass
class _WindowTally:
    participants: set[str] = field(default_factory=set)
    preferred: set[str] = field(default_factory=set)


def build_suggestions(
    prompt_id: str, responses: Iterable[SubmittedResponseRow], threshold: int
) -> list[Suggestion]:
    """
    Group every offered slot by its exact UTC (start, end) and score it.

    score = participants * 1.0 + preferred * 0.5; ``meets_minimum`` when
    participants >= threshold. Output order is score desc, then start, then end.
    """
    tallies: dict[WindowKey, _WindowTally] = {}

    for response in responses:
        if response.is_unavailable:
            continue
        for slot in response.time_slots:
            start, end = slot.key
            if start >= end:
                continue
            tally = tallies.setdefault((start, end), _WindowTally())
            tally.participants.add(response.user_id)
            if slot.preference == "preferred":
                tally.preferred.add(response.user_id)

    suggestions = [
        Suggestion(
            prompt_id=prompt_id,
            start=start,
            end=end,
            participant_ids=sorted(tally.participants),
            preferred_count=len(tally.preferred),
            score=score_window(len(tally.participants), len(tally.preferred)),
            meets_minimum=len(tally.participants) >= threshold,
        )
        for (start, end), tally in tallies.items()
    ]
    suggestions.sort(key=lambda s: (-s.score, s.start, s.end))
    return suggestions


def carry_forward_holds(
    suggestions: list[Suggestion], existing: dict[WindowKey, dict[str, str]]
) -> list[tuple[str, str]]:
    """
    Move hold maps onto the recomputed rows for windows that survive.

    Returns the (user_id, calendar_event_id) pairs that no longer belong to
    any window or participant and must be removed from calendars.
    """
    released: list[tuple[str, str]] = []
    remaining = dict(existing)

    for suggestion in suggestions:
        holds = remaining.pop(suggestion.key, None)
        if not holds:
            continue
        participants = set(suggestion.participant_ids)
        kept = {uid: event_id for uid, event_id in holds.items() if uid in participants}
        released.extend((uid, event_id) for uid, event_id in holds.items() if uid not in participants)
        suggestion.tentative_holds = kept or None

    for holds in remaining.values():
        released.extend(holds.items())

    return released


class SuggestionAggregationService:
    """Recomputes suggestions for a prompt from its submitted responses."""

    async def aggregate_responses(self, prompt_id: str) -> AggregationResult:
        """
        Rebuild the prompt's suggestions.

        Expected outcomes (missing or converted prompt) come back as an
        unsuccessful result. Database failures roll back and propagate.
        """
        try:
            async with db_pool.transaction() as conn:
                prompt = await PromptRepository.get_prompt(prompt_id, connection=conn)
                if prompt is None:
                    return AggregationResult(False, 0, "Prompt not found")
                if prompt.status == "converted":
                    return AggregationResult(
                        False, 0, "Prompt already converted; suggestions are final"
                    )

                await SuggestionAggregationRepository.lock_prompt_suggestions(
                    prompt_id, connection=conn
                )
                converted = await SuggestionAggregationRepository.lock_existing_suggestions(
                    prompt_id, connection=conn
                )
                if converted:
                    logger.info(
                        "Skipping aggregation, prompt converted while waiting",
                        prompt_id=prompt_id,
                        event_ids=converted,
                    )
                    return AggregationResult(
                        False, 0, "Prompt already converted; suggestions are final"
                    )

                threshold = (
                    await SuggestionAggregationRepository.fetch_min_participants(
                        prompt_id, connection=conn
                    )
                    or settings.DEFAULT_MIN_PARTICIPANTS
                )
                responses = await SuggestionAggregationRepository.fetch_submitted_responses(
                    prompt_id, connection=conn
                )
                existing_holds = await SuggestionAggregationRepository.fetch_existing_holds(
                    prompt_id, connection=conn
                )

                suggestions = build_suggestions(prompt_id, responses, threshold)
                released = carry_forward_holds(suggestions, existing_holds)

                await SuggestionAggregationRepository.replace_suggestions(
                    prompt_id, suggestions, connection=conn
                )
        except DatabaseError as e:
            logger.error("Suggestion aggregation failed", prompt_id=prompt_id, error=str(e))
            raise AggregationError(
                f"Aggregation failed for prompt {prompt_id}: {e}",
                prompt_id=prompt_id,
                recoverable=e.recoverable,
            ) from e

        if not responses:
            message = "No responses to aggregate"
        else:
            message = f"Aggregated {len(responses)} responses into {len(suggestions)} suggestions"

        logger.info(
            "Suggestions aggregated",
            prompt_id=prompt_id,
            response_count=len(responses),
            suggestion_count=len(suggestions),
            qualifying=sum(1 for s in suggestions if s.meets_minimum),
            threshold=threshold,
            released_holds=len(released),
        )
        return AggregationResult(True, len(suggestions), message, released_holds=released)


suggestion_aggregation_service = SuggestionAggregationService()
