"""
Repository helpers for suggestion aggregation.

Reads submitted responses and replaces a prompt's suggestion set. All
methods take the caller's connection so the recompute is one transaction.
"""

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime

import psycopg
from psycopg.types.json import Jsonb

from app.db.helpers import execute_many, execute_query, fetch_all, fetch_one
from app.features.availability.domain.models import Suggestion, TimeSlot, to_utc
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


@dataclass(slots=True)
class SubmittedResponseRow:
    user_id: str
    time_slots: list[TimeSlot]
    is_unavailable: bool


class SuggestionAggregationRepository:
    """Raw SQL helpers for the suggestion recompute."""

    @classmethod
    async def lock_prompt_suggestions(
        cls, prompt_id: str, *, connection: psycopg.AsyncConnection
    ) -> None:
        """Serialise recomputes of one prompt; other prompts are unaffected."""
        await execute_query(
            "SELECT pg_advisory_xact_lock(hashtext(%s))",
            (f"availability_suggestions:{prompt_id}",),
            connection=connection,
        )

    @classmethod
    async def lock_existing_suggestions(
        cls, prompt_id: str, *, connection: psycopg.AsyncConnection
    ) -> list[str]:
        """
        Row-lock the prompt's current suggestions.

        Blocks until an in-flight conversion commits or rolls back, then
        returns the event ids of suggestions that are already converted.
        """
        rows = await fetch_all(
            """
            SELECT id, converted_to_event_id
            FROM availability_suggestions
            WHERE prompt_id = %s
            FOR UPDATE
            """,
            (prompt_id,),
            connection=connection,
        )
        return [str(row["converted_to_event_id"]) for row in rows if row.get("converted_to_event_id")]

    @classmethod
    async def fetch_min_participants(
        cls, prompt_id: str, *, connection: psycopg.AsyncConnection
    ) -> int | None:
        row = await fetch_one(
            """
            SELECT a.min_players
            FROM availability_prompts p
            LEFT JOIN activities a ON a.id = p.activity_id
            WHERE p.id = %s
            """,
            (prompt_id,),
            connection=connection,
        )
        return row.get("min_players") if row else None

    @classmethod
    async def fetch_submitted_responses(
        cls, prompt_id: str, *, connection: psycopg.AsyncConnection
    ) -> list[SubmittedResponseRow]:
        rows = await fetch_all(
            """
            SELECT user_id, time_slots, is_unavailable
            FROM availability_responses
            WHERE prompt_id = %s AND submitted_at IS NOT NULL
            ORDER BY user_id
            """,
            (prompt_id,),
            connection=connection,
        )
        return [
            SubmittedResponseRow(
                user_id=str(row["user_id"]),
                time_slots=[TimeSlot.from_json(slot) for slot in row.get("time_slots") or []],
                is_unavailable=bool(row.get("is_unavailable")),
            )
            for row in rows
        ]

    @classmethod
    async def fetch_existing_holds(
        cls, prompt_id: str, *, connection: psycopg.AsyncConnection
    ) -> dict[tuple[datetime, datetime], dict[str, str]]:
        rows = await fetch_all(
            """
            SELECT suggested_start, suggested_end, tentative_calendar_holds
            FROM availability_suggestions
            WHERE prompt_id = %s AND tentative_calendar_holds IS NOT NULL
            """,
            (prompt_id,),
            connection=connection,
        )
        return {
            (to_utc(row["suggested_start"]), to_utc(row["suggested_end"])): dict(
                row["tentative_calendar_holds"]
            )
            for row in rows
            if row.get("tentative_calendar_holds")
        }

    @classmethod
    async def replace_suggestions(
        cls,
        prompt_id: str,
        suggestions: Iterable[Suggestion],
        *,
        connection: psycopg.AsyncConnection,
    ) -> int:
        deleted = await execute_query(
            "DELETE FROM availability_suggestions WHERE prompt_id = %s AND converted_to_event_id IS NULL",
            (prompt_id,),
            connection=connection,
        )

        params = [
            (
                prompt_id,
                suggestion.start,
                suggestion.end,
                suggestion.participant_count,
                suggestion.participant_ids,
                suggestion.preferred_count,
                suggestion.score,
                suggestion.meets_minimum,
                Jsonb(suggestion.tentative_holds) if suggestion.tentative_holds else None,
            )
            for suggestion in suggestions
        ]
        await execute_many(
            """
            INSERT INTO availability_suggestions (
                prompt_id, suggested_start, suggested_end, participant_count,
                participant_ids, preferred_count, score, meets_minimum,
                tentative_calendar_holds
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            params,
            connection=connection,
        )

        logger.debug(
            "Suggestions replaced",
            prompt_id=prompt_id,
            deleted=deleted,
            inserted=len(params),
        )
        return len(params)
