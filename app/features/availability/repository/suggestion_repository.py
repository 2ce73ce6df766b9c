"""
Read/write helpers for availability suggestions outside the recompute path.

The aggregation pipeline owns delete-and-replace; this module serves the
ranked reads, the conversion lock, and tentative-hold bookkeeping.
"""

from datetime import datetime

import psycopg
from psycopg import sql
from psycopg.types.json import Jsonb

from app.db.helpers import execute_query, fetch_all, fetch_one
from app.features.availability.domain.models import Suggestion

ORDERABLE_COLUMNS = {
    "score": "score",
    "suggested_start": "suggested_start",
    "start": "suggested_start",
    "participant_count": "participant_count",
    "preferred_count": "preferred_count",
}


class SuggestionRepository:
    """Raw SQL helpers for availability_suggestions."""

    SELECT_COLUMNS = """
        id, prompt_id, suggested_start, suggested_end, participant_ids,
        preferred_count, score, meets_minimum, converted_to_event_id,
        tentative_calendar_holds
    """

    @classmethod
    def _row_to_suggestion(cls, row: dict | None) -> Suggestion | None:
        if not row:
            return None

        event_id = row.get("converted_to_event_id")
        return Suggestion(
            id=str(row["id"]),
            prompt_id=str(row["prompt_id"]),
            start=row["suggested_start"],
            end=row["suggested_end"],
            participant_ids=[str(pid) for pid in row.get("participant_ids") or []],
            preferred_count=row.get("preferred_count") or 0,
            score=float(row["score"]),
            meets_minimum=bool(row["meets_minimum"]),
            converted_to_event_id=str(event_id) if event_id else None,
            tentative_holds=row.get("tentative_calendar_holds") or None,
        )

    @classmethod
    async def list_suggestions(
        cls,
        prompt_id: str,
        *,
        min_participants: int | None = None,
        meets_minimum: bool | None = None,
        order_by: str = "score",
        order_direction: str = "desc",
        unconverted_only: bool = False,
        limit: int | None = None,
    ) -> list[Suggestion]:
        """Suggestions for a prompt, ranked with a stable tiebreak on window start."""
        column = ORDERABLE_COLUMNS.get(order_by, "score")
        direction = sql.SQL("ASC" if order_direction.lower() == "asc" else "DESC")

        conditions = [sql.SQL("prompt_id = %s")]
        params: list = [prompt_id]
        if min_participants is not None:
            conditions.append(sql.SQL("participant_count >= %s"))
            params.append(min_participants)
        if meets_minimum is not None:
            conditions.append(sql.SQL("meets_minimum = %s"))
            params.append(meets_minimum)
        if unconverted_only:
            conditions.append(sql.SQL("converted_to_event_id IS NULL"))

        ordering = [sql.SQL("{} {}").format(sql.Identifier(column), direction)]
        if column != "suggested_start":
            ordering.append(sql.SQL("suggested_start ASC"))
        ordering.append(sql.SQL("suggested_end ASC"))

        query = sql.SQL("SELECT {columns} FROM availability_suggestions WHERE {where} ORDER BY {order}").format(
            columns=sql.SQL(cls.SELECT_COLUMNS),
            where=sql.SQL(" AND ").join(conditions),
            order=sql.SQL(", ").join(ordering),
        )
        if limit is not None:
            query = sql.Composed([query, sql.SQL(" LIMIT %s")])
            params.append(limit)

        rows = await fetch_all(query, tuple(params))
        return [cls._row_to_suggestion(row) for row in rows]

    @classmethod
    async def get_suggestion(cls, suggestion_id: str) -> Suggestion | None:
        query = f"SELECT {cls.SELECT_COLUMNS} FROM availability_suggestions WHERE id = %s"
        row = await fetch_one(query, (suggestion_id,))
        return cls._row_to_suggestion(row)

    @classmethod
    async def lock_for_conversion(
        cls, suggestion_id: str, *, connection: psycopg.AsyncConnection
    ) -> Suggestion | None:
        """Read the suggestion under a row lock held until the transaction ends."""
        query = f"""
            SELECT {cls.SELECT_COLUMNS}
            FROM availability_suggestions
            WHERE id = %s
            FOR UPDATE
        """
        row = await fetch_one(query, (suggestion_id,), connection=connection)
        return cls._row_to_suggestion(row)

    @classmethod
    async def mark_converted(
        cls, suggestion_id: str, event_id: str, *, connection: psycopg.AsyncConnection
    ) -> bool:
        query = """
            UPDATE availability_suggestions
            SET converted_to_event_id = %s
            WHERE id = %s AND converted_to_event_id IS NULL
        """
        return await execute_query(query, (event_id, suggestion_id), connection=connection) > 0

    @classmethod
    async def list_with_holds(cls, prompt_id: str, *, exclude_id: str | None = None) -> list[Suggestion]:
        query = f"""
            SELECT {cls.SELECT_COLUMNS}
            FROM availability_suggestions
            WHERE prompt_id = %s
              AND tentative_calendar_holds IS NOT NULL
              AND id IS DISTINCT FROM %s::uuid
        """
        rows = await fetch_all(query, (prompt_id, exclude_id))
        return [cls._row_to_suggestion(row) for row in rows]

    @classmethod
    async def set_tentative_holds(cls, suggestion_id: str, holds: dict[str, str] | None) -> int:
        query = """
            UPDATE availability_suggestions
            SET tentative_calendar_holds = %s
            WHERE id = %s
        """
        return await execute_query(query, (Jsonb(holds) if holds else None, suggestion_id))

    @classmethod
    async def merge_tentative_holds(
        cls,
        prompt_id: str,
        start: datetime,
        end: datetime,
        holds: dict[str, str],
        *,
        connection: psycopg.AsyncConnection,
    ) -> bool:
        """
        Add holds to whichever suggestion currently covers the window.

        Keyed on the window, not the row id, because a recompute replaces
        rows. Returns False when the window is no longer suggested.
        """
        query = """
            UPDATE availability_suggestions
            SET tentative_calendar_holds = COALESCE(tentative_calendar_holds, '{}'::jsonb) || %s
            WHERE prompt_id = %s AND suggested_start = %s AND suggested_end = %s
        """
        updated = await execute_query(
            query, (Jsonb(holds), prompt_id, start, end), connection=connection
        )
        return updated > 0
