"""
Persistence for availability responses.

One row per (prompt, user) is guaranteed by the table's unique constraint;
writes go through ``INSERT ... ON CONFLICT`` so simultaneous submissions
collapse into a single row holding the latest payload.
"""

from psycopg.types.json import Jsonb

from app.db.helpers import execute_query, fetch_all, fetch_one, with_db_retry
from app.features.availability.domain.models import AvailabilityResponse, TimeSlot


class ResponseRepository:
    """Raw SQL helpers for availability_responses."""

    SELECT_COLUMNS = """
        id, prompt_id, user_id, time_slots, user_timezone, is_unavailable,
        submitted_at, magic_token_used, last_reminded_at, reminder_count
    """

    @classmethod
    def _row_to_response(cls, row: dict | None) -> AvailabilityResponse | None:
        if not row:
            return None

        return AvailabilityResponse(
            id=str(row["id"]),
            prompt_id=str(row["prompt_id"]),
            user_id=str(row["user_id"]),
            time_slots=[TimeSlot.from_json(slot) for slot in row.get("time_slots") or []],
            user_timezone=row.get("user_timezone") or "UTC",
            is_unavailable=bool(row.get("is_unavailable")),
            submitted_at=row.get("submitted_at"),
            magic_token_used=row.get("magic_token_used"),
            last_reminded_at=row.get("last_reminded_at"),
            reminder_count=row.get("reminder_count") or 0,
        )

    @classmethod
    @with_db_retry(max_retries=2)
    async def upsert_response(
        cls,
        prompt_id: str,
        user_id: str,
        time_slots: list[TimeSlot],
        user_timezone: str,
        is_unavailable: bool,
        token_id: str | None,
    ) -> tuple[str, bool]:
        """
        Store the user's submission for a prompt.

        Returns:
            (response_id, updated) where ``updated`` is True when an earlier
            submission was replaced.
        """
        query = """
            WITH placeholder AS (
                SELECT 1 FROM availability_responses
                WHERE prompt_id = %s AND user_id = %s AND submitted_at IS NULL
            )
            INSERT INTO availability_responses (
                prompt_id, user_id, time_slots, user_timezone, is_unavailable,
                magic_token_used, submitted_at
            ) VALUES (%s, %s, %s, %s, %s, %s, NOW())
            ON CONFLICT (prompt_id, user_id) DO UPDATE SET
                time_slots = EXCLUDED.time_slots,
                user_timezone = EXCLUDED.user_timezone,
                is_unavailable = EXCLUDED.is_unavailable,
                magic_token_used = EXCLUDED.magic_token_used,
                submitted_at = EXCLUDED.submitted_at,
                updated_at = NOW()
            RETURNING id, (xmax <> 0 AND NOT EXISTS (SELECT 1 FROM placeholder)) AS updated
        """
        payload = Jsonb([slot.to_json() for slot in time_slots])
        row = await fetch_one(
            query,
            (prompt_id, user_id, prompt_id, user_id, payload, user_timezone, is_unavailable, token_id),
        )
        return str(row["id"]), bool(row["updated"])

    @classmethod
    async def get_response(cls, prompt_id: str, user_id: str) -> AvailabilityResponse | None:
        query = f"""
            SELECT {cls.SELECT_COLUMNS}
            FROM availability_responses
            WHERE prompt_id = %s AND user_id = %s
        """
        row = await fetch_one(query, (prompt_id, user_id))
        return cls._row_to_response(row)

    @classmethod
    async def list_responses(cls, prompt_id: str) -> dict[str, AvailabilityResponse]:
        """Every row for the prompt, placeholders included, keyed by user id."""
        query = f"""
            SELECT {cls.SELECT_COLUMNS}
            FROM availability_responses
            WHERE prompt_id = %s
        """
        rows = await fetch_all(query, (prompt_id,))
        responses = [cls._row_to_response(row) for row in rows]
        return {response.user_id: response for response in responses}

    @classmethod
    async def record_reminder(cls, prompt_id: str, user_id: str) -> None:
        """Stamp a reminder, creating an unsubmitted placeholder row if needed."""
        query = """
            INSERT INTO availability_responses (
                prompt_id, user_id, last_reminded_at, reminder_count
            ) VALUES (%s, %s, NOW(), 1)
            ON CONFLICT (prompt_id, user_id) DO UPDATE SET
                last_reminded_at = NOW(),
                reminder_count = availability_responses.reminder_count + 1,
                updated_at = NOW()
        """
        await execute_query(query, (prompt_id, user_id))
