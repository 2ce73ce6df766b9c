"""
Persistence for availability prompts.

Status changes are guarded in SQL so a prompt can only move forward through
its lifecycle, whatever order concurrent writers arrive in.
"""

import psycopg

from app.db.helpers import execute_query, fetch_one
from app.features.availability.domain.models import (
    ALLOWED_PREDECESSORS,
    Activity,
    Prompt,
    PromptContext,
)
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class PromptRepository:
    """Raw SQL helpers for availability_prompts."""

    SELECT_COLUMNS = """
        id, group_id, activity_id, period_key, deadline, status,
        auto_schedule_enabled, blind_voting_enabled, custom_message, created_at
    """

    @classmethod
    def _row_to_prompt(cls, row: dict | None) -> Prompt | None:
        if not row:
            return None

        return Prompt(
            id=str(row["id"]),
            group_id=str(row["group_id"]),
            activity_id=str(row["activity_id"]) if row.get("activity_id") else None,
            period_key=row.get("period_key"),
            deadline=row["deadline"],
            status=row["status"],
            auto_schedule_enabled=bool(row.get("auto_schedule_enabled")),
            blind_voting_enabled=bool(row.get("blind_voting_enabled")),
            custom_message=row.get("custom_message"),
            created_at=row.get("created_at"),
        )

    @classmethod
    async def get_prompt(
        cls, prompt_id: str, *, connection: psycopg.AsyncConnection | None = None
    ) -> Prompt | None:
        query = f"SELECT {cls.SELECT_COLUMNS} FROM availability_prompts WHERE id = %s"
        row = await fetch_one(query, (prompt_id,), connection=connection)
        return cls._row_to_prompt(row)

    @classmethod
    async def transition_status(
        cls,
        prompt_id: str,
        target: str,
        *,
        connection: psycopg.AsyncConnection | None = None,
    ) -> bool:
        """Move the prompt to ``target`` if its current status allows it."""
        allowed = list(ALLOWED_PREDECESSORS[target])
        query = """
            UPDATE availability_prompts
            SET status = %s, updated_at = NOW()
            WHERE id = %s AND status = ANY(%s)
        """
        updated = await execute_query(query, (target, prompt_id, allowed), connection=connection)
        if not updated:
            logger.info(
                "Prompt status transition not applied",
                prompt_id=prompt_id,
                target=target,
                allowed_from=allowed,
            )
        return updated > 0

    @classmethod
    async def get_prompt_context(cls, prompt_id: str) -> PromptContext | None:
        query = """
            SELECT
                p.id, p.group_id, p.activity_id, p.period_key, p.deadline, p.status,
                p.auto_schedule_enabled, p.blind_voting_enabled, p.custom_message,
                p.created_at,
                g.name AS group_name,
                a.name AS activity_name,
                a.min_players AS activity_min_players
            FROM availability_prompts p
            JOIN groups g ON g.id = p.group_id
            LEFT JOIN activities a ON a.id = p.activity_id
            WHERE p.id = %s
        """
        row = await fetch_one(query, (prompt_id,))
        prompt = cls._row_to_prompt(row)
        if prompt is None:
            return None

        activity = None
        if prompt.activity_id and row.get("activity_name"):
            activity = Activity(
                id=prompt.activity_id,
                name=row["activity_name"],
                min_players=row.get("activity_min_players"),
            )
        return PromptContext(prompt=prompt, group_name=row.get("group_name") or "", activity=activity)
