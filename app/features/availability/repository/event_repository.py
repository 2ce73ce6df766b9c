"""
Event creation helpers used inside the conversion transaction.
"""

from datetime import datetime

import psycopg

from app.db.helpers import execute_many, fetch_one
from app.features.availability.domain.models import Event


class EventRepository:
    """Raw SQL helpers for events / event_participants."""

    @classmethod
    async def create_event(
        cls,
        *,
        group_id: str,
        activity_id: str | None,
        start_date: datetime,
        duration_minutes: int,
        comments: str,
        status: str = "scheduled",
        connection: psycopg.AsyncConnection,
    ) -> Event:
        query = """
            INSERT INTO events (group_id, activity_id, start_date, duration_minutes, status, comments)
            VALUES (%s, %s, %s, %s, %s, %s)
            RETURNING id, group_id, activity_id, start_date, duration_minutes, status
        """
        row = await fetch_one(
            query,
            (group_id, activity_id, start_date, duration_minutes, status, comments),
            connection=connection,
        )
        return Event(
            id=str(row["id"]),
            group_id=str(row["group_id"]),
            activity_id=str(row["activity_id"]) if row.get("activity_id") else None,
            start_date=row["start_date"],
            duration_minutes=row["duration_minutes"],
            status=row["status"],
        )

    @classmethod
    async def add_participants(
        cls, event_id: str, member_ids: list[str], *, connection: psycopg.AsyncConnection
    ) -> None:
        query = """
            INSERT INTO event_participants (event_id, user_id)
            VALUES (%s, %s)
            ON CONFLICT (event_id, user_id) DO NOTHING
        """
        await execute_many(
            query, [(event_id, member_id) for member_id in member_ids], connection=connection
        )
