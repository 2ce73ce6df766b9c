"""
Read access to users and group membership.

Both tables belong to the main application; the only write made from here
is persisting a refreshed Google Calendar access token.
"""

import psycopg

from app.db.helpers import execute_query, fetch_all, fetch_one
from app.features.availability.domain.models import Member


class MemberRepository:
    """Raw SQL helpers over users / user_groups."""

    USER_COLUMNS = """
        u.id, u.user_id, u.username, u.email,
        COALESCE(u.timezone, 'UTC') AS timezone,
        COALESCE(u.email_notifications_enabled, true) AS email_notifications_enabled,
        COALESCE(u.google_calendar_enabled, false) AS google_calendar_enabled,
        u.google_calendar_token, u.google_calendar_refresh_token
    """

    @classmethod
    def _row_to_member(cls, row: dict) -> Member:
        return Member(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            username=row.get("username"),
            email=row.get("email"),
            role=row.get("role") or "member",
            timezone=row.get("timezone") or "UTC",
            email_notifications_enabled=bool(row.get("email_notifications_enabled")),
            google_calendar_enabled=bool(row.get("google_calendar_enabled")),
            calendar_access_token=row.get("google_calendar_token"),
            calendar_refresh_token=row.get("google_calendar_refresh_token"),
        )

    @classmethod
    async def get_group_members(cls, group_id: str) -> list[Member]:
        query = f"""
            SELECT {cls.USER_COLUMNS}, ug.role
            FROM user_groups ug
            JOIN users u ON u.id = ug.user_id
            WHERE ug.group_id = %s
            ORDER BY u.username NULLS LAST, u.id
        """
        rows = await fetch_all(query, (group_id,))
        return [cls._row_to_member(row) for row in rows]

    @classmethod
    async def get_group_member(cls, group_id: str, user_id: str) -> Member | None:
        query = f"""
            SELECT {cls.USER_COLUMNS}, ug.role
            FROM user_groups ug
            JOIN users u ON u.id = ug.user_id
            WHERE ug.group_id = %s AND u.user_id = %s
        """
        row = await fetch_one(query, (group_id, user_id))
        return cls._row_to_member(row) if row else None

    @classmethod
    async def get_members_by_user_ids(
        cls,
        user_ids: list[str],
        *,
        connection: psycopg.AsyncConnection | None = None,
    ) -> list[Member]:
        """Resolve external user identifiers to user records; unknown ids are dropped."""
        if not user_ids:
            return []
        query = f"SELECT {cls.USER_COLUMNS} FROM users u WHERE u.user_id = ANY(%s)"
        rows = await fetch_all(query, (list(user_ids),), connection=connection)
        return [cls._row_to_member(row) for row in rows]

    @classmethod
    async def update_calendar_access_token(cls, member_id: str, access_token: str) -> None:
        query = """
            UPDATE users
            SET google_calendar_token = %s
            WHERE id = %s
        """
        await execute_query(query, (access_token, member_id))
