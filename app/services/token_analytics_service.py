"""
Token analytics: an append-only log of validation attempts plus reporting.

Recording is fire-and-forget; a failed insert is logged and never reaches
the request that triggered it.
"""

from datetime import date
from typing import Any

from app.db.helpers import DatabaseError, execute_query, fetch_all, fetch_one
from app.infrastructure.observability.logging import get_logger
from app.infrastructure.tasks import spawn

logger = get_logger(__name__)

USER_AGENT_MAX_LENGTH = 500


def _rate(part: int, whole: int) -> float:
    return round(part / whole * 100, 2) if whole else 0.0


class TokenAnalyticsService:
    """Writes ``magic_token_validations`` rows and summarises them."""

    async def record_validation(
        self,
        *,
        token_id: str | None,
        success: bool,
        failure_reason: str | None,
        ip_address: str | None,
        user_agent: str | None,
        grace_used: bool = False,
    ) -> bool:
        try:
            await execute_query(
                """
                INSERT INTO magic_token_validations (
                    token_id, validation_success, failure_reason,
                    ip_address, user_agent, grace_period_used
                ) VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (
                    token_id,
                    success,
                    None if success else failure_reason,
                    ip_address,
                    user_agent[:USER_AGENT_MAX_LENGTH] if user_agent else None,
                    grace_used,
                ),
            )
            return True
        except DatabaseError as e:
            logger.warning("Failed to record token validation", token_id=token_id, error=str(e))
            return False

    def track_validation(self, **attempt: Any) -> None:
        """Record an attempt in the background."""
        spawn(self.record_validation(**attempt), name="token-analytics")

    async def get_token_metrics(self, group_id: str | None = None, days: int = 7) -> dict[str, Any]:
        """
        Generation and validation statistics over the last ``days`` days.

        Args:
            group_id: Restrict to prompts of one group
            days: Look-back window

        Returns:
            dict with generation, validation and daily breakdowns
        """
        days = max(1, days)
        scope = (days, group_id, group_id)

        generation = await fetch_one(
            """
            SELECT
                COUNT(*) AS total,
                COUNT(*) FILTER (WHERE t.usage_count = 0 AND t.expires_at < NOW()) AS expired_unused,
                COUNT(*) FILTER (WHERE t.status = 'revoked') AS revoked
            FROM magic_tokens t
            JOIN availability_prompts p ON p.id = t.prompt_id
            WHERE t.created_at >= NOW() - make_interval(days => %s)
              AND (%s::uuid IS NULL OR p.group_id = %s::uuid)
            """,
            scope,
        ) or {}

        validation = await fetch_one(
            """
            SELECT
                COUNT(*) AS total,
                COUNT(*) FILTER (WHERE v.validation_success) AS successful,
                COUNT(*) FILTER (WHERE v.grace_period_used) AS grace_used
            FROM magic_token_validations v
            LEFT JOIN magic_tokens t ON t.token_id = v.token_id
            LEFT JOIN availability_prompts p ON p.id = t.prompt_id
            WHERE v.validated_at >= NOW() - make_interval(days => %s)
              AND (%s::uuid IS NULL OR p.group_id = %s::uuid)
            """,
            scope,
        ) or {}

        failure_rows = await fetch_all(
            """
            SELECT v.failure_reason, COUNT(*) AS count
            FROM magic_token_validations v
            LEFT JOIN magic_tokens t ON t.token_id = v.token_id
            LEFT JOIN availability_prompts p ON p.id = t.prompt_id
            WHERE v.validated_at >= NOW() - make_interval(days => %s)
              AND (%s::uuid IS NULL OR p.group_id = %s::uuid)
              AND NOT v.validation_success
            GROUP BY v.failure_reason
            ORDER BY count DESC
            """,
            scope,
        )

        daily_rows = await fetch_all(
            """
            SELECT
                date_trunc('day', v.validated_at)::date AS day,
                COUNT(*) AS total,
                COUNT(*) FILTER (WHERE v.validation_success) AS successful
            FROM magic_token_validations v
            LEFT JOIN magic_tokens t ON t.token_id = v.token_id
            LEFT JOIN availability_prompts p ON p.id = t.prompt_id
            WHERE v.validated_at >= NOW() - make_interval(days => %s)
              AND (%s::uuid IS NULL OR p.group_id = %s::uuid)
            GROUP BY day
            ORDER BY day
            """,
            scope,
        )

        generated = generation.get("total") or 0
        expired_unused = generation.get("expired_unused") or 0
        validated = validation.get("total") or 0
        successful = validation.get("successful") or 0

        return {
            "period_days": days,
            "group_id": group_id,
            "generation": {
                "total": generated,
                "per_day": round(generated / days, 2),
                "expired_unused": expired_unused,
                "expired_unused_rate": _rate(expired_unused, generated),
                "revoked": generation.get("revoked") or 0,
            },
            "validation": {
                "total": validated,
                "successful": successful,
                "failed": validated - successful,
                "success_rate": _rate(successful, validated),
                "grace_period_used": validation.get("grace_used") or 0,
                "failure_reasons": {
                    row["failure_reason"] or "unknown": row["count"] for row in failure_rows
                },
            },
            "daily": [
                {
                    "date": row["day"].isoformat() if isinstance(row["day"], date) else str(row["day"]),
                    "total": row["total"],
                    "successful": row["successful"],
                    "failed": row["total"] - row["successful"],
                }
                for row in daily_rows
            ],
        }


token_analytics_service = TokenAnalyticsService()
