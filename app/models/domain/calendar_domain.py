# app/models/domain/calendar_domain.py
"""
Calendar Domain Models
Shapes exchanged with the Google Calendar client.
"""

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, Generic, TypeVar

T = TypeVar("T")

BUSY_SLOT_MINUTES = 30


def parse_google_datetime(value: str | None) -> datetime | None:
    """Parse an RFC 3339 timestamp as returned by Google."""
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


class TentativeHold:
    """A provisional calendar entry blocking a suggested window."""

    def __init__(
        self,
        start: datetime,
        end: datetime,
        summary: str,
        description: str = "",
        timezone: str = "UTC",
        suggestion_id: str | None = None,
    ):
        self.start = start
        self.end = end
        self.summary = summary
        self.description = description
        self.timezone = timezone
        self.suggestion_id = suggestion_id

    def to_api_body(self) -> dict[str, Any]:
        """Event body: tentative, blocking, no reminders, tagged for cleanup."""
        private = {"tentativeHold": "true"}
        if self.suggestion_id:
            private["suggestionId"] = self.suggestion_id
        return {
            "summary": self.summary,
            "description": self.description,
            "start": {"dateTime": self.start.isoformat(), "timeZone": self.timezone},
            "end": {"dateTime": self.end.isoformat(), "timeZone": self.timezone},
            "status": "tentative",
            "transparency": "opaque",
            "reminders": {"useDefault": False, "overrides": []},
            "extendedProperties": {"private": private},
        }


@dataclass(slots=True)
class BusyPeriod:
    start: datetime
    end: datetime


@dataclass(slots=True)
class CalendarResult(Generic[T]):
    """A calendar call result plus the access token if it had to be refreshed."""

    value: T
    refreshed_access_token: str | None = None


def split_into_slots(periods: list[BusyPeriod], minutes: int = BUSY_SLOT_MINUTES) -> list[BusyPeriod]:
    """Expand busy periods into aligned fixed-size blocks (UTC), merged and sorted."""
    step = timedelta(minutes=minutes)
    starts: set[datetime] = set()
    for period in periods:
        start = period.start.astimezone(UTC)
        end = period.end.astimezone(UTC)
        cursor = start.replace(second=0, microsecond=0)
        cursor -= timedelta(minutes=cursor.minute % minutes)
        while cursor < end:
            starts.add(cursor)
            cursor += step
    return [BusyPeriod(start=s, end=s + step) for s in sorted(starts)]
