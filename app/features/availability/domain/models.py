"""
Domain models for the availability-consensus feature.

Plain dataclasses shared by repositories, services, jobs and the API layer.
The few helpers here are pure functions over those shapes (time keys,
scoring, lifecycle rules) so they can be tested without a database.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Literal

PromptStatus = Literal["pending", "active", "closed", "converted"]
Preference = Literal["preferred", "acceptable"]

PREFERENCES: tuple[str, ...] = ("preferred", "acceptable")
LEGACY_PREFERENCE_ALIASES = {"if-need-be": "acceptable"}

# Status a prompt may move to -> statuses it may move from.
ALLOWED_PREDECESSORS: dict[str, tuple[str, ...]] = {
    "active": ("pending",),
    "closed": ("pending", "active"),
    "converted": ("pending", "active", "closed"),
}

PREFERRED_WEIGHT = 0.5
PARTICIPANT_WEIGHT = 1.0

ADMIN_ROLES = frozenset({"owner", "admin"})


def to_utc(value: datetime) -> datetime:
    """Normalise an instant to UTC; naive values are taken to already be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def compute_deadline(start: datetime, hours: float) -> datetime:
    """Add an absolute number of hours. Wall-clock fields are never touched."""
    return to_utc(start) + timedelta(hours=hours)


def milliseconds_between(earlier: datetime, later: datetime) -> int:
    return int((to_utc(later) - to_utc(earlier)).total_seconds() * 1000)


def score_window(participant_count: int, preferred_count: int) -> float:
    return round(participant_count * PARTICIPANT_WEIGHT + preferred_count * PREFERRED_WEIGHT, 2)


def normalize_preference(value: str | None) -> str:
    if value is None:
        return "acceptable"
    return LEGACY_PREFERENCE_ALIASES.get(value, value)


def can_transition(current: str, target: str) -> bool:
    return current in ALLOWED_PREDECESSORS.get(target, ())


@dataclass(slots=True, frozen=True)
class TimeSlot:
    """One window a participant offered, with their preference for it."""

    start: datetime
    end: datetime
    preference: str = "acceptable"

    @property
    def key(self) -> tuple[datetime, datetime]:
        return (to_utc(self.start), to_utc(self.end))

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> "TimeSlot":
        return cls(
            start=datetime.fromisoformat(data["start"]),
            end=datetime.fromisoformat(data["end"]),
            preference=normalize_preference(data.get("preference")),
        )

    def to_json(self) -> dict[str, str]:
        return {
            "start": to_utc(self.start).isoformat(),
            "end": to_utc(self.end).isoformat(),
            "preference": self.preference,
        }


@dataclass(slots=True)
class Prompt:
    """Represents an availability_prompts row."""

    id: str
    group_id: str
    deadline: datetime
    status: str
    activity_id: str | None = None
    period_key: str | None = None
    auto_schedule_enabled: bool = True
    blind_voting_enabled: bool = False
    custom_message: str | None = None
    created_at: datetime | None = None

    def accepts_responses(self, now: datetime) -> bool:
        return self.status == "active" and to_utc(now) < to_utc(self.deadline)

    def deadline_passed(self, now: datetime) -> bool:
        return to_utc(now) >= to_utc(self.deadline)


@dataclass(slots=True)
class AvailabilityResponse:
    """Represents an availability_responses row."""

    id: str
    prompt_id: str
    user_id: str
    time_slots: list[TimeSlot]
    user_timezone: str
    is_unavailable: bool = False
    submitted_at: datetime | None = None
    magic_token_used: str | None = None
    last_reminded_at: datetime | None = None
    reminder_count: int = 0

    @property
    def submitted(self) -> bool:
        return self.submitted_at is not None


@dataclass(slots=True)
class Suggestion:
    """A scored candidate window derived from every submitted response."""

    prompt_id: str
    start: datetime
    end: datetime
    participant_ids: list[str]
    preferred_count: int
    score: float
    meets_minimum: bool
    id: str | None = None
    converted_to_event_id: str | None = None
    tentative_holds: dict[str, str] | None = None

    @property
    def participant_count(self) -> int:
        return len(self.participant_ids)

    @property
    def key(self) -> tuple[datetime, datetime]:
        return (to_utc(self.start), to_utc(self.end))

    @property
    def duration_minutes(self) -> int:
        minutes = round((to_utc(self.end) - to_utc(self.start)).total_seconds() / 60)
        return minutes if minutes > 0 else 60


@dataclass(slots=True)
class Member:
    """A group member as read from the users / user_groups tables."""

    id: str
    user_id: str
    username: str | None
    email: str | None
    role: str = "member"
    timezone: str = "UTC"
    email_notifications_enabled: bool = True
    google_calendar_enabled: bool = False
    calendar_access_token: str | None = None
    calendar_refresh_token: str | None = None

    @property
    def has_calendar(self) -> bool:
        return self.google_calendar_enabled and bool(self.calendar_access_token)

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES

    @property
    def display_name(self) -> str:
        return self.username or "there"


@dataclass(slots=True)
class Event:
    """Represents an events row created by a conversion."""

    id: str
    group_id: str
    activity_id: str | None
    start_date: datetime
    duration_minutes: int
    status: str = "scheduled"
    participant_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "group_id": self.group_id,
            "activity_id": self.activity_id,
            "start_date": to_utc(self.start_date).isoformat(),
            "duration_minutes": self.duration_minutes,
            "status": self.status,
            "participant_count": self.participant_count,
        }


@dataclass(slots=True)
class Activity:
    id: str
    name: str
    min_players: int | None = None


@dataclass(slots=True)
class PromptContext:
    """Everything a notification about a prompt needs to name it."""

    prompt: Prompt
    group_name: str
    activity: Activity | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def activity_name(self) -> str:
        return self.activity.name if self.activity else "game night"


def results_visible(prompt: Prompt, *, is_admin: bool, has_submitted: bool, now: datetime) -> bool:
    """Blind voting hides aggregate results until the caller submits or the deadline passes."""
    if not prompt.blind_voting_enabled or is_admin or has_submitted:
        return True
    return prompt.deadline_passed(now)
