# app/models/api/availability_request.py
"""
Availability API request models.
Used by routes for input validation.
"""

from datetime import datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from app.features.availability.domain.models import (
    LEGACY_PREFERENCE_ALIASES,
    PREFERENCES,
    TimeSlot,
)


class ValidateTokenRequest(BaseModel):
    """Request to check a magic link before showing the form."""

    model_config = ConfigDict(populate_by_name=True)

    token: str = Field(..., min_length=1, description="Magic link token")
    form_loaded_at: datetime | None = Field(
        default=None, alias="formLoadedAt", description="When the form was opened"
    )


class TimeSlotInput(BaseModel):
    """One offered window."""

    start: datetime = Field(..., description="Window start (ISO 8601 with offset)")
    end: datetime = Field(..., description="Window end (ISO 8601 with offset)")
    preference: str = Field(default="acceptable", description="preferred or acceptable")

    @field_validator("preference", mode="before")
    @classmethod
    def normalize_preference(cls, value: str | None) -> str:
        if value is None:
            return "acceptable"
        value = LEGACY_PREFERENCE_ALIASES.get(value, value)
        if value not in PREFERENCES:
            raise ValueError(f"preference must be one of {', '.join(PREFERENCES)}")
        return value

    @model_validator(mode="after")
    def check_order(self) -> "TimeSlotInput":
        if self.start >= self.end:
            raise ValueError("start must be before end")
        return self

    def to_domain(self) -> TimeSlot:
        return TimeSlot(start=self.start, end=self.end, preference=self.preference)


class SubmitAvailabilityRequest(BaseModel):
    """Request for storing a participant's availability."""

    model_config = ConfigDict(populate_by_name=True)

    magic_token: str = Field(..., min_length=1, description="Magic link token")
    time_slots: list[TimeSlotInput] = Field(default_factory=list, description="Offered windows")
    user_timezone: str = Field(..., min_length=1, description="IANA timezone of the submitter")
    is_unavailable: bool = Field(default=False, description="No window works")
    form_loaded_at: datetime | None = Field(default=None, alias="formLoadedAt")

    @field_validator("user_timezone")
    @classmethod
    def check_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone '{value}'") from e
        return value

    @model_validator(mode="after")
    def require_slots(self) -> "SubmitAvailabilityRequest":
        if not self.is_unavailable and not self.time_slots:
            raise ValueError("time_slots is required unless is_unavailable is true")
        return self


class ConvertSuggestionRequest(BaseModel):
    """Options for converting a suggestion into an event."""

    comments: str | None = Field(default=None, max_length=1000, description="Event comments")
    send_emails: bool = Field(default=True, description="Email participants a confirmation")
