# app/models/api/availability_response.py
"""
Availability API response models.
Used by routes for output formatting.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from app.features.availability.domain.models import AvailabilityResponse, Suggestion


class ValidatedUser(BaseModel):
    name: str | None = Field(None, description="Display name embedded in the link")


class ValidateTokenResponse(BaseModel):
    """Successful magic link check."""

    model_config = ConfigDict(populate_by_name=True)

    valid: bool = Field(..., description="Always true; failures are HTTP 400")
    user: ValidatedUser
    prompt_id: str = Field(..., description="Prompt the link belongs to")
    expires_at: datetime | None = Field(None, alias="expiresAt")
    grace_used: bool = Field(default=False, alias="graceUsed")


class SubmitAvailabilityResponse(BaseModel):
    success: bool
    response_id: str
    updated: bool = Field(..., description="True when an earlier submission was replaced")


class TimeSlotOut(BaseModel):
    start: datetime
    end: datetime
    preference: str


class StoredAvailabilityResponse(BaseModel):
    """The caller's own response, for pre-filling the form."""

    id: str
    prompt_id: str
    time_slots: list[TimeSlotOut]
    user_timezone: str
    is_unavailable: bool
    submitted_at: datetime | None = None

    @classmethod
    def from_domain(cls, response: AvailabilityResponse) -> "StoredAvailabilityResponse":
        return cls(
            id=response.id,
            prompt_id=response.prompt_id,
            time_slots=[
                TimeSlotOut(start=s.start, end=s.end, preference=s.preference)
                for s in response.time_slots
            ],
            user_timezone=response.user_timezone,
            is_unavailable=response.is_unavailable,
            submitted_at=response.submitted_at,
        )


class SuggestionOut(BaseModel):
    id: str
    prompt_id: str
    suggested_start: datetime
    suggested_end: datetime
    participant_count: int
    participant_ids: list[str]
    preferred_count: int
    score: float
    meets_minimum: bool
    converted_to_event_id: str | None = None
    has_tentative_holds: bool = False

    @classmethod
    def from_domain(cls, suggestion: Suggestion) -> "SuggestionOut":
        return cls(
            id=suggestion.id,
            prompt_id=suggestion.prompt_id,
            suggested_start=suggestion.start,
            suggested_end=suggestion.end,
            participant_count=suggestion.participant_count,
            participant_ids=suggestion.participant_ids,
            preferred_count=suggestion.preferred_count,
            score=suggestion.score,
            meets_minimum=suggestion.meets_minimum,
            converted_to_event_id=suggestion.converted_to_event_id,
            has_tentative_holds=bool(suggestion.tentative_holds),
        )


class SuggestionListResponse(BaseModel):
    prompt_id: str
    suggestions: list[SuggestionOut]
    results_hidden: bool = Field(default=False, description="Blind voting is hiding results")


class AggregationResponse(BaseModel):
    success: bool
    suggestion_count: int
    message: str
    holds: dict[str, Any] | None = None


class ConversionResponse(BaseModel):
    success: bool
    message: str
    event_id: str | None = None
    event: dict[str, Any] | None = None
    already_converted: bool = False


class PromptStatusResponse(BaseModel):
    success: bool
    prompt_id: str
    status: str | None = None
    message: str
    jobs: dict[str, Any] | None = None


class RevokeTokenResponse(BaseModel):
    token_id: str
    revoked: bool
