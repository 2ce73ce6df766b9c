"""
Domain subpackage for the availability feature.
"""

from .models import (
    Activity,
    AvailabilityResponse,
    Event,
    Member,
    Prompt,
    PromptContext,
    Suggestion,
    TimeSlot,
)

__all__ = [
    "Activity",
    "AvailabilityResponse",
    "Event",
    "Member",
    "Prompt",
    "PromptContext",
    "Suggestion",
    "TimeSlot",
]
