"""
Aggregation package for the availability feature.

Turns submitted responses into scored suggestions stored per prompt.
"""

from .service import (
    AggregationError,
    AggregationResult,
    SuggestionAggregationService,
    suggestion_aggregation_service,
)

__all__ = [
    "AggregationError",
    "AggregationResult",
    "SuggestionAggregationService",
    "suggestion_aggregation_service",
]
