"""
Pipeline components for the availability feature.

Contains the suggestion recompute that runs after submissions and at the
deadline.
"""

__all__ = ["aggregation"]
