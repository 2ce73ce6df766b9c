"""
HTTP routes for the availability feature.
"""

from .router import InvalidLinkError, router

__all__ = ["InvalidLinkError", "router"]
