"""
Advisory Package

Optional natural-language investment advice for the dashboard. Any failure
of the text-generation service resolves to a fixed fallback string.
"""

from .insight import FALLBACK_INSIGHT, ExternalServiceError, InsightService

__all__ = [
    "FALLBACK_INSIGHT",
    "ExternalServiceError",
    "InsightService",
]
