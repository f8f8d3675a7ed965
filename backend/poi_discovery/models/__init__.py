"""
Database models for the POI discovery service.
"""

from .poi import LLMInteraction, PointOfInterest

__all__ = [
    "LLMInteraction",
    "PointOfInterest",
]
