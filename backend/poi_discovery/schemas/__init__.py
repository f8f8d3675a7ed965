"""
Pydantic schemas for the POI discovery API.
"""

from .poi import (
    POI,
    CacheStatsResponse,
    DiscoveryMeta,
    DiscoveryResponse,
    GeneratedPOICandidate,
    POISource,
    ResolutionSource,
)

__all__ = [
    "POI",
    "CacheStatsResponse",
    "DiscoveryMeta",
    "DiscoveryResponse",
    "GeneratedPOICandidate",
    "POISource",
    "ResolutionSource",
]
