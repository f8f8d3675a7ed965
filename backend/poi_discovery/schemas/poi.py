# backend/poi_discovery/schemas/poi.py
"""
Pydantic schemas for points of interest and discovery responses.

POI is the record that flows through every layer of the resolution
pipeline (caches, spatial store, generative fallback). Coordinates are
bounded at construction time, so an out-of-range POI cannot exist.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .base import StandardizedModel


class POISource(str, Enum):
    """Where a POI came from."""

    SPATIAL_STORE = "spatial-store"
    GENERATED = "generated"


class ResolutionSource(str, Enum):
    """Which pipeline layer answered a request."""

    CACHE = "cache"
    SEMANTIC_CACHE = "semantic_cache"
    DATABASE = "database"
    GENERATED = "generated"


# =============================================================================
# POI record
# =============================================================================


class POI(StandardizedModel):
    """A point of interest with location and descriptive attributes."""

    id: str = Field(..., min_length=1, description="Opaque POI identifier")
    name: str = Field(..., min_length=1, description="Display name")
    category: str = Field("attraction", description="Category label, e.g. museum or cafe")
    latitude: float = Field(..., ge=-90, le=90, description="WGS84 latitude")
    longitude: float = Field(..., ge=-180, le=180, description="WGS84 longitude")
    description: str = Field("", description="Free-text description")

    address: Optional[str] = Field(None, description="Street address")
    price_level: Optional[int] = Field(None, ge=0, le=4, description="0 (free) to 4 (luxury)")
    rating: Optional[float] = Field(None, ge=0, le=5, description="Average rating")
    tags: List[str] = Field(default_factory=list, description="Free-form tags")
    opening_hours: Optional[Dict[str, Any]] = Field(None, description="Opening hours by day")
    city_id: Optional[str] = Field(None, description="City scope identifier")

    source: POISource = Field(POISource.SPATIAL_STORE, description="Provenance of the record")
    rank_score: Optional[float] = Field(
        None,
        description=(
            "Ranking value. Distance in km for location lookups, cosine similarity "
            "for semantic lookups, hybrid blend for hybrid lookups."
        ),
    )
    distance_km: Optional[float] = Field(None, ge=0, description="Distance from request point")
    embedding: Optional[List[float]] = Field(None, exclude=True, repr=False)

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("name must not be blank")
        return stripped


# =============================================================================
# Generative fallback payload
# =============================================================================

_PRICE_SYMBOLS = {"free": 0, "$": 1, "$$": 2, "$$$": 3, "$$$$": 4}


class GeneratedPOICandidate(BaseModel):
    """
    A POI as emitted by the completion model, before enrichment.

    Coordinates may be missing or out of range here; enrichment decides
    which candidates survive.
    """

    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    name: str = ""
    category: str = "attraction"
    description: str = ""
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    address: Optional[str] = None
    price_level: Optional[int] = None
    rating: Optional[float] = None
    tags: List[str] = Field(default_factory=list)
    opening_hours: Optional[Dict[str, Any]] = None

    @field_validator("name", "category", "description", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("price_level", mode="before")
    @classmethod
    def _coerce_price_level(cls, value: Any) -> Optional[int]:
        if value is None or isinstance(value, bool):
            return None
        if isinstance(value, str):
            return _PRICE_SYMBOLS.get(value.strip().lower())
        try:
            level = int(value)
        except (TypeError, ValueError):
            return None
        return level if 0 <= level <= 4 else None

    @field_validator("rating", mode="before")
    @classmethod
    def _coerce_rating(cls, value: Any) -> Optional[float]:
        try:
            rating = float(value)
        except (TypeError, ValueError):
            return None
        return rating if 0 <= rating <= 5 else None

    @field_validator("tags", mode="before")
    @classmethod
    def _coerce_tags(cls, value: Any) -> List[str]:
        if isinstance(value, str):
            return [tag.strip() for tag in value.split(",") if tag.strip()]
        if not isinstance(value, (list, tuple)):
            return []
        return [str(tag) for tag in value if tag]

    @field_validator("opening_hours", mode="before")
    @classmethod
    def _coerce_opening_hours(cls, value: Any) -> Optional[Dict[str, Any]]:
        if value is None or isinstance(value, dict):
            return value
        return {"text": str(value)}


# =============================================================================
# API responses
# =============================================================================


class DiscoveryMeta(BaseModel):
    """How a discovery request was resolved."""

    resolution_source: ResolutionSource = Field(..., description="Layer that answered")
    total_results: int = Field(..., ge=0)
    latency_ms: int = Field(..., ge=0)
    similarity: Optional[float] = Field(None, description="Semantic cache similarity, if any")
    degraded: bool = Field(False, description="True if a non-critical layer failed")
    stages: List[str] = Field(default_factory=list, description="Pipeline stages visited")
    interaction_id: Optional[str] = Field(None, description="Generation record for fallbacks")


class DiscoveryResponse(BaseModel):
    """Ranked POIs with resolution metadata."""

    results: List[POI]
    meta: DiscoveryMeta


class CacheStatsResponse(BaseModel):
    vector_cache: Dict[str, Any]
    embedding_cache: Dict[str, Any]
    background: Dict[str, Any]
