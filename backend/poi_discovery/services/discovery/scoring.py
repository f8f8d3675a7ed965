# backend/poi_discovery/services/discovery/scoring.py
"""
Geographic and semantic scoring for discovery results.

All ranking in the pipeline goes through these helpers:
- haversine_km: great-circle distance on a spherical Earth (R = 6371 km)
- cosine_similarity: embedding similarity, 0.0 for unusable vectors
- hybrid_score: (1 - w) * proximity + w * similarity
"""
from __future__ import annotations

import math
from typing import List, Optional, Sequence

from poi_discovery.core.exceptions import ValidationError
from poi_discovery.schemas.poi import POI

EARTH_RADIUS_KM = 6371.0


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two coordinates in kilometers."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(a)))


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Cosine similarity of two vectors.

    Returns 0.0 when the vectors differ in length or either has zero norm.
    """
    if len(a) != len(b) or not a:
        return 0.0

    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for x, y in zip(a, b):
        dot += x * y
        norm_a += x * x
        norm_b += y * y

    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return dot / (math.sqrt(norm_a) * math.sqrt(norm_b))


def proximity_score(distance_km: float) -> float:
    """Map a distance to (0, 1]; 1.0 at zero distance, decreasing monotonically."""
    return 1.0 / (1.0 + max(0.0, distance_km))


def validate_semantic_weight(weight: float) -> float:
    """Reject weights outside [0, 1]. Never clamps."""
    if weight is None or isinstance(weight, bool) or not isinstance(weight, (int, float)):
        raise ValidationError(
            "semantic_weight must be a number", field="semantic_weight", value=weight
        )
    if math.isnan(weight) or weight < 0.0 or weight > 1.0:
        raise ValidationError(
            "semantic_weight must be between 0 and 1",
            field="semantic_weight",
            value=weight,
        )
    return float(weight)


def hybrid_score(distance_km: float, similarity: Optional[float], weight: float) -> float:
    """
    Blend proximity and semantic similarity.

    A POI without an embedding (similarity None) contributes only its
    weighted proximity term.
    """
    score = (1.0 - weight) * proximity_score(distance_km)
    if similarity is not None:
        score += weight * similarity
    return score


class HybridScorer:
    """Ranks POIs around a point by blended proximity and query similarity."""

    def __init__(self, weight: float) -> None:
        self.weight = validate_semantic_weight(weight)

    def score(
        self,
        poi: POI,
        lat: float,
        lon: float,
        query_embedding: Optional[Sequence[float]],
    ) -> POI:
        distance = (
            poi.distance_km
            if poi.distance_km is not None
            else haversine_km(lat, lon, poi.latitude, poi.longitude)
        )
        similarity: Optional[float] = None
        if query_embedding is not None and poi.embedding:
            similarity = cosine_similarity(query_embedding, poi.embedding)
        return poi.model_copy(
            update={
                "distance_km": distance,
                "rank_score": hybrid_score(distance, similarity, self.weight),
            }
        )

    def rank(
        self,
        pois: Sequence[POI],
        lat: float,
        lon: float,
        query_embedding: Optional[Sequence[float]],
    ) -> List[POI]:
        """Score every POI and sort by hybrid score descending, nearest first on ties."""
        scored = [self.score(poi, lat, lon, query_embedding) for poi in pois]
        scored.sort(key=lambda p: (-(p.rank_score or 0.0), p.distance_km or 0.0))
        return scored


def rank_by_distance(pois: Sequence[POI], lat: float, lon: float) -> List[POI]:
    """Annotate distance (also used as rank_score) and sort ascending."""
    ranked: List[POI] = []
    for poi in pois:
        distance = haversine_km(lat, lon, poi.latitude, poi.longitude)
        ranked.append(poi.model_copy(update={"distance_km": distance, "rank_score": distance}))
    ranked.sort(key=lambda p: p.distance_km or 0.0)
    return ranked
