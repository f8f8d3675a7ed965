# backend/poi_discovery/services/discovery/enrichment.py
"""
Turn generated POI candidates into POI records.

- assign identifiers
- validate and repair coordinates, drop what cannot be placed
- keep only places inside the search radius
- mark source="generated" and annotate distance
- merge same-name candidates that sit within the dedup radius, including
  places that are already stored
"""
from __future__ import annotations

import logging
import math
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from pydantic import ValidationError as PydanticValidationError

from poi_discovery.core.ulid_helper import generate_ulid, is_valid_ulid
from poi_discovery.schemas.poi import POI, GeneratedPOICandidate, POISource
from poi_discovery.services.discovery.scoring import haversine_km

logger = logging.getLogger(__name__)

DEFAULT_DEDUP_RADIUS_M = 100.0


def is_valid_coordinate(lat: Optional[float], lon: Optional[float]) -> bool:
    if lat is None or lon is None:
        return False
    if not (math.isfinite(lat) and math.isfinite(lon)):
        return False
    return -90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0


def repair_coordinates(
    lat: Optional[float], lon: Optional[float]
) -> Optional[Tuple[float, float]]:
    """
    Return a usable (lat, lon) pair or None.

    Swapped pairs (latitude outside +-90 but longitude inside it) are
    flipped back. (0, 0) is treated as a missing location.
    """
    if lat is None or lon is None:
        return None
    if not (math.isfinite(lat) and math.isfinite(lon)):
        return None
    if lat == 0.0 and lon == 0.0:
        return None
    if is_valid_coordinate(lat, lon):
        return lat, lon
    if is_valid_coordinate(lon, lat):
        return lon, lat
    return None


def _name_key(name: str) -> str:
    return " ".join(name.lower().split())


def _merge(primary: POI, duplicate: POI) -> POI:
    """Fill gaps in the kept record from its duplicate."""
    updates: Dict[str, object] = {}
    if not primary.description and duplicate.description:
        updates["description"] = duplicate.description
    if primary.address is None and duplicate.address is not None:
        updates["address"] = duplicate.address
    if primary.price_level is None and duplicate.price_level is not None:
        updates["price_level"] = duplicate.price_level
    if primary.rating is None and duplicate.rating is not None:
        updates["rating"] = duplicate.rating
    if primary.opening_hours is None and duplicate.opening_hours is not None:
        updates["opening_hours"] = duplicate.opening_hours
    extra_tags = [t for t in duplicate.tags if t not in primary.tags]
    if extra_tags:
        updates["tags"] = [*primary.tags, *extra_tags]
    return primary.model_copy(update=updates) if updates else primary


def is_duplicate(a: POI, b: POI, radius_m: float = DEFAULT_DEDUP_RADIUS_M) -> bool:
    """Same name (case/space-insensitive) and within radius_m of each other."""
    if _name_key(a.name) != _name_key(b.name):
        return False
    return haversine_km(a.latitude, a.longitude, b.latitude, b.longitude) * 1000.0 <= radius_m


def dedupe_pois(
    pois: Iterable[POI],
    radius_m: float = DEFAULT_DEDUP_RADIUS_M,
    existing: Sequence[POI] = (),
) -> List[POI]:
    """
    Collapse same-name POIs within radius_m into one record.

    The first occurrence wins and absorbs missing attributes from later
    ones. A POI that duplicates an entry in ``existing`` is replaced by
    that entry, so a place that is already stored keeps its identifier.
    """
    kept: List[POI] = []
    for poi in pois:
        stored = next((other for other in existing if is_duplicate(poi, other, radius_m)), None)
        if stored is not None:
            logger.debug(f"Generated POI {poi.name!r} matches stored POI {stored.id}")
            poi = stored
        for index, other in enumerate(kept):
            if other.id == poi.id:
                break
            if is_duplicate(poi, other, radius_m):
                kept[index] = _merge(other, poi)
                break
        else:
            kept.append(poi)
    return kept


def enrich_candidates(
    candidates: Sequence[GeneratedPOICandidate],
    lat: float,
    lon: float,
    radius_km: float,
    *,
    dedup_radius_m: float = DEFAULT_DEDUP_RADIUS_M,
    existing: Sequence[POI] = (),
) -> List[POI]:
    """
    Build POI records from generated candidates, nearest first.

    Candidates without a name, without a placeable location, or outside
    the search radius are dropped. Candidates that duplicate a POI in
    ``existing`` come back as that stored POI.
    """
    enriched: List[POI] = []
    dropped = 0

    for candidate in candidates:
        name = (candidate.name or "").strip()
        coords = repair_coordinates(candidate.latitude, candidate.longitude)
        if not name or coords is None:
            dropped += 1
            continue

        poi_lat, poi_lon = coords
        distance = haversine_km(lat, lon, poi_lat, poi_lon)
        if distance > radius_km:
            dropped += 1
            continue

        try:
            poi = POI(
                id=candidate.id if is_valid_ulid(candidate.id) else generate_ulid(),
                name=name,
                category=(candidate.category or "attraction").strip().lower() or "attraction",
                latitude=poi_lat,
                longitude=poi_lon,
                description=(candidate.description or "").strip(),
                address=candidate.address,
                price_level=candidate.price_level,
                rating=candidate.rating,
                tags=candidate.tags,
                opening_hours=candidate.opening_hours,
                source=POISource.GENERATED,
                distance_km=distance,
                rank_score=distance,
            )
        except PydanticValidationError as e:
            logger.debug(f"Dropping generated POI {name!r}: {e.error_count()} validation errors")
            dropped += 1
            continue
        enriched.append(poi)

    if dropped:
        logger.info(f"Enrichment dropped {dropped} of {len(candidates)} generated candidates")

    placed: List[POI] = []
    for poi in dedupe_pois(enriched, dedup_radius_m, existing):
        distance = haversine_km(lat, lon, poi.latitude, poi.longitude)
        if distance <= radius_km:
            placed.append(poi.model_copy(update={"distance_km": distance, "rank_score": distance}))
    placed.sort(key=lambda p: p.distance_km or 0.0)
    return placed
