# backend/poi_discovery/services/discovery/memory_store.py
"""
In-memory POI store for local development and tests.

Implements the spatial, persistence and backfill ports with the same
semantics as the SQLAlchemy repository.
"""
from __future__ import annotations

import threading
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional, Sequence, Tuple

from poi_discovery.core.ulid_helper import generate_ulid
from poi_discovery.schemas.poi import POI, POISource
from poi_discovery.services.discovery.enrichment import DEFAULT_DEDUP_RADIUS_M, is_duplicate
from poi_discovery.services.discovery.scoring import cosine_similarity, haversine_km

if TYPE_CHECKING:
    from poi_discovery.services.discovery.generation_worker import GenerationInteraction


class InMemoryPOIStore:
    def __init__(
        self, pois: Iterable[POI] = (), dedup_radius_m: float = DEFAULT_DEDUP_RADIUS_M
    ) -> None:
        self.dedup_radius_m = dedup_radius_m
        self._pois: Dict[str, POI] = {}
        self._interactions: Dict[str, "GenerationInteraction"] = {}
        self._poi_interaction: Dict[str, Optional[str]] = {}
        self._lock = threading.Lock()
        self.find_near_calls = 0
        self.find_similar_calls = 0
        for poi in pois:
            self.add(poi)

    def add(self, poi: POI) -> POI:
        with self._lock:
            self._pois[poi.id] = poi
        return poi

    def all(self) -> List[POI]:
        with self._lock:
            return list(self._pois.values())

    @property
    def interactions(self) -> List["GenerationInteraction"]:
        with self._lock:
            return list(self._interactions.values())

    def interaction_for(self, poi_id: str) -> Optional[str]:
        with self._lock:
            return self._poi_interaction.get(poi_id)

    # Spatial port

    def find_near(
        self,
        lat: float,
        lon: float,
        radius_m: float,
        category: Optional[str] = None,
    ) -> List[POI]:
        with self._lock:
            self.find_near_calls += 1
            pois = list(self._pois.values())

        wanted = category.strip().lower() if category else None
        matches: List[Tuple[float, POI]] = []
        for poi in pois:
            if wanted and poi.category.lower() != wanted:
                continue
            distance_km = haversine_km(lat, lon, poi.latitude, poi.longitude)
            if distance_km * 1000.0 <= radius_m:
                matches.append((distance_km, poi))

        matches.sort(key=lambda pair: pair[0])
        return [
            poi.model_copy(update={"distance_km": distance, "rank_score": distance})
            for distance, poi in matches
        ]

    def find_similar(
        self,
        embedding: Sequence[float],
        city_id: Optional[str] = None,
        limit: int = 10,
    ) -> List[POI]:
        with self._lock:
            self.find_similar_calls += 1
            pois = list(self._pois.values())

        scored: List[Tuple[float, POI]] = []
        for poi in pois:
            if not poi.embedding:
                continue
            if city_id and (poi.city_id or "").lower() != city_id.lower():
                continue
            scored.append((cosine_similarity(embedding, poi.embedding), poi))

        scored.sort(key=lambda pair: pair[0], reverse=True)
        return [
            poi.model_copy(update={"rank_score": similarity})
            for similarity, poi in scored[: max(0, limit)]
        ]

    # Persistence port

    def save_generation_interaction(self, record: "GenerationInteraction") -> str:
        with self._lock:
            self._interactions[record.id] = record
        return record.id

    def save_generated_pois(
        self,
        user_id: Optional[str],
        pois: Sequence[POI],
        interaction_id: Optional[str],
    ) -> int:
        inserted = 0
        with self._lock:
            existing = list(self._pois.values())
            for poi in pois:
                if not poi.name.strip() or (poi.latitude == 0.0 and poi.longitude == 0.0):
                    continue
                if any(is_duplicate(poi, other, self.dedup_radius_m) for other in existing):
                    continue
                stored = poi.model_copy(
                    update={
                        "id": poi.id or generate_ulid(),
                        "source": POISource.GENERATED,
                        "distance_km": None,
                        "rank_score": None,
                    }
                )
                self._pois[stored.id] = stored
                self._poi_interaction[stored.id] = interaction_id
                existing.append(stored)
                inserted += 1
        return inserted

    # Backfill store

    def list_pois_missing_embedding(self, limit: int, after_id: Optional[str] = None) -> List[POI]:
        with self._lock:
            missing = sorted(
                (p for p in self._pois.values() if not p.embedding),
                key=lambda p: p.id,
            )
        if after_id is not None:
            missing = [p for p in missing if p.id > after_id]
        return missing[:limit]

    def update_poi_embedding(self, poi_id: str, embedding: Sequence[float], model: str) -> bool:
        with self._lock:
            poi = self._pois.get(poi_id)
            if poi is None:
                return False
            self._pois[poi_id] = poi.model_copy(update={"embedding": list(embedding)})
            return True
