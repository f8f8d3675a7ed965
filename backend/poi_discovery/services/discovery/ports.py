# backend/poi_discovery/services/discovery/ports.py
"""
Interfaces the resolution pipeline consumes.

Spatial and persistence ports are synchronous (they wrap SQLAlchemy
sessions); the orchestrator runs them off the event loop with
asyncio.to_thread. The completion client is async.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Protocol, Sequence

from poi_discovery.schemas.poi import POI

if TYPE_CHECKING:
    from poi_discovery.services.discovery.generation_worker import GenerationInteraction


class SpatialQueryPort(Protocol):
    """Read side of the POI store."""

    def find_near(
        self,
        lat: float,
        lon: float,
        radius_m: float,
        category: Optional[str] = None,
    ) -> List[POI]:
        """
        POIs within radius_m of (lat, lon), ascending by distance.

        An empty list means "no data", not an error. Infrastructure
        failures raise RepositoryException.
        """
        ...

    def find_similar(
        self,
        embedding: Sequence[float],
        city_id: Optional[str] = None,
        limit: int = 10,
    ) -> List[POI]:
        """POIs with stored embeddings, descending by cosine similarity."""
        ...


class PersistencePort(Protocol):
    """Write side for generated data."""

    def save_generation_interaction(self, record: "GenerationInteraction") -> str:
        """Store an interaction record and return its id."""
        ...

    def save_generated_pois(
        self,
        user_id: Optional[str],
        pois: Sequence[POI],
        interaction_id: Optional[str],
    ) -> int:
        """Store generated POIs; returns how many rows were actually inserted."""
        ...


class EmbeddingBackfillStore(Protocol):
    def list_pois_missing_embedding(
        self, limit: int, after_id: Optional[str] = None
    ) -> List[POI]:
        """POIs without an embedding, ordered by id, strictly after after_id."""
        ...

    def update_poi_embedding(self, poi_id: str, embedding: Sequence[float], model: str) -> bool:
        ...


@dataclass(frozen=True)
class SamplingConfig:
    model: str
    temperature: float
    max_tokens: int
    timeout_s: Optional[float] = None
    json_mode: bool = True


@dataclass(frozen=True)
class CompletionUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass(frozen=True)
class CompletionResponse:
    text: str
    usage: CompletionUsage = field(default_factory=CompletionUsage)
    model: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


class CompletionClient(Protocol):
    """Generative completion service."""

    provider_name: str

    async def complete(
        self,
        prompt: str,
        sampling: SamplingConfig,
        system_prompt: Optional[str] = None,
    ) -> CompletionResponse:
        ...
