# backend/poi_discovery/services/discovery/container.py
"""
Startup wiring for the discovery pipeline.

Everything here is built once per process and hung off app.state by the
FastAPI lifespan. Tests build their own container with fakes injected.
"""
from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Dict, Optional

from poi_discovery.core.config import settings
from poi_discovery.services.discovery.background import BackgroundTaskQueue
from poi_discovery.services.discovery.circuit_breaker import COMPLETION_CIRCUIT, EMBEDDING_CIRCUIT
from poi_discovery.services.discovery.completion_client import OpenAICompletionClient
from poi_discovery.services.discovery.config import DiscoveryConfig, get_discovery_config
from poi_discovery.services.discovery.embedding_cache import EmbeddingCache
from poi_discovery.services.discovery.embedding_provider import (
    EmbeddingProvider,
    create_embedding_provider,
)
from poi_discovery.services.discovery.embedding_service import EmbeddingService
from poi_discovery.services.discovery.generation_worker import GenerationWorker
from poi_discovery.services.discovery.memory_store import InMemoryPOIStore
from poi_discovery.services.discovery.orchestrator import ResolutionOrchestrator
from poi_discovery.services.discovery.ports import (
    CompletionClient,
    PersistencePort,
    SpatialQueryPort,
)
from poi_discovery.services.discovery.vector_cache import VectorCache

logger = logging.getLogger(__name__)


@dataclass
class DiscoveryContainer:
    config: DiscoveryConfig
    vector_cache: VectorCache
    embedding_cache: EmbeddingCache
    embedding_service: EmbeddingService
    spatial_store: SpatialQueryPort
    persistence: Optional[PersistencePort]
    worker: GenerationWorker
    background: BackgroundTaskQueue
    orchestrator: ResolutionOrchestrator

    async def start(self) -> None:
        if self.config.sweeper_enabled:
            self.vector_cache.start_sweeper()
        logger.info(
            f"Discovery pipeline started (threshold={self.config.similarity_threshold}, "
            f"ttl={self.config.cache_ttl_seconds}s, model={self.config.completion_model})"
        )

    async def shutdown(self) -> None:
        await self.vector_cache.stop_sweeper()
        await self.orchestrator.aclose()
        await self.worker.drain()
        await self.background.close()
        logger.info("Discovery pipeline stopped")

    def stats(self) -> Dict[str, Any]:
        return {
            "vector_cache": self.vector_cache.stats(),
            "embedding_cache": self.embedding_cache.stats(),
            "background": self.background.stats(),
        }


def _default_store(config: DiscoveryConfig) -> Any:
    if settings.spatial_backend == "memory":
        logger.info("Using in-memory POI store")
        return InMemoryPOIStore(dedup_radius_m=config.dedup_radius_m)

    from poi_discovery.database import build_engine, build_session_factory, init_db
    from poi_discovery.repositories.poi_repository import POIRepository

    engine = build_engine()
    init_db(engine)
    return POIRepository(build_session_factory(engine), dedup_radius_m=config.dedup_radius_m)


def build_discovery_container(
    *,
    config: Optional[DiscoveryConfig] = None,
    store: Optional[Any] = None,
    completion_client: Optional[CompletionClient] = None,
    embedding_provider: Optional[EmbeddingProvider] = None,
    vector_cache: Optional[VectorCache] = None,
    embedding_cache: Optional[EmbeddingCache] = None,
) -> DiscoveryContainer:
    """
    Build the pipeline. Every collaborator can be injected; the rest come
    from settings and the discovery config.

    The store is used for both the spatial and persistence ports.
    """
    config = config or get_discovery_config()
    store = store if store is not None else _default_store(config)

    vector_cache = vector_cache or VectorCache(
        similarity_threshold=config.similarity_threshold,
        ttl_seconds=config.cache_ttl_seconds,
        max_entries=config.max_cache_entries,
    )
    embedding_cache = embedding_cache or EmbeddingCache(
        ttl_seconds=config.embedding_cache_ttl_seconds,
        max_entries=config.max_embedding_entries,
    )
    embedding_service = EmbeddingService(
        cache=embedding_cache,
        provider=embedding_provider or create_embedding_provider(config.embedding_model),
        circuit=EMBEDDING_CIRCUIT,
    )
    worker = GenerationWorker(
        completion_client or OpenAICompletionClient(),
        config=config,
        circuit=COMPLETION_CIRCUIT,
    )
    background = BackgroundTaskQueue()
    orchestrator = ResolutionOrchestrator(
        vector_cache=vector_cache,
        embedding_service=embedding_service,
        spatial_store=store,
        generation_worker=worker,
        background=background,
        persistence=store,
        config=config,
    )
    return DiscoveryContainer(
        config=config,
        vector_cache=vector_cache,
        embedding_cache=embedding_cache,
        embedding_service=embedding_service,
        spatial_store=store,
        persistence=store,
        worker=worker,
        background=background,
        orchestrator=orchestrator,
    )
