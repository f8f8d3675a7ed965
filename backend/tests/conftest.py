# backend/tests/conftest.py
"""
Shared fixtures for the discovery test suite.

Upstreams are replaced with in-process fakes: a scripted completion
client, an embedding provider with pinned vectors, and the in-memory
POI store. Nothing here touches the network.
"""

from __future__ import annotations

import os

import pytest

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("EMBEDDING_PROVIDER", "mock")
os.environ.setdefault("SPATIAL_BACKEND", "memory")

from poi_discovery.services.discovery.background import BackgroundTaskQueue  # noqa: E402
from poi_discovery.services.discovery.circuit_breaker import (  # noqa: E402
    COMPLETION_CIRCUIT,
    EMBEDDING_CIRCUIT,
)
from poi_discovery.services.discovery.config import (  # noqa: E402
    DiscoveryConfig,
    reset_discovery_config,
)
from poi_discovery.services.discovery.embedding_cache import EmbeddingCache  # noqa: E402
from poi_discovery.services.discovery.embedding_service import EmbeddingService  # noqa: E402
from poi_discovery.services.discovery.generation_worker import GenerationWorker  # noqa: E402
from poi_discovery.services.discovery.memory_store import InMemoryPOIStore  # noqa: E402
from poi_discovery.services.discovery.orchestrator import ResolutionOrchestrator  # noqa: E402
from poi_discovery.services.discovery.vector_cache import VectorCache  # noqa: E402

from tests.fakes import FakeCompletionClient, PinnedEmbeddingProvider, make_poi  # noqa: E402


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def _reset_discovery_state():
    reset_discovery_config()
    EMBEDDING_CIRCUIT.reset()
    COMPLETION_CIRCUIT.reset()
    yield
    EMBEDDING_CIRCUIT.reset()
    COMPLETION_CIRCUIT.reset()
    reset_discovery_config()


@pytest.fixture
def discovery_config() -> DiscoveryConfig:
    return DiscoveryConfig(fallback_timeout_seconds=5.0, sweeper_enabled=False)


@pytest.fixture
def embedding_provider() -> PinnedEmbeddingProvider:
    return PinnedEmbeddingProvider()


@pytest.fixture
def completion_client() -> FakeCompletionClient:
    return FakeCompletionClient()


@pytest.fixture
def store() -> InMemoryPOIStore:
    return InMemoryPOIStore()


@pytest.fixture
def paris_store(store: InMemoryPOIStore) -> InMemoryPOIStore:
    """Three Paris landmarks at increasing distance from the city center."""
    store.add(make_poi("Sainte-Chapelle", 48.8554, 2.3450, category="landmark"))
    store.add(make_poi("Louvre Museum", 48.8606, 2.3376, category="museum"))
    store.add(make_poi("Musee d'Orsay", 48.8600, 2.3266, category="museum"))
    return store


@pytest.fixture
def orchestrator(
    discovery_config: DiscoveryConfig,
    embedding_provider: PinnedEmbeddingProvider,
    completion_client: FakeCompletionClient,
    store: InMemoryPOIStore,
) -> ResolutionOrchestrator:
    vector_cache = VectorCache(
        similarity_threshold=discovery_config.similarity_threshold,
        ttl_seconds=discovery_config.cache_ttl_seconds,
        max_entries=discovery_config.max_cache_entries,
    )
    embedding_service = EmbeddingService(
        cache=EmbeddingCache(ttl_seconds=discovery_config.embedding_cache_ttl_seconds),
        provider=embedding_provider,
    )
    return ResolutionOrchestrator(
        vector_cache=vector_cache,
        embedding_service=embedding_service,
        spatial_store=store,
        generation_worker=GenerationWorker(completion_client, config=discovery_config),
        background=BackgroundTaskQueue(),
        persistence=store,
        config=discovery_config,
    )
