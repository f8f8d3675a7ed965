# backend/poi_discovery/services/discovery/__init__.py
"""
POI discovery services.

This module provides the resolution pipeline (caches, spatial store,
generative fallback) and its supporting services.
"""

from poi_discovery.services.discovery.background import BackgroundTaskQueue
from poi_discovery.services.discovery.circuit_breaker import (
    COMPLETION_CIRCUIT,
    EMBEDDING_CIRCUIT,
    CircuitBreaker,
    CircuitOpenError,
)
from poi_discovery.services.discovery.completion_client import OpenAICompletionClient
from poi_discovery.services.discovery.config import (
    DiscoveryConfig,
    get_discovery_config,
    reset_discovery_config,
    update_discovery_config,
)
from poi_discovery.services.discovery.container import (
    DiscoveryContainer,
    build_discovery_container,
)
from poi_discovery.services.discovery.embedding_cache import EmbeddingCache
from poi_discovery.services.discovery.embedding_provider import (
    EmbeddingProvider,
    MockEmbeddingProvider,
    OpenAIEmbeddingProvider,
    create_embedding_provider,
)
from poi_discovery.services.discovery.embedding_service import BackfillReport, EmbeddingService
from poi_discovery.services.discovery.generation_worker import (
    GenerationInteraction,
    GenerationOutcome,
    GenerationRequest,
    GenerationWorker,
)
from poi_discovery.services.discovery.memory_store import InMemoryPOIStore
from poi_discovery.services.discovery.orchestrator import (
    ResolutionOrchestrator,
    ResolutionResult,
    ResolutionStage,
)
from poi_discovery.services.discovery.scoring import (
    HybridScorer,
    cosine_similarity,
    haversine_km,
)
from poi_discovery.services.discovery.vector_cache import (
    CacheScope,
    VectorCache,
    VectorCacheEntry,
    build_cache_key,
)

__all__ = [
    # Orchestration
    "ResolutionOrchestrator",
    "ResolutionResult",
    "ResolutionStage",
    "DiscoveryContainer",
    "build_discovery_container",
    # Configuration
    "DiscoveryConfig",
    "get_discovery_config",
    "update_discovery_config",
    "reset_discovery_config",
    # Caches
    "VectorCache",
    "VectorCacheEntry",
    "CacheScope",
    "build_cache_key",
    "EmbeddingCache",
    # Circuit breakers
    "COMPLETION_CIRCUIT",
    "EMBEDDING_CIRCUIT",
    "CircuitBreaker",
    "CircuitOpenError",
    # Embeddings
    "EmbeddingProvider",
    "OpenAIEmbeddingProvider",
    "MockEmbeddingProvider",
    "create_embedding_provider",
    "EmbeddingService",
    "BackfillReport",
    # Generative fallback
    "OpenAICompletionClient",
    "GenerationWorker",
    "GenerationRequest",
    "GenerationInteraction",
    "GenerationOutcome",
    # Scoring
    "HybridScorer",
    "haversine_km",
    "cosine_similarity",
    # Stores and background work
    "InMemoryPOIStore",
    "BackgroundTaskQueue",
]
