# backend/poi_discovery/services/discovery/embedding_provider.py
"""
Embedding provider abstraction for semantic lookups.
Supports OpenAI (production) and mock (testing) providers.
Uses strict timeouts to fail fast under load (no retries).
"""
from __future__ import annotations

import hashlib
import logging
import math
import os
import random
from typing import List, Optional, Protocol

from openai import AsyncOpenAI

from poi_discovery.core.config import settings
from poi_discovery.services.discovery.config import get_discovery_config

logger = logging.getLogger(__name__)

# Embedding calls sit on the request path, so they get a much tighter
# timeout than completions.
EMBEDDING_TIMEOUT_S = float(os.getenv("OPENAI_EMBEDDING_TIMEOUT_S", "2.0"))


class EmbeddingProvider(Protocol):
    """Interface for embedding providers."""

    async def embed(self, text: str) -> List[float]:
        """Generate embedding vector for text."""
        ...

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """Generate embeddings for multiple texts."""
        ...

    def get_model_name(self) -> str:
        ...

    def get_dimensions(self) -> int:
        ...


class OpenAIEmbeddingProvider:
    """
    Production embedding provider using the OpenAI embeddings API.

    The AsyncOpenAI client is created lazily so importing this module
    never requires an API key.
    """

    def __init__(
        self,
        model: str = "text-embedding-3-small",
        dimensions: int = 1536,
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        self.model = model
        self.dimensions = dimensions
        self._client = client

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            api_key = settings.openai_api_key.get_secret_value() or None
            self._client = AsyncOpenAI(
                api_key=api_key,
                timeout=EMBEDDING_TIMEOUT_S,
                max_retries=0,
            )
        return self._client

    async def embed(self, text: str) -> List[float]:
        response = await self.client.embeddings.create(
            model=self.model,
            input=text,
            dimensions=self.dimensions,
        )
        return list(response.data[0].embedding)

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """
        Generate embeddings for multiple texts in a single API call.

        Order of the returned vectors matches the order of ``texts``.
        """
        if not texts:
            return []

        response = await self.client.embeddings.create(
            model=self.model,
            input=texts,
            dimensions=self.dimensions,
        )
        sorted_data = sorted(response.data, key=lambda x: x.index)
        return [list(item.embedding) for item in sorted_data]

    def get_model_name(self) -> str:
        return self.model

    def get_dimensions(self) -> int:
        return self.dimensions


class MockEmbeddingProvider:
    """
    Deterministic mock embeddings for tests and local development.

    Properties:
    - Same input always produces same output (deterministic)
    - Different inputs produce different outputs (distinguishable)
    - Output is a normalized unit vector, like real embeddings

    ``calls`` counts provider invocations so tests can assert cache hits.
    """

    def __init__(self, dimensions: int = 64) -> None:
        self.dimensions = dimensions
        self.calls = 0

    async def embed(self, text: str) -> List[float]:
        self.calls += 1
        return self._generate_embedding(text)

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        self.calls += 1
        return [self._generate_embedding(text) for text in texts]

    def _generate_embedding(self, text: str) -> List[float]:
        text_hash = hashlib.sha256(text.lower().encode()).hexdigest()
        rng = random.Random(int(text_hash[:8], 16))
        embedding = [rng.gauss(0, 1) for _ in range(self.dimensions)]
        magnitude = math.sqrt(sum(x * x for x in embedding))
        return [x / magnitude for x in embedding]

    def get_model_name(self) -> str:
        return "mock-embedding-v1"

    def get_dimensions(self) -> int:
        return self.dimensions


def create_embedding_provider(model: Optional[str] = None) -> EmbeddingProvider:
    """
    Factory function to create the configured embedding provider.

    Environment Variables:
    - EMBEDDING_PROVIDER: "openai" (default) or "mock"
    - OPENAI_EMBEDDING_MODEL / EMBEDDING_DIMENSIONS via DiscoveryConfig
    """
    config = get_discovery_config()
    provider = os.getenv("EMBEDDING_PROVIDER", "openai").strip().lower()

    if provider == "mock":
        logger.info("Using mock embedding provider")
        return MockEmbeddingProvider(dimensions=config.embedding_dimensions)

    model = model or config.embedding_model
    logger.info(f"Using OpenAI embedding provider: {model}")
    return OpenAIEmbeddingProvider(model=model, dimensions=config.embedding_dimensions)
