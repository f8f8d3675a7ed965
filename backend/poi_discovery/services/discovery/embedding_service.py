# backend/poi_discovery/services/discovery/embedding_service.py
"""
Embedding service for discovery.
Handles query embedding (request-time, cached) and POI embedding (backfill).
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import time
from typing import TYPE_CHECKING, List, Optional

from poi_discovery.core.exceptions import UpstreamUnavailable, ValidationError
from poi_discovery.schemas.poi import POI
from poi_discovery.services.discovery.circuit_breaker import (
    EMBEDDING_CIRCUIT,
    CircuitBreaker,
    CircuitOpenError,
)
from poi_discovery.services.discovery.embedding_cache import EmbeddingCache
from poi_discovery.services.discovery.embedding_provider import (
    EmbeddingProvider,
    create_embedding_provider,
)
from poi_discovery.services.discovery.metrics import record_cache_event, record_openai_latency

if TYPE_CHECKING:
    from poi_discovery.services.discovery.ports import EmbeddingBackfillStore

logger = logging.getLogger(__name__)

DEFAULT_BACKFILL_BATCH_SIZE = 10


@dataclass
class BackfillReport:
    embedded: int = 0
    failed: int = 0
    batches: int = 0


class EmbeddingService:
    """
    Service for generating and caching embeddings.

    Responsibilities:
    - Query embedding (request-time, embedding cache first)
    - POI embedding text and vector generation
    - Backfilling stored POIs that have no embedding yet
    """

    def __init__(
        self,
        cache: Optional[EmbeddingCache] = None,
        provider: Optional[EmbeddingProvider] = None,
        circuit: CircuitBreaker = EMBEDDING_CIRCUIT,
    ) -> None:
        self.cache = cache
        self._provider = provider
        self.circuit = circuit

    @property
    def provider(self) -> EmbeddingProvider:
        """Lazy initialization of embedding provider."""
        if self._provider is None:
            self._provider = create_embedding_provider()
        return self._provider

    # =========================================================================
    # Query Embedding (Request-Time)
    # =========================================================================

    def cached_query_embedding(self, query: str) -> Optional[List[float]]:
        """Embedding-cache lookup only; cache failures read as a miss."""
        if self.cache is None:
            return None
        try:
            cached = self.cache.get(query)
        except Exception as e:
            logger.warning(f"Embedding cache read failed, treating as miss: {e}")
            cached = None
        record_cache_event("embedding", cached is not None)
        if cached is not None:
            logger.debug(f"Embedding cache hit for: {query[:50]}")
        return cached

    async def embed_query(self, query: str) -> List[float]:
        """
        Embedding for a search query, served from the embedding cache when possible.

        Raises:
            ValidationError: If the query is blank
            UpstreamUnavailable: If the embedding service fails or its circuit is open
        """
        normalized = " ".join(query.lower().split())
        if not normalized:
            raise ValidationError("query must not be empty", field="query", value=query)

        cached = self.cached_query_embedding(normalized)
        if cached is not None:
            return cached

        embedding = await self._embed_via_circuit(normalized)

        if self.cache is not None:
            try:
                self.cache.set(normalized, embedding, label=f"query: {normalized}")
            except Exception as e:
                logger.warning(f"Embedding cache write failed: {e}")
        return embedding

    async def _embed_via_circuit(self, text: str) -> List[float]:
        start = time.perf_counter()
        try:
            embedding = await self.circuit.call(self.provider.embed, text)
        except CircuitOpenError as e:
            logger.warning(f"Embedding circuit is OPEN, skipping call for: {text[:50]}")
            raise UpstreamUnavailable("embedding", str(e)) from e
        except Exception as e:
            logger.error(f"Embedding generation failed: {e}")
            raise UpstreamUnavailable("embedding", f"Embedding generation failed: {e}") from e
        finally:
            record_openai_latency("embeddings", int((time.perf_counter() - start) * 1000))

        if not embedding:
            raise UpstreamUnavailable("embedding", "Embedding service returned an empty vector")
        return list(embedding)

    # =========================================================================
    # POI Embedding (Backfill)
    # =========================================================================

    def generate_embedding_text(self, poi: POI) -> str:
        """Concatenate the descriptive POI fields into one embedding input."""
        parts = [poi.name]
        if poi.category:
            parts.append(f"Category: {poi.category}")
        if poi.description:
            parts.append(poi.description)
        if poi.tags:
            parts.append(f"Tags: {', '.join(poi.tags)}")
        if poi.address:
            parts.append(f"Address: {poi.address}")
        return ". ".join(parts)

    async def embed_poi(self, poi: POI) -> List[float]:
        """
        Generate an embedding for one POI.

        Does NOT write anything; the caller decides where the vector goes.
        """
        return await self._embed_via_circuit(self.generate_embedding_text(poi))

    async def backfill_embeddings(
        self,
        store: "EmbeddingBackfillStore",
        batch_size: int = DEFAULT_BACKFILL_BATCH_SIZE,
        max_batches: Optional[int] = None,
    ) -> BackfillReport:
        """
        Embed stored POIs that have no embedding, batch by batch.

        Each batch uses one embed_batch call; if that fails the POIs of
        the batch are retried one at a time so one bad row does not sink
        the rest. Failed POIs are skipped and counted.
        """
        if batch_size < 1:
            raise ValidationError(
                "batch_size must be positive", field="batch_size", value=batch_size
            )

        report = BackfillReport()
        model_name = self.provider.get_model_name()
        after_id: Optional[str] = None

        while max_batches is None or report.batches < max_batches:
            batch = await asyncio.to_thread(
                store.list_pois_missing_embedding, batch_size, after_id
            )
            if not batch:
                break
            report.batches += 1
            after_id = batch[-1].id

            vectors = await self._embed_batch(batch)
            for poi, vector in zip(batch, vectors):
                if vector is None:
                    report.failed += 1
                    continue
                await asyncio.to_thread(store.update_poi_embedding, poi.id, vector, model_name)
                report.embedded += 1

            logger.info(
                f"Embedding backfill batch {report.batches}: "
                f"{report.embedded} embedded, {report.failed} failed so far"
            )

        return report

    async def _embed_batch(self, batch: List[POI]) -> List[Optional[List[float]]]:
        texts = [self.generate_embedding_text(poi) for poi in batch]
        try:
            vectors = await self.circuit.call(self.provider.embed_batch, texts)
            if len(vectors) == len(batch):
                return [list(v) for v in vectors]
            logger.warning(
                f"Batch embedding returned {len(vectors)} vectors for {len(batch)} POIs"
            )
        except CircuitOpenError:
            logger.warning("Embedding circuit is OPEN, skipping backfill batch")
            return [None] * len(batch)
        except Exception as e:
            logger.error(f"Batch embedding failed: {e}")

        results: List[Optional[List[float]]] = []
        for poi in batch:
            try:
                results.append(await self.embed_poi(poi))
            except UpstreamUnavailable as e:
                logger.error(f"Failed to embed POI {poi.id}: {e.message}")
                results.append(None)
        return results
