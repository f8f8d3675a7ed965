# backend/poi_discovery/services/discovery/orchestrator.py
"""
Resolution orchestrator for POI discovery.

Answers "what is near this point / matches this text" by trying layers
from cheapest to most expensive:

1. CACHE_LOOKUP: exact vector-cache key
2. EMBEDDING_RESOLVE: query embedding (embedding cache, then provider)
3. SEMANTIC_LOOKUP: nearest cached result set above the threshold
4. SPATIAL_QUERY: POI store (distance, or embedding similarity for text-only)
5. GENERATIVE_FALLBACK: completion model, on its own task
6. ENRICH_PERSIST: ids, coordinates, dedup; write-back in the background
7. RESPOND

Any cache or store hit exits straight to RESPOND. Input validation runs
before the first I/O. Caches are written only after a result is known,
so failed fallbacks leave nothing behind. Concurrent full misses for the
same key share one fallback invocation.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
import logging
import math
import time
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple, cast

from poi_discovery.core.exceptions import (
    DomainException,
    RepositoryException,
    UpstreamUnavailable,
    ValidationError,
)
from poi_discovery.schemas.poi import POI, ResolutionSource
from poi_discovery.services.discovery.background import BackgroundTaskQueue
from poi_discovery.services.discovery.config import DiscoveryConfig, get_discovery_config
from poi_discovery.services.discovery.embedding_service import EmbeddingService
from poi_discovery.services.discovery.enrichment import enrich_candidates
from poi_discovery.services.discovery.generation_worker import (
    GenerationInteraction,
    GenerationRequest,
    GenerationWorker,
)
from poi_discovery.services.discovery.metrics import (
    record_cache_event,
    record_cache_size,
    record_degradation,
    record_resolution,
)
from poi_discovery.services.discovery.ports import PersistencePort, SpatialQueryPort
from poi_discovery.services.discovery.scoring import (
    HybridScorer,
    rank_by_distance,
    validate_semantic_weight,
)
from poi_discovery.services.discovery.vector_cache import (
    CacheScope,
    VectorCache,
    build_cache_key,
    normalize_query_text,
)

logger = logging.getLogger(__name__)

RankFn = Callable[[List[POI]], List[POI]]
FallbackResult = Tuple[List[POI], str]


class ResolutionStage(str, Enum):
    CACHE_LOOKUP = "cache_lookup"
    EMBEDDING_RESOLVE = "embedding_resolve"
    SEMANTIC_LOOKUP = "semantic_lookup"
    SPATIAL_QUERY = "spatial_query"
    GENERATIVE_FALLBACK = "generative_fallback"
    ENRICH_PERSIST = "enrich_persist"
    RESPOND = "respond"


@dataclass
class ResolutionResult:
    """Ranked POIs plus how they were obtained."""

    pois: List[POI]
    source: ResolutionSource
    stages: List[ResolutionStage]
    similarity: Optional[float] = None
    degraded: bool = False
    latency_ms: int = 0
    interaction_id: Optional[str] = None
    cache_key: Optional[str] = None


@dataclass
class _Resolution:
    """Per-request state threaded through the stages."""

    mode: str
    key: str
    scope: CacheScope
    query_text: str
    started: float = field(default_factory=time.perf_counter)
    stages: List[ResolutionStage] = field(default_factory=list)
    degraded: bool = False

    def enter(self, stage: ResolutionStage) -> None:
        self.stages.append(stage)

    def elapsed_ms(self) -> int:
        return int((time.perf_counter() - self.started) * 1000)


# =============================================================================
# Input validation (runs before any I/O)
# =============================================================================


def _is_number(value: object) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_coordinates(lat: float, lon: float) -> None:
    if not _is_number(lat) or not math.isfinite(lat) or not -90.0 <= lat <= 90.0:
        raise ValidationError("latitude must be between -90 and 90", field="lat", value=lat)
    if not _is_number(lon) or not math.isfinite(lon) or not -180.0 <= lon <= 180.0:
        raise ValidationError("longitude must be between -180 and 180", field="lon", value=lon)


def validate_radius(radius_km: float, max_radius_km: float) -> None:
    if not _is_number(radius_km) or not math.isfinite(radius_km) or radius_km <= 0:
        raise ValidationError("radius_km must be positive", field="radius_km", value=radius_km)
    if radius_km > max_radius_km:
        raise ValidationError(
            f"radius_km must not exceed {max_radius_km}", field="radius_km", value=radius_km
        )


def validate_query(text: Optional[str]) -> str:
    normalized = normalize_query_text(text)
    if not normalized:
        raise ValidationError("query must not be empty", field="query", value=text)
    return normalized


class ResolutionOrchestrator:
    """
    Coordinates caches, the spatial store and the generative fallback.

    All collaborators are injected; the caches are owned by whoever
    builds the orchestrator (see container.build_discovery_container).
    """

    def __init__(
        self,
        *,
        vector_cache: VectorCache,
        embedding_service: EmbeddingService,
        spatial_store: SpatialQueryPort,
        generation_worker: GenerationWorker,
        background: BackgroundTaskQueue,
        persistence: Optional[PersistencePort] = None,
        config: Optional[DiscoveryConfig] = None,
    ) -> None:
        self.vector_cache = vector_cache
        self.embedding_service = embedding_service
        self.spatial_store = spatial_store
        self.generation_worker = generation_worker
        self.background = background
        self.persistence = persistence
        self._config = config
        self._inflight: Dict[str, "asyncio.Task[FallbackResult]"] = {}
        self._detached: Set["asyncio.Task[FallbackResult]"] = set()

    @property
    def config(self) -> DiscoveryConfig:
        return self._config or get_discovery_config()

    @property
    def inflight_fallbacks(self) -> int:
        return len(self._inflight) + len(self._detached)

    async def aclose(self) -> None:
        """Cancel fallbacks nobody is waiting for anymore (shutdown)."""
        tasks = [*self._inflight.values(), *self._detached]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # =========================================================================
    # Public API
    # =========================================================================

    async def resolve_by_location(
        self,
        lat: float,
        lon: float,
        radius_km: Optional[float] = None,
        category: Optional[str] = None,
        *,
        user_id: Optional[str] = None,
    ) -> ResolutionResult:
        """POIs near a coordinate, ascending by distance (rank_score = km)."""
        config = self.config
        radius_km = config.default_radius_km if radius_km is None else radius_km
        validate_coordinates(lat, lon)
        validate_radius(radius_km, config.max_radius_km)
        category = category.strip() if category and category.strip() else None

        scope = CacheScope.build(
            "location", category=category, radius_km=radius_km, lat=lat, lon=lon
        )
        ctx = _Resolution(
            mode="location", key=build_cache_key("", scope), scope=scope, query_text=""
        )

        try:
            cached = self._exact_lookup(ctx)
            if cached is not None:
                return cached

            pois = await self._find_near(ctx, lat, lon, radius_km, category)
            if pois:
                ranked = rank_by_distance(pois, lat, lon)
                self._populate(ctx, ranked, embedding=None)
                return self._respond(ctx, ranked, ResolutionSource.DATABASE)

            request = GenerationRequest(
                lat=lat, lon=lon, radius_km=radius_km, category=category, user_id=user_id
            )
            return await self._fallback(
                ctx, request, rank=lambda found: rank_by_distance(found, lat, lon)
            )
        except DomainException as e:
            self._record_failure(ctx, e)
            raise

    async def resolve_by_semantic_query(
        self,
        text: str,
        city_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> ResolutionResult:
        """
        POIs matching free text, descending by similarity (rank_score = cosine).

        There is no coordinate to prompt with, so a full miss returns an
        empty list instead of invoking the generative fallback.
        """
        config = self.config
        limit = config.semantic_limit if limit is None else limit
        query = validate_query(text)
        if not isinstance(limit, int) or isinstance(limit, bool) or limit < 1:
            raise ValidationError("limit must be a positive integer", field="limit", value=limit)
        if limit > config.max_semantic_limit:
            raise ValidationError(
                f"limit must not exceed {config.max_semantic_limit}", field="limit", value=limit
            )

        scope = CacheScope.build("semantic", city_id=city_id, limit=limit)
        ctx = _Resolution(
            mode="semantic", key=build_cache_key(query, scope), scope=scope, query_text=query
        )

        try:
            cached = self._exact_lookup(ctx)
            if cached is not None:
                return cached

            embedding = await self._resolve_embedding(ctx, query)

            similar = self._semantic_lookup(ctx, embedding)
            if similar is not None:
                return similar

            pois = await self._find_similar(ctx, embedding, city_id, limit)
            if pois:
                self._populate(ctx, pois, embedding=embedding)
            return self._respond(ctx, pois, ResolutionSource.DATABASE)
        except DomainException as e:
            self._record_failure(ctx, e)
            raise

    async def resolve_hybrid(
        self,
        lat: float,
        lon: float,
        radius_km: Optional[float],
        text: str,
        semantic_weight: float,
        *,
        category: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> ResolutionResult:
        """
        POIs near a coordinate ranked by (1-w)*proximity + w*similarity.

        If the embedding service is down the request degrades to
        proximity-only scoring and the result is not cached.
        """
        weight = validate_semantic_weight(semantic_weight)
        config = self.config
        radius_km = config.default_radius_km if radius_km is None else radius_km
        validate_coordinates(lat, lon)
        validate_radius(radius_km, config.max_radius_km)
        query = validate_query(text)
        category = category.strip() if category and category.strip() else None

        scope = CacheScope.build(
            "hybrid",
            category=category,
            radius_km=radius_km,
            semantic_weight=weight,
            lat=lat,
            lon=lon,
        )
        ctx = _Resolution(
            mode="hybrid", key=build_cache_key(query, scope), scope=scope, query_text=query
        )
        scorer = HybridScorer(weight)

        try:
            cached = self._exact_lookup(ctx)
            if cached is not None:
                return cached

            embedding: Optional[List[float]] = None
            try:
                embedding = await self._resolve_embedding(ctx, query)
            except UpstreamUnavailable as e:
                logger.warning(f"Hybrid resolution degraded to proximity-only: {e.message}")
                record_degradation("embedding")
                ctx.degraded = True

            if embedding is not None:
                similar = self._semantic_lookup(ctx, embedding)
                if similar is not None:
                    return similar

            pois = await self._find_near(ctx, lat, lon, radius_km, category)
            if pois:
                ranked = scorer.rank(pois, lat, lon, embedding)
                if not ctx.degraded:
                    self._populate(ctx, ranked, embedding=embedding)
                return self._respond(ctx, ranked, ResolutionSource.DATABASE)

            request = GenerationRequest(
                lat=lat, lon=lon, radius_km=radius_km, category=category, user_id=user_id
            )
            return await self._fallback(
                ctx,
                request,
                rank=lambda found: scorer.rank(found, lat, lon, embedding),
                embedding=embedding,
            )
        except DomainException as e:
            self._record_failure(ctx, e)
            raise

    # =========================================================================
    # Cache layers (failures degrade to a miss)
    # =========================================================================

    def _exact_lookup(self, ctx: _Resolution) -> Optional[ResolutionResult]:
        ctx.enter(ResolutionStage.CACHE_LOOKUP)
        try:
            entry = self.vector_cache.get(ctx.key)
        except Exception as e:
            logger.warning(f"Vector cache lookup failed, treating as miss: {e}")
            record_degradation("vector_cache")
            entry = None

        record_cache_event("vector_exact", entry is not None)
        if entry is None:
            return None
        logger.debug(f"Exact cache hit for {ctx.mode} request {ctx.key}")
        return self._respond(ctx, entry.pois(), ResolutionSource.CACHE)

    async def _resolve_embedding(self, ctx: _Resolution, query: str) -> List[float]:
        ctx.enter(ResolutionStage.EMBEDDING_RESOLVE)
        return await self.embedding_service.embed_query(query)

    def _semantic_lookup(
        self, ctx: _Resolution, embedding: Sequence[float]
    ) -> Optional[ResolutionResult]:
        ctx.enter(ResolutionStage.SEMANTIC_LOOKUP)
        try:
            match = self.vector_cache.get_similar(embedding, ctx.scope)
        except Exception as e:
            logger.warning(f"Semantic cache lookup failed, treating as miss: {e}")
            record_degradation("vector_cache")
            match = None

        record_cache_event("vector_semantic", match is not None)
        if match is None:
            return None
        entry, similarity = match
        return self._respond(
            ctx, entry.pois(), ResolutionSource.SEMANTIC_CACHE, similarity=similarity
        )

    def _populate(
        self, ctx: _Resolution, pois: Sequence[POI], embedding: Optional[Sequence[float]]
    ) -> None:
        try:
            self.vector_cache.set(
                ctx.key,
                query_text=ctx.query_text,
                results=pois,
                scope=ctx.scope,
                embedding=embedding,
            )
            record_cache_size("vector", self.vector_cache.size())
        except Exception as e:
            logger.warning(f"Vector cache write failed for {ctx.key}: {e}")
            record_degradation("vector_cache")

    # =========================================================================
    # Spatial store
    # =========================================================================

    async def _find_near(
        self,
        ctx: _Resolution,
        lat: float,
        lon: float,
        radius_km: float,
        category: Optional[str],
    ) -> List[POI]:
        ctx.enter(ResolutionStage.SPATIAL_QUERY)
        try:
            pois = await asyncio.to_thread(
                self.spatial_store.find_near, lat, lon, radius_km * 1000.0, category
            )
        except RepositoryException as e:
            logger.error(f"Spatial store query failed: {e}")
            raise UpstreamUnavailable("spatial_store", f"Spatial query failed: {e}") from e
        except Exception as e:
            logger.error(f"Spatial store unreachable: {e}")
            raise UpstreamUnavailable("spatial_store", f"Spatial store unreachable: {e}") from e
        return list(pois)

    async def _find_similar(
        self,
        ctx: _Resolution,
        embedding: Sequence[float],
        city_id: Optional[str],
        limit: int,
    ) -> List[POI]:
        ctx.enter(ResolutionStage.SPATIAL_QUERY)
        try:
            pois = await asyncio.to_thread(
                self.spatial_store.find_similar, embedding, city_id, limit
            )
        except Exception as e:
            logger.error(f"Similarity query failed: {e}")
            raise UpstreamUnavailable("spatial_store", f"Similarity query failed: {e}") from e
        return list(pois)[:limit]

    # =========================================================================
    # Generative fallback
    # =========================================================================

    async def _fallback(
        self,
        ctx: _Resolution,
        request: GenerationRequest,
        rank: RankFn,
        embedding: Optional[Sequence[float]] = None,
    ) -> ResolutionResult:
        ctx.enter(ResolutionStage.GENERATIVE_FALLBACK)
        config = self.config

        task = self._inflight.get(ctx.key) if config.single_flight else None
        if task is not None:
            logger.info(f"Joining in-flight fallback for {ctx.key}")
        else:
            task = asyncio.create_task(
                self._run_fallback(ctx, request, rank, embedding),
                name=f"poi-fallback:{ctx.key}",
            )
            self._track(ctx.key, task, config.single_flight)

        timeout = config.fallback_timeout_seconds
        try:
            # shield: one waiter giving up must not cancel the shared fallback
            if timeout:
                pois, interaction_id = await asyncio.wait_for(asyncio.shield(task), timeout)
            else:
                pois, interaction_id = await asyncio.shield(task)
        except asyncio.TimeoutError as e:
            logger.error(f"Generative fallback exceeded {timeout}s for {ctx.key}")
            raise UpstreamUnavailable(
                "completion", f"Generative fallback did not finish within {timeout}s"
            ) from e

        ctx.enter(ResolutionStage.ENRICH_PERSIST)
        return self._respond(
            ctx,
            [poi.model_copy(deep=True) for poi in pois],
            ResolutionSource.GENERATED,
            interaction_id=interaction_id,
        )

    def _track(self, key: str, task: "asyncio.Task[FallbackResult]", shared: bool) -> None:
        if shared:
            self._inflight[key] = task
        else:
            self._detached.add(task)

        def _done(finished: "asyncio.Task[FallbackResult]") -> None:
            if self._inflight.get(key) is finished:
                del self._inflight[key]
            self._detached.discard(finished)
            if not finished.cancelled() and finished.exception() is not None:
                logger.debug(f"Fallback for {key} finished with {finished.exception()!r}")

        task.add_done_callback(_done)

    async def _run_fallback(
        self,
        ctx: _Resolution,
        request: GenerationRequest,
        rank: RankFn,
        embedding: Optional[Sequence[float]],
    ) -> FallbackResult:
        outcome = await self.generation_worker.submit(request)

        if not outcome.ok:
            self._dispatch_persistence(outcome.interaction, [], request.user_id)
            raise cast(DomainException, outcome.error)

        existing = await self._stored_neighbours(request)
        pois = enrich_candidates(
            outcome.candidates,
            request.lat,
            request.lon,
            request.radius_km,
            dedup_radius_m=self.config.dedup_radius_m,
            existing=existing,
        )
        ranked = rank(pois)

        self._dispatch_persistence(outcome.interaction, ranked, request.user_id)
        if ranked and not ctx.degraded:
            self._populate(ctx, ranked, embedding=embedding)
        return ranked, outcome.interaction.id

    async def _stored_neighbours(self, request: GenerationRequest) -> List[POI]:
        """Stored POIs, any category, that generated candidates may duplicate."""
        radius_m = request.radius_km * 1000.0 + self.config.dedup_radius_m
        try:
            pois = await asyncio.to_thread(
                self.spatial_store.find_near, request.lat, request.lon, radius_m, None
            )
        except Exception as e:
            logger.warning(f"Stored POIs unavailable for dedup, write-back still checks: {e}")
            record_degradation("spatial_store")
            return []
        return list(pois)

    def _dispatch_persistence(
        self,
        interaction: GenerationInteraction,
        pois: Sequence[POI],
        user_id: Optional[str],
    ) -> None:
        if self.persistence is None:
            return
        self.background.submit(
            "persist_generation", self._persist_generation, interaction, list(pois), user_id
        )

    def _persist_generation(
        self,
        interaction: GenerationInteraction,
        pois: List[POI],
        user_id: Optional[str],
    ) -> int:
        # Runs in a worker thread owned by the background queue
        persistence = self.persistence
        if persistence is None:
            return 0
        interaction_id = persistence.save_generation_interaction(interaction)
        if not pois:
            return 0
        inserted = persistence.save_generated_pois(user_id, pois, interaction_id)
        logger.info(
            f"Persisted {inserted}/{len(pois)} generated POIs for interaction {interaction_id}"
        )
        return inserted

    # =========================================================================
    # Responses
    # =========================================================================

    def _respond(
        self,
        ctx: _Resolution,
        pois: List[POI],
        source: ResolutionSource,
        *,
        similarity: Optional[float] = None,
        interaction_id: Optional[str] = None,
    ) -> ResolutionResult:
        ctx.enter(ResolutionStage.RESPOND)
        latency_ms = ctx.elapsed_ms()
        record_resolution(ctx.mode, source.value, latency_ms)
        logger.debug(
            f"{ctx.mode} resolution answered by {source.value} with {len(pois)} POIs "
            f"in {latency_ms}ms"
        )
        return ResolutionResult(
            pois=pois,
            source=source,
            stages=list(ctx.stages),
            similarity=similarity,
            degraded=ctx.degraded,
            latency_ms=latency_ms,
            interaction_id=interaction_id,
            cache_key=ctx.key,
        )

    def _record_failure(self, ctx: _Resolution, error: DomainException) -> None:
        record_resolution(ctx.mode, "error", ctx.elapsed_ms(), status=error.code.lower())
