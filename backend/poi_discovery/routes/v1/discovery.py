# backend/poi_discovery/routes/v1/discovery.py
"""
Discovery routes - API v1

Versioned POI discovery endpoints under /api/v1/discovery.

Endpoints:
    GET    /nearby               → POIs near a coordinate, ascending by distance
    GET    /semantic             → POIs matching free text, descending by similarity
    GET    /hybrid               → Blend of proximity and text similarity
    GET    /cache/stats          → Vector/embedding cache and background queue stats
    DELETE /cache                → Drop every cached result set and query embedding
    POST   /embeddings/backfill  → Embed stored POIs that have no embedding yet
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException, Query, Request

from ...core.exceptions import DomainException
from ...schemas.poi import CacheStatsResponse, DiscoveryMeta, DiscoveryResponse
from ...services.discovery.container import DiscoveryContainer
from ...services.discovery.orchestrator import ResolutionResult

logger = logging.getLogger(__name__)

# V1 router - no prefix here, will be added when mounting in main.py
router = APIRouter(tags=["discovery-v1"])


def _container(request: Request) -> DiscoveryContainer:
    container: Optional[DiscoveryContainer] = getattr(request.app.state, "discovery", None)
    if container is None:
        raise HTTPException(status_code=503, detail="Discovery pipeline is not initialized")
    return container


def _to_response(result: ResolutionResult) -> DiscoveryResponse:
    return DiscoveryResponse(
        results=result.pois,
        meta=DiscoveryMeta(
            resolution_source=result.source,
            total_results=len(result.pois),
            latency_ms=result.latency_ms,
            similarity=result.similarity,
            degraded=result.degraded,
            stages=[stage.value for stage in result.stages],
            interaction_id=result.interaction_id,
        ),
    )


@router.get("/nearby", response_model=DiscoveryResponse)
async def discover_nearby(
    request: Request,
    lat: float = Query(..., description="Latitude of the search point"),
    lon: float = Query(..., description="Longitude of the search point"),
    radius_km: Optional[float] = Query(None, description="Search radius in kilometers"),
    category: Optional[str] = Query(None, max_length=100, description="Category filter"),
    user_id: Optional[str] = Query(None, max_length=36, description="Requesting user"),
) -> DiscoveryResponse:
    """
    POIs around a coordinate.

    Served from cache, then the POI store, then the generative fallback.
    """
    orchestrator = _container(request).orchestrator
    try:
        result = await orchestrator.resolve_by_location(
            lat, lon, radius_km, category, user_id=user_id
        )
    except DomainException as e:
        raise e.to_http_exception()
    return _to_response(result)


@router.get("/semantic", response_model=DiscoveryResponse)
async def discover_semantic(
    request: Request,
    q: str = Query(..., max_length=500, description="Free-text description of the place"),
    city_id: Optional[str] = Query(None, max_length=64, description="Restrict to a city"),
    limit: Optional[int] = Query(None, description="Maximum results to return"),
) -> DiscoveryResponse:
    """POIs whose stored embeddings best match the query text."""
    orchestrator = _container(request).orchestrator
    try:
        result = await orchestrator.resolve_by_semantic_query(q, city_id=city_id, limit=limit)
    except DomainException as e:
        raise e.to_http_exception()
    return _to_response(result)


@router.get("/hybrid", response_model=DiscoveryResponse)
async def discover_hybrid(
    request: Request,
    lat: float = Query(..., description="Latitude of the search point"),
    lon: float = Query(..., description="Longitude of the search point"),
    q: str = Query(..., max_length=500, description="Free-text description of the place"),
    semantic_weight: float = Query(0.5, description="0 = proximity only, 1 = text only"),
    radius_km: Optional[float] = Query(None, description="Search radius in kilometers"),
    category: Optional[str] = Query(None, max_length=100, description="Category filter"),
    user_id: Optional[str] = Query(None, max_length=36, description="Requesting user"),
) -> DiscoveryResponse:
    """POIs near a coordinate ranked by a blend of proximity and text similarity."""
    orchestrator = _container(request).orchestrator
    try:
        result = await orchestrator.resolve_hybrid(
            lat,
            lon,
            radius_km,
            q,
            semantic_weight,
            category=category,
            user_id=user_id,
        )
    except DomainException as e:
        raise e.to_http_exception()
    return _to_response(result)


@router.get("/cache/stats", response_model=CacheStatsResponse)
async def cache_stats(request: Request) -> CacheStatsResponse:
    return CacheStatsResponse(**_container(request).stats())


@router.delete("/cache")
async def clear_cache(request: Request) -> Dict[str, int]:
    container = _container(request)
    vector_entries = container.vector_cache.clear()
    embedding_entries = container.embedding_cache.clear()
    logger.info(
        f"Discovery caches cleared ({vector_entries} result sets, "
        f"{embedding_entries} embeddings)"
    )
    return {"vector_cache_cleared": vector_entries, "embedding_cache_cleared": embedding_entries}


@router.post("/embeddings/backfill")
async def backfill_embeddings(
    request: Request,
    batch_size: int = Query(10, ge=1, le=100, description="POIs per embedding batch"),
    max_batches: Optional[int] = Query(None, ge=1, description="Stop after this many batches"),
) -> Dict[str, Any]:
    """Embed stored POIs that have no embedding yet."""
    container = _container(request)
    store = container.spatial_store
    if not hasattr(store, "list_pois_missing_embedding"):
        raise HTTPException(status_code=501, detail="Configured store does not support backfill")
    try:
        report = await container.embedding_service.backfill_embeddings(
            store, batch_size=batch_size, max_batches=max_batches
        )
    except DomainException as e:
        raise e.to_http_exception()
    return {"embedded": report.embedded, "failed": report.failed, "batches": report.batches}
