# backend/poi_discovery/services/discovery/vector_cache.py
"""
In-process vector (semantic) cache for resolved POI result sets.

Two lookup paths:
- get(key): exact match on the scope-qualified key
- get_similar(embedding, scope): best cosine match among entries in the
  same scope, accepted only at or above the similarity threshold

Entries expire after a TTL (dropped lazily on access and by a periodic
sweep) and the oldest entries are evicted once capacity is exceeded.
All state sits behind one lock; nothing under the lock does I/O.
"""
from __future__ import annotations

import asyncio
from collections import OrderedDict
from dataclasses import asdict, dataclass, field
import hashlib
import itertools
import json
import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, cast

from poi_discovery.schemas.poi import POI
from poi_discovery.services.discovery.scoring import cosine_similarity

logger = logging.getLogger(__name__)

DEFAULT_SIMILARITY_THRESHOLD = 0.95
DEFAULT_TTL_SECONDS = 600.0
DEFAULT_MAX_ENTRIES = 1000

# Scope coordinates are rounded to ~11 m so jitter does not split entries.
_COORD_PRECISION = 4


def normalize_query_text(text: Optional[str]) -> str:
    """Case-fold and collapse whitespace."""
    if not text:
        return ""
    return " ".join(text.lower().split())


@dataclass(frozen=True)
class CacheScope:
    """
    Non-text parameters that make two lookups comparable.

    Entries are only semantically matched against entries with an equal
    scope; query text and embedding are the only fuzzy dimensions.
    """

    mode: str
    city_id: Optional[str] = None
    category: Optional[str] = None
    radius_km: Optional[float] = None
    semantic_weight: Optional[float] = None
    origin: Optional[Tuple[float, float]] = None
    limit: Optional[int] = None

    @classmethod
    def build(
        cls,
        mode: str,
        *,
        city_id: Optional[str] = None,
        category: Optional[str] = None,
        radius_km: Optional[float] = None,
        semantic_weight: Optional[float] = None,
        lat: Optional[float] = None,
        lon: Optional[float] = None,
        limit: Optional[int] = None,
    ) -> "CacheScope":
        origin = None
        if lat is not None and lon is not None:
            origin = (round(lat, _COORD_PRECISION), round(lon, _COORD_PRECISION))
        return cls(
            mode=mode,
            city_id=city_id.strip().lower() if city_id else None,
            category=normalize_query_text(category) or None,
            radius_km=round(radius_km, 3) if radius_km is not None else None,
            semantic_weight=round(semantic_weight, 4) if semantic_weight is not None else None,
            origin=origin,
            limit=limit,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def build_cache_key(query_text: Optional[str], scope: CacheScope) -> str:
    """Composite exact-match key: hash of normalized query text plus scope."""
    key_data = {"query": normalize_query_text(query_text), "scope": scope.to_dict()}
    digest = hashlib.sha256(json.dumps(key_data, sort_keys=True).encode()).hexdigest()
    return f"poi:{scope.mode}:{digest[:32]}"


@dataclass
class VectorCacheEntry:
    """One cached result set and the lookup that produced it."""

    key: str
    query_text: str
    embedding: Optional[Tuple[float, ...]]
    results: Tuple[POI, ...]
    scope: CacheScope
    created_at: float
    expires_at: float
    sequence: int = 0

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def pois(self) -> List[POI]:
        """Copies of the cached POIs, safe for callers to annotate."""
        return [poi.model_copy(deep=True) for poi in self.results]


@dataclass
class VectorCacheStats:
    hits: int = 0
    misses: int = 0
    semantic_hits: int = 0
    semantic_misses: int = 0
    sets: int = 0
    evictions: int = 0
    expirations: int = 0


@dataclass
class VectorCache:
    """
    Thread-safe TTL cache of POI result sets with exact and semantic lookup.

    Built once at startup and injected into the orchestrator.
    """

    similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD
    ttl_seconds: float = DEFAULT_TTL_SECONDS
    max_entries: int = DEFAULT_MAX_ENTRIES
    clock: Callable[[], float] = time.monotonic

    _entries: "OrderedDict[str, VectorCacheEntry]" = field(
        default_factory=OrderedDict, init=False, repr=False
    )
    _stats: VectorCacheStats = field(default_factory=VectorCacheStats, init=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)
    _sequence: "itertools.count[int]" = field(
        default_factory=itertools.count, init=False, repr=False
    )
    _sweeper: Optional["asyncio.Task[None]"] = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        if not 0.0 < self.similarity_threshold <= 1.0:
            raise ValueError("similarity_threshold must be in (0, 1]")
        if self.ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        if self.max_entries < 1:
            raise ValueError("max_entries must be at least 1")

    # =========================================================================
    # Lookups
    # =========================================================================

    def get(self, key: str) -> Optional[VectorCacheEntry]:
        """Exact-match lookup. Expired entries count as misses."""
        now = self.clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._stats.misses += 1
                return None
            if entry.is_expired(now):
                del self._entries[key]
                self._stats.expirations += 1
                self._stats.misses += 1
                return None
            self._stats.hits += 1
            return entry

    def get_similar(
        self, embedding: Sequence[float], scope: CacheScope
    ) -> Optional[Tuple[VectorCacheEntry, float]]:
        """
        Nearest in-scope entry by cosine similarity.

        Returns (entry, similarity) only when similarity clears the
        threshold; ties go to the most recently created entry.
        """
        now = self.clock()
        with self._lock:
            candidates = [
                entry
                for entry in self._entries.values()
                if entry.scope == scope
                and entry.embedding is not None
                and not entry.is_expired(now)
            ]

        best: Optional[VectorCacheEntry] = None
        best_similarity = -1.0
        for entry in candidates:
            similarity = cosine_similarity(embedding, cast(List[float], entry.embedding))
            if similarity > best_similarity or (
                similarity == best_similarity
                and best is not None
                and (entry.created_at, entry.sequence) > (best.created_at, best.sequence)
            ):
                best = entry
                best_similarity = similarity

        with self._lock:
            if best is None or best_similarity < self.similarity_threshold:
                self._stats.semantic_misses += 1
                return None
            self._stats.semantic_hits += 1

        logger.debug(
            f"Semantic cache hit {best.key} (similarity={best_similarity:.4f}, "
            f"query={best.query_text[:50]!r})"
        )
        return best, best_similarity

    # =========================================================================
    # Writes
    # =========================================================================

    def set(
        self,
        key: str,
        *,
        query_text: str,
        results: Sequence[POI],
        scope: CacheScope,
        embedding: Optional[Sequence[float]] = None,
    ) -> VectorCacheEntry:
        """Insert or overwrite an entry, stamping creation and expiry."""
        now = self.clock()
        entry = VectorCacheEntry(
            key=key,
            query_text=query_text,
            embedding=tuple(float(x) for x in embedding) if embedding is not None else None,
            results=tuple(poi.model_copy(deep=True) for poi in results),
            scope=scope,
            created_at=now,
            expires_at=now + self.ttl_seconds,
            sequence=next(self._sequence),
        )
        with self._lock:
            self._entries[key] = entry
            self._entries.move_to_end(key)
            self._stats.sets += 1
            self._evict_locked(now)
        return entry

    def _evict_locked(self, now: float) -> None:
        if len(self._entries) <= self.max_entries:
            return
        self._stats.expirations += self._drop_expired_locked(now)
        while len(self._entries) > self.max_entries:
            # OrderedDict keeps insertion order, so the first entry is the oldest
            evicted_key, _ = self._entries.popitem(last=False)
            self._stats.evictions += 1
            logger.debug(f"Evicted vector cache entry {evicted_key}")

    def _drop_expired_locked(self, now: float) -> int:
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            return count

    def sweep_expired(self) -> int:
        """Remove every expired entry; returns how many were dropped."""
        now = self.clock()
        with self._lock:
            removed = self._drop_expired_locked(now)
            self._stats.expirations += removed
        if removed:
            logger.debug(f"Vector cache sweep removed {removed} expired entries")
        return removed

    # =========================================================================
    # Background sweep
    # =========================================================================

    def start_sweeper(self, interval_seconds: Optional[float] = None) -> "asyncio.Task[None]":
        """Start the periodic expiry sweep (every ttl/2 by default) on the running loop."""
        if self._sweeper is not None and not self._sweeper.done():
            return self._sweeper
        interval = interval_seconds or max(self.ttl_seconds / 2, 1.0)
        self._sweeper = asyncio.create_task(
            self._sweep_loop(interval), name="vector-cache-sweeper"
        )
        return self._sweeper

    async def _sweep_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                self.sweep_expired()
            except Exception as e:
                logger.warning(f"Vector cache sweep failed: {e}")

    async def stop_sweeper(self) -> None:
        task, self._sweeper = self._sweeper, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    # =========================================================================
    # Introspection
    # =========================================================================

    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            stats = asdict(self._stats)
            stats["size"] = len(self._entries)
        exact_total = stats["hits"] + stats["misses"]
        semantic_total = stats["semantic_hits"] + stats["semantic_misses"]
        stats["hit_rate"] = round(stats["hits"] / exact_total, 4) if exact_total else 0.0
        stats["semantic_hit_rate"] = (
            round(stats["semantic_hits"] / semantic_total, 4) if semantic_total else 0.0
        )
        stats["similarity_threshold"] = self.similarity_threshold
        stats["ttl_seconds"] = self.ttl_seconds
        stats["max_entries"] = self.max_entries
        return stats
