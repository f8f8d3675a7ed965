# backend/poi_discovery/services/discovery/embedding_cache.py
"""
In-process cache of query embeddings.

Embeddings do not depend on request scope, so entries are keyed by
normalized text only. Same TTL discipline as the vector cache.
"""
from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, field
import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from poi_discovery.services.discovery.vector_cache import normalize_query_text

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EmbeddingCacheEntry:
    vector: Tuple[float, ...]
    label: str
    expires_at: float


@dataclass
class EmbeddingCache:
    """Thread-safe TTL + LRU map of normalized text to embedding vector."""

    ttl_seconds: float = 600.0
    max_entries: int = 5000
    clock: Callable[[], float] = time.monotonic

    _entries: "OrderedDict[str, EmbeddingCacheEntry]" = field(
        default_factory=OrderedDict, init=False, repr=False
    )
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)
    _hits: int = field(default=0, init=False)
    _misses: int = field(default=0, init=False)

    @staticmethod
    def normalize(text: str) -> str:
        return normalize_query_text(text)

    def get(self, text: str) -> Optional[List[float]]:
        key = self.normalize(text)
        if not key:
            return None
        now = self.clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or now >= entry.expires_at:
                if entry is not None:
                    del self._entries[key]
                self._misses += 1
                return None
            self._entries.move_to_end(key)
            self._hits += 1
            return list(entry.vector)

    def get_entry(self, text: str) -> Optional[EmbeddingCacheEntry]:
        key = self.normalize(text)
        with self._lock:
            entry = self._entries.get(key)
        if entry is None or self.clock() >= entry.expires_at:
            return None
        return entry

    def set(self, text: str, vector: Sequence[float], label: Optional[str] = None) -> None:
        key = self.normalize(text)
        if not key:
            return
        entry = EmbeddingCacheEntry(
            vector=tuple(float(x) for x in vector),
            label=label or f"query: {key}",
            expires_at=self.clock() + self.ttl_seconds,
        )
        with self._lock:
            self._entries[key] = entry
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def sweep_expired(self) -> int:
        now = self.clock()
        with self._lock:
            expired = [k for k, e in self._entries.items() if now >= e.expires_at]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def clear(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            return count

    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            total = self._hits + self._misses
            return {
                "size": len(self._entries),
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": round(self._hits / total, 4) if total else 0.0,
                "ttl_seconds": self.ttl_seconds,
                "max_entries": self.max_entries,
            }
