# backend/tests/unit/services/discovery/test_vector_cache.py
"""Unit tests for the in-process vector cache."""

from __future__ import annotations

import asyncio

import pytest

from poi_discovery.services.discovery.vector_cache import (
    CacheScope,
    VectorCache,
    build_cache_key,
    normalize_query_text,
)
from tests.fakes import FakeClock, make_poi, unit_vector


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache(clock: FakeClock) -> VectorCache:
    return VectorCache(similarity_threshold=0.95, ttl_seconds=600, max_entries=3, clock=clock)


def _scope(**overrides) -> CacheScope:
    return CacheScope.build("semantic", limit=10, **overrides)


class TestKeys:
    def test_normalization_collapses_case_and_whitespace(self):
        assert normalize_query_text("  Cozy   CAFE\twith\nWiFi ") == "cozy cafe with wifi"
        assert normalize_query_text(None) == ""

    def test_equivalent_queries_share_a_key(self):
        scope = _scope()
        assert build_cache_key("Cozy Cafe", scope) == build_cache_key("  cozy   cafe ", scope)

    def test_scope_is_part_of_the_key(self):
        assert build_cache_key("museum", _scope(city_id="paris")) != build_cache_key(
            "museum", _scope(city_id="lyon")
        )

    def test_key_is_prefixed_with_mode(self):
        key = build_cache_key("", CacheScope.build("location", lat=1.0, lon=2.0, radius_km=2))
        assert key.startswith("poi:location:")

    def test_scope_rounds_origin(self):
        a = CacheScope.build("location", lat=48.856612, lon=2.352219, radius_km=2)
        b = CacheScope.build("location", lat=48.856634, lon=2.352241, radius_km=2)
        assert a == b


class TestExactLookup:
    def test_miss_then_hit(self, cache: VectorCache):
        scope = _scope()
        assert cache.get("k1") is None

        louvre = make_poi("Louvre", 48.86, 2.33)
        cache.set("k1", query_text="museums", results=[louvre], scope=scope)
        entry = cache.get("k1")

        assert entry is not None
        assert [p.name for p in entry.pois()] == ["Louvre"]
        assert cache.stats()["hits"] == 1
        assert cache.stats()["misses"] == 1

    def test_entry_is_stamped_with_ttl(self, cache: VectorCache, clock: FakeClock):
        entry = cache.set("k1", query_text="q", results=[], scope=_scope())
        assert entry.created_at == clock.now
        assert entry.expires_at == clock.now + 600

    def test_expired_entry_is_a_miss(self, cache: VectorCache, clock: FakeClock):
        cache.set("k1", query_text="q", results=[], scope=_scope())
        clock.advance(600)

        assert cache.get("k1") is None
        assert cache.size() == 0
        assert cache.stats()["expirations"] == 1

    def test_returned_pois_are_copies(self, cache: VectorCache):
        cache.set("k1", query_text="q", results=[make_poi("Louvre", 48.86, 2.33)], scope=_scope())

        first = cache.get("k1").pois()
        first[0].rank_score = 99.0

        assert cache.get("k1").pois()[0].rank_score is None


class TestSemanticLookup:
    def test_returns_entry_above_threshold(self, cache: VectorCache):
        scope = _scope()
        cache.set(
            "k1", query_text="art museum", results=[], scope=scope, embedding=unit_vector(1.0)
        )

        match = cache.get_similar(unit_vector(1.0, 0.05), scope)

        assert match is not None
        entry, similarity = match
        assert entry.key == "k1"
        assert similarity >= 0.95

    def test_never_returns_entry_below_threshold(self, cache: VectorCache):
        scope = _scope()
        cache.set("k1", query_text="q", results=[], scope=scope, embedding=unit_vector(1.0))

        assert cache.get_similar(unit_vector(1.0, 0.5), scope) is None
        assert cache.stats()["semantic_misses"] == 1

    def test_exact_threshold_counts_as_hit(self, clock: FakeClock):
        cache = VectorCache(similarity_threshold=1.0, clock=clock)
        scope = _scope()
        cache.set("k1", query_text="q", results=[], scope=scope, embedding=[0.0, 1.0])

        assert cache.get_similar([0.0, 2.0], scope) is not None

    def test_scope_must_match(self, cache: VectorCache):
        cache.set(
            "k1",
            query_text="q",
            results=[],
            scope=_scope(city_id="paris"),
            embedding=unit_vector(1.0),
        )

        assert cache.get_similar(unit_vector(1.0), _scope(city_id="lyon")) is None
        assert cache.get_similar(unit_vector(1.0), _scope(city_id="paris")) is not None

    def test_entries_without_embedding_are_ignored(self, cache: VectorCache):
        scope = _scope()
        cache.set("k1", query_text="q", results=[], scope=scope, embedding=None)

        assert cache.get_similar(unit_vector(1.0), scope) is None

    def test_tie_goes_to_most_recent_entry(self, cache: VectorCache, clock: FakeClock):
        scope = _scope()
        cache.set("older", query_text="a", results=[], scope=scope, embedding=unit_vector(1.0))
        clock.advance(1)
        cache.set("newer", query_text="b", results=[], scope=scope, embedding=unit_vector(1.0))

        entry, _ = cache.get_similar(unit_vector(1.0), scope)

        assert entry.key == "newer"

    def test_best_match_wins(self, cache: VectorCache):
        scope = _scope()
        cache.set("close", query_text="a", results=[], scope=scope, embedding=unit_vector(1.0, 0.1))
        cache.set("exact", query_text="b", results=[], scope=scope, embedding=unit_vector(1.0))

        entry, similarity = cache.get_similar(unit_vector(1.0), scope)

        assert entry.key == "exact"
        assert similarity == pytest.approx(1.0)

    def test_expired_entries_are_not_matched(self, cache: VectorCache, clock: FakeClock):
        scope = _scope()
        cache.set("k1", query_text="q", results=[], scope=scope, embedding=unit_vector(1.0))
        clock.advance(601)

        assert cache.get_similar(unit_vector(1.0), scope) is None


class TestCapacity:
    def test_oldest_entry_is_evicted(self, cache: VectorCache, clock: FakeClock):
        for i in range(4):
            cache.set(f"k{i}", query_text="q", results=[], scope=_scope())
            clock.advance(1)

        assert cache.size() == 3
        assert cache.get("k0") is None
        assert cache.get("k3") is not None
        assert cache.stats()["evictions"] == 1

    def test_expired_entries_go_before_live_ones(self, cache: VectorCache, clock: FakeClock):
        cache.set("stale", query_text="q", results=[], scope=_scope())
        clock.advance(599)
        cache.set("a", query_text="q", results=[], scope=_scope())
        cache.set("b", query_text="q", results=[], scope=_scope())
        clock.advance(2)
        cache.set("c", query_text="q", results=[], scope=_scope())

        assert cache.get("stale") is None
        assert {cache.get(k) is not None for k in ("a", "b", "c")} == {True}
        assert cache.stats()["evictions"] == 0

    def test_sweep_drops_only_expired(self, cache: VectorCache, clock: FakeClock):
        cache.set("old", query_text="q", results=[], scope=_scope())
        clock.advance(500)
        cache.set("new", query_text="q", results=[], scope=_scope())
        clock.advance(200)

        assert cache.sweep_expired() == 1
        assert cache.size() == 1

    def test_clear_and_delete(self, cache: VectorCache):
        cache.set("a", query_text="q", results=[], scope=_scope())
        cache.set("b", query_text="q", results=[], scope=_scope())

        assert cache.delete("a") is True
        assert cache.delete("a") is False
        assert cache.clear() == 1
        assert cache.size() == 0


class TestConstruction:
    @pytest.mark.parametrize(
        "kwargs",
        [
            {"similarity_threshold": 0.0},
            {"similarity_threshold": 1.5},
            {"ttl_seconds": 0},
            {"max_entries": 0},
        ],
    )
    def test_rejects_invalid_settings(self, kwargs):
        with pytest.raises(ValueError):
            VectorCache(**kwargs)


class TestSweeper:
    @pytest.mark.asyncio
    async def test_sweeper_runs_periodically(self, cache: VectorCache, clock: FakeClock):
        cache.set("k1", query_text="q", results=[], scope=_scope())
        clock.advance(700)

        task = cache.start_sweeper(interval_seconds=0.01)
        assert cache.start_sweeper() is task
        await asyncio.sleep(0.05)
        await cache.stop_sweeper()

        assert cache.size() == 0
        assert task.done()
