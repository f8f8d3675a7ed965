# backend/tests/routes/test_discovery_routes.py
"""
HTTP tests for the discovery routes, with fakes wired into the pipeline.
"""

from __future__ import annotations

from fastapi.testclient import TestClient
import pytest

from poi_discovery.main import create_app
from poi_discovery.services.discovery.config import DiscoveryConfig
from poi_discovery.services.discovery.container import build_discovery_container
from poi_discovery.services.discovery.memory_store import InMemoryPOIStore
from tests.fakes import PARIS, PinnedEmbeddingProvider, make_poi

BASE = "/api/v1/discovery"

# Around Centre Pompidou, where the store has nothing within 300 m
EMPTY_AREA = {"lat": 48.8607, "lon": 2.3522, "radius_km": 0.3}


@pytest.fixture
def route_store() -> InMemoryPOIStore:
    return InMemoryPOIStore(
        [
            make_poi("Sainte-Chapelle", 48.8554, 2.3450, category="landmark"),
            make_poi("Louvre Museum", 48.8606, 2.3376, category="museum"),
        ]
    )


@pytest.fixture
def client(route_store, completion_client):
    def factory():
        return build_discovery_container(
            config=DiscoveryConfig(fallback_timeout_seconds=5.0, sweeper_enabled=False),
            store=route_store,
            completion_client=completion_client,
            embedding_provider=PinnedEmbeddingProvider(),
        )

    with TestClient(create_app(factory)) as test_client:
        yield test_client


def _nearby_params(**overrides):
    params = {"lat": PARIS[0], "lon": PARIS[1], "radius_km": 2}
    params.update(overrides)
    return params


class TestNearby:
    def test_store_hit(self, client):
        response = client.get(f"{BASE}/nearby", params=_nearby_params())

        assert response.status_code == 200
        body = response.json()
        assert [r["name"] for r in body["results"]] == ["Sainte-Chapelle", "Louvre Museum"]
        assert body["meta"]["resolution_source"] == "database"
        assert body["meta"]["total_results"] == 2
        assert "embedding" not in body["results"][0]

    def test_second_request_hits_cache(self, client):
        client.get(f"{BASE}/nearby", params=_nearby_params())
        response = client.get(f"{BASE}/nearby", params=_nearby_params())

        assert response.json()["meta"]["resolution_source"] == "cache"

    def test_empty_area_is_generated(self, client, completion_client):
        response = client.get(f"{BASE}/nearby", params=EMPTY_AREA)

        assert response.status_code == 200
        body = response.json()
        assert body["meta"]["resolution_source"] == "generated"
        assert body["meta"]["interaction_id"]
        assert [r["name"] for r in body["results"]] == ["Centre Pompidou"]
        assert len(completion_client.calls) == 1

    def test_invalid_latitude_is_400(self, client):
        response = client.get(f"{BASE}/nearby", params=_nearby_params(lat=200))

        assert response.status_code == 400
        detail = response.json()["detail"]
        assert detail["code"] == "VALIDATION_ERROR"
        assert detail["details"]["field"] == "lat"

    def test_missing_parameters_are_422(self, client):
        assert client.get(f"{BASE}/nearby").status_code == 422

    def test_unparseable_fallback_is_502(self, client, completion_client):
        completion_client.responses = ["no places today"]

        response = client.get(f"{BASE}/nearby", params=EMPTY_AREA)

        assert response.status_code == 502
        assert response.json()["detail"]["code"] == "PARSE_ERROR"

    def test_completion_outage_is_503(self, client, completion_client):
        completion_client.responses = [ConnectionError("connection refused")]

        response = client.get(f"{BASE}/nearby", params=EMPTY_AREA)

        assert response.status_code == 503
        assert response.json()["detail"]["details"]["component"] == "completion"


class TestSemanticAndHybrid:
    def test_semantic_full_miss_is_empty(self, client, completion_client):
        response = client.get(f"{BASE}/semantic", params={"q": "rooftop cinema"})

        assert response.status_code == 200
        assert response.json()["results"] == []
        assert completion_client.calls == []

    def test_hybrid(self, client):
        response = client.get(
            f"{BASE}/hybrid", params=_nearby_params(q="gothic chapel", semantic_weight=0.3)
        )

        assert response.status_code == 200
        assert len(response.json()["results"]) == 2

    def test_hybrid_weight_out_of_range_is_400(self, client, route_store):
        response = client.get(
            f"{BASE}/hybrid", params=_nearby_params(q="museum", semantic_weight=1.5)
        )

        assert response.status_code == 400
        assert response.json()["detail"]["details"]["field"] == "semantic_weight"
        assert route_store.find_near_calls == 0


class TestCacheAdmin:
    def test_stats_and_clear(self, client):
        client.get(f"{BASE}/nearby", params=_nearby_params())

        stats = client.get(f"{BASE}/cache/stats").json()
        assert stats["vector_cache"]["size"] == 1
        assert "hit_rate" in stats["embedding_cache"]
        assert stats["background"]["failed"] == 0

        cleared = client.delete(f"{BASE}/cache").json()
        assert cleared == {"vector_cache_cleared": 1, "embedding_cache_cleared": 0}

        after = client.get(f"{BASE}/nearby", params=_nearby_params())
        assert after.json()["meta"]["resolution_source"] == "database"

    def test_backfill(self, client, route_store):
        response = client.post(f"{BASE}/embeddings/backfill", params={"batch_size": 1})

        assert response.status_code == 200
        assert response.json() == {"embedded": 2, "failed": 0, "batches": 2}
        assert all(p.embedding for p in route_store.all())

    def test_backfill_batch_size_is_bounded(self, client):
        response = client.post(f"{BASE}/embeddings/backfill", params={"batch_size": 0})
        assert response.status_code == 422


class TestOperational:
    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_metrics_exposes_discovery_series(self, client):
        client.get(f"{BASE}/nearby", params=_nearby_params())

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "poi_discovery_latency_ms" in response.text
