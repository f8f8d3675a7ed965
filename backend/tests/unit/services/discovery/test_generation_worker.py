# backend/tests/unit/services/discovery/test_generation_worker.py
"""Unit tests for the generative fallback worker and its payload parsing."""

from __future__ import annotations

import asyncio
import json

import pytest

from poi_discovery.core.exceptions import ParseError, UpstreamUnavailable
from poi_discovery.services.discovery.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from poi_discovery.services.discovery.config import DiscoveryConfig
from poi_discovery.services.discovery.generation_worker import (
    PAYLOAD_KEY,
    GenerationRequest,
    GenerationWorker,
    build_prompt,
    clean_json_payload,
    estimate_cost,
    parse_candidates,
)
from tests.fakes import PARIS, FakeCompletionClient, poi_payload


def _worker(client: FakeCompletionClient, **config) -> GenerationWorker:
    return GenerationWorker(
        client,
        config=DiscoveryConfig(**config),
        circuit=CircuitBreaker(name="test_completion", config=CircuitBreakerConfig()),
    )


def _request(**overrides) -> GenerationRequest:
    values = {"lat": PARIS[0], "lon": PARIS[1], "radius_km": 2.0}
    values.update(overrides)
    return GenerationRequest(**values)


class TestPrompt:
    def test_prompt_carries_location_radius_and_payload_key(self):
        prompt = build_prompt(48.8566, 2.3522, 2.0)

        assert "48.856600" in prompt
        assert "2.352200" in prompt
        assert "2.0 km" in prompt
        assert f'"{PAYLOAD_KEY}"' in prompt

    def test_category_restricts_prompt(self):
        assert "category: museum" in build_prompt(48.8566, 2.3522, 2.0, category="museum")
        assert "mix of categories" in build_prompt(48.8566, 2.3522, 2.0)


class TestCost:
    def test_known_model(self):
        cost = estimate_cost("gpt-4o-mini", 1_000_000, 1_000_000)
        assert cost == pytest.approx(0.15 + 0.60)

    def test_dated_snapshot_prices_like_base_model(self):
        assert estimate_cost("gpt-4o-mini-2024-07-18", 1_000_000, 0) == pytest.approx(0.15)

    def test_unknown_model_is_free(self):
        assert estimate_cost("mystery-model", 5000, 5000) == 0.0


class TestParsing:
    def test_strips_markdown_fences(self):
        text = "```json\n" + poi_payload() + "\n```"
        assert json.loads(clean_json_payload(text))[PAYLOAD_KEY]

    def test_extracts_object_from_chatter(self):
        text = "Sure! Here you go:\n" + poi_payload() + "\nEnjoy your trip."
        assert len(parse_candidates(text)) == 2

    def test_bare_list_is_accepted(self):
        text = json.dumps([{"name": "Louvre Museum", "latitude": 48.86, "longitude": 2.33}])
        assert parse_candidates(text)[0].name == "Louvre Museum"

    def test_alternate_payload_key(self):
        item = {"name": "Louvre Museum", "latitude": 48.86, "longitude": 2.33}
        text = json.dumps({"places": [item]})
        assert len(parse_candidates(text)) == 1

    def test_malformed_items_are_skipped(self):
        text = json.dumps(
            {
                PAYLOAD_KEY: [
                    "not an object",
                    {"name": "Louvre Museum", "latitude": "not a number"},
                    {"name": "Centre Pompidou", "latitude": 48.8607, "longitude": 2.3522},
                ]
            }
        )

        assert [c.name for c in parse_candidates(text)] == ["Centre Pompidou"]

    def test_lenient_field_coercion(self):
        text = json.dumps(
            {
                PAYLOAD_KEY: [
                    {
                        "name": "Le Cinq",
                        "latitude": 48.8689,
                        "longitude": 2.3007,
                        "price_level": "$$$$",
                        "rating": 11,
                        "tags": "fine dining, michelin",
                        "opening_hours": "Tue-Sat evenings",
                    }
                ]
            }
        )

        (candidate,) = parse_candidates(text)

        assert candidate.price_level == 4
        assert candidate.rating is None
        assert candidate.tags == ["fine dining", "michelin"]
        assert candidate.opening_hours == {"text": "Tue-Sat evenings"}

    @pytest.mark.parametrize(
        "text",
        [
            "",
            "   ",
            "I could not find anything.",
            "{not json at all}",
            json.dumps({"unexpected": "shape"}),
            json.dumps({PAYLOAD_KEY: []}),
            json.dumps({PAYLOAD_KEY: ["x", 1, None]}),
        ],
    )
    def test_unusable_payloads_raise_parse_error(self, text):
        with pytest.raises(ParseError) as exc_info:
            parse_candidates(text)
        assert exc_info.value.status_code == 502


class TestGenerate:
    @pytest.mark.asyncio
    async def test_success_outcome_and_interaction_record(self):
        client = FakeCompletionClient(poi_payload())
        worker = _worker(client, completion_temperature=0.3, completion_max_tokens=2048)

        outcome = await worker.generate(_request(category="museum", user_id="user-1"))

        assert outcome.ok
        assert [c.name for c in outcome.candidates] == ["Notre-Dame de Paris", "Centre Pompidou"]

        interaction = outcome.interaction
        assert interaction.succeeded
        assert interaction.status_code == 200
        assert interaction.provider == "fake"
        assert interaction.model_name == "gpt-4o-mini"
        assert interaction.prompt_tokens == 120
        assert interaction.completion_tokens == 380
        assert interaction.total_tokens == 500
        assert interaction.cost_estimate == pytest.approx(120 * 0.15e-6 + 380 * 0.60e-6)
        assert interaction.latency_ms >= 0
        assert interaction.user_id == "user-1"
        assert interaction.latitude == PARIS[0]
        assert interaction.radius_km == 2.0

        sampling = client.calls[0]["sampling"]
        assert sampling.temperature == 0.3
        assert sampling.max_tokens == 2048
        assert sampling.json_mode is True
        assert client.calls[0]["system"]

    @pytest.mark.asyncio
    async def test_transport_failure_is_upstream_unavailable(self):
        client = FakeCompletionClient(ConnectionError("connection refused"))

        outcome = await _worker(client).generate(_request())

        assert not outcome.ok
        assert isinstance(outcome.error, UpstreamUnavailable)
        assert outcome.interaction.status_code == 503
        assert outcome.interaction.error_message
        assert outcome.interaction.response_text == ""

    @pytest.mark.asyncio
    async def test_timeout_is_upstream_unavailable(self):
        client = FakeCompletionClient(asyncio.TimeoutError())

        outcome = await _worker(client).generate(_request())

        assert isinstance(outcome.error, UpstreamUnavailable)
        assert "timed out" in outcome.error.message

    @pytest.mark.asyncio
    async def test_unparseable_response_is_parse_error(self):
        client = FakeCompletionClient("Sorry, I cannot help with that.")

        outcome = await _worker(client).generate(_request())

        assert isinstance(outcome.error, ParseError)
        assert outcome.interaction.status_code == 502
        assert outcome.interaction.response_text == "Sorry, I cannot help with that."
        assert outcome.candidates == ()

    @pytest.mark.asyncio
    async def test_no_retries(self):
        client = FakeCompletionClient(ConnectionError("boom"), poi_payload())

        outcome = await _worker(client).generate(_request())

        assert not outcome.ok
        assert len(client.calls) == 1


class TestSubmit:
    @pytest.mark.asyncio
    async def test_future_resolves_once_with_outcome(self):
        client = FakeCompletionClient(poi_payload())
        worker = _worker(client)

        future = worker.submit(_request())
        outcome = await future

        assert future.done()
        assert outcome.ok
        await worker.drain()

    @pytest.mark.asyncio
    async def test_failure_is_delivered_in_outcome_not_raised(self):
        worker = _worker(FakeCompletionClient(ConnectionError("down")))

        outcome = await worker.submit(_request())

        assert isinstance(outcome.error, UpstreamUnavailable)

    @pytest.mark.asyncio
    async def test_caller_cancellation_does_not_stop_worker(self):
        client = FakeCompletionClient(poi_payload())
        client.gate = asyncio.Event()
        worker = _worker(client)

        future = worker.submit(_request())
        waiter = asyncio.ensure_future(asyncio.shield(future))
        await asyncio.sleep(0)
        waiter.cancel()
        client.gate.set()

        outcome = await future
        assert outcome.ok
