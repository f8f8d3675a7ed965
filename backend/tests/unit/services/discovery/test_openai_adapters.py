# backend/tests/unit/services/discovery/test_openai_adapters.py
"""Unit tests for the OpenAI completion and embedding adapters (client mocked)."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from poi_discovery.services.discovery.completion_client import OpenAICompletionClient
from poi_discovery.services.discovery.embedding_provider import (
    MockEmbeddingProvider,
    OpenAIEmbeddingProvider,
    create_embedding_provider,
)
from poi_discovery.services.discovery.ports import SamplingConfig


def _sampling(model: str = "gpt-4o-mini", **overrides) -> SamplingConfig:
    values = {"model": model, "temperature": 0.7, "max_tokens": 4096, "timeout_s": None}
    values.update(overrides)
    return SamplingConfig(**values)


def _chat_response(content, usage=None, model="gpt-4o-mini-2024-07-18"):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
        usage=usage,
        model=model,
    )


class TestCompletionRequest:
    def test_chat_model_gets_temperature_and_json_mode(self):
        request = OpenAICompletionClient._build_request("prompt", _sampling(), "system")

        assert request["messages"][0] == {"role": "system", "content": "system"}
        assert request["messages"][1] == {"role": "user", "content": "prompt"}
        assert request["temperature"] == 0.7
        assert request["max_tokens"] == 4096
        assert request["response_format"] == {"type": "json_object"}

    def test_reasoning_model_uses_max_completion_tokens(self):
        request = OpenAICompletionClient._build_request("prompt", _sampling("o3-mini"), None)

        assert "temperature" not in request
        assert request["max_completion_tokens"] == 4096
        assert len(request["messages"]) == 1


class TestCompletionClient:
    @pytest.mark.asyncio
    async def test_complete_reads_text_usage_and_model(self):
        usage = SimpleNamespace(prompt_tokens=100, completion_tokens=300, total_tokens=400)
        openai_client = MagicMock()
        openai_client.chat.completions.create = AsyncMock(
            return_value=_chat_response('{"points_of_interest": []}', usage)
        )
        client = OpenAICompletionClient(client=openai_client)

        response = await client.complete("prompt", _sampling(timeout_s=5.0))

        assert response.text == '{"points_of_interest": []}'
        assert response.usage.total_tokens == 400
        assert response.model == "gpt-4o-mini-2024-07-18"

    @pytest.mark.asyncio
    async def test_missing_content_and_usage(self):
        openai_client = MagicMock()
        openai_client.chat.completions.create = AsyncMock(
            return_value=_chat_response(None, model=None)
        )
        client = OpenAICompletionClient(client=openai_client)

        response = await client.complete("prompt", _sampling())

        assert response.text == ""
        assert response.usage.prompt_tokens == 0
        assert response.model == "gpt-4o-mini"

    @pytest.mark.asyncio
    async def test_transport_errors_propagate(self):
        openai_client = MagicMock()
        openai_client.chat.completions.create = AsyncMock(side_effect=ConnectionError("reset"))
        client = OpenAICompletionClient(client=openai_client)

        with pytest.raises(ConnectionError):
            await client.complete("prompt", _sampling())
        assert openai_client.chat.completions.create.await_count == 1


class TestEmbeddingProviders:
    @pytest.mark.asyncio
    async def test_openai_batch_preserves_input_order(self):
        openai_client = MagicMock()
        openai_client.embeddings.create = AsyncMock(
            return_value=SimpleNamespace(
                data=[
                    SimpleNamespace(index=1, embedding=[0.0, 1.0]),
                    SimpleNamespace(index=0, embedding=[1.0, 0.0]),
                ]
            )
        )
        provider = OpenAIEmbeddingProvider(dimensions=2, client=openai_client)

        vectors = await provider.embed_batch(["first", "second"])

        assert vectors == [[1.0, 0.0], [0.0, 1.0]]
        assert await provider.embed_batch([]) == []

    @pytest.mark.asyncio
    async def test_mock_provider_is_deterministic_and_normalized(self):
        provider = MockEmbeddingProvider(dimensions=32)

        first = await provider.embed("Cozy cafe")
        second = await provider.embed("cozy CAFE")
        other = await provider.embed("quiet park")

        assert first == second
        assert first != other
        assert sum(x * x for x in first) == pytest.approx(1.0)
        assert provider.calls == 3

    def test_factory_honours_provider_setting(self, monkeypatch):
        monkeypatch.setenv("EMBEDDING_PROVIDER", "mock")
        assert isinstance(create_embedding_provider(), MockEmbeddingProvider)

        monkeypatch.setenv("EMBEDDING_PROVIDER", "openai")
        provider = create_embedding_provider("text-embedding-3-large")
        assert isinstance(provider, OpenAIEmbeddingProvider)
        assert provider.get_model_name() == "text-embedding-3-large"
