# backend/poi_discovery/services/discovery/completion_client.py
"""
OpenAI chat-completions adapter for the generative fallback.

No retries: the client is built with max_retries=0 and transport errors
propagate to the fallback worker, which records them and fails the
invocation.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

from openai import AsyncOpenAI

from poi_discovery.core.config import settings
from poi_discovery.services.discovery.openai_semaphore import OPENAI_CALL_SEMAPHORE
from poi_discovery.services.discovery.ports import (
    CompletionResponse,
    CompletionUsage,
    SamplingConfig,
)

logger = logging.getLogger(__name__)


class OpenAICompletionClient:
    """CompletionClient backed by AsyncOpenAI chat completions."""

    provider_name = "openai"

    def __init__(self, client: Optional[AsyncOpenAI] = None) -> None:
        self._client = client

    @property
    def client(self) -> AsyncOpenAI:
        """Lazy initialization so importing never requires an API key."""
        if self._client is None:
            self._client = AsyncOpenAI(
                api_key=settings.openai_api_key.get_secret_value() or None,
                timeout=settings.openai_timeout_s,
                max_retries=0,
            )
        return self._client

    @staticmethod
    def _build_request(
        prompt: str, sampling: SamplingConfig, system_prompt: Optional[str]
    ) -> Dict[str, Any]:
        messages: List[Dict[str, str]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        request_kwargs: Dict[str, Any] = {"model": sampling.model, "messages": messages}
        if sampling.json_mode:
            request_kwargs["response_format"] = {"type": "json_object"}
        # Reasoning models reject temperature and use max_completion_tokens
        if str(sampling.model).startswith(("gpt-5", "o1", "o3", "o4")):
            request_kwargs["max_completion_tokens"] = sampling.max_tokens
        else:
            request_kwargs["temperature"] = sampling.temperature
            request_kwargs["max_tokens"] = sampling.max_tokens
        return request_kwargs

    async def complete(
        self,
        prompt: str,
        sampling: SamplingConfig,
        system_prompt: Optional[str] = None,
    ) -> CompletionResponse:
        request_kwargs = self._build_request(prompt, sampling, system_prompt)

        async with OPENAI_CALL_SEMAPHORE:
            if sampling.timeout_s and sampling.timeout_s > 0:
                response = await asyncio.wait_for(
                    self.client.chat.completions.create(**request_kwargs),
                    timeout=sampling.timeout_s,
                )
            else:
                response = await self.client.chat.completions.create(**request_kwargs)

        text = ""
        if response.choices:
            text = response.choices[0].message.content or ""

        usage = CompletionUsage()
        if response.usage is not None:
            usage = CompletionUsage(
                prompt_tokens=response.usage.prompt_tokens or 0,
                completion_tokens=response.usage.completion_tokens or 0,
                total_tokens=response.usage.total_tokens or 0,
            )

        return CompletionResponse(
            text=text,
            usage=usage,
            model=getattr(response, "model", None) or sampling.model,
        )
