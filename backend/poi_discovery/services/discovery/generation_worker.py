# backend/poi_discovery/services/discovery/generation_worker.py
"""
Generative fallback: ask a completion model for POIs near a coordinate.

Used only when every cache layer and the spatial store came up empty.
Each invocation:
1. Builds a prompt from the coordinate, radius and optional category
2. Calls the completion service once (no retries) with a fixed temperature
   and bounded output
3. Measures latency, reads token usage, estimates cost
4. Parses the JSON payload into candidate POIs

The outcome (candidates or error, plus the interaction record) is
delivered through a single-shot future.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
import json
import logging
import time
from typing import Any, List, Optional, Set, Tuple

from pydantic import ValidationError as PydanticValidationError

from poi_discovery.core.exceptions import DomainException, ParseError, UpstreamUnavailable
from poi_discovery.core.ulid_helper import generate_ulid
from poi_discovery.schemas.poi import GeneratedPOICandidate
from poi_discovery.services.discovery.circuit_breaker import (
    COMPLETION_CIRCUIT,
    CircuitBreaker,
    CircuitOpenError,
)
from poi_discovery.services.discovery.config import (
    AVAILABLE_COMPLETION_MODELS,
    DiscoveryConfig,
    get_discovery_config,
)
from poi_discovery.services.discovery.metrics import record_fallback, record_openai_latency
from poi_discovery.services.discovery.ports import (
    CompletionClient,
    CompletionResponse,
    CompletionUsage,
    SamplingConfig,
)

logger = logging.getLogger(__name__)

PAYLOAD_KEY = "points_of_interest"
_ALTERNATE_PAYLOAD_KEYS = ("pois", "places", "results")

SYSTEM_PROMPT = (
    "You are a knowledgeable local travel guide. You only recommend real, "
    "currently existing places and you answer with JSON only."
)

_PROMPT_TEMPLATE = """List interesting points of interest within {radius_km:.1f} km of
latitude {lat:.6f}, longitude {lon:.6f}.
{category_line}
Rules:
- Only include real places whose location is inside the search radius.
- Give accurate decimal coordinates for every place.
- Return between 5 and 15 places, closest and most notable first.
- price_level is an integer from 0 (free) to 4 (very expensive), or null.
- rating is a number from 0 to 5, or null.

Respond with a single JSON object:
{{
  "{payload_key}": [
    {{
      "name": "Place name",
      "category": "museum",
      "description": "One or two sentences about the place",
      "latitude": 0.0,
      "longitude": 0.0,
      "address": "Street address",
      "price_level": 1,
      "rating": 4.5,
      "tags": ["tag"],
      "opening_hours": {{"monday": "09:00-18:00"}}
    }}
  ]
}}
"""


def build_prompt(lat: float, lon: float, radius_km: float, category: Optional[str] = None) -> str:
    """Domain prompt for a nearby-POI generation."""
    category_line = (
        f"Only include places in the category: {category.strip()}.\n"
        if category and category.strip()
        else "Cover a mix of categories (sights, museums, parks, food, nightlife).\n"
    )
    return _PROMPT_TEMPLATE.format(
        lat=lat,
        lon=lon,
        radius_km=radius_km,
        category_line=category_line,
        payload_key=PAYLOAD_KEY,
    )


def estimate_cost(model_name: str, prompt_tokens: int, completion_tokens: int) -> float:
    """
    USD estimate from per-1M-token pricing.

    The longest model id contained in model_name wins, so dated snapshot
    names price like their base model. Unknown models cost 0.
    """
    normalized = (model_name or "").lower()
    matches = [m for m in AVAILABLE_COMPLETION_MODELS if m["id"].lower() in normalized]
    if not matches:
        return 0.0
    pricing = max(matches, key=lambda m: len(m["id"]))
    input_cost = prompt_tokens / 1_000_000 * float(pricing["input_per_1m"])
    output_cost = completion_tokens / 1_000_000 * float(pricing["output_per_1m"])
    return input_cost + output_cost


def clean_json_payload(text: Optional[str]) -> str:
    """
    Strip markdown fences and surrounding chatter from a model response.

    Raises:
        ParseError: If the text is empty or holds no JSON object/array
    """
    cleaned = (text or "").strip()
    if not cleaned:
        raise ParseError("Completion returned empty text")

    if cleaned.startswith("```"):
        first_newline = cleaned.find("\n")
        cleaned = cleaned[first_newline + 1 :] if first_newline != -1 else cleaned[3:]
        if cleaned.rstrip().endswith("```"):
            cleaned = cleaned.rstrip()[:-3]
        cleaned = cleaned.strip()

    obj_start, obj_end = cleaned.find("{"), cleaned.rfind("}")
    arr_start, arr_end = cleaned.find("["), cleaned.rfind("]")
    if arr_start != -1 and arr_end > arr_start and (obj_start == -1 or arr_start < obj_start):
        return cleaned[arr_start : arr_end + 1]
    if obj_start != -1 and obj_end > obj_start:
        return cleaned[obj_start : obj_end + 1]
    raise ParseError("Completion did not contain a JSON object", raw_excerpt=cleaned)


def parse_candidates(text: Optional[str]) -> List[GeneratedPOICandidate]:
    """
    Parse a completion payload into candidate POIs.

    Individual malformed items are skipped. A payload that is not JSON,
    has the wrong shape, or yields no usable items raises ParseError.
    """
    payload = clean_json_payload(text)
    try:
        data: Any = json.loads(payload)
    except json.JSONDecodeError as e:
        raise ParseError(
            f"Completion payload is not valid JSON: {e.msg}", raw_excerpt=payload
        ) from e

    items: Any = data
    if isinstance(data, dict):
        items = data.get(PAYLOAD_KEY)
        if items is None:
            items = next((data[k] for k in _ALTERNATE_PAYLOAD_KEYS if k in data), None)
    if not isinstance(items, list):
        raise ParseError(
            f"Completion payload has no '{PAYLOAD_KEY}' list", raw_excerpt=payload
        )
    if not items:
        raise ParseError("Completion payload contained no points of interest")

    candidates: List[GeneratedPOICandidate] = []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            logger.debug(f"Skipping non-object POI item at index {index}")
            continue
        try:
            candidates.append(GeneratedPOICandidate.model_validate(item))
        except PydanticValidationError as e:
            logger.debug(f"Skipping malformed POI item at index {index}: {e.error_count()} errors")

    if not candidates:
        raise ParseError("Completion payload contained no usable points of interest")
    return candidates


@dataclass(frozen=True)
class GenerationRequest:
    lat: float
    lon: float
    radius_km: float
    category: Optional[str] = None
    user_id: Optional[str] = None


@dataclass(frozen=True)
class GenerationInteraction:
    """Immutable record of one fallback invocation."""

    id: str
    prompt: str
    response_text: str
    model_name: str
    provider: str
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    latency_ms: int
    cost_estimate: float
    status_code: int
    error_message: Optional[str]
    temperature: float
    latitude: float
    longitude: float
    radius_km: float
    user_id: Optional[str] = None
    request_type: str = "nearby"
    search_type: str = "general"
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def succeeded(self) -> bool:
        return self.error_message is None


@dataclass(frozen=True)
class GenerationOutcome:
    interaction: GenerationInteraction
    candidates: Tuple[GeneratedPOICandidate, ...] = ()
    error: Optional[DomainException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class GenerationWorker:
    """Runs generative fallback invocations, each on its own task."""

    def __init__(
        self,
        client: CompletionClient,
        config: Optional[DiscoveryConfig] = None,
        circuit: CircuitBreaker = COMPLETION_CIRCUIT,
    ) -> None:
        self.client = client
        self._config = config
        self.circuit = circuit
        self._tasks: Set["asyncio.Task[None]"] = set()

    @property
    def config(self) -> DiscoveryConfig:
        return self._config or get_discovery_config()

    def sampling(self) -> SamplingConfig:
        config = self.config
        return SamplingConfig(
            model=config.completion_model,
            temperature=config.completion_temperature,
            max_tokens=config.completion_max_tokens,
            timeout_s=config.completion_timeout_s,
        )

    def submit(self, request: GenerationRequest) -> "asyncio.Future[GenerationOutcome]":
        """
        Start an invocation on its own task and return its result future.

        The future resolves exactly once with a GenerationOutcome. It is
        cancelled only if the worker task itself is cancelled.
        """
        loop = asyncio.get_running_loop()
        future: "asyncio.Future[GenerationOutcome]" = loop.create_future()
        task = asyncio.create_task(self._run(request, future), name="poi-generation-worker")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return future

    async def _run(
        self, request: GenerationRequest, future: "asyncio.Future[GenerationOutcome]"
    ) -> None:
        try:
            outcome = await self.generate(request)
        except asyncio.CancelledError:
            if not future.done():
                future.cancel()
            raise
        except Exception as e:
            logger.exception("Generation worker crashed")
            if not future.done():
                future.set_exception(e)
            return
        if not future.done():
            future.set_result(outcome)

    async def generate(self, request: GenerationRequest) -> GenerationOutcome:
        """
        One fallback invocation. Domain failures are returned in the
        outcome, never raised.
        """
        prompt = build_prompt(request.lat, request.lon, request.radius_km, request.category)
        sampling = self.sampling()

        response: Optional[CompletionResponse] = None
        error: Optional[DomainException] = None
        candidates: List[GeneratedPOICandidate] = []

        logger.info(
            f"Generative fallback for ({request.lat:.5f}, {request.lon:.5f}) "
            f"radius={request.radius_km}km category={request.category or '-'} "
            f"model={sampling.model}"
        )

        start = time.perf_counter()
        try:
            response = await self.circuit.call(
                self.client.complete, prompt, sampling, system_prompt=SYSTEM_PROMPT
            )
        except CircuitOpenError as e:
            error = UpstreamUnavailable("completion", str(e))
        except asyncio.TimeoutError:
            error = UpstreamUnavailable("completion", "Completion request timed out")
        except Exception as e:
            error = UpstreamUnavailable("completion", f"Completion request failed: {e}")
        latency_ms = int((time.perf_counter() - start) * 1000)
        record_openai_latency("chat_completions", latency_ms)

        if response is not None:
            try:
                candidates = parse_candidates(response.text)
            except ParseError as e:
                error = e

        usage = response.usage if response is not None else CompletionUsage()
        model_name = (response.model if response is not None else None) or sampling.model
        cost = estimate_cost(model_name, usage.prompt_tokens, usage.completion_tokens)

        interaction = GenerationInteraction(
            id=generate_ulid(),
            prompt=prompt,
            response_text=response.text if response is not None else "",
            model_name=model_name,
            provider=getattr(self.client, "provider_name", "unknown"),
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            total_tokens=usage.total_tokens or usage.prompt_tokens + usage.completion_tokens,
            latency_ms=latency_ms,
            cost_estimate=cost,
            status_code=200 if error is None else error.status_code,
            error_message=error.message if error is not None else None,
            temperature=sampling.temperature,
            latitude=request.lat,
            longitude=request.lon,
            radius_km=request.radius_km,
            user_id=request.user_id,
        )

        record_fallback(
            "success" if error is None else error.code.lower(),
            model_name,
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            cost_usd=cost,
        )

        if error is None:
            logger.info(
                f"Generative fallback produced {len(candidates)} candidates in {latency_ms}ms "
                f"(tokens={interaction.total_tokens}, cost=${cost:.6f})"
            )
        else:
            logger.error(f"Generative fallback failed after {latency_ms}ms: {error.message}")

        return GenerationOutcome(interaction=interaction, candidates=tuple(candidates), error=error)

    async def drain(self) -> None:
        """Wait for in-flight invocations (used at shutdown)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
