# backend/poi_discovery/services/discovery/metrics.py
"""
Prometheus metrics for POI discovery.

Provides observability for:
- Resolution latency by answering layer
- Cache performance (vector, semantic, embedding)
- Generative fallback volume, tokens and cost
- Circuit breaker state and degradation events
- Background persistence failures
"""
from __future__ import annotations

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram

REGISTRY = CollectorRegistry(auto_describe=True)

# Latency metrics
DISCOVERY_LATENCY = Histogram(
    "poi_discovery_latency_ms",
    "Resolution latency in milliseconds",
    ["source"],
    registry=REGISTRY,
    buckets=[5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 10000, 30000],
)

OPENAI_LATENCY = Histogram(
    "poi_discovery_openai_latency_ms",
    "OpenAI API latency in milliseconds",
    ["endpoint"],
    registry=REGISTRY,
    buckets=[25, 50, 100, 200, 500, 1000, 2000, 5000, 10000, 30000],
)

# Infrastructure metrics
CACHE_HIT = Counter(
    "poi_discovery_cache_hit_total",
    "Cache hit count by type",
    ["cache_type"],
    registry=REGISTRY,
)

CACHE_MISS = Counter(
    "poi_discovery_cache_miss_total",
    "Cache miss count by type",
    ["cache_type"],
    registry=REGISTRY,
)

CACHE_ENTRIES = Gauge(
    "poi_discovery_cache_entries",
    "Live entries per in-process cache",
    ["cache_type"],
    registry=REGISTRY,
)

CIRCUIT_BREAKER_STATE = Gauge(
    "poi_discovery_circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=half-open, 2=open)",
    ["component"],
    registry=REGISTRY,
)

DEGRADATION_EVENTS = Counter(
    "poi_discovery_degradation_total",
    "Count of degradation events",
    ["component"],
    registry=REGISTRY,
)

# Generative fallback
FALLBACK_INVOCATIONS = Counter(
    "poi_discovery_fallback_invocations_total",
    "Generative fallback invocations",
    ["status"],
    registry=REGISTRY,
)

FALLBACK_TOKENS = Counter(
    "poi_discovery_fallback_tokens_total",
    "Tokens consumed by the generative fallback",
    ["kind"],
    registry=REGISTRY,
)

FALLBACK_COST = Counter(
    "poi_discovery_fallback_cost_usd_total",
    "Estimated generative fallback spend in USD",
    ["model"],
    registry=REGISTRY,
)

# Persistence
PERSISTENCE_FAILURES = Counter(
    "poi_discovery_persistence_failures_total",
    "Background write-back failures",
    ["operation"],
    registry=REGISTRY,
)

# Request volume
DISCOVERY_REQUESTS = Counter(
    "poi_discovery_requests_total",
    "Total discovery requests",
    ["mode", "status"],
    registry=REGISTRY,
)


def record_cache_event(cache_type: str, hit: bool) -> None:
    """Record a cache hit or miss."""
    if hit:
        CACHE_HIT.labels(cache_type=cache_type).inc()
    else:
        CACHE_MISS.labels(cache_type=cache_type).inc()


def record_cache_size(cache_type: str, size: int) -> None:
    CACHE_ENTRIES.labels(cache_type=cache_type).set(size)


def record_openai_latency(endpoint: str, latency_ms: int) -> None:
    """Record OpenAI API call latency."""
    OPENAI_LATENCY.labels(endpoint=endpoint).observe(latency_ms)


def update_circuit_breaker_state(component: str, state: str) -> None:
    """Update circuit breaker state gauge."""
    state_value = {"closed": 0, "half_open": 1, "open": 2}.get(state, 0)
    CIRCUIT_BREAKER_STATE.labels(component=component).set(state_value)


def record_degradation(component: str) -> None:
    DEGRADATION_EVENTS.labels(component=component).inc()


def record_fallback(
    status: str,
    model: str,
    prompt_tokens: int = 0,
    completion_tokens: int = 0,
    cost_usd: float = 0.0,
) -> None:
    """Record one generative fallback invocation and its usage."""
    FALLBACK_INVOCATIONS.labels(status=status).inc()
    if prompt_tokens:
        FALLBACK_TOKENS.labels(kind="prompt").inc(prompt_tokens)
    if completion_tokens:
        FALLBACK_TOKENS.labels(kind="completion").inc(completion_tokens)
    if cost_usd > 0:
        FALLBACK_COST.labels(model=model).inc(cost_usd)


def record_persistence_failure(operation: str) -> None:
    PERSISTENCE_FAILURES.labels(operation=operation).inc()


def record_resolution(mode: str, source: str, latency_ms: int, status: str = "success") -> None:
    """Record the outcome of one resolve_* call."""
    DISCOVERY_REQUESTS.labels(mode=mode, status=status).inc()
    DISCOVERY_LATENCY.labels(source=source).observe(latency_ms)


__all__ = [
    # Metrics
    "REGISTRY",
    "DISCOVERY_LATENCY",
    "OPENAI_LATENCY",
    "CACHE_HIT",
    "CACHE_MISS",
    "CACHE_ENTRIES",
    "CIRCUIT_BREAKER_STATE",
    "DEGRADATION_EVENTS",
    "FALLBACK_INVOCATIONS",
    "FALLBACK_TOKENS",
    "FALLBACK_COST",
    "PERSISTENCE_FAILURES",
    "DISCOVERY_REQUESTS",
    # Helper functions
    "record_cache_event",
    "record_cache_size",
    "record_openai_latency",
    "update_circuit_breaker_state",
    "record_degradation",
    "record_fallback",
    "record_persistence_failure",
    "record_resolution",
]
