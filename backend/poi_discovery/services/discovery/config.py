# backend/poi_discovery/services/discovery/config.py
"""
Runtime configuration for the discovery resolution pipeline.

Provides runtime-configurable settings for:
- Vector and embedding cache thresholds, TTLs and capacity
- Completion model, sampling temperature and output bound
- Embedding model and dimensions
- Fallback wait bound and single-flight coalescing

Settings are loaded from environment variables at startup and can be
temporarily overridden at runtime (e.g. from an admin endpoint or tests).
"""
from __future__ import annotations

from dataclasses import asdict, dataclass
import os
from threading import Lock
from typing import Any, Dict, List, Optional


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_optional_float(name: str, default: Optional[float]) -> Optional[float]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    value = float(raw)
    return value if value > 0 else None


@dataclass
class DiscoveryConfig:
    """Configuration for discovery resolution."""

    # Vector (semantic) cache
    similarity_threshold: float = 0.95
    cache_ttl_seconds: float = 600.0
    max_cache_entries: int = 1000
    sweeper_enabled: bool = True

    # Embedding cache
    embedding_cache_ttl_seconds: float = 600.0
    max_embedding_entries: int = 5000

    # Completion model (generative fallback)
    completion_model: str = "gpt-4o-mini"
    completion_provider: str = "openai"
    completion_temperature: float = 0.7
    completion_max_tokens: int = 4096
    completion_timeout_s: float = 25.0

    # Embedding model
    embedding_model: str = "text-embedding-3-small"
    embedding_dimensions: int = 1536

    # Orchestration
    fallback_timeout_seconds: Optional[float] = 30.0
    single_flight: bool = True
    default_radius_km: float = 5.0
    max_radius_km: float = 50.0
    dedup_radius_m: float = 100.0
    semantic_limit: int = 10
    max_semantic_limit: int = 50

    @classmethod
    def from_env(cls) -> "DiscoveryConfig":
        """Load configuration from environment variables."""
        return cls(
            similarity_threshold=float(os.getenv("DISCOVERY_SIMILARITY_THRESHOLD", "0.95")),
            cache_ttl_seconds=float(os.getenv("DISCOVERY_CACHE_TTL_SECONDS", "600")),
            max_cache_entries=int(os.getenv("DISCOVERY_MAX_CACHE_ENTRIES", "1000")),
            sweeper_enabled=_env_bool("DISCOVERY_CACHE_SWEEPER", True),
            embedding_cache_ttl_seconds=float(
                os.getenv("DISCOVERY_EMBEDDING_CACHE_TTL_SECONDS", "600")
            ),
            max_embedding_entries=int(os.getenv("DISCOVERY_MAX_EMBEDDING_ENTRIES", "5000")),
            completion_model=os.getenv("OPENAI_COMPLETION_MODEL", "gpt-4o-mini"),
            completion_provider=os.getenv("COMPLETION_PROVIDER", "openai"),
            completion_temperature=float(os.getenv("OPENAI_COMPLETION_TEMPERATURE", "0.7")),
            completion_max_tokens=int(os.getenv("OPENAI_COMPLETION_MAX_TOKENS", "4096")),
            completion_timeout_s=float(os.getenv("OPENAI_COMPLETION_TIMEOUT_S", "25")),
            embedding_model=os.getenv("OPENAI_EMBEDDING_MODEL", "text-embedding-3-small"),
            embedding_dimensions=int(os.getenv("EMBEDDING_DIMENSIONS", "1536")),
            fallback_timeout_seconds=_env_optional_float("DISCOVERY_FALLBACK_TIMEOUT_S", 30.0),
            single_flight=_env_bool("DISCOVERY_SINGLE_FLIGHT", True),
            default_radius_km=float(os.getenv("DISCOVERY_DEFAULT_RADIUS_KM", "5")),
            max_radius_km=float(os.getenv("DISCOVERY_MAX_RADIUS_KM", "50")),
            dedup_radius_m=float(os.getenv("DISCOVERY_DEDUP_RADIUS_M", "100")),
            semantic_limit=int(os.getenv("DISCOVERY_SEMANTIC_LIMIT", "10")),
            max_semantic_limit=int(os.getenv("DISCOVERY_MAX_SEMANTIC_LIMIT", "50")),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for API responses."""
        return asdict(self)


# Thread-safe singleton pattern for config
_config: Optional[DiscoveryConfig] = None
_config_lock = Lock()


def get_discovery_config() -> DiscoveryConfig:
    """
    Get the discovery configuration singleton.

    Loads from environment on first access.
    """
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:
                _config = DiscoveryConfig.from_env()
    return _config


def update_discovery_config(**overrides: Any) -> DiscoveryConfig:
    """
    Update discovery configuration at runtime.

    Changes are NOT persisted to environment; they reset on restart.
    Keys must be DiscoveryConfig field names; None values are ignored.

    Raises:
        ValueError: If an unknown field name is passed
    """
    global _config
    with _config_lock:
        if _config is None:
            _config = DiscoveryConfig.from_env()

        for name, value in overrides.items():
            if name not in DiscoveryConfig.__dataclass_fields__:
                raise ValueError(f"Unknown discovery config field: {name}")
            if value is not None:
                setattr(_config, name, value)

        return _config


def reset_discovery_config() -> DiscoveryConfig:
    """Reset configuration to environment defaults."""
    global _config
    with _config_lock:
        _config = DiscoveryConfig.from_env()
        return _config


# Available completion models with pricing per 1M tokens (USD)
AVAILABLE_COMPLETION_MODELS: List[Dict[str, Any]] = [
    {
        "id": "gpt-4o-mini",
        "name": "GPT-4o Mini",
        "input_per_1m": 0.15,
        "output_per_1m": 0.60,
    },
    {
        "id": "gpt-4o",
        "name": "GPT-4o",
        "input_per_1m": 2.50,
        "output_per_1m": 10.00,
    },
    {
        "id": "gpt-4.1-mini",
        "name": "GPT-4.1 Mini",
        "input_per_1m": 0.40,
        "output_per_1m": 1.60,
    },
    {
        "id": "gemini-2.0-flash",
        "name": "Gemini 2.0 Flash",
        "input_per_1m": 0.10,
        "output_per_1m": 0.40,
    },
    {
        "id": "gemini-1.5-flash",
        "name": "Gemini 1.5 Flash",
        "input_per_1m": 0.075,
        "output_per_1m": 0.30,
    },
]
