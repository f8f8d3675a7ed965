# backend/tests/unit/core/test_config.py
"""Unit tests for process settings and the runtime discovery config."""

from __future__ import annotations

from pydantic import ValidationError as PydanticValidationError
import pytest

from poi_discovery.core.config import Settings
from poi_discovery.services.discovery.config import (
    DiscoveryConfig,
    get_discovery_config,
    reset_discovery_config,
    update_discovery_config,
)


class TestSettings:
    def test_log_level_is_normalized(self):
        assert Settings(LOG_LEVEL=" debug ").log_level == "DEBUG"

    def test_unknown_log_level_is_rejected(self):
        with pytest.raises(PydanticValidationError):
            Settings(LOG_LEVEL="chatty")

    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("SPATIAL_BACKEND", "memory")
        monkeypatch.setenv("OPENAI_CALL_CONCURRENCY", "7")

        settings = Settings()

        assert settings.spatial_backend == "memory"
        assert settings.openai_call_concurrency == 7

    def test_api_key_is_secret(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        settings = Settings()

        assert "sk-test" not in repr(settings)
        assert settings.openai_api_key.get_secret_value() == "sk-test"


class TestDiscoveryConfig:
    def test_defaults(self):
        config = DiscoveryConfig()

        assert config.similarity_threshold == 0.95
        assert config.completion_model == "gpt-4o-mini"
        assert config.fallback_timeout_seconds == 30.0
        assert config.dedup_radius_m == 100.0

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("DISCOVERY_SIMILARITY_THRESHOLD", "0.9")
        monkeypatch.setenv("DISCOVERY_CACHE_SWEEPER", "off")
        monkeypatch.setenv("OPENAI_COMPLETION_MODEL", "gpt-4o")

        config = DiscoveryConfig.from_env()

        assert config.similarity_threshold == 0.9
        assert config.sweeper_enabled is False
        assert config.completion_model == "gpt-4o"

    @pytest.mark.parametrize("raw", ["0", "-5"])
    def test_non_positive_fallback_timeout_disables_bound(self, monkeypatch, raw):
        monkeypatch.setenv("DISCOVERY_FALLBACK_TIMEOUT_S", raw)
        assert DiscoveryConfig.from_env().fallback_timeout_seconds is None

    def test_update_and_reset(self):
        updated = update_discovery_config(similarity_threshold=0.8, completion_model=None)

        assert updated is get_discovery_config()
        assert updated.similarity_threshold == 0.8
        assert updated.completion_model == "gpt-4o-mini"

        assert reset_discovery_config().similarity_threshold == 0.95

    def test_update_rejects_unknown_fields(self):
        with pytest.raises(ValueError):
            update_discovery_config(not_a_field=1)

    def test_to_dict(self):
        assert DiscoveryConfig().to_dict()["single_flight"] is True
