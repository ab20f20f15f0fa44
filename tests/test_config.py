"""Tests for configuration."""

import pytest
from pydantic import ValidationError

from catalog_migration.config import LimiterProfile, Settings, get_settings
from catalog_migration.migration.config import MigrationSettings


def test_settings_defaults():
    """Test that settings have correct default values."""
    settings = Settings(_env_file=None)
    assert settings.app_name == "Catalog Migration"
    assert settings.app_version == "0.1.0"
    assert settings.environment in ["development", "staging", "production"]
    assert settings.openai_embedding_model == "text-embedding-3-large"
    assert settings.vector_dimensions == 1024


def test_get_settings_returns_singleton():
    """Test that get_settings returns the same instance."""
    settings1 = get_settings()
    settings2 = get_settings()
    assert settings1 is settings2


def test_limiter_profiles():
    """Embedding and completion categories get their own quotas."""
    settings = Settings(_env_file=None)
    assert settings.embedding_limiter == LimiterProfile()
    assert settings.embedding_limiter.max_concurrent == 3
    assert settings.embedding_limiter.reservoir == 60
    assert settings.completion_limiter.max_concurrent == 2
    assert settings.completion_limiter.min_time_ms == 500
    assert settings.completion_limiter.reservoir == 20
    assert settings.limiter_metrics_interval_seconds == 300.0


def test_limiter_profile_rejects_backoff_cap_below_last_retry():
    """A cap under base * 2^(max_retries - 1) would flatten the retry schedule."""
    with pytest.raises(ValidationError):
        LimiterProfile(backoff_base_ms=1000, backoff_max_ms=10_000, max_retries=5)


def test_limiter_profile_accepts_exact_backoff_cap():
    profile = LimiterProfile(backoff_base_ms=1000, backoff_max_ms=16_000, max_retries=5)
    assert profile.backoff_max_ms == 16_000
    assert LimiterProfile(max_retries=0, backoff_max_ms=1).max_retries == 0


def test_limiter_profile_from_nested_env(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("EMBEDDING_LIMITER__MAX_CONCURRENT", "7")
    settings = Settings(_env_file=None)
    assert settings.embedding_limiter.max_concurrent == 7


def test_migration_settings_defaults():
    settings = MigrationSettings(_env_file=None)
    assert settings.success_rate_threshold == 0.7
    assert settings.batch_size == 500
    assert settings.embedding_batch_size == 50
    assert settings.delay_between_batches_ms == 1000
    assert settings.retry_attempts == 3
    assert settings.exclude_key_prefixes == ["TP"]


@pytest.mark.parametrize("threshold", [0, -0.1, 1.5])
def test_success_rate_threshold_validated(threshold: float):
    with pytest.raises(ValidationError):
        MigrationSettings(_env_file=None, success_rate_threshold=threshold)


def test_default_migration_config():
    settings = MigrationSettings(_env_file=None, batch_size=100, text_cleaning_enabled=False)
    config = settings.default_migration_config()

    assert config.source.table == "products"
    assert config.source.key_column == "code"
    assert config.source.exclude_key_prefixes == ["TP"]
    assert config.destination.table == "products"
    assert config.destination.clean_before is False
    assert config.processing.batch_size == 100
    assert config.processing.text_cleaning.enabled is False
