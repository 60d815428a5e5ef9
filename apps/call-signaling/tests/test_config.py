"""Tests for configuration management."""

import pytest

from call_signaling.config import (
    Environment,
    RedisSettings,
    Settings,
    SignalingSettings,
    StoreBackend,
    get_settings,
)


def test_redis_settings_defaults(monkeypatch):
    """Test Redis settings."""
    monkeypatch.delenv("REDIS_URL", raising=False)
    settings = RedisSettings()
    assert settings.url == "redis://localhost:6379/0"
    assert settings.key_prefix == "signaling"
    assert settings.call_ttl == 86400


def test_signaling_settings_defaults():
    """Test signaling timeouts and retry defaults."""
    settings = SignalingSettings()
    assert settings.ring_timeout_dev_seconds == 5.0
    assert settings.ring_timeout_prod_seconds == 10.0
    assert settings.ring_timeout_override is None
    assert settings.auto_decline_seconds == 30.0
    assert settings.subscription_retry_attempts == 5


def test_signaling_settings_rejects_non_positive_timeout():
    """Test that timeouts must be positive."""
    with pytest.raises(ValueError, match="greater than zero"):
        SignalingSettings(auto_decline_seconds=0)


@pytest.mark.parametrize("value", ["0", "-1"])
def test_ring_timeout_override_must_be_positive(monkeypatch, value):
    """Test an explicit ring timeout is validated like the defaults."""
    monkeypatch.setenv("RING_TIMEOUT_SECONDS", value)
    with pytest.raises(ValueError, match="greater than zero"):
        SignalingSettings()


def test_ring_timeout_per_environment():
    """Test the ring timeout follows the environment."""
    assert Settings(ENVIRONMENT="development").ring_timeout_seconds == 5.0
    assert Settings(ENVIRONMENT="production").ring_timeout_seconds == 10.0


def test_ring_timeout_override(monkeypatch):
    """Test an explicit ring timeout wins over the environment default."""
    monkeypatch.setenv("RING_TIMEOUT_SECONDS", "2.5")
    settings = Settings(ENVIRONMENT="production")
    assert settings.ring_timeout_seconds == 2.5


def test_environment_parsing():
    """Test environment parsing from strings."""
    assert Settings(ENVIRONMENT="PRODUCTION").environment == Environment.PRODUCTION
    assert Settings(ENVIRONMENT="staging").is_production is False
    assert Settings(ENVIRONMENT="unknown").environment == Environment.DEVELOPMENT


def test_log_level_validation():
    """Test log level validation."""
    assert Settings(LOG_LEVEL="debug").log_level == "DEBUG"
    with pytest.raises(ValueError, match="Log level must be one of"):
        Settings(LOG_LEVEL="verbose")


def test_store_backend_from_env(monkeypatch):
    """Test the store backend selection."""
    monkeypatch.setenv("STORE_BACKEND", "redis")
    assert Settings().store_backend == StoreBackend.REDIS
    monkeypatch.setenv("STORE_BACKEND", "memory")
    assert Settings().store_backend == StoreBackend.MEMORY


def test_production_rejects_memory_store():
    """Test production validation."""
    settings = Settings(ENVIRONMENT="production", STORE_BACKEND="memory")
    with pytest.raises(ValueError, match="STORE_BACKEND"):
        settings.validate_production_settings()


def test_production_rejects_debug():
    """Test production validation of debug mode."""
    settings = Settings(ENVIRONMENT="production", STORE_BACKEND="redis", DEBUG=True)
    with pytest.raises(ValueError, match="DEBUG"):
        settings.validate_production_settings()


def test_get_settings_is_cached():
    """Test the settings singleton."""
    assert get_settings() is get_settings()
