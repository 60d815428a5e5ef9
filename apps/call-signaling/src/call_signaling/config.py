"""Configuration management using pydantic-settings."""

from enum import Enum
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Application environment."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class StoreBackend(str, Enum):
    """Call record store backend."""

    REDIS = "redis"
    MEMORY = "memory"


class RedisSettings(BaseSettings):
    """Redis configuration for the call record store."""

    model_config = SettingsConfigDict(env_prefix="REDIS_", case_sensitive=False)

    url: str = Field(
        default="redis://localhost:6379/0", description="Redis connection URL"
    )
    password: Optional[str] = Field(default=None, description="Redis password")
    decode_responses: bool = Field(
        default=True, description="Decode responses as strings"
    )
    socket_timeout: int = Field(default=5, description="Socket timeout in seconds")
    socket_connect_timeout: int = Field(
        default=5, description="Socket connect timeout in seconds"
    )
    max_connections: int = Field(
        default=50, description="Maximum connections in the pool"
    )
    key_prefix: str = Field(
        default="signaling", description="Prefix for all call record keys and channels"
    )
    call_ttl: int = Field(
        default=86400,
        description="Call record TTL in seconds (store-side garbage collection)",
        alias="CALL_RECORD_TTL",
    )


class SignalingSettings(BaseSettings):
    """Timeouts and retry knobs for the call-signaling protocol."""

    model_config = SettingsConfigDict(
        env_prefix="", case_sensitive=False, populate_by_name=True
    )

    ring_timeout_dev_seconds: float = Field(
        default=5.0,
        description="Outbound ring timeout outside production",
        alias="RING_TIMEOUT_DEV_SECONDS",
    )
    ring_timeout_prod_seconds: float = Field(
        default=10.0,
        description="Outbound ring timeout in production",
        alias="RING_TIMEOUT_PROD_SECONDS",
    )
    ring_timeout_override: Optional[float] = Field(
        default=None,
        description="Explicit ring timeout; wins over the per-environment defaults",
        alias="RING_TIMEOUT_SECONDS",
    )
    auto_decline_seconds: float = Field(
        default=30.0,
        description="Inbound auto-decline timeout",
        alias="AUTO_DECLINE_SECONDS",
    )
    subscription_retry_attempts: int = Field(
        default=5,
        description="Reconnect attempts before a live subscription is reported lost",
        alias="SUBSCRIPTION_RETRY_ATTEMPTS",
    )
    subscription_retry_base_delay: float = Field(
        default=0.5,
        description="Initial reconnect backoff in seconds (doubles per attempt)",
        alias="SUBSCRIPTION_RETRY_BASE_DELAY",
    )
    subscription_retry_max_delay: float = Field(
        default=8.0,
        description="Upper bound for the reconnect backoff in seconds",
        alias="SUBSCRIPTION_RETRY_MAX_DELAY",
    )

    @field_validator(
        "ring_timeout_dev_seconds",
        "ring_timeout_prod_seconds",
        "ring_timeout_override",
        "auto_decline_seconds",
    )
    @classmethod
    def validate_positive(cls, v: Optional[float]) -> Optional[float]:
        """Timeouts must be positive; an unset override is allowed."""
        if v is not None and v <= 0:
            raise ValueError("Timeouts must be greater than zero")
        return v


class AvailabilitySettings(BaseSettings):
    """Candidate availability source (Core API) configuration."""

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=False)

    core_api_url: str = Field(
        default="http://localhost:8000",
        description="Core API service URL",
        alias="CORE_API_URL",
    )
    core_api_timeout: int = Field(
        default=10, description="Core API request timeout in seconds", alias="CORE_API_TIMEOUT"
    )
    core_api_api_key: Optional[str] = Field(
        default=None,
        description="Optional internal API key for Core API (sent as X-Internal-API-Key)",
        alias="CORE_API_API_KEY",
    )
    available_path: str = Field(
        default="/api/v1/therapists/instant-call",
        description="Path of the instant-call availability endpoint",
        alias="AVAILABILITY_PATH",
    )


class ServerSettings(BaseSettings):
    """Server configuration."""

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=False)

    host: str = Field(default="0.0.0.0", description="Server host", alias="HOST")
    port: int = Field(default=8003, description="HTTP server port", alias="PORT")
    reload: bool = Field(
        default=False, description="Enable auto-reload (development only)"
    )


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application settings
    app_name: str = Field(
        default="call-signaling", description="Application name", alias="APP_NAME"
    )
    environment: Environment = Field(
        default=Environment.DEVELOPMENT,
        description="Application environment",
        alias="ENVIRONMENT",
    )
    debug: bool = Field(default=False, description="Enable debug mode", alias="DEBUG")
    log_level: str = Field(
        default="INFO", description="Logging level", alias="LOG_LEVEL"
    )
    store_backend: StoreBackend = Field(
        default=StoreBackend.REDIS,
        description="Call record store backend (redis or memory)",
        alias="STORE_BACKEND",
    )

    # Sub-settings
    redis: RedisSettings = Field(default_factory=RedisSettings)
    signaling: SignalingSettings = Field(default_factory=SignalingSettings)
    availability: AvailabilitySettings = Field(default_factory=AvailabilitySettings)
    server: ServerSettings = Field(default_factory=ServerSettings)

    @field_validator("environment", mode="before")
    @classmethod
    def parse_environment(cls, v):
        """Parse environment from string."""
        if isinstance(v, str):
            try:
                return Environment(v.lower())
            except ValueError:
                return Environment.DEVELOPMENT
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of {valid_levels}")
        return v.upper()

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.environment == Environment.DEVELOPMENT

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == Environment.PRODUCTION

    @property
    def ring_timeout_seconds(self) -> float:
        """Ring timeout for the current environment."""
        if self.signaling.ring_timeout_override is not None:
            return self.signaling.ring_timeout_override
        if self.is_production:
            return self.signaling.ring_timeout_prod_seconds
        return self.signaling.ring_timeout_dev_seconds

    def validate_production_settings(self) -> None:
        """Validate that production settings are safe."""
        if self.is_production:
            if self.debug:
                raise ValueError("DEBUG must be False in production")
            if self.store_backend != StoreBackend.REDIS:
                raise ValueError(
                    "STORE_BACKEND must be 'redis' in production; the memory store "
                    "is process-local and cannot fan out to other devices."
                )


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
        try:
            _settings.validate_production_settings()
        except ValueError as e:
            import logging

            logging.error(f"Configuration validation failed: {e}")
            if _settings.is_production:
                raise  # Fail fast in production
    return _settings
