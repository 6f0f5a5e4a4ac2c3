"""
Operation Metrics Service
Centralized Configuration Management

This module provides configuration management using Pydantic settings with
environment variable support, validation, and type safety.
"""

from decimal import Decimal
from functools import lru_cache
from typing import Dict, List, Optional
from pydantic import AliasChoices, Field, field_validator, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """PostgreSQL Database Configuration"""

    model_config = SettingsConfigDict(env_prefix="POSTGRES_")

    host: str = Field(default="localhost", description="Database host")
    port: int = Field(default=5432, description="Database port")
    db: str = Field(
        default="operation_metrics",
        validation_alias=AliasChoices("POSTGRES_DATABASE", "POSTGRES_DB"),
        description="Database name",
    )
    user: str = Field(default="metrics", description="Database user")
    password: SecretStr = Field(default="secure_password", description="Database password")
    pool_size: int = Field(default=20, description="Connection pool size")
    echo: bool = Field(default=False, description="Echo SQL queries")
    url: Optional[str] = Field(default=None, description="Full async database URL (overrides host/port)")

    @property
    def async_url(self) -> str:
        """Async database URL for asyncpg"""
        if self.url:
            return self.url
        return f"postgresql+asyncpg://{self.user}:{self.password.get_secret_value()}@{self.host}:{self.port}/{self.db}"


class RedisSettings(BaseSettings):
    """Redis Cache Configuration"""

    model_config = SettingsConfigDict(env_prefix="REDIS_")

    host: str = Field(default="localhost", description="Redis host")
    port: int = Field(default=6379, description="Redis port")
    password: Optional[SecretStr] = Field(default=None, description="Redis password")
    db: int = Field(default=0, description="Redis database number")
    max_connections: int = Field(default=100, description="Max connections")
    socket_timeout: int = Field(default=5, description="Socket timeout in seconds")
    decode_responses: bool = Field(default=True, description="Decode responses to strings")
    url: Optional[str] = Field(default=None, description="Redis URL (overrides host/port)")

    def get_url(self) -> str:
        """Redis connection URL - uses REDIS_URL if set, otherwise builds from host/port"""
        if self.url:
            return self.url
        if self.password:
            return f"redis://:{self.password.get_secret_value()}@{self.host}:{self.port}/{self.db}"
        return f"redis://{self.host}:{self.port}/{self.db}"


class CurrencySettings(BaseSettings):
    """Exchange Rate Provider Configuration"""

    model_config = SettingsConfigDict(env_prefix="CURRENCY_")

    api_url: str = Field(default="https://api.currencyapi.com/v3", description="Rate provider base URL")
    api_key: Optional[SecretStr] = Field(default=None, description="Rate provider API key")
    reference_currency: str = Field(default="BRL", description="Currency every rate set pivots on")
    tracked_currencies: str = Field(default="EUR,USD,GBP,PLN,CZK,BRL", description="Comma separated currencies to request")
    live_cache_ttl_seconds: int = Field(default=900, description="How long live rates stay fresh in-process")
    request_timeout_seconds: float = Field(default=5.0, description="HTTP timeout for rate requests")

    # Last resort only: used when the provider has never answered in this process
    emergency_rates: Dict[str, Decimal] = Field(
        default={
            "BRL": Decimal("1"),
            "USD": Decimal("5.2"),
            "EUR": Decimal("6.37"),
            "GBP": Decimal("6.5"),
        },
        description="Static currency->reference multipliers",
    )

    @field_validator("reference_currency")
    @classmethod
    def upper_reference(cls, v: str) -> str:
        return v.upper()

    @property
    def currencies(self) -> List[str]:
        """Tracked currency codes"""
        return [c.strip().upper() for c in self.tracked_currencies.split(",") if c.strip()]


class AdNetworkSettings(BaseSettings):
    """Ad Network (Graph API) Configuration"""

    model_config = SettingsConfigDict(env_prefix="ADS_")

    api_url: str = Field(default="https://graph.facebook.com", description="Graph API base URL")
    api_version: str = Field(default="v18.0", description="Graph API version")
    access_token: Optional[SecretStr] = Field(default=None, description="Marketing API access token")
    fetch_timeout_seconds: float = Field(default=10.0, description="Per-account spend fetch timeout")


class MetricsSettings(BaseSettings):
    """Dashboard Metrics Configuration"""

    model_config = SettingsConfigDict(env_prefix="METRICS_")

    default_timezone: str = Field(
        default="Europe/Madrid",
        description="Zone used when an operation has no valid time zone",
    )
    ttl_seconds: Dict[str, int] = Field(
        default={
            "1d": 900,
            "7d": 3600,
            "current_month": 10800,
            "30d": 21600,
            "90d": 43200,
        },
        description="Snapshot time-to-live per period tag",
    )
    default_ttl_seconds: int = Field(default=3600, description="TTL for tags missing from ttl_seconds")
    degraded_ttl_seconds: int = Field(
        default=300,
        description="TTL for snapshots computed with a degraded component",
    )


class MonitoringSettings(BaseSettings):
    """Monitoring and Observability Configuration"""

    model_config = SettingsConfigDict(env_prefix="")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL", description="Logging level")
    log_format: str = Field(default="json", alias="LOG_FORMAT", description="Log format: json or text")


class Settings(BaseSettings):
    """
    Main Application Settings

    Aggregates all configuration sections and provides a single entry point
    for accessing application configuration.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Application
    app_name: str = Field(default="operation-metrics", alias="APP_NAME", description="Application name")
    app_env: str = Field(default="development", alias="APP_ENV", description="Environment")
    debug: bool = Field(default=False, alias="DEBUG", description="Debug mode")

    # API Server
    api_host: str = Field(default="0.0.0.0", alias="API_HOST", description="API host")
    api_port: int = Field(default=8000, alias="API_PORT", description="API port")

    # Version
    version: str = Field(default="1.0.0", description="Application version")

    # Subsystem configurations
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    currency: CurrencySettings = Field(default_factory=CurrencySettings)
    ads: AdNetworkSettings = Field(default_factory=AdNetworkSettings)
    metrics: MetricsSettings = Field(default_factory=MetricsSettings)
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)

    @field_validator("app_env")
    @classmethod
    def validate_env(cls, v: str) -> str:
        """Validate environment value"""
        allowed = ["development", "staging", "production", "testing"]
        if v.lower() not in allowed:
            raise ValueError(f"Environment must be one of: {allowed}")
        return v.lower()

    @property
    def is_development(self) -> bool:
        """Check if running in development"""
        return self.app_env == "development"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached application settings.

    Uses LRU cache to ensure settings are only loaded once.

    Returns:
        Settings: Application settings instance
    """
    return Settings()
