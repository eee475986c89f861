"""Application settings and configuration.

This module defines all configuration options for a satellite node.
Settings are loaded from environment variables (or a ``.env`` file) once at
startup and are immutable afterwards; the resulting object is passed into
every component that needs it.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Satellite settings loaded from environment variables.

    Every field maps to one environment variable through its alias. Instances
    are frozen: runtime overrides pushed by the hub are kept in the state
    store, never written back here.
    """

    # Hub connection
    hub_url: str | None = Field(default=None, alias="HUB_URL")
    hub_api_key: str | None = Field(default=None, alias="HUB_API_KEY")
    hub_timeout: float = Field(default=30.0, alias="HUB_TIMEOUT")
    hub_retry_attempts: int = Field(default=3, alias="HUB_RETRY_ATTEMPTS")
    # Milliseconds between two attempts of a retried hub call
    hub_retry_delay: int = Field(default=1000, alias="HUB_RETRY_DELAY")
    hub_retry_best_effort: bool = Field(default=False, alias="HUB_RETRY_BEST_EFFORT")

    # Satellite identity
    satellite_name: str = Field(default="satellite", alias="SATELLITE_NAME")
    satellite_type: str = Field(default="default", alias="SATELLITE_TYPE")
    satellite_version: str = Field(default="1.0.0", alias="SATELLITE_VERSION")
    satellite_url: str = Field(default="http://localhost:8000", alias="SATELLITE_URL")
    api_prefix: str = Field(default="/api/satellite", alias="SATELLITE_API_PREFIX")
    enabled: bool = Field(default=True, alias="SATELLITE_ENABLED")

    # Synchronization
    sync_enabled: bool = Field(default=True, alias="SATELLITE_SYNC_ENABLED")
    sync_interval: int = Field(default=300, alias="SATELLITE_SYNC_INTERVAL")
    sync_batch_size: int = Field(default=100, alias="SATELLITE_SYNC_BATCH_SIZE")
    auto_register: bool = Field(default=True, alias="SATELLITE_AUTO_REGISTER")

    # Metrics and health
    metrics_enabled: bool = Field(default=True, alias="SATELLITE_METRICS_ENABLED")
    metrics_interval: int = Field(default=60, alias="SATELLITE_METRICS_INTERVAL")
    health_enabled: bool = Field(default=True, alias="SATELLITE_HEALTH_ENABLED")

    # Inbound security
    rate_limit: int = Field(default=100, alias="SATELLITE_RATE_LIMIT")
    ip_whitelist: str = Field(default="", alias="SATELLITE_IP_WHITELIST")
    trust_proxy_headers: bool = Field(default=False, alias="SATELLITE_TRUST_PROXY_HEADERS")
    verify_ssl: bool = Field(default=True, alias="SATELLITE_VERIFY_SSL")

    # Shared state store
    cache_prefix: str = Field(default="satellite", alias="SATELLITE_CACHE_PREFIX")
    cache_ttl: int = Field(default=3600, alias="SATELLITE_CACHE_TTL")
    redis_url: str | None = Field(default=None, alias="REDIS_URL")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    debug: bool = Field(default=False, alias="DEBUG")

    model_config = SettingsConfigDict(
        env_file=".env",
        frozen=True,
        populate_by_name=True,
        extra="ignore",
    )

    @property
    def ip_whitelist_rules(self) -> list[str]:
        """Return the allowlist as a list of trimmed, non-empty rules."""
        return [rule.strip() for rule in self.ip_whitelist.split(",") if rule.strip()]

    @property
    def hub_configured(self) -> bool:
        return bool(self.hub_url and self.hub_api_key)

    @property
    def hub_required(self) -> bool:
        """True when any enabled background feature talks to the hub."""
        return self.sync_enabled or self.metrics_enabled


def get_settings() -> Settings:
    """Load settings from the environment."""
    return Settings()
