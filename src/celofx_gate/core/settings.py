"""Application settings and configuration.

This module defines all configuration options for the CeloFX gate service.
Settings are loaded from environment variables with sensible defaults.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Secrets are read once at process start and never mutated afterwards.
    Settings can be overridden via environment variables or .env files.
    """

    # Application metadata
    app_name: str = Field(default="CeloFX Gate", alias="APP_NAME")
    app_version: str = Field(default="0.1.0", alias="APP_VERSION")
    debug: bool = Field(default=False, alias="DEBUG")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Machine-to-machine authentication
    agent_api_secret: str | None = Field(default=None, alias="AGENT_API_SECRET")
    agent_api_allow_bearer: bool = Field(default=False, alias="AGENT_API_ALLOW_BEARER")

    # Nonce ledger tiers
    nonce_redis_url: str | None = Field(default=None, alias="NONCE_REDIS_URL")
    upstash_rest_url: str | None = Field(default=None, alias="UPSTASH_REDIS_REST_URL")
    upstash_rest_token: str | None = Field(default=None, alias="UPSTASH_REDIS_REST_TOKEN")
    nonce_ttl_ms: int = Field(default=10 * 60 * 1000, alias="NONCE_TTL_MS")
    nonce_local_max_entries: int = Field(default=5000, alias="NONCE_LOCAL_MAX_ENTRIES")
    nonce_remote_timeout_seconds: float = Field(
        default=2.0,
        alias="NONCE_REMOTE_TIMEOUT_SECONDS",
    )

    # Wallet (EOA) signatures
    eoa_message_label: str = Field(default="CeloFX Agent Access", alias="EOA_MESSAGE_LABEL")
    eoa_recovery_timeout_seconds: float = Field(
        default=2.0,
        alias="EOA_RECOVERY_TIMEOUT_SECONDS",
    )

    # Fixed-window rate limiting for mutating requests
    rate_limit_window_seconds: int = Field(default=30, alias="RATE_LIMIT_WINDOW_SECONDS")
    rate_limit_max_writes: int = Field(default=2, alias="RATE_LIMIT_MAX_WRITES")
    rate_limit_cleanup_threshold: int = Field(
        default=200,
        alias="RATE_LIMIT_CLEANUP_THRESHOLD",
    )
    rate_limit_redis_url: str | None = Field(default=None, alias="RATE_LIMIT_REDIS_URL")

    # CORS configuration for dashboard and agent integrations
    cors_origins: list[str] = Field(default=["*"], alias="CORS_ORIGINS")
    cors_allow_methods: list[str] = Field(
        default=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        alias="CORS_ALLOW_METHODS",
    )
    cors_allow_headers: list[str] = Field(default=["*"], alias="CORS_ALLOW_HEADERS")

    model_config = SettingsConfigDict(
        env_file=".env",
        validate_assignment=True,
        extra="ignore",
    )

    @property
    def upstash_configured(self) -> bool:
        """Return True when both REST endpoint and token are set."""
        return bool(self.upstash_rest_url and self.upstash_rest_token)


settings = Settings()
