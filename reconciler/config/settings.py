"""Service configuration, read from the environment and an optional .env file."""
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class Settings(BaseSettings):
    """Gateway credentials, webhook verification, storage and HTTP options."""

    # Payment gateway (MercadoPago)
    gateway_access_token: Optional[str] = Field(
        default=None, description="Gateway API access token (checkout/payments)"
    )
    gateway_base_url: str = Field(
        default="https://api.mercadopago.com", description="Gateway REST API base URL"
    )
    gateway_timeout_seconds: float = Field(
        default=10.0, description="Timeout for a single outbound gateway call"
    )
    gateway_currency: str = Field(default="ARS", description="Currency sent to the gateway")
    webhook_secret: Optional[str] = Field(
        default=None, description="HMAC secret for inbound webhook signatures"
    )
    notification_url: Optional[str] = Field(
        default=None, description="Public URL the gateway posts notifications to"
    )
    checkout_success_url: str = Field(default="http://localhost:3000/payments/success")
    checkout_failure_url: str = Field(default="http://localhost:3000/payments/failure")
    checkout_pending_url: str = Field(default="http://localhost:3000/payments/pending")
    subscription_back_url: str = Field(default="http://localhost:3000/subscriptions/return")

    # Storage
    database_url: str = Field(
        default="sqlite+aiosqlite:///./reconciler.db", description="Async SQLAlchemy URL"
    )
    database_pool_size: int = Field(default=10, description="Pooled connections (server backends)")
    database_max_overflow: int = Field(default=20, description="Connections allowed beyond the pool")
    database_echo: bool = Field(default=False, description="Log every SQL statement")

    # Service
    app_name: str = Field(default="payment-reconciler", description="Name attached to every log line")
    app_env: str = Field(default="development", description="development, test or production")
    log_level: str = Field(default="INFO", description="Root log level")
    debug: bool = Field(default=False, description="Console logs and verbose errors")

    # HTTP
    api_host: str = Field(default="0.0.0.0", description="Bind address for uvicorn")
    api_port: int = Field(default=8000, description="Bind port for uvicorn")
    allowed_origins: str = Field(
        default="http://localhost:3000",
        description="Comma-separated origins allowed to call the checkout endpoints",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of {', '.join(LOG_LEVELS)}, got {value!r}")
        return level

    @model_validator(mode="after")
    def require_webhook_secret_in_production(self) -> "Settings":
        """Refuse to start a production instance that cannot verify webhooks."""
        if self.is_production and not self.webhook_secret:
            raise ValueError("WEBHOOK_SECRET must be set when APP_ENV=production")
        return self

    def get_allowed_origins_list(self) -> List[str]:
        return [origin.strip() for origin in self.allowed_origins.split(",") if origin.strip()]

    @property
    def is_production(self) -> bool:
        """Signatures are enforced only here."""
        return self.app_env.lower() == "production"

    @property
    def gateway_configured(self) -> bool:
        """Whether outbound gateway calls can be made."""
        return bool(self.gateway_access_token)


@lru_cache()
def get_settings() -> Settings:
    """Settings read once per process; tests build their own ``Settings``."""
    return Settings()
