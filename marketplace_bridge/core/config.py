"""
Application configuration models and helpers.

Centralizes settings management so the FastAPI app, the webhook re-drive job
and the maintenance scripts share a consistent configuration surface. Every
secret the service cannot run without is a required field, so a missing value
fails at startup instead of on the first request.
"""

from functools import lru_cache
from pathlib import Path
from typing import Annotated, Optional

import os

from pydantic import AnyHttpUrl, Field, HttpUrl, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _load_env_file(path: str = ".env") -> None:
    """Best-effort load key=value pairs from a .env file without extra deps."""
    env_path = Path(path)
    if not env_path.exists():
        return
    for raw_line in env_path.read_text().splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        if not sep:
            continue
        key = key.strip()
        if not key or key in os.environ:
            continue
        cleaned = value.strip().strip('"').strip("'")
        os.environ[key] = cleaned


_load_env_file()


def _split_csv(value: str | tuple[str, ...] | list[str]) -> tuple[str, ...]:
    if isinstance(value, tuple):
        return value
    if isinstance(value, list):
        return tuple(value)
    return tuple(item.strip() for item in value.replace(" ", ",").split(",") if item.strip())


class _GroupSettings(BaseSettings):
    model_config = SettingsConfigDict(populate_by_name=True, extra="ignore")


class WebhookSettings(_GroupSettings):
    """Inbound payment notification handling."""

    shared_secret: str = Field(..., alias="PAYMENTS_WEBHOOK_SECRET", min_length=1)
    max_retries: int = Field(5, alias="WEBHOOK_MAX_RETRIES", ge=1)
    retry_base_seconds: float = Field(30.0, alias="WEBHOOK_RETRY_BASE_SECONDS", gt=0)
    retry_max_seconds: float = Field(3600.0, alias="WEBHOOK_RETRY_MAX_SECONDS", gt=0)
    timestamp_tolerance_seconds: int = Field(
        0,
        alias="WEBHOOK_TIMESTAMP_TOLERANCE",
        ge=0,
        description="Reject timestamped signatures older than this. 0 disables the check.",
    )
    signature_strategies: Annotated[tuple[str, ...], NoDecode] = Field(
        ("url_query", "data_id", "payload_id", "resource_url"),
        alias="WEBHOOK_SIGNATURE_STRATEGIES",
        description="Ordered resource-id strategies tried for timestamped signatures.",
    )

    @field_validator("signature_strategies", mode="before")
    @classmethod
    def _split_strategies(
        cls, value: str | tuple[str, ...] | list[str]
    ) -> tuple[str, ...]:
        return _split_csv(value)


class MarketplaceSettings(_GroupSettings):
    """Credentials and endpoints for the marketplace OAuth integration."""

    client_id: str = Field(..., alias="MARKETPLACE_CLIENT_ID", min_length=1)
    client_secret: str = Field(..., alias="MARKETPLACE_CLIENT_SECRET", min_length=1)
    redirect_uri: AnyHttpUrl = Field(..., alias="MARKETPLACE_REDIRECT_URI")
    authorization_url: AnyHttpUrl = Field(..., alias="MARKETPLACE_AUTH_URL")
    token_url: AnyHttpUrl = Field(..., alias="MARKETPLACE_TOKEN_URL")
    api_base_url: AnyHttpUrl = Field(
        "https://api.marketplace.example", alias="MARKETPLACE_API_BASE_URL"
    )
    account_id: str = Field(
        "default",
        alias="MARKETPLACE_ACCOUNT_ID",
        description="Connected account whose token resolves marketplace order notifications.",
    )


class PaymentsSettings(_GroupSettings):
    """Payments processor API used to resolve notified resources."""

    api_base_url: AnyHttpUrl = Field(
        "https://api.payments.example", alias="PAYMENTS_API_BASE_URL"
    )
    access_token: Optional[str] = Field(
        None,
        alias="PAYMENTS_ACCESS_TOKEN",
        description="Server-side access token for the payments API.",
    )
    account_id: Optional[str] = Field(
        None,
        alias="PAYMENTS_OAUTH_ACCOUNT_ID",
        description=(
            "When set, payment lookups authenticate with this account's stored "
            "OAuth token instead of the static access token."
        ),
    )


class SecuritySettings(_GroupSettings):
    """Security-related configuration."""

    token_encryption_secret: Optional[str] = Field(
        None,
        alias="TOKEN_ENCRYPTION_SECRET",
        description=(
            "Secret used to derive the symmetric key for encrypting stored tokens."
        ),
    )
    previous_encryption_secrets: Annotated[tuple[str, ...], NoDecode] = Field(
        (),
        alias="TOKEN_ENCRYPTION_PREVIOUS_SECRETS",
        description="Retired encryption secrets still accepted for decryption.",
    )
    admin_api_token: Optional[str] = Field(
        None,
        alias="ADMIN_API_TOKEN",
        description="Bearer token required by admin webhook endpoints.",
    )

    @field_validator("previous_encryption_secrets", mode="before")
    @classmethod
    def _split_previous(
        cls, value: str | tuple[str, ...] | list[str]
    ) -> tuple[str, ...]:
        return _split_csv(value)


class OAuthSettings(_GroupSettings):
    """OAuth flow configuration."""

    state_ttl_seconds: int = Field(600, alias="OAUTH_STATE_TTL", gt=0)
    refresh_lead_seconds: int = Field(600, alias="TOKEN_REFRESH_LEAD_SECONDS", ge=0)
    refresh_token_lifetime_days: int = Field(180, alias="REFRESH_TOKEN_LIFETIME_DAYS")
    scopes: Annotated[tuple[str, ...], NoDecode] = Field(
        ("offline_access", "read", "write"),
        alias="OAUTH_SCOPES",
    )

    @field_validator("scopes", mode="before")
    @classmethod
    def _split_scopes(
        cls, value: str | tuple[str, ...] | list[str]
    ) -> tuple[str, ...]:
        """Support providing scopes as a comma or space separated string."""
        return _split_csv(value)


class RateLimitSettings(_GroupSettings):
    """Fixed-window limits for sensitive endpoints."""

    window_seconds: int = Field(60, alias="RATE_LIMIT_WINDOW_SECONDS", gt=0)
    webhook_max_requests: int = Field(100, alias="RATE_LIMIT_WEBHOOK_MAX", gt=0)
    sweep_interval_seconds: int = Field(300, alias="RATE_LIMIT_SWEEP_SECONDS", gt=0)


class AppSettings(BaseSettings):
    """Root settings object for the FastAPI application."""

    environment: str = Field("development", alias="APP_ENV")
    log_level: str = Field("INFO", alias="APP_LOG_LEVEL")
    store_db_path: str = Field("data/marketplace_bridge.db", alias="STORE_DB_PATH")
    http_timeout_seconds: float = Field(10.0, alias="HTTP_TIMEOUT_SECONDS", gt=0)
    frontend_base_url: Optional[HttpUrl] = Field(
        None,
        alias="FRONTEND_BASE_URL",
        description="Optional URL for redirecting admins back after OAuth.",
    )
    webhook: WebhookSettings = Field(default_factory=WebhookSettings)
    marketplace: MarketplaceSettings = Field(default_factory=MarketplaceSettings)
    payments: PaymentsSettings = Field(default_factory=PaymentsSettings)
    security: SecuritySettings = Field(default_factory=SecuritySettings)
    oauth: OAuthSettings = Field(default_factory=OAuthSettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        populate_by_name=True,
        extra="ignore",
    )

    @property
    def encryption_secret(self) -> str:
        return self.security.token_encryption_secret or self.marketplace.client_secret


@lru_cache()
def get_settings() -> AppSettings:
    """Return a cached settings object."""
    return AppSettings()  # type: ignore[call-arg]


__all__ = [
    "AppSettings",
    "MarketplaceSettings",
    "OAuthSettings",
    "PaymentsSettings",
    "RateLimitSettings",
    "SecuritySettings",
    "WebhookSettings",
    "get_settings",
]
