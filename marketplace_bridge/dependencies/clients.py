"""
Factory functions to provide shared clients and services as FastAPI dependencies.
"""

from datetime import timedelta
from functools import lru_cache

from marketplace_bridge.clients import (
    MarketplaceApiClient,
    MarketplaceOAuthClient,
    PaymentsClient,
    SQLiteStore,
)
from marketplace_bridge.core.config import get_settings
from marketplace_bridge.models.webhook import ResolvedResource
from marketplace_bridge.services import (
    RATE_LIMIT_CONFIGS,
    FixedWindowRateLimiter,
    InMemoryRateLimitStore,
    OrderRepository,
    PKCEFlow,
    RateLimitConfig,
    RateLimitGuard,
    SignatureVerifier,
    TokenCipherService,
    TokenRefreshMiddleware,
    TokenStore,
    WarningDeduplicator,
    WebhookDispatcher,
)
from marketplace_bridge.services.webhook_dispatcher import ResourceResolver


@lru_cache()
def _settings():
    """Internal helper to cache settings for client factories."""
    return get_settings()


@lru_cache()
def get_sqlite_store() -> SQLiteStore:
    """Provide shared SQLite record store."""
    return SQLiteStore(_settings().store_db_path)


@lru_cache()
def get_token_cipher_service() -> TokenCipherService:
    """Provide symmetric encryption helper for token storage and PKCE cookies."""
    settings = _settings()
    return TokenCipherService(
        secret=settings.encryption_secret,
        previous_secrets=settings.security.previous_encryption_secrets,
    )


@lru_cache()
def get_marketplace_oauth_client() -> MarketplaceOAuthClient:
    """Create a singleton marketplace OAuth client."""
    settings = _settings()
    return MarketplaceOAuthClient(
        settings.marketplace,
        scopes=settings.oauth.scopes,
        timeout_seconds=settings.http_timeout_seconds,
    )


@lru_cache()
def get_token_store() -> TokenStore:
    settings = _settings()
    return TokenStore(
        get_sqlite_store(),
        get_token_cipher_service(),
        refresh_token_lifetime=timedelta(days=settings.oauth.refresh_token_lifetime_days),
    )


@lru_cache()
def get_token_refresh_middleware() -> TokenRefreshMiddleware:
    """One instance per process so the per-account refresh locks are shared."""
    settings = _settings()
    return TokenRefreshMiddleware(
        get_token_store(),
        get_marketplace_oauth_client(),
        lead_time=timedelta(seconds=settings.oauth.refresh_lead_seconds),
    )


@lru_cache()
def get_pkce_flow() -> PKCEFlow:
    settings = _settings()
    return PKCEFlow(
        get_marketplace_oauth_client(),
        get_token_store(),
        get_token_cipher_service(),
        get_sqlite_store(),
        ttl=timedelta(seconds=settings.oauth.state_ttl_seconds),
    )


@lru_cache()
def get_order_repository() -> OrderRepository:
    return OrderRepository(get_sqlite_store())


@lru_cache()
def get_payments_client() -> PaymentsClient:
    settings = _settings()
    return PaymentsClient(settings.payments, timeout_seconds=settings.http_timeout_seconds)


@lru_cache()
def get_marketplace_api_client() -> MarketplaceApiClient:
    settings = _settings()
    return MarketplaceApiClient(
        settings.marketplace, timeout_seconds=settings.http_timeout_seconds
    )


@lru_cache()
def get_signature_verifier() -> SignatureVerifier:
    settings = _settings()
    return SignatureVerifier(
        strategies=settings.webhook.signature_strategies,
        timestamp_tolerance_seconds=settings.webhook.timestamp_tolerance_seconds,
    )


@lru_cache()
def get_rate_limit_store() -> InMemoryRateLimitStore:
    settings = _settings()
    return InMemoryRateLimitStore(
        sweep_interval_seconds=settings.rate_limit.sweep_interval_seconds
    )


def build_resolvers(
    *,
    payments: PaymentsClient,
    marketplace: MarketplaceApiClient,
    refresh: TokenRefreshMiddleware,
    payments_account_id: str | None,
    marketplace_account_id: str,
) -> dict[str, ResourceResolver]:
    """Bind each notification family to the API call that resolves it."""

    async def resolve_payment(resource_id: str) -> ResolvedResource:
        if payments_account_id:
            return await refresh.with_auth(
                payments_account_id,
                lambda token: payments.get_payment(resource_id, access_token=token),
            )
        return await payments.get_payment(resource_id)

    async def resolve_order(resource_id: str) -> ResolvedResource:
        return await refresh.with_auth(
            marketplace_account_id,
            lambda token: marketplace.get_order(resource_id, access_token=token),
        )

    return {"payment": resolve_payment, "orders": resolve_order}


@lru_cache()
def get_webhook_dispatcher() -> WebhookDispatcher:
    """Provide the dispatcher shared by the webhook route, admin routes and re-drive job."""
    settings = _settings()
    resolvers = build_resolvers(
        payments=get_payments_client(),
        marketplace=get_marketplace_api_client(),
        refresh=get_token_refresh_middleware(),
        payments_account_id=settings.payments.account_id,
        marketplace_account_id=settings.marketplace.account_id,
    )
    return WebhookDispatcher(
        get_sqlite_store(),
        get_order_repository(),
        get_signature_verifier(),
        settings.webhook,
        resolvers=resolvers,
        warnings=WarningDeduplicator(store=get_rate_limit_store()),
    )


@lru_cache()
def get_webhook_rate_limiter() -> FixedWindowRateLimiter:
    settings = _settings()
    config = RateLimitConfig(
        settings.rate_limit.webhook_max_requests,
        float(settings.rate_limit.window_seconds),
        "Rate limit exceeded for webhook deliveries",
    )
    return FixedWindowRateLimiter(config, store=get_rate_limit_store())


@lru_cache()
def get_critical_rate_limiter() -> FixedWindowRateLimiter:
    return FixedWindowRateLimiter(RATE_LIMIT_CONFIGS["CRITICAL"], store=get_rate_limit_store())


@lru_cache()
def get_admin_rate_limiter() -> FixedWindowRateLimiter:
    return FixedWindowRateLimiter(RATE_LIMIT_CONFIGS["ADMIN"], store=get_rate_limit_store())


@lru_cache()
def get_read_rate_limiter() -> FixedWindowRateLimiter:
    return FixedWindowRateLimiter(RATE_LIMIT_CONFIGS["READ"], store=get_rate_limit_store())


webhook_rate_limit = RateLimitGuard(get_webhook_rate_limiter, scope="webhook")
critical_rate_limit = RateLimitGuard(get_critical_rate_limiter, scope="critical")
admin_rate_limit = RateLimitGuard(get_admin_rate_limiter, scope="admin")
read_rate_limit = RateLimitGuard(get_read_rate_limiter, scope="read")


__all__ = [
    "admin_rate_limit",
    "build_resolvers",
    "critical_rate_limit",
    "get_admin_rate_limiter",
    "get_critical_rate_limiter",
    "get_marketplace_api_client",
    "get_marketplace_oauth_client",
    "get_order_repository",
    "get_payments_client",
    "get_pkce_flow",
    "get_rate_limit_store",
    "get_read_rate_limiter",
    "get_signature_verifier",
    "get_sqlite_store",
    "get_token_cipher_service",
    "get_token_refresh_middleware",
    "get_token_store",
    "get_webhook_dispatcher",
    "get_webhook_rate_limiter",
    "read_rate_limit",
    "webhook_rate_limit",
]
