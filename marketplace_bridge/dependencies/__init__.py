"""Expose dependency helpers for FastAPI routers."""

from .clients import (
    admin_rate_limit,
    critical_rate_limit,
    get_marketplace_oauth_client,
    get_order_repository,
    get_pkce_flow,
    get_signature_verifier,
    get_sqlite_store,
    get_token_cipher_service,
    get_token_refresh_middleware,
    get_token_store,
    get_webhook_dispatcher,
    read_rate_limit,
    webhook_rate_limit,
)
from .config import AdminDependency, get_app_settings, require_admin_token

__all__ = [
    "AdminDependency",
    "admin_rate_limit",
    "critical_rate_limit",
    "get_app_settings",
    "get_marketplace_oauth_client",
    "get_order_repository",
    "get_pkce_flow",
    "get_signature_verifier",
    "get_sqlite_store",
    "get_token_cipher_service",
    "get_token_refresh_middleware",
    "get_token_store",
    "get_webhook_dispatcher",
    "read_rate_limit",
    "require_admin_token",
    "webhook_rate_limit",
]
