"""Service layer exports."""

from .orders import OrderRepository
from .pkce import PKCEFlow, PKCEStart
from .rate_limit import (
    RATE_LIMIT_CONFIGS,
    FixedWindowRateLimiter,
    InMemoryRateLimitStore,
    RateLimitConfig,
    RateLimitGuard,
    WarningDeduplicator,
)
from .signature import SignatureVerifier
from .token_cipher import TokenCipherService
from .token_refresh import TokenRefreshMiddleware
from .token_store import TokenStore
from .webhook_dispatcher import WebhookDispatcher, WebhookReceipt

__all__ = [
    "FixedWindowRateLimiter",
    "InMemoryRateLimitStore",
    "OrderRepository",
    "PKCEFlow",
    "PKCEStart",
    "RATE_LIMIT_CONFIGS",
    "RateLimitConfig",
    "RateLimitGuard",
    "SignatureVerifier",
    "TokenCipherService",
    "TokenRefreshMiddleware",
    "TokenStore",
    "WarningDeduplicator",
    "WebhookDispatcher",
    "WebhookReceipt",
]
