"""Public schema exports."""

from .auth import (
    AuthorizationUrlResponse,
    CallbackResult,
    ConnectionStatusResponse,
    TokenRefreshResponse,
)
from .webhook import RedriveResult, WebhookAck, WebhookEventList, WebhookRetryResponse

__all__ = [
    "AuthorizationUrlResponse",
    "CallbackResult",
    "ConnectionStatusResponse",
    "RedriveResult",
    "TokenRefreshResponse",
    "WebhookAck",
    "WebhookEventList",
    "WebhookRetryResponse",
]
