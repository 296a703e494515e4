"""Schemas related to the marketplace OAuth flows."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from marketplace_bridge.models.oauth import ConnectionStatus


class AuthorizationUrlResponse(BaseModel):
    """Consent URL returned when a connect or reauthorize flow starts."""

    url: str = Field(..., description="Marketplace authorization URL to open in the browser.")


class TokenRefreshResponse(BaseModel):
    refreshed: bool = Field(..., description="Whether a new access token was obtained.")
    token: Dict[str, Any] = Field(..., description="Redacted view of the stored token.")


class CallbackResult(BaseModel):
    """JSON body returned by the callback when no frontend URL is configured."""

    status: str
    account_id: Optional[str] = None
    error: Optional[str] = None


class ConnectionStatusResponse(ConnectionStatus):
    checked_at: datetime


__all__ = [
    "AuthorizationUrlResponse",
    "CallbackResult",
    "ConnectionStatusResponse",
    "TokenRefreshResponse",
]
