"""
Domain models for OAuth token persistence and PKCE sessions.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional

from pydantic import BaseModel, Field, field_validator

from marketplace_bridge.core.logging import redact_secret


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReauthReason(str, Enum):
    MANUAL = "manual"
    EXPIRED = "expired"
    REVOKED = "revoked"


class StoredToken(BaseModel):
    """Credentials held for one (account, platform) pair."""

    account_id: str
    platform: str = "marketplace"
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    access_token_expires_at: Optional[datetime] = None
    refresh_token_expires_at: Optional[datetime] = None
    scopes: FrozenSet[str] = Field(default_factory=frozenset)
    marketplace_user_id: Optional[str] = None
    needs_reauth: bool = False
    reauth_reason: Optional[ReauthReason] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_connected(self) -> bool:
        return bool(self.access_token)

    def expires_within(self, window: timedelta, *, reference: datetime | None = None) -> bool:
        """True when the access token is gone, has no expiry, or expires inside ``window``."""
        if not self.access_token or self.access_token_expires_at is None:
            return True
        moment = reference or _utcnow()
        return self.access_token_expires_at - moment < window

    def clear(self, *, reason: ReauthReason | None = None) -> None:
        """Null the credentials but keep the record itself."""
        self.access_token = None
        self.refresh_token = None
        self.access_token_expires_at = None
        self.refresh_token_expires_at = None
        self.scopes = frozenset()
        if reason is not None:
            self.needs_reauth = True
            self.reauth_reason = reason
        self.updated_at = _utcnow()

    def redacted(self) -> Dict[str, Any]:
        """The only representation of a token that may leave the service."""
        return {
            "account_id": self.account_id,
            "platform": self.platform,
            "connected": self.is_connected,
            "access_token_preview": redact_secret(self.access_token),
            "has_refresh_token": bool(self.refresh_token),
            "access_token_expires_at": _iso(self.access_token_expires_at),
            "refresh_token_expires_at": _iso(self.refresh_token_expires_at),
            "scopes": sorted(self.scopes),
            "marketplace_user_id": self.marketplace_user_id,
            "needs_reauth": self.needs_reauth,
            "reauth_reason": self.reauth_reason.value if self.reauth_reason else None,
            "updated_at": self.updated_at.isoformat(),
        }


class PKCESession(BaseModel):
    """Verifier/state pair issued when a connect flow starts."""

    account_id: str
    code_verifier: str
    code_challenge: str
    state: str
    reauthorize: bool = False
    created_at: datetime = Field(default_factory=_utcnow)

    def is_expired(self, ttl: timedelta, *, reference: datetime | None = None) -> bool:
        moment = reference or _utcnow()
        created = self.created_at
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        return moment - created > ttl


class TokenGrant(BaseModel):
    """Token endpoint response for either grant type."""

    access_token: str
    refresh_token: Optional[str] = None
    expires_in: int
    scope: Optional[str] = None
    user_id: Optional[str] = None
    token_type: Optional[str] = None

    @field_validator("user_id", mode="before")
    @classmethod
    def _coerce_user_id(cls, value: Any) -> Any:
        return str(value) if isinstance(value, int) else value

    @property
    def scopes(self) -> FrozenSet[str]:
        if not self.scope:
            return frozenset()
        return frozenset(part for part in self.scope.replace(",", " ").split() if part)


class ConnectionStatus(BaseModel):
    account_id: str
    connected: bool
    needs_reauth: bool = False
    reauth_reason: Optional[ReauthReason] = None
    scopes: list[str] = Field(default_factory=list)
    expires_at: Optional[datetime] = None
    marketplace_user_id: Optional[str] = None


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


__all__ = [
    "ConnectionStatus",
    "PKCESession",
    "ReauthReason",
    "StoredToken",
    "TokenGrant",
]
