"""
Authenticated-call middleware with transparent token refresh.

``with_auth`` refreshes ahead of expiry, retries once after a 401, and turns a
rejected refresh token into a terminal ``needs_reauth`` state. Refreshes are
single-flight per account: rotation invalidates the previous refresh token, so
two racing refreshes would lock each other out.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, Optional, TypeVar

from marketplace_bridge.clients.marketplace_auth import MarketplaceOAuthClient
from marketplace_bridge.core.errors import (
    AuthenticationFailed,
    OAuthClientConfigurationError,
    OAuthTokenRevokedError,
    ReconnectRequiredError,
)
from marketplace_bridge.models.oauth import ConnectionStatus, ReauthReason, StoredToken
from marketplace_bridge.services.token_store import TokenStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TokenRefreshMiddleware:
    """Hands out usable access tokens and keeps them fresh."""

    def __init__(
        self,
        token_store: TokenStore,
        oauth_client: MarketplaceOAuthClient,
        *,
        lead_time: timedelta = timedelta(minutes=10),
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._store = token_store
        self._oauth = oauth_client
        self._lead_time = lead_time
        self._clock = clock
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, account_id: str) -> asyncio.Lock:
        return self._locks.setdefault(account_id, asyncio.Lock())

    def _load_usable(self, account_id: str) -> StoredToken:
        token = self._store.get(account_id)
        if token is None or not token.access_token:
            reason = None
            if token is not None and token.reauth_reason is not None:
                reason = token.reauth_reason.value
            raise ReconnectRequiredError(account_id, reason or "not connected")
        return token

    def _needs_refresh(self, token: StoredToken) -> bool:
        return token.expires_within(self._lead_time, reference=self._clock())

    async def with_auth(self, account_id: str, fn: Callable[[str], Awaitable[T]]) -> T:
        """Run ``fn`` with a fresh access token, refreshing and retrying once on 401."""
        token = await self._ensure_fresh(account_id)
        try:
            return await fn(token.access_token or "")
        except AuthenticationFailed:
            logger.info(
                "Access token rejected; forcing refresh",
                extra={"account_id": account_id},
            )
            token = await self._ensure_fresh(
                account_id, force=True, stale_access_token=token.access_token
            )
            return await fn(token.access_token or "")

    async def refresh_now(self, account_id: str, *, force: bool = False) -> tuple[bool, StoredToken]:
        """Refresh when inside the lead window (or when forced)."""
        before = self._load_usable(account_id)
        token = await self._ensure_fresh(
            account_id, force=force, stale_access_token=before.access_token
        )
        return token.access_token != before.access_token, token

    def status(self, account_id: str) -> ConnectionStatus:
        token = self._store.get(account_id)
        if token is None:
            return ConnectionStatus(account_id=account_id, connected=False)
        return ConnectionStatus(
            account_id=account_id,
            connected=token.is_connected,
            needs_reauth=token.needs_reauth,
            reauth_reason=token.reauth_reason,
            scopes=sorted(token.scopes),
            expires_at=token.access_token_expires_at,
            marketplace_user_id=token.marketplace_user_id,
        )

    async def _ensure_fresh(
        self,
        account_id: str,
        *,
        force: bool = False,
        stale_access_token: Optional[str] = None,
    ) -> StoredToken:
        token = self._load_usable(account_id)
        if not force and not self._needs_refresh(token):
            return token

        async with self._lock_for(account_id):
            # Another caller may have refreshed while we waited.
            token = self._load_usable(account_id)
            if force:
                if stale_access_token is not None and token.access_token != stale_access_token:
                    return token
            elif not self._needs_refresh(token):
                return token

            if not token.refresh_token:
                if force or token.expires_within(timedelta(0), reference=self._clock()):
                    self._store.mark_needs_reauth(
                        account_id, ReauthReason.EXPIRED, preserve_tokens=False
                    )
                    raise ReconnectRequiredError(account_id, ReauthReason.EXPIRED.value)
                return token

            return await self._refresh_locked(token)

    async def _refresh_locked(self, token: StoredToken) -> StoredToken:
        account_id = token.account_id
        logger.info("Refreshing marketplace token", extra={"account_id": account_id})
        try:
            grant = await self._oauth.refresh_token(token.refresh_token or "")
        except OAuthTokenRevokedError as exc:
            logger.error(
                "Refresh token rejected; reconnect required",
                extra={"account_id": account_id},
            )
            self._store.clear(account_id, reason=ReauthReason.REVOKED)
            raise ReconnectRequiredError(account_id, ReauthReason.REVOKED.value) from exc
        except OAuthClientConfigurationError:
            # Client credentials are at fault; the stored tokens stay valid.
            logger.error(
                "Token endpoint rejected client credentials during refresh",
                extra={"account_id": account_id},
            )
            raise
        return self._store.save_grant(
            account_id, grant, now=self._clock(), clear_reauth=False
        )


__all__ = ["TokenRefreshMiddleware"]
