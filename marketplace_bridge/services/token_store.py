"""
Persistence for marketplace OAuth credentials.

One record per (account, platform); secrets are encrypted at rest and a
disconnect nulls the credentials without deleting the record.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict

from marketplace_bridge.clients.sqlite_store import SQLiteStore
from marketplace_bridge.models.oauth import ReauthReason, StoredToken, TokenGrant
from marketplace_bridge.services.token_cipher import TokenCipherService

logger = logging.getLogger(__name__)


def _parse_dt(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class TokenStore:
    """Load and persist ``StoredToken`` records through the key-value store."""

    def __init__(
        self,
        store: SQLiteStore,
        token_cipher: TokenCipherService,
        *,
        platform: str = "marketplace",
        refresh_token_lifetime: timedelta = timedelta(days=180),
    ) -> None:
        self._store = store
        self._cipher = token_cipher
        self._platform = platform
        self._refresh_lifetime = refresh_token_lifetime

    def _keys(self, account_id: str) -> Dict[str, str]:
        return {"partition_key": f"account#{account_id}", "sort_key": f"oauth#{self._platform}"}

    def get(self, account_id: str) -> StoredToken | None:
        record = self._store.get_item(**self._keys(account_id))
        if not record:
            return None
        return self._from_record(record)

    def save(self, token: StoredToken) -> None:
        self._store.put_item(self._to_record(token))

    def save_grant(
        self,
        account_id: str,
        grant: TokenGrant,
        *,
        now: datetime | None = None,
        clear_reauth: bool = True,
    ) -> StoredToken:
        """Apply a token endpoint response; a completed code exchange clears the reauth flag."""
        moment = now or datetime.now(timezone.utc)
        token = self.get(account_id) or StoredToken(
            account_id=account_id, platform=self._platform, created_at=moment
        )
        token.access_token = grant.access_token
        token.access_token_expires_at = moment + timedelta(seconds=grant.expires_in)
        if grant.refresh_token:
            token.refresh_token = grant.refresh_token
            token.refresh_token_expires_at = moment + self._refresh_lifetime
        if grant.scopes:
            token.scopes = grant.scopes
        if grant.user_id:
            token.marketplace_user_id = grant.user_id
        if clear_reauth:
            token.needs_reauth = False
            token.reauth_reason = None
        token.updated_at = moment
        self.save(token)
        logger.info("Stored marketplace token", extra={"token": token.redacted()})
        return token

    def clear(self, account_id: str, *, reason: ReauthReason | None = None) -> StoredToken | None:
        token = self.get(account_id)
        if token is None:
            return None
        token.clear(reason=reason)
        self.save(token)
        logger.info(
            "Cleared marketplace credentials",
            extra={"account_id": account_id, "reason": reason.value if reason else None},
        )
        return token

    def mark_needs_reauth(
        self,
        account_id: str,
        reason: ReauthReason,
        *,
        preserve_tokens: bool = True,
    ) -> StoredToken:
        token = self.get(account_id) or StoredToken(account_id=account_id, platform=self._platform)
        if preserve_tokens:
            token.needs_reauth = True
            token.reauth_reason = reason
            token.updated_at = datetime.now(timezone.utc)
        else:
            token.clear(reason=reason)
        self.save(token)
        logger.warning(
            "Marketplace account flagged for reauthorization",
            extra={"account_id": account_id, "reason": reason.value},
        )
        return token

    def _to_record(self, token: StoredToken) -> Dict[str, Any]:
        keys = self._keys(token.account_id)
        return {
            "pk": keys["partition_key"],
            "sk": keys["sort_key"],
            "account_id": token.account_id,
            "platform": token.platform,
            "access_token_encrypted": (
                self._cipher.encrypt(token.access_token) if token.access_token else None
            ),
            "refresh_token_encrypted": (
                self._cipher.encrypt(token.refresh_token) if token.refresh_token else None
            ),
            "access_token_expires_at": _iso(token.access_token_expires_at),
            "refresh_token_expires_at": _iso(token.refresh_token_expires_at),
            "scopes": sorted(token.scopes),
            "marketplace_user_id": token.marketplace_user_id,
            "needs_reauth": token.needs_reauth,
            "reauth_reason": token.reauth_reason.value if token.reauth_reason else None,
            "created_at": token.created_at.isoformat(),
            "updated_at": token.updated_at.isoformat(),
        }

    def _from_record(self, record: Dict[str, Any]) -> StoredToken:
        encrypted_access = record.get("access_token_encrypted")
        encrypted_refresh = record.get("refresh_token_encrypted")
        reason = record.get("reauth_reason")
        return StoredToken(
            account_id=record["account_id"],
            platform=record.get("platform", self._platform),
            access_token=self._cipher.decrypt(encrypted_access) if encrypted_access else None,
            refresh_token=self._cipher.decrypt(encrypted_refresh) if encrypted_refresh else None,
            access_token_expires_at=_parse_dt(record.get("access_token_expires_at")),
            refresh_token_expires_at=_parse_dt(record.get("refresh_token_expires_at")),
            scopes=frozenset(record.get("scopes") or ()),
            marketplace_user_id=record.get("marketplace_user_id"),
            needs_reauth=bool(record.get("needs_reauth")),
            reauth_reason=ReauthReason(reason) if reason else None,
            created_at=_parse_dt(record.get("created_at")) or datetime.now(timezone.utc),
            updated_at=_parse_dt(record.get("updated_at")) or datetime.now(timezone.utc),
        )


__all__ = ["TokenStore"]
