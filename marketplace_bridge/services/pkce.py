"""
OAuth 2.0 authorization-code flow with PKCE for the marketplace.

``start`` issues a verifier/challenge/state triple and the consent URL; the
session travels to the browser as an encrypted cookie. ``callback`` checks the
returned state, enforces the TTL and single use, then exchanges the code.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

from pydantic import ValidationError

from marketplace_bridge.clients.marketplace_auth import MarketplaceOAuthClient
from marketplace_bridge.clients.sqlite_store import SQLiteStore
from marketplace_bridge.core.errors import PKCESessionExpiredError, StateMismatchError
from marketplace_bridge.models.oauth import PKCESession, ReauthReason, StoredToken
from marketplace_bridge.services.token_cipher import TokenCipherService
from marketplace_bridge.services.token_store import TokenStore

logger = logging.getLogger(__name__)

_MARKER_PARTITION = "pkce"


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def generate_code_verifier() -> str:
    return _b64url(secrets.token_bytes(32))


def generate_code_challenge(code_verifier: str) -> str:
    return _b64url(hashlib.sha256(code_verifier.encode("ascii")).digest())


def generate_state() -> str:
    return _b64url(secrets.token_bytes(16))


@dataclass(slots=True, frozen=True)
class PKCEStart:
    url: str
    session: PKCESession
    cookie_value: str


class PKCEFlow:
    """Connect and reauthorize flows writing into the token store."""

    def __init__(
        self,
        oauth_client: MarketplaceOAuthClient,
        token_store: TokenStore,
        token_cipher: TokenCipherService,
        record_store: SQLiteStore,
        *,
        ttl: timedelta = timedelta(minutes=10),
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._oauth = oauth_client
        self._tokens = token_store
        self._cipher = token_cipher
        self._records = record_store
        self._ttl = ttl
        self._clock = clock

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    def start(self, account_id: str, *, reauthorize: bool = False) -> PKCEStart:
        verifier = generate_code_verifier()
        session = PKCESession(
            account_id=account_id,
            code_verifier=verifier,
            code_challenge=generate_code_challenge(verifier),
            state=generate_state(),
            reauthorize=reauthorize,
            created_at=self._clock(),
        )
        if reauthorize:
            # Existing tokens keep working until the new grant lands.
            self._tokens.mark_needs_reauth(account_id, ReauthReason.MANUAL, preserve_tokens=True)
        url = self._oauth.build_authorization_url(
            state=session.state, code_challenge=session.code_challenge
        )
        logger.info(
            "Started marketplace authorization",
            extra={"account_id": account_id, "reauthorize": reauthorize},
        )
        return PKCEStart(url=url, session=session, cookie_value=self.seal(session))

    def seal(self, session: PKCESession) -> str:
        return self._cipher.seal(session.model_dump(mode="json"))

    def unseal(self, cookie_value: str | None) -> PKCESession | None:
        """Recover a session from its cookie; tampered or garbled values yield ``None``."""
        if not cookie_value:
            return None
        try:
            return PKCESession.model_validate(self._cipher.unseal(cookie_value))
        except (ValueError, ValidationError):
            logger.warning("Discarding unreadable PKCE cookie")
            return None

    async def callback(
        self,
        session: PKCESession | None,
        received_state: str | None,
        code: str,
    ) -> StoredToken:
        if session is None:
            raise StateMismatchError("No authorization in progress for this browser.")
        if not received_state or not hmac.compare_digest(
            received_state.encode("utf-8"), session.state.encode("utf-8")
        ):
            logger.warning(
                "OAuth state mismatch", extra={"account_id": session.account_id}
            )
            raise StateMismatchError("OAuth state does not match.")
        if session.is_expired(self._ttl, reference=self._clock()):
            raise PKCESessionExpiredError("OAuth authorization window has expired.")
        self.purge_consumed()
        if not self._consume(session):
            raise StateMismatchError("OAuth state has already been used.")

        grant = await self._oauth.exchange_authorization_code(code, session.code_verifier)
        token = self._tokens.save_grant(session.account_id, grant, now=self._clock())
        logger.info(
            "Marketplace authorization completed",
            extra={"account_id": session.account_id, "reauthorize": session.reauthorize},
        )
        return token

    def purge_consumed(self) -> int:
        """Drop consumed-state markers whose sessions can no longer be replayed."""
        now = self._clock()
        purged = 0
        for marker in self._records.list_items_with_prefix(
            partition_key=_MARKER_PARTITION, sort_key_prefix="consumed#"
        ):
            expires_at = datetime.fromisoformat(marker["expires_at"])
            if expires_at <= now and self._records.delete_item(
                partition_key=_MARKER_PARTITION, sort_key=marker["sk"]
            ):
                purged += 1
        if purged:
            logger.info("Purged consumed PKCE markers", extra={"purged": purged})
        return purged

    def _consume(self, session: PKCESession) -> bool:
        now = self._clock()
        return self._records.put_item_if_absent(
            {
                "pk": _MARKER_PARTITION,
                "sk": f"consumed#{session.state}",
                "account_id": session.account_id,
                "consumed_at": now.isoformat(),
                "expires_at": (now + self._ttl).isoformat(),
            }
        )


__all__ = [
    "PKCEFlow",
    "PKCEStart",
    "generate_code_challenge",
    "generate_code_verifier",
    "generate_state",
]
