"""
Marketplace OAuth utilities.

Builds PKCE authorization URLs and talks to the token endpoint for the
authorization-code and refresh-token grants.
"""

from __future__ import annotations

import logging
from http import HTTPStatus
from typing import Any, Dict, NoReturn, Sequence
from urllib.parse import urlencode

import httpx
from pydantic import ValidationError

from marketplace_bridge.core.config import MarketplaceSettings
from marketplace_bridge.core.errors import (
    OAuthClientConfigurationError,
    OAuthTokenExchangeError,
    OAuthTokenRevokedError,
    OAuthTransientError,
)
from marketplace_bridge.models.oauth import TokenGrant

logger = logging.getLogger(__name__)

_REJECTION_STATUSES = {
    HTTPStatus.BAD_REQUEST,
    HTTPStatus.UNAUTHORIZED,
    HTTPStatus.FORBIDDEN,
}
# Only invalid_grant says the refresh token itself is dead.
_REVOKED_ERRORS = {"invalid_grant"}
_CLIENT_ERRORS = {"invalid_client", "unauthorized_client"}


def _oauth_error_code(response: httpx.Response) -> str | None:
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict) and isinstance(body.get("error"), str):
        return body["error"]
    return None


class MarketplaceOAuthClient:
    """Build marketplace authorization URLs and exchange codes for tokens."""

    def __init__(
        self,
        settings: MarketplaceSettings,
        *,
        scopes: Sequence[str],
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._scopes = tuple(scopes)
        self._timeout = timeout_seconds
        self._transport = transport

    @property
    def token_url(self) -> str:
        return str(self._settings.token_url)

    def build_authorization_url(self, *, state: str, code_challenge: str) -> str:
        """Construct the consent URL carrying the PKCE challenge and state."""
        params = {
            "response_type": "code",
            "client_id": self._settings.client_id,
            "redirect_uri": str(self._settings.redirect_uri),
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
            "state": state,
        }
        if self._scopes:
            params["scope"] = " ".join(self._scopes)
        query = urlencode(params)
        base = str(self._settings.authorization_url)
        separator = "&" if "?" in base else "?"
        return f"{base}{separator}{query}"

    async def exchange_authorization_code(self, code: str, code_verifier: str) -> TokenGrant:
        """Exchange an authorization code plus the stored verifier for tokens."""
        payload = {
            "grant_type": "authorization_code",
            "client_id": self._settings.client_id,
            "client_secret": self._settings.client_secret,
            "code": code,
            "redirect_uri": str(self._settings.redirect_uri),
            "code_verifier": code_verifier,
        }
        grant = await self._post_token(payload, grant_type="authorization_code")
        if not grant.refresh_token:
            raise OAuthTokenExchangeError("Token endpoint did not return a refresh token.")
        return grant

    async def refresh_token(self, refresh_token: str) -> TokenGrant:
        """Rotate the access token using a stored refresh token."""
        payload = {
            "grant_type": "refresh_token",
            "client_id": self._settings.client_id,
            "client_secret": self._settings.client_secret,
            "refresh_token": refresh_token,
        }
        return await self._post_token(payload, grant_type="refresh_token")

    async def _post_token(self, payload: Dict[str, Any], *, grant_type: str) -> TokenGrant:
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            ) as client:
                response = await client.post(
                    self.token_url,
                    data=payload,
                    headers={"Accept": "application/json"},
                )
        except httpx.TimeoutException as exc:
            raise OAuthTransientError(f"Token endpoint timed out during {grant_type}.") from exc
        except httpx.TransportError as exc:
            raise OAuthTransientError(f"Token endpoint unreachable: {exc}") from exc

        if response.status_code in _REJECTION_STATUSES:
            self._raise_rejection(response, grant_type=grant_type)
        if (
            response.status_code >= HTTPStatus.INTERNAL_SERVER_ERROR
            or response.status_code == HTTPStatus.TOO_MANY_REQUESTS
        ):
            raise OAuthTransientError(
                f"Token endpoint returned {response.status_code} during {grant_type}."
            )
        if response.status_code != HTTPStatus.OK:
            raise OAuthTokenExchangeError(response.text)

        try:
            return TokenGrant.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise OAuthTokenExchangeError(
                "Incomplete token payload returned from the marketplace."
            ) from exc

    @staticmethod
    def _raise_rejection(response: httpx.Response, *, grant_type: str) -> NoReturn:
        error_code = _oauth_error_code(response)
        logger.warning(
            "Token endpoint rejected grant",
            extra={
                "grant_type": grant_type,
                "status_code": response.status_code,
                "oauth_error": error_code,
            },
        )
        if error_code in _REVOKED_ERRORS:
            raise OAuthTokenRevokedError(response.text)
        if error_code in _CLIENT_ERRORS:
            raise OAuthClientConfigurationError(
                f"Token endpoint rejected the client credentials ({error_code}); "
                "check MARKETPLACE_CLIENT_ID and MARKETPLACE_CLIENT_SECRET."
            )
        raise OAuthTokenExchangeError(response.text)


__all__ = ["MarketplaceOAuthClient"]
