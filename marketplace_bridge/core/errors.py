"""
Exception hierarchy shared by the services and the HTTP layer.

Routes map these onto HTTP responses; the webhook dispatcher uses
``TransientError`` to decide what is worth retrying.
"""

from __future__ import annotations


class ConfigurationError(RuntimeError):
    """A required secret or credential is missing. Never recoverable per request."""


class RequestValidationError(ValueError):
    """Inbound data is not trustworthy and must be rejected without retry."""


class TransientError(RuntimeError):
    """An external dependency failed in a way that may succeed on retry."""


class SignatureConfigurationError(ConfigurationError):
    """Raised when signature verification is attempted without a shared secret."""


class WebhookPayloadError(RequestValidationError):
    """The webhook body is not JSON or lacks a topic or resource identifier."""


class StateMismatchError(RequestValidationError):
    """The OAuth callback state does not match the stored PKCE session."""


class PKCESessionExpiredError(RequestValidationError):
    """The PKCE session aged out before the callback arrived."""


class OAuthTokenExchangeError(Exception):
    """Raised when the token endpoint returns an unusable payload."""


class OAuthTransientError(OAuthTokenExchangeError, TransientError):
    """Token endpoint timed out or answered with a server error."""


class OAuthTokenRevokedError(OAuthTokenExchangeError):
    """The token endpoint rejected the grant; the refresh token is unusable."""


class OAuthClientConfigurationError(ConfigurationError, OAuthTokenExchangeError):
    """The token endpoint rejected our client credentials or client registration."""


class ReconnectRequiredError(Exception):
    """The account must go through the connect flow again before API calls."""

    def __init__(self, account_id: str, reason: str | None = None) -> None:
        self.account_id = account_id
        self.reason = reason
        message = f"Marketplace reconnect required for account {account_id}."
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)


class AuthenticationFailed(Exception):
    """An authenticated API call was answered with HTTP 401."""


class ResourceNotFoundError(TransientError):
    """The notified resource is not visible yet on the remote side."""


class ExternalApiError(TransientError):
    """A remote API answered with an unexpected status."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class WebhookEventNotFoundError(LookupError):
    """No stored webhook event exists for the requested identifier."""


class WebhookNotRetryableError(Exception):
    """The event cannot be re-driven (rejected signature or already processed)."""


__all__ = [
    "AuthenticationFailed",
    "ConfigurationError",
    "ExternalApiError",
    "OAuthClientConfigurationError",
    "OAuthTokenExchangeError",
    "OAuthTokenRevokedError",
    "OAuthTransientError",
    "PKCESessionExpiredError",
    "ReconnectRequiredError",
    "RequestValidationError",
    "ResourceNotFoundError",
    "SignatureConfigurationError",
    "StateMismatchError",
    "TransientError",
    "WebhookEventNotFoundError",
    "WebhookNotRetryableError",
    "WebhookPayloadError",
]
