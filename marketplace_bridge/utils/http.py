"""HTTP utilities providing retry/backoff semantics."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

import httpx

from marketplace_bridge.core.errors import (
    AuthenticationFailed,
    ExternalApiError,
    ResourceNotFoundError,
)

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


class RetryConfig:
    def __init__(self, *, attempts: int = 3, backoff_seconds: float = 1.0) -> None:
        self.attempts = attempts
        self.backoff_seconds = backoff_seconds


async def request_with_retry(
    func: Callable[..., Awaitable[httpx.Response]],
    *args,
    retry_config: RetryConfig | None = None,
    **kwargs,
) -> httpx.Response:
    """
    Call ``func`` until it yields a non-retryable response.

    Transport failures and throttling/5xx answers are retried with linear
    backoff; any other response is returned for the caller to interpret.
    """
    config = retry_config or RetryConfig()
    attempt = 0
    last_exception: Exception | None = None
    response: httpx.Response | None = None

    while attempt < config.attempts:
        try:
            response = await func(*args, **kwargs)
        except httpx.TransportError as exc:
            last_exception = exc
            response = None
        else:
            if response.status_code not in RETRYABLE_STATUS_CODES:
                return response
        attempt += 1
        if attempt >= config.attempts:
            break
        await asyncio.sleep(config.backoff_seconds * attempt)

    if response is not None:
        return response
    if last_exception is not None:
        raise last_exception
    raise RuntimeError("Request failed without raising an exception")


def raise_for_resource_status(
    response: httpx.Response, *, resource: str, resource_id: str
) -> None:
    """Translate an API answer about a single resource into the error taxonomy."""
    if response.status_code == 401:
        raise AuthenticationFailed(f"{resource} lookup was not authorized.")
    if response.status_code == 404:
        raise ResourceNotFoundError(f"{resource} {resource_id} not found yet.")
    if response.status_code >= 400:
        raise ExternalApiError(
            f"{resource} {resource_id} lookup failed with {response.status_code}.",
            status_code=response.status_code,
        )


__all__ = [
    "RETRYABLE_STATUS_CODES",
    "RetryConfig",
    "raise_for_resource_status",
    "request_with_retry",
]
