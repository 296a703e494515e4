"""Client for the payments processor REST API."""

from __future__ import annotations

from typing import Any, Dict

import httpx

from marketplace_bridge.core.config import PaymentsSettings
from marketplace_bridge.core.errors import ConfigurationError, ExternalApiError
from marketplace_bridge.models.webhook import ResolvedResource
from marketplace_bridge.utils.http import (
    RetryConfig,
    raise_for_resource_status,
    request_with_retry,
)


class PaymentsClient:
    """Fetch payment resources referenced by notifications."""

    def __init__(
        self,
        settings: PaymentsSettings,
        *,
        timeout_seconds: float = 10.0,
        retry_config: RetryConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._timeout = timeout_seconds
        self._retry = retry_config or RetryConfig(attempts=2, backoff_seconds=0.5)
        self._transport = transport

    async def get_payment(
        self, payment_id: str, *, access_token: str | None = None
    ) -> ResolvedResource:
        """Return the payment's status and the storefront order reference it carries."""
        token = access_token or self._settings.access_token
        if not token:
            raise ConfigurationError("No access token available for the payments API.")

        async with httpx.AsyncClient(
            base_url=str(self._settings.api_base_url),
            timeout=self._timeout,
            transport=self._transport,
        ) as client:
            try:
                response = await request_with_retry(
                    client.get,
                    f"/v1/payments/{payment_id}",
                    headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
                    retry_config=self._retry,
                )
            except httpx.TransportError as exc:
                raise ExternalApiError(f"Payments API unreachable: {exc}") from exc

        raise_for_resource_status(response, resource="Payment", resource_id=payment_id)
        data: Dict[str, Any] = response.json()
        reference = data.get("external_reference")
        return ResolvedResource(
            resource_id=str(data.get("id") or payment_id),
            external_reference=str(reference) if reference not in (None, "") else None,
            external_status=data.get("status"),
            payload=data,
        )


__all__ = ["PaymentsClient"]
