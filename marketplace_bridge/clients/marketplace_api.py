"""Client for authenticated marketplace REST calls."""

from __future__ import annotations

from typing import Any, Dict

import httpx

from marketplace_bridge.core.config import MarketplaceSettings
from marketplace_bridge.core.errors import ExternalApiError
from marketplace_bridge.models.webhook import ResolvedResource
from marketplace_bridge.utils.http import (
    RetryConfig,
    raise_for_resource_status,
    request_with_retry,
)


class MarketplaceApiClient:
    """Read marketplace resources with a caller-supplied access token."""

    def __init__(
        self,
        settings: MarketplaceSettings,
        *,
        timeout_seconds: float = 10.0,
        retry_config: RetryConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._timeout = timeout_seconds
        self._retry = retry_config or RetryConfig(attempts=2, backoff_seconds=0.5)
        self._transport = transport

    async def get_order(self, order_id: str, *, access_token: str) -> ResolvedResource:
        async with httpx.AsyncClient(
            base_url=str(self._settings.api_base_url),
            timeout=self._timeout,
            transport=self._transport,
        ) as client:
            try:
                response = await request_with_retry(
                    client.get,
                    f"/orders/{order_id}",
                    headers={
                        "Authorization": f"Bearer {access_token}",
                        "Accept": "application/json",
                    },
                    retry_config=self._retry,
                )
            except httpx.TransportError as exc:
                raise ExternalApiError(f"Marketplace API unreachable: {exc}") from exc

        raise_for_resource_status(response, resource="Order", resource_id=order_id)
        data: Dict[str, Any] = response.json()
        return ResolvedResource(
            resource_id=str(data.get("id") or order_id),
            external_reference=str(data.get("id") or order_id),
            external_status=data.get("status"),
            payload=data,
        )


__all__ = ["MarketplaceApiClient"]
