"""
FastAPI routes for the marketplace bridge.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from http import HTTPStatus
from typing import Annotated, Any
from urllib.parse import urlencode

from fastapi import (
    APIRouter,
    BackgroundTasks,
    Cookie,
    Depends,
    HTTPException,
    Query,
    Request,
    Response,
)
from fastapi.responses import JSONResponse, RedirectResponse

from marketplace_bridge.core.errors import (
    OAuthClientConfigurationError,
    OAuthTokenExchangeError,
    OAuthTransientError,
    PKCESessionExpiredError,
    ReconnectRequiredError,
    SignatureConfigurationError,
    StateMismatchError,
    WebhookEventNotFoundError,
    WebhookNotRetryableError,
    WebhookPayloadError,
)
from marketplace_bridge.dependencies import (
    AdminDependency,
    admin_rate_limit,
    critical_rate_limit,
    get_app_settings,
    get_pkce_flow,
    get_token_refresh_middleware,
    get_token_store,
    get_webhook_dispatcher,
    read_rate_limit,
    webhook_rate_limit,
)
from marketplace_bridge.models.webhook import WebhookStatus
from marketplace_bridge.schemas import (
    AuthorizationUrlResponse,
    CallbackResult,
    ConnectionStatusResponse,
    RedriveResult,
    TokenRefreshResponse,
    WebhookAck,
    WebhookEventList,
    WebhookRetryResponse,
)
from marketplace_bridge.services.pkce import PKCEStart

router = APIRouter()
logger = logging.getLogger(__name__)

PKCE_COOKIE_NAME = "mb_pkce"
PKCE_COOKIE_PATH = "/api/auth/marketplace"


@router.get("/health", status_code=HTTPStatus.OK)
async def healthcheck() -> dict:
    """Simple health endpoint for monitoring."""
    return {"status": "ok"}


async def _process_in_background(dispatcher: Any, event_id: str) -> None:
    status = await dispatcher.process(event_id)
    logger.info(
        "Background webhook processing finished",
        extra={"event_id": event_id, "status": status.value},
    )


@router.post(
    "/webhooks/payments",
    response_model=WebhookAck,
    status_code=HTTPStatus.OK,
    dependencies=[Depends(webhook_rate_limit)],
)
async def receive_payment_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    dispatcher: Annotated[Any, Depends(get_webhook_dispatcher)],
) -> WebhookAck:
    """
    Store and acknowledge a payment notification.

    Processing happens after the response is sent; downstream failures are
    retried internally and never turn into a non-2xx answer for the sender.
    """
    raw_body = await request.body()
    try:
        receipt = dispatcher.receive(raw_body, request.headers, dict(request.query_params))
    except WebhookPayloadError as exc:
        raise HTTPException(status_code=HTTPStatus.BAD_REQUEST, detail=str(exc)) from exc
    except SignatureConfigurationError as exc:
        logger.error("Webhook secret is not configured; refusing delivery")
        raise HTTPException(
            status_code=HTTPStatus.INTERNAL_SERVER_ERROR,
            detail="Webhook verification is not configured.",
        ) from exc

    if receipt.accepted:
        background_tasks.add_task(_process_in_background, dispatcher, receipt.event.event_id)

    return WebhookAck(
        success=receipt.accepted,
        request_id=receipt.event.request_id,
        message=receipt.message,
    )


def _set_pkce_cookie(response: Response, start: PKCEStart, *, max_age: int, secure: bool) -> None:
    response.set_cookie(
        key=PKCE_COOKIE_NAME,
        value=start.cookie_value,
        max_age=max_age,
        path=PKCE_COOKIE_PATH,
        httponly=True,
        samesite="lax",
        secure=secure,
    )


@router.get(
    "/auth/marketplace/connect",
    response_model=AuthorizationUrlResponse,
    dependencies=[AdminDependency],
)
async def start_marketplace_connect(
    response: Response,
    pkce_flow: Annotated[Any, Depends(get_pkce_flow)],
    settings: Annotated[Any, Depends(get_app_settings)],
    account_id: str = Query(..., description="Account that will own the marketplace token."),
) -> AuthorizationUrlResponse:
    """Begin the PKCE flow and hand back the consent URL."""
    start = pkce_flow.start(account_id)
    _set_pkce_cookie(
        response,
        start,
        max_age=settings.oauth.state_ttl_seconds,
        secure=settings.environment == "production",
    )
    return AuthorizationUrlResponse(url=start.url)


@router.post(
    "/auth/marketplace/reauthorize",
    response_model=AuthorizationUrlResponse,
    dependencies=[AdminDependency],
)
async def start_marketplace_reauthorize(
    response: Response,
    pkce_flow: Annotated[Any, Depends(get_pkce_flow)],
    settings: Annotated[Any, Depends(get_app_settings)],
    account_id: str = Query(..., description="Account to reauthorize."),
) -> AuthorizationUrlResponse:
    """Restart consent while the current credentials keep working."""
    start = pkce_flow.start(account_id, reauthorize=True)
    _set_pkce_cookie(
        response,
        start,
        max_age=settings.oauth.state_ttl_seconds,
        secure=settings.environment == "production",
    )
    return AuthorizationUrlResponse(url=start.url)


def _callback_response(
    settings: Any,
    *,
    account_id: str | None,
    error: str | None,
) -> Response:
    frontend = settings.frontend_base_url
    if frontend:
        params = {"error": error} if error else {"success": "marketplace_connected"}
        base = str(frontend)
        separator = "&" if "?" in base else "?"
        response: Response = RedirectResponse(
            url=f"{base}{separator}{urlencode(params)}",
            status_code=HTTPStatus.TEMPORARY_REDIRECT,
        )
    else:
        result = CallbackResult(
            status="error" if error else "connected",
            account_id=account_id,
            error=error,
        )
        response = JSONResponse(
            content=result.model_dump(),
            status_code=HTTPStatus.BAD_REQUEST if error else HTTPStatus.OK,
        )
    response.delete_cookie(PKCE_COOKIE_NAME, path=PKCE_COOKIE_PATH)
    return response


@router.get("/auth/marketplace/callback")
async def handle_marketplace_callback(
    pkce_flow: Annotated[Any, Depends(get_pkce_flow)],
    settings: Annotated[Any, Depends(get_app_settings)],
    code: str | None = Query(default=None, description="Authorization code."),
    state: str | None = Query(default=None, description="State issued at connect time."),
    error: str | None = Query(default=None, description="Error reported by the marketplace."),
    mb_pkce: Annotated[str | None, Cookie()] = None,
) -> Response:
    """Complete the exchange and send the browser back to the admin UI."""
    session = pkce_flow.unseal(mb_pkce)
    account_id = session.account_id if session else None

    if error:
        logger.warning("Marketplace returned an authorization error", extra={"error": error})
        return _callback_response(settings, account_id=account_id, error=error)
    if not code:
        return _callback_response(settings, account_id=account_id, error="missing_code")

    try:
        await pkce_flow.callback(session, state, code)
    except StateMismatchError:
        return _callback_response(settings, account_id=account_id, error="state_mismatch")
    except PKCESessionExpiredError:
        return _callback_response(settings, account_id=account_id, error="state_expired")
    except OAuthTransientError:
        logger.warning("Token exchange failed transiently", extra={"account_id": account_id})
        return _callback_response(
            settings, account_id=account_id, error="temporarily_unavailable"
        )
    except OAuthTokenExchangeError:
        logger.error("Token exchange rejected", extra={"account_id": account_id})
        return _callback_response(
            settings, account_id=account_id, error="token_exchange_failed"
        )

    return _callback_response(settings, account_id=account_id, error=None)


@router.post(
    "/auth/marketplace/refresh",
    response_model=TokenRefreshResponse,
    dependencies=[AdminDependency],
)
async def refresh_marketplace_token(
    refresh_middleware: Annotated[Any, Depends(get_token_refresh_middleware)],
    account_id: str = Query(..., description="Account whose token should be checked."),
    force: bool = Query(default=False, description="Refresh even outside the lead window."),
) -> TokenRefreshResponse:
    """Refresh the stored token when it is close to expiry (or when forced)."""
    try:
        refreshed, token = await refresh_middleware.refresh_now(account_id, force=force)
    except ReconnectRequiredError as exc:
        raise HTTPException(
            status_code=HTTPStatus.CONFLICT,
            detail="Marketplace reconnect required.",
        ) from exc
    except OAuthTransientError as exc:
        raise HTTPException(
            status_code=HTTPStatus.SERVICE_UNAVAILABLE,
            detail="Marketplace token endpoint is temporarily unavailable.",
        ) from exc
    except OAuthClientConfigurationError as exc:
        raise HTTPException(
            status_code=HTTPStatus.SERVICE_UNAVAILABLE,
            detail="Marketplace OAuth client is misconfigured.",
        ) from exc
    except OAuthTokenExchangeError as exc:
        raise HTTPException(
            status_code=HTTPStatus.BAD_GATEWAY,
            detail="Marketplace token endpoint rejected the refresh.",
        ) from exc
    return TokenRefreshResponse(refreshed=refreshed, token=token.redacted())


@router.post(
    "/auth/marketplace/disconnect",
    status_code=HTTPStatus.NO_CONTENT,
    dependencies=[AdminDependency],
)
async def disconnect_marketplace(
    token_store: Annotated[Any, Depends(get_token_store)],
    account_id: str = Query(..., description="Account to disconnect."),
) -> Response:
    """Null the stored credentials; the account record itself is kept."""
    if token_store.clear(account_id) is None:
        raise HTTPException(
            status_code=HTTPStatus.NOT_FOUND, detail="Marketplace account not connected."
        )
    return Response(status_code=HTTPStatus.NO_CONTENT)


@router.get(
    "/auth/marketplace/status",
    response_model=ConnectionStatusResponse,
    dependencies=[AdminDependency],
)
async def marketplace_connection_status(
    refresh_middleware: Annotated[Any, Depends(get_token_refresh_middleware)],
    account_id: str = Query(..., description="Account to inspect."),
) -> ConnectionStatusResponse:
    status = refresh_middleware.status(account_id)
    return ConnectionStatusResponse(
        **status.model_dump(), checked_at=datetime.now(timezone.utc)
    )


@router.post(
    "/webhooks/retry/{event_id}",
    response_model=WebhookRetryResponse,
    dependencies=[AdminDependency, Depends(critical_rate_limit)],
)
async def retry_webhook_event(
    event_id: str,
    dispatcher: Annotated[Any, Depends(get_webhook_dispatcher)],
) -> WebhookRetryResponse:
    """Re-drive a failed or dead-lettered event immediately."""
    try:
        status = await dispatcher.retry(event_id)
    except WebhookEventNotFoundError as exc:
        raise HTTPException(
            status_code=HTTPStatus.NOT_FOUND, detail="Webhook event not found."
        ) from exc
    except WebhookNotRetryableError as exc:
        raise HTTPException(status_code=HTTPStatus.CONFLICT, detail=str(exc)) from exc

    return WebhookRetryResponse(
        success=status == WebhookStatus.PROCESSED,
        event_id=event_id,
        status=status.value,
        retried_at=datetime.now(timezone.utc),
    )


@router.get(
    "/webhooks/events",
    response_model=WebhookEventList,
    dependencies=[AdminDependency, Depends(read_rate_limit)],
)
async def list_webhook_events(
    dispatcher: Annotated[Any, Depends(get_webhook_dispatcher)],
    status: WebhookStatus | None = Query(default=None, description="Filter by status."),
) -> WebhookEventList:
    events = [event.summary() for event in dispatcher.list_events(status)]
    return WebhookEventList(events=events, count=len(events))


@router.get(
    "/webhooks/events/{event_id}",
    dependencies=[AdminDependency, Depends(read_rate_limit)],
)
async def get_webhook_event(
    event_id: str,
    dispatcher: Annotated[Any, Depends(get_webhook_dispatcher)],
) -> dict:
    event = dispatcher.get(event_id)
    if event is None:
        raise HTTPException(status_code=HTTPStatus.NOT_FOUND, detail="Webhook event not found.")
    return event.summary()


@router.post(
    "/webhooks/redrive",
    response_model=RedriveResult,
    dependencies=[AdminDependency, Depends(admin_rate_limit)],
)
async def redrive_due_webhooks(
    dispatcher: Annotated[Any, Depends(get_webhook_dispatcher)],
    limit: int = Query(default=50, ge=1, le=500, description="Maximum events to process."),
) -> RedriveResult:
    """Process failed events whose backoff has elapsed."""
    results = await dispatcher.redrive_due(limit=limit)
    return RedriveResult(
        processed=len(results),
        results=[
            {"event_id": event_id, "status": status.value} for event_id, status in results
        ],
    )


__all__ = ["router"]
