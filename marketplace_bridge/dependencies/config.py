"""
FastAPI dependency utilities for injecting configuration and guarding admin routes.
"""

import hmac
import logging
from functools import lru_cache
from http import HTTPStatus
from typing import Annotated

from fastapi import Depends, Header, HTTPException

from marketplace_bridge.core.config import AppSettings, get_settings

logger = logging.getLogger(__name__)


@lru_cache()
def _settings_singleton() -> AppSettings:
    """Ensure configuration is created once per process."""
    return get_settings()


def get_app_settings() -> AppSettings:
    """FastAPI dependency returning application settings."""
    return _settings_singleton()


def require_admin_token(
    settings: Annotated[AppSettings, Depends(get_app_settings)],
    authorization: Annotated[str | None, Header()] = None,
) -> None:
    """Accept only ``Authorization: Bearer <ADMIN_API_TOKEN>``."""
    expected = settings.security.admin_api_token
    if not expected:
        logger.error("Admin endpoint called but ADMIN_API_TOKEN is not configured")
        raise HTTPException(
            status_code=HTTPStatus.SERVICE_UNAVAILABLE,
            detail="Admin API is not configured.",
        )
    scheme, _, supplied = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not hmac.compare_digest(
        supplied.strip().encode("utf-8"), expected.encode("utf-8")
    ):
        raise HTTPException(
            status_code=HTTPStatus.UNAUTHORIZED,
            detail="Admin credentials required.",
            headers={"WWW-Authenticate": "Bearer"},
        )


AdminDependency = Depends(require_admin_token)

__all__ = [
    "AdminDependency",
    "get_app_settings",
    "require_admin_token",
]
