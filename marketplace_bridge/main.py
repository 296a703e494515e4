"""
FastAPI application entrypoint for the marketplace bridge.
"""

from __future__ import annotations

from fastapi import FastAPI

from marketplace_bridge.api.routes import router as api_router
from marketplace_bridge.core.config import get_settings
from marketplace_bridge.core.logging import configure_logging


def create_app() -> FastAPI:
    """Factory for the FastAPI application; fails fast on missing configuration."""
    settings = get_settings()
    configure_logging(settings.log_level)

    app = FastAPI(
        title="Marketplace Bridge",
        version="0.1.0",
        description=(
            "Payment webhook ingestion, marketplace OAuth and order status "
            "reconciliation for the storefront."
        ),
    )
    app.include_router(api_router, prefix="/api")
    return app


app = create_app()

__all__ = ["app", "create_app"]
