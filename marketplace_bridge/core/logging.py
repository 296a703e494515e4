"""
Logging utilities for the FastAPI application and the re-drive job.

Provides a consistent logging format and a helper for keeping credentials
out of log lines.
"""

import logging
import sys


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging with a sensible default format."""
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        stream=sys.stdout,
    )


def redact_secret(value: str | None, *, visible: int = 4) -> str | None:
    """Return a short preview of a secret such as ``abcd…wxyz``."""
    if not value:
        return None
    if len(value) <= visible * 2:
        return "*" * len(value)
    return f"{value[:visible]}…{value[-visible:]}"


__all__ = ["configure_logging", "redact_secret"]
