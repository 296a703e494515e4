"""
Fixed-window request limiting for sensitive endpoints.

Counters live behind ``RateLimitStore`` so the in-process map can be swapped
for a shared cache. The in-memory store only holds within one process.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass
from http import HTTPStatus
from typing import Callable, Dict, Mapping, Protocol

from fastapi import HTTPException, Request

logger = logging.getLogger(__name__)


class RateLimitStore(Protocol):
    """Counter backend keyed by client."""

    def increment(self, key: str, *, window_seconds: float, now: float) -> tuple[int, float]:
        """Count one hit and return ``(count, window_reset_time)``."""
        ...

    def sweep(self, *, now: float) -> int:
        """Evict expired windows and return how many were dropped."""
        ...


@dataclass(slots=True)
class _Window:
    count: int
    reset_at: float


class InMemoryRateLimitStore:
    """Process-local counters with a periodic sweep of expired windows."""

    def __init__(self, *, sweep_interval_seconds: float = 300.0) -> None:
        self._windows: Dict[str, _Window] = {}
        self._lock = threading.Lock()
        self._sweep_interval = sweep_interval_seconds
        self._last_sweep = 0.0

    def __len__(self) -> int:
        return len(self._windows)

    def increment(self, key: str, *, window_seconds: float, now: float) -> tuple[int, float]:
        with self._lock:
            if now - self._last_sweep >= self._sweep_interval:
                self._sweep_locked(now)
            window = self._windows.get(key)
            if window is None or now >= window.reset_at:
                window = _Window(count=0, reset_at=now + window_seconds)
                self._windows[key] = window
            window.count += 1
            return window.count, window.reset_at

    def sweep(self, *, now: float) -> int:
        with self._lock:
            return self._sweep_locked(now)

    def _sweep_locked(self, now: float) -> int:
        expired = [key for key, window in self._windows.items() if now >= window.reset_at]
        for key in expired:
            del self._windows[key]
        self._last_sweep = now
        if expired:
            logger.debug(
                "Rate limit sweep completed",
                extra={"evicted": len(expired), "remaining": len(self._windows)},
            )
        return len(expired)


@dataclass(slots=True, frozen=True)
class RateLimitConfig:
    max_requests: int
    window_seconds: float = 60.0
    message: str = "Too Many Requests"


RATE_LIMIT_CONFIGS: dict[str, RateLimitConfig] = {
    "CRITICAL": RateLimitConfig(5, 60.0, "Rate limit exceeded for critical admin operations"),
    "ADMIN": RateLimitConfig(20, 60.0, "Rate limit exceeded for admin operations"),
    "READ": RateLimitConfig(100, 60.0, "Rate limit exceeded for read operations"),
}


@dataclass(slots=True, frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float
    retry_after_seconds: int | None = None

    def headers(self) -> dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(int(math.ceil(self.reset_at))),
        }
        if self.retry_after_seconds is not None:
            headers["Retry-After"] = str(self.retry_after_seconds)
        return headers


class FixedWindowRateLimiter:
    """N requests per window per client key."""

    def __init__(
        self,
        config: RateLimitConfig,
        *,
        store: RateLimitStore | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config
        self._store = store if store is not None else InMemoryRateLimitStore()
        self._clock = clock

    @property
    def config(self) -> RateLimitConfig:
        return self._config

    def check(self, client_key: str) -> RateLimitDecision:
        now = self._clock()
        count, reset_at = self._store.increment(
            client_key, window_seconds=self._config.window_seconds, now=now
        )
        limit = self._config.max_requests
        if count > limit:
            retry_after = max(1, int(math.ceil(reset_at - now)))
            logger.warning(
                "Rate limit exceeded",
                extra={"client_key": client_key, "count": count, "limit": limit},
            )
            return RateLimitDecision(
                allowed=False,
                limit=limit,
                remaining=0,
                reset_at=reset_at,
                retry_after_seconds=retry_after,
            )
        return RateLimitDecision(
            allowed=True, limit=limit, remaining=limit - count, reset_at=reset_at
        )


class WarningDeduplicator:
    """Allow one log line per key per interval."""

    def __init__(
        self,
        *,
        interval_seconds: float = 300.0,
        store: RateLimitStore | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._interval = interval_seconds
        self._store = store if store is not None else InMemoryRateLimitStore()
        self._clock = clock

    def should_log(self, key: str) -> bool:
        count, _ = self._store.increment(key, window_seconds=self._interval, now=self._clock())
        return count == 1


def client_key_from_headers(headers: Mapping[str, str], *, prefix: str | None = None) -> str:
    """Derive the limiter key from proxy headers, falling back to ``unknown``."""
    forwarded = headers.get("x-forwarded-for") or ""
    ip = forwarded.split(",")[0].strip()
    if not ip:
        ip = (headers.get("x-real-ip") or headers.get("cf-connecting-ip") or "").strip()
    ip = ip or "unknown"
    return f"{prefix}:{ip}" if prefix else ip


class RateLimitGuard:
    """FastAPI dependency that answers 429 once a client exceeds its window."""

    def __init__(
        self, limiter_provider: Callable[[], FixedWindowRateLimiter], *, scope: str
    ) -> None:
        self._provider = limiter_provider
        self._scope = scope

    @property
    def limiter(self) -> FixedWindowRateLimiter:
        return self._provider()

    def __call__(self, request: Request) -> RateLimitDecision:
        limiter = self.limiter
        key = client_key_from_headers(request.headers, prefix=self._scope)
        decision = limiter.check(key)
        if not decision.allowed:
            raise HTTPException(
                status_code=HTTPStatus.TOO_MANY_REQUESTS,
                detail={
                    "error": limiter.config.message,
                    "retryAfter": decision.retry_after_seconds,
                    "limit": decision.limit,
                },
                headers=decision.headers(),
            )
        return decision


__all__ = [
    "FixedWindowRateLimiter",
    "InMemoryRateLimitStore",
    "RATE_LIMIT_CONFIGS",
    "RateLimitConfig",
    "RateLimitDecision",
    "RateLimitGuard",
    "RateLimitStore",
    "WarningDeduplicator",
    "client_key_from_headers",
]
