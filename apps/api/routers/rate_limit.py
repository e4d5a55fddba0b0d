"""Per-client rate limiting on top of the shared TTL store."""

from __future__ import annotations

import logging
from typing import Callable

from fastapi import HTTPException, Request
from redis.exceptions import RedisError

from services.ttl_store import TTLStore

logger = logging.getLogger(__name__)


def _client_identifier(request: Request) -> str:
    if request.client and request.client.host:
        return request.client.host
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return "unknown"


def rate_limit(prefix: str, limit: int, window_seconds: int) -> Callable[[Request], None]:
    """Return a FastAPI dependency that enforces per-client request quotas."""

    async def _dependency(request: Request):
        if getattr(request.app.state, "disable_rate_limits", False):
            return

        store: TTLStore = request.app.state.ttl_store
        key = f"genpire:rate:{prefix}:{_client_identifier(request)}"
        try:
            current = await store.incr(key, window_seconds)
        except (RedisError, OSError) as exc:
            # Quota storage outages must not take the API down with them.
            logger.warning("Rate limit store unavailable for %s: %s", prefix, exc)
            return

        if current > limit:
            raise HTTPException(
                status_code=429,
                detail=f"Rate limit exceeded for {prefix}. Try again later.",
            )

    return _dependency
