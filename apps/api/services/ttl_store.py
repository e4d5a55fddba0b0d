"""Shared key/value store with TTL semantics (rate limits, short-lived caches)."""

from __future__ import annotations

import asyncio
import json
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple

import redis.asyncio as redis

from config import settings


class TTLStore(ABC):
    """Minimal contract shared by the in-process and Redis backends."""

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        ...

    @abstractmethod
    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        ...

    @abstractmethod
    async def incr(self, key: str, ttl_seconds: int) -> int:
        """Increment a counter, starting its TTL window on first use."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...

    async def close(self) -> None:
        return None


class MemoryTTLStore(TTLStore):
    """Single-process store. Not shared between workers."""

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._entries: Dict[str, Tuple[Any, float]] = {}
        self._lock = asyncio.Lock()

    def _live(self, key: str) -> Optional[Tuple[Any, float]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() >= entry[1]:
            self._entries.pop(key, None)
            return None
        return entry

    async def get(self, key: str) -> Optional[Any]:
        async with self._lock:
            entry = self._live(key)
            return entry[0] if entry else None

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        async with self._lock:
            self._entries[key] = (value, self._clock() + max(int(ttl_seconds), 1))

    async def incr(self, key: str, ttl_seconds: int) -> int:
        async with self._lock:
            entry = self._live(key)
            if entry is None:
                count, expires_at = 0, self._clock() + max(int(ttl_seconds), 1)
            else:
                count, expires_at = int(entry[0]), entry[1]
            count += 1
            self._entries[key] = (count, expires_at)
            return count

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()


class RedisTTLStore(TTLStore):
    """Redis-backed store shared by every API worker."""

    def __init__(self, url: str):
        self._client = redis.from_url(url, decode_responses=True)

    async def get(self, key: str) -> Optional[Any]:
        raw = await self._client.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        await self._client.set(key, json.dumps(value, default=str), ex=max(int(ttl_seconds), 1))

    async def incr(self, key: str, ttl_seconds: int) -> int:
        current = await self._client.incr(key)
        if current == 1:
            await self._client.expire(key, max(int(ttl_seconds), 1))
        return int(current)

    async def delete(self, key: str) -> None:
        await self._client.delete(key)

    async def close(self) -> None:
        await self._client.aclose()


def build_ttl_store(backend: Optional[str] = None) -> TTLStore:
    """Build the store selected by TTL_STORE_BACKEND."""
    choice = (backend or settings.TTL_STORE_BACKEND or "memory").strip().lower()
    if choice == "redis":
        return RedisTTLStore(settings.REDIS_URL)
    if choice == "memory":
        return MemoryTTLStore()
    raise ValueError(f"Unknown TTL_STORE_BACKEND: {choice}")
