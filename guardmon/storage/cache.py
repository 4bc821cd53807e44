from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Dict, Optional, Protocol, Tuple

import redis.asyncio as aioredis

from guardmon.storage.models import Clock, utc_now


class TokenCache(Protocol):
    """Key/value cache with per-entry expiry used for session and CSRF tokens."""

    async def put(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def get(self, key: str) -> Optional[str]: ...

    async def remove(self, key: str) -> None: ...


class MemoryCache:
    """Process-local token cache; entries expire lazily on lookup."""

    def __init__(self, clock: Clock = utc_now) -> None:
        self._clock = clock
        self._entries: Dict[str, Tuple[str, datetime]] = {}
        self._lock = threading.Lock()

    async def put(self, key: str, value: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        expires_at = self._clock() + timedelta(seconds=ttl_seconds)
        with self._lock:
            self._entries[key] = (value, expires_at)

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if self._clock() >= expires_at:
                self._entries.pop(key, None)
                return None
            return value

    async def remove(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class RedisCache:
    """Thin Redis wrapper for session and CSRF tokens."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        from redis import Redis

        # Short-lived sync client keeps the async one off a temporary event loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def put(self, key: str, value: str, ttl_seconds: int) -> None:
        await self.client.set(key, value, ex=max(1, int(ttl_seconds)))

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def remove(self, key: str) -> None:
        await self.client.delete(key)

    async def close(self) -> None:
        await self.client.aclose()
