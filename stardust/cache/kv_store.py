"""Scoped JSON cache over an external key-value store.

Within the store, keys are scoped as ``{scope}:{key}`` so several deployments
(or test runs) can share one Redis database without colliding.

Two backends:
- RedisStore (production, REDIS_URL)
- InMemoryStore (local development with KV_BACKEND=memory, and tests)

No business logic lives here: callers decide what to store and for how long.
"""

import json
import logging
import os
from typing import Any, Awaitable, Callable, Optional, Protocol

import redis.asyncio as redis

logger = logging.getLogger(__name__)

REDIS_URL = os.environ.get("REDIS_URL", "redis://127.0.0.1:6379/0")
KV_BACKEND = os.environ.get("KV_BACKEND", "redis").lower()
CACHE_SCOPE = os.environ.get("CACHE_SCOPE", "stardust")


class KeyValueStore(Protocol):
    """Minimal async string store used by ScopedCache."""

    async def get(self, key: str) -> Optional[str]:
        ...

    async def set(self, key: str, value: str, expire_seconds: int = 0) -> None:
        ...

    async def delete(self, key: str) -> None:
        ...

    async def close(self) -> None:
        ...


class RedisStore:
    """Redis-backed KeyValueStore."""

    def __init__(self, url: str = REDIS_URL):
        self.url = url
        self._client = redis.Redis.from_url(url, decode_responses=True)

    async def get(self, key: str) -> Optional[str]:
        return await self._client.get(key)

    async def set(self, key: str, value: str, expire_seconds: int = 0) -> None:
        if expire_seconds > 0:
            await self._client.set(key, value, ex=expire_seconds)
        else:
            await self._client.set(key, value)

    async def delete(self, key: str) -> None:
        await self._client.delete(key)

    async def close(self) -> None:
        await self._client.aclose()


class InMemoryStore:
    """Process-local store. Expiration is accepted and ignored."""

    def __init__(self) -> None:
        self._records: dict[str, str] = {}

    async def get(self, key: str) -> Optional[str]:
        return self._records.get(key)

    async def set(self, key: str, value: str, expire_seconds: int = 0) -> None:
        self._records[key] = value

    async def delete(self, key: str) -> None:
        self._records.pop(key, None)

    async def close(self) -> None:
        return None

    def keys(self) -> list[str]:
        return list(self._records)


def create_store(backend: str = KV_BACKEND) -> KeyValueStore:
    """Build the configured store backend."""
    if backend == "memory":
        logger.warning("Using in-memory key-value store: state will not survive a restart")
        return InMemoryStore()
    if backend != "redis":
        raise ValueError(f"Unknown KV_BACKEND: {backend} (expected 'redis' or 'memory')")
    logger.info(f"Using Redis key-value store at {REDIS_URL}")
    return RedisStore(REDIS_URL)


class ScopedCache:
    """JSON get/set helpers with every key prefixed by the deployment scope."""

    def __init__(self, store: KeyValueStore, scope: str = CACHE_SCOPE):
        self.store = store
        self.scope = scope

    def scoped_key(self, key: str) -> str:
        return f"{self.scope}:{key}"

    async def get_json(self, key: str) -> Any:
        """Return the decoded object stored under key, or None if missing."""
        raw = await self.store.get(self.scoped_key(key))
        if raw is None:
            return None
        return json.loads(raw)

    async def set_json(self, key: str, obj: Any, expire_seconds: int = 0) -> None:
        """Store obj as JSON. expire_seconds=0 means no TTL."""
        await self.store.set(
            self.scoped_key(key),
            json.dumps(obj, ensure_ascii=False),
            expire_seconds=expire_seconds,
        )

    async def set_persistent_json(self, key: str, obj: Any) -> None:
        await self.set_json(key, obj, expire_seconds=0)

    async def cached_json(
        self,
        key: str,
        expire_seconds: int,
        invalidate: bool,
        producer: Callable[[], Awaitable[Any]],
    ) -> Any:
        """Return the cached object, or produce, store and return it.

        Args:
            key: Unique key of the cached object (unscoped)
            expire_seconds: TTL of a newly stored value (0 = never expire).
                Existing keys keep their TTL.
            invalidate: Skip the cached value and call the producer
            producer: Async callable resolving the object when missing

        A None result from the producer is returned but not cached.
        """
        if not invalidate:
            cached = await self.get_json(key)
            if cached is not None:
                return cached

        result = await producer()
        if result is None:
            return None

        await self.set_json(key, result, expire_seconds=expire_seconds)
        return result
