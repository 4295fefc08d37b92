from __future__ import annotations

from typing import Iterable, Optional, Set

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper backing the shared layer of the tiered cache.

    Values are opaque strings; serialization belongs to the caller. Tag
    membership lives in Redis sets next to the values so that tag eviction
    reaches keys written by other processes.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        redis_url: str,
        *,
        namespace: str = "authcore",
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
    ):
        self.redis_url = redis_url
        self.namespace = namespace
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def _value_key(self, key: str) -> str:
        return f"{self.namespace}:cache:{key}"

    def _tag_key(self, tag: str) -> str:
        return f"{self.namespace}:cache:tag:{tag}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get_value(self, key: str) -> Optional[str]:
        return await self.client.get(self._value_key(key))

    async def set_value(self, key: str, value: str, ttl_seconds: int) -> None:
        await self.client.set(self._value_key(key), value, ex=max(1, int(ttl_seconds)))

    async def delete_values(self, keys: Iterable[str]) -> int:
        names = [self._value_key(key) for key in keys]
        if not names:
            return 0
        return int(await self.client.delete(*names))

    async def add_tag_member(self, tag: str, key: str, ttl_seconds: int) -> None:
        tag_key = self._tag_key(tag)
        pipe = self.client.pipeline()
        pipe.sadd(tag_key, key)
        # Index outlives its members by at most one TTL window
        pipe.expire(tag_key, max(1, int(ttl_seconds)))
        await pipe.execute()

    async def pop_tag_members(self, tag: str) -> Set[str]:
        tag_key = self._tag_key(tag)
        pipe = self.client.pipeline()
        pipe.smembers(tag_key)
        pipe.delete(tag_key)
        members, _ = await pipe.execute()
        return set(members or ())

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous Redis client internally to avoid event loop binding
    issues in pytest, but exposes async methods so it can be awaited
    uniformly like RedisCache.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        redis_url: str,
        *,
        namespace: str = "authcore",
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
    ):
        self.redis_url = redis_url
        self.namespace = namespace
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def _value_key(self, key: str) -> str:
        return f"{self.namespace}:cache:{key}"

    def _tag_key(self, tag: str) -> str:
        return f"{self.namespace}:cache:tag:{tag}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self._sync_client.ping()

    async def get_value(self, key: str) -> Optional[str]:
        return self._sync_client.get(self._value_key(key))

    async def set_value(self, key: str, value: str, ttl_seconds: int) -> None:
        self._sync_client.set(self._value_key(key), value, ex=max(1, int(ttl_seconds)))

    async def delete_values(self, keys: Iterable[str]) -> int:
        names = [self._value_key(key) for key in keys]
        if not names:
            return 0
        return int(self._sync_client.delete(*names))

    async def add_tag_member(self, tag: str, key: str, ttl_seconds: int) -> None:
        tag_key = self._tag_key(tag)
        pipe = self._sync_client.pipeline()
        pipe.sadd(tag_key, key)
        pipe.expire(tag_key, max(1, int(ttl_seconds)))
        pipe.execute()

    async def pop_tag_members(self, tag: str) -> Set[str]:
        tag_key = self._tag_key(tag)
        pipe = self._sync_client.pipeline()
        pipe.smembers(tag_key)
        pipe.delete(tag_key)
        members, _ = pipe.execute()
        return set(members or ())

    def close_sync(self) -> None:
        self._sync_client.close()

    async def close(self) -> None:
        """Close Redis connection."""
        self.close_sync()
