from __future__ import annotations

import asyncio
import inspect
import json
import threading
import time
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Protocol, Set, Tuple, Union

from authcore.logging import get_logger

logger = get_logger(__name__)

Loader = Callable[[], Union[Any, Awaitable[Any]]]


class SharedCacheLayer(Protocol):
    async def get_value(self, key: str) -> Optional[str]: ...

    async def set_value(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def delete_values(self, keys: Iterable[str]) -> int: ...

    async def add_tag_member(self, tag: str, key: str, ttl_seconds: int) -> None: ...

    async def pop_tag_members(self, tag: str) -> Set[str]: ...


class LocalCache:
    """Process-local TTL map with a tag index.

    Safe for concurrent use from threads and tasks; the lock only guards
    dictionary mutation and is never held across an await.
    """

    def __init__(
        self,
        *,
        max_entries: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._entries: Dict[str, Tuple[float, Any]] = {}
        self._tags: Dict[str, Set[str]] = {}
        self._lock = threading.Lock()
        self._max_entries = max_entries
        self._clock = clock

    def get(self, key: str) -> Tuple[bool, Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False, None
            expires_at, value = entry
            if expires_at <= self._clock():
                self._drop_locked(key)
                return False, None
            return True, value

    def set(
        self, key: str, value: Any, ttl_seconds: float, tags: Iterable[str] = ()
    ) -> None:
        with self._lock:
            if key not in self._entries and len(self._entries) >= self._max_entries:
                self._evict_locked()
            self._entries[key] = (self._clock() + ttl_seconds, value)
            for tag in tags:
                self._tags.setdefault(tag, set()).add(key)

    def remove(self, key: str) -> None:
        with self._lock:
            self._drop_locked(key)

    def remove_by_tag(self, tag: str) -> Set[str]:
        with self._lock:
            keys = self._tags.pop(tag, set())
            for key in keys:
                self._drop_locked(key)
            return keys

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._tags.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def tag_members(self, tag: str) -> Set[str]:
        with self._lock:
            return set(self._tags.get(tag, ()))

    def _drop_locked(self, key: str) -> None:
        self._entries.pop(key, None)
        for tag in [tag for tag, members in self._tags.items() if key in members]:
            members = self._tags[tag]
            members.discard(key)
            if not members:
                del self._tags[tag]

    def _evict_locked(self) -> None:
        now = self._clock()
        expired = [key for key, (expires_at, _) in self._entries.items() if expires_at <= now]
        for key in expired:
            self._drop_locked(key)
        if len(self._entries) < self._max_entries:
            return
        # Drop the soonest-to-expire tenth
        victims = sorted(self._entries.items(), key=lambda item: item[1][0])
        for key, _ in victims[: max(1, len(victims) // 10)]:
            self._drop_locked(key)


class TieredCache:
    """Read-through cache over a local layer and an optional shared layer.

    Resolution order is local, then shared, then the loader. The shared
    layer is an optimization only: every round trip is bounded by
    ``shared_timeout`` and any failure is logged and treated as a miss.
    A loader returning ``None`` is passed through without being cached.
    An invalidation that lands while a fill is in flight wins: nothing read
    or loaded before it stays cached.
    """

    def __init__(
        self,
        shared: Optional[SharedCacheLayer] = None,
        *,
        default_local_ttl: float = 300.0,
        default_shared_ttl: float = 600.0,
        shared_timeout: float = 0.25,
        max_local_entries: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.shared = shared
        self.local = LocalCache(max_entries=max_local_entries, clock=clock)
        self.default_local_ttl = default_local_ttl
        self.default_shared_ttl = default_shared_ttl
        self.shared_timeout = shared_timeout
        # Bumped by every invalidation; a fill that started under an older
        # generation must not leave its value behind
        self._key_generations: Dict[str, int] = {}
        self._tag_generations: Dict[str, int] = {}

    def _generation(self, key: str, tags: Tuple[str, ...]) -> Tuple[int, ...]:
        return (self._key_generations.get(key, 0),) + tuple(
            self._tag_generations.get(tag, 0) for tag in tags
        )

    async def get_or_create(
        self,
        key: str,
        loader: Loader,
        *,
        local_ttl: Optional[float] = None,
        shared_ttl: Optional[float] = None,
        tags: Iterable[str] = (),
    ) -> Any:
        tags = tuple(tags)
        local_ttl = self.default_local_ttl if local_ttl is None else local_ttl
        shared_ttl = self.default_shared_ttl if shared_ttl is None else shared_ttl

        hit, value = self.local.get(key)
        if hit:
            return value

        generation = self._generation(key, tags)
        found, value = await self._shared_get(key)
        if found:
            if self._generation(key, tags) == generation:
                self.local.set(key, value, local_ttl, tags)
                return value
            # Invalidated while the shared read was in flight
            generation = self._generation(key, tags)

        value = loader()
        if inspect.isawaitable(value):
            value = await value
        if value is None:
            return None
        if self._generation(key, tags) != generation:
            logger.info("tiered_cache_fill_superseded", key=key, stage="load")
            return value

        self.local.set(key, value, local_ttl, tags)
        await self._shared_set(key, value, shared_ttl, tags)
        if self._generation(key, tags) != generation:
            # The invalidation's delete landed before this write
            logger.info("tiered_cache_fill_superseded", key=key, stage="write")
            self.local.remove(key)
            if self.shared is not None:
                await self._shared_call("delete", self.shared.delete_values([key]), key=key)
        return value

    async def remove(self, key: str) -> None:
        self._key_generations[key] = self._key_generations.get(key, 0) + 1
        self.local.remove(key)
        if self.shared is not None:
            await self._shared_call("delete", self.shared.delete_values([key]), key=key)

    async def remove_by_tag(self, tag: str) -> int:
        self._tag_generations[tag] = self._tag_generations.get(tag, 0) + 1
        keys = set(self.local.remove_by_tag(tag))
        if self.shared is None:
            return len(keys)
        shared_keys = await self._shared_call(
            "pop_tag", self.shared.pop_tag_members(tag), key=tag
        )
        if shared_keys:
            keys |= set(shared_keys)
            # Entries cached locally by this process under a tag it never saw
            for key in shared_keys:
                self.local.remove(key)
        if keys:
            await self._shared_call(
                "delete", self.shared.delete_values(sorted(keys)), key=tag
            )
        logger.info("tiered_cache_tag_evicted", tag=tag, keys=len(keys))
        return len(keys)

    async def _shared_get(self, key: str) -> Tuple[bool, Any]:
        if self.shared is None:
            return False, None
        raw = await self._shared_call("get", self.shared.get_value(key), key=key)
        if raw is None:
            return False, None
        try:
            return True, json.loads(raw)
        except (json.JSONDecodeError, TypeError) as exc:
            # Corrupted entry is a miss
            logger.warning("tiered_cache_shared_decode_failed", key=key, error=str(exc))
            return False, None

    async def _shared_set(
        self, key: str, value: Any, ttl_seconds: float, tags: Tuple[str, ...]
    ) -> None:
        if self.shared is None:
            return
        try:
            payload = json.dumps(value)
        except (TypeError, ValueError) as exc:
            logger.warning("tiered_cache_shared_encode_failed", key=key, error=str(exc))
            return
        ttl = max(1, int(ttl_seconds))
        await self._shared_call("set", self.shared.set_value(key, payload, ttl), key=key)
        for tag in tags:
            await self._shared_call(
                "tag", self.shared.add_tag_member(tag, key, ttl), key=key
            )

    async def _shared_call(self, op: str, awaitable: Optional[Awaitable[Any]], *, key: str) -> Any:
        if awaitable is None:
            return None
        try:
            return await asyncio.wait_for(awaitable, timeout=self.shared_timeout)
        except asyncio.TimeoutError:
            logger.warning("tiered_cache_shared_timeout", op=op, key=key, timeout=self.shared_timeout)
        except Exception as exc:
            logger.warning(
                "tiered_cache_shared_failed",
                op=op,
                key=key,
                error=str(exc),
                error_type=type(exc).__name__,
            )
        return None
