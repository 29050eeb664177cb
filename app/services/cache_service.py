"""
Read-through cache used by the catalog, the inventory ledger and the order listing.

Values are JSON-compatible structures (services cache `model_dump(mode="json")` output).
Both backends serialize with json so a cached value is always a fresh copy.
"""
import asyncio
import json
import logging
import re
import time
from collections import OrderedDict
from typing import Any, Callable, Optional, Protocol

import redis.asyncio as redis

log = logging.getLogger(__name__)


class CacheKeys:
    FOOD_ITEMS = "cache:food:items"
    INGREDIENTS = "cache:ingredients:all"
    DASHBOARD = "cache:inventory:dashboard"
    ORDERS_PATTERN = "cache:orders:*"

    @staticmethod
    def food_item(food_item_id) -> str:
        return f"cache:food:item:{food_item_id}"

    @staticmethod
    def ingredient(ingredient_id) -> str:
        return f"cache:ingredient:{ingredient_id}"

    @staticmethod
    def alerts(is_read: bool) -> str:
        return f"cache:alerts:{'read' if is_read else 'unread'}"

    @staticmethod
    def orders(page: int, page_size: int) -> str:
        return f"cache:orders:{page}:{page_size}"


def matches_pattern(key: str, pattern: str) -> bool:
    """
    Single-wildcard match: the text before the first `*` must prefix the key and the
    text after it must suffix it. Without `*` the pattern matches exactly one key.
    """
    if "*" not in pattern:
        return key == pattern
    prefix, _, suffix = pattern.partition("*")
    return len(key) >= len(prefix) + len(suffix) and key.startswith(prefix) and key.endswith(suffix)


def scan_glob(pattern: str) -> str:
    """Redis MATCH glob for a cache pattern: only the first `*` stays a wildcard."""
    if "*" not in pattern:
        return _glob_escape(pattern)
    prefix, _, suffix = pattern.partition("*")
    return f"{_glob_escape(prefix)}*{_glob_escape(suffix)}"


def _glob_escape(text: str) -> str:
    return re.sub(r"([\\\[\]?*])", r"\\\1", text)


class Cache(Protocol):
    async def get(self, key: str) -> Optional[Any]: ...
    async def set(self, key: str, value: Any, ttl: int) -> None: ...
    async def delete(self, key: str) -> None: ...
    async def delete_pattern(self, pattern: str) -> None: ...
    async def clear(self) -> None: ...


class InMemoryCache:
    """Process-local TTL map. With `max_entries` > 0 it evicts the least recently used key."""

    def __init__(self, max_entries: int = 0, clock: Callable[[], float] = time.monotonic):
        self._entries: "OrderedDict[str, tuple[float, str]]" = OrderedDict()
        self._max_entries = max_entries
        self._clock = clock

    async def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, payload = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        self._entries.move_to_end(key)
        return json.loads(payload)

    async def set(self, key: str, value: Any, ttl: int) -> None:
        self._entries[key] = (self._clock() + ttl, json.dumps(value))
        self._entries.move_to_end(key)
        if self._max_entries > 0:
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    async def delete_pattern(self, pattern: str) -> None:
        for key in [k for k in self._entries if matches_pattern(k, pattern)]:
            del self._entries[key]

    async def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class RedisCache:
    """Shared cache for multi-instance deployments."""

    def __init__(self, url: str = "redis://localhost:6379/0", client: Optional[redis.Redis] = None):
        self.client = client or redis.from_url(url, decode_responses=True)

    async def get(self, key: str) -> Optional[Any]:
        payload = await self.client.get(key)
        return json.loads(payload) if payload is not None else None

    async def set(self, key: str, value: Any, ttl: int) -> None:
        await self.client.set(key, json.dumps(value), ex=ttl)

    async def delete(self, key: str) -> None:
        await self.client.delete(key)

    async def delete_pattern(self, pattern: str) -> None:
        # SCAN globbing is broader than our prefix/suffix rule, so filter again locally
        keys = [key async for key in self.client.scan_iter(match=scan_glob(pattern)) if matches_pattern(key, pattern)]
        if keys:
            await self.client.delete(*keys)

    async def clear(self) -> None:
        await self.client.flushdb()

    async def close(self) -> None:
        await self.client.aclose()


class BestEffortCache:
    """
    Wraps a backend so that no cache failure ever reaches the caller.
    A failed read is a miss; a failed write or invalidation is a no-op.
    """

    def __init__(self, backend: Cache):
        self.backend = backend

    async def get(self, key: str) -> Optional[Any]:
        try:
            return await self.backend.get(key)
        except Exception as e:
            log.warning(f"Cache get failed for key {key}: {e}")
            return None

    async def set(self, key: str, value: Any, ttl: int) -> None:
        try:
            await self.backend.set(key, value, ttl)
        except Exception as e:
            log.warning(f"Cache set failed for key {key}: {e}")

    async def delete(self, key: str) -> None:
        try:
            await self.backend.delete(key)
        except Exception as e:
            log.warning(f"Cache delete failed for key {key}: {e}")

    async def delete_many(self, *keys: str) -> None:
        await asyncio.gather(*(self.delete(key) for key in keys))

    async def delete_pattern(self, pattern: str) -> None:
        try:
            await self.backend.delete_pattern(pattern)
        except Exception as e:
            log.warning(f"Cache delete_pattern failed for pattern {pattern}: {e}")

    async def clear(self) -> None:
        try:
            await self.backend.clear()
        except Exception as e:
            log.warning(f"Cache clear failed: {e}")

    async def close(self) -> None:
        close = getattr(self.backend, "close", None)
        if close is not None:
            try:
                await close()
            except Exception as e:
                log.warning(f"Cache close failed: {e}")

    @classmethod
    def wrap(cls, backend: Cache) -> "BestEffortCache":
        return backend if isinstance(backend, cls) else cls(backend)


def create_cache(backend: str = "memory", redis_url: str = "", max_entries: int = 0) -> BestEffortCache:
    if backend == "redis":
        log.info(f"Using redis cache at {redis_url}")
        return BestEffortCache(RedisCache(redis_url))
    if backend != "memory":
        raise ValueError(f"Unknown cache backend: {backend}")
    return BestEffortCache(InMemoryCache(max_entries=max_entries))
