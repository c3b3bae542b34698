"""
Shared key-value store — Abstract interface with Redis and in-memory backends.

This is the substrate for every piece of state that must be consistent
across router instances:

  conversation_state:{contact}   — dialogue state JSON, 24h TTL
  chat:processing:{contact}      — per-contact processing lease, 30s TTL
  waiting_chats_queue            — FIFO list of chat ids awaiting an agent

Primitives:
  get / set(ttl) / set_if_absent(ttl) / delete / delete_if_equals / exists
  push_left / pop_right / list_range / list_length
"""
from __future__ import annotations

import asyncio
import time
import structlog
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Optional

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Abstract Interface
# ──────────────────────────────────────────────────────────────

class KeyValueStore(ABC):
    """Abstract shared store interface."""

    @abstractmethod
    async def connect(self):
        """Establish connection to the store backend."""
        ...

    @abstractmethod
    async def close(self):
        """Gracefully shut down."""
        ...

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: Optional[float] = None) -> None:
        """Unconditional write; a ttl replaces any previous expiry."""
        ...

    @abstractmethod
    async def set_if_absent(self, key: str, value: str, ttl_seconds: Optional[float] = None) -> bool:
        """Write only when the key does not exist. Returns True if written."""
        ...

    @abstractmethod
    async def delete(self, key: str) -> bool:
        ...

    @abstractmethod
    async def delete_if_equals(self, key: str, value: str) -> bool:
        """Delete the key only while it still holds value, in one step."""
        ...

    @abstractmethod
    async def exists(self, key: str) -> bool:
        ...

    @abstractmethod
    async def push_left(self, key: str, value: str) -> int:
        """Prepend to a list. Returns the new length."""
        ...

    @abstractmethod
    async def pop_right(self, key: str) -> Optional[str]:
        """Remove and return the last element of a list."""
        ...

    @abstractmethod
    async def list_range(self, key: str, start: int = 0, stop: int = -1) -> list[str]:
        """Elements between start and stop inclusive, left to right."""
        ...

    @abstractmethod
    async def list_length(self, key: str) -> int:
        ...


# ──────────────────────────────────────────────────────────────
#  Redis Implementation
# ──────────────────────────────────────────────────────────────

_DELETE_IF_EQUALS_LUA = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""


def _to_px(ttl_seconds: Optional[float]) -> Optional[int]:
    if ttl_seconds is None:
        return None
    return max(1, int(ttl_seconds * 1000))


class RedisKeyValueStore(KeyValueStore):
    """
    Production store backed by Redis.

    TTLs are written in milliseconds (PX) so sub-second leases work.
    An optional key prefix namespaces every key for shared clusters.
    """

    def __init__(self, redis_url: str = "redis://localhost:6379", key_prefix: str = ""):
        self._redis_url = redis_url
        self._prefix = key_prefix
        self._redis = None
        self._delete_if_equals = None

    def _k(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def connect(self):
        import redis.asyncio as aioredis
        self._redis = aioredis.from_url(
            self._redis_url,
            decode_responses=True,
            max_connections=20,
        )
        await self._redis.ping()
        self._delete_if_equals = self._redis.register_script(_DELETE_IF_EQUALS_LUA)
        logger.info("redis_store_connected", url=self._redis_url)

    async def close(self):
        if self._redis:
            await self._redis.close()
            self._redis = None
            self._delete_if_equals = None

    async def get(self, key: str) -> Optional[str]:
        return await self._redis.get(self._k(key))

    async def set(self, key: str, value: str, ttl_seconds: Optional[float] = None) -> None:
        await self._redis.set(self._k(key), value, px=_to_px(ttl_seconds))

    async def set_if_absent(self, key: str, value: str, ttl_seconds: Optional[float] = None) -> bool:
        result = await self._redis.set(self._k(key), value, px=_to_px(ttl_seconds), nx=True)
        return bool(result)

    async def delete(self, key: str) -> bool:
        return bool(await self._redis.delete(self._k(key)))

    async def delete_if_equals(self, key: str, value: str) -> bool:
        return bool(await self._delete_if_equals(keys=[self._k(key)], args=[value]))

    async def exists(self, key: str) -> bool:
        return bool(await self._redis.exists(self._k(key)))

    async def push_left(self, key: str, value: str) -> int:
        return int(await self._redis.lpush(self._k(key), value))

    async def pop_right(self, key: str) -> Optional[str]:
        return await self._redis.rpop(self._k(key))

    async def list_range(self, key: str, start: int = 0, stop: int = -1) -> list[str]:
        return list(await self._redis.lrange(self._k(key), start, stop))

    async def list_length(self, key: str) -> int:
        return int(await self._redis.llen(self._k(key)))


# ──────────────────────────────────────────────────────────────
#  In-Memory Implementation
# ──────────────────────────────────────────────────────────────

class InMemoryKeyValueStore(KeyValueStore):
    """
    Development/test store. Emulates Redis TTL semantics with a monotonic
    clock: expired keys are evicted lazily on access. Single-process only.
    """

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._values: dict[str, str] = {}
        self._lists: dict[str, deque[str]] = {}
        self._expiry: dict[str, float] = {}
        self._lock = asyncio.Lock()

    async def connect(self):
        logger.info("memory_store_ready")

    async def close(self):
        self._values.clear()
        self._lists.clear()
        self._expiry.clear()

    def _evict_if_expired(self, key: str) -> None:
        deadline = self._expiry.get(key)
        if deadline is not None and self._clock() >= deadline:
            self._values.pop(key, None)
            self._lists.pop(key, None)
            self._expiry.pop(key, None)

    def _contains(self, key: str) -> bool:
        self._evict_if_expired(key)
        return key in self._values or key in self._lists

    def _apply_ttl(self, key: str, ttl_seconds: Optional[float]) -> None:
        if ttl_seconds is None:
            self._expiry.pop(key, None)
        else:
            self._expiry[key] = self._clock() + ttl_seconds

    async def get(self, key: str) -> Optional[str]:
        self._evict_if_expired(key)
        return self._values.get(key)

    async def set(self, key: str, value: str, ttl_seconds: Optional[float] = None) -> None:
        async with self._lock:
            self._lists.pop(key, None)
            self._values[key] = value
            self._apply_ttl(key, ttl_seconds)

    async def set_if_absent(self, key: str, value: str, ttl_seconds: Optional[float] = None) -> bool:
        async with self._lock:
            if self._contains(key):
                return False
            self._values[key] = value
            self._apply_ttl(key, ttl_seconds)
            return True

    async def delete(self, key: str) -> bool:
        async with self._lock:
            existed = self._contains(key)
            self._values.pop(key, None)
            self._lists.pop(key, None)
            self._expiry.pop(key, None)
            return existed

    async def delete_if_equals(self, key: str, value: str) -> bool:
        async with self._lock:
            self._evict_if_expired(key)
            if self._values.get(key) != value:
                return False
            del self._values[key]
            self._expiry.pop(key, None)
            return True

    async def exists(self, key: str) -> bool:
        return self._contains(key)

    async def push_left(self, key: str, value: str) -> int:
        async with self._lock:
            self._evict_if_expired(key)
            items = self._lists.setdefault(key, deque())
            items.appendleft(value)
            return len(items)

    async def pop_right(self, key: str) -> Optional[str]:
        async with self._lock:
            self._evict_if_expired(key)
            items = self._lists.get(key)
            if not items:
                return None
            value = items.pop()
            if not items:
                del self._lists[key]
            return value

    async def list_range(self, key: str, start: int = 0, stop: int = -1) -> list[str]:
        self._evict_if_expired(key)
        items = list(self._lists.get(key, ()))
        if stop == -1:
            return items[start:]
        return items[start:stop + 1]

    async def list_length(self, key: str) -> int:
        self._evict_if_expired(key)
        return len(self._lists.get(key, ()))


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

_instance: Optional[KeyValueStore] = None


def create_kv_store(store_config: dict[str, Any] = None) -> KeyValueStore:
    """Factory: create the appropriate store backend."""
    global _instance
    if _instance:
        return _instance

    config = store_config or {}
    backend = config.get("backend", "memory")

    if backend == "redis":
        _instance = RedisKeyValueStore(
            redis_url=config.get("redis_url", "redis://localhost:6379"),
            key_prefix=config.get("key_prefix", ""),
        )
    else:
        _instance = InMemoryKeyValueStore()

    logger.info("kv_store_created", backend=backend)
    return _instance


def get_kv_store() -> KeyValueStore:
    """Return the singleton store instance."""
    global _instance
    if _instance is None:
        _instance = create_kv_store()
    return _instance


def reset_kv_store() -> None:
    """Reset the singleton (for testing)."""
    global _instance
    _instance = None
