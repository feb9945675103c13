"""
Shared state store and JSON cache client.

The routing engine keeps all cross-request state (configuration cache, locks,
idempotency records, rate-limit counters, round-robin cursors, IVR turn
counters) in one key/value store. Redis is the production backend; the
in-process backend serves single-process deployments and tests.
"""

from __future__ import annotations

import fnmatch
import json
import time
from collections.abc import Callable
from typing import Any, Protocol

import redis.asyncio as redis
from redis.exceptions import RedisError

from callrouting.config import get_settings
from callrouting.shared.logging import get_logger

logger = get_logger(__name__)

# Errors a store backend may raise when it is unreachable or misbehaving.
STORE_ERRORS: tuple[type[BaseException], ...] = (RedisError, OSError)

_COMPARE_AND_DELETE = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""

# First increment of a key starts its TTL; both happen in one step.
_INCR_WITH_TTL = """
local value = redis.call("incr", KEYS[1])
if value == 1 and tonumber(ARGV[1]) > 0 then
    redis.call("pexpire", KEYS[1], ARGV[1])
end
return value
"""


class StateStore(Protocol):
    """Minimal key/value contract shared by all routing state."""

    async def get(self, key: str) -> str | None: ...

    async def set(
        self,
        key: str,
        value: str,
        ttl_seconds: float | None = None,
        only_if_absent: bool = False,
    ) -> bool: ...

    async def delete(self, *keys: str) -> int: ...

    async def delete_if_equals(self, key: str, value: str) -> bool: ...

    async def incr(self, key: str, ttl_seconds: float | None = None) -> int: ...

    async def delete_prefix(self, prefix: str) -> int: ...

    async def close(self) -> None: ...


class RedisStateStore:
    """StateStore backed by redis.asyncio."""

    def __init__(self, redis_url: str) -> None:
        self._redis_url = redis_url
        self._client: redis.Redis | None = None
        self._release_script: Any = None
        self._incr_script: Any = None

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.from_url(
                self._redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            self._release_script = self._client.register_script(_COMPARE_AND_DELETE)
            self._incr_script = self._client.register_script(_INCR_WITH_TTL)
        return self._client

    async def get(self, key: str) -> str | None:
        return await self.client.get(key)

    async def set(
        self,
        key: str,
        value: str,
        ttl_seconds: float | None = None,
        only_if_absent: bool = False,
    ) -> bool:
        px = int(ttl_seconds * 1000) if ttl_seconds else None
        result = await self.client.set(key, value, px=px, nx=only_if_absent)
        return bool(result)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self.client.delete(*keys))

    async def delete_if_equals(self, key: str, value: str) -> bool:
        client = self.client
        result = await self._release_script(keys=[key], args=[value], client=client)
        return bool(result)

    async def incr(self, key: str, ttl_seconds: float | None = None) -> int:
        client = self.client
        ttl_ms = int(ttl_seconds * 1000) if ttl_seconds else 0
        return int(await self._incr_script(keys=[key], args=[ttl_ms], client=client))

    async def delete_prefix(self, prefix: str) -> int:
        removed = 0
        async for key in self.client.scan_iter(match=f"{prefix}*"):
            removed += int(await self.client.delete(key))
        return removed

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            self._release_script = None
            self._incr_script = None


class MemoryStateStore:
    """Process-local StateStore.

    Operations never await, so each one is atomic with respect to other
    coroutines on the same event loop. Expired entries are dropped when read
    and swept in bulk every ``sweep_interval`` writes.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        sweep_interval: int = 256,
    ) -> None:
        self._data: dict[str, tuple[str, float | None]] = {}
        self._clock = clock
        self._sweep_interval = max(sweep_interval, 1)
        self._writes = 0

    def size(self) -> int:
        """Entries held, including expired ones not yet swept."""
        return len(self._data)

    def _live(self, key: str) -> str | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return value

    def _expiry(self, ttl_seconds: float | None) -> float | None:
        return self._clock() + ttl_seconds if ttl_seconds else None

    def _written(self) -> None:
        self._writes += 1
        if self._writes % self._sweep_interval == 0:
            self.sweep()

    def sweep(self) -> int:
        """Drop every expired entry; returns how many were removed."""
        now = self._clock()
        expired = [k for k, (_, expires_at) in self._data.items() if expires_at is not None and expires_at <= now]
        for key in expired:
            del self._data[key]
        return len(expired)

    async def get(self, key: str) -> str | None:
        return self._live(key)

    async def set(
        self,
        key: str,
        value: str,
        ttl_seconds: float | None = None,
        only_if_absent: bool = False,
    ) -> bool:
        if only_if_absent and self._live(key) is not None:
            return False
        self._data[key] = (value, self._expiry(ttl_seconds))
        self._written()
        return True

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._live(key) is not None:
                removed += 1
            self._data.pop(key, None)
        return removed

    async def delete_if_equals(self, key: str, value: str) -> bool:
        if self._live(key) == value:
            del self._data[key]
            return True
        return False

    async def incr(self, key: str, ttl_seconds: float | None = None) -> int:
        current = self._live(key)
        if current is None:
            self._data[key] = ("1", self._expiry(ttl_seconds))
            self._written()
            return 1
        value = int(current) + 1
        self._data[key] = (str(value), self._data[key][1])
        return value

    async def delete_prefix(self, prefix: str) -> int:
        matching = [k for k in list(self._data) if fnmatch.fnmatchcase(k, f"{prefix}*")]
        return await self.delete(*matching)

    async def close(self) -> None:
        self._data.clear()


class CacheClient:
    """JSON cache on top of a StateStore.

    Store failures are logged and reported as a miss (or ``False`` for writes)
    so callers can fall back to the authoritative source.
    """

    def __init__(self, store: StateStore) -> None:
        self._store = store

    @property
    def store(self) -> StateStore:
        return self._store

    async def get(self, key: str) -> Any | None:
        """Get value from cache."""
        try:
            value = await self._store.get(key)
        except STORE_ERRORS as e:
            logger.warning("Cache get failed", extra={"key": key, "error": str(e)})
            return None
        if value is None:
            return None
        try:
            return json.loads(value)
        except ValueError:
            logger.warning("Discarding undecodable cache entry", extra={"key": key})
            return None

    async def set(self, key: str, value: Any, ttl_seconds: int) -> bool:
        """Set value in cache with TTL."""
        try:
            serialized = json.dumps(value, default=str)
            await self._store.set(key, serialized, ttl_seconds=ttl_seconds)
            return True
        except STORE_ERRORS as e:
            logger.warning("Cache set failed", extra={"key": key, "error": str(e)})
            return False

    async def delete(self, *keys: str) -> bool:
        """Delete values from cache."""
        try:
            await self._store.delete(*keys)
            return True
        except STORE_ERRORS as e:
            logger.warning("Cache delete failed", extra={"keys": list(keys), "error": str(e)})
            return False

    async def delete_prefix(self, prefix: str) -> bool:
        try:
            await self._store.delete_prefix(prefix)
            return True
        except STORE_ERRORS as e:
            logger.warning("Cache prefix delete failed", extra={"prefix": prefix, "error": str(e)})
            return False


# Global instances
_state_store: StateStore | None = None


def get_state_store() -> StateStore:
    """Get or create the process-wide state store."""
    global _state_store
    if _state_store is None:
        settings = get_settings()
        if settings.state_backend == "memory":
            _state_store = MemoryStateStore()
        else:
            _state_store = RedisStateStore(settings.redis_url)
        logger.info("State store created", extra={"backend": settings.state_backend})
    return _state_store


async def close_state_store() -> None:
    global _state_store
    if _state_store is not None:
        await _state_store.close()
    _state_store = None
