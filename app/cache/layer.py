import asyncio
import contextlib
import json
import math
import time
from typing import Any, Awaitable, Callable, Optional

from cachetools import TTLCache

from app.cache.clients import TRANSPORT_ERRORS, CacheClient
from app.cache.keys import (
    ACTIVITY_TTL,
    EVICTABLE_PATTERNS,
    SESSION_TTL,
    STATS_TTL,
    TODOS_TTL,
    CacheKeys,
)
from app.cache.schemas import decode_collection, encode_collection
from app.core.config import Settings, get_settings

import logging

logger = logging.getLogger(__name__)

# a lookup past its deadline is treated like an unreachable store
CACHE_ERRORS = TRANSPORT_ERRORS + (asyncio.TimeoutError,)


class CacheUnavailable(Exception):
    """The backing store could not be reached for a counter operation."""


class MemoryGuard:
    """
    Samples cache memory usage against a configured budget.

    Pressure levels mirror the usage ratio in tenths (0-10). Once usage
    crosses ``eviction_ratio`` of the budget the cache sheds its oldest
    evictable keys.
    """

    def __init__(
        self,
        client: CacheClient,
        budget_bytes: int,
        eviction_ratio: float = 0.8,
        refresh_interval: float = 5,
        timeout: float = 1.0,
        timer: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.budget_bytes = budget_bytes
        self.eviction_ratio = eviction_ratio
        self.refresh_interval = refresh_interval
        self.timeout = timeout
        self._timer = timer
        self._last_check = 0.0
        self._cached: Optional[dict] = None

    def invalidate(self) -> None:
        self._cached = None

    async def check(self) -> dict:
        """Check memory pressure with caching to avoid INFO spam."""
        now = self._timer()

        if self._cached and (now - self._last_check) < self.refresh_interval:
            return self._cached

        try:
            used = await asyncio.wait_for(self.client.memory_usage(), self.timeout)
        except CACHE_ERRORS as e:
            logger.error(f"Memory check failed: {e}")
            return {"level": 0, "ratio": None, "over_threshold": False, "error": str(e)}

        ratio = used / self.budget_bytes if self.budget_bytes else 0.0
        result = {
            "level": int(min(ratio * 10, 10)),
            "ratio": ratio,
            "used_mb": used / (1024 * 1024),
            "max_mb": self.budget_bytes / (1024 * 1024),
            "over_threshold": ratio > self.eviction_ratio,
        }

        if result["over_threshold"]:
            logger.warning(f"Cache memory above eviction threshold: {ratio:.1%} of budget")
        elif result["level"] >= 7:
            logger.info(f"Cache memory high: {ratio:.1%} of budget")

        self._cached = result
        self._last_check = now
        return result


class KeyValueCache:
    """
    Namespaced key-value cache over a remote store.

    The cache is never the authority: reads that fail are misses, writes
    that fail or time out are reported and dropped, and callers fall back
    to the source of truth.
    """

    def __init__(self, client: CacheClient, settings: Optional[Settings] = None):
        self.client = client
        self._settings = settings or get_settings()
        self._memory_guard = MemoryGuard(
            client,
            budget_bytes=self._settings.cache_memory_budget_bytes,
            eviction_ratio=self._settings.cache_eviction_ratio,
            timeout=self._settings.cache_read_timeout,
        )
        self._monitor: Optional[asyncio.Task] = None
        # per-key locks for stampede protection on read-through loads
        self._locks: TTLCache = TTLCache(maxsize=10_000, ttl=300)

        self.stats = {
            "hits": 0,
            "misses": 0,
            "errors": 0,
            "failed_writes": 0,
            "large_writes": 0,
            "evicted": 0,
        }

    @property
    def memory_guard(self) -> MemoryGuard:
        return self._memory_guard

    def _bounded(self, awaitable: Awaitable[Any]) -> Awaitable[Any]:
        return asyncio.wait_for(awaitable, self._settings.cache_read_timeout)

    def _serialize(self, value: Any) -> str:
        return json.dumps(value, default=str)

    def _deserialize(self, raw: str) -> Any:
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            return raw

    async def get(self, key: str) -> Any:
        """Return the cached value, or None on a miss or transport failure."""
        try:
            raw = await self._bounded(self.client.get(key))
        except CACHE_ERRORS as e:
            logger.error(f"Cache GET error for {key}: {e}")
            self.stats["errors"] += 1
            return None

        if raw is None:
            self.stats["misses"] += 1
            logger.debug(f"Cache miss: {key}")
            return None

        self.stats["hits"] += 1
        logger.debug(f"Cache hit: {key}")
        return self._deserialize(raw)

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """
        Store a value with a TTL.

        Oversized payloads are logged but still written. A write that does
        not finish within the configured deadline is reported as failed and
        not retried.
        """
        try:
            data = self._serialize(value)
        except (TypeError, ValueError) as e:
            logger.error(f"Serialization failed for {key}: {e}")
            self.stats["failed_writes"] += 1
            return False

        size = len(data.encode("utf-8"))
        if size > self._settings.cache_large_payload_bytes:
            self.stats["large_writes"] += 1
            logger.warning(f"Large cache payload for {key}: {size} bytes")

        ttl = ttl or self._settings.cache_default_ttl
        try:
            await asyncio.wait_for(
                self.client.set(key, data, ttl), timeout=self._settings.cache_write_timeout
            )
        except asyncio.TimeoutError:
            logger.warning(f"Cache SET timed out for {key}")
            self.stats["failed_writes"] += 1
            return False
        except TRANSPORT_ERRORS as e:
            logger.error(f"Cache SET error for {key}: {e}")
            self.stats["failed_writes"] += 1
            return False

        logger.debug(f"Stored {key} (ttl={ttl}s, {size} bytes)")
        return True

    async def delete(self, keys: str | list[str]) -> bool:
        if isinstance(keys, str):
            keys = [keys]
        if not keys:
            return True
        try:
            await self._bounded(self.client.delete(*keys))
            logger.debug(f"Deleted {keys}")
            return True
        except CACHE_ERRORS as e:
            logger.error(f"Cache DELETE error for {keys}: {e}")
            self.stats["errors"] += 1
            return False

    async def delete_pattern(self, pattern: str) -> int:
        """
        Delete every key matching a glob pattern.

        Enumerates then deletes; not atomic. A writer racing with the delete
        may leave a fresh entry behind, which is acceptable for a cache.
        """
        try:
            keys = await self._bounded(self.client.scan_keys(pattern))
            deleted = await self._bounded(self.client.delete(*keys)) if keys else 0
        except CACHE_ERRORS as e:
            logger.error(f"Pattern delete error for {pattern}: {e}")
            self.stats["errors"] += 1
            return 0

        logger.info(f"Pattern delete {pattern}: {deleted} keys")
        return deleted

    async def exists(self, key: str) -> bool:
        try:
            return await self._bounded(self.client.exists(key))
        except CACHE_ERRORS as e:
            logger.error(f"Cache EXISTS error for {key}: {e}")
            self.stats["errors"] += 1
            return False

    # Counter primitives. These raise CacheUnavailable so the caller can
    # pick its own degradation policy.

    async def incr(self, key: str) -> int:
        try:
            return await self._bounded(self.client.incr(key))
        except CACHE_ERRORS as e:
            raise CacheUnavailable(str(e)) from e

    async def expire(self, key: str, seconds: int) -> bool:
        try:
            return await self._bounded(self.client.expire(key, seconds))
        except CACHE_ERRORS as e:
            raise CacheUnavailable(str(e)) from e

    async def ttl(self, key: str) -> int:
        try:
            return await self._bounded(self.client.ttl(key))
        except CACHE_ERRORS as e:
            raise CacheUnavailable(str(e)) from e

    async def get_or_load(
        self,
        key: str,
        loader: Callable[[], Awaitable[Any]],
        ttl: Optional[int] = None,
    ) -> Any:
        """Read-through: cached value, else load once per key and store it."""
        value = await self.get(key)
        if value is not None:
            return value

        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            # another caller may have filled it while we waited
            value = await self.get(key)
            if value is not None:
                return value

            value = await loader()
            if value is None:
                return None
            await self.set(key, value, ttl)
            return value

    # Eviction

    async def evict(self, patterns: tuple[str, ...] = EVICTABLE_PATTERNS) -> int:
        """Delete the oldest third of the keys in each evictable namespace."""
        deleted = 0
        for pattern in patterns:
            try:
                keys = await self._bounded(self.client.scan_keys(pattern))
                if not keys:
                    continue
                oldest = keys[: math.ceil(len(keys) / 3)]
                deleted += await self._bounded(self.client.delete(*oldest))
            except CACHE_ERRORS as e:
                logger.error(f"Eviction failed for {pattern}: {e}")
                self.stats["errors"] += 1

        self.stats["evicted"] += deleted
        return deleted

    async def check_memory(self) -> dict:
        pressure = await self._memory_guard.check()
        if not pressure.get("over_threshold"):
            return {**pressure, "evicted": 0}

        evicted = await self.evict()
        self._memory_guard.invalidate()
        logger.warning(f"Evicted {evicted} cache keys under memory pressure")
        return {**pressure, "evicted": evicted}

    async def _monitor_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            await self.check_memory()

    def start_eviction_monitor(self, interval: Optional[float] = None) -> None:
        if self._monitor and not self._monitor.done():
            return
        interval = interval or self._settings.cache_eviction_interval
        self._monitor = asyncio.create_task(self._monitor_loop(interval))
        logger.info(f"Cache eviction monitor started (every {interval}s)")

    async def stop_eviction_monitor(self) -> None:
        if not self._monitor:
            return
        self._monitor.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._monitor
        self._monitor = None

    # Todo collection

    async def get_todos(self, owner_id: str) -> Optional[list[dict]]:
        return decode_collection(await self.get(CacheKeys.user_todos(owner_id)))

    async def set_todos(self, owner_id: str, todos: list[Any], ttl: int = TODOS_TTL) -> bool:
        return await self.set(CacheKeys.user_todos(owner_id), encode_collection(todos), ttl)

    async def invalidate_user_todos(self, owner_id: str) -> bool:
        return await self.delete(
            [CacheKeys.user_todos(owner_id), CacheKeys.user_stats(owner_id)]
        )

    async def invalidate_todo(self, todo_id: str) -> bool:
        return await self.delete(CacheKeys.todo_item(todo_id))

    async def get_user_stats(self, owner_id: str) -> Optional[dict]:
        return await self.get(CacheKeys.user_stats(owner_id))

    async def set_user_stats(self, owner_id: str, stats: dict, ttl: int = STATS_TTL) -> bool:
        return await self.set(CacheKeys.user_stats(owner_id), stats, ttl)

    # Sessions and activity

    async def set_session(self, session_id: str, data: dict, ttl: int = SESSION_TTL) -> bool:
        return await self.set(CacheKeys.session(session_id), data, ttl)

    async def get_session(self, session_id: str) -> Optional[dict]:
        return await self.get(CacheKeys.session(session_id))

    async def delete_session(self, session_id: str) -> bool:
        return await self.delete(CacheKeys.session(session_id))

    async def update_user_activity(self, owner_id: str) -> bool:
        return await self.set(CacheKeys.user_activity(owner_id), time.time(), ACTIVITY_TTL)

    async def is_user_active(self, owner_id: str) -> bool:
        last_activity = await self.get(CacheKeys.user_activity(owner_id))
        if not isinstance(last_activity, (int, float)):
            return False
        return (time.time() - last_activity) < ACTIVITY_TTL

    async def health_check(self) -> dict:
        start = time.perf_counter()
        try:
            await self._bounded(self.client.ping())
            status = "healthy"
        except CACHE_ERRORS:
            status = "unhealthy"
        return {"status": status, "latency_ms": round((time.perf_counter() - start) * 1000, 2)}

    def get_stats(self) -> dict:
        """Hit/miss counters plus the last memory sample."""
        lookups = self.stats["hits"] + self.stats["misses"]
        stats = {
            **self.stats,
            "hit_rate": self.stats["hits"] / lookups if lookups else 0,
        }
        if self._memory_guard._cached:
            stats["memory"] = self._memory_guard._cached
        return stats

    async def close(self) -> None:
        await self.stop_eviction_monitor()
        try:
            await self.client.close()
        except TRANSPORT_ERRORS as e:
            logger.error(f"Error closing cache client: {e}")
