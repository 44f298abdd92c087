import itertools
import logging
import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from fnmatch import fnmatchcase
from typing import Callable, Optional

from cachetools import TLRUCache
from redis.asyncio import Redis, RedisError

from app.cache.keys import namespace_of
from app.core.config import Settings

logger = logging.getLogger(__name__)

# Errors a client may raise when the store itself is unreachable.
TRANSPORT_ERRORS = (RedisError, ConnectionError, OSError)

_sequence = itertools.count()


@dataclass(frozen=True)
class CacheEntry:
    """A stored value as held by the in-memory client."""

    key: str
    namespace: str
    serialized_value: str
    ttl_seconds: Optional[int]
    written_at: float
    expires_at: float = math.inf
    sequence: int = field(default_factory=lambda: next(_sequence))

    @classmethod
    def create(cls, key: str, value: str, ttl: Optional[int], now: float):
        expires_at = now + ttl if ttl else math.inf
        return cls(
            key=key,
            namespace=namespace_of(key),
            serialized_value=value,
            ttl_seconds=ttl,
            written_at=now,
            expires_at=expires_at,
        )


class CacheClient(ABC):
    """Minimal remote key-value capability used by the cache layer."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        pass

    @abstractmethod
    async def delete(self, *keys: str) -> int:
        pass

    @abstractmethod
    async def scan_keys(self, pattern: str) -> list[str]:
        """Return keys matching a glob pattern, oldest first where known."""
        pass

    @abstractmethod
    async def exists(self, key: str) -> bool:
        pass

    @abstractmethod
    async def incr(self, key: str) -> int:
        pass

    @abstractmethod
    async def expire(self, key: str, seconds: int) -> bool:
        pass

    @abstractmethod
    async def ttl(self, key: str) -> int:
        """Remaining seconds; -1 when the key has no expiry, -2 when missing."""
        pass

    @abstractmethod
    async def memory_usage(self) -> int:
        """Bytes currently used by the store."""
        pass

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


class RedisCacheClient(CacheClient):
    def __init__(self, redis: Redis):
        self.redis = redis

    @classmethod
    def from_settings(cls, settings: Settings) -> "RedisCacheClient":
        redis = Redis.from_url(
            settings.redis_dsn,
            encoding="utf-8",
            decode_responses=True,
            max_connections=settings.redis_pool_size,
            socket_connect_timeout=5,
            socket_timeout=settings.redis_socket_timeout,
            socket_keepalive=True,
            health_check_interval=30,
        )
        return cls(redis)

    async def get(self, key: str) -> Optional[str]:
        return await self.redis.get(key)

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        await self.redis.set(key, value, ex=ttl or None)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return await self.redis.delete(*keys)

    async def scan_keys(self, pattern: str) -> list[str]:
        # SCAN order is the closest thing Redis offers to write order
        keys = []
        async for key in self.redis.scan_iter(match=pattern, count=100):
            keys.append(key)
        return keys

    async def exists(self, key: str) -> bool:
        return bool(await self.redis.exists(key))

    async def incr(self, key: str) -> int:
        return await self.redis.incr(key)

    async def expire(self, key: str, seconds: int) -> bool:
        return bool(await self.redis.expire(key, seconds))

    async def ttl(self, key: str) -> int:
        return await self.redis.ttl(key)

    async def memory_usage(self) -> int:
        info = await self.redis.info("memory")
        return int(info["used_memory"])

    async def ping(self) -> bool:
        return bool(await self.redis.ping())

    async def close(self) -> None:
        await self.redis.aclose()
        logger.info("Redis connection closed")


def _entry_expiry(key, entry: CacheEntry, now: float) -> float:
    return entry.expires_at


class InMemoryCacheClient(CacheClient):
    """
    Process-local stand-in for Redis.

    Backed by a cachetools ``TLRUCache`` so every entry carries its own
    expiry. The timer is injectable, which lets tests move time forward.
    """

    def __init__(self, maxsize: int = 10_000, timer: Callable[[], float] = time.monotonic):
        self._timer = timer
        self._data = TLRUCache(maxsize=maxsize, ttu=_entry_expiry, timer=timer)

    def _entry(self, key: str) -> Optional[CacheEntry]:
        return self._data.get(key)

    async def get(self, key: str) -> Optional[str]:
        entry = self._entry(key)
        return entry.serialized_value if entry else None

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        self._data[key] = CacheEntry.create(key, value, ttl, self._timer())

    async def delete(self, *keys: str) -> int:
        deleted = 0
        for key in keys:
            if self._data.pop(key, None) is not None:
                deleted += 1
        return deleted

    async def scan_keys(self, pattern: str) -> list[str]:
        self._data.expire()
        entries = [
            entry for key, entry in list(self._data.items()) if fnmatchcase(key, pattern)
        ]
        entries.sort(key=lambda entry: entry.sequence)
        return [entry.key for entry in entries]

    async def exists(self, key: str) -> bool:
        return self._entry(key) is not None

    async def incr(self, key: str) -> int:
        entry = self._entry(key)
        if entry is None:
            self._data[key] = CacheEntry.create(key, "1", None, self._timer())
            return 1
        value = int(entry.serialized_value) + 1
        # keep the original expiry, like Redis INCR does
        self._data[key] = replace(entry, serialized_value=str(value))
        return value

    async def expire(self, key: str, seconds: int) -> bool:
        entry = self._entry(key)
        if entry is None:
            return False
        now = self._timer()
        self._data[key] = replace(entry, ttl_seconds=seconds, expires_at=now + seconds)
        return True

    async def ttl(self, key: str) -> int:
        entry = self._entry(key)
        if entry is None:
            return -2
        if entry.expires_at == math.inf:
            return -1
        return max(0, math.ceil(entry.expires_at - self._timer()))

    async def memory_usage(self) -> int:
        self._data.expire()
        return sum(
            len(entry.serialized_value.encode("utf-8")) for entry in list(self._data.values())
        )


async def build_cache_client(settings: Settings) -> CacheClient:
    """Pick the cache backend once, at startup."""
    if settings.redis_enabled:
        client = RedisCacheClient.from_settings(settings)
        try:
            await client.ping()
            logger.info("Redis connection established")
            return client
        except TRANSPORT_ERRORS as e:
            logger.error(f"Redis initialization failed, using in-memory cache: {e}")
            try:
                await client.close()
            except TRANSPORT_ERRORS:
                pass
    else:
        logger.info("Redis disabled, using in-memory cache")
    return InMemoryCacheClient(maxsize=settings.memory_maxsize)
