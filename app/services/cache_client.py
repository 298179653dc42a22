"""缓存客户端抽象与实现（Redis / 进程内内存）。"""

from __future__ import annotations

import fnmatch
import time
from typing import Any, Callable, Protocol

from redis.exceptions import RedisError

from app.services.errors import CacheError


class CacheClient(Protocol):
    """缓存后端的最小接口，单 key 操作需保证原子性。"""

    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def keys(self, pattern: str) -> list[str]: ...


class RedisCacheClient:
    """基于 redis.asyncio 的缓存客户端，连接生命周期由应用负责。"""

    def __init__(self, redis: Any) -> None:
        self._redis = redis

    async def get(self, key: str) -> str | None:
        try:
            value = await self._redis.get(key)
        except RedisError as exc:
            raise CacheError(f"redis get 失败: {key}") from exc
        return None if value is None else str(value)

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        try:
            if ttl_seconds:
                await self._redis.set(key, value, ex=max(int(ttl_seconds), 1))
            else:
                await self._redis.set(key, value)
        except RedisError as exc:
            raise CacheError(f"redis set 失败: {key}") from exc

    async def delete(self, key: str) -> None:
        try:
            await self._redis.delete(key)
        except RedisError as exc:
            raise CacheError(f"redis delete 失败: {key}") from exc

    async def keys(self, pattern: str) -> list[str]:
        try:
            keys = await self._redis.keys(pattern)
        except RedisError as exc:
            raise CacheError(f"redis keys 失败: {pattern}") from exc
        return [str(key) for key in keys]


class MemoryCacheClient:
    """进程内缓存，未配置 Redis 时使用。过期条目在读取时惰性清理。"""

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._items: dict[str, tuple[str, float | None]] = {}

    def _alive(self, key: str) -> bool:
        item = self._items.get(key)
        if item is None:
            return False
        _, expires_at = item
        if expires_at is not None and self._clock() >= expires_at:
            self._items.pop(key, None)
            return False
        return True

    async def get(self, key: str) -> str | None:
        if not self._alive(key):
            return None
        return self._items[key][0]

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None
        self._items[key] = (value, expires_at)

    async def delete(self, key: str) -> None:
        self._items.pop(key, None)

    async def keys(self, pattern: str) -> list[str]:
        return [key for key in list(self._items) if fnmatch.fnmatchcase(key, pattern) and self._alive(key)]
