"""Redis 连接服务与缓存客户端装配。"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from redis.asyncio import Redis

from app.config import REDIS_PASSWORD, REDIS_URL
from app.services.cache_client import CacheClient, MemoryCacheClient, RedisCacheClient

logger = logging.getLogger(__name__)

_redis_client: Any = None
_redis_lock = asyncio.Lock()


async def get_redis() -> Any:
    """获取进程级 Redis 客户端（懒加载单例）。"""

    global _redis_client
    if _redis_client is not None:
        return _redis_client

    async with _redis_lock:
        if _redis_client is None:
            _redis_client = Redis.from_url(
                REDIS_URL,
                password=REDIS_PASSWORD or None,
                encoding="utf-8",
                decode_responses=True,
            )
    return _redis_client


async def close_redis() -> None:
    """关闭 Redis 客户端连接。"""

    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
    _redis_client = None


async def build_cache_client() -> CacheClient:
    """按配置构建缓存客户端，未配置 REDIS_URL 时使用内存缓存。"""

    if not REDIS_URL:
        logger.info("未配置 REDIS_URL，权限缓存使用进程内内存")
        return MemoryCacheClient()
    return RedisCacheClient(await get_redis())
