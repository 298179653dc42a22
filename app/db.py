"""MongoDB 连接与 Beanie 文档注册。"""

from __future__ import annotations

import logging
from typing import Any, cast

from beanie import init_beanie
from motor.motor_asyncio import AsyncIOMotorClient

from .config import MONGO_DB, MONGO_URL
from .models import DOCUMENT_MODELS

logger = logging.getLogger(__name__)

_mongo_client: AsyncIOMotorClient | None = None


async def init_db(url: str = MONGO_URL, database: str = MONGO_DB) -> None:
    """连接 Mongo 并注册权限相关的全部文档模型（含索引同步）。"""

    global _mongo_client
    client: AsyncIOMotorClient = AsyncIOMotorClient(url)
    await client.admin.command("ping")
    await init_beanie(
        database=cast(Any, client[database]),
        document_models=DOCUMENT_MODELS,
    )
    _mongo_client = client
    logger.info("权限存储已连接: db=%s models=%d", database, len(DOCUMENT_MODELS))


async def close_db() -> None:
    global _mongo_client
    if _mongo_client is None:
        return
    _mongo_client.close()
    _mongo_client = None
    logger.info("权限存储连接已关闭")
