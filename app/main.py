"""FastAPI 应用入口。"""

from __future__ import annotations

from contextlib import asynccontextmanager
import logging
from typing import AsyncIterator

from fastapi import FastAPI

from .apps.api.controllers.cache import router as cache_router
from .apps.api.controllers.compliance import router as compliance_router
from .apps.api.controllers.permissions import router as permissions_router
from .apps.api.controllers.templates import router as templates_router
from .config import API_TOKEN, APP_NAME
from .db import close_db, init_db
from .middleware.auth import ApiTokenMiddleware
from .services.authorization import AuthorizationService
from .services.mongo_store import MongoPermissionStore
from .services.redis_service import build_cache_client, close_redis
from .services.role_hierarchy import validate_role_graph

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """应用生命周期：启动时校验角色层级并装配服务，退出时释放连接。"""

    order = validate_role_graph()
    logger.info("角色层级校验通过: %s", " > ".join(order))

    await init_db()
    app.state.authz = AuthorizationService.build(MongoPermissionStore(), await build_cache_client())
    try:
        yield
    finally:
        app.state.authz = None
        await close_redis()
        await close_db()


def create_app(*, use_lifespan: bool = True) -> FastAPI:
    """创建应用。测试可关闭 lifespan 并自行注入 app.state.authz。"""

    application = FastAPI(title=APP_NAME, lifespan=lifespan if use_lifespan else None)
    application.add_middleware(ApiTokenMiddleware, token=API_TOKEN, exempt_paths={"/api/health"})
    application.include_router(permissions_router)
    application.include_router(compliance_router)
    application.include_router(cache_router)
    application.include_router(templates_router)

    @application.get("/api/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    return application


app = create_app()
