"""接口层公共依赖。"""

from __future__ import annotations

from fastapi import HTTPException, Request

from app.services.authorization import AuthorizationService


def get_authz(request: Request) -> AuthorizationService:
    """从应用状态获取鉴权服务。"""

    authz = getattr(request.app.state, "authz", None)
    if authz is None:
        raise HTTPException(status_code=503, detail="鉴权服务未初始化")
    return authz


def acting_user_id(request: Request) -> str | None:
    """当前操作人，由调用方通过 X-User-Id 头传入。"""

    return getattr(request.state, "acting_user_id", None)
