"""权限计算接口。"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, Request

from app.apps.api.deps import get_authz
from app.services.errors import StoreError, UserNotFound

router = APIRouter(prefix="/api")


@router.get("/permissions/{user_id}")
async def read_permissions(
    request: Request,
    user_id: str,
    property_id: str | None = None,
    include_inactive: bool = False,
    enable_caching: bool = True,
) -> dict[str, Any]:
    authz = get_authz(request)
    try:
        computed = await authz.compute_inherited_permissions(
            user_id,
            property_id,
            include_inactive=include_inactive,
            enable_caching=enable_caching,
        )
    except UserNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except StoreError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return computed.to_dict()


@router.get("/permissions/{user_id}/check")
async def check_permission(
    request: Request,
    user_id: str,
    permission: str,
    property_id: str | None = None,
) -> dict[str, Any]:
    authz = get_authz(request)
    try:
        allowed = await authz.has_permission(user_id, permission, property_id)
    except UserNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except StoreError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return {"user_id": user_id, "permission": permission, "property_id": property_id, "allowed": allowed}


@router.get("/inheritance/validate")
async def validate_inheritance(request: Request) -> dict[str, Any]:
    return await get_authz(request).engine.validate_inheritance_rules()
