"""权限缓存运维接口。"""

from __future__ import annotations

from typing import Any, Literal

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from app.apps.api.deps import acting_user_id, get_authz
from app.services.cache_invalidation import InvalidationContext, InvalidationEvent
from app.services.errors import CacheError

router = APIRouter(prefix="/api")


class InvalidatePayload(BaseModel):
    event: str
    user_id: str | None = None
    property_id: str | None = None
    role: str | None = None
    affected_users: list[str] = Field(default_factory=list)
    reason: str = "Manual invalidation"


class WarmPayload(BaseModel):
    user_ids: list[str] = Field(..., min_length=1)
    property_ids: list[str] | None = None


@router.get("/cache")
async def cache_status(request: Request) -> dict[str, Any]:
    return await get_authz(request).invalidation.get_cache_health()


@router.post("/cache/invalidate")
async def invalidate_cache(request: Request, payload: InvalidatePayload) -> dict[str, Any]:
    try:
        event = InvalidationEvent(payload.event)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"未知的失效事件: {payload.event}") from exc

    success = await get_authz(request).invalidate(
        event,
        InvalidationContext(
            reason=payload.reason,
            user_id=payload.user_id,
            property_id=payload.property_id,
            role=payload.role,
            affected_users=list(payload.affected_users),
            triggered_by=acting_user_id(request),
        ),
    )
    return {"event": event.value, "success": success}


@router.post("/cache/warm")
async def warm_cache(request: Request, payload: WarmPayload) -> dict[str, Any]:
    invalidation = get_authz(request).invalidation
    results = []
    for user_id in payload.user_ids:
        warmed = await invalidation.warm_cache(user_id, payload.property_ids)
        results.append({"user_id": user_id, "status": "warmed" if warmed else "failed", "scopes": warmed})
    return {"results": results}


@router.delete("/cache")
async def clear_cache(
    request: Request,
    type: Literal["user", "property", "role", "all"] = "all",
    id: str | None = None,
) -> dict[str, Any]:
    cache = get_authz(request).cache
    if type != "all" and not id:
        raise HTTPException(status_code=400, detail="清除指定范围的缓存需要提供 id")

    try:
        if type == "user":
            deleted = await cache.invalidate_user(str(id))
        elif type == "property":
            deleted = await cache.invalidate_property(str(id))
        elif type == "role":
            deleted = await cache.invalidate_role(str(id))
        else:
            deleted = await cache.clear_all()
    except CacheError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return {"type": type, "id": id, "deleted": deleted}
