"""权限模板接口。"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from app.apps.api.deps import acting_user_id, get_authz
from app.services.errors import StoreError, TemplateError
from app.services.template_service import template_to_dict

router = APIRouter(prefix="/api")


class ApplyTemplatePayload(BaseModel):
    user_ids: list[str] = Field(..., min_length=1)
    override_existing: bool = False
    expires_at: datetime | None = None
    additional_permissions: list[str] = Field(default_factory=list)
    exclude_permissions: list[str] = Field(default_factory=list)


class CloneTemplatePayload(BaseModel):
    name: str = Field(..., min_length=1, max_length=128)


@router.get("/templates")
async def list_templates(request: Request, type: str | None = None) -> dict[str, Any]:
    templates = await get_authz(request).templates.list_templates(template_type=type)
    return {"items": [template_to_dict(item) for item in templates]}


@router.post("/templates", status_code=201)
async def create_template(request: Request, payload: dict[str, Any]) -> dict[str, Any]:
    try:
        template = await get_authz(request).templates.create_template(payload, acting_user_id(request))
    except TemplateError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return template_to_dict(template)


@router.post("/templates/generate")
async def generate_templates(request: Request, kind: Literal["role", "property"] = "role") -> dict[str, Any]:
    service = get_authz(request).templates
    if kind == "role":
        created = await service.generate_role_templates(acting_user_id(request))
    else:
        created = await service.generate_property_templates(acting_user_id(request))
    return {"items": [template_to_dict(item) for item in created]}


@router.get("/templates/{template_id}")
async def read_template(request: Request, template_id: str) -> dict[str, Any]:
    template = await get_authz(request).templates.get_template(template_id)
    if template is None:
        raise HTTPException(status_code=404, detail="模板不存在")
    return template_to_dict(template)


@router.put("/templates/{template_id}")
async def update_template(request: Request, template_id: str, payload: dict[str, Any]) -> dict[str, Any]:
    service = get_authz(request).templates
    if await service.get_template(template_id) is None:
        raise HTTPException(status_code=404, detail="模板不存在")
    try:
        template = await service.update_template(template_id, payload, acting_user_id(request))
    except TemplateError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return template_to_dict(template)


@router.delete("/templates/{template_id}")
async def delete_template(request: Request, template_id: str) -> dict[str, Any]:
    deleted = await get_authz(request).templates.delete_template(template_id, acting_user_id(request))
    if not deleted:
        raise HTTPException(status_code=404, detail="模板不存在")
    return {"id": template_id, "deleted": True}


@router.post("/templates/{template_id}/clone", status_code=201)
async def clone_template(request: Request, template_id: str, payload: CloneTemplatePayload) -> dict[str, Any]:
    try:
        template = await get_authz(request).templates.clone_template(template_id, payload.name, acting_user_id(request))
    except TemplateError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return template_to_dict(template)


@router.post("/templates/{template_id}/apply")
async def apply_template(request: Request, template_id: str, payload: ApplyTemplatePayload) -> dict[str, Any]:
    try:
        return await get_authz(request).templates.apply_template(
            template_id,
            payload.user_ids,
            applied_by=acting_user_id(request),
            override_existing=payload.override_existing,
            expires_at=payload.expires_at,
            additional_permissions=payload.additional_permissions,
            exclude_permissions=payload.exclude_permissions,
        )
    except TemplateError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except StoreError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
