"""合规策略评估与扫描接口。"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from app.apps.api.deps import acting_user_id, get_authz
from app.services.errors import StoreError, UserNotFound

router = APIRouter(prefix="/api")


class EvaluateActionPayload(BaseModel):
    user_id: str = Field(..., min_length=1)
    action: str = Field(..., min_length=1)
    resource: str = Field(..., min_length=1)
    context: dict[str, Any] = Field(default_factory=dict)


@router.post("/policies/evaluate")
async def evaluate_action(request: Request, payload: EvaluateActionPayload) -> dict[str, Any]:
    authz = get_authz(request)
    try:
        decision = await authz.evaluate_action(payload.user_id, payload.action, payload.resource, payload.context)
    except UserNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return decision.to_dict()


@router.post("/policies", status_code=201)
async def create_policy(request: Request, payload: dict[str, Any]) -> dict[str, Any]:
    authz = get_authz(request)
    try:
        policy = await authz.policies.create_policy(payload, acting_user_id(request))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except StoreError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return {"id": policy.id, "name": policy.name, "status": policy.status, "fail_mode": policy.fail_mode}


@router.post("/compliance/scan")
async def compliance_scan(request: Request) -> dict[str, Any]:
    authz = get_authz(request)
    try:
        result = await authz.perform_compliance_scan()
    except StoreError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return result.to_dict()


@router.get("/compliance/dashboard")
async def compliance_dashboard(request: Request) -> dict[str, Any]:
    authz = get_authz(request)
    try:
        return await authz.get_compliance_dashboard()
    except StoreError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
