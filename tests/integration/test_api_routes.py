from __future__ import annotations

import httpx
import pytest
from fastapi import FastAPI

from app.config import API_TOKEN
from app.main import create_app
from app.services.authorization import AuthorizationService

HEADERS = {"Authorization": f"Bearer {API_TOKEN}", "X-User-Id": "admin"}


@pytest.fixture
def api_app(store, cache_client) -> FastAPI:
    application = create_app(use_lifespan=False)
    application.state.authz = AuthorizationService.build(store, cache_client, audit_log_inheritance=False)
    return application


def _client(application: FastAPI) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=application), base_url="http://test")


@pytest.mark.integration
@pytest.mark.asyncio
async def test_api_requires_token(api_app) -> None:
    async with _client(api_app) as client:
        missing = await client.get("/api/permissions/u1")
        wrong = await client.get("/api/permissions/u1", headers={"X-API-Token": "nope"})
        health = await client.get("/api/health")

    assert missing.status_code == 401
    assert missing.json()["detail"] == "缺少接口令牌"
    assert wrong.status_code == 401
    assert wrong.json()["detail"] == "接口令牌无效"
    assert health.status_code == 200


@pytest.mark.integration
@pytest.mark.asyncio
async def test_uninitialized_service_returns_503() -> None:
    application = create_app(use_lifespan=False)

    async with _client(application) as client:
        response = await client.get("/api/cache", headers=HEADERS)

    assert response.status_code == 503


@pytest.mark.integration
@pytest.mark.asyncio
async def test_permission_endpoints(api_app, store) -> None:
    store.add_user("u1", "supervisor")
    store.add_property("p1", "Harbour Hotel")
    store.add_access("u1", "p1", "management")

    async with _client(api_app) as client:
        computed = await client.get("/api/permissions/u1", params={"property_id": "p1"}, headers=HEADERS)
        allowed = await client.get(
            "/api/permissions/u1/check",
            params={"permission": "analytics.basic.read", "property_id": "p1"},
            headers=HEADERS,
        )
        denied = await client.get(
            "/api/permissions/u1/check",
            params={"permission": "analytics.export"},
            headers=HEADERS,
        )
        missing = await client.get("/api/permissions/ghost", headers=HEADERS)
        validation = await client.get("/api/inheritance/validate", headers=HEADERS)

    assert computed.status_code == 200
    body = computed.json()
    assert body["effective_role"] == "supervisor"
    assert len(body["permissions"]) == 54
    assert body["inheritance_sources"][0]["source"] == "supervisor"
    assert allowed.json()["allowed"] is True
    assert denied.json()["allowed"] is False
    assert missing.status_code == 404
    assert validation.json() == {"valid": True, "issues": []}


@pytest.mark.integration
@pytest.mark.asyncio
async def test_store_outage_maps_to_503(api_app, store) -> None:
    store.add_user("u1", "staff")
    store.fail_on.add("find_property_access")

    async with _client(api_app) as client:
        response = await client.get("/api/permissions/u1", headers=HEADERS)

    assert response.status_code == 503


@pytest.mark.integration
@pytest.mark.asyncio
async def test_policy_endpoints(api_app, store) -> None:
    store.add_user("u1", "staff")

    async with _client(api_app) as client:
        blocked = await client.post(
            "/api/policies/evaluate",
            json={"user_id": "u1", "action": "delete_property", "resource": "property"},
            headers=HEADERS,
        )
        unknown = await client.post(
            "/api/policies/evaluate",
            json={"user_id": "ghost", "action": "delete_property", "resource": "property"},
            headers=HEADERS,
        )
        invalid = await client.post("/api/policies", json={"name": "x"}, headers=HEADERS)
        created = await client.post(
            "/api/policies",
            json={
                "name": "Staff watch",
                "type": "access_control",
                "enforcement": "advisory",
                "priority": "low",
                "rules": [{"condition": {"type": "user_role", "operator": "equals", "value": "staff"}}],
            },
            headers=HEADERS,
        )
        scan = await client.post("/api/compliance/scan", headers=HEADERS)
        dashboard = await client.get("/api/compliance/dashboard", headers=HEADERS)

    assert blocked.status_code == 200
    assert blocked.json()["allowed"] is False
    assert blocked.json()["blocked_policies"] == ["Administrative Duty Segregation"]
    assert unknown.status_code == 404
    assert invalid.status_code == 400
    assert created.status_code == 201
    assert created.json()["fail_mode"] == "open"
    assert store.policies[0].created_by == "admin"
    assert scan.json()["scanned_users"] == 1
    assert scan.json()["violations_found"] == 1
    assert dashboard.json()["using_default_policies"] is False
    assert dashboard.json()["overall_score"] == 0.0


@pytest.mark.integration
@pytest.mark.asyncio
async def test_cache_endpoints(api_app, store) -> None:
    store.add_user("u1", "staff")

    async with _client(api_app) as client:
        warmed = await client.post("/api/cache/warm", json={"user_ids": ["u1", "ghost"]}, headers=HEADERS)
        health = await client.get("/api/cache", headers=HEADERS)
        bad_event = await client.post("/api/cache/invalidate", json={"event": "nope"}, headers=HEADERS)
        invalidated = await client.post(
            "/api/cache/invalidate",
            json={"event": "user_permissions_changed", "user_id": "u1"},
            headers=HEADERS,
        )
        missing_id = await client.delete("/api/cache", params={"type": "user"}, headers=HEADERS)
        cleared = await client.delete("/api/cache", params={"type": "all"}, headers=HEADERS)

    assert warmed.json()["results"] == [
        {"user_id": "u1", "status": "warmed", "scopes": 1},
        {"user_id": "ghost", "status": "failed", "scopes": 0},
    ]
    assert health.json()["health"] == "degraded"
    assert bad_event.status_code == 400
    assert invalidated.json() == {"event": "user_permissions_changed", "success": True}
    assert store.audit_logs[-1].user_id == "admin"
    assert missing_id.status_code == 400
    assert cleared.json() == {"type": "all", "id": None, "deleted": 1}


@pytest.mark.integration
@pytest.mark.asyncio
async def test_template_endpoints(api_app, store) -> None:
    store.add_user("u1", "staff")
    store.add_permission("analytics.export")

    async with _client(api_app) as client:
        created = await client.post(
            "/api/templates",
            json={"name": "Export", "type": "role_template", "permissions": ["analytics.export"]},
            headers=HEADERS,
        )
        template_id = created.json()["id"]
        rejected = await client.post("/api/templates", json={"name": "x", "type": "bad"}, headers=HEADERS)
        listed = await client.get("/api/templates", headers=HEADERS)
        applied = await client.post(f"/api/templates/{template_id}/apply", json={"user_ids": ["u1"]}, headers=HEADERS)
        cloned = await client.post(f"/api/templates/{template_id}/clone", json={"name": "Export 2"}, headers=HEADERS)
        updated = await client.put(f"/api/templates/{template_id}", json={"description": "exports"}, headers=HEADERS)
        deleted = await client.delete(f"/api/templates/{template_id}", headers=HEADERS)
        missing = await client.get("/api/templates/tpl_missing", headers=HEADERS)
        apply_deleted = await client.post(
            f"/api/templates/{template_id}/apply", json={"user_ids": ["u1"]}, headers=HEADERS
        )
        generated = await client.post("/api/templates/generate", params={"kind": "property"}, headers=HEADERS)
        checked = await client.get(
            "/api/permissions/u1/check", params={"permission": "analytics.export"}, headers=HEADERS
        )

    assert created.status_code == 201
    assert created.json()["created_by"] == "admin"
    assert rejected.status_code == 400
    assert [item["name"] for item in listed.json()["items"]] == ["Export"]
    assert applied.json()["success"] is True
    assert cloned.json()["description"] == "Cloned from: Export"
    assert updated.json()["description"] == "exports"
    assert deleted.json() == {"id": template_id, "deleted": True}
    assert missing.status_code == 404
    assert apply_deleted.status_code == 404
    assert len(generated.json()["items"]) == 5
    assert checked.json()["allowed"] is True
