from __future__ import annotations

from datetime import timedelta

import pytest

from app.services.cache_invalidation import CacheInvalidationService
from app.services.errors import StoreError, TemplateError
from app.services.inheritance_engine import InheritanceEngine
from app.services.role_hierarchy import base_permissions
from app.services.template_service import PermissionTemplateService, template_to_dict


@pytest.fixture
def templates(store, permission_cache) -> PermissionTemplateService:
    return PermissionTemplateService(store, CacheInvalidationService(permission_cache, store))


async def _night_audit_template(service: PermissionTemplateService):
    return await service.create_template(
        {
            "name": "  Night Audit ",
            "type": "department_template",
            "permissions": ["reports.export", "analytics.export", "reports.export", " "],
            "conditions": {"department": "front_office"},
        },
        "admin",
    )


@pytest.mark.unit
@pytest.mark.asyncio
async def test_create_template_normalizes_input(store, templates) -> None:
    template = await _night_audit_template(templates)

    assert template.id.startswith("tpl_")
    assert template.name == "Night Audit"
    assert template.permissions == ("reports.export", "analytics.export")
    assert store.templates[template.id] == template
    assert store.actions() == ["PERMISSION_TEMPLATE_CREATED"]
    assert template_to_dict(template)["conditions"] == {"department": "front_office"}


@pytest.mark.unit
@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload",
    [
        {"name": "", "type": "role_template", "permissions": ["a.b"]},
        {"name": "x", "type": "team_template", "permissions": ["a.b"]},
        {"name": "x", "type": "role_template", "permissions": []},
    ],
)
async def test_create_template_rejects_invalid_input(templates, payload) -> None:
    with pytest.raises(TemplateError):
        await templates.create_template(payload)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_update_and_soft_delete(store, templates) -> None:
    template = await _night_audit_template(templates)

    updated = await templates.update_template(template.id, {"permissions": ["reports.export"], "owner": "x"}, "admin")
    assert updated.permissions == ("reports.export",)
    assert store.audit_logs[-1].details["updates"] == ["permissions"]

    with pytest.raises(TemplateError):
        await templates.update_template(template.id, {"permissions": []})
    with pytest.raises(TemplateError):
        await templates.update_template("tpl_missing", {"name": "x"})

    assert await templates.delete_template(template.id, "admin") is True
    assert store.templates[template.id].is_active is False
    assert await templates.list_templates() == []
    assert await templates.delete_template("tpl_missing") is False


@pytest.mark.unit
@pytest.mark.asyncio
async def test_apply_template_grants_and_reports_per_user(store, templates, permission_cache, clock) -> None:
    store.add_user("u1", "staff")
    store.add_user("u2", "staff")
    store.add_permission("reports.export")
    store.add_permission("analytics.export")
    store.add_permission("analytics.advanced.read")
    store.add_grant("u2", "reports.export", expires_at=clock.now + timedelta(days=1))
    await permission_cache.set_computed("u1", None, {"user_id": "u1"})
    template = await _night_audit_template(templates)

    outcome = await templates.apply_template(
        template.id,
        ["u1", "u2", "ghost"],
        applied_by="admin",
        additional_permissions=["analytics.advanced.read", "missing.permission"],
        exclude_permissions=["analytics.export"],
    )

    assert outcome["success"] is False
    assert outcome["results"] == [
        {"target_id": "u1", "status": "success", "message": "Template applied successfully", "granted": 2},
        {"target_id": "u2", "status": "success", "message": "Template applied successfully", "granted": 1},
        {"target_id": "ghost", "status": "error", "message": "User ghost not found"},
    ]
    assert ("u1", "perm-2") not in store.grants
    assert store.grants[("u1", "perm-3")].granted_by == "admin"
    assert store.grants[("u2", "perm-1")].expires_at == clock.now + timedelta(days=1)
    assert await permission_cache.get_computed("u1", None) is None
    applied = [entry for entry in store.audit_logs if entry.action == "PERMISSION_TEMPLATE_APPLIED"]
    assert applied[0].details["target_ids"] == ["u1", "u2", "ghost"]
    assert applied[0].details["success_count"] == 2


@pytest.mark.unit
@pytest.mark.asyncio
async def test_apply_template_can_override_existing_grants(store, templates, clock) -> None:
    store.add_user("u1", "staff")
    store.add_grant("u1", "reports.export", expires_at=clock.now + timedelta(days=1))
    store.add_permission("analytics.export")
    template = await _night_audit_template(templates)

    outcome = await templates.apply_template(template.id, ["u1"], override_existing=True)

    assert outcome["success"] is True
    assert outcome["results"][0]["granted"] == 2
    assert store.grants[("u1", "perm-1")].expires_at is None


@pytest.mark.unit
@pytest.mark.asyncio
async def test_applied_template_shows_up_in_computed_permissions(store, templates, permission_cache, clock) -> None:
    store.add_user("u1", "readonly")
    store.add_permission("analytics.export")
    engine = InheritanceEngine(store, permission_cache, clock=clock)
    before = await engine.compute("u1")
    template = await templates.create_template(
        {"name": "Export", "type": "role_template", "permissions": ["analytics.export"]}
    )

    await templates.apply_template(template.id, ["u1"])
    after = await engine.compute("u1")

    assert "analytics.export" not in before.permissions
    assert "analytics.export" in after.permissions


@pytest.mark.unit
@pytest.mark.asyncio
async def test_partial_apply_still_invalidates_written_grants(store, templates, permission_cache, clock, monkeypatch) -> None:
    store.add_user("u1", "readonly")
    store.add_permission("analytics.export")
    store.add_permission("analytics.advanced.read")
    engine = InheritanceEngine(store, permission_cache, clock=clock)
    before = await engine.compute("u1")
    template = await templates.create_template(
        {"name": "Analytics", "type": "role_template", "permissions": ["analytics.export", "analytics.advanced.read"]}
    )

    original = store.upsert_grant
    writes: list[str] = []

    async def upsert_then_fail(grant):
        writes.append(grant.permission_name)
        if len(writes) > 1:
            raise StoreError("upsert_grant unavailable")
        await original(grant)

    monkeypatch.setattr(store, "upsert_grant", upsert_then_fail)

    outcome = await templates.apply_template(template.id, ["u1"], applied_by="admin")
    cached = await engine.compute("u1")
    fresh = await engine.compute("u1", enable_caching=False)

    assert outcome["success"] is False
    assert outcome["results"] == [
        {"target_id": "u1", "status": "error", "message": "upsert_grant unavailable"},
    ]
    assert "analytics.export" not in before.permissions
    assert cached.permissions == fresh.permissions
    assert "analytics.export" in cached.permissions
    assert "analytics.advanced.read" not in cached.permissions


@pytest.mark.unit
@pytest.mark.asyncio
async def test_apply_inactive_template_fails(templates) -> None:
    template = await _night_audit_template(templates)
    await templates.delete_template(template.id)

    with pytest.raises(TemplateError, match="Template not found or inactive"):
        await templates.apply_template(template.id, ["u1"])


@pytest.mark.unit
@pytest.mark.asyncio
async def test_generate_role_and_property_templates(templates) -> None:
    roles = await templates.generate_role_templates("admin")
    levels = await templates.generate_property_templates("admin")

    assert [item.name for item in roles] == [
        "READONLY Role Template",
        "VIEWER Role Template",
        "STAFF Role Template",
        "SUPERVISOR Role Template",
        "OUTLET MANAGER Role Template",
        "PROPERTY MANAGER Role Template",
        "PROPERTY ADMIN Role Template",
        "SUPER ADMIN Role Template",
    ]
    assert set(roles[-1].permissions) == set(base_permissions("super_admin"))
    assert roles[0].conditions == {"role": "readonly"}
    assert [item.conditions["access_level"] for item in levels] == [
        "read_only",
        "data_entry",
        "management",
        "full_control",
        "owner",
    ]
    assert levels[0].name == "READ ONLY Property Access Template"

    listed = await templates.list_templates(template_type="property_template")
    assert len(listed) == 5


@pytest.mark.unit
@pytest.mark.asyncio
async def test_clone_template(templates) -> None:
    template = await _night_audit_template(templates)

    clone = await templates.clone_template(template.id, "Night Audit (weekend)", "admin")

    assert clone.id != template.id
    assert clone.description == "Cloned from: Night Audit"
    assert clone.permissions == template.permissions
    with pytest.raises(TemplateError):
        await templates.clone_template("tpl_missing", "x")
