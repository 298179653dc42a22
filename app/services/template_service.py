"""权限模板服务：维护模板并把模板权限批量授予用户。"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime
import logging
from typing import Any, Iterable
from uuid import uuid4

from app.services.access_levels import ACCESS_LEVEL_ORDER, access_level_permissions
from app.services.cache_invalidation import CacheInvalidationService, InvalidationContext, InvalidationEvent
from app.services.audit_log import append_audit_entry
from app.services.errors import AuditLogError, TemplateError
from app.services.permission_store import (
    AuditLogRecord,
    GrantRecord,
    PermissionStore,
    TemplateRecord,
    utc_now,
)
from app.services.role_hierarchy import ROLE_ORDER, base_permissions

logger = logging.getLogger(__name__)

TEMPLATE_TYPES = ("role_template", "property_template", "department_template")
UPDATABLE_FIELDS = ("name", "description", "type", "permissions", "conditions", "is_active")


def template_to_dict(template: TemplateRecord) -> dict[str, Any]:
    return {
        "id": template.id,
        "name": template.name,
        "description": template.description,
        "type": template.type,
        "permissions": list(template.permissions),
        "conditions": dict(template.conditions),
        "is_active": template.is_active,
        "created_by": template.created_by,
        "created_at": template.created_at.isoformat(),
        "updated_at": template.updated_at.isoformat(),
    }


def _clean_permissions(raw: Iterable[Any] | None) -> tuple[str, ...]:
    """去空、去重并保持顺序。"""

    permissions: list[str] = []
    for item in raw or []:
        value = str(item).strip()
        if value and value not in permissions:
            permissions.append(value)
    return tuple(permissions)


def _validate_fields(name: str, template_type: str, permissions: tuple[str, ...]) -> None:
    if not name:
        raise TemplateError("模板名称不能为空")
    if template_type not in TEMPLATE_TYPES:
        raise TemplateError(f"模板类型不合法: {template_type}")
    if not permissions:
        raise TemplateError("模板至少需要包含一个权限")


class PermissionTemplateService:
    def __init__(
        self,
        store: PermissionStore,
        invalidation: CacheInvalidationService | None = None,
    ) -> None:
        self.store = store
        self.invalidation = invalidation

    async def list_templates(self, *, template_type: str | None = None) -> list[TemplateRecord]:
        templates = await self.store.list_templates(active_only=True)
        if template_type:
            templates = [item for item in templates if item.type == template_type]
        return sorted(templates, key=lambda item: item.name)

    async def get_template(self, template_id: str) -> TemplateRecord | None:
        return await self.store.get_template(template_id)

    async def create_template(self, payload: dict[str, Any], created_by: str | None = None) -> TemplateRecord:
        name = str(payload.get("name") or "").strip()
        template_type = str(payload.get("type") or "").strip()
        permissions = _clean_permissions(payload.get("permissions"))
        _validate_fields(name, template_type, permissions)

        now = utc_now()
        template = await self.store.save_template(
            TemplateRecord(
                id=f"tpl_{uuid4().hex[:12]}",
                name=name,
                type=template_type,  # type: ignore[arg-type]
                permissions=permissions,
                description=str(payload.get("description") or ""),
                conditions=dict(payload.get("conditions") or {}),
                is_active=bool(payload.get("is_active", True)),
                created_by=created_by,
                created_at=now,
                updated_at=now,
            )
        )
        await self._audit(
            created_by,
            "PERMISSION_TEMPLATE_CREATED",
            template.id,
            {
                "template_name": template.name,
                "type": template.type,
                "permission_count": len(template.permissions),
            },
        )
        return template

    async def update_template(
        self,
        template_id: str,
        updates: dict[str, Any],
        updated_by: str | None = None,
    ) -> TemplateRecord:
        template = await self.store.get_template(template_id)
        if template is None:
            raise TemplateError(f"模板不存在: {template_id}")

        changes = {key: value for key, value in updates.items() if key in UPDATABLE_FIELDS}
        if "permissions" in changes:
            changes["permissions"] = _clean_permissions(changes["permissions"])
        if "name" in changes:
            changes["name"] = str(changes["name"] or "").strip()
        if "conditions" in changes:
            changes["conditions"] = dict(changes["conditions"] or {})

        updated = replace(template, **changes, updated_at=utc_now())
        _validate_fields(updated.name, updated.type, updated.permissions)
        updated = await self.store.save_template(updated)

        await self._audit(
            updated_by,
            "PERMISSION_TEMPLATE_UPDATED",
            updated.id,
            {"template_name": updated.name, "updates": sorted(changes)},
        )
        return updated

    async def delete_template(self, template_id: str, deleted_by: str | None = None) -> bool:
        """软删除：仅把模板标记为停用。"""

        template = await self.store.get_template(template_id)
        if template is None:
            return False

        await self.store.save_template(replace(template, is_active=False, updated_at=utc_now()))
        await self._audit(deleted_by, "PERMISSION_TEMPLATE_DELETED", template_id, {"deleted_by": deleted_by})
        return True

    async def apply_template(
        self,
        template_id: str,
        user_ids: list[str],
        *,
        applied_by: str | None = None,
        override_existing: bool = False,
        expires_at: datetime | None = None,
        additional_permissions: Iterable[str] = (),
        exclude_permissions: Iterable[str] = (),
    ) -> dict[str, Any]:
        """把模板权限授予一组用户，逐个用户返回结果。

        只要某个用户有授权写入（包括写到一半失败），就清理其权限缓存。
        """

        template = await self.store.get_template(template_id)
        if template is None or not template.is_active:
            raise TemplateError("Template not found or inactive")

        excluded = set(_clean_permissions(exclude_permissions))
        permissions = [
            name
            for name in _clean_permissions([*template.permissions, *additional_permissions])
            if name not in excluded
        ]

        results: list[dict[str, Any]] = []
        for user_id in user_ids:
            written: list[str] = []
            try:
                await self._apply_to_user(
                    str(user_id),
                    permissions,
                    written,
                    applied_by=applied_by,
                    override_existing=override_existing,
                    expires_at=expires_at,
                )
            except TemplateError as exc:
                result = {"target_id": user_id, "status": "error", "message": str(exc)}
            except Exception as exc:
                logger.exception("应用权限模板失败: template=%s user=%s", template_id, user_id)
                result = {"target_id": user_id, "status": "error", "message": str(exc)}
            else:
                result = {
                    "target_id": user_id,
                    "status": "success",
                    "message": "Template applied successfully",
                    "granted": len(written),
                }

            # 中途失败时已写入的授权同样需要清理缓存
            if written and self.invalidation is not None:
                await self.invalidation.invalidate(
                    InvalidationEvent.USER_PERMISSIONS_CHANGED,
                    InvalidationContext(
                        reason=f"Permission template {template.name} applied",
                        user_id=str(user_id),
                        triggered_by=applied_by,
                    ),
                )
            results.append(result)

        success_count = sum(1 for item in results if item["status"] == "success")
        await self._audit(
            applied_by,
            "PERMISSION_TEMPLATE_APPLIED",
            template.id,
            {
                "template_name": template.name,
                "target_type": "user",
                "target_ids": [str(item) for item in user_ids],
                "target_count": len(user_ids),
                "success_count": success_count,
                "error_count": len(results) - success_count,
            },
        )
        return {"success": success_count == len(results), "results": results}

    async def _apply_to_user(
        self,
        user_id: str,
        permissions: list[str],
        written: list[str],
        *,
        applied_by: str | None,
        override_existing: bool,
        expires_at: datetime | None,
    ) -> None:
        """逐条写入授权，成功写入的权限名追加到 written。"""

        user = await self.store.find_user_with_grants(user_id)
        if user is None:
            raise TemplateError(f"User {user_id} not found")

        for name in permissions:
            permission = await self.store.find_permission_by_name(name)
            if permission is None:
                logger.warning("权限不存在，已跳过: %s", name)
                continue

            existing = await self.store.find_grant(user_id, permission.id)
            if existing is not None and not override_existing:
                continue

            await self.store.upsert_grant(
                GrantRecord(
                    user_id=user_id,
                    permission_id=permission.id,
                    permission_name=permission.name,
                    granted=True,
                    expires_at=expires_at,
                    granted_by=applied_by,
                )
            )
            written.append(permission.name)

    async def generate_role_templates(self, created_by: str | None = None) -> list[TemplateRecord]:
        """为每个角色生成一份基础权限模板（由低到高）。"""

        created: list[TemplateRecord] = []
        for role in reversed(ROLE_ORDER):
            try:
                template = await self.create_template(
                    {
                        "name": f"{role.replace('_', ' ').upper()} Role Template",
                        "description": f"Auto-generated template for {role} role with all standard permissions",
                        "type": "role_template",
                        "permissions": sorted(base_permissions(role)),
                        "conditions": {"role": role},
                    },
                    created_by,
                )
            except Exception:
                logger.exception("生成角色模板失败: %s", role)
                continue
            created.append(template)
        return created

    async def generate_property_templates(self, created_by: str | None = None) -> list[TemplateRecord]:
        """为每个物业访问级别生成模板。"""

        created: list[TemplateRecord] = []
        for level in ACCESS_LEVEL_ORDER:
            try:
                template = await self.create_template(
                    {
                        "name": f"{level.replace('_', ' ').upper()} Property Access Template",
                        "description": f"Property access template for {level} level with appropriate permissions",
                        "type": "property_template",
                        "permissions": sorted(access_level_permissions(level)),
                        "conditions": {"access_level": level},
                    },
                    created_by,
                )
            except Exception:
                logger.exception("生成物业模板失败: %s", level)
                continue
            created.append(template)
        return created

    async def clone_template(self, template_id: str, new_name: str, cloned_by: str | None = None) -> TemplateRecord:
        source = await self.store.get_template(template_id)
        if source is None:
            raise TemplateError(f"模板不存在: {template_id}")

        return await self.create_template(
            {
                "name": new_name,
                "description": f"Cloned from: {source.name}",
                "type": source.type,
                "permissions": list(source.permissions),
                "conditions": dict(source.conditions),
            },
            cloned_by,
        )

    async def _audit(self, user_id: str | None, action: str, resource_id: str, details: dict[str, Any]) -> None:
        try:
            await append_audit_entry(
                self.store,
                AuditLogRecord(
                    user_id=user_id,
                    action=action,
                    resource="permission_template",
                    resource_id=resource_id,
                    details=details,
                ),
            )
        except AuditLogError:
            logger.warning("写入模板审计日志失败: action=%s", action, exc_info=True)
