"""权限缓存失效服务。

写入方在持久化成功之后调用 invalidate / smart_invalidate；这里的所有失败只记录日志，不向调用方抛出。
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
import logging
from typing import TYPE_CHECKING, Any, Iterable

from app.services.audit_log import append_audit_entry
from app.services.errors import AuditLogError, CacheError, InvalidationError, StoreError
from app.services.permission_cache import PermissionCache
from app.services.permission_store import AuditLogRecord, PermissionStore, utc_now

if TYPE_CHECKING:
    from app.services.inheritance_engine import InheritanceEngine

logger = logging.getLogger(__name__)


class InvalidationEvent(str, Enum):
    USER_ROLE_CHANGED = "user_role_changed"
    USER_PERMISSIONS_CHANGED = "user_permissions_changed"
    PROPERTY_ACCESS_GRANTED = "property_access_granted"
    PROPERTY_ACCESS_REVOKED = "property_access_revoked"
    PROPERTY_CREATED = "property_created"
    PROPERTY_DELETED = "property_deleted"
    USER_CREATED = "user_created"
    USER_DELETED = "user_deleted"
    ROLE_PERMISSIONS_UPDATED = "role_permissions_updated"
    SYSTEM_PERMISSIONS_UPDATED = "system_permissions_updated"


@dataclass(slots=True)
class InvalidationContext:
    reason: str
    user_id: str | None = None
    property_id: str | None = None
    role: str | None = None
    affected_users: list[str] = field(default_factory=list)
    triggered_by: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


LOW_KEY_COUNT = 100
HIGH_USER_PERMISSION_KEYS = 10_000


class CacheInvalidationService:
    """按事件类型清理权限缓存。"""

    def __init__(
        self,
        cache: PermissionCache,
        store: PermissionStore,
        engine: InheritanceEngine | None = None,
    ) -> None:
        self.cache = cache
        self.store = store
        self.engine = engine

    async def invalidate(self, event: InvalidationEvent | str, context: InvalidationContext) -> bool:
        """执行一次失效，成功返回 True。失败只记录日志。"""

        try:
            event = InvalidationEvent(event)
        except ValueError:
            logger.warning("未知的缓存失效事件: %s", event)
            return False

        logger.info("缓存失效: event=%s user=%s property=%s", event.value, context.user_id, context.property_id)
        try:
            await self._dispatch(event, context)
        except InvalidationError:
            logger.exception("缓存失效失败: event=%s", event.value)
            return False

        await self._log_invalidation(event, context)
        return True

    async def _dispatch(self, event: InvalidationEvent, context: InvalidationContext) -> None:
        try:
            await self._apply_event(event, context)
        except (CacheError, StoreError) as exc:
            raise InvalidationError(f"{event.value}: {exc}") from exc

    async def _apply_event(self, event: InvalidationEvent, context: InvalidationContext) -> None:
        if event is InvalidationEvent.USER_ROLE_CHANGED:
            if not context.user_id:
                return
            await self.cache.invalidate_user(context.user_id)
            if context.role:
                await self.cache.invalidate_role(context.role)

        elif event is InvalidationEvent.USER_PERMISSIONS_CHANGED:
            if context.user_id:
                await self.cache.invalidate_user(context.user_id)

        elif event in (InvalidationEvent.PROPERTY_ACCESS_GRANTED, InvalidationEvent.PROPERTY_ACCESS_REVOKED):
            if context.property_id:
                await self.cache.invalidate_property(context.property_id)
            if context.user_id:
                await self.cache.invalidate_user(context.user_id)
            await self._invalidate_users(context.affected_users)

        elif event in (InvalidationEvent.PROPERTY_CREATED, InvalidationEvent.PROPERTY_DELETED):
            if context.property_id:
                await self.cache.invalidate_property(context.property_id)
            await self._invalidate_users(context.affected_users)

        elif event in (InvalidationEvent.USER_CREATED, InvalidationEvent.USER_DELETED):
            if context.user_id:
                await self.cache.invalidate_user(context.user_id)

        elif event is InvalidationEvent.ROLE_PERMISSIONS_UPDATED:
            if not context.role:
                return
            await self.cache.invalidate_role(context.role)
            await self._invalidate_users(await self.store.list_user_ids_by_role(context.role))

        elif event is InvalidationEvent.SYSTEM_PERMISSIONS_UPDATED:
            await self.cache.clear_all()

    async def _invalidate_users(self, user_ids: Iterable[str]) -> None:
        for user_id in user_ids:
            await self.cache.invalidate_user(user_id)

    async def _log_invalidation(self, event: InvalidationEvent, context: InvalidationContext) -> None:
        try:
            await append_audit_entry(
                self.store,
                AuditLogRecord(
                    user_id=context.triggered_by or context.user_id,
                    property_id=context.property_id,
                    action="CACHE_INVALIDATION",
                    resource="cache",
                    resource_id=event.value,
                    details={
                        "event": event.value,
                        "context": context.to_dict(),
                        "timestamp": utc_now().isoformat(),
                    },
                ),
            )
        except AuditLogError:
            logger.warning("记录缓存失效审计日志失败: event=%s", event.value, exc_info=True)

    async def smart_invalidate(
        self,
        resource_type: str,
        resource_id: str,
        change_type: str,
        changes: dict[str, Any] | None = None,
        *,
        triggered_by: str | None = None,
    ) -> None:
        """根据变更的资源类型推断失效事件。"""

        changes = changes or {}
        try:
            if resource_type == "user":
                await self._smart_user(resource_id, change_type, changes, triggered_by)

            elif resource_type == "property":
                if change_type == "create":
                    super_admins = await self.store.list_user_ids_by_role("super_admin")
                    await self.invalidate(
                        InvalidationEvent.PROPERTY_CREATED,
                        InvalidationContext(
                            reason="Property created",
                            property_id=resource_id,
                            affected_users=list(super_admins),
                            triggered_by=triggered_by,
                        ),
                    )
                elif change_type == "delete":
                    await self.invalidate(
                        InvalidationEvent.PROPERTY_DELETED,
                        InvalidationContext(
                            reason="Property deleted",
                            property_id=resource_id,
                            triggered_by=triggered_by,
                        ),
                    )

            elif resource_type == "property_access":
                event = (
                    InvalidationEvent.PROPERTY_ACCESS_REVOKED
                    if change_type == "delete"
                    else InvalidationEvent.PROPERTY_ACCESS_GRANTED
                )
                user_id = changes.get("user_id")
                property_id = changes.get("property_id") or resource_id or None
                await self.invalidate(
                    event,
                    InvalidationContext(
                        reason=f"Property access {change_type}d",
                        user_id=str(user_id) if user_id else None,
                        property_id=str(property_id) if property_id else None,
                        triggered_by=triggered_by,
                    ),
                )

            elif resource_type == "role":
                await self.invalidate(
                    InvalidationEvent.ROLE_PERMISSIONS_UPDATED,
                    InvalidationContext(reason="Role permissions updated", role=resource_id, triggered_by=triggered_by),
                )

            elif resource_type == "permission":
                await self.invalidate(
                    InvalidationEvent.SYSTEM_PERMISSIONS_UPDATED,
                    InvalidationContext(reason="System permissions updated", triggered_by=triggered_by),
                )

            else:
                logger.warning("smart_invalidate 不支持的资源类型: %s", resource_type)
        except Exception:
            logger.exception("smart_invalidate 失败: %s/%s", resource_type, resource_id)

    async def _smart_user(
        self,
        user_id: str,
        change_type: str,
        changes: dict[str, Any],
        triggered_by: str | None,
    ) -> None:
        if change_type == "create":
            await self.invalidate(
                InvalidationEvent.USER_CREATED,
                InvalidationContext(reason="User created", user_id=user_id, triggered_by=triggered_by),
            )
            return
        if change_type == "delete":
            await self.invalidate(
                InvalidationEvent.USER_DELETED,
                InvalidationContext(reason="User deleted", user_id=user_id, triggered_by=triggered_by),
            )
            return

        if changes.get("role"):
            await self.invalidate(
                InvalidationEvent.USER_ROLE_CHANGED,
                InvalidationContext(
                    reason="Role updated",
                    user_id=user_id,
                    role=str(changes["role"]),
                    triggered_by=triggered_by,
                ),
            )
        if "permissions" in changes or "is_active" in changes:
            await self.invalidate(
                InvalidationEvent.USER_PERMISSIONS_CHANGED,
                InvalidationContext(reason="Permissions updated", user_id=user_id, triggered_by=triggered_by),
            )

    async def on_user_update(self, user_id: str, old: dict[str, Any], new: dict[str, Any]) -> None:
        """用户更新钩子：仅角色与启用状态的变化会触发失效。"""

        changes: dict[str, Any] = {}
        if old.get("role") != new.get("role"):
            changes["role"] = new.get("role")
        if old.get("is_active") != new.get("is_active"):
            changes["is_active"] = new.get("is_active")
        if changes:
            await self.smart_invalidate("user", user_id, "update", changes)

    async def on_property_access_update(
        self,
        user_id: str,
        property_id: str,
        change_type: str,
        *,
        access_level: str | None = None,
    ) -> None:
        await self.smart_invalidate(
            "property_access",
            property_id,
            change_type,
            {"user_id": user_id, "property_id": property_id, "access_level": access_level},
        )

    async def on_property_update(self, property_id: str, change_type: str) -> None:
        await self.smart_invalidate("property", property_id, change_type)

    async def warm_cache(self, user_id: str, property_ids: list[str] | None = None) -> int:
        """预热用户的全局与各物业权限缓存，返回成功预热的作用域数量。"""

        if self.engine is None:
            logger.warning("未装配继承引擎，跳过缓存预热: user=%s", user_id)
            return 0

        try:
            accesses = await self.store.find_property_access(user_id)
            levels = {access.property_id: access.access_level for access in accesses}
            if property_ids is None:
                property_ids = sorted(levels)
            await self.cache.set_user_properties(user_id, list(levels))

            warmed = 0
            for property_id in [None, *property_ids]:
                await self.engine.compute(user_id, property_id)
                warmed += 1
                if property_id is not None:
                    await self.cache.set_property_access(
                        user_id,
                        property_id,
                        can_access=property_id in levels,
                        access_level=levels.get(property_id),
                    )
        except Exception:
            logger.exception("缓存预热失败: user=%s", user_id)
            return 0

        logger.info("缓存预热完成: user=%s scopes=%s", user_id, warmed)
        return warmed

    async def get_cache_health(self) -> dict[str, Any]:
        """缓存健康度：healthy / degraded / critical。"""

        try:
            stats = await self.cache.get_stats()
        except CacheError:
            logger.exception("读取缓存统计失败")
            return {
                "stats": {},
                "health": "critical",
                "recommendations": ["Cache system error - check connectivity"],
            }

        health = "healthy"
        recommendations: list[str] = []
        if stats["total_keys"] == 0:
            health = "critical"
            recommendations.append("Cache is empty - consider warming critical paths")
        elif stats["total_keys"] < LOW_KEY_COUNT:
            health = "degraded"
            recommendations.append("Cache hit ratio may be low - consider longer TTL values")

        if stats["user_permission_keys"] > HIGH_USER_PERMISSION_KEYS:
            recommendations.append("Consider implementing LRU eviction or reducing TTL")

        return {"stats": stats, "health": health, "recommendations": recommendations}
