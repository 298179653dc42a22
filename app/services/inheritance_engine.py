"""权限继承引擎。

按固定顺序合并多个权限来源并记录来源轨迹：
角色基础权限 -> 直接授权 -> 物业权限（含上级物业）-> 角色层级 -> 委托 -> 可选插件来源。
最终权限集去重排序，来源轨迹保留每一条贡献记录。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import logging
from typing import Any, Callable, Protocol, Sequence

from app.config import (
    AUDIT_LOG_INHERITANCE_LIMIT,
    INHERITANCE_MAX_DEPTH,
    MAX_ACTIVE_DELEGATIONS,
)
from app.services.access_levels import access_level_permissions
from app.services.errors import CacheError, RoleHierarchyError, UserNotFound
from app.services.permission_cache import PermissionCache
from app.services.permission_store import (
    PermissionStore,
    UserRecord,
    is_expired,
    parse_timestamp,
    utc_now,
)
from app.services.role_hierarchy import (
    RoleGraph,
    base_permissions,
    is_known_role,
    iter_ancestors,
    role_graph,
    validate_role_graph,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class InheritanceSource:
    """单个权限来源的贡献记录。"""

    source: str
    source_type: str
    source_id: str
    permissions: list[str]
    inheritance_rule: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "source_type": self.source_type,
            "source_id": self.source_id,
            "permissions": list(self.permissions),
            "inheritance_rule": self.inheritance_rule,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "InheritanceSource":
        return cls(
            source=str(data["source"]),
            source_type=str(data["source_type"]),
            source_id=str(data["source_id"]),
            permissions=[str(item) for item in data.get("permissions") or []],
            inheritance_rule=data.get("inheritance_rule"),
        )


@dataclass(slots=True)
class ComputedPermissions:
    """一次权限计算的结果。denied_permissions 仅供展示，不参与合并。"""

    user_id: str
    property_id: str | None
    effective_role: str
    computed_at: datetime
    permissions: list[str] = field(default_factory=list)
    inheritance_sources: list[InheritanceSource] = field(default_factory=list)
    denied_permissions: list[str] = field(default_factory=list)

    def add_source(self, source: InheritanceSource) -> None:
        self.inheritance_sources.append(source)
        self.permissions.extend(source.permissions)

    def has(self, permission: str) -> bool:
        return permission in self.permissions

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "property_id": self.property_id,
            "effective_role": self.effective_role,
            "computed_at": self.computed_at.isoformat(),
            "permissions": list(self.permissions),
            "inheritance_sources": [item.to_dict() for item in self.inheritance_sources],
            "denied_permissions": list(self.denied_permissions),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ComputedPermissions":
        return cls(
            user_id=str(data["user_id"]),
            property_id=data.get("property_id"),
            effective_role=str(data["effective_role"]),
            computed_at=parse_timestamp(str(data["computed_at"])),
            permissions=[str(item) for item in data.get("permissions") or []],
            inheritance_sources=[InheritanceSource.from_dict(item) for item in data.get("inheritance_sources") or []],
            denied_permissions=[str(item) for item in data.get("denied_permissions") or []],
        )


class InheritanceSourcePlugin(Protocol):
    """可插拔的附加权限来源。"""

    name: str

    async def contribute(
        self,
        user: UserRecord,
        property_id: str | None,
        now: datetime,
    ) -> list[InheritanceSource]: ...


class AuditLogDelegationSource:
    """从 PERMISSION_DELEGATED 审计日志推导的组织委托来源。

    历史兼容用途，仅在 ENABLE_AUDIT_LOG_INHERITANCE 打开时装配，优先使用正式的委托记录。
    """

    name = "audit_log_delegation"

    def __init__(self, store: PermissionStore, *, limit: int = AUDIT_LOG_INHERITANCE_LIMIT) -> None:
        self.store = store
        self.limit = limit

    async def contribute(
        self,
        user: UserRecord,
        property_id: str | None,
        now: datetime,
    ) -> list[InheritanceSource]:
        entries = await self.store.find_audit_logs(
            "PERMISSION_DELEGATED",
            target_user_id=user.id,
            limit=self.limit,
        )

        sources: list[InheritanceSource] = []
        for entry in entries:
            permissions = entry.details.get("permissions")
            if not isinstance(permissions, list) or not permissions:
                continue
            expires_raw = entry.details.get("expires_at")
            if expires_raw:
                try:
                    expires_at = parse_timestamp(str(expires_raw))
                except ValueError:
                    continue
                if is_expired(expires_at, now):
                    continue
            sources.append(
                InheritanceSource(
                    source=f"Delegated by User {entry.user_id}",
                    source_type="delegation",
                    source_id=str(entry.user_id),
                    permissions=[str(item) for item in permissions],
                    inheritance_rule="organizational_delegation",
                )
            )
        return sources


class InheritanceEngine:
    """计算用户在某物业（或全局）下的有效权限。"""

    def __init__(
        self,
        store: PermissionStore,
        cache: PermissionCache | None = None,
        *,
        plugins: Sequence[InheritanceSourcePlugin] = (),
        max_depth: int = INHERITANCE_MAX_DEPTH,
        graph: RoleGraph | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.cache = cache
        self.plugins = tuple(plugins)
        self.max_depth = max_depth
        self.graph = graph if graph is not None else role_graph()
        self._clock = clock

    async def compute(
        self,
        user_id: str,
        property_id: str | None = None,
        *,
        include_inactive: bool = False,
        max_depth: int | None = None,
        enable_caching: bool = True,
    ) -> ComputedPermissions:
        """计算继承权限。

        include_inactive 为预览模式：已停用（未过期）的委托也参与计算，结果不读写缓存。
        max_depth 与引擎默认深度不同时同样绕过缓存，缓存中只保存默认深度的结果。
        用户不存在时抛出 UserNotFound；可选来源失败时记录日志并跳过该来源。
        """

        depth_limit = max_depth if max_depth is not None else self.max_depth
        use_cache = (
            enable_caching
            and not include_inactive
            and depth_limit == self.max_depth
            and self.cache is not None
        )

        if use_cache:
            cached = await self._read_cache(user_id, property_id)
            if cached is not None:
                return cached

        user = await self.store.find_user_with_grants(user_id)
        if user is None:
            raise UserNotFound(user_id)

        now = self._clock()
        result = ComputedPermissions(
            user_id=user.id,
            property_id=property_id,
            effective_role=user.role,
            computed_at=now,
        )

        self._add_role_permissions(user, result)
        self._add_direct_grants(user, result, now)
        await self._add_property_permissions(user, property_id, result, now, depth_limit)
        self._add_role_hierarchy(user, result, depth_limit)
        await self._add_delegations(user, property_id, result, now, include_inactive)
        await self._add_plugin_sources(user, property_id, result, now)

        result.permissions = sorted(set(result.permissions))

        if use_cache:
            await self._write_cache(result)
        return result

    def _add_role_permissions(self, user: UserRecord, result: ComputedPermissions) -> None:
        if not is_known_role(user.role):
            logger.warning("未知角色，基础权限为空: user=%s role=%s", user.id, user.role)
        result.add_source(
            InheritanceSource(
                source=user.role,
                source_type="role",
                source_id=user.role,
                permissions=sorted(base_permissions(user.role)),
            )
        )

    def _add_direct_grants(self, user: UserRecord, result: ComputedPermissions, now: datetime) -> None:
        granted: list[str] = []
        denied: list[str] = []
        for grant in user.grants:
            if is_expired(grant.expires_at, now):
                continue
            if grant.granted:
                granted.append(grant.permission_name)
            else:
                denied.append(grant.permission_name)

        result.denied_permissions = sorted(set(denied))
        if granted:
            result.add_source(
                InheritanceSource(
                    source=f"User {user.id}",
                    source_type="user",
                    source_id=user.id,
                    permissions=granted,
                )
            )

    async def _add_property_permissions(
        self,
        user: UserRecord,
        property_id: str | None,
        result: ComputedPermissions,
        now: datetime,
        depth_limit: int,
    ) -> None:
        owner_permissions = sorted(access_level_permissions("owner"))
        for prop in await self.store.find_owned_properties(user.id, property_id):
            result.add_source(
                InheritanceSource(
                    source=f"Owner of {prop.name}",
                    source_type="property",
                    source_id=prop.id,
                    permissions=list(owner_permissions),
                )
            )

        manager_permissions = sorted(access_level_permissions("full_control"))
        for prop in await self.store.find_managed_properties(user.id, property_id):
            result.add_source(
                InheritanceSource(
                    source=f"Manager of {prop.name}",
                    source_type="property",
                    source_id=prop.id,
                    permissions=list(manager_permissions),
                )
            )

        for access in await self.store.find_property_access(user.id, property_id):
            if is_expired(access.expires_at, now):
                continue
            result.add_source(
                InheritanceSource(
                    source=f"{access.access_level} access to {access.property_name or access.property_id}",
                    source_type="property",
                    source_id=access.property_id,
                    permissions=sorted(access_level_permissions(access.access_level)),
                )
            )

        if property_id:
            await self._add_parent_property_permissions(user, property_id, result, now, depth_limit)

    async def _add_parent_property_permissions(
        self,
        user: UserRecord,
        property_id: str,
        result: ComputedPermissions,
        now: datetime,
        depth_limit: int,
    ) -> None:
        """沿上级物业链向上合并访问级别，最多 depth_limit 跳。"""

        visited = {property_id}
        current_id = property_id
        try:
            for _ in range(depth_limit):
                prop = await self.store.find_property(current_id)
                if prop is None or not prop.parent_property_id:
                    return
                parent_id = prop.parent_property_id
                if parent_id in visited:
                    logger.warning("物业层级存在循环: %s -> %s", current_id, parent_id)
                    return
                visited.add(parent_id)

                for access in await self.store.find_property_access(user.id, parent_id):
                    if is_expired(access.expires_at, now):
                        continue
                    result.add_source(
                        InheritanceSource(
                            source="Inherited from parent property",
                            source_type="property",
                            source_id=parent_id,
                            permissions=sorted(access_level_permissions(access.access_level)),
                            inheritance_rule="property_hierarchy",
                        )
                    )
                current_id = parent_id
        except Exception:
            logger.exception("上级物业权限计算失败，已跳过: user=%s property=%s", user.id, property_id)

    def _add_role_hierarchy(self, user: UserRecord, result: ComputedPermissions, depth_limit: int) -> None:
        visited: set[str] = set()
        for ancestor, _ in iter_ancestors(user.role, graph=self.graph, max_depth=depth_limit, visited=visited):
            result.add_source(
                InheritanceSource(
                    source=f"Inherited from {ancestor} role",
                    source_type="role",
                    source_id=ancestor,
                    permissions=sorted(base_permissions(ancestor)),
                    inheritance_rule="role_hierarchy",
                )
            )

    async def _add_delegations(
        self,
        user: UserRecord,
        property_id: str | None,
        result: ComputedPermissions,
        now: datetime,
        include_inactive: bool,
    ) -> None:
        try:
            delegations = await self.store.find_active_delegations(
                user.id,
                property_id,
                include_inactive=include_inactive,
            )
        except Exception:
            logger.exception("委托权限查询失败，已跳过: user=%s", user.id)
            return

        for delegation in delegations:
            if delegation.delegated_to_user_id != user.id:
                continue
            if not delegation.is_active and not include_inactive:
                continue
            if is_expired(delegation.expires_at, now):
                continue
            if property_id and delegation.property_id != property_id:
                continue

            delegator = delegation.delegated_by_name or f"User {delegation.delegated_by_user_id}"
            source_name = f"{delegator} for {delegation.property_name}" if delegation.property_name else delegator
            result.add_source(
                InheritanceSource(
                    source=f"Delegated by {source_name}",
                    source_type="delegation",
                    source_id=delegation.id,
                    permissions=list(delegation.permissions),
                    inheritance_rule="permission_delegation",
                )
            )

    async def _add_plugin_sources(
        self,
        user: UserRecord,
        property_id: str | None,
        result: ComputedPermissions,
        now: datetime,
    ) -> None:
        for plugin in self.plugins:
            try:
                sources = await plugin.contribute(user, property_id, now)
            except Exception:
                logger.exception("权限来源插件执行失败，已跳过: %s", plugin.name)
                continue
            for source in sources:
                result.add_source(source)

    async def _read_cache(self, user_id: str, property_id: str | None) -> ComputedPermissions | None:
        if self.cache is None:
            return None
        try:
            payload = await self.cache.get_computed(user_id, property_id)
        except CacheError:
            logger.warning("读取权限缓存失败，按未命中处理: user=%s", user_id, exc_info=True)
            return None
        if payload is None:
            return None

        try:
            cached = ComputedPermissions.from_dict(payload)
        except (KeyError, TypeError, ValueError):
            logger.warning("权限缓存内容非法，按未命中处理: user=%s", user_id)
            return None

        age = (self._clock() - cached.computed_at).total_seconds()
        if age < self.cache.ttl_seconds:
            return cached
        return None

    async def _write_cache(self, result: ComputedPermissions) -> None:
        if self.cache is None:
            return
        try:
            await self.cache.set_computed(result.user_id, result.property_id, result.to_dict())
            await self.cache.set_user_permissions(result.user_id, result.property_id, result.permissions)
        except CacheError:
            logger.warning("写入权限缓存失败: user=%s", result.user_id, exc_info=True)

    async def invalidate_inheritance_cache(self, user_id: str, property_id: str | None = None) -> None:
        """清除继承计算缓存；未指定物业时清除该用户全部作用域。"""

        if self.cache is None:
            return
        try:
            if property_id:
                await self.cache.delete(f"perm:computed:{user_id}:{property_id}")
                await self.cache.delete(f"perm:user:{user_id}:{property_id}")
            else:
                await self.cache.invalidate_user(user_id)
        except CacheError:
            logger.exception("清除继承缓存失败: user=%s", user_id)

    async def validate_inheritance_rules(self) -> dict[str, Any]:
        """校验角色层级与委托配置。"""

        issues: list[dict[str, str]] = []

        try:
            validate_role_graph(self.graph)
        except RoleHierarchyError as exc:
            issues.append(
                {
                    "type": "circular_inheritance",
                    "description": str(exc),
                    "severity": "critical",
                }
            )

        try:
            counts = await self.store.count_active_delegations_by_user()
        except Exception:
            logger.exception("校验委托规则失败")
            issues.append(
                {
                    "type": "invalid_reference",
                    "description": "Error occurred while validating inheritance rules",
                    "severity": "high",
                }
            )
        else:
            for user_id, count in sorted(counts.items()):
                if count > MAX_ACTIVE_DELEGATIONS:
                    issues.append(
                        {
                            "type": "conflicting_rules",
                            "description": (
                                f"User {user_id} has {count} active delegations, "
                                "which may cause performance issues"
                            ),
                            "severity": "medium",
                        }
                    )

        return {
            "valid": not any(issue["severity"] in {"critical", "high"} for issue in issues),
            "issues": issues,
        }
