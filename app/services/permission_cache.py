"""权限缓存：计算结果、原始权限列表与按用户/角色/物业的失效操作。"""

from __future__ import annotations

import json
import logging
from typing import Any

from app.config import PERMISSION_CACHE_TTL_SECONDS
from app.services.cache_client import CacheClient
from app.services.permission_store import PermissionStore, utc_now

logger = logging.getLogger(__name__)

COMPUTED_PREFIX = "perm:computed:"
USER_PERMISSIONS_PREFIX = "perm:user:"
ROLE_PERMISSIONS_PREFIX = "perm:role:"
PROPERTY_ACCESS_PREFIX = "access:prop:"
USER_PROPERTIES_PREFIX = "props:user:"

ALL_PREFIXES = (
    COMPUTED_PREFIX,
    USER_PERMISSIONS_PREFIX,
    ROLE_PERMISSIONS_PREFIX,
    PROPERTY_ACCESS_PREFIX,
    USER_PROPERTIES_PREFIX,
)

ROLE_PERMISSIONS_TTL_SECONDS = 60 * 60
PROPERTY_ACCESS_TTL_SECONDS = 10 * 60
USER_PROPERTIES_TTL_SECONDS = 10 * 60

GLOBAL_SCOPE = "global"


def scope_of(property_id: str | None) -> str:
    """未指定物业时使用全局作用域。"""

    return str(property_id) if property_id else GLOBAL_SCOPE


def computed_key(user_id: str, property_id: str | None) -> str:
    return f"{COMPUTED_PREFIX}{user_id}:{scope_of(property_id)}"


def user_permissions_key(user_id: str, property_id: str | None) -> str:
    return f"{USER_PERMISSIONS_PREFIX}{user_id}:{scope_of(property_id)}"


def role_permissions_key(role: str) -> str:
    return f"{ROLE_PERMISSIONS_PREFIX}{role}"


def property_access_key(user_id: str, property_id: str) -> str:
    return f"{PROPERTY_ACCESS_PREFIX}{user_id}:{property_id}"


def user_properties_key(user_id: str) -> str:
    return f"{USER_PROPERTIES_PREFIX}{user_id}"


class PermissionCache:
    """权限缓存服务。

    失效操作同步完成：调用返回后，受影响 key 的后续读取必然未命中。
    后端异常以 CacheError 形式抛出，由调用方决定降级方式。
    """

    def __init__(
        self,
        client: CacheClient,
        *,
        store: PermissionStore | None = None,
        ttl_seconds: int = PERMISSION_CACHE_TTL_SECONDS,
    ) -> None:
        self.client = client
        self.store = store
        self.ttl_seconds = ttl_seconds

    async def get(self, key: str) -> Any:
        raw = await self.client.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("缓存内容无法解析，按未命中处理: %s", key)
            return None

    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        payload = json.dumps(value, ensure_ascii=False, separators=(",", ":"), default=str)
        await self.client.set(key, payload, ttl_seconds or self.ttl_seconds)

    async def delete(self, key: str) -> None:
        await self.client.delete(key)

    async def delete_pattern(self, pattern: str) -> int:
        """删除匹配的全部 key；不含通配符时按前缀处理。"""

        if "*" not in pattern:
            pattern = f"{pattern}*"
        keys = await self.client.keys(pattern)
        for key in keys:
            await self.client.delete(key)
        return len(keys)

    async def invalidate_user(self, user_id: str) -> int:
        """删除该用户在所有物业作用域下的缓存。"""

        deleted = 0
        for pattern in (
            f"{COMPUTED_PREFIX}{user_id}:*",
            f"{USER_PERMISSIONS_PREFIX}{user_id}:*",
            f"{PROPERTY_ACCESS_PREFIX}{user_id}:*",
        ):
            deleted += await self.delete_pattern(pattern)
        await self.client.delete(user_properties_key(user_id))
        return deleted

    async def invalidate_role(self, role: str) -> int:
        """删除角色缓存以及当前持有该角色的全部用户缓存（需要查询存储）。"""

        await self.client.delete(role_permissions_key(role))
        if self.store is None:
            return 0

        deleted = 0
        for user_id in await self.store.list_user_ids_by_role(role):
            deleted += await self.invalidate_user(user_id)
        return deleted

    async def invalidate_property(self, property_id: str) -> int:
        deleted = 0
        for prefix in (COMPUTED_PREFIX, USER_PERMISSIONS_PREFIX, PROPERTY_ACCESS_PREFIX):
            deleted += await self.delete_pattern(f"{prefix}*:{property_id}")
        return deleted

    async def clear_all(self) -> int:
        deleted = 0
        for prefix in ALL_PREFIXES:
            deleted += await self.delete_pattern(f"{prefix}*")
        return deleted

    async def get_computed(self, user_id: str, property_id: str | None) -> dict[str, Any] | None:
        cached = await self.get(computed_key(user_id, property_id))
        return cached if isinstance(cached, dict) else None

    async def set_computed(self, user_id: str, property_id: str | None, payload: dict[str, Any]) -> None:
        await self.set(computed_key(user_id, property_id), payload, self.ttl_seconds)

    async def get_user_permissions(self, user_id: str, property_id: str | None) -> list[str] | None:
        cached = await self.get(user_permissions_key(user_id, property_id))
        if not isinstance(cached, dict):
            return None
        permissions = cached.get("permissions")
        return list(permissions) if isinstance(permissions, list) else None

    async def set_user_permissions(self, user_id: str, property_id: str | None, permissions: list[str]) -> None:
        await self.set(
            user_permissions_key(user_id, property_id),
            {
                "permissions": permissions,
                "cached_at": utc_now().isoformat(),
                "user_id": user_id,
                "property_id": property_id,
            },
            self.ttl_seconds,
        )

    async def get_role_permissions(self, role: str) -> list[str] | None:
        cached = await self.get(role_permissions_key(role))
        if not isinstance(cached, dict):
            return None
        permissions = cached.get("permissions")
        return list(permissions) if isinstance(permissions, list) else None

    async def set_role_permissions(self, role: str, permissions: list[str]) -> None:
        await self.set(
            role_permissions_key(role),
            {"permissions": permissions, "cached_at": utc_now().isoformat(), "role": role},
            ROLE_PERMISSIONS_TTL_SECONDS,
        )

    async def get_property_access(self, user_id: str, property_id: str) -> dict[str, Any] | None:
        cached = await self.get(property_access_key(user_id, property_id))
        return cached if isinstance(cached, dict) else None

    async def set_property_access(
        self,
        user_id: str,
        property_id: str,
        *,
        can_access: bool,
        access_level: str | None,
    ) -> None:
        await self.set(
            property_access_key(user_id, property_id),
            {
                "can_access": can_access,
                "access_level": access_level,
                "cached_at": utc_now().isoformat(),
            },
            PROPERTY_ACCESS_TTL_SECONDS,
        )

    async def get_user_properties(self, user_id: str) -> list[str] | None:
        cached = await self.get(user_properties_key(user_id))
        if not isinstance(cached, dict):
            return None
        property_ids = cached.get("property_ids")
        return [str(item) for item in property_ids] if isinstance(property_ids, list) else None

    async def set_user_properties(self, user_id: str, property_ids: list[str]) -> None:
        await self.set(
            user_properties_key(user_id),
            {"property_ids": property_ids, "cached_at": utc_now().isoformat()},
            USER_PROPERTIES_TTL_SECONDS,
        )

    async def get_stats(self) -> dict[str, int]:
        """统计各类缓存 key 数量。"""

        stats = {
            "computed_keys": len(await self.client.keys(f"{COMPUTED_PREFIX}*")),
            "user_permission_keys": len(await self.client.keys(f"{USER_PERMISSIONS_PREFIX}*")),
            "role_permission_keys": len(await self.client.keys(f"{ROLE_PERMISSIONS_PREFIX}*")),
            "property_access_keys": len(await self.client.keys(f"{PROPERTY_ACCESS_PREFIX}*")),
            "user_property_keys": len(await self.client.keys(f"{USER_PROPERTIES_PREFIX}*")),
        }
        stats["total_keys"] = sum(stats.values())
        return stats
