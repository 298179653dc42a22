"""物业访问级别与权限映射。"""

from __future__ import annotations

ACCESS_LEVEL_ORDER: tuple[str, ...] = (
    "read_only",
    "data_entry",
    "management",
    "full_control",
    "owner",
)

# 每一级只声明相对上一级新增的权限，包含关系由构建过程保证。
_LEVEL_INCREMENTS: dict[str, frozenset[str]] = {
    "read_only": frozenset(
        {
            "financial.daily_summary.read",
            "reports.basic.read",
            "outlets.read",
            "dashboard.view",
        }
    ),
    "data_entry": frozenset(
        {
            "financial.daily_summary.create",
            "financial.food_costs.read",
            "financial.food_costs.create",
            "financial.beverage_costs.read",
            "financial.beverage_costs.create",
        }
    ),
    "management": frozenset(
        {
            "financial.daily_summary.update",
            "financial.food_costs.update",
            "financial.beverage_costs.update",
            "reports.advanced.read",
            "outlets.update",
            "analytics.basic.read",
        }
    ),
    "full_control": frozenset(
        {
            "financial.daily_summary.delete",
            "financial.food_costs.delete",
            "financial.beverage_costs.delete",
            "reports.export",
            "outlets.create",
            "outlets.delete",
            "analytics.advanced.read",
            "users.property.read",
            "users.property.update",
        }
    ),
    "owner": frozenset(
        {
            "analytics.export",
            "users.property.create",
            "users.property.delete",
            "permissions.property.grant",
            "permissions.property.revoke",
        }
    ),
}


def _build_level_permissions() -> dict[str, frozenset[str]]:
    levels: dict[str, frozenset[str]] = {}
    accumulated: frozenset[str] = frozenset()
    for level in ACCESS_LEVEL_ORDER:
        accumulated = accumulated | _LEVEL_INCREMENTS[level]
        levels[level] = accumulated
    return levels


_ACCESS_LEVEL_PERMISSIONS = _build_level_permissions()


def is_access_level(level: str) -> bool:
    return level in _ACCESS_LEVEL_PERMISSIONS


def access_level_permissions(level: str) -> frozenset[str]:
    """返回访问级别对应的完整权限集，未知级别返回空集。"""

    return _ACCESS_LEVEL_PERMISSIONS.get(level, frozenset())


def has_required_access_level(user_level: str, required_level: str) -> bool:
    """判断用户级别是否不低于要求级别。"""

    if user_level not in ACCESS_LEVEL_ORDER or required_level not in ACCESS_LEVEL_ORDER:
        return False
    return ACCESS_LEVEL_ORDER.index(user_level) >= ACCESS_LEVEL_ORDER.index(required_level)
