"""角色层级与角色基础权限。

角色层级只由 ``ROLE_ORDER`` 一处定义（权限从高到低），每个角色的祖先角色通过切片推导，
避免手工维护的逐角色祖先表出现不一致。
"""

from __future__ import annotations

from collections import deque
from typing import Iterator, Mapping, Sequence

from app.services.errors import RoleHierarchyError

ROLE_ORDER: tuple[str, ...] = (
    "super_admin",
    "property_admin",
    "property_manager",
    "outlet_manager",
    "supervisor",
    "staff",
    "viewer",
    "readonly",
)

RoleGraph = Mapping[str, Sequence[str]]

_READONLY = frozenset(
    {
        "financial.daily_summary.read",
        "financial.food_costs.read",
        "financial.beverage_costs.read",
        "reports.basic.read",
        "outlets.read",
        "categories.read",
        "dashboard.view",
    }
)

_VIEWER = _READONLY | {
    "dashboard.analytics.view",
}

_STAFF = _VIEWER | {
    "financial.daily_summary.create",
    "financial.food_costs.create",
    "financial.beverage_costs.create",
    "cost_input.food.create",
    "cost_input.beverage.create",
}

_SUPERVISOR = _STAFF | {
    "categories.create",
    "categories.update",
}

_OUTLET_MANAGER = _SUPERVISOR | {
    "financial.daily_summary.update",
    "financial.food_costs.update",
    "financial.beverage_costs.update",
    "outlets.update",
    "reports.financial.read",
    "dashboard.kpi.view",
}

_PROPERTY_MANAGER = _OUTLET_MANAGER | {
    "users.read",
    "users.view_own",
    "properties.read",
    "properties.update",
    "properties.view_own",
    "outlets.create",
    "reports.export",
}

_PROPERTY_ADMIN = _PROPERTY_MANAGER | {
    "users.create",
    "users.update",
    "users.permissions.grant",
    "properties.access.grant",
    "outlets.delete",
    "categories.delete",
    "financial.approve",
    "reports.advanced.read",
    "cost_input.bulk.import",
}

_SUPER_ADMIN = _PROPERTY_ADMIN | {
    "system.admin.full_access",
    "system.logs.view",
    "system.settings.manage",
    "users.delete",
    "users.view_all",
    "users.roles.manage",
    "users.permissions.revoke",
    "properties.create",
    "properties.delete",
    "properties.view_all",
    "properties.transfer",
    "properties.access.revoke",
    "financial.daily_summary.delete",
    "financial.food_costs.delete",
    "financial.beverage_costs.delete",
    "reports.cross_property.read",
}

_ROLE_BASE_PERMISSIONS: dict[str, frozenset[str]] = {
    "super_admin": frozenset(_SUPER_ADMIN),
    "property_admin": frozenset(_PROPERTY_ADMIN),
    "property_manager": frozenset(_PROPERTY_MANAGER),
    "outlet_manager": frozenset(_OUTLET_MANAGER),
    "supervisor": frozenset(_SUPERVISOR),
    "staff": frozenset(_STAFF),
    "viewer": frozenset(_VIEWER),
    "readonly": _READONLY,
}


def is_known_role(role: str) -> bool:
    return role in _ROLE_BASE_PERMISSIONS


def base_permissions(role: str) -> frozenset[str]:
    """返回角色自身的基础权限，未知角色返回空集。"""

    return _ROLE_BASE_PERMISSIONS.get(role, frozenset())


def ancestors_of(role: str) -> tuple[str, ...]:
    """返回角色的全部祖先角色，由近及远。"""

    if role not in ROLE_ORDER:
        return ()
    index = ROLE_ORDER.index(role)
    return tuple(reversed(ROLE_ORDER[:index]))


def role_graph() -> dict[str, tuple[str, ...]]:
    """以邻接表形式导出层级：角色 -> 直接上级角色。"""

    graph: dict[str, tuple[str, ...]] = {}
    for index, role in enumerate(ROLE_ORDER):
        graph[role] = (ROLE_ORDER[index - 1],) if index > 0 else ()
    return graph


def validate_role_graph(graph: RoleGraph | None = None) -> list[str]:
    """拓扑排序校验层级无环，返回从最高角色开始的拓扑序。"""

    adjacency = dict(graph if graph is not None else role_graph())
    for role, parents in adjacency.items():
        for parent in parents:
            if parent not in adjacency:
                raise RoleHierarchyError(f"角色 {role} 引用了未知上级角色 {parent}")

    # 入度按 "上级 -> 下级" 方向统计
    in_degree = {role: len(parents) for role, parents in adjacency.items()}
    children: dict[str, list[str]] = {role: [] for role in adjacency}
    for role, parents in adjacency.items():
        for parent in parents:
            children[parent].append(role)

    queue = deque(role for role, degree in in_degree.items() if degree == 0)
    ordered: list[str] = []
    while queue:
        current = queue.popleft()
        ordered.append(current)
        for child in children[current]:
            in_degree[child] -= 1
            if in_degree[child] == 0:
                queue.append(child)

    if len(ordered) != len(adjacency):
        cyclic = sorted(role for role, degree in in_degree.items() if degree > 0)
        raise RoleHierarchyError(f"角色层级存在循环继承: {', '.join(cyclic)}")
    return ordered


def iter_ancestors(
    role: str,
    *,
    graph: RoleGraph | None = None,
    max_depth: int = 10,
    visited: set[str] | None = None,
) -> Iterator[tuple[str, int]]:
    """按层遍历祖先角色，产出 (角色, 深度)。

    visited 在整个遍历过程中传递，即使层级被扩展为带环的图也能终止。
    """

    adjacency = graph if graph is not None else role_graph()
    seen = visited if visited is not None else set()
    seen.add(role)

    queue: deque[tuple[str, int]] = deque([(role, 0)])
    while queue:
        current, depth = queue.popleft()
        if depth >= max_depth:
            continue
        for parent in adjacency.get(current, ()):
            if parent in seen:
                continue
            seen.add(parent)
            yield parent, depth + 1
            queue.append((parent, depth + 1))
