from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from app.services.cache_client import MemoryCacheClient
from app.services.errors import StoreError
from app.services.permission_cache import PermissionCache
from app.services.permission_store import (
    AuditLogRecord,
    DelegationRecord,
    GrantRecord,
    PermissionRecord,
    PolicySpec,
    PropertyAccessRecord,
    PropertyRecord,
    TemplateRecord,
    UserRecord,
    ViolationRecord,
)

FIXED_NOW = datetime(2026, 3, 1, 9, 30, tzinfo=timezone.utc)


class FakeClock:
    """可控时钟，同时提供 datetime 与单调秒数两种读数。"""

    def __init__(self, now: datetime = FIXED_NOW) -> None:
        self.now = now
        self._start = now

    def __call__(self) -> datetime:
        return self.now

    def monotonic(self) -> float:
        return (self.now - self._start).total_seconds()

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FakePermissionStore:
    """内存版 PermissionStore，fail_on 中的方法名会抛出 StoreError。"""

    def __init__(self) -> None:
        self.users: dict[str, UserRecord] = {}
        self.permissions: dict[str, PermissionRecord] = {}
        self.grants: dict[tuple[str, str], GrantRecord] = {}
        self.properties: dict[str, PropertyRecord] = {}
        self.accesses: list[PropertyAccessRecord] = []
        self.delegations: list[DelegationRecord] = []
        self.policies: list[PolicySpec] = []
        self.violations: list[ViolationRecord] = []
        self.audit_logs: list[AuditLogRecord] = []
        self.templates: dict[str, TemplateRecord] = {}
        self.fail_on: set[str] = set()
        self.calls: list[str] = []

    def _enter(self, name: str) -> None:
        self.calls.append(name)
        if name in self.fail_on:
            raise StoreError(f"{name} unavailable")

    # 测试数据构造

    def add_user(self, user_id: str, role: str, *, name: str = "", is_active: bool = True) -> UserRecord:
        user = UserRecord(id=user_id, role=role, name=name or user_id, is_active=is_active)
        self.users[user_id] = user
        return user

    def add_permission(self, name: str) -> PermissionRecord:
        if name not in self.permissions:
            resource, _, action = name.rpartition(".")
            self.permissions[name] = PermissionRecord(
                id=f"perm-{len(self.permissions) + 1}",
                name=name,
                resource=resource,
                action=action,
            )
        return self.permissions[name]

    def add_grant(
        self,
        user_id: str,
        name: str,
        *,
        granted: bool = True,
        expires_at: datetime | None = None,
    ) -> GrantRecord:
        permission = self.add_permission(name)
        grant = GrantRecord(
            user_id=user_id,
            permission_id=permission.id,
            permission_name=name,
            granted=granted,
            expires_at=expires_at,
        )
        self.grants[(user_id, permission.id)] = grant
        return grant

    def add_property(
        self,
        property_id: str,
        name: str,
        *,
        parent_property_id: str | None = None,
        owner_id: str | None = None,
        manager_id: str | None = None,
    ) -> PropertyRecord:
        prop = PropertyRecord(
            id=property_id,
            name=name,
            parent_property_id=parent_property_id,
            owner_id=owner_id,
            manager_id=manager_id,
        )
        self.properties[property_id] = prop
        return prop

    def add_access(
        self,
        user_id: str,
        property_id: str,
        level: str,
        *,
        expires_at: datetime | None = None,
    ) -> PropertyAccessRecord:
        prop = self.properties.get(property_id)
        access = PropertyAccessRecord(
            user_id=user_id,
            property_id=property_id,
            access_level=level,
            property_name=prop.name if prop else "",
            expires_at=expires_at,
        )
        self.accesses.append(access)
        return access

    def add_delegation(
        self,
        delegation_id: str,
        by_user: str,
        to_user: str,
        permissions: list[str],
        *,
        by_name: str = "",
        property_id: str | None = None,
        property_name: str | None = None,
        expires_at: datetime | None = None,
        is_active: bool = True,
    ) -> DelegationRecord:
        delegation = DelegationRecord(
            id=delegation_id,
            delegated_by_user_id=by_user,
            delegated_to_user_id=to_user,
            permissions=tuple(permissions),
            delegated_by_name=by_name,
            property_id=property_id,
            property_name=property_name,
            expires_at=expires_at,
            is_active=is_active,
        )
        self.delegations.append(delegation)
        return delegation

    def actions(self) -> list[str]:
        return [entry.action for entry in self.audit_logs]

    # PermissionStore 协议

    async def find_user_with_grants(self, user_id: str) -> UserRecord | None:
        self._enter("find_user_with_grants")
        user = self.users.get(user_id)
        if user is None:
            return None
        grants = tuple(grant for (owner, _), grant in self.grants.items() if owner == user_id)
        return replace(user, grants=grants)

    async def find_permission_by_name(self, name: str) -> PermissionRecord | None:
        self._enter("find_permission_by_name")
        return self.permissions.get(name)

    async def find_property(self, property_id: str) -> PropertyRecord | None:
        self._enter("find_property")
        return self.properties.get(property_id)

    async def find_owned_properties(self, user_id: str, property_id: str | None = None) -> list[PropertyRecord]:
        self._enter("find_owned_properties")
        return [
            prop
            for prop in self.properties.values()
            if prop.owner_id == user_id and (property_id is None or prop.id == property_id)
        ]

    async def find_managed_properties(self, user_id: str, property_id: str | None = None) -> list[PropertyRecord]:
        self._enter("find_managed_properties")
        return [
            prop
            for prop in self.properties.values()
            if prop.manager_id == user_id and (property_id is None or prop.id == property_id)
        ]

    async def find_property_access(self, user_id: str, property_id: str | None = None) -> list[PropertyAccessRecord]:
        self._enter("find_property_access")
        return [
            access
            for access in self.accesses
            if access.user_id == user_id and (property_id is None or access.property_id == property_id)
        ]

    async def find_active_delegations(
        self,
        user_id: str,
        property_id: str | None = None,
        *,
        include_inactive: bool = False,
    ) -> list[DelegationRecord]:
        self._enter("find_active_delegations")
        return [
            item
            for item in self.delegations
            if item.delegated_to_user_id == user_id
            and (include_inactive or item.is_active)
            and (property_id is None or item.property_id == property_id)
        ]

    async def count_active_delegations_by_user(self) -> dict[str, int]:
        self._enter("count_active_delegations_by_user")
        counts: dict[str, int] = {}
        for item in self.delegations:
            if item.is_active:
                counts[item.delegated_to_user_id] = counts.get(item.delegated_to_user_id, 0) + 1
        return counts

    async def list_user_ids_by_role(self, role: str) -> list[str]:
        self._enter("list_user_ids_by_role")
        return [user.id for user in self.users.values() if user.role == role]

    async def list_active_users(self) -> list[UserRecord]:
        self._enter("list_active_users")
        result = []
        for user in self.users.values():
            if user.is_active:
                found = await self.find_user_with_grants(user.id)
                assert found is not None
                result.append(found)
        return result

    async def list_active_policies(self) -> list[PolicySpec]:
        self._enter("list_active_policies")
        return [policy for policy in self.policies if policy.status == "active"]

    async def create_policy(self, policy: PolicySpec) -> PolicySpec:
        self._enter("create_policy")
        self.policies.append(policy)
        return policy

    async def create_violation(self, violation: ViolationRecord) -> None:
        self._enter("create_violation")
        self.violations.append(violation)

    async def count_violations(self, *, status: str | None = None, severity: str | None = None) -> int:
        self._enter("count_violations")
        return sum(
            1
            for item in self.violations
            if (status is None or item.status == status) and (severity is None or item.severity == severity)
        )

    async def list_recent_violations(self, limit: int = 10) -> list[ViolationRecord]:
        self._enter("list_recent_violations")
        return sorted(self.violations, key=lambda item: item.detected_at, reverse=True)[:limit]

    async def count_users_with_open_violations(self) -> int:
        self._enter("count_users_with_open_violations")
        return len({item.user_id for item in self.violations if item.status == "open"})

    async def append_audit_log(self, entry: AuditLogRecord) -> None:
        self._enter("append_audit_log")
        self.audit_logs.append(entry)

    async def find_audit_logs(
        self,
        action: str,
        *,
        target_user_id: str | None = None,
        limit: int = 10,
    ) -> list[AuditLogRecord]:
        self._enter("find_audit_logs")
        entries = [
            entry
            for entry in self.audit_logs
            if entry.action == action
            and (target_user_id is None or entry.details.get("target_user_id") == target_user_id)
        ]
        return sorted(entries, key=lambda entry: entry.timestamp, reverse=True)[:limit]

    async def list_templates(self, *, active_only: bool = True) -> list[TemplateRecord]:
        self._enter("list_templates")
        return [item for item in self.templates.values() if item.is_active or not active_only]

    async def get_template(self, template_id: str) -> TemplateRecord | None:
        self._enter("get_template")
        return self.templates.get(template_id)

    async def save_template(self, template: TemplateRecord) -> TemplateRecord:
        self._enter("save_template")
        self.templates[template.id] = template
        return template

    async def find_grant(self, user_id: str, permission_id: str) -> GrantRecord | None:
        self._enter("find_grant")
        return self.grants.get((user_id, permission_id))

    async def upsert_grant(self, grant: GrantRecord) -> None:
        self._enter("upsert_grant")
        self.grants[(grant.user_id, grant.permission_id)] = grant


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> FakePermissionStore:
    return FakePermissionStore()


@pytest.fixture
def cache_client(clock: FakeClock) -> MemoryCacheClient:
    return MemoryCacheClient(clock=clock.monotonic)


@pytest.fixture
def permission_cache(cache_client: MemoryCacheClient, store: FakePermissionStore) -> PermissionCache:
    return PermissionCache(cache_client, store=store)
