"""权限存储端口：引擎依赖的记录类型与存储协议。"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Protocol

AccessLevel = Literal["read_only", "data_entry", "management", "full_control", "owner"]
PolicyStatus = Literal["active", "draft", "disabled"]
Enforcement = Literal["advisory", "blocking", "corrective"]
Priority = Literal["low", "medium", "high", "critical"]
FailMode = Literal["open", "closed"]
ViolationStatus = Literal["open", "investigating", "resolved", "false_positive"]
TemplateType = Literal["role_template", "property_template", "department_template"]


def utc_now() -> datetime:
    """返回 UTC 当前时间。"""

    return datetime.now(timezone.utc)


def as_aware(value: datetime) -> datetime:
    """Mongo 读回的时间可能不带时区，统一按 UTC 处理。"""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def parse_timestamp(value: str) -> datetime:
    """解析 ISO 8601 时间，兼容结尾的 Z（前端 toISOString 的写法），无时区按 UTC 处理。"""

    text = value.strip()
    if text[-1:] in {"Z", "z"}:
        text = f"{text[:-1]}+00:00"
    return as_aware(datetime.fromisoformat(text))


def is_expired(expires_at: datetime | None, now: datetime) -> bool:
    """过期时间为空表示永久有效；恰好等于当前时刻视为已过期。"""

    if expires_at is None:
        return False
    return as_aware(expires_at) <= now


@dataclass(frozen=True, slots=True)
class GrantRecord:
    """用户直接授权。granted=False 表示显式拒绝（目前不做屏蔽处理）。"""

    user_id: str
    permission_id: str
    permission_name: str
    granted: bool = True
    expires_at: datetime | None = None
    granted_by: str | None = None


@dataclass(frozen=True, slots=True)
class UserRecord:
    id: str
    role: str
    name: str = ""
    is_active: bool = True
    department: str | None = None
    grants: tuple[GrantRecord, ...] = ()


@dataclass(frozen=True, slots=True)
class PermissionRecord:
    id: str
    name: str
    resource: str = ""
    action: str = ""
    description: str = ""


@dataclass(frozen=True, slots=True)
class PropertyRecord:
    id: str
    name: str
    parent_property_id: str | None = None
    owner_id: str | None = None
    manager_id: str | None = None


@dataclass(frozen=True, slots=True)
class PropertyAccessRecord:
    user_id: str
    property_id: str
    access_level: str
    property_name: str = ""
    expires_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class DelegationRecord:
    id: str
    delegated_by_user_id: str
    delegated_to_user_id: str
    permissions: tuple[str, ...]
    delegated_by_name: str = ""
    property_id: str | None = None
    property_name: str | None = None
    expires_at: datetime | None = None
    is_active: bool = True


@dataclass(frozen=True, slots=True)
class ConditionSpec:
    """规则条件。"""

    type: str
    operator: str
    value: Any = None
    field: str | None = None


@dataclass(frozen=True, slots=True)
class RuleSpec:
    """策略规则：条件 + 动作。requires_admin 为真时仅作用于管理类操作。"""

    id: str
    condition: ConditionSpec
    action_type: str = "log"
    action_parameters: dict[str, Any] = field(default_factory=dict)
    message: str | None = None
    requires_admin: bool = False


@dataclass(frozen=True, slots=True)
class PolicySpec:
    """合规策略。"""

    id: str
    name: str
    type: str
    rules: tuple[RuleSpec, ...]
    enforcement: Enforcement
    priority: Priority
    status: PolicyStatus = "active"
    description: str = ""
    framework: str = "custom"
    fail_mode: FailMode = "open"
    created_by: str | None = None


@dataclass(frozen=True, slots=True)
class ViolationRecord:
    id: str
    policy_id: str
    policy_name: str
    violation_type: str
    severity: Priority
    user_id: str
    description: str
    evidence: dict[str, Any]
    status: ViolationStatus = "open"
    detected_at: datetime = field(default_factory=utc_now)
    user_name: str = ""


@dataclass(frozen=True, slots=True)
class AuditLogRecord:
    user_id: str | None
    action: str
    resource: str
    resource_id: str = ""
    details: dict[str, Any] = field(default_factory=dict)
    property_id: str | None = None
    timestamp: datetime = field(default_factory=utc_now)


@dataclass(frozen=True, slots=True)
class TemplateRecord:
    id: str
    name: str
    type: TemplateType
    permissions: tuple[str, ...]
    description: str = ""
    conditions: dict[str, Any] = field(default_factory=dict)
    is_active: bool = True
    created_by: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)


class PermissionStore(Protocol):
    """引擎所需的持久化存储接口。"""

    async def find_user_with_grants(self, user_id: str) -> UserRecord | None: ...

    async def find_permission_by_name(self, name: str) -> PermissionRecord | None: ...

    async def find_property(self, property_id: str) -> PropertyRecord | None: ...

    async def find_owned_properties(self, user_id: str, property_id: str | None = None) -> list[PropertyRecord]: ...

    async def find_managed_properties(self, user_id: str, property_id: str | None = None) -> list[PropertyRecord]: ...

    async def find_property_access(
        self, user_id: str, property_id: str | None = None
    ) -> list[PropertyAccessRecord]: ...

    async def find_active_delegations(
        self,
        user_id: str,
        property_id: str | None = None,
        *,
        include_inactive: bool = False,
    ) -> list[DelegationRecord]: ...

    async def count_active_delegations_by_user(self) -> dict[str, int]: ...

    async def list_user_ids_by_role(self, role: str) -> list[str]: ...

    async def list_active_users(self) -> list[UserRecord]: ...

    async def list_active_policies(self) -> list[PolicySpec]: ...

    async def create_policy(self, policy: PolicySpec) -> PolicySpec: ...

    async def create_violation(self, violation: ViolationRecord) -> None: ...

    async def count_violations(self, *, status: str | None = None, severity: str | None = None) -> int: ...

    async def list_recent_violations(self, limit: int = 10) -> list[ViolationRecord]: ...

    async def count_users_with_open_violations(self) -> int: ...

    async def append_audit_log(self, entry: AuditLogRecord) -> None: ...

    async def find_audit_logs(
        self,
        action: str,
        *,
        target_user_id: str | None = None,
        limit: int = 10,
    ) -> list[AuditLogRecord]: ...

    async def list_templates(self, *, active_only: bool = True) -> list[TemplateRecord]: ...

    async def get_template(self, template_id: str) -> TemplateRecord | None: ...

    async def save_template(self, template: TemplateRecord) -> TemplateRecord: ...

    async def find_grant(self, user_id: str, permission_id: str) -> GrantRecord | None: ...

    async def upsert_grant(self, grant: GrantRecord) -> None: ...
