"""基于 Beanie 的权限存储实现。"""

from __future__ import annotations

from functools import wraps
import logging
from typing import Any, Awaitable, Callable, TypeVar

from beanie import PydanticObjectId
from bson.errors import InvalidId
from pymongo.errors import PyMongoError

from app.models import (
    AuditLog,
    CompliancePolicy,
    ComplianceViolation,
    Permission,
    PermissionDelegation,
    PermissionTemplate,
    Property,
    PropertyAccess,
    User,
    UserPermission,
)
from app.models.compliance import PolicyCondition, PolicyRule
from app.services.errors import StoreError
from app.services.permission_store import (
    AuditLogRecord,
    ConditionSpec,
    DelegationRecord,
    GrantRecord,
    PermissionRecord,
    PolicySpec,
    PropertyAccessRecord,
    PropertyRecord,
    RuleSpec,
    TemplateRecord,
    UserRecord,
    ViolationRecord,
    as_aware,
    utc_now,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _wrap_errors(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
    """把驱动异常统一转换为 StoreError。"""

    @wraps(func)
    async def wrapper(*args: Any, **kwargs: Any) -> T:
        try:
            return await func(*args, **kwargs)
        except PyMongoError as exc:
            raise StoreError(f"{func.__name__} 失败: {exc}") from exc

    return wrapper


def _object_id(value: str | None) -> PydanticObjectId | None:
    if not value:
        return None
    try:
        return PydanticObjectId(value)
    except (InvalidId, TypeError):
        return None


def _not_expired_filter() -> dict[str, Any]:
    return {"$or": [{"expires_at": None}, {"expires_at": {"$gt": utc_now()}}]}


def _grant_record(item: UserPermission) -> GrantRecord:
    return GrantRecord(
        user_id=item.user_id,
        permission_id=item.permission_id,
        permission_name=item.permission_name,
        granted=item.granted,
        expires_at=as_aware(item.expires_at) if item.expires_at else None,
        granted_by=item.granted_by,
    )


def _user_record(user: User, grants: list[UserPermission] | None = None) -> UserRecord:
    return UserRecord(
        id=str(user.id),
        role=user.role,
        name=user.name,
        is_active=user.is_active,
        department=user.department,
        grants=tuple(_grant_record(item) for item in grants or []),
    )


def _property_record(prop: Property) -> PropertyRecord:
    return PropertyRecord(
        id=str(prop.id),
        name=prop.name,
        parent_property_id=prop.parent_property_id,
        owner_id=prop.owner_id,
        manager_id=prop.manager_id,
    )


def _policy_spec(doc: CompliancePolicy) -> PolicySpec:
    return PolicySpec(
        id=doc.key,
        name=doc.name,
        description=doc.description,
        type=doc.type,
        status=doc.status,
        rules=tuple(
            RuleSpec(
                id=rule.rule_id,
                condition=ConditionSpec(
                    type=rule.condition.type,
                    operator=rule.condition.operator,
                    value=rule.condition.value,
                    field=rule.condition.field,
                ),
                action_type=rule.action_type,
                action_parameters=dict(rule.action_parameters),
                message=rule.message,
                requires_admin=rule.requires_admin,
            )
            for rule in doc.rules
        ),
        enforcement=doc.enforcement,
        priority=doc.priority,
        framework=doc.framework,
        fail_mode=doc.fail_mode,
        created_by=doc.created_by,
    )


def _violation_record(doc: ComplianceViolation) -> ViolationRecord:
    return ViolationRecord(
        id=doc.key,
        policy_id=doc.policy_id,
        policy_name=doc.policy_name,
        violation_type=doc.violation_type,
        severity=doc.severity,
        user_id=doc.user_id,
        user_name=doc.user_name,
        description=doc.description,
        evidence=dict(doc.evidence),
        status=doc.status,
        detected_at=as_aware(doc.detected_at),
    )


def _template_record(doc: PermissionTemplate) -> TemplateRecord:
    return TemplateRecord(
        id=doc.key,
        name=doc.name,
        type=doc.type,
        permissions=tuple(doc.permissions),
        description=doc.description,
        conditions=dict(doc.conditions),
        is_active=doc.is_active,
        created_by=doc.created_by,
        created_at=as_aware(doc.created_at),
        updated_at=as_aware(doc.updated_at),
    )


class MongoPermissionStore:
    """PermissionStore 的 Mongo 实现，要求 init_db 已完成。"""

    @_wrap_errors
    async def find_user_with_grants(self, user_id: str) -> UserRecord | None:
        object_id = _object_id(user_id)
        if object_id is None:
            return None
        user = await User.get(object_id)
        if user is None:
            return None
        grants = await UserPermission.find({"user_id": str(user.id)}).to_list()
        return _user_record(user, grants)

    @_wrap_errors
    async def find_permission_by_name(self, name: str) -> PermissionRecord | None:
        item = await Permission.find_one({"name": name})
        if item is None:
            return None
        return PermissionRecord(
            id=str(item.id),
            name=item.name,
            resource=item.resource,
            action=item.action,
            description=item.description,
        )

    @_wrap_errors
    async def find_property(self, property_id: str) -> PropertyRecord | None:
        object_id = _object_id(property_id)
        if object_id is None:
            return None
        prop = await Property.get(object_id)
        return _property_record(prop) if prop is not None else None

    async def _find_properties(self, field: str, user_id: str, property_id: str | None) -> list[PropertyRecord]:
        query: dict[str, Any] = {field: user_id, "is_active": True}
        if property_id:
            object_id = _object_id(property_id)
            if object_id is None:
                return []
            query["_id"] = object_id
        items = await Property.find(query).to_list()
        return [_property_record(item) for item in items]

    @_wrap_errors
    async def find_owned_properties(self, user_id: str, property_id: str | None = None) -> list[PropertyRecord]:
        return await self._find_properties("owner_id", user_id, property_id)

    @_wrap_errors
    async def find_managed_properties(self, user_id: str, property_id: str | None = None) -> list[PropertyRecord]:
        return await self._find_properties("manager_id", user_id, property_id)

    @_wrap_errors
    async def find_property_access(self, user_id: str, property_id: str | None = None) -> list[PropertyAccessRecord]:
        query: dict[str, Any] = {"user_id": user_id}
        if property_id:
            query["property_id"] = property_id
        items = await PropertyAccess.find(query).to_list()
        return [
            PropertyAccessRecord(
                user_id=item.user_id,
                property_id=item.property_id,
                access_level=item.access_level,
                property_name=item.property_name,
                expires_at=as_aware(item.expires_at) if item.expires_at else None,
            )
            for item in items
        ]

    @_wrap_errors
    async def find_active_delegations(
        self,
        user_id: str,
        property_id: str | None = None,
        *,
        include_inactive: bool = False,
    ) -> list[DelegationRecord]:
        query: dict[str, Any] = {"delegated_to_user_id": user_id, **_not_expired_filter()}
        if not include_inactive:
            query["is_active"] = True
        if property_id:
            query["property_id"] = property_id
        items = await PermissionDelegation.find(query).to_list()
        return [
            DelegationRecord(
                id=str(item.id),
                delegated_by_user_id=item.delegated_by_user_id,
                delegated_to_user_id=item.delegated_to_user_id,
                permissions=tuple(item.permissions),
                delegated_by_name=item.delegated_by_name,
                property_id=item.property_id,
                property_name=item.property_name,
                expires_at=as_aware(item.expires_at) if item.expires_at else None,
                is_active=item.is_active,
            )
            for item in items
        ]

    @_wrap_errors
    async def count_active_delegations_by_user(self) -> dict[str, int]:
        pipeline = [
            {"$match": {"is_active": True, **_not_expired_filter()}},
            {"$group": {"_id": "$delegated_to_user_id", "count": {"$sum": 1}}},
        ]
        rows = await PermissionDelegation.aggregate(pipeline).to_list()
        return {str(row["_id"]): int(row["count"]) for row in rows}

    @_wrap_errors
    async def list_user_ids_by_role(self, role: str) -> list[str]:
        users = await User.find({"role": role}).to_list()
        return [str(user.id) for user in users]

    @_wrap_errors
    async def list_active_users(self) -> list[UserRecord]:
        users = await User.find({"is_active": True}).to_list()
        if not users:
            return []
        user_ids = [str(user.id) for user in users]
        grants = await UserPermission.find({"user_id": {"$in": user_ids}}).to_list()
        by_user: dict[str, list[UserPermission]] = {}
        for grant in grants:
            by_user.setdefault(grant.user_id, []).append(grant)
        return [_user_record(user, by_user.get(str(user.id))) for user in users]

    @_wrap_errors
    async def list_active_policies(self) -> list[PolicySpec]:
        items = await CompliancePolicy.find({"status": "active"}).to_list()
        return [_policy_spec(item) for item in items]

    @_wrap_errors
    async def create_policy(self, policy: PolicySpec) -> PolicySpec:
        doc = CompliancePolicy(
            key=policy.id,
            name=policy.name,
            description=policy.description,
            type=policy.type,
            status=policy.status,
            rules=[
                PolicyRule(
                    rule_id=rule.id,
                    condition=PolicyCondition(
                        type=rule.condition.type,
                        operator=rule.condition.operator,
                        value=rule.condition.value,
                        field=rule.condition.field,
                    ),
                    action_type=rule.action_type,
                    action_parameters=dict(rule.action_parameters),
                    message=rule.message,
                    requires_admin=rule.requires_admin,
                )
                for rule in policy.rules
            ],
            enforcement=policy.enforcement,
            priority=policy.priority,
            framework=policy.framework,
            fail_mode=policy.fail_mode,
            created_by=policy.created_by,
        )
        await doc.insert()
        return _policy_spec(doc)

    @_wrap_errors
    async def create_violation(self, violation: ViolationRecord) -> None:
        await ComplianceViolation(
            key=violation.id,
            policy_id=violation.policy_id,
            policy_name=violation.policy_name,
            violation_type=violation.violation_type,
            severity=violation.severity,
            user_id=violation.user_id,
            user_name=violation.user_name,
            description=violation.description,
            evidence=violation.evidence,
            status=violation.status,
            detected_at=violation.detected_at,
        ).insert()

    @_wrap_errors
    async def count_violations(self, *, status: str | None = None, severity: str | None = None) -> int:
        query: dict[str, Any] = {}
        if status:
            query["status"] = status
        if severity:
            query["severity"] = severity
        return await ComplianceViolation.find(query).count()

    @_wrap_errors
    async def list_recent_violations(self, limit: int = 10) -> list[ViolationRecord]:
        items = await ComplianceViolation.find_all().sort("-detected_at").limit(limit).to_list()
        return [_violation_record(item) for item in items]

    @_wrap_errors
    async def count_users_with_open_violations(self) -> int:
        pipeline = [
            {"$match": {"status": "open"}},
            {"$group": {"_id": "$user_id"}},
            {"$count": "users"},
        ]
        rows = await ComplianceViolation.aggregate(pipeline).to_list()
        return int(rows[0]["users"]) if rows else 0

    @_wrap_errors
    async def append_audit_log(self, entry: AuditLogRecord) -> None:
        await AuditLog(
            user_id=entry.user_id,
            property_id=entry.property_id,
            action=entry.action,
            resource=entry.resource,
            resource_id=entry.resource_id,
            details=entry.details,
            timestamp=entry.timestamp,
        ).insert()

    @_wrap_errors
    async def find_audit_logs(
        self,
        action: str,
        *,
        target_user_id: str | None = None,
        limit: int = 10,
    ) -> list[AuditLogRecord]:
        query: dict[str, Any] = {"action": action}
        if target_user_id:
            query["details.target_user_id"] = target_user_id
        items = await AuditLog.find(query).sort("-timestamp").limit(limit).to_list()
        return [
            AuditLogRecord(
                user_id=item.user_id,
                property_id=item.property_id,
                action=item.action,
                resource=item.resource,
                resource_id=item.resource_id,
                details=dict(item.details),
                timestamp=as_aware(item.timestamp),
            )
            for item in items
        ]

    @_wrap_errors
    async def list_templates(self, *, active_only: bool = True) -> list[TemplateRecord]:
        query: dict[str, Any] = {"is_active": True} if active_only else {}
        items = await PermissionTemplate.find(query).sort("name").to_list()
        return [_template_record(item) for item in items]

    @_wrap_errors
    async def get_template(self, template_id: str) -> TemplateRecord | None:
        item = await PermissionTemplate.find_one({"key": template_id})
        return _template_record(item) if item is not None else None

    @_wrap_errors
    async def save_template(self, template: TemplateRecord) -> TemplateRecord:
        doc = await PermissionTemplate.find_one({"key": template.id})
        if doc is None:
            doc = PermissionTemplate(key=template.id, name=template.name, created_at=template.created_at)
        doc.name = template.name
        doc.description = template.description
        doc.type = template.type
        doc.permissions = list(template.permissions)
        doc.conditions = dict(template.conditions)
        doc.is_active = template.is_active
        doc.created_by = template.created_by
        doc.updated_at = template.updated_at
        await doc.save()
        return _template_record(doc)

    @_wrap_errors
    async def find_grant(self, user_id: str, permission_id: str) -> GrantRecord | None:
        item = await UserPermission.find_one({"user_id": user_id, "permission_id": permission_id})
        return _grant_record(item) if item is not None else None

    @_wrap_errors
    async def upsert_grant(self, grant: GrantRecord) -> None:
        item = await UserPermission.find_one({"user_id": grant.user_id, "permission_id": grant.permission_id})
        if item is None:
            item = UserPermission(
                user_id=grant.user_id,
                permission_id=grant.permission_id,
                permission_name=grant.permission_name,
            )
        item.permission_name = grant.permission_name
        item.granted = grant.granted
        item.expires_at = grant.expires_at
        item.granted_by = grant.granted_by
        item.updated_at = utc_now()
        await item.save()
