"""合规策略引擎：按优先级评估动作、记录违规并执行对应的强制方式。"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import logging
from typing import Any, Callable
from uuid import uuid4

from app.config import COMPLIANCE_VIOLATION_RATE, EXCESSIVE_PERMISSION_THRESHOLD
from app.services.audit_log import append_audit_entry
from app.services.errors import AuditLogError, PolicyEvaluationError, StoreError, UserNotFound
from app.services.inheritance_engine import InheritanceEngine
from app.services.permission_store import (
    AuditLogRecord,
    ConditionSpec,
    PermissionStore,
    PolicySpec,
    RuleSpec,
    UserRecord,
    ViolationRecord,
    utc_now,
)
from app.services.remediation_registry import run_remediation_hooks

logger = logging.getLogger(__name__)

PRIORITY_RANK = {"critical": 0, "high": 1, "medium": 2, "low": 3}
ENFORCEMENTS = ("advisory", "blocking", "corrective")
POLICY_STATUSES = ("active", "draft", "disabled")
FAIL_MODES = ("open", "closed")
CONDITION_TYPES = ("user_role", "permission_count", "access_level", "time_based", "custom")
OPERATORS = ("equals", "not_equals", "greater_than", "less_than", "contains", "not_contains")
RULE_ACTIONS = ("block", "approve", "escalate", "log", "notify", "remediate")

VIOLATION_TYPES = {
    "access_control": "access_violation",
    "role_segregation": "privilege_escalation",
    "security_standards": "policy_breach",
}

ADMIN_ACTIONS = frozenset(
    {
        "create_property",
        "delete_property",
        "transfer_ownership",
        "create_user",
        "delete_user",
        "manage_roles",
        "grant_permissions",
        "revoke_permissions",
        "system_settings",
    }
)

DEFAULT_POLICIES: tuple[PolicySpec, ...] = (
    PolicySpec(
        id="default_excessive_permissions",
        name="Excessive Permissions Policy",
        description="Users should not have significantly more permissions than their role requires",
        type="access_control",
        rules=(
            RuleSpec(
                id="rule_1",
                condition=ConditionSpec(
                    type="permission_count",
                    operator="greater_than",
                    value=EXCESSIVE_PERMISSION_THRESHOLD,
                ),
                action_type="escalate",
                action_parameters={"reviewRequired": True},
                message="User has excessive permissions for their role",
            ),
        ),
        enforcement="advisory",
        priority="high",
        framework="custom",
    ),
    PolicySpec(
        id="default_admin_segregation",
        name="Administrative Duty Segregation",
        description="Administrative permissions should be properly segregated",
        type="role_segregation",
        rules=(
            RuleSpec(
                id="rule_2",
                condition=ConditionSpec(type="user_role", operator="not_equals", value="super_admin"),
                action_type="block",
                action_parameters={"adminPermissionRequired": True},
                message="Administrative action requires super admin role",
                requires_admin=True,
            ),
        ),
        enforcement="blocking",
        priority="critical",
        framework="sox",
    ),
)


def is_admin_action(action: str, context: dict[str, Any]) -> bool:
    """动作属于管理类：在 ADMIN_ACTIONS 中，或上下文显式标记 requires_admin。"""

    return action in ADMIN_ACTIONS or bool(context.get("requires_admin"))


def compare(actual: Any, operator: str, expected: Any) -> bool:
    if operator == "equals":
        return actual == expected
    if operator == "not_equals":
        return actual != expected
    if operator == "greater_than":
        return actual > expected
    if operator == "less_than":
        return actual < expected
    if operator == "contains":
        return str(expected) in str(actual)
    if operator == "not_contains":
        return str(expected) not in str(actual)
    return False


def violation_to_dict(violation: ViolationRecord) -> dict[str, Any]:
    return {
        "id": violation.id,
        "policy_id": violation.policy_id,
        "policy_name": violation.policy_name,
        "violation_type": violation.violation_type,
        "severity": violation.severity,
        "user_id": violation.user_id,
        "user_name": violation.user_name,
        "description": violation.description,
        "evidence": violation.evidence,
        "status": violation.status,
        "detected_at": violation.detected_at.isoformat(),
    }


def _rule_to_dict(rule: RuleSpec) -> dict[str, Any]:
    return {
        "id": rule.id,
        "condition": {
            "type": rule.condition.type,
            "operator": rule.condition.operator,
            "value": rule.condition.value,
            "field": rule.condition.field,
        },
        "action": {"type": rule.action_type, "parameters": dict(rule.action_parameters)},
        "message": rule.message,
        "requires_admin": rule.requires_admin,
    }


def _require_choice(value: Any, choices: tuple[str, ...], label: str) -> str:
    text = str(value or "").strip()
    if text not in choices:
        raise ValueError(f"{label} 不合法: {value!r}")
    return text


def policy_from_dict(data: dict[str, Any], *, created_by: str | None = None) -> PolicySpec:
    """把请求数据校验并转换为 PolicySpec，非法输入抛出 ValueError。"""

    name = str(data.get("name") or "").strip()
    if not name:
        raise ValueError("策略名称不能为空")
    policy_type = str(data.get("type") or "").strip()
    if not policy_type:
        raise ValueError("策略类型不能为空")

    raw_rules = data.get("rules") or []
    if not isinstance(raw_rules, list) or not raw_rules:
        raise ValueError("策略至少需要一条规则")

    rules: list[RuleSpec] = []
    for index, raw in enumerate(raw_rules, start=1):
        if not isinstance(raw, dict):
            raise ValueError("规则格式不合法")
        condition = raw.get("condition") or {}
        action = raw.get("action") or {}
        rules.append(
            RuleSpec(
                id=str(raw.get("id") or f"rule_{index}"),
                condition=ConditionSpec(
                    type=_require_choice(condition.get("type"), CONDITION_TYPES, "条件类型"),
                    operator=_require_choice(condition.get("operator"), OPERATORS, "条件运算符"),
                    value=condition.get("value"),
                    field=condition.get("field"),
                ),
                action_type=_require_choice(action.get("type") or "log", RULE_ACTIONS, "规则动作"),
                action_parameters=dict(action.get("parameters") or {}),
                message=raw.get("message"),
                requires_admin=bool(raw.get("requires_admin", False)),
            )
        )

    return PolicySpec(
        id=str(data.get("id") or f"policy_{uuid4().hex[:12]}"),
        name=name,
        description=str(data.get("description") or ""),
        type=policy_type,
        rules=tuple(rules),
        enforcement=_require_choice(data.get("enforcement"), ENFORCEMENTS, "强制方式"),  # type: ignore[arg-type]
        priority=_require_choice(data.get("priority"), tuple(PRIORITY_RANK), "优先级"),  # type: ignore[arg-type]
        status=_require_choice(data.get("status") or "active", POLICY_STATUSES, "策略状态"),  # type: ignore[arg-type]
        framework=str(data.get("framework") or "custom"),
        fail_mode=_require_choice(data.get("fail_mode") or "open", FAIL_MODES, "失败模式"),  # type: ignore[arg-type]
        created_by=created_by,
    )


@dataclass(slots=True)
class PolicyDecision:
    allowed: bool = True
    violations: list[ViolationRecord] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    blocked_policies: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "violations": [violation_to_dict(item) for item in self.violations],
            "warnings": list(self.warnings),
            "blocked_policies": list(self.blocked_policies),
        }


@dataclass(slots=True)
class ComplianceScanResult:
    scanned_users: int
    violations_found: int
    critical_issues: int
    recommendations: list[str]

    def to_dict(self) -> dict[str, Any]:
        return {
            "scanned_users": self.scanned_users,
            "violations_found": self.violations_found,
            "critical_issues": self.critical_issues,
            "recommendations": list(self.recommendations),
        }


class PolicyEngine:
    """合规策略评估。

    默认失败放行（allowed=True 并附带警告）；fail_mode="closed" 的策略在自身评估出错时拒绝。
    唯一向调用方抛出的异常是 UserNotFound。
    """

    def __init__(
        self,
        store: PermissionStore,
        engine: InheritanceEngine,
        *,
        clock: Callable[[], datetime] = utc_now,
        violation_rate: float = COMPLIANCE_VIOLATION_RATE,
    ) -> None:
        self.store = store
        self.engine = engine
        self.violation_rate = violation_rate
        self._clock = clock

    async def load_policies(self) -> list[PolicySpec]:
        """加载生效策略并按优先级排序；无生效策略时使用内置默认策略。"""

        try:
            policies = await self.store.list_active_policies()
        except StoreError:
            logger.warning("加载合规策略失败，使用默认策略", exc_info=True)
            policies = []

        active = [policy for policy in policies if policy.status == "active"]
        if not active:
            active = list(DEFAULT_POLICIES)
        return sorted(active, key=lambda policy: PRIORITY_RANK.get(policy.priority, len(PRIORITY_RANK)))

    async def evaluate_action(
        self,
        user_id: str,
        action: str,
        resource: str,
        context: dict[str, Any] | None = None,
    ) -> PolicyDecision:
        context = dict(context or {})
        try:
            user = await self.store.find_user_with_grants(user_id)
        except StoreError as exc:
            logger.exception("策略评估时读取用户失败: user=%s", user_id)
            return PolicyDecision(warnings=[f"Policy evaluation error: {exc}"])
        if user is None:
            raise UserNotFound(user_id)

        decision = PolicyDecision()
        try:
            policies = await self.load_policies()
            permission_counts: dict[str | None, int] = {}
            for policy in policies:
                try:
                    violation = await self._evaluate_policy(policy, user, action, resource, context, permission_counts)
                except UserNotFound:
                    raise
                except Exception as exc:
                    logger.exception("策略评估出错: policy=%s", policy.name)
                    decision.warnings.append(f"Policy evaluation error: {exc}")
                    if policy.fail_mode == "closed":
                        decision.allowed = False
                        decision.blocked_policies.append(policy.name)
                    continue

                if violation is None:
                    continue
                decision.violations.append(violation)
                if policy.enforcement == "blocking":
                    decision.allowed = False
                    decision.blocked_policies.append(policy.name)
                elif policy.enforcement == "advisory":
                    decision.warnings.append(violation.description)
                elif policy.enforcement == "corrective":
                    await run_remediation_hooks(policy, violation)
        except UserNotFound:
            raise
        except Exception as exc:
            logger.exception("策略评估失败，按放行处理: user=%s action=%s", user_id, action)
            return PolicyDecision(warnings=[f"Policy evaluation error: {exc}"])

        await self._append_audit(
            AuditLogRecord(
                user_id=user.id,
                property_id=context.get("property_id"),
                action="POLICY_EVALUATION",
                resource="compliance",
                resource_id=f"{action}:{resource}",
                details={
                    "action": action,
                    "resource": resource,
                    "allowed": decision.allowed,
                    "violation_count": len(decision.violations),
                    "warning_count": len(decision.warnings),
                    "blocked_policies": list(decision.blocked_policies),
                },
            )
        )
        return decision

    async def _evaluate_policy(
        self,
        policy: PolicySpec,
        user: UserRecord,
        action: str,
        resource: str,
        context: dict[str, Any],
        permission_counts: dict[str | None, int],
    ) -> ViolationRecord | None:
        """返回该策略第一条命中规则产生的违规，未命中返回 None。"""

        admin_action = is_admin_action(action, context)
        for rule in policy.rules:
            if rule.requires_admin and not admin_action:
                continue
            try:
                matched = await self._evaluate_rule(rule, user, context, permission_counts)
            except UserNotFound:
                raise
            except Exception as exc:
                raise PolicyEvaluationError(policy.name, str(exc)) from exc
            if not matched:
                continue

            violation = ViolationRecord(
                id=f"violation_{uuid4().hex[:12]}",
                policy_id=policy.id,
                policy_name=policy.name,
                violation_type=VIOLATION_TYPES.get(policy.type, "unauthorized_action"),
                severity=policy.priority,
                user_id=user.id,
                user_name=user.name or "Unknown",
                description=rule.message or f"Policy violation: {policy.name}",
                evidence={
                    "rule": _rule_to_dict(rule),
                    "user": {"id": user.id, "role": user.role},
                    "action": action,
                    "resource": resource,
                    "context": context,
                },
                detected_at=self._clock(),
            )
            try:
                await self.store.create_violation(violation)
            except Exception:
                logger.warning("保存合规违规记录失败: policy=%s user=%s", policy.name, user.id, exc_info=True)
            return violation
        return None

    async def _evaluate_rule(
        self,
        rule: RuleSpec,
        user: UserRecord,
        context: dict[str, Any],
        permission_counts: dict[str | None, int],
    ) -> bool:
        condition = rule.condition
        if condition.type == "user_role":
            return compare(user.role, condition.operator, condition.value)
        if condition.type == "permission_count":
            property_id = context.get("property_id")
            if property_id not in permission_counts:
                computed = await self.engine.compute(user.id, property_id)
                permission_counts[property_id] = len(computed.permissions)
            return compare(permission_counts[property_id], condition.operator, condition.value)
        if condition.type == "time_based":
            return compare(self._clock().hour, condition.operator, condition.value)
        # access_level / custom 暂未实现
        return False

    async def perform_compliance_scan(self) -> ComplianceScanResult:
        """对全部启用用户逐一评估生效策略，只追加违规与审计记录。"""

        logger.info("开始合规扫描")
        users = await self.store.list_active_users()
        policies = await self.load_policies()

        violations_found = 0
        critical_issues = 0
        permission_counts: dict[str, dict[str | None, int]] = {}
        for user in users:
            counts = permission_counts.setdefault(user.id, {})
            for policy in policies:
                try:
                    violation = await self._evaluate_policy(
                        policy, user, "compliance_scan", "user_permissions", {}, counts
                    )
                except Exception:
                    logger.exception("合规扫描中策略评估失败: policy=%s user=%s", policy.name, user.id)
                    continue
                if violation is None:
                    continue
                violations_found += 1
                if violation.severity == "critical":
                    critical_issues += 1

        recommendations: list[str] = []
        if critical_issues > 0:
            recommendations.append(f"Address {critical_issues} critical compliance issues immediately")
        if violations_found > len(users) * self.violation_rate:
            recommendations.append("Consider updating compliance policies - high violation rate detected")
        recommendations.append("Schedule regular compliance reviews")
        recommendations.append("Implement automated remediation for common violations")

        result = ComplianceScanResult(
            scanned_users=len(users),
            violations_found=violations_found,
            critical_issues=critical_issues,
            recommendations=recommendations,
        )
        await self._append_audit(
            AuditLogRecord(
                user_id=None,
                action="AUTOMATED_COMPLIANCE_SCAN",
                resource="compliance",
                resource_id=self._clock().isoformat(),
                details=result.to_dict(),
            )
        )
        logger.info("合规扫描完成: users=%s violations=%s", result.scanned_users, result.violations_found)
        return result

    async def get_compliance_dashboard(self) -> dict[str, Any]:
        active_violations = await self.store.count_violations(status="open")
        critical_violations = await self.store.count_violations(status="open", severity="critical")
        recent = await self.store.list_recent_violations(10)

        persisted = [policy for policy in await self._persisted_policies() if policy.status == "active"]

        users = await self.store.list_active_users()
        flagged = min(await self.store.count_users_with_open_violations(), len(users))
        overall_score = 100.0 if not users else round(100 * (len(users) - flagged) / len(users), 1)

        scans = await self.store.find_audit_logs("AUTOMATED_COMPLIANCE_SCAN", limit=1)
        last_assessment = scans[0].timestamp.isoformat() if scans else None

        return {
            "overall_score": overall_score,
            "active_violations": active_violations,
            "critical_violations": critical_violations,
            "policies_count": len(persisted) or len(DEFAULT_POLICIES),
            "using_default_policies": not persisted,
            "last_assessment": last_assessment,
            "recent_violations": [violation_to_dict(item) for item in recent],
        }

    async def _persisted_policies(self) -> list[PolicySpec]:
        try:
            return await self.store.list_active_policies()
        except StoreError:
            logger.warning("读取合规策略失败", exc_info=True)
            return []

    async def create_policy(self, payload: dict[str, Any], created_by: str | None = None) -> PolicySpec:
        """校验并保存策略，非法输入抛出 ValueError。"""

        policy = await self.store.create_policy(policy_from_dict(payload, created_by=created_by))
        await self._append_audit(
            AuditLogRecord(
                user_id=created_by,
                action="COMPLIANCE_POLICY_CREATED",
                resource="compliance_policy",
                resource_id=policy.id,
                details={
                    "policy_name": policy.name,
                    "type": policy.type,
                    "framework": policy.framework,
                    "enforcement": policy.enforcement,
                    "fail_mode": policy.fail_mode,
                },
            )
        )
        return policy

    async def _append_audit(self, entry: AuditLogRecord) -> None:
        try:
            await append_audit_entry(self.store, entry)
        except AuditLogError:
            logger.warning("写入审计日志失败: action=%s", entry.action, exc_info=True)
