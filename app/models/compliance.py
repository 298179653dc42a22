"""合规策略与违规记录模型。"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from beanie import Document
from pymongo import IndexModel
from pydantic import BaseModel, Field

Priority = Literal["low", "medium", "high", "critical"]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class PolicyCondition(BaseModel):
    """规则条件。"""

    type: str
    operator: str
    value: Any = None
    field: str | None = None


class PolicyRule(BaseModel):
    """策略规则。"""

    rule_id: str
    condition: PolicyCondition
    action_type: str = "log"
    action_parameters: dict[str, Any] = Field(default_factory=dict)
    message: str | None = None
    requires_admin: bool = False


class CompliancePolicy(Document):
    """合规策略，规则按顺序评估。"""

    key: str = Field(..., min_length=1, max_length=64)
    name: str = Field(..., min_length=1, max_length=128)
    description: str = Field(default="", max_length=500)
    type: str = Field(..., min_length=1, max_length=64)
    status: Literal["active", "draft", "disabled"] = "active"
    rules: list[PolicyRule] = Field(default_factory=list)
    enforcement: Literal["advisory", "blocking", "corrective"] = "advisory"
    priority: Priority = "medium"
    framework: str = Field(default="custom", max_length=32)
    fail_mode: Literal["open", "closed"] = "open"
    created_by: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    class Settings:
        name = "compliance_policies"
        indexes = [
            IndexModel([("key", 1)], name="uniq_compliance_policies_key", unique=True),
            IndexModel([("status", 1)], name="idx_compliance_policies_status"),
        ]


class ComplianceViolation(Document):
    key: str
    policy_id: str
    policy_name: str
    violation_type: str
    severity: Priority
    user_id: str
    user_name: str = ""
    description: str = ""
    evidence: dict[str, Any] = Field(default_factory=dict)
    status: Literal["open", "investigating", "resolved", "false_positive"] = "open"
    detected_at: datetime = Field(default_factory=utc_now)

    class Settings:
        name = "compliance_violations"
        indexes = [
            IndexModel([("status", 1), ("severity", 1)], name="idx_violations_status_severity"),
            IndexModel([("detected_at", -1)], name="idx_violations_detected_at"),
        ]
