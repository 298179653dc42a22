"""审计日志模型。"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from beanie import Document
from pymongo import IndexModel
from pydantic import Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class AuditLog(Document):
    user_id: str | None = None
    property_id: str | None = None
    action: str = Field(..., min_length=1, max_length=64)
    resource: str = Field(default="", max_length=64)
    resource_id: str = Field(default="", max_length=128)
    details: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)

    class Settings:
        name = "audit_logs"
        indexes = [
            IndexModel([("action", 1), ("timestamp", -1)], name="idx_audit_logs_action_time"),
        ]
