"""权限模板模型。"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from beanie import Document
from pymongo import IndexModel
from pydantic import Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class PermissionTemplate(Document):
    key: str = Field(..., min_length=1, max_length=64)
    name: str = Field(..., min_length=1, max_length=128)
    description: str = Field(default="", max_length=500)
    type: Literal["role_template", "property_template", "department_template"] = "role_template"
    permissions: list[str] = Field(default_factory=list)
    conditions: dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True
    created_by: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    class Settings:
        name = "permission_templates"
        indexes = [
            IndexModel([("key", 1)], name="uniq_permission_templates_key", unique=True),
            IndexModel([("is_active", 1), ("name", 1)], name="idx_permission_templates_active_name"),
        ]
