"""权限与用户直接授权模型。"""

from __future__ import annotations

from datetime import datetime, timezone

from beanie import Document
from pymongo import IndexModel
from pydantic import Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Permission(Document):
    """权限定义，name 形如 ``<resource>.<action>`` 且全局唯一。"""

    name: str = Field(..., min_length=3, max_length=128)
    resource: str = Field(default="", max_length=64)
    action: str = Field(default="", max_length=32)
    description: str = Field(default="", max_length=240)
    created_at: datetime = Field(default_factory=utc_now)

    class Settings:
        name = "permissions"
        indexes = [
            IndexModel([("name", 1)], name="uniq_permissions_name", unique=True),
        ]


class UserPermission(Document):
    """用户直接授权。granted=False 表示显式拒绝。"""

    user_id: str
    permission_id: str
    permission_name: str
    granted: bool = True
    expires_at: datetime | None = None
    granted_by: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    class Settings:
        name = "user_permissions"
        indexes = [
            IndexModel(
                [("user_id", 1), ("permission_id", 1)],
                name="uniq_user_permissions_user_permission",
                unique=True,
            ),
        ]
