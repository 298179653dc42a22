"""用户模型。"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal

from beanie import Document
from pymongo import IndexModel
from pydantic import Field

UserRole = Literal[
    "super_admin",
    "property_admin",
    "property_manager",
    "outlet_manager",
    "supervisor",
    "staff",
    "viewer",
    "readonly",
]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class User(Document):
    """业务用户。角色决定基础权限与可继承的上级角色。"""

    name: str = Field(default="", max_length=64)
    email: str = Field(default="", max_length=128)
    role: UserRole = "staff"
    is_active: bool = True
    department: str | None = Field(default=None, max_length=64)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    class Settings:
        name = "users"
        indexes = [
            IndexModel([("role", 1)], name="idx_users_role"),
            IndexModel([("is_active", 1)], name="idx_users_is_active"),
        ]
