"""物业与物业访问授权模型。"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal

from beanie import Document
from pymongo import IndexModel
from pydantic import Field

AccessLevel = Literal["read_only", "data_entry", "management", "full_control", "owner"]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Property(Document):
    """物业。parent_property_id 指向上级物业。"""

    name: str = Field(..., min_length=1, max_length=128)
    parent_property_id: str | None = None
    owner_id: str | None = None
    manager_id: str | None = None
    is_active: bool = True
    created_at: datetime = Field(default_factory=utc_now)

    class Settings:
        name = "properties"
        indexes = [
            IndexModel([("owner_id", 1)], name="idx_properties_owner"),
            IndexModel([("manager_id", 1)], name="idx_properties_manager"),
        ]


class PropertyAccess(Document):
    """用户在某物业上的访问级别。"""

    user_id: str
    property_id: str
    property_name: str = ""
    access_level: AccessLevel = "read_only"
    expires_at: datetime | None = None
    granted_by: str | None = None
    created_at: datetime = Field(default_factory=utc_now)

    class Settings:
        name = "property_access"
        indexes = [
            IndexModel(
                [("user_id", 1), ("property_id", 1)],
                name="uniq_property_access_user_property",
                unique=True,
            ),
        ]
