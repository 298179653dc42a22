"""权限委托模型。"""

from __future__ import annotations

from datetime import datetime, timezone

from beanie import Document
from pymongo import IndexModel
from pydantic import Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class PermissionDelegation(Document):
    delegated_by_user_id: str
    delegated_by_name: str = ""
    delegated_to_user_id: str
    permissions: list[str] = Field(default_factory=list)
    property_id: str | None = None
    property_name: str | None = None
    reason: str = Field(default="", max_length=240)
    expires_at: datetime | None = None
    is_active: bool = True
    created_at: datetime = Field(default_factory=utc_now)

    class Settings:
        name = "permission_delegations"
        indexes = [
            IndexModel(
                [("delegated_to_user_id", 1), ("is_active", 1)],
                name="idx_delegations_to_active",
            ),
            IndexModel([("expires_at", 1)], name="idx_delegations_expires_at"),
        ]
