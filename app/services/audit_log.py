"""审计日志写入。"""

from __future__ import annotations

from app.services.errors import AuditLogError
from app.services.permission_store import AuditLogRecord, PermissionStore


async def append_audit_entry(store: PermissionStore, entry: AuditLogRecord) -> None:
    """写入一条审计记录，任何存储异常统一转换为 AuditLogError。

    审计写入是尽力而为的，调用方捕获 AuditLogError 后只记日志，不影响主流程。
    """

    try:
        await store.append_audit_log(entry)
    except Exception as exc:
        raise AuditLogError(f"{entry.action}: {exc}") from exc
