"""模型集合。"""

from .audit_log import AuditLog
from .compliance import CompliancePolicy, ComplianceViolation
from .delegation import PermissionDelegation
from .permission import Permission, UserPermission
from .property import Property, PropertyAccess
from .template import PermissionTemplate
from .user import User

__all__ = [
    "AuditLog",
    "CompliancePolicy",
    "ComplianceViolation",
    "Permission",
    "PermissionDelegation",
    "PermissionTemplate",
    "Property",
    "PropertyAccess",
    "User",
    "UserPermission",
]

DOCUMENT_MODELS = [
    User,
    Permission,
    UserPermission,
    Property,
    PropertyAccess,
    PermissionDelegation,
    CompliancePolicy,
    ComplianceViolation,
    AuditLog,
    PermissionTemplate,
]
