"""鉴权引擎异常定义。"""

from __future__ import annotations


class AuthorizationError(Exception):
    """鉴权引擎异常基类。"""


class UserNotFound(AuthorizationError):
    """无法解析当前操作用户，唯一需要向调用方抛出的错误。"""

    def __init__(self, user_id: str) -> None:
        super().__init__(f"User {user_id} not found")
        self.user_id = user_id


class StoreError(AuthorizationError):
    """权限存储访问失败。"""


class CacheError(AuthorizationError):
    """缓存后端访问失败。"""


class PolicyEvaluationError(AuthorizationError):
    """合规策略评估失败。"""

    def __init__(self, policy_name: str, message: str) -> None:
        super().__init__(f"{policy_name}: {message}")
        self.policy_name = policy_name


class InvalidationError(AuthorizationError):
    """缓存失效处理失败。"""


class AuditLogError(AuthorizationError):
    """审计日志写入失败。"""


class RoleHierarchyError(AuthorizationError):
    """角色层级定义非法（存在环或引用未知角色）。"""


class TemplateError(AuthorizationError):
    """权限模板不存在或输入非法。"""
