"""纠正型策略的整改钩子注册中心。"""

from __future__ import annotations

from dataclasses import dataclass
import inspect
import logging
from typing import Awaitable, Callable

from app.services.permission_store import PolicySpec, ViolationRecord

logger = logging.getLogger(__name__)

RemediationHandler = Callable[[PolicySpec, ViolationRecord], Awaitable[None] | None]


@dataclass(frozen=True, slots=True)
class RemediationHookDefinition:
    """整改钩子定义。policy_types 为空表示对所有策略类型生效。"""

    key: str
    name: str
    handler: RemediationHandler
    policy_types: tuple[str, ...] = ()

    def applies_to(self, policy: PolicySpec) -> bool:
        return not self.policy_types or policy.type in self.policy_types


_hooks: dict[str, RemediationHookDefinition] = {}


def _normalize_types(raw_types: list[str] | tuple[str, ...] | None) -> tuple[str, ...]:
    types: list[str] = []
    for item in raw_types or []:
        value = str(item).strip()
        if not value or value in types:
            continue
        types.append(value)
    return tuple(types)


def register_remediation_hook(
    *,
    key: str,
    name: str,
    handler: RemediationHandler,
    policy_types: list[str] | tuple[str, ...] | None = None,
) -> RemediationHookDefinition:
    """注册整改钩子。"""

    normalized_key = str(key).strip()
    normalized_name = str(name).strip()
    if not normalized_key:
        raise ValueError("整改钩子 key 不能为空")
    if not normalized_name:
        raise ValueError("整改钩子 name 不能为空")
    if normalized_key in _hooks:
        raise ValueError(f"整改钩子已注册: {normalized_key}")

    definition = RemediationHookDefinition(
        key=normalized_key,
        name=normalized_name,
        handler=handler,
        policy_types=_normalize_types(policy_types),
    )
    _hooks[definition.key] = definition
    return definition


def list_remediation_hooks() -> list[RemediationHookDefinition]:
    return list(_hooks.values())


async def run_remediation_hooks(policy: PolicySpec, violation: ViolationRecord) -> int:
    """执行适用于该策略的全部钩子，单个钩子失败只记录日志。返回成功执行的数量。"""

    executed = 0
    for hook in list(_hooks.values()):
        if not hook.applies_to(policy):
            continue
        try:
            result = hook.handler(policy, violation)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("整改钩子执行失败: hook=%s policy=%s", hook.key, policy.name)
            continue
        executed += 1
    return executed


def reset_registry() -> None:
    """重置注册中心（主要用于测试）。"""

    _hooks.clear()
