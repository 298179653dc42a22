"""鉴权服务门面：组装继承引擎、缓存、失效服务与策略引擎。"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from app.config import ENABLE_AUDIT_LOG_INHERITANCE, INHERITANCE_MAX_DEPTH, PERMISSION_CACHE_TTL_SECONDS
from app.services.cache_client import CacheClient
from app.services.cache_invalidation import CacheInvalidationService, InvalidationContext, InvalidationEvent
from app.services.inheritance_engine import AuditLogDelegationSource, ComputedPermissions, InheritanceEngine
from app.services.permission_cache import PermissionCache
from app.services.permission_store import PermissionStore
from app.services.policy_engine import ComplianceScanResult, PolicyDecision, PolicyEngine
from app.services.template_service import PermissionTemplateService


@dataclass(slots=True)
class AuthorizationService:
    store: PermissionStore
    cache: PermissionCache
    engine: InheritanceEngine
    invalidation: CacheInvalidationService
    policies: PolicyEngine
    templates: PermissionTemplateService

    @classmethod
    def build(
        cls,
        store: PermissionStore,
        cache_client: CacheClient,
        *,
        audit_log_inheritance: bool = ENABLE_AUDIT_LOG_INHERITANCE,
        ttl_seconds: int = PERMISSION_CACHE_TTL_SECONDS,
        max_depth: int = INHERITANCE_MAX_DEPTH,
    ) -> "AuthorizationService":
        cache = PermissionCache(cache_client, store=store, ttl_seconds=ttl_seconds)
        plugins = [AuditLogDelegationSource(store)] if audit_log_inheritance else []
        engine = InheritanceEngine(store, cache, plugins=plugins, max_depth=max_depth)
        invalidation = CacheInvalidationService(cache, store, engine)
        return cls(
            store=store,
            cache=cache,
            engine=engine,
            invalidation=invalidation,
            policies=PolicyEngine(store, engine),
            templates=PermissionTemplateService(store, invalidation),
        )

    async def compute_inherited_permissions(
        self,
        user_id: str,
        property_id: str | None = None,
        *,
        include_inactive: bool = False,
        max_depth: int | None = None,
        enable_caching: bool = True,
    ) -> ComputedPermissions:
        return await self.engine.compute(
            user_id,
            property_id,
            include_inactive=include_inactive,
            max_depth=max_depth,
            enable_caching=enable_caching,
        )

    async def has_permission(self, user_id: str, permission: str, property_id: str | None = None) -> bool:
        computed = await self.engine.compute(user_id, property_id)
        return computed.has(permission)

    async def evaluate_action(
        self,
        user_id: str,
        action: str,
        resource: str,
        context: dict[str, Any] | None = None,
    ) -> PolicyDecision:
        return await self.policies.evaluate_action(user_id, action, resource, context)

    async def invalidate(self, event: InvalidationEvent | str, context: InvalidationContext) -> bool:
        return await self.invalidation.invalidate(event, context)

    async def get_compliance_dashboard(self) -> dict[str, Any]:
        return await self.policies.get_compliance_dashboard()

    async def perform_compliance_scan(self) -> ComplianceScanResult:
        return await self.policies.perform_compliance_scan()
