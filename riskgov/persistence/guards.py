from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from riskgov.core.config import get_settings
from riskgov.core.errors import TenantMismatchError


@dataclass
class TenantPredicateError(RuntimeError):
    # Raised when a store query would run without a tenant scope.
    message: str


def require_tenant_id(tenant_id: str | None) -> None:
    settings = get_settings()
    if not settings.authz_require_tenant_predicate:
        return
    if not tenant_id:
        raise TenantPredicateError("Tenant predicate required but tenant_id is missing")


def tenant_predicate(model: Any, tenant_id: str) -> Any:
    # Every tenant-owned query builds its WHERE clause through this helper.
    require_tenant_id(tenant_id)
    return model.tenant_id == tenant_id


def ensure_tenant_owns(entity: Any, tenant_id: str) -> None:
    # Loaded-by-primary-key rows must still belong to the calling tenant.
    require_tenant_id(tenant_id)
    if entity.tenant_id != tenant_id:
        raise TenantMismatchError(
            f"{type(entity).__name__} {getattr(entity, 'id', '?')} does not belong to tenant {tenant_id}"
        )
