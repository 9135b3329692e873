from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class TenantPredicateError(RuntimeError):
    # Surface tenant-scoped queries built without a tenant id.
    message: str


def require_tenant_id(tenant_id: str | None) -> str:
    # Tenant predicates are mandatory; an empty id must never widen a query.
    if not tenant_id or not str(tenant_id).strip():
        raise TenantPredicateError("Tenant predicate required but tenant_id is missing")
    return tenant_id


def tenant_predicate(model, tenant_id: str) -> object:
    # Build tenant predicates through a single helper to guarantee guard coverage.
    require_tenant_id(tenant_id)
    return model.tenant_id == tenant_id
