from app.platform.security.context import PLATFORM_OPERATOR_TYPES, ActorUser
from app.platform.security.tenancy import (
    apply_tenant_filter,
    canonical_tenant_id,
    ensure_tenant_access,
    is_platform_operator,
    require_tenant,
    resolve_write_tenant,
)

__all__ = [
    "ActorUser",
    "PLATFORM_OPERATOR_TYPES",
    "apply_tenant_filter",
    "canonical_tenant_id",
    "ensure_tenant_access",
    "is_platform_operator",
    "require_tenant",
    "resolve_write_tenant",
]
