from app.platform.security import (
    ActorUser,
    apply_tenant_filter,
    ensure_tenant_access,
    resolve_write_tenant,
)

__all__ = [
    "ActorUser",
    "apply_tenant_filter",
    "ensure_tenant_access",
    "resolve_write_tenant",
]
