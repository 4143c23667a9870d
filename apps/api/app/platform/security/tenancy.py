from __future__ import annotations

import logging
import uuid
from typing import Any

from sqlalchemy.sql import Select

from app.core.errors import AccessDeniedError, TenantRequiredError, ValidationFailedError
from app.metrics import observe_tenant_access_denied
from app.platform.security.context import ActorUser


logger = logging.getLogger("app.security")


def canonical_tenant_id(value: Any) -> str | None:
    """Normalize a tenant reference to lower-case UUID text.

    Values that are not UUIDs fall back to their stripped, lower-cased string
    form so that comparisons never depend on the caller's representation.
    """

    if value is None:
        return None
    raw = str(value).strip()
    if not raw:
        return None
    try:
        return str(uuid.UUID(raw))
    except ValueError:
        return raw.lower()


def is_platform_operator(actor: ActorUser) -> bool:
    return actor.is_platform_operator


def require_tenant(actor: ActorUser) -> uuid.UUID:
    if actor.tenant_id is None:
        raise TenantRequiredError("This action requires tenant context")
    return actor.tenant_id


def ensure_tenant_access(actor: ActorUser, record_tenant_id: Any, *, resource: str = "record") -> None:
    """Allow platform operators everywhere and tenant actors only inside their tenant."""

    if is_platform_operator(actor):
        return

    actor_tenant = canonical_tenant_id(actor.tenant_id)
    if actor_tenant is None:
        raise TenantRequiredError("This action requires tenant context")

    if actor_tenant != canonical_tenant_id(record_tenant_id):
        observe_tenant_access_denied(resource)
        logger.warning(
            "tenant_access_denied",
            extra={
                "resource": resource,
                "actor_user_id": actor.user_id,
                "tenant_id": actor_tenant,
            },
        )
        raise AccessDeniedError("Access denied")


def resolve_write_tenant(actor: ActorUser, requested_tenant_id: uuid.UUID | None) -> uuid.UUID:
    """Pick the tenant a new record is written into."""

    if is_platform_operator(actor):
        if requested_tenant_id is None:
            raise ValidationFailedError("tenant_id is required")
        return requested_tenant_id

    tenant_id = require_tenant(actor)
    if requested_tenant_id is not None and canonical_tenant_id(requested_tenant_id) != canonical_tenant_id(tenant_id):
        observe_tenant_access_denied("tenant")
        raise AccessDeniedError("Access denied")
    return tenant_id


def apply_tenant_filter(
    query: Select[Any],
    model: Any,
    actor: ActorUser,
    requested_tenant_id: uuid.UUID | None = None,
) -> Select[Any]:
    """Scope a list query to the actor's tenant.

    Operators see every tenant unless they narrow the query with
    ``requested_tenant_id``.
    """

    if is_platform_operator(actor):
        if requested_tenant_id is not None:
            return query.where(model.tenant_id == requested_tenant_id)
        return query

    tenant_id = require_tenant(actor)
    return query.where(model.tenant_id == tenant_id)
