from __future__ import annotations

import asyncio
import uuid

import pytest
from jose import jwt
from prometheus_client import REGISTRY
from sqlalchemy import select
from starlette.requests import Request

from app.core.auth import get_current_user as get_auth_user
from app.core.config import get_settings
from app.core.errors import AccessDeniedError, TenantRequiredError, ValidationFailedError
from app.core.rbac import permission_name, require_permission
from app.crm.api import get_current_user as crm_get_current_user
from app.crm.models import CRMLead
from app.platform.security.context import ActorUser
from app.platform.security.tenancy import (
    apply_tenant_filter,
    canonical_tenant_id,
    ensure_tenant_access,
    resolve_write_tenant,
)


TENANT_A = uuid.UUID("6f1c0b52-8a5e-4c59-9d8e-0c6a1b2f3e4d")
TENANT_B = uuid.UUID("0b8e5f0e-3c1d-4b7a-8f6e-2d9c4a1b7e30")


def _denied_total(resource: str) -> float:
    return REGISTRY.get_sample_value("tenant_access_denied_total", {"resource": resource}) or 0.0


def test_canonical_tenant_id_normalizes_representations() -> None:
    assert canonical_tenant_id(TENANT_A) == str(TENANT_A)
    assert canonical_tenant_id(str(TENANT_A).upper()) == str(TENANT_A)
    assert canonical_tenant_id(f"  {TENANT_A}  ") == str(TENANT_A)
    assert canonical_tenant_id(" Acme ") == "acme"
    assert canonical_tenant_id("") is None
    assert canonical_tenant_id(None) is None


def test_tenant_actor_is_confined_to_own_tenant() -> None:
    actor = ActorUser(user_id="u1", tenant_id=TENANT_A)
    ensure_tenant_access(actor, str(TENANT_A).upper())

    before = _denied_total("lead")
    with pytest.raises(AccessDeniedError):
        ensure_tenant_access(actor, TENANT_B, resource="lead")
    assert _denied_total("lead") == before + 1


def test_actor_without_tenant_is_rejected() -> None:
    actor = ActorUser(user_id="u1", tenant_id=None)
    with pytest.raises(TenantRequiredError):
        ensure_tenant_access(actor, TENANT_A)


def test_operators_cross_tenants() -> None:
    operator = ActorUser(user_id="ops", tenant_id=None, user_type="SAAS_OWNER")
    ensure_tenant_access(operator, TENANT_A)
    ensure_tenant_access(operator, TENANT_B)


def test_resolve_write_tenant() -> None:
    actor = ActorUser(user_id="u1", tenant_id=TENANT_A)
    assert resolve_write_tenant(actor, None) == TENANT_A
    assert resolve_write_tenant(actor, TENANT_A) == TENANT_A
    with pytest.raises(AccessDeniedError):
        resolve_write_tenant(actor, TENANT_B)

    operator = ActorUser(user_id="ops", tenant_id=None, user_type="SAAS_ADMIN")
    assert resolve_write_tenant(operator, TENANT_B) == TENANT_B
    with pytest.raises(ValidationFailedError, match="tenant_id is required"):
        resolve_write_tenant(operator, None)

    with pytest.raises(TenantRequiredError):
        resolve_write_tenant(ActorUser(user_id="u2", tenant_id=None), None)


def test_apply_tenant_filter_scopes_queries() -> None:
    actor = ActorUser(user_id="u1", tenant_id=TENANT_A)
    scoped = str(apply_tenant_filter(select(CRMLead), CRMLead, actor).compile())
    assert "crm_lead.tenant_id = " in scoped

    operator = ActorUser(user_id="ops", tenant_id=None, user_type="SAAS_OWNER")
    unscoped = str(apply_tenant_filter(select(CRMLead), CRMLead, operator).compile())
    assert "WHERE" not in unscoped

    narrowed = str(apply_tenant_filter(select(CRMLead), CRMLead, operator, TENANT_B).compile())
    assert "crm_lead.tenant_id = " in narrowed

    with pytest.raises(TenantRequiredError):
        apply_tenant_filter(select(CRMLead), CRMLead, ActorUser(user_id="u2", tenant_id=None))


def test_require_permission() -> None:
    assert permission_name("leads", "convert") == "crm.leads.convert"

    actor = ActorUser(user_id="u1", tenant_id=TENANT_A, permissions={"crm.leads.read"})
    require_permission(actor, "leads", "read")
    with pytest.raises(AccessDeniedError, match="crm.leads.convert"):
        require_permission(actor, "leads", "convert")

    operator = ActorUser(user_id="ops", tenant_id=None, user_type="SAAS_OWNER")
    require_permission(operator, "leads", "convert")


def _bearer_request(**claims) -> Request:
    settings = get_settings()
    token = jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)
    headers = [(b"authorization", f"Bearer {token}".encode())]
    return Request({"type": "http", "method": "GET", "path": "/", "headers": headers})


def test_token_tenant_claim_is_normalized() -> None:
    request = _bearer_request(sub="u1", tenant=f" {str(TENANT_A).upper()} ", permissions=["crm.leads.read"])
    auth_user = asyncio.run(get_auth_user(request))
    actor = crm_get_current_user(request, auth_user)

    assert actor.user_id == "u1"
    assert actor.tenant_id == TENANT_A
    require_permission(actor, "leads", "read")


def test_token_with_non_uuid_tenant_claim_is_not_trusted() -> None:
    request = _bearer_request(sub="u1", tenant="acme", permissions=["crm.leads.read"])
    auth_user = asyncio.run(get_auth_user(request))

    assert auth_user.sub == "anonymous"
    assert auth_user.permissions == []
    actor = crm_get_current_user(request, auth_user)
    assert actor.tenant_id is None
    with pytest.raises(AccessDeniedError):
        require_permission(actor, "leads", "read")
