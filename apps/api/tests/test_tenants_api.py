from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import events
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.api import get_current_user as crm_get_current_user
from app.crm.models import CRMTenant
from app.crm.service import ActorUser
from app.main import app


ALL_PERMISSIONS = {
    "crm.tenants.read",
    "crm.tenants.create",
}


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clear_stubs() -> Generator[None, None, None]:
    events.published_events.clear()
    get_settings.cache_clear()
    yield
    events.published_events.clear()
    get_settings.cache_clear()


@pytest.fixture()
def tenant_id(db_session: Session) -> uuid.UUID:
    tenant = CRMTenant(organization_name="Acme", slug="acme", contact_email="ops@acme.com")
    db_session.add(tenant)
    db_session.commit()
    return tenant.id


@pytest.fixture()
def actor(tenant_id: uuid.UUID) -> ActorUser:
    return ActorUser(user_id="user-1", tenant_id=tenant_id, permissions=set(ALL_PERMISSIONS))


@pytest.fixture()
def client(db_session: Session, actor: ActorUser) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        actor.correlation_id = getattr(request.state, "correlation_id", None)
        return actor


    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[crm_get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_only_operators_create_tenants(client: TestClient, actor: ActorUser) -> None:
    payload = {"organization_name": "Globex", "slug": "globex", "contact_email": "Ops@Globex.com"}

    denied = client.post("/api/crm/tenants", json=payload)
    assert denied.status_code == 403
    assert denied.json()["message"] == "Only platform operators can create tenants"

    actor.user_type = "SAAS_ADMIN"
    created = client.post("/api/crm/tenants", json=payload)
    assert created.status_code == 201, created.text
    body = created.json()
    assert body["slug"] == "globex"
    assert body["contact_email"] == "ops@globex.com"
    assert body["plan_type"] == "free"
    assert body["is_active"] is True
    assert events.published_events[-1]["event_type"] == "crm.tenant.created"


def test_duplicate_slug_conflicts(client: TestClient, actor: ActorUser) -> None:
    actor.user_type = "SAAS_OWNER"
    duplicate = client.post(
        "/api/crm/tenants",
        json={"organization_name": "Acme Two", "slug": "acme", "contact_email": "two@acme.com"},
    )
    assert duplicate.status_code == 409
    assert duplicate.json()["kind"] == "DuplicateName"


def test_tenant_payload_is_validated(client: TestClient, actor: ActorUser) -> None:
    actor.user_type = "SAAS_OWNER"
    bad_slug = client.post(
        "/api/crm/tenants",
        json={"organization_name": "Globex", "slug": "Not A Slug", "contact_email": "ops@globex.com"},
    )
    assert bad_slug.status_code == 400

    bad_email = client.post(
        "/api/crm/tenants",
        json={"organization_name": "Globex", "slug": "globex", "contact_email": "not-an-email"},
    )
    assert bad_email.status_code == 400

    bad_plan = client.post(
        "/api/crm/tenants",
        json={"organization_name": "Globex", "slug": "globex", "contact_email": "ops@globex.com", "plan_type": "gold"},
    )
    assert bad_plan.status_code == 400


def test_list_tenants_is_operator_only(client: TestClient, actor: ActorUser, db_session: Session) -> None:
    db_session.add(CRMTenant(organization_name="Globex", slug="globex", contact_email="ops@globex.com"))
    db_session.commit()

    assert client.get("/api/crm/tenants").status_code == 403

    actor.user_type = "SAAS_ADMIN"
    response = client.get("/api/crm/tenants")
    assert response.status_code == 200
    assert sorted(item["slug"] for item in response.json()) == ["acme", "globex"]


def test_members_read_their_own_tenant(
    client: TestClient,
    actor: ActorUser,
    db_session: Session,
    tenant_id: uuid.UUID,
) -> None:
    own = client.get(f"/api/crm/tenants/{tenant_id}")
    assert own.status_code == 200
    assert own.json()["organization_name"] == "Acme"

    other = CRMTenant(organization_name="Globex", slug="globex", contact_email="ops@globex.com")
    db_session.add(other)
    db_session.commit()
    assert client.get(f"/api/crm/tenants/{other.id}").status_code == 403
    assert client.get(f"/api/crm/tenants/{uuid.uuid4()}").status_code == 404


def test_tenant_read_requires_permission(client: TestClient, actor: ActorUser, tenant_id: uuid.UUID) -> None:
    actor.permissions = set()
    response = client.get(f"/api/crm/tenants/{tenant_id}")
    assert response.status_code == 403
    assert response.json()["message"] == "Missing permission: crm.tenants.read"
