from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import events
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.api import get_current_user as crm_get_current_user
from app.crm.models import CRMTenant
from app.crm.service import ActorUser
from app.main import app
from app.services import activity as activity_service


ALL_PERMISSIONS = {
    "crm.accounts.read",
    "crm.accounts.create",
    "crm.accounts.update",
    "crm.leads.create",
    "crm.activity.read",
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


def test_writes_are_recorded_in_activity_log(client: TestClient, tenant_id: uuid.UUID) -> None:
    account = client.post("/api/crm/accounts", json={"name": "Initech"}).json()
    client.patch(f"/api/crm/accounts/{account['id']}", json={"row_version": 1, "industry": "Software"})
    client.post("/api/crm/leads", json={"company": "Hooli"})

    response = client.get("/api/crm/activity")
    assert response.status_code == 200
    entries = response.json()
    assert [entry["event_name"] for entry in entries] == ["lead.created", "account.updated", "account.created"]
    assert all(entry["tenant_id"] == str(tenant_id) for entry in entries)
    assert all(entry["actor_user_id"] == "user-1" for entry in entries)
    assert entries[-1]["entity_id"] == account["id"]


def test_activity_filters(client: TestClient) -> None:
    account = client.post("/api/crm/accounts", json={"name": "Initech"}).json()
    client.post("/api/crm/leads", json={"company": "Hooli"})

    by_type = client.get("/api/crm/activity", params={"entity_type": "lead"})
    assert [entry["event_name"] for entry in by_type.json()] == ["lead.created"]

    by_entity = client.get("/api/crm/activity", params={"entity_id": account["id"]})
    assert [entry["event_name"] for entry in by_entity.json()] == ["account.created"]

    by_event = client.get("/api/crm/activity", params={"event_name": "account.created"})
    assert len(by_event.json()) == 1

    paged = client.get("/api/crm/activity", params={"limit": 1})
    assert len(paged.json()) == 1
    next_page = client.get("/api/crm/activity", params={"limit": 1, "cursor": "1"})
    assert next_page.json()[0]["id"] != paged.json()[0]["id"]


def test_activity_is_tenant_scoped(client: TestClient, actor: ActorUser, db_session: Session) -> None:
    client.post("/api/crm/accounts", json={"name": "Initech"})

    other = CRMTenant(organization_name="Globex", slug="globex", contact_email="ops@globex.com")
    db_session.add(other)
    db_session.commit()
    actor.tenant_id = other.id
    assert client.get("/api/crm/activity").json() == []

    actor.user_type = "SAAS_OWNER"
    assert len(client.get("/api/crm/activity").json()) == 1
    assert client.get("/api/crm/activity", params={"tenant_id": str(other.id)}).json() == []


def test_activity_failure_does_not_fail_the_write(
    client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def broken_entry(*args, **kwargs):
        raise SQLAlchemyError("activity table unavailable")

    monkeypatch.setattr(activity_service, "_build_entry", broken_entry)

    response = client.post("/api/crm/accounts", json={"name": "Initech"})
    assert response.status_code == 201
    assert client.get("/api/crm/accounts/" + response.json()["id"]).status_code == 200
    assert client.get("/api/crm/activity").json() == []


def test_activity_requires_permission(client: TestClient, actor: ActorUser) -> None:
    actor.permissions = {"crm.accounts.create"}
    response = client.get("/api/crm/activity")
    assert response.status_code == 403
