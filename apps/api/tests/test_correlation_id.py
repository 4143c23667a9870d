from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import events
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.api import get_current_user as crm_get_current_user
from app.crm.models import CRMTenant
from app.crm.service import ActorUser
from app.main import app
from app.models.activity import ActivityLog


ALL_PERMISSIONS = {
    "crm.accounts.read",
    "crm.accounts.create",
    "crm.leads.create",
    "crm.leads.convert",
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


def test_generated_correlation_id_returned_in_header_and_error_envelope(client: TestClient) -> None:
    response = client.get(f"/api/crm/accounts/{uuid.uuid4()}")
    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    body = response.json()
    assert body["correlation_id"] == header_value
    assert body["success"] is False
    assert body["kind"] == "NotFound"
    assert response.headers.get("x-request-id") == header_value


def test_correlation_id_respected_when_provided(client: TestClient) -> None:
    response = client.get(f"/api/crm/accounts/{uuid.uuid4()}", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "abc-123"
    assert response.json()["correlation_id"] == "abc-123"


def test_malformed_correlation_id_is_replaced(client: TestClient) -> None:
    response = client.get(f"/api/crm/accounts/{uuid.uuid4()}", headers={"X-Correlation-Id": "bad id; drop table"})
    header_value = response.headers.get("x-correlation-id")
    assert header_value != "bad id; drop table"
    assert str(uuid.UUID(header_value)) == header_value
    assert response.json()["correlation_id"] == header_value


def test_validation_envelope_includes_correlation_id(client: TestClient) -> None:
    response = client.post("/api/crm/accounts", json={}, headers={"X-Correlation-Id": "corr-invalid-1"})
    assert response.status_code == 400
    body = response.json()
    assert body["code"] == "request_validation_failed"
    assert body["correlation_id"] == "corr-invalid-1"


def test_event_envelope_includes_correlation_id(client: TestClient) -> None:
    response = client.post(
        "/api/crm/leads",
        json={"last_name": "Doe", "company": "X Inc"},
        headers={"X-Correlation-Id": "corr-event-1"},
    )
    assert response.status_code == 201

    created_events = [item for item in events.published_events if item.get("event_type") == "crm.lead.created"]
    assert created_events
    assert created_events[-1].get("correlation_id") == "corr-event-1"


def test_activity_and_conversion_events_share_correlation_id(client: TestClient, db_session: Session) -> None:
    lead = client.post("/api/crm/leads", json={"first_name": "Jane", "last_name": "Doe", "company": "X Inc"}).json()

    converted = client.post(
        f"/api/crm/leads/{lead['id']}/convert",
        json={"create_account": True, "create_contact": True},
        headers={"X-Correlation-Id": "corr-convert-1"},
    )
    assert converted.status_code == 200

    converted_events = [item for item in events.published_events if item.get("event_type") == "crm.lead.converted"]
    assert converted_events[-1]["correlation_id"] == "corr-convert-1"

    entry = db_session.scalar(select(ActivityLog).where(ActivityLog.event_name == "lead.converted"))
    assert entry is not None
    assert entry.correlation_id == "corr-convert-1"
