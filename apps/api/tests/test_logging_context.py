from __future__ import annotations

import logging
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
from app.logging import JsonLogFormatter
from app.main import app


ALL_PERMISSIONS = {
    "crm.accounts.read",
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


def test_logs_include_correlation_id_for_http(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    account_id = uuid.uuid4()
    path = f"/api/crm/accounts/{account_id}"
    response = client.get(path, headers={"X-Correlation-Id": "abc-123", "X-Tenant-Id": "acme"})
    assert response.status_code == 404

    records = [record for record in caplog.records if record.name == "app.request" and record.getMessage() == "http.request"]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/api/crm/accounts/{id}"
        and getattr(record, "status_code", None) == 404
        and getattr(record, "tenant_id", None) == "acme"
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_conversion_logs_outcome(
    client: TestClient,
    tenant_id: uuid.UUID,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)

    lead = client.post("/api/crm/leads", json={"first_name": "Jane", "last_name": "Doe", "company": "X Inc"}).json()
    converted = client.post(f"/api/crm/leads/{lead['id']}/convert", json={}, headers={"X-Correlation-Id": "abc-456"})
    assert converted.status_code == 200
    repeated = client.post(f"/api/crm/leads/{lead['id']}/convert", json={}, headers={"X-Correlation-Id": "abc-789"})
    assert repeated.status_code == 400

    lead_records = [record for record in caplog.records if record.name == "app.crm.leads"]
    assert any(
        record.getMessage() == "lead_converted"
        and getattr(record, "lead_id", None) == lead["id"]
        and getattr(record, "tenant_id", None) == str(tenant_id)
        and getattr(record, "outcome", None) == "converted"
        and getattr(record, "correlation_id", None) == "abc-456"
        for record in lead_records
    )
    assert any(
        record.getMessage() == "lead_conversion_rejected"
        and getattr(record, "kind", None) == "AlreadyConverted"
        and getattr(record, "correlation_id", None) == "abc-789"
        for record in lead_records
    )


def test_json_formatter_keeps_known_fields_only() -> None:
    record = logging.makeLogRecord(
        {
            "name": "app.request",
            "levelname": "INFO",
            "msg": "http.request",
            "method": "GET",
            "path": "/health",
            "correlation_id": "corr-1",
            "password": "hunter2",
            "error": "x" * 600,
        }
    )

    payload = JsonLogFormatter().format(record)
    assert '"correlation_id": "corr-1"' in payload
    assert '"method": "GET"' in payload
    assert "hunter2" not in payload
    assert "x" * 501 not in payload
