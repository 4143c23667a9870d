from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.auth import AuthUser, get_current_user as auth_get_current_user
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.api import get_current_user as crm_get_current_user
from app.crm.models import CRMTenant
from app.crm.service import ActorUser
from app.main import app


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
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("METRICS_ENABLED", "true")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def tenant_id(db_session: Session) -> uuid.UUID:
    tenant = CRMTenant(organization_name="Acme", slug="acme", contact_email="ops@acme.com")
    db_session.add(tenant)
    db_session.commit()
    return tenant.id


@pytest.fixture()
def auth_user() -> AuthUser:
    return AuthUser(sub="metrics-admin", user_type="TENANT_USER", permissions=["system.metrics.read"])


@pytest.fixture()
def client(db_session: Session, tenant_id: uuid.UUID, auth_user: AuthUser) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_crm_user() -> ActorUser:
        return ActorUser(
            user_id="metrics-user",
            tenant_id=tenant_id,
            permissions={"crm.leads.create", "crm.leads.convert", "crm.accounts.read"},
            correlation_id="metrics-corr-1",
        )

    def override_auth_user() -> AuthUser:
        return auth_user

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[crm_get_current_user] = override_crm_user
    app.dependency_overrides[auth_get_current_user] = override_auth_user

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def test_metrics_endpoint_exposes_http_and_conversion_metrics(client: TestClient) -> None:
    health = client.get("/health")
    assert health.status_code == 200

    lead = client.post("/api/crm/leads", json={"first_name": "Jane", "last_name": "Doe", "company": "X Inc"})
    assert lead.status_code == 201

    converted = client.post(f"/api/crm/leads/{lead.json()['id']}/convert", json={})
    assert converted.status_code == 200

    client.get(f"/api/crm/accounts/{uuid.uuid4()}")

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "crm_lead_conversions_total" in body
    assert "crm_lead_conversion_duration_seconds" in body

    assert 'path="/health"' in body
    assert 'path="/api/crm/leads/{id}/convert"' in body
    assert 'path="/api/crm/accounts/{id}",status="404"' in body
    assert 'outcome="converted"' in body


def test_metrics_require_permission(client: TestClient, auth_user: AuthUser) -> None:
    auth_user.permissions = []
    assert client.get("/metrics").status_code == 403

    auth_user.user_type = "SAAS_ADMIN"
    assert client.get("/metrics").status_code == 200


def test_metrics_disabled_returns_not_found(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()
    assert client.get("/metrics").status_code == 404
