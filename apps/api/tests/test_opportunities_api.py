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
    "crm.accounts.create",
    "crm.contacts.create",
    "crm.leads.create",
    "crm.opportunities.read",
    "crm.opportunities.create",
    "crm.opportunities.update",
    "crm.opportunities.delete",
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


@pytest.fixture()
def account(client: TestClient) -> dict:
    response = client.post("/api/crm/accounts", json={"name": "Initech"})
    assert response.status_code == 201
    return response.json()


def _opportunity(client: TestClient, account_id: str, **fields) -> dict:
    payload = {"account_id": account_id, "name": "TPS Rollout", "close_date": "2026-12-31"}
    payload.update(fields)
    response = client.post("/api/crm/opportunities", json=payload)
    assert response.status_code == 201, response.text
    return response.json()


def test_create_opportunity_defaults_and_weighted_amount(client: TestClient, account: dict) -> None:
    opportunity = _opportunity(client, account["id"], amount=1000)

    assert opportunity["stage"] == "Prospecting"
    assert opportunity["probability"] == 10
    assert opportunity["amount"] == 1000
    assert opportunity["weighted_amount"] == 100.0
    assert opportunity["account_id"] == account["id"]


def test_weighted_amount_tracks_probability(client: TestClient, account: dict) -> None:
    opportunity = _opportunity(client, account["id"], amount=2500, probability=30)
    assert opportunity["weighted_amount"] == 750.0

    updated = client.patch(
        f"/api/crm/opportunities/{opportunity['id']}",
        json={"row_version": 1, "stage": "Negotiation/Review", "probability": 90},
    )
    assert updated.status_code == 200
    assert updated.json()["stage"] == "Negotiation/Review"
    assert updated.json()["weighted_amount"] == 2250.0


def test_opportunity_invariants(client: TestClient, account: dict) -> None:
    negative = client.post(
        "/api/crm/opportunities",
        json={"account_id": account["id"], "name": "Bad", "close_date": "2026-12-31", "amount": -1},
    )
    assert negative.status_code == 400

    no_close_date = client.post("/api/crm/opportunities", json={"account_id": account["id"], "name": "Bad"})
    assert no_close_date.status_code == 400

    no_account = client.post("/api/crm/opportunities", json={"name": "Bad", "close_date": "2026-12-31"})
    assert no_account.status_code == 400

    unknown_stage = client.post(
        "/api/crm/opportunities",
        json={"account_id": account["id"], "name": "Bad", "close_date": "2026-12-31", "stage": "Won"},
    )
    assert unknown_stage.status_code == 400

    missing_account = client.post(
        "/api/crm/opportunities",
        json={"account_id": str(uuid.uuid4()), "name": "Bad", "close_date": "2026-12-31"},
    )
    assert missing_account.status_code == 400
    assert missing_account.json()["kind"] == "ValidationFailed"


def test_contact_and_lead_references_are_validated(client: TestClient, account: dict) -> None:
    contact = client.post("/api/crm/contacts", json={"first_name": "Peter", "last_name": "Gibbons"}).json()
    lead = client.post("/api/crm/leads", json={"company": "Initech"}).json()

    opportunity = _opportunity(client, account["id"], contact_id=contact["id"], lead_id=lead["id"])
    assert opportunity["contact_id"] == contact["id"]
    assert opportunity["lead_id"] == lead["id"]

    dangling = client.post(
        "/api/crm/opportunities",
        json={
            "account_id": account["id"],
            "name": "Dangling",
            "close_date": "2026-12-31",
            "contact_id": str(uuid.uuid4()),
        },
    )
    assert dangling.status_code == 400


def test_list_opportunities_filters(client: TestClient, account: dict) -> None:
    _opportunity(client, account["id"], name="Early", close_date="2026-11-01")
    _opportunity(client, account["id"], name="Late", close_date="2027-03-01", stage="Qualification")

    window = client.get(
        "/api/crm/opportunities",
        params={"close_from": "2026-10-01", "close_to": "2026-12-31"},
    )
    assert [item["name"] for item in window.json()] == ["Early"]

    staged = client.get("/api/crm/opportunities", params={"stage": "Qualification"})
    assert [item["name"] for item in staged.json()] == ["Late"]

    by_account = client.get("/api/crm/opportunities", params={"account_id": account["id"]})
    assert len(by_account.json()) == 2


def test_patch_cannot_clear_required_fields(client: TestClient, account: dict) -> None:
    opportunity = _opportunity(client, account["id"])
    response = client.patch(
        f"/api/crm/opportunities/{opportunity['id']}",
        json={"row_version": 1, "close_date": None},
    )
    assert response.status_code == 400
    assert response.json()["message"] == "close_date cannot be null"


def test_delete_opportunity(client: TestClient, account: dict) -> None:
    opportunity = _opportunity(client, account["id"])
    assert client.delete(f"/api/crm/opportunities/{opportunity['id']}").status_code == 200
    assert client.get(f"/api/crm/opportunities/{opportunity['id']}").status_code == 404
    assert client.get("/api/crm/opportunities").json() == []
