from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.database import Base, get_db
from app.crm.api import CRM_PERMISSIONS, get_current_user
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


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="user-1",
            permissions=set(CRM_PERMISSIONS),
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _create_company(client: TestClient, name: str = "Globex", **extra: object) -> dict:
    response = client.post("/api/companies", json={"name": name, **extra})
    assert response.status_code == 201
    return response.json()


def _create_contact(client: TestClient, name: str = "Hank Scorpio", **extra: object) -> dict:
    response = client.post("/api/contacts", json={"name": name, **extra})
    assert response.status_code == 201
    return response.json()


def test_company_crud_round_trip(client: TestClient) -> None:
    company = _create_company(client, industry="Energy", website="https://globex.example", employeeCount=120)
    assert company["employeeCount"] == 120

    updated = client.put(
        f"/api/companies/{company['id']}",
        json={"name": "Globex Corporation", "industry": "Energy", "website": ""},
    )
    assert updated.status_code == 200
    assert updated.json()["name"] == "Globex Corporation"
    assert updated.json()["website"] is None

    listed = client.get("/api/companies")
    assert listed.status_code == 200
    assert listed.json()["pagination"]["total"] == 1

    deleted = client.delete(f"/api/companies/{company['id']}")
    assert deleted.status_code == 204
    assert client.get(f"/api/companies/{company['id']}").status_code == 404


@pytest.mark.parametrize(
    "payload",
    [
        {"name": ""},
        {"name": "Bad Site", "website": "not a url"},
        {"name": "Negative", "employeeCount": 0},
    ],
)
def test_company_validation_errors(client: TestClient, payload: dict) -> None:
    response = client.post("/api/companies", json=payload)

    assert response.status_code == 400
    assert response.json()["error"] == "Validation failed"


def test_missing_company_returns_not_found_envelope(client: TestClient) -> None:
    response = client.get(f"/api/companies/{uuid.uuid4()}")

    assert response.status_code == 404
    body = response.json()
    assert body["error"] == "Company not found"
    assert body["code"] == "not_found"


def test_delete_preview_counts_affected_rows(client: TestClient) -> None:
    company = _create_company(client)
    _create_contact(client, companyId=company["id"])
    _create_contact(client, name="Frank Grimes", companyId=company["id"])
    client.post("/api/deals", json={"title": "Doomsday device", "companyId": company["id"]})
    client.post("/api/activities", json={"type": "call", "title": "Intro call", "companyId": company["id"]})
    client.post("/api/tasks", json={"title": "Send proposal", "companyId": company["id"]})

    response = client.get(f"/api/companies/{company['id']}/delete-preview")

    assert response.status_code == 200
    assert response.json() == {
        "entityName": "Globex",
        "impact": {
            "setNull": {"contacts": 2, "deals": 1},
            "cascade": {"activities": 1, "tasks": 1},
        },
    }


def test_deleting_company_detaches_contacts_and_cascades_activities(client: TestClient) -> None:
    company = _create_company(client)
    contact = _create_contact(client, companyId=company["id"])
    activity = client.post("/api/activities", json={"type": "meeting", "title": "Kickoff", "companyId": company["id"]})
    assert activity.status_code == 201

    assert client.delete(f"/api/companies/{company['id']}").status_code == 204

    detached = client.get(f"/api/contacts/{contact['id']}")
    assert detached.status_code == 200
    assert detached.json()["companyId"] is None
    assert client.get(f"/api/activities/{activity.json()['id']}").status_code == 404


def test_contact_crud_and_company_filter(client: TestClient) -> None:
    company = _create_company(client)
    linked = _create_contact(client, email="hank@globex.example", phone="010-1234-5678", companyId=company["id"])
    _create_contact(client, name="Unaffiliated")

    filtered = client.get("/api/contacts", params={"companyId": company["id"]})
    assert filtered.status_code == 200
    assert [item["id"] for item in filtered.json()["data"]] == [linked["id"]]

    updated = client.put(
        f"/api/contacts/{linked['id']}",
        json={"name": "Hank Scorpio", "position": "CEO", "companyId": company["id"]},
    )
    assert updated.status_code == 200
    assert updated.json()["position"] == "CEO"
    assert updated.json()["email"] is None

    assert client.delete(f"/api/contacts/{linked['id']}").status_code == 204
    assert client.get(f"/api/contacts/{linked['id']}").status_code == 404


@pytest.mark.parametrize(
    "payload",
    [
        {"name": "Bad Mail", "email": "not-an-email"},
        {"name": "Bad Phone", "phone": "call me maybe"},
    ],
)
def test_contact_validation_errors(client: TestClient, payload: dict) -> None:
    response = client.post("/api/contacts", json=payload)

    assert response.status_code == 400
    assert response.json()["issues"]


def test_contact_with_unknown_company_is_rejected(client: TestClient) -> None:
    response = client.post("/api/contacts", json={"name": "Orphan", "companyId": str(uuid.uuid4())})

    assert response.status_code == 400
    assert response.json()["code"] == "invalid_argument"
    assert response.json()["details"] == {"fields": ["company_id"]}
