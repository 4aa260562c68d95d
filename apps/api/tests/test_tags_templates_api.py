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
        return ActorUser(user_id="user-1", permissions=set(CRM_PERMISSIONS))

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_tag_crud(client: TestClient) -> None:
    created = client.post("/api/tags", json={"name": "VIP", "color": "#FF8800"})
    assert created.status_code == 201
    tag = created.json()

    updated = client.put(f"/api/tags/{tag['id']}", json={"color": "#00aa00"})
    assert updated.status_code == 200
    assert updated.json() == {**tag, "color": "#00aa00"}

    listed = client.get("/api/tags")
    assert [item["name"] for item in listed.json()] == ["VIP"]

    assert client.delete(f"/api/tags/{tag['id']}").status_code == 204
    assert client.get(f"/api/tags/{tag['id']}").status_code == 404


def test_duplicate_tag_name_conflicts(client: TestClient) -> None:
    assert client.post("/api/tags", json={"name": "Hot", "color": "#FF0000"}).status_code == 201

    duplicate = client.post("/api/tags", json={"name": "Hot", "color": "#00FF00"})

    assert duplicate.status_code == 409
    assert duplicate.json()["error"] == "Tag name already exists"

    # the failed insert must not poison the session for later requests
    assert client.post("/api/tags", json={"name": "Cold", "color": "#0000FF"}).status_code == 201


def test_renaming_tag_onto_existing_name_conflicts(client: TestClient) -> None:
    client.post("/api/tags", json={"name": "Alpha", "color": "#111111"})
    beta = client.post("/api/tags", json={"name": "Beta", "color": "#222222"}).json()

    response = client.put(f"/api/tags/{beta['id']}", json={"name": "Alpha"})

    assert response.status_code == 409
    assert client.get(f"/api/tags/{beta['id']}").json()["name"] == "Beta"


@pytest.mark.parametrize(
    "payload",
    [
        {"name": "Red", "color": "red"},
        {"name": "Short", "color": "#FFF"},
        {"name": "", "color": "#FFFFFF"},
        {"name": "x" * 51, "color": "#FFFFFF"},
    ],
)
def test_tag_validation(client: TestClient, payload: dict) -> None:
    assert client.post("/api/tags", json=payload).status_code == 400


def test_email_template_crud(client: TestClient) -> None:
    created = client.post(
        "/api/email-templates",
        json={"name": "Follow-up", "subject": "Checking in", "body": "Hi {{name}}, any update?"},
    )
    assert created.status_code == 201
    template = created.json()

    updated = client.put(
        f"/api/email-templates/{template['id']}",
        json={"name": "Follow-up", "subject": "Quick check-in", "body": "Hi {{name}}"},
    )
    assert updated.status_code == 200
    assert updated.json()["subject"] == "Quick check-in"

    listed = client.get("/api/email-templates")
    assert listed.json()["pagination"]["total"] == 1

    assert client.delete(f"/api/email-templates/{template['id']}").status_code == 204
    missing = client.get(f"/api/email-templates/{template['id']}")
    assert missing.status_code == 404
    assert missing.json()["error"] == "Email template not found"


def test_email_template_requires_body(client: TestClient) -> None:
    response = client.post("/api/email-templates", json={"name": "Empty", "subject": "Nothing", "body": ""})

    assert response.status_code == 400


def test_unknown_template_update_returns_not_found(client: TestClient) -> None:
    response = client.put(
        f"/api/email-templates/{uuid.uuid4()}",
        json={"name": "n", "subject": "s", "body": "b"},
    )

    assert response.status_code == 404
