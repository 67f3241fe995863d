from __future__ import annotations

import logging
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from prometheus_client import REGISTRY
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from inquiry_crm.core.config import get_settings
from inquiry_crm.core.database import Base, get_db
from inquiry_crm.crm.models import Department, Inquiry, User
from inquiry_crm.main import app
from inquiry_crm.middleware.rate_limit import reset_rate_limiter


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
    session.add_all([Department(id=1, name="East"), Department(id=2, name="West")])
    session.add_all(
        [
            User(id=1, username="manager1", email="manager1@example.com", role="manager", department_id=1),
            User(id=2, username="retired", email="retired@example.com", role="sales", status="inactive"),
            User(id=3, username="intern1", email="intern1@example.com", role="intern", department_id=1),
        ]
    )
    session.commit()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    monkeypatch.setenv("JWT_SECRET", "test-secret")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _bearer(sub: str, secret: str = "test-secret") -> dict[str, str]:
    token = jwt.encode({"sub": sub}, secret, algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


def test_missing_or_invalid_token_is_unauthorized(client: TestClient) -> None:
    assert client.get("/me").status_code == 401
    assert client.get("/me", headers={"Authorization": "Token abc"}).status_code == 401
    assert client.get("/me", headers=_bearer("1", secret="wrong-secret")).status_code == 401
    assert client.get("/me", headers=_bearer("not-a-number")).status_code == 401
    assert client.get("/me", headers=_bearer("999")).status_code == 401


def test_inactive_user_is_unauthorized(client: TestClient) -> None:
    response = client.get("/api/inquiries", headers=_bearer("2"))
    assert response.status_code == 401
    assert response.headers.get("WWW-Authenticate") == "Bearer"


def test_subject_reflects_stored_user(client: TestClient) -> None:
    response = client.get("/me", headers=_bearer("1"))
    assert response.status_code == 200
    assert response.json() == {"id": 1, "role": "manager", "effective_role": "manager", "department_id": 1}


def test_role_and_department_changes_apply_on_next_request(client: TestClient, db_session: Session) -> None:
    db_session.add(
        Inquiry(title="West deal", source_channel="web", customer_name="X", created_by=3, department_id=2)
    )
    db_session.commit()

    before = client.get("/api/inquiries", headers=_bearer("1"))
    assert before.json()["total"] == 0

    manager = db_session.get(User, 1)
    manager.department_id = 2
    db_session.commit()

    after = client.get("/api/inquiries", headers=_bearer("1"))
    assert after.json()["total"] == 1


def test_unknown_role_falls_back_and_is_reported(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)
    before = REGISTRY.get_sample_value("scope_unknown_role_total") or 0.0

    response = client.get("/me", headers=_bearer("3"))
    assert response.status_code == 200
    assert response.json()["role"] == "intern"
    assert response.json()["effective_role"] == "customer_service"

    assert (REGISTRY.get_sample_value("scope_unknown_role_total") or 0.0) == before + 1
    warnings = [record for record in caplog.records if record.getMessage() == "scope.unknown_role"]
    assert warnings
    assert warnings[-1].levelno == logging.WARNING
    assert warnings[-1].role == "intern"

    forbidden = client.get("/api/departments", headers=_bearer("3"))
    assert forbidden.status_code == 403


def test_request_log_carries_authenticated_user(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    response = client.get("/api/inquiries", headers=_bearer("1"))
    assert response.status_code == 200

    records = [
        record for record in caplog.records if record.name == "inquiry_crm.request" and record.getMessage() == "http.request"
    ]
    assert records
    assert records[-1].user_id == 1
