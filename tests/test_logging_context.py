from __future__ import annotations

import json
import logging
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from inquiry_crm.context import reset_correlation_id, set_correlation_id
from inquiry_crm.core.auth import get_current_subject
from inquiry_crm.core.config import get_settings
from inquiry_crm.core.database import Base, get_db
from inquiry_crm.crm.models import Inquiry, User
from inquiry_crm.logging import JsonLogFormatter, RequestContextFilter
from inquiry_crm.main import app
from inquiry_crm.middleware.rate_limit import reset_rate_limiter
from inquiry_crm.platform.security import Subject


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
    session.add(User(id=1, username="agent1", email="agent1@example.com", role="customer_service"))
    session.commit()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_subject(request: Request) -> Subject:
        return Subject(
            id=1,
            role="customer_service",
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_subject] = override_get_current_subject
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_logs_include_correlation_id_for_http(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    response = client.get("/api/inquiries/4242", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404

    records = [
        record for record in caplog.records if record.name == "inquiry_crm.request" and record.getMessage() == "http.request"
    ]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/api/inquiries/{id}"
        and getattr(record, "route_group", None) == "inquiries"
        and getattr(record, "status_code", None) == 404
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_scope_denial_is_logged_with_context(
    client: TestClient,
    db_session: Session,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)
    foreign = Inquiry(title="Foreign", source_channel="web", customer_name="X", created_by=7, assigned_to=7)
    db_session.add(foreign)
    db_session.commit()

    response = client.patch(
        f"/api/inquiries/{foreign.id}",
        json={"title": "Changed"},
        headers={"X-Correlation-Id": "deny-log-1"},
    )
    assert response.status_code == 404

    denials = [record for record in caplog.records if record.getMessage() == "scope.denied"]
    assert denials
    assert any(
        getattr(record, "correlation_id", None) == "deny-log-1"
        and getattr(record, "resource", None) == "inquiry"
        and getattr(record, "action", None) == "update"
        and getattr(record, "role", None) == "customer_service"
        for record in denials
    )


def test_json_formatter_keeps_known_fields_only() -> None:
    record = logging.makeLogRecord(
        {
            "name": "inquiry_crm.request",
            "levelname": "INFO",
            "msg": "http.request",
            "method": "GET",
            "path": "/api/inquiries",
            "status_code": 200,
            "secret_token": "do-not-log",
        }
    )
    token = set_correlation_id("fmt-corr-1")
    try:
        RequestContextFilter().filter(record)
    finally:
        reset_correlation_id(token)

    payload = json.loads(JsonLogFormatter().format(record))
    assert payload["logger"] == "inquiry_crm.request"
    assert payload["msg"] == "http.request"
    assert payload["correlation_id"] == "fmt-corr-1"
    assert payload["fields"]["method"] == "GET"
    assert payload["fields"]["status_code"] == 200
    assert "secret_token" not in payload["fields"]


def test_json_formatter_masks_customer_contact_details() -> None:
    record = logging.makeLogRecord(
        {
            "name": "inquiry_crm.crm.service",
            "levelname": "INFO",
            "msg": "inquiry.created",
            "entity_id": 12,
            "user_id": 3,
            "customer_email": "buyer@acme.com",
            "customer_phone": "555-0100",
        }
    )

    payload = json.loads(JsonLogFormatter().format(record))
    assert payload["user_id"] == 3
    assert payload["fields"]["entity_id"] == 12
    assert payload["fields"]["customer_email"] == "b***@acme.com"
    assert payload["fields"]["customer_phone"] == "***00"
