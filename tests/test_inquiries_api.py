from __future__ import annotations

import dataclasses
from collections.abc import Callable, Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from inquiry_crm import audit, events
from inquiry_crm.core.auth import get_current_subject
from inquiry_crm.core.config import get_settings
from inquiry_crm.core.database import Base, get_db
from inquiry_crm.crm.models import Department, FollowUpRecord, Inquiry, User
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
    audit.audit_entries.clear()
    events.published_events.clear()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def seeded(db_session: Session) -> dict[str, Subject]:
    db_session.add_all(
        [
            Department(id=1, name="Sales East"),
            Department(id=2, name="Sales West"),
        ]
    )
    db_session.add_all(
        [
            User(id=1, username="admin", email="admin@example.com", role="admin"),
            User(id=2, username="manager1", email="manager1@example.com", role="manager", department_id=1),
            User(id=3, username="sales1", email="sales1@example.com", role="sales", department_id=1),
            User(id=4, username="sales2", email="sales2@example.com", role="sales", department_id=2),
            User(id=5, username="agent1", email="agent1@example.com", role="customer_service", department_id=1),
            User(id=6, username="intern1", email="intern1@example.com", role="intern", department_id=1),
        ]
    )
    db_session.commit()
    return {
        "admin": Subject(id=1, role="admin"),
        "manager": Subject(id=2, role="manager", department_id=1),
        "sales1": Subject(id=3, role="sales", department_id=1),
        "sales2": Subject(id=4, role="sales", department_id=2),
        "agent": Subject(id=5, role="customer_service", department_id=1),
        "intern": Subject(id=6, role="intern", department_id=1),
    }


@pytest.fixture()
def client(
    db_session: Session,
    seeded: dict[str, Subject],
) -> Generator[tuple[TestClient, Callable[[str], None]], None, None]:
    state = {"actor": "admin"}

    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_subject(request: Request) -> Subject:
        return dataclasses.replace(
            seeded[state["actor"]],
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    def set_actor(actor: str) -> None:
        state["actor"] = actor

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_subject] = override_get_current_subject
    with TestClient(app) as test_client:
        yield test_client, set_actor
    app.dependency_overrides.clear()


def _create(test_client: TestClient, **overrides: object) -> dict:
    payload = {
        "title": "Bulk order of widgets",
        "source_channel": "web",
        "customer_name": "Acme Ltd",
        "customer_email": "buyer@acme.com",
        "estimated_value": "1500.00",
    }
    payload.update(overrides)
    response = test_client.post("/api/inquiries", json=payload)
    assert response.status_code == 201, response.text
    return response.json()


def test_create_inquiry_sets_creator_and_emits_audit_and_event(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    set_actor("sales1")

    created = _create(test_client, department_id=1, tags=["vip"])

    assert created["created_by"] == 3
    assert created["status"] == "new"
    assert created["priority"] == "medium"
    assert created["inquiry_no"].startswith("INQ")
    assert created["tags"] == ["vip"]

    assert audit.audit_entries[-1]["entity_type"] == "inquiry"
    assert audit.audit_entries[-1]["action"] == "create"
    assert audit.audit_entries[-1]["actor_user_id"] == "3"
    assert events.published_events[-1]["event_type"] == "inquiry.created"
    assert events.published_events[-1]["entity_id"] == created["id"]


def test_create_inquiry_validation(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client

    missing = test_client.post("/api/inquiries", json={"title": "No customer", "source_channel": "web"})
    assert missing.status_code == 422

    bad_email = test_client.post(
        "/api/inquiries",
        json={"title": "Bad email", "source_channel": "web", "customer_name": "X", "customer_email": "nope"},
    )
    assert bad_email.status_code == 422

    unknown_assignee = test_client.post(
        "/api/inquiries",
        json={"title": "Ghost", "source_channel": "web", "customer_name": "X", "assigned_to": 999},
    )
    assert unknown_assignee.status_code == 422
    body = unknown_assignee.json()
    assert body["code"] == "inquiry_create_failed"
    assert body["message"] == "assigned_to user does not exist"


def test_list_is_scoped_per_role(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    set_actor("admin")
    east = _create(test_client, title="East", department_id=1)
    west = _create(test_client, title="West", department_id=2, assigned_to=4)
    assigned_agent = _create(test_client, title="Agent", assigned_to=5)
    assigned_intern = _create(test_client, title="Intern", assigned_to=6)
    set_actor("sales1")
    own = _create(test_client, title="Own lead")

    def listed(actor: str) -> set[int]:
        set_actor(actor)
        response = test_client.get("/api/inquiries", params={"page_size": 100})
        assert response.status_code == 200
        body = response.json()
        assert body["total"] == len(body["items"])
        return {item["id"] for item in body["items"]}

    assert listed("admin") == {east["id"], west["id"], assigned_agent["id"], assigned_intern["id"], own["id"]}
    assert listed("manager") == {east["id"]}
    assert listed("sales1") == {own["id"]}
    assert listed("sales2") == {west["id"]}
    assert listed("agent") == {assigned_agent["id"]}
    assert listed("intern") == {assigned_intern["id"]}


def test_point_access_outside_scope_is_not_found(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    set_actor("admin")
    west = _create(test_client, department_id=2, assigned_to=4)

    set_actor("sales1")
    hidden = test_client.get(f"/api/inquiries/{west['id']}", headers={"X-Correlation-Id": "scope-404"})
    missing = test_client.get("/api/inquiries/9999")

    assert hidden.status_code == 404
    assert missing.status_code == 404
    assert hidden.json()["message"] == missing.json()["message"] == "inquiry not found"
    assert hidden.json()["correlation_id"] == "scope-404"
    assert audit.audit_entries[-1]["action"] == "scope.denied"

    patch = test_client.patch(f"/api/inquiries/{west['id']}", json={"title": "Hijacked"})
    delete = test_client.delete(f"/api/inquiries/{west['id']}")
    assert patch.status_code == 404
    assert delete.status_code == 404

    set_actor("sales2")
    visible = test_client.get(f"/api/inquiries/{west['id']}")
    assert visible.status_code == 200
    assert visible.json()["title"] == "Bulk order of widgets"


def test_update_and_delete_within_scope(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
) -> None:
    test_client, set_actor = client
    set_actor("sales1")
    created = _create(test_client)

    updated = test_client.patch(
        f"/api/inquiries/{created['id']}",
        json={"status": "contacted", "priority": "high", "assigned_to": 3},
    )
    assert updated.status_code == 200
    assert updated.json()["status"] == "contacted"
    assert updated.json()["priority"] == "high"
    assert events.published_events[-1]["event_type"] == "inquiry.updated"
    assert events.published_events[-1]["payload"]["changed_fields"] == ["assigned_to", "priority", "status"]

    null_title = test_client.patch(f"/api/inquiries/{created['id']}", json={"title": None})
    assert null_title.status_code == 422
    assert null_title.json()["code"] == "inquiry_update_failed"

    test_client.post(
        "/api/follow-ups",
        json={"inquiry_id": created["id"], "follow_up_type": "phone", "content": "Left a message"},
    )
    deleted = test_client.delete(f"/api/inquiries/{created['id']}")
    assert deleted.status_code == 204
    assert db_session.get(Inquiry, created["id"]) is None
    assert db_session.scalar(select(func.count()).select_from(FollowUpRecord)) == 0
    assert events.published_events[-1]["event_type"] == "inquiry.deleted"


def test_list_filters_and_pagination(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    set_actor("admin")
    for index in range(3):
        _create(test_client, title=f"Email inquiry {index}", source_channel="email", priority="high")
    _create(test_client, title="Trade show contact", source_channel="expo", customer_company="Globex")

    by_channel = test_client.get("/api/inquiries", params={"source_channel": "email", "page_size": 2})
    assert by_channel.status_code == 200
    assert by_channel.json()["total"] == 3
    assert len(by_channel.json()["items"]) == 2

    second_page = test_client.get("/api/inquiries", params={"source_channel": "email", "page_size": 2, "page": 2})
    assert len(second_page.json()["items"]) == 1

    search = test_client.get("/api/inquiries", params={"q": "globex"})
    assert [item["title"] for item in search.json()["items"]] == ["Trade show contact"]

    by_priority = test_client.get("/api/inquiries", params={"priority": "high"})
    assert by_priority.json()["total"] == 3

    bad_status = test_client.get("/api/inquiries", params={"status": "archived"})
    assert bad_status.status_code == 422


def test_batch_is_all_or_nothing(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
) -> None:
    test_client, set_actor = client
    set_actor("sales1")
    own_a = _create(test_client, title="A")
    own_b = _create(test_client, title="B")
    set_actor("admin")
    foreign = _create(test_client, title="Foreign", department_id=2)

    set_actor("sales1")
    rejected = test_client.patch(
        "/api/inquiries/batch",
        json={"ids": [own_a["id"], foreign["id"]], "action": "update_status", "data": {"status": "quoted"}},
    )
    assert rejected.status_code == 404
    assert rejected.json()["code"] == "inquiry_batch_failed"
    db_session.expire_all()
    assert db_session.get(Inquiry, own_a["id"]).status == "new"

    accepted = test_client.patch(
        "/api/inquiries/batch",
        json={"ids": [own_a["id"], own_b["id"]], "action": "assign", "data": {"assigned_to": 5}},
    )
    assert accepted.status_code == 200
    assert accepted.json() == {"action": "assign", "affected": 2, "ids": sorted([own_a["id"], own_b["id"]])}

    set_actor("agent")
    listed = test_client.get("/api/inquiries").json()
    assert {item["id"] for item in listed["items"]} == {own_a["id"], own_b["id"]}

    deleted = test_client.patch("/api/inquiries/batch", json={"ids": [own_a["id"]], "action": "delete"})
    assert deleted.status_code == 200
    db_session.expire_all()
    assert db_session.get(Inquiry, own_a["id"]) is None


def test_batch_request_validation(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client

    assert test_client.patch("/api/inquiries/batch", json={"ids": [], "action": "delete"}).status_code == 422
    assert test_client.patch("/api/inquiries/batch", json={"ids": [1], "action": "assign"}).status_code == 422
    assert (
        test_client.patch(
            "/api/inquiries/batch",
            json={"ids": [1], "action": "update_status", "data": {"status": "archived"}},
        ).status_code
        == 422
    )


def test_batch_assign_rejects_boolean_assignee(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
) -> None:
    test_client, set_actor = client
    set_actor("admin")
    created = _create(test_client)

    response = test_client.patch(
        "/api/inquiries/batch",
        json={"ids": [created["id"]], "action": "assign", "data": {"assigned_to": True}},
    )
    assert response.status_code == 422

    db_session.expire_all()
    assert db_session.get(Inquiry, created["id"]).assigned_to is None
