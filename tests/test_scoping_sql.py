from __future__ import annotations

import itertools
import logging
from collections.abc import Generator

import pytest
from prometheus_client import REGISTRY
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from inquiry_crm import audit
from inquiry_crm.core.config import get_settings
from inquiry_crm.core.database import Base
from inquiry_crm.crm.models import FollowUpRecord, Inquiry
from inquiry_crm.crm.repositories import follow_up_repository, inquiry_repository
from inquiry_crm.platform.security import (
    AccessDecision,
    ResourceAccessDenied,
    Subject,
    apply_scope_filter,
    decide_point_access,
    ensure_point_access,
)

SUBJECTS = [
    Subject(id=1, role="admin"),
    Subject(id=2, role="manager", department_id=10),
    Subject(id=2, role="manager", department_id=None),
    Subject(id=1, role="sales", department_id=10),
    Subject(id=3, role="sales", department_id=11),
    Subject(id=2, role="customer_service", department_id=11),
    Subject(id=3, role="intern", department_id=10),
    Subject(id=1, role="", department_id=10),
]


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
def clear_audit() -> Generator[None, None, None]:
    audit.audit_entries.clear()
    yield
    audit.audit_entries.clear()


@pytest.fixture()
def inquiries(db_session: Session) -> list[Inquiry]:
    rows = []
    for index, (assigned, created, department) in enumerate(
        itertools.product([None, 1, 2, 3], [1, 2, 3], [None, 10, 11]),
        start=1,
    ):
        rows.append(
            Inquiry(
                inquiry_no=f"INQ-SQL-{index:03d}",
                title=f"Inquiry {index}",
                source_channel="web",
                customer_name="Customer",
                assigned_to=assigned,
                created_by=created,
                department_id=department,
            )
        )
    db_session.add_all(rows)
    db_session.flush()
    for row in rows:
        db_session.add(
            FollowUpRecord(inquiry_id=row.id, follow_up_type="phone", content="called", created_by=row.created_by)
        )
    db_session.commit()
    return rows


def _sample(name: str, labels: dict[str, str]) -> float:
    return REGISTRY.get_sample_value(name, labels) or 0.0


def test_collection_filter_matches_point_decisions(db_session: Session, inquiries: list[Inquiry]) -> None:
    for subject in SUBJECTS:
        listed = set(db_session.scalars(apply_scope_filter(select(Inquiry.id), subject, Inquiry)).all())
        expected = {row.id for row in inquiries if decide_point_access(subject, row) is AccessDecision.ALLOW}
        assert listed == expected, subject


def test_admin_filter_leaves_query_untouched(db_session: Session, inquiries: list[Inquiry]) -> None:
    query = select(Inquiry)
    assert apply_scope_filter(query, Subject(id=1, role="admin"), Inquiry) is query
    assert len(db_session.scalars(query).all()) == len(inquiries)


def test_manager_without_department_lists_nothing(db_session: Session, inquiries: list[Inquiry]) -> None:
    subject = Subject(id=2, role="manager", department_id=None)
    assert db_session.scalars(inquiry_repository.scoped_select(subject)).all() == []


def test_follow_ups_inherit_parent_scope(db_session: Session, inquiries: list[Inquiry]) -> None:
    for subject in SUBJECTS:
        records = db_session.scalars(follow_up_repository.scoped_select(subject)).all()
        visible_parents = {row.id for row in inquiries if inquiry_repository.can_access(subject, row)}
        assert {record.inquiry_id for record in records} == visible_parents, subject
        assert all(follow_up_repository.can_access(subject, record) for record in records)


def test_filter_composes_with_existing_predicates(db_session: Session, inquiries: list[Inquiry]) -> None:
    subject = Subject(id=1, role="sales")
    query = select(Inquiry).where(Inquiry.department_id == 10)
    rows = db_session.scalars(apply_scope_filter(query, subject, Inquiry)).all()

    assert rows
    assert all(row.department_id == 10 for row in rows)
    assert all(row.assigned_to == 1 or row.created_by == 1 for row in rows)


def test_denied_point_access_records_audit_metric_and_log(
    db_session: Session,
    inquiries: list[Inquiry],
    caplog: pytest.LogCaptureFixture,
) -> None:
    subject = Subject(id=2, role="customer_service", department_id=11, correlation_id="scope-corr-1")
    target = next(row for row in inquiries if row.assigned_to == 3)
    labels = {"resource": "inquiry", "action": "update", "role": "customer_service"}
    before = _sample("scope_denied_total", labels)

    with caplog.at_level(logging.INFO, logger="inquiry_crm.platform.security.scoping"):
        with pytest.raises(ResourceAccessDenied) as exc_info:
            inquiry_repository.validate_point_access(subject, target, "update")

    assert exc_info.value.resource == "inquiry"
    assert exc_info.value.action == "update"
    assert _sample("scope_denied_total", labels) == before + 1

    entry = audit.audit_entries[-1]
    assert entry["action"] == "scope.denied"
    assert entry["entity_id"] == str(target.id)
    assert entry["actor_user_id"] == "2"
    assert entry["correlation_id"] == "scope-corr-1"
    assert entry["after"]["resource"] == "inquiry"
    assert audit.entries_for("security.scope", target.id) == [entry]

    records = [record for record in caplog.records if record.getMessage() == "scope.denied"]
    assert records
    assert records[-1].role == "customer_service"
    assert records[-1].user_id == 2


def test_allowed_point_access_has_no_side_effects(db_session: Session, inquiries: list[Inquiry]) -> None:
    subject = Subject(id=3, role="sales")
    target = next(row for row in inquiries if row.created_by == 3)

    ensure_point_access(subject, target, "read", resource_type="inquiry", resource_id=target.id)

    assert not audit.audit_entries


def test_repeated_denials_keep_audit_log_bounded(db_session: Session, inquiries: list[Inquiry]) -> None:
    subject = Subject(id=2, role="customer_service", department_id=11)
    target = next(row for row in inquiries if row.assigned_to == 3)
    audit.resize(5)
    try:
        for _ in range(50):
            with pytest.raises(ResourceAccessDenied):
                inquiry_repository.validate_point_access(subject, target, "read")

        assert len(audit.audit_entries) == 5
        assert all(entry["action"] == "scope.denied" for entry in audit.audit_entries)
    finally:
        audit.resize(get_settings().audit_max_entries)
