from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from enum import StrEnum
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import Select, and_, case, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from inquiry_crm import audit, events
from inquiry_crm.crm.models import (
    CLOSED_INQUIRY_STATUSES,
    FOLLOW_UP_RESULT_STATUS,
    Department,
    FollowUpRecord,
    FollowUpResult,
    Inquiry,
    InquiryStatus,
    User,
)
from inquiry_crm.crm.repositories import (
    FollowUpRepository,
    InquiryRepository,
    follow_up_repository,
    inquiry_repository,
)
from inquiry_crm.crm.schemas import (
    DailyCount,
    DashboardRead,
    DepartmentCreate,
    DepartmentPerformance,
    DepartmentRead,
    DepartmentTreeNode,
    DepartmentUpdate,
    FollowUpCreate,
    FollowUpListResponse,
    FollowUpRead,
    FollowUpStatistics,
    FollowUpUpdate,
    InquiryBatchRequest,
    InquiryBatchResult,
    InquiryCreate,
    InquiryListResponse,
    InquiryRead,
    InquiryStatistics,
    InquiryUpdate,
    UserCreate,
    UserPerformance,
    UserProfileUpdate,
    UserRead,
    UserUpdate,
)
from inquiry_crm.otel import get_tracer, subject_span
from inquiry_crm.platform.security.context import Subject
from inquiry_crm.platform.security.errors import ResourceAccessDenied
from inquiry_crm.platform.security.scoping import ResourceAction

logger = logging.getLogger(__name__)
tracer = get_tracer("inquiry_crm.crm.service")

_TWO_PLACES = Decimal("0.01")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _plain(payload: dict[str, Any]) -> dict[str, Any]:
    return {key: value.value if isinstance(value, StrEnum) else value for key, value in payload.items()}


def _rate(part: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return round(part / total * 100, 2)


def _money(value: Any) -> Decimal:
    if value is None:
        return Decimal("0.00")
    return Decimal(str(value)).quantize(_TWO_PLACES)


def _apply_created_range(stmt: Select[Any], column: Any, filters: dict[str, Any]) -> Select[Any]:
    if filters.get("created_from") is not None:
        stmt = stmt.where(column >= filters["created_from"])
    if filters.get("created_to") is not None:
        stmt = stmt.where(column <= filters["created_to"])
    return stmt


def _count(session: Session, stmt: Select[Any]) -> int:
    return int(session.scalar(select(func.count()).select_from(stmt.order_by(None).subquery())) or 0)


def _ensure_user_exists(session: Session, user_id: int | None, field_name: str) -> None:
    if user_id is not None and session.get(User, user_id) is None:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=f"{field_name} user does not exist")


def _ensure_department_exists(session: Session, department_id: int | None, field_name: str = "department_id") -> None:
    if department_id is not None and session.get(Department, department_id) is None:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=f"{field_name} does not exist")


def load_visible_inquiry(
    session: Session,
    subject: Subject,
    inquiry_id: int,
    action: ResourceAction = ResourceAction.READ,
    repository: InquiryRepository = inquiry_repository,
) -> Inquiry:
    inquiry = session.get(Inquiry, inquiry_id)
    if inquiry is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="inquiry not found")
    try:
        repository.validate_point_access(subject, inquiry, action)
    except ResourceAccessDenied:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="inquiry not found") from None
    return inquiry


class InquiryService:
    entity_type = "inquiry"
    _required_fields = frozenset(
        {"title", "source_channel", "customer_name", "customer_type", "priority", "status", "currency", "tags", "custom_fields"}
    )

    def __init__(self, repository: InquiryRepository = inquiry_repository) -> None:
        self.repository = repository

    def list_inquiries(
        self,
        session: Session,
        subject: Subject,
        filters: dict[str, Any],
        page: int,
        page_size: int,
    ) -> InquiryListResponse:
        stmt = self.repository.scoped_select(subject)
        stmt = self._apply_filters(stmt, filters)
        total = _count(session, stmt)
        rows = session.scalars(
            stmt.order_by(Inquiry.created_at.desc(), Inquiry.id.desc()).offset((page - 1) * page_size).limit(page_size)
        ).all()
        return InquiryListResponse(
            items=[self._to_read(item) for item in rows],
            total=total,
            page=page,
            page_size=page_size,
        )

    def create_inquiry(self, session: Session, subject: Subject, dto: InquiryCreate) -> InquiryRead:
        _ensure_user_exists(session, dto.assigned_to, "assigned_to")
        _ensure_department_exists(session, dto.department_id)

        inquiry = Inquiry(created_by=subject.id, **_plain(dto.model_dump()))
        session.add(inquiry)
        session.flush()
        created = self._to_read(inquiry)

        audit.record(
            actor_user_id=subject.id,
            entity_type=self.entity_type,
            entity_id=inquiry.id,
            action="create",
            before=None,
            after=created.model_dump(mode="json"),
            correlation_id=subject.correlation_id,
        )
        events.publish(
            events.build_envelope(
                "inquiry.created",
                inquiry.id,
                {"inquiry_no": inquiry.inquiry_no, "status": inquiry.status, "assigned_to": inquiry.assigned_to},
                actor_user_id=subject.id,
            )
        )
        session.commit()
        logger.info(
            "inquiry.created",
            extra={
                "entity_id": inquiry.id,
                "user_id": subject.id,
                "customer_email": inquiry.customer_email,
                "customer_phone": inquiry.customer_phone,
            },
        )
        return created

    def get_inquiry(self, session: Session, subject: Subject, inquiry_id: int) -> InquiryRead:
        return self._to_read(load_visible_inquiry(session, subject, inquiry_id, ResourceAction.READ, self.repository))

    def update_inquiry(self, session: Session, subject: Subject, inquiry_id: int, dto: InquiryUpdate) -> InquiryRead:
        inquiry = load_visible_inquiry(session, subject, inquiry_id, ResourceAction.UPDATE, self.repository)

        payload = _plain(dto.model_dump(exclude_unset=True))
        null_fields = sorted(key for key, value in payload.items() if value is None and key in self._required_fields)
        if null_fields:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=f"fields cannot be null: {', '.join(null_fields)}",
            )
        if "assigned_to" in payload:
            _ensure_user_exists(session, payload["assigned_to"], "assigned_to")
        if "department_id" in payload:
            _ensure_department_exists(session, payload["department_id"])
        if not payload:
            return self._to_read(inquiry)

        before = self._to_read(inquiry).model_dump(mode="json")
        for key, value in payload.items():
            setattr(inquiry, key, value)
        inquiry.updated_at = utcnow()
        session.flush()
        updated = self._to_read(inquiry)

        audit.record(
            actor_user_id=subject.id,
            entity_type=self.entity_type,
            entity_id=inquiry.id,
            action="update",
            before=before,
            after=updated.model_dump(mode="json"),
            correlation_id=subject.correlation_id,
        )
        events.publish(
            events.build_envelope(
                "inquiry.updated",
                inquiry.id,
                {"changed_fields": sorted(payload), "status": inquiry.status},
                actor_user_id=subject.id,
            )
        )
        session.commit()
        return updated

    def delete_inquiry(self, session: Session, subject: Subject, inquiry_id: int) -> None:
        inquiry = load_visible_inquiry(session, subject, inquiry_id, ResourceAction.DELETE, self.repository)
        before = self._to_read(inquiry).model_dump(mode="json")
        session.delete(inquiry)
        session.flush()

        audit.record(
            actor_user_id=subject.id,
            entity_type=self.entity_type,
            entity_id=inquiry_id,
            action="delete",
            before=before,
            after=None,
            correlation_id=subject.correlation_id,
        )
        events.publish(
            events.build_envelope("inquiry.deleted", inquiry_id, {"inquiry_no": before["inquiry_no"]}, actor_user_id=subject.id)
        )
        session.commit()

    def batch_update(self, session: Session, subject: Subject, dto: InquiryBatchRequest) -> InquiryBatchResult:
        ids = sorted(set(dto.ids))
        action = ResourceAction.DELETE if dto.action == "delete" else ResourceAction.UPDATE
        records = {item.id: item for item in session.scalars(select(Inquiry).where(Inquiry.id.in_(ids))).all()}

        # All-or-nothing: any missing or out-of-scope id rejects the whole batch.
        rejected = False
        for inquiry_id in ids:
            record = records.get(inquiry_id)
            if record is None:
                rejected = True
                continue
            try:
                self.repository.validate_point_access(subject, record, action)
            except ResourceAccessDenied:
                rejected = True
        if rejected:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="one or more inquiries not found")

        if dto.action == "assign":
            _ensure_user_exists(session, dto.data["assigned_to"], "assigned_to")

        for inquiry_id in ids:
            record = records[inquiry_id]
            before = self._to_read(record).model_dump(mode="json")
            if dto.action == "delete":
                session.delete(record)
                after = None
                event_type = "inquiry.deleted"
            else:
                if dto.action == "assign":
                    record.assigned_to = dto.data["assigned_to"]
                else:
                    record.status = str(dto.data["status"])
                record.updated_at = utcnow()
                session.flush()
                after = self._to_read(record).model_dump(mode="json")
                event_type = "inquiry.updated"
            audit.record(
                actor_user_id=subject.id,
                entity_type=self.entity_type,
                entity_id=inquiry_id,
                action=f"batch.{dto.action}",
                before=before,
                after=after,
                correlation_id=subject.correlation_id,
            )
            events.publish(
                events.build_envelope(event_type, inquiry_id, {"batch_action": dto.action}, actor_user_id=subject.id)
            )

        session.commit()
        return InquiryBatchResult(action=dto.action, affected=len(ids), ids=ids)

    @staticmethod
    def _apply_filters(stmt: Select[Any], filters: dict[str, Any]) -> Select[Any]:
        for key in ("status", "priority", "assigned_to", "department_id", "source_channel", "customer_type"):
            value = filters.get(key)
            if value is not None:
                stmt = stmt.where(getattr(Inquiry, key) == (value.value if isinstance(value, StrEnum) else value))
        stmt = _apply_created_range(stmt, Inquiry.created_at, filters)
        if filters.get("q"):
            pattern = f"%{filters['q']}%"
            stmt = stmt.where(
                or_(
                    Inquiry.title.ilike(pattern),
                    Inquiry.content.ilike(pattern),
                    Inquiry.customer_name.ilike(pattern),
                    Inquiry.customer_email.ilike(pattern),
                    Inquiry.customer_company.ilike(pattern),
                    Inquiry.inquiry_no.ilike(pattern),
                )
            )
        return stmt

    @staticmethod
    def _to_read(inquiry: Inquiry) -> InquiryRead:
        return InquiryRead.model_validate(inquiry)


class FollowUpService:
    entity_type = "follow_up"

    def __init__(
        self,
        repository: FollowUpRepository = follow_up_repository,
        inquiries: InquiryRepository = inquiry_repository,
    ) -> None:
        self.repository = repository
        self.inquiries = inquiries

    def list_follow_ups(
        self,
        session: Session,
        subject: Subject,
        filters: dict[str, Any],
        page: int,
        page_size: int,
    ) -> FollowUpListResponse:
        stmt = self.repository.scoped_select(subject)
        for key in ("inquiry_id", "follow_up_type", "result", "created_by"):
            value = filters.get(key)
            if value is not None:
                stmt = stmt.where(getattr(FollowUpRecord, key) == (value.value if isinstance(value, StrEnum) else value))
        stmt = _apply_created_range(stmt, FollowUpRecord.created_at, filters)
        total = _count(session, stmt)
        rows = session.scalars(
            stmt.order_by(FollowUpRecord.created_at.desc(), FollowUpRecord.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        ).all()
        return FollowUpListResponse(
            items=[self._to_read(item) for item in rows],
            total=total,
            page=page,
            page_size=page_size,
        )

    def list_for_inquiry(self, session: Session, subject: Subject, inquiry_id: int) -> list[FollowUpRead]:
        load_visible_inquiry(session, subject, inquiry_id, ResourceAction.READ, self.inquiries)
        rows = session.scalars(
            select(FollowUpRecord)
            .where(FollowUpRecord.inquiry_id == inquiry_id)
            .order_by(FollowUpRecord.created_at.desc(), FollowUpRecord.id.desc())
        ).all()
        return [self._to_read(item) for item in rows]

    def get_follow_up(self, session: Session, subject: Subject, follow_up_id: int) -> FollowUpRead:
        return self._to_read(self._load_visible(session, subject, follow_up_id))

    def create_follow_up(self, session: Session, subject: Subject, dto: FollowUpCreate) -> FollowUpRead:
        inquiry = load_visible_inquiry(session, subject, dto.inquiry_id, ResourceAction.UPDATE, self.inquiries)

        record = FollowUpRecord(created_by=subject.id, **_plain(dto.model_dump()))
        session.add(record)
        session.flush()
        self._sync_inquiry_status(session, subject, inquiry, dto.result)
        created = self._to_read(record)

        audit.record(
            actor_user_id=subject.id,
            entity_type=self.entity_type,
            entity_id=record.id,
            action="create",
            before=None,
            after=created.model_dump(mode="json"),
            correlation_id=subject.correlation_id,
        )
        events.publish(
            events.build_envelope(
                "follow_up.created",
                record.id,
                {"inquiry_id": inquiry.id, "result": record.result},
                actor_user_id=subject.id,
            )
        )
        session.commit()
        return created

    def update_follow_up(self, session: Session, subject: Subject, follow_up_id: int, dto: FollowUpUpdate) -> FollowUpRead:
        record = self._load_visible(session, subject, follow_up_id)
        self._ensure_author(subject, record)

        payload = _plain(dto.model_dump(exclude_unset=True))
        for key in ("follow_up_type", "content", "attachments"):
            if key in payload and payload[key] is None:
                payload.pop(key)
        if not payload:
            return self._to_read(record)

        before = self._to_read(record).model_dump(mode="json")
        for key, value in payload.items():
            setattr(record, key, value)
        record.updated_at = utcnow()
        session.flush()
        if payload.get("result") is not None:
            self._sync_inquiry_status(session, subject, record.inquiry, FollowUpResult(payload["result"]))
        updated = self._to_read(record)

        audit.record(
            actor_user_id=subject.id,
            entity_type=self.entity_type,
            entity_id=record.id,
            action="update",
            before=before,
            after=updated.model_dump(mode="json"),
            correlation_id=subject.correlation_id,
        )
        events.publish(
            events.build_envelope(
                "follow_up.updated",
                record.id,
                {"inquiry_id": record.inquiry_id, "changed_fields": sorted(payload)},
                actor_user_id=subject.id,
            )
        )
        session.commit()
        return updated

    def delete_follow_up(self, session: Session, subject: Subject, follow_up_id: int) -> None:
        record = self._load_visible(session, subject, follow_up_id)
        self._ensure_author(subject, record)
        before = self._to_read(record).model_dump(mode="json")
        session.delete(record)
        session.flush()

        audit.record(
            actor_user_id=subject.id,
            entity_type=self.entity_type,
            entity_id=follow_up_id,
            action="delete",
            before=before,
            after=None,
            correlation_id=subject.correlation_id,
        )
        events.publish(
            events.build_envelope(
                "follow_up.deleted",
                follow_up_id,
                {"inquiry_id": before["inquiry_id"]},
                actor_user_id=subject.id,
            )
        )
        session.commit()

    def pending_follow_ups(self, session: Session, subject: Subject, limit: int = 50) -> list[FollowUpRead]:
        rows = session.scalars(
            self._pending_stmt(subject)
            .order_by(FollowUpRecord.next_follow_up_date.asc(), FollowUpRecord.id.asc())
            .limit(limit)
        ).all()
        return [self._to_read(item) for item in rows]

    def statistics(self, session: Session, subject: Subject, filters: dict[str, Any]) -> FollowUpStatistics:
        scoped = self.repository.scoped_select(subject)
        if filters.get("inquiry_id") is not None:
            scoped = scoped.where(FollowUpRecord.inquiry_id == filters["inquiry_id"])
        scoped = _apply_created_range(scoped, FollowUpRecord.created_at, filters)
        subquery = scoped.subquery()

        by_type = {
            str(key): int(count)
            for key, count in session.execute(
                select(subquery.c.follow_up_type, func.count()).group_by(subquery.c.follow_up_type)
            ).all()
        }
        by_result = {
            str(key) if key is not None else "none": int(count)
            for key, count in session.execute(select(subquery.c.result, func.count()).group_by(subquery.c.result)).all()
        }
        pending_stmt = self._pending_stmt(subject)
        if filters.get("inquiry_id") is not None:
            pending_stmt = pending_stmt.where(FollowUpRecord.inquiry_id == filters["inquiry_id"])
        return FollowUpStatistics(
            total=sum(by_type.values()),
            pending=_count(session, pending_stmt),
            by_type=by_type,
            by_result=by_result,
        )

    def _pending_stmt(self, subject: Subject) -> Select[tuple[FollowUpRecord]]:
        return self.repository.scoped_select(subject).where(
            and_(
                FollowUpRecord.next_follow_up_date.is_not(None),
                FollowUpRecord.next_follow_up_date <= utcnow(),
                or_(FollowUpRecord.result.is_(None), FollowUpRecord.result != FollowUpResult.CLOSED.value),
            )
        )

    def _load_visible(self, session: Session, subject: Subject, follow_up_id: int) -> FollowUpRecord:
        record = session.get(FollowUpRecord, follow_up_id)
        if record is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="follow-up not found")
        try:
            self.repository.validate_point_access(subject, record, ResourceAction.READ)
        except ResourceAccessDenied:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="follow-up not found") from None
        return record

    @staticmethod
    def _ensure_author(subject: Subject, record: FollowUpRecord) -> None:
        if record.created_by != subject.id:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="only the author may modify this follow-up")

    def _sync_inquiry_status(
        self,
        session: Session,
        subject: Subject,
        inquiry: Inquiry,
        result: FollowUpResult | None,
    ) -> None:
        target = FOLLOW_UP_RESULT_STATUS.get(result) if result is not None else None
        if target is None or inquiry.status == target.value:
            return
        previous = inquiry.status
        inquiry.status = target.value
        inquiry.updated_at = utcnow()
        session.flush()
        audit.record(
            actor_user_id=subject.id,
            entity_type=InquiryService.entity_type,
            entity_id=inquiry.id,
            action="status.sync",
            before={"status": previous},
            after={"status": inquiry.status},
            correlation_id=subject.correlation_id,
        )
        events.publish(
            events.build_envelope(
                "inquiry.updated",
                inquiry.id,
                {"changed_fields": ["status"], "status": inquiry.status},
                actor_user_id=subject.id,
            )
        )

    @staticmethod
    def _to_read(record: FollowUpRecord) -> FollowUpRead:
        return FollowUpRead.model_validate(record)


class StatisticsService:
    def __init__(
        self,
        repository: InquiryRepository = inquiry_repository,
        follow_ups: FollowUpService | None = None,
    ) -> None:
        self.repository = repository
        self.follow_ups = follow_ups or FollowUpService()

    def scoped_inquiries(self, subject: Subject, filters: dict[str, Any]) -> Select[tuple[Inquiry]]:
        stmt = self.repository.scoped_select(subject)
        stmt = _apply_created_range(stmt, Inquiry.created_at, filters)
        if filters.get("department_id") is not None:
            stmt = stmt.where(Inquiry.department_id == filters["department_id"])
        return stmt

    def inquiry_statistics(self, session: Session, subject: Subject, filters: dict[str, Any]) -> InquiryStatistics:
        with subject_span(tracer, "statistics.inquiries", subject) as span:
            subquery = self.scoped_inquiries(subject, filters).subquery()
            by_status = self._group_counts(session, subquery.c.status)
            total = sum(by_status.values())
            closed = sum(by_status.get(item.value, 0) for item in CLOSED_INQUIRY_STATUSES)
            value_total, value_count = session.execute(
                select(func.sum(subquery.c.estimated_value), func.count(subquery.c.estimated_value))
            ).one()
            total_value = _money(value_total)
            average_value = _money(total_value / value_count) if value_count else _money(None)
            span.set_attribute("statistics.total", total)
            return InquiryStatistics(
                total=total,
                new=by_status.get(InquiryStatus.NEW.value, 0),
                closed=closed,
                conversion_rate=_rate(closed, total),
                total_value=total_value,
                average_value=average_value,
                by_status=by_status,
                by_priority=self._group_counts(session, subquery.c.priority),
                by_source=self._group_counts(session, subquery.c.source_channel),
                by_department=self._group_counts(session, subquery.c.department_id),
            )

    def user_performance(self, session: Session, subject: Subject, filters: dict[str, Any]) -> list[UserPerformance]:
        subquery = self.scoped_inquiries(subject, filters).where(Inquiry.assigned_to.is_not(None)).subquery()
        won_or_closed = (InquiryStatus.WON.value, InquiryStatus.CLOSED.value)
        rows = session.execute(
            select(
                subquery.c.assigned_to,
                func.count(),
                func.sum(func.coalesce(subquery.c.estimated_value, 0)),
                func.sum(case((subquery.c.status.in_(won_or_closed), 1), else_=0)),
            ).group_by(subquery.c.assigned_to)
        ).all()
        if not rows:
            return []

        user_ids = [int(row[0]) for row in rows]
        users = {item.id: item for item in session.scalars(select(User).where(User.id.in_(user_ids))).all()}
        follow_up_counts = dict(
            session.execute(
                select(FollowUpRecord.created_by, func.count())
                .where(FollowUpRecord.created_by.in_(user_ids))
                .where(FollowUpRecord.inquiry_id.in_(select(subquery.c.id)))
                .group_by(FollowUpRecord.created_by)
            ).all()
        )

        performance: list[UserPerformance] = []
        for user_id, total, value_total, closed in rows:
            user = users.get(user_id)
            if user is None:
                continue
            closed_count = int(closed or 0)
            performance.append(
                UserPerformance(
                    user_id=user.id,
                    username=user.username,
                    full_name=user.full_name,
                    total=int(total),
                    closed=closed_count,
                    conversion_rate=_rate(closed_count, int(total)),
                    total_value=_money(value_total),
                    follow_up_count=int(follow_up_counts.get(user.id, 0)),
                )
            )
        performance.sort(key=lambda item: (-item.total_value, item.user_id))
        return performance

    def department_performance(
        self,
        session: Session,
        subject: Subject,
        filters: dict[str, Any],
    ) -> list[DepartmentPerformance]:
        subquery = self.scoped_inquiries(subject, filters).where(Inquiry.department_id.is_not(None)).subquery()
        won_or_closed = (InquiryStatus.WON.value, InquiryStatus.CLOSED.value)
        rows = session.execute(
            select(
                subquery.c.department_id,
                func.count(),
                func.sum(func.coalesce(subquery.c.estimated_value, 0)),
                func.sum(case((subquery.c.status.in_(won_or_closed), 1), else_=0)),
            ).group_by(subquery.c.department_id)
        ).all()
        if not rows:
            return []

        department_ids = [int(row[0]) for row in rows]
        departments = {
            item.id: item for item in session.scalars(select(Department).where(Department.id.in_(department_ids))).all()
        }
        user_counts = dict(
            session.execute(
                select(User.department_id, func.count())
                .where(User.department_id.in_(department_ids))
                .group_by(User.department_id)
            ).all()
        )

        performance: list[DepartmentPerformance] = []
        for department_id, total, value_total, closed in rows:
            department = departments.get(department_id)
            if department is None:
                continue
            closed_count = int(closed or 0)
            user_count = int(user_counts.get(department.id, 0))
            performance.append(
                DepartmentPerformance(
                    department_id=department.id,
                    department_name=department.name,
                    total=int(total),
                    closed=closed_count,
                    conversion_rate=_rate(closed_count, int(total)),
                    total_value=_money(value_total),
                    user_count=user_count,
                    average_inquiries_per_user=round(int(total) / user_count, 2) if user_count else 0.0,
                )
            )
        performance.sort(key=lambda item: (-item.total_value, item.department_id))
        return performance

    def dashboard(self, session: Session, subject: Subject, *, days: int = 30, trend_days: int = 7) -> DashboardRead:
        with subject_span(tracer, "statistics.dashboard", subject):
            now = utcnow()
            window = {"created_from": now - timedelta(days=days), "created_to": now}
            recent = session.scalars(
                self.repository.scoped_select(subject).order_by(Inquiry.created_at.desc(), Inquiry.id.desc()).limit(5)
            ).all()
            return DashboardRead(
                overview=self.inquiry_statistics(session, subject, window),
                recent_inquiries=[InquiryRead.model_validate(item) for item in recent],
                pending_follow_ups=self.follow_ups.pending_follow_ups(session, subject, limit=10),
                top_performers=self.user_performance(session, subject, window)[:5],
                daily_trend=self.daily_trend(session, subject, now.date() - timedelta(days=trend_days - 1), now.date()),
            )

    def daily_trend(self, session: Session, subject: Subject, start: date, end: date) -> list[DailyCount]:
        start_at = datetime.combine(start, datetime.min.time(), tzinfo=timezone.utc)
        stmt = self.repository.scoped_select(subject).where(Inquiry.created_at >= start_at)
        counts: dict[date, int] = {}
        for created_at in session.scalars(select(stmt.subquery().c.created_at)).all():
            counts[created_at.date()] = counts.get(created_at.date(), 0) + 1
        days = (end - start).days + 1
        return [
            DailyCount(day=start + timedelta(days=offset), count=counts.get(start + timedelta(days=offset), 0))
            for offset in range(max(days, 0))
        ]

    @staticmethod
    def _group_counts(session: Session, column: Any) -> dict[str, int]:
        rows = session.execute(select(column, func.count()).group_by(column)).all()
        return {str(key) if key is not None else "none": int(count) for key, count in rows}


class DepartmentService:
    entity_type = "department"

    def list_departments(self, session: Session, filters: dict[str, Any]) -> list[DepartmentRead]:
        stmt = select(Department)
        if filters.get("status") is not None:
            stmt = stmt.where(Department.status == filters["status"])
        if filters.get("parent_id") is not None:
            stmt = stmt.where(Department.parent_id == filters["parent_id"])
        if filters.get("q"):
            stmt = stmt.where(Department.name.ilike(f"%{filters['q']}%"))
        rows = session.scalars(stmt.order_by(Department.name.asc(), Department.id.asc())).all()
        return [DepartmentRead.model_validate(item) for item in rows]

    def department_tree(self, session: Session) -> list[DepartmentTreeNode]:
        departments = session.scalars(select(Department).order_by(Department.name.asc(), Department.id.asc())).all()
        user_counts = dict(
            session.execute(
                select(User.department_id, func.count()).where(User.department_id.is_not(None)).group_by(User.department_id)
            ).all()
        )
        nodes = {
            item.id: DepartmentTreeNode.model_validate(item).model_copy(update={"user_count": int(user_counts.get(item.id, 0))})
            for item in departments
        }
        roots: list[DepartmentTreeNode] = []
        for item in departments:
            node = nodes[item.id]
            parent = nodes.get(item.parent_id) if item.parent_id is not None else None
            if parent is None:
                roots.append(node)
            else:
                parent.children.append(node)
        return roots

    def get_department(self, session: Session, department_id: int) -> DepartmentRead:
        return DepartmentRead.model_validate(self._get(session, department_id))

    def create_department(self, session: Session, subject: Subject, dto: DepartmentCreate) -> DepartmentRead:
        _ensure_department_exists(session, dto.parent_id, "parent_id")
        _ensure_user_exists(session, dto.manager_id, "manager_id")
        self._ensure_unique_name(session, dto.name, dto.parent_id)

        department = Department(**_plain(dto.model_dump()))
        session.add(department)
        self._flush_unique(session)
        created = DepartmentRead.model_validate(department)
        audit.record(
            actor_user_id=subject.id,
            entity_type=self.entity_type,
            entity_id=department.id,
            action="create",
            before=None,
            after=created.model_dump(mode="json"),
            correlation_id=subject.correlation_id,
        )
        events.publish(events.build_envelope("department.created", department.id, {"name": department.name}, subject.id))
        session.commit()
        return created

    def update_department(
        self,
        session: Session,
        subject: Subject,
        department_id: int,
        dto: DepartmentUpdate,
    ) -> DepartmentRead:
        department = self._get(session, department_id)
        payload = _plain(dto.model_dump(exclude_unset=True))
        for key in ("name", "status"):
            if key in payload and payload[key] is None:
                payload.pop(key)
        if not payload:
            return DepartmentRead.model_validate(department)

        if "parent_id" in payload:
            self._ensure_valid_parent(session, department.id, payload["parent_id"])
        if "manager_id" in payload:
            _ensure_user_exists(session, payload["manager_id"], "manager_id")
        if "name" in payload or "parent_id" in payload:
            self._ensure_unique_name(
                session,
                payload.get("name", department.name),
                payload.get("parent_id", department.parent_id),
                exclude_id=department.id,
            )

        before = DepartmentRead.model_validate(department).model_dump(mode="json")
        for key, value in payload.items():
            setattr(department, key, value)
        department.updated_at = utcnow()
        self._flush_unique(session)
        updated = DepartmentRead.model_validate(department)
        audit.record(
            actor_user_id=subject.id,
            entity_type=self.entity_type,
            entity_id=department.id,
            action="update",
            before=before,
            after=updated.model_dump(mode="json"),
            correlation_id=subject.correlation_id,
        )
        events.publish(events.build_envelope("department.updated", department.id, {"changed_fields": sorted(payload)}, subject.id))
        session.commit()
        return updated

    def delete_department(self, session: Session, subject: Subject, department_id: int) -> None:
        department = self._get(session, department_id)
        if session.scalar(select(func.count()).select_from(Department).where(Department.parent_id == department.id)):
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="department has child departments")
        if session.scalar(select(func.count()).select_from(User).where(User.department_id == department.id)):
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="department has users")

        before = DepartmentRead.model_validate(department).model_dump(mode="json")
        session.delete(department)
        session.flush()
        audit.record(
            actor_user_id=subject.id,
            entity_type=self.entity_type,
            entity_id=department_id,
            action="delete",
            before=before,
            after=None,
            correlation_id=subject.correlation_id,
        )
        events.publish(events.build_envelope("department.deleted", department_id, {"name": before["name"]}, subject.id))
        session.commit()

    @staticmethod
    def _get(session: Session, department_id: int) -> Department:
        department = session.get(Department, department_id)
        if department is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="department not found")
        return department

    @staticmethod
    def _ensure_unique_name(session: Session, name: str, parent_id: int | None, exclude_id: int | None = None) -> None:
        parent_clause = Department.parent_id.is_(None) if parent_id is None else Department.parent_id == parent_id
        stmt = select(Department.id).where(Department.name == name, parent_clause)
        if exclude_id is not None:
            stmt = stmt.where(Department.id != exclude_id)
        if session.scalar(stmt.limit(1)) is not None:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="department name already exists under this parent")

    @staticmethod
    def _ensure_valid_parent(session: Session, department_id: int, parent_id: int | None) -> None:
        if parent_id is None:
            return
        if parent_id == department_id:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="department cannot be its own parent")
        cursor = session.get(Department, parent_id)
        if cursor is None:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="parent_id does not exist")
        seen: set[int] = set()
        while cursor is not None and cursor.id not in seen:
            if cursor.id == department_id:
                raise HTTPException(
                    status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                    detail="department parent would create a cycle",
                )
            seen.add(cursor.id)
            cursor = session.get(Department, cursor.parent_id) if cursor.parent_id is not None else None

    @staticmethod
    def _flush_unique(session: Session) -> None:
        try:
            session.flush()
        except IntegrityError as exc:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="department name already exists under this parent") from exc


class UserService:
    entity_type = "user"

    def get_me(self, session: Session, subject: Subject) -> UserRead:
        return self.get_user(session, subject.id)

    def get_user(self, session: Session, user_id: int) -> UserRead:
        return UserRead.model_validate(self._get(session, user_id))

    def list_users(self, session: Session, filters: dict[str, Any]) -> list[UserRead]:
        stmt = select(User)
        for key in ("role", "status", "department_id"):
            value = filters.get(key)
            if value is not None:
                stmt = stmt.where(getattr(User, key) == (value.value if isinstance(value, StrEnum) else value))
        if filters.get("q"):
            pattern = f"%{filters['q']}%"
            stmt = stmt.where(or_(User.username.ilike(pattern), User.full_name.ilike(pattern), User.email.ilike(pattern)))
        rows = session.scalars(stmt.order_by(User.id.asc())).all()
        return [UserRead.model_validate(item) for item in rows]

    def create_user(self, session: Session, subject: Subject, dto: UserCreate) -> UserRead:
        _ensure_department_exists(session, dto.department_id)
        self._ensure_unique(session, username=dto.username, email=str(dto.email))

        user = User(**_plain(dto.model_dump()))
        session.add(user)
        session.flush()
        created = UserRead.model_validate(user)
        audit.record(
            actor_user_id=subject.id,
            entity_type=self.entity_type,
            entity_id=user.id,
            action="create",
            before=None,
            after=created.model_dump(mode="json"),
            correlation_id=subject.correlation_id,
        )
        events.publish(events.build_envelope("user.created", user.id, {"role": user.role}, subject.id))
        session.commit()
        return created

    def update_user(self, session: Session, subject: Subject, user_id: int, dto: UserUpdate) -> UserRead:
        user = self._get(session, user_id)
        payload = _plain(dto.model_dump(exclude_unset=True))
        for key in ("email", "role", "status"):
            if key in payload and payload[key] is None:
                payload.pop(key)
        if not payload:
            return UserRead.model_validate(user)
        if "department_id" in payload:
            _ensure_department_exists(session, payload["department_id"])
        if "email" in payload:
            payload["email"] = str(payload["email"])
            self._ensure_unique(session, email=payload["email"], exclude_id=user.id)

        before = UserRead.model_validate(user).model_dump(mode="json")
        for key, value in payload.items():
            setattr(user, key, value)
        user.updated_at = utcnow()
        session.flush()
        updated = UserRead.model_validate(user)
        audit.record(
            actor_user_id=subject.id,
            entity_type=self.entity_type,
            entity_id=user.id,
            action="update",
            before=before,
            after=updated.model_dump(mode="json"),
            correlation_id=subject.correlation_id,
        )
        events.publish(events.build_envelope("user.updated", user.id, {"changed_fields": sorted(payload)}, subject.id))
        session.commit()
        return updated

    def update_profile(self, session: Session, subject: Subject, dto: UserProfileUpdate) -> UserRead:
        user = self._get(session, subject.id)
        payload = {key: value for key, value in dto.model_dump(exclude_unset=True).items() if value is not None}
        if not payload:
            return UserRead.model_validate(user)

        before = UserRead.model_validate(user).model_dump(mode="json")
        for key, value in payload.items():
            setattr(user, key, value)
        user.updated_at = utcnow()
        session.flush()
        updated = UserRead.model_validate(user)
        audit.record(
            actor_user_id=subject.id,
            entity_type=self.entity_type,
            entity_id=user.id,
            action="profile.update",
            before=before,
            after=updated.model_dump(mode="json"),
            correlation_id=subject.correlation_id,
        )
        events.publish(events.build_envelope("user.updated", user.id, {"changed_fields": sorted(payload)}, subject.id))
        session.commit()
        return updated

    def delete_user(self, session: Session, subject: Subject, user_id: int) -> None:
        user = self._get(session, user_id)
        owned_inquiries = session.scalar(
            select(func.count())
            .select_from(Inquiry)
            .where(or_(Inquiry.assigned_to == user.id, Inquiry.created_by == user.id))
        )
        if owned_inquiries:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="user has related inquiries")
        authored = session.scalar(
            select(func.count()).select_from(FollowUpRecord).where(FollowUpRecord.created_by == user.id)
        )
        if authored:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="user has related follow-ups")

        before = UserRead.model_validate(user).model_dump(mode="json")
        session.execute(update(Department).where(Department.manager_id == user.id).values(manager_id=None))
        session.delete(user)
        session.flush()
        audit.record(
            actor_user_id=subject.id,
            entity_type=self.entity_type,
            entity_id=user_id,
            action="delete",
            before=before,
            after=None,
            correlation_id=subject.correlation_id,
        )
        events.publish(events.build_envelope("user.deleted", user_id, {"username": before["username"]}, subject.id))
        session.commit()

    @staticmethod
    def _get(session: Session, user_id: int) -> User:
        user = session.get(User, user_id)
        if user is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="user not found")
        return user

    @staticmethod
    def _ensure_unique(
        session: Session,
        *,
        username: str | None = None,
        email: str | None = None,
        exclude_id: int | None = None,
    ) -> None:
        clauses = []
        if username is not None:
            clauses.append(User.username == username)
        if email is not None:
            clauses.append(User.email == email)
        stmt = select(User.id).where(or_(*clauses))
        if exclude_id is not None:
            stmt = stmt.where(User.id != exclude_id)
        if session.scalar(stmt.limit(1)) is not None:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="username or email already exists")

