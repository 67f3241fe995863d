from __future__ import annotations

import secrets
import time
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import StrEnum
from typing import Any

from sqlalchemy import (
    JSON,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from inquiry_crm.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_inquiry_no() -> str:
    millis = str(int(time.time() * 1000))
    return f"INQ{millis[-8:]}{secrets.token_hex(3).upper()}"


class DepartmentStatus(StrEnum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class UserStatus(StrEnum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


class InquiryStatus(StrEnum):
    NEW = "new"
    CONTACTED = "contacted"
    QUOTED = "quoted"
    NEGOTIATING = "negotiating"
    WON = "won"
    LOST = "lost"
    CLOSED = "closed"


CLOSED_INQUIRY_STATUSES = (InquiryStatus.WON, InquiryStatus.LOST, InquiryStatus.CLOSED)


class InquiryPriority(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class CustomerType(StrEnum):
    INDIVIDUAL = "individual"
    ENTERPRISE = "enterprise"
    GOVERNMENT = "government"
    OTHER = "other"


class FollowUpType(StrEnum):
    PHONE = "phone"
    EMAIL = "email"
    WECHAT = "wechat"
    MEETING = "meeting"
    VISIT = "visit"
    OTHER = "other"


class FollowUpResult(StrEnum):
    NO_ANSWER = "no_answer"
    INTERESTED = "interested"
    NOT_INTERESTED = "not_interested"
    NEED_MORE_INFO = "need_more_info"
    QUOTED = "quoted"
    NEGOTIATING = "negotiating"
    CLOSED = "closed"


FOLLOW_UP_RESULT_STATUS: dict[FollowUpResult, InquiryStatus] = {
    FollowUpResult.INTERESTED: InquiryStatus.CONTACTED,
    FollowUpResult.QUOTED: InquiryStatus.QUOTED,
    FollowUpResult.NEGOTIATING: InquiryStatus.NEGOTIATING,
    FollowUpResult.CLOSED: InquiryStatus.WON,
    FollowUpResult.NOT_INTERESTED: InquiryStatus.LOST,
}


class Department(Base):
    __tablename__ = "departments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    parent_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("departments.id", ondelete="RESTRICT"),
        nullable=True,
    )
    manager_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("users.id", ondelete="SET NULL", use_alter=True, name="fk_departments_manager_id"),
        nullable=True,
    )
    status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=DepartmentStatus.ACTIVE.value,
        server_default=DepartmentStatus.ACTIVE.value,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    __table_args__ = (UniqueConstraint("parent_id", "name", name="uq_departments_parent_name"),)


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    full_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    # Free-form: values outside the known roles fall back to the narrowest scope.
    role: Mapped[str] = mapped_column(String(32), nullable=False, default="sales", server_default="sales")
    department_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("departments.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=UserStatus.ACTIVE.value,
        server_default=UserStatus.ACTIVE.value,
    )
    last_login_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )


class Inquiry(Base):
    __tablename__ = "inquiries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    inquiry_no: Mapped[str] = mapped_column(String(32), nullable=False, unique=True, default=generate_inquiry_no)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    content: Mapped[str | None] = mapped_column(Text, nullable=True)
    source_channel: Mapped[str] = mapped_column(String(50), nullable=False)
    customer_name: Mapped[str] = mapped_column(String(100), nullable=False)
    customer_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    customer_phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    customer_company: Mapped[str | None] = mapped_column(String(200), nullable=True)
    customer_address: Mapped[str | None] = mapped_column(Text, nullable=True)
    customer_type: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=CustomerType.INDIVIDUAL.value,
        server_default=CustomerType.INDIVIDUAL.value,
    )
    region: Mapped[str | None] = mapped_column(String(100), nullable=True)
    country: Mapped[str | None] = mapped_column(String(100), nullable=True)
    assigned_to: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    created_by: Mapped[int] = mapped_column(Integer, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    department_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("departments.id", ondelete="SET NULL"),
        nullable=True,
    )
    priority: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=InquiryPriority.MEDIUM.value,
        server_default=InquiryPriority.MEDIUM.value,
    )
    status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=InquiryStatus.NEW.value,
        server_default=InquiryStatus.NEW.value,
    )
    estimated_value: Mapped[Decimal | None] = mapped_column(Numeric(15, 2), nullable=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD", server_default="USD")
    expected_close_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    tags: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    custom_fields: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    follow_ups: Mapped[list[FollowUpRecord]] = relationship(
        "FollowUpRecord",
        back_populates="inquiry",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("ix_inquiries_department_id", "department_id"),
        Index("ix_inquiries_assigned_to", "assigned_to"),
        Index("ix_inquiries_created_by", "created_by"),
        Index("ix_inquiries_status", "status"),
        Index("ix_inquiries_created_at", "created_at"),
    )


class FollowUpRecord(Base):
    __tablename__ = "follow_up_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    inquiry_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("inquiries.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    follow_up_type: Mapped[str] = mapped_column(String(16), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    result: Mapped[str | None] = mapped_column(String(32), nullable=True)
    next_follow_up_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    attachments: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    created_by: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    inquiry: Mapped[Inquiry] = relationship("Inquiry", back_populates="follow_ups")
