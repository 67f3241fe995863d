from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

from inquiry_crm.crm.models import (
    CustomerType,
    DepartmentStatus,
    FollowUpResult,
    FollowUpType,
    InquiryPriority,
    InquiryStatus,
    UserStatus,
)


class DepartmentCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    description: str | None = None
    parent_id: int | None = None
    manager_id: int | None = None
    status: DepartmentStatus = DepartmentStatus.ACTIVE


class DepartmentUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=100)
    description: str | None = None
    parent_id: int | None = None
    manager_id: int | None = None
    status: DepartmentStatus | None = None


class DepartmentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: str | None
    parent_id: int | None
    manager_id: int | None
    status: str
    created_at: datetime
    updated_at: datetime


class DepartmentTreeNode(DepartmentRead):
    user_count: int = 0
    children: list[DepartmentTreeNode] = Field(default_factory=list)


class UserCreate(BaseModel):
    username: str = Field(min_length=3, max_length=50)
    email: EmailStr
    full_name: str | None = Field(default=None, max_length=100)
    phone: str | None = None
    role: str = Field(default="sales", min_length=1, max_length=32)
    department_id: int | None = None
    status: UserStatus = UserStatus.ACTIVE


class UserUpdate(BaseModel):
    email: EmailStr | None = None
    full_name: str | None = Field(default=None, max_length=100)
    phone: str | None = None
    role: str | None = Field(default=None, min_length=1, max_length=32)
    department_id: int | None = None
    status: UserStatus | None = None


class UserProfileUpdate(BaseModel):
    full_name: str | None = Field(default=None, min_length=2, max_length=100)
    phone: str | None = Field(default=None, max_length=32)


class UserRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    username: str
    email: str
    full_name: str | None
    phone: str | None
    role: str
    department_id: int | None
    status: str
    last_login_at: datetime | None
    created_at: datetime
    updated_at: datetime


class InquiryCreate(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    content: str | None = None
    source_channel: str = Field(min_length=1, max_length=50)
    customer_name: str = Field(min_length=1, max_length=100)
    customer_email: EmailStr | None = None
    customer_phone: str | None = None
    customer_company: str | None = None
    customer_address: str | None = None
    customer_type: CustomerType = CustomerType.INDIVIDUAL
    region: str | None = None
    country: str | None = None
    assigned_to: int | None = None
    department_id: int | None = None
    priority: InquiryPriority = InquiryPriority.MEDIUM
    status: InquiryStatus = InquiryStatus.NEW
    estimated_value: Decimal | None = Field(default=None, ge=0)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    expected_close_date: date | None = None
    tags: list[str] = Field(default_factory=list)
    custom_fields: dict[str, Any] = Field(default_factory=dict)


class InquiryUpdate(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=200)
    content: str | None = None
    source_channel: str | None = Field(default=None, min_length=1, max_length=50)
    customer_name: str | None = Field(default=None, min_length=1, max_length=100)
    customer_email: EmailStr | None = None
    customer_phone: str | None = None
    customer_company: str | None = None
    customer_address: str | None = None
    customer_type: CustomerType | None = None
    region: str | None = None
    country: str | None = None
    assigned_to: int | None = None
    department_id: int | None = None
    priority: InquiryPriority | None = None
    status: InquiryStatus | None = None
    estimated_value: Decimal | None = Field(default=None, ge=0)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    expected_close_date: date | None = None
    tags: list[str] | None = None
    custom_fields: dict[str, Any] | None = None


class InquiryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    inquiry_no: str
    title: str
    content: str | None
    source_channel: str
    customer_name: str
    customer_email: str | None
    customer_phone: str | None
    customer_company: str | None
    customer_address: str | None
    customer_type: str
    region: str | None
    country: str | None
    assigned_to: int | None
    created_by: int
    department_id: int | None
    priority: str
    status: str
    estimated_value: Decimal | None
    currency: str
    expected_close_date: date | None
    tags: list[str] = Field(default_factory=list)
    custom_fields: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime


class InquiryListResponse(BaseModel):
    items: list[InquiryRead]
    total: int
    page: int
    page_size: int


BatchAction = Literal["assign", "update_status", "delete"]


class InquiryBatchRequest(BaseModel):
    ids: list[int] = Field(min_length=1, max_length=100)
    action: BatchAction
    data: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def validate_action_data(self) -> InquiryBatchRequest:
        assignee = self.data.get("assigned_to")
        if self.action == "assign" and (not isinstance(assignee, int) or isinstance(assignee, bool)):
            raise ValueError("data.assigned_to is required for assign")
        if self.action == "update_status":
            status_value = self.data.get("status")
            if status_value not in {item.value for item in InquiryStatus}:
                raise ValueError("data.status must be a valid inquiry status")
        return self


class InquiryBatchResult(BaseModel):
    action: BatchAction
    affected: int
    ids: list[int]


def _to_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class FollowUpCreate(BaseModel):
    inquiry_id: int
    follow_up_type: FollowUpType
    content: str = Field(min_length=1)
    result: FollowUpResult | None = None
    next_follow_up_date: datetime | None = None
    attachments: list[str] = Field(default_factory=list)

    @field_validator("next_follow_up_date")
    @classmethod
    def normalize_due(cls, value: datetime | None) -> datetime | None:
        return _to_utc(value)


class FollowUpUpdate(BaseModel):
    follow_up_type: FollowUpType | None = None
    content: str | None = Field(default=None, min_length=1)
    result: FollowUpResult | None = None
    next_follow_up_date: datetime | None = None
    attachments: list[str] | None = None

    @field_validator("next_follow_up_date")
    @classmethod
    def normalize_due(cls, value: datetime | None) -> datetime | None:
        return _to_utc(value)


class FollowUpRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    inquiry_id: int
    follow_up_type: str
    content: str
    result: str | None
    next_follow_up_date: datetime | None
    attachments: list[str] = Field(default_factory=list)
    created_by: int
    created_at: datetime
    updated_at: datetime


class FollowUpListResponse(BaseModel):
    items: list[FollowUpRead]
    total: int
    page: int
    page_size: int


class FollowUpStatistics(BaseModel):
    total: int
    pending: int
    by_type: dict[str, int]
    by_result: dict[str, int]


class InquiryStatistics(BaseModel):
    total: int
    new: int
    closed: int
    conversion_rate: float
    total_value: Decimal
    average_value: Decimal
    by_status: dict[str, int]
    by_priority: dict[str, int]
    by_source: dict[str, int]
    by_department: dict[str, int]


class UserPerformance(BaseModel):
    user_id: int
    username: str | None
    full_name: str | None
    total: int
    closed: int
    conversion_rate: float
    total_value: Decimal
    follow_up_count: int


class DepartmentPerformance(BaseModel):
    department_id: int
    department_name: str
    total: int
    closed: int
    conversion_rate: float
    total_value: Decimal
    user_count: int
    average_inquiries_per_user: float


class DailyCount(BaseModel):
    day: date
    count: int


class DashboardRead(BaseModel):
    overview: InquiryStatistics
    recent_inquiries: list[InquiryRead]
    pending_follow_ups: list[FollowUpRead]
    top_performers: list[UserPerformance]
    daily_trend: list[DailyCount]
