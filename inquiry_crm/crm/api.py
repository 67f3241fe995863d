from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from inquiry_crm.context import get_correlation_id
from inquiry_crm.core.auth import get_current_subject, require_roles
from inquiry_crm.core.database import get_db
from inquiry_crm.crm.models import CustomerType, FollowUpResult, FollowUpType, InquiryPriority, InquiryStatus, UserStatus
from inquiry_crm.crm.schemas import (
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
from inquiry_crm.crm.service import (
    DepartmentService,
    FollowUpService,
    InquiryService,
    StatisticsService,
    UserService,
)
from inquiry_crm.platform.security.context import Subject
from inquiry_crm.platform.security.scoping import Role

inquiries_router = APIRouter(prefix="/api/inquiries", tags=["inquiries"])
follow_ups_router = APIRouter(prefix="/api/follow-ups", tags=["follow-ups"])
statistics_router = APIRouter(prefix="/api/statistics", tags=["statistics"])
departments_router = APIRouter(prefix="/api/departments", tags=["departments"])
users_router = APIRouter(prefix="/api/users", tags=["users"])

inquiry_service = InquiryService()
follow_up_service = FollowUpService()
statistics_service = StatisticsService(follow_ups=follow_up_service)
department_service = DepartmentService()
user_service = UserService()

_MANAGER_OR_ADMIN = (Role.ADMIN, Role.MANAGER)


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def _failed(request: Request, exc: HTTPException, code: str) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=code,
        message=str(exc.detail),
        details=exc.detail,
    )


@inquiries_router.get("", response_model=InquiryListResponse)
def list_inquiries(
    request: Request,
    q: str | None = Query(default=None),
    status_filter: InquiryStatus | None = Query(default=None, alias="status"),
    priority: InquiryPriority | None = Query(default=None),
    assigned_to: int | None = Query(default=None),
    department_id: int | None = Query(default=None),
    source_channel: str | None = Query(default=None),
    customer_type: CustomerType | None = Query(default=None),
    created_from: datetime | None = Query(default=None),
    created_to: datetime | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
    db: Session = Depends(get_db),
    subject: Subject = Depends(get_current_subject),
) -> InquiryListResponse | JSONResponse:
    try:
        return inquiry_service.list_inquiries(
            db,
            subject,
            filters={
                "q": q,
                "status": status_filter,
                "priority": priority,
                "assigned_to": assigned_to,
                "department_id": department_id,
                "source_channel": source_channel,
                "customer_type": customer_type,
                "created_from": created_from,
                "created_to": created_to,
            },
            page=page,
            page_size=page_size,
        )
    except HTTPException as exc:
        return _failed(request, exc, "inquiry_list_failed")


@inquiries_router.post("", response_model=InquiryRead, status_code=status.HTTP_201_CREATED)
def create_inquiry(
    request: Request,
    dto: InquiryCreate,
    db: Session = Depends(get_db),
    subject: Subject = Depends(get_current_subject),
) -> InquiryRead | JSONResponse:
    try:
        return inquiry_service.create_inquiry(db, subject, dto)
    except HTTPException as exc:
        return _failed(request, exc, "inquiry_create_failed")


# Registered before "/{inquiry_id}" so the literal path wins.
@inquiries_router.patch("/batch", response_model=InquiryBatchResult)
def batch_inquiries(
    request: Request,
    dto: InquiryBatchRequest,
    db: Session = Depends(get_db),
    subject: Subject = Depends(get_current_subject),
) -> InquiryBatchResult | JSONResponse:
    try:
        return inquiry_service.batch_update(db, subject, dto)
    except HTTPException as exc:
        return _failed(request, exc, "inquiry_batch_failed")


@inquiries_router.get("/{inquiry_id}", response_model=InquiryRead)
def get_inquiry(
    request: Request,
    inquiry_id: int,
    db: Session = Depends(get_db),
    subject: Subject = Depends(get_current_subject),
) -> InquiryRead | JSONResponse:
    try:
        return inquiry_service.get_inquiry(db, subject, inquiry_id)
    except HTTPException as exc:
        return _failed(request, exc, "inquiry_get_failed")


@inquiries_router.patch("/{inquiry_id}", response_model=InquiryRead)
def patch_inquiry(
    request: Request,
    inquiry_id: int,
    dto: InquiryUpdate,
    db: Session = Depends(get_db),
    subject: Subject = Depends(get_current_subject),
) -> InquiryRead | JSONResponse:
    try:
        return inquiry_service.update_inquiry(db, subject, inquiry_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "inquiry_update_failed")


@inquiries_router.delete("/{inquiry_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_inquiry(
    request: Request,
    inquiry_id: int,
    db: Session = Depends(get_db),
    subject: Subject = Depends(get_current_subject),
) -> Response:
    try:
        inquiry_service.delete_inquiry(db, subject, inquiry_id)
    except HTTPException as exc:
        return _failed(request, exc, "inquiry_delete_failed")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@inquiries_router.get("/{inquiry_id}/follow-ups", response_model=list[FollowUpRead])
def list_inquiry_follow_ups(
    request: Request,
    inquiry_id: int,
    db: Session = Depends(get_db),
    subject: Subject = Depends(get_current_subject),
) -> list[FollowUpRead] | JSONResponse:
    try:
        return follow_up_service.list_for_inquiry(db, subject, inquiry_id)
    except HTTPException as exc:
        return _failed(request, exc, "inquiry_follow_ups_failed")


@follow_ups_router.get("", response_model=FollowUpListResponse)
def list_follow_ups(
    request: Request,
    inquiry_id: int | None = Query(default=None),
    follow_up_type: FollowUpType | None = Query(default=None),
    result: FollowUpResult | None = Query(default=None),
    created_by: int | None = Query(default=None),
    created_from: datetime | None = Query(default=None),
    created_to: datetime | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
    db: Session = Depends(get_db),
    subject: Subject = Depends(get_current_subject),
) -> FollowUpListResponse | JSONResponse:
    try:
        return follow_up_service.list_follow_ups(
            db,
            subject,
            filters={
                "inquiry_id": inquiry_id,
                "follow_up_type": follow_up_type,
                "result": result,
                "created_by": created_by,
                "created_from": created_from,
                "created_to": created_to,
            },
            page=page,
            page_size=page_size,
        )
    except HTTPException as exc:
        return _failed(request, exc, "follow_up_list_failed")


@follow_ups_router.get("/pending", response_model=list[FollowUpRead])
def pending_follow_ups(
    request: Request,
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    subject: Subject = Depends(get_current_subject),
) -> list[FollowUpRead] | JSONResponse:
    try:
        return follow_up_service.pending_follow_ups(db, subject, limit=limit)
    except HTTPException as exc:
        return _failed(request, exc, "follow_up_pending_failed")


@follow_ups_router.get("/statistics", response_model=FollowUpStatistics)
def follow_up_statistics(
    request: Request,
    inquiry_id: int | None = Query(default=None),
    created_from: datetime | None = Query(default=None),
    created_to: datetime | None = Query(default=None),
    db: Session = Depends(get_db),
    subject: Subject = Depends(get_current_subject),
) -> FollowUpStatistics | JSONResponse:
    try:
        return follow_up_service.statistics(
            db,
            subject,
            filters={"inquiry_id": inquiry_id, "created_from": created_from, "created_to": created_to},
        )
    except HTTPException as exc:
        return _failed(request, exc, "follow_up_statistics_failed")


@follow_ups_router.post("", response_model=FollowUpRead, status_code=status.HTTP_201_CREATED)
def create_follow_up(
    request: Request,
    dto: FollowUpCreate,
    db: Session = Depends(get_db),
    subject: Subject = Depends(get_current_subject),
) -> FollowUpRead | JSONResponse:
    try:
        return follow_up_service.create_follow_up(db, subject, dto)
    except HTTPException as exc:
        return _failed(request, exc, "follow_up_create_failed")


@follow_ups_router.get("/{follow_up_id}", response_model=FollowUpRead)
def get_follow_up(
    request: Request,
    follow_up_id: int,
    db: Session = Depends(get_db),
    subject: Subject = Depends(get_current_subject),
) -> FollowUpRead | JSONResponse:
    try:
        return follow_up_service.get_follow_up(db, subject, follow_up_id)
    except HTTPException as exc:
        return _failed(request, exc, "follow_up_get_failed")


@follow_ups_router.patch("/{follow_up_id}", response_model=FollowUpRead)
def patch_follow_up(
    request: Request,
    follow_up_id: int,
    dto: FollowUpUpdate,
    db: Session = Depends(get_db),
    subject: Subject = Depends(get_current_subject),
) -> FollowUpRead | JSONResponse:
    try:
        return follow_up_service.update_follow_up(db, subject, follow_up_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "follow_up_update_failed")


@follow_ups_router.delete("/{follow_up_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_follow_up(
    request: Request,
    follow_up_id: int,
    db: Session = Depends(get_db),
    subject: Subject = Depends(get_current_subject),
) -> Response:
    try:
        follow_up_service.delete_follow_up(db, subject, follow_up_id)
    except HTTPException as exc:
        return _failed(request, exc, "follow_up_delete_failed")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


def _statistics_filters(
    created_from: datetime | None = Query(default=None),
    created_to: datetime | None = Query(default=None),
    department_id: int | None = Query(default=None),
) -> dict[str, Any]:
    return {"created_from": created_from, "created_to": created_to, "department_id": department_id}


@statistics_router.get("/inquiries", response_model=InquiryStatistics)
def inquiry_statistics(
    request: Request,
    filters: dict[str, Any] = Depends(_statistics_filters),
    db: Session = Depends(get_db),
    subject: Subject = Depends(get_current_subject),
) -> InquiryStatistics | JSONResponse:
    try:
        return statistics_service.inquiry_statistics(db, subject, filters)
    except HTTPException as exc:
        return _failed(request, exc, "statistics_inquiries_failed")


@statistics_router.get("/user-performance", response_model=list[UserPerformance])
def user_performance(
    request: Request,
    filters: dict[str, Any] = Depends(_statistics_filters),
    db: Session = Depends(get_db),
    subject: Subject = Depends(get_current_subject),
) -> list[UserPerformance] | JSONResponse:
    try:
        return statistics_service.user_performance(db, subject, filters)
    except HTTPException as exc:
        return _failed(request, exc, "statistics_user_performance_failed")


@statistics_router.get("/department-performance", response_model=list[DepartmentPerformance])
def department_performance(
    request: Request,
    filters: dict[str, Any] = Depends(_statistics_filters),
    db: Session = Depends(get_db),
    subject: Subject = Depends(get_current_subject),
) -> list[DepartmentPerformance] | JSONResponse:
    try:
        require_roles(subject, Role.ADMIN)
        return statistics_service.department_performance(db, subject, filters)
    except HTTPException as exc:
        return _failed(request, exc, "statistics_department_performance_failed")


@statistics_router.get("/dashboard", response_model=DashboardRead)
def dashboard(
    request: Request,
    db: Session = Depends(get_db),
    subject: Subject = Depends(get_current_subject),
) -> DashboardRead | JSONResponse:
    try:
        return statistics_service.dashboard(db, subject)
    except HTTPException as exc:
        return _failed(request, exc, "statistics_dashboard_failed")


@departments_router.get("", response_model=list[DepartmentRead])
def list_departments(
    request: Request,
    status_filter: str | None = Query(default=None, alias="status"),
    parent_id: int | None = Query(default=None),
    q: str | None = Query(default=None),
    db: Session = Depends(get_db),
    subject: Subject = Depends(get_current_subject),
) -> list[DepartmentRead] | JSONResponse:
    try:
        require_roles(subject, *_MANAGER_OR_ADMIN)
        return department_service.list_departments(db, {"status": status_filter, "parent_id": parent_id, "q": q})
    except HTTPException as exc:
        return _failed(request, exc, "department_list_failed")


@departments_router.get("/tree", response_model=list[DepartmentTreeNode])
def department_tree(
    request: Request,
    db: Session = Depends(get_db),
    subject: Subject = Depends(get_current_subject),
) -> list[DepartmentTreeNode] | JSONResponse:
    try:
        require_roles(subject, *_MANAGER_OR_ADMIN)
        return department_service.department_tree(db)
    except HTTPException as exc:
        return _failed(request, exc, "department_tree_failed")


@departments_router.get("/{department_id}", response_model=DepartmentRead)
def get_department(
    request: Request,
    department_id: int,
    db: Session = Depends(get_db),
    subject: Subject = Depends(get_current_subject),
) -> DepartmentRead | JSONResponse:
    try:
        require_roles(subject, *_MANAGER_OR_ADMIN)
        return department_service.get_department(db, department_id)
    except HTTPException as exc:
        return _failed(request, exc, "department_get_failed")


@departments_router.post("", response_model=DepartmentRead, status_code=status.HTTP_201_CREATED)
def create_department(
    request: Request,
    dto: DepartmentCreate,
    db: Session = Depends(get_db),
    subject: Subject = Depends(get_current_subject),
) -> DepartmentRead | JSONResponse:
    try:
        require_roles(subject, Role.ADMIN)
        return department_service.create_department(db, subject, dto)
    except HTTPException as exc:
        return _failed(request, exc, "department_create_failed")


@departments_router.patch("/{department_id}", response_model=DepartmentRead)
def patch_department(
    request: Request,
    department_id: int,
    dto: DepartmentUpdate,
    db: Session = Depends(get_db),
    subject: Subject = Depends(get_current_subject),
) -> DepartmentRead | JSONResponse:
    try:
        require_roles(subject, Role.ADMIN)
        return department_service.update_department(db, subject, department_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "department_update_failed")


@departments_router.delete("/{department_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_department(
    request: Request,
    department_id: int,
    db: Session = Depends(get_db),
    subject: Subject = Depends(get_current_subject),
) -> Response:
    try:
        require_roles(subject, Role.ADMIN)
        department_service.delete_department(db, subject, department_id)
    except HTTPException as exc:
        return _failed(request, exc, "department_delete_failed")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@users_router.get("/me", response_model=UserRead)
def get_me(
    request: Request,
    db: Session = Depends(get_db),
    subject: Subject = Depends(get_current_subject),
) -> UserRead | JSONResponse:
    try:
        return user_service.get_me(db, subject)
    except HTTPException as exc:
        return _failed(request, exc, "user_me_failed")


@users_router.put("/profile", response_model=UserRead)
def update_profile(
    request: Request,
    dto: UserProfileUpdate,
    db: Session = Depends(get_db),
    subject: Subject = Depends(get_current_subject),
) -> UserRead | JSONResponse:
    try:
        return user_service.update_profile(db, subject, dto)
    except HTTPException as exc:
        return _failed(request, exc, "user_profile_update_failed")


@users_router.get("", response_model=list[UserRead])
def list_users(
    request: Request,
    role: str | None = Query(default=None),
    status_filter: UserStatus | None = Query(default=None, alias="status"),
    department_id: int | None = Query(default=None),
    q: str | None = Query(default=None),
    db: Session = Depends(get_db),
    subject: Subject = Depends(get_current_subject),
) -> list[UserRead] | JSONResponse:
    try:
        require_roles(subject, *_MANAGER_OR_ADMIN)
        return user_service.list_users(
            db,
            {"role": role, "status": status_filter, "department_id": department_id, "q": q},
        )
    except HTTPException as exc:
        return _failed(request, exc, "user_list_failed")


@users_router.get("/{user_id}", response_model=UserRead)
def get_user(
    request: Request,
    user_id: int,
    db: Session = Depends(get_db),
    subject: Subject = Depends(get_current_subject),
) -> UserRead | JSONResponse:
    try:
        require_roles(subject, *_MANAGER_OR_ADMIN)
        return user_service.get_user(db, user_id)
    except HTTPException as exc:
        return _failed(request, exc, "user_get_failed")


@users_router.post("", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def create_user(
    request: Request,
    dto: UserCreate,
    db: Session = Depends(get_db),
    subject: Subject = Depends(get_current_subject),
) -> UserRead | JSONResponse:
    try:
        require_roles(subject, Role.ADMIN)
        return user_service.create_user(db, subject, dto)
    except HTTPException as exc:
        return _failed(request, exc, "user_create_failed")


@users_router.patch("/{user_id}", response_model=UserRead)
def patch_user(
    request: Request,
    user_id: int,
    dto: UserUpdate,
    db: Session = Depends(get_db),
    subject: Subject = Depends(get_current_subject),
) -> UserRead | JSONResponse:
    try:
        require_roles(subject, Role.ADMIN)
        return user_service.update_user(db, subject, user_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "user_update_failed")


@users_router.delete("/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_user(
    request: Request,
    user_id: int,
    db: Session = Depends(get_db),
    subject: Subject = Depends(get_current_subject),
) -> Response:
    try:
        require_roles(subject, Role.ADMIN)
        user_service.delete_user(db, subject, user_id)
    except HTTPException as exc:
        return _failed(request, exc, "user_delete_failed")
    return Response(status_code=status.HTTP_204_NO_CONTENT)
