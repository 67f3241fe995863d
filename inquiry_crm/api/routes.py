from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from inquiry_crm.core.auth import get_current_subject, require_roles
from inquiry_crm.core.config import get_settings
from inquiry_crm.crm.api import (
    departments_router,
    follow_ups_router,
    inquiries_router,
    statistics_router,
    users_router,
)
from inquiry_crm.metrics import generate_metrics_payload, metrics_content_type
from inquiry_crm.platform.security.context import Subject
from inquiry_crm.platform.security.scoping import Role, resolve_role

router = APIRouter()
router.include_router(inquiries_router)
router.include_router(follow_ups_router)
router.include_router(statistics_router)
router.include_router(departments_router)
router.include_router(users_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/me", tags=["auth"])
def me(subject: Subject = Depends(get_current_subject)) -> dict[str, str | int | None]:
    return {
        "id": subject.id,
        "role": subject.role,
        "effective_role": resolve_role(subject.role).value,
        "department_id": subject.department_id,
    }


@router.get("/metrics", tags=["system"])
def metrics(subject: Subject = Depends(get_current_subject)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    require_roles(subject, Role.ADMIN)
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
