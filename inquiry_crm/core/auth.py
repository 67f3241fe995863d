from __future__ import annotations

import logging
from typing import Any

from fastapi import Depends, HTTPException, status
from jose import JWTError, jwt
from sqlalchemy.orm import Session
from starlette.requests import Request

from inquiry_crm.context import get_correlation_id
from inquiry_crm.core.config import get_settings
from inquiry_crm.core.database import get_db
from inquiry_crm.crm.models import User, UserStatus
from inquiry_crm.metrics import observe_scope_unknown_role
from inquiry_crm.platform.security.context import Subject
from inquiry_crm.platform.security.scoping import Role, is_known_role, resolve_role

logger = logging.getLogger(__name__)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def decode_token(token: str) -> dict[str, Any]:
    settings = get_settings()
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        raise _unauthorized("invalid token") from exc


def get_current_user(request: Request, db: Session = Depends(get_db)) -> User:
    auth_header = request.headers.get("authorization", "")
    token = auth_header[len("Bearer ") :] if auth_header.startswith("Bearer ") else ""
    if not token:
        raise _unauthorized("missing bearer token")

    payload = decode_token(token)
    try:
        user_id = int(payload.get("sub"))
    except (TypeError, ValueError) as exc:
        raise _unauthorized("invalid token subject") from exc

    # Role and department are read fresh on every request; the token carries identity only.
    user = db.get(User, user_id)
    if user is None or user.status != UserStatus.ACTIVE.value:
        raise _unauthorized("user not found or inactive")
    return user


def subject_from_user(user: User, correlation_id: str | None = None) -> Subject:
    if not is_known_role(user.role):
        observe_scope_unknown_role()
        logger.warning(
            "scope.unknown_role",
            extra={"user_id": user.id, "role": user.role},
        )
    return Subject(
        id=user.id,
        role=user.role,
        department_id=user.department_id,
        correlation_id=correlation_id,
    )


def get_current_subject(request: Request, user: User = Depends(get_current_user)) -> Subject:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    request.state.user_id = user.id
    return subject_from_user(user, correlation_id)


def require_roles(subject: Subject, *roles: Role) -> None:
    if resolve_role(subject.role) not in roles:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Requires role: {' or '.join(role.value for role in roles)}",
        )
