from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Protocol

from sqlalchemy import false, or_
from sqlalchemy.sql import ColumnElement, Select

from inquiry_crm import audit
from inquiry_crm.metrics import observe_scope_denied
from inquiry_crm.platform.security.context import Subject
from inquiry_crm.platform.security.errors import ResourceAccessDenied

logger = logging.getLogger(__name__)


class Role(StrEnum):
    ADMIN = "admin"
    MANAGER = "manager"
    SALES = "sales"
    CUSTOMER_SERVICE = "customer_service"


class ResourceAction(StrEnum):
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"


class AccessDecision(StrEnum):
    ALLOW = "allow"
    DENY = "deny"


class ScopedResource(Protocol):
    assigned_to: int | None
    created_by: int | None
    department_id: int | None


@dataclass(frozen=True, slots=True)
class ResourceRef:
    """Plain scoped-resource value, used where no ORM row is at hand."""

    assigned_to: int | None = None
    created_by: int | None = None
    department_id: int | None = None


SCOPED_FIELDS = ("assigned_to", "created_by", "department_id")


@dataclass(frozen=True, slots=True)
class FieldMatch:
    field: str
    value: int | None

    def __post_init__(self) -> None:
        if self.field not in SCOPED_FIELDS:
            raise ValueError(f"Unsupported scope field '{self.field}'")

    def matches(self, resource: ScopedResource) -> bool:
        # A missing value on either side never matches; NULL is not equal to NULL.
        if self.value is None:
            return False
        actual = getattr(resource, self.field, None)
        return actual is not None and actual == self.value

    def to_clause(self, model: Any) -> ColumnElement[bool]:
        if self.value is None:
            return false()
        return getattr(model, self.field) == self.value


@dataclass(frozen=True, slots=True)
class ScopeFilter:
    """Row predicate produced by the policy table.

    ``restricted=False`` means no filter at all. A restricted filter is the OR of
    its clauses; with no clauses it matches nothing.
    """

    restricted: bool
    clauses: tuple[FieldMatch, ...] = ()

    @classmethod
    def unrestricted(cls) -> ScopeFilter:
        return cls(restricted=False)

    @classmethod
    def any_of(cls, *clauses: FieldMatch) -> ScopeFilter:
        return cls(restricted=True, clauses=tuple(clauses))

    @classmethod
    def nothing(cls) -> ScopeFilter:
        return cls(restricted=True)

    def matches(self, resource: ScopedResource) -> bool:
        if not self.restricted:
            return True
        return any(clause.matches(resource) for clause in self.clauses)

    def to_clause(self, model: Any) -> ColumnElement[bool] | None:
        if not self.restricted:
            return None
        expressions = [clause.to_clause(model) for clause in self.clauses if clause.value is not None]
        if not expressions:
            return false()
        if len(expressions) == 1:
            return expressions[0]
        return or_(*expressions)


def resolve_role(value: str | Role | None) -> Role:
    """Map a stored role value to a known role, falling back to the narrowest one.

    Matching is exact: "Admin" or " admin" are unknown values, not admins.
    """

    if isinstance(value, Role):
        return value
    try:
        return Role(value)
    except ValueError:
        return Role.CUSTOMER_SERVICE


def is_known_role(value: str | None) -> bool:
    try:
        Role(value)
    except ValueError:
        return False
    return True


def _admin_scope(subject: Subject) -> ScopeFilter:
    return ScopeFilter.unrestricted()


def _manager_scope(subject: Subject) -> ScopeFilter:
    if subject.department_id is None:
        return ScopeFilter.nothing()
    return ScopeFilter.any_of(FieldMatch("department_id", subject.department_id))


def _sales_scope(subject: Subject) -> ScopeFilter:
    return ScopeFilter.any_of(
        FieldMatch("assigned_to", subject.id),
        FieldMatch("created_by", subject.id),
    )


def _customer_service_scope(subject: Subject) -> ScopeFilter:
    return ScopeFilter.any_of(FieldMatch("assigned_to", subject.id))


POLICY_TABLE: dict[Role, Callable[[Subject], ScopeFilter]] = {
    Role.ADMIN: _admin_scope,
    Role.MANAGER: _manager_scope,
    Role.SALES: _sales_scope,
    Role.CUSTOMER_SERVICE: _customer_service_scope,
}


def scope_collection_filter(subject: Subject) -> ScopeFilter:
    return POLICY_TABLE[resolve_role(subject.role)](subject)


def apply_scope_filter(query: Select[Any], subject: Subject, model: Any) -> Select[Any]:
    """AND the subject's scope onto an already-built select over ``model``."""

    clause = scope_collection_filter(subject).to_clause(model)
    if clause is None:
        return query
    return query.where(clause)


def decide_point_access(
    subject: Subject,
    resource: ScopedResource,
    action: ResourceAction | str = ResourceAction.READ,
) -> AccessDecision:
    ResourceAction(action)  # every action shares the read scope
    if scope_collection_filter(subject).matches(resource):
        return AccessDecision.ALLOW
    return AccessDecision.DENY


def ensure_point_access(
    subject: Subject,
    resource: ScopedResource,
    action: ResourceAction | str,
    *,
    resource_type: str,
    resource_id: Any = None,
) -> None:
    resolved_action = ResourceAction(action)
    if decide_point_access(subject, resource, resolved_action) is AccessDecision.ALLOW:
        return

    role = resolve_role(subject.role)
    observe_scope_denied(resource=resource_type, action=resolved_action.value, role=role.value)
    audit.record_scope_denial(
        user_id=subject.id,
        role=role.value,
        department_id=subject.department_id,
        resource=resource_type,
        resource_id=resource_id,
        action=resolved_action.value,
        correlation_id=subject.correlation_id,
    )
    logger.info(
        "scope.denied",
        extra={
            "resource": resource_type,
            "action": resolved_action.value,
            "role": role.value,
            "user_id": subject.id,
        },
    )
    raise ResourceAccessDenied(resource_type, resolved_action.value)
