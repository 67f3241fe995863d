from inquiry_crm.platform.security.context import Subject
from inquiry_crm.platform.security.errors import AuthorizationError, ResourceAccessDenied
from inquiry_crm.platform.security.repository import BaseRepository
from inquiry_crm.platform.security.scoping import (
    POLICY_TABLE,
    AccessDecision,
    FieldMatch,
    ResourceAction,
    ResourceRef,
    Role,
    ScopedResource,
    ScopeFilter,
    apply_scope_filter,
    decide_point_access,
    ensure_point_access,
    is_known_role,
    resolve_role,
    scope_collection_filter,
)

__all__ = [
    "Subject",
    "AuthorizationError",
    "ResourceAccessDenied",
    "BaseRepository",
    "POLICY_TABLE",
    "AccessDecision",
    "FieldMatch",
    "ResourceAction",
    "ResourceRef",
    "Role",
    "ScopedResource",
    "ScopeFilter",
    "apply_scope_filter",
    "decide_point_access",
    "ensure_point_access",
    "is_known_role",
    "resolve_role",
    "scope_collection_filter",
]
